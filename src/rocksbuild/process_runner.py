"""External process execution.

Every external program the build drives (compiler, archiver, git,
configure, make, the whole-archive linker, pkg-config) goes through a
ProcessRunner. Components receive the runner explicitly, which lets the
tests substitute a fake runner and exercise each step without a toolchain.

Design:
    - Blocks until the process exits; no timeouts, no cancellation
    - Captures output for short tools, streams it for configure/make
    - Negative return codes mean "terminated by signal" (POSIX convention)
    - Ctrl-C kills the whole child process tree
"""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

from .errors import ExternalProcessError
from .interrupt_utils import handle_keyboard_interrupt_properly

logger = logging.getLogger(__name__)

Command = Sequence[Union[str, Path]]


@dataclass
class ProcessResult:
    """Result of one external process invocation."""

    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def signal(self) -> Optional[int]:
        """Signal number if the process was killed by a signal."""
        return -self.returncode if self.returncode < 0 else None

    def check(self, step: str, error_cls: type = ExternalProcessError) -> "ProcessResult":
        """Raise error_cls if the process did not succeed.

        Args:
            step: Human readable name of the build step (e.g. "make")
            error_cls: ExternalProcessError subclass to raise

        Returns:
            self, for chaining
        """
        if not self.success:
            raise error_cls(step, self.args, self.returncode, self.stderr)
        return self


def format_command(cmd: Command) -> str:
    """Render a command for log output."""
    return " ".join(shlex.quote(str(c)) for c in cmd)


class ProcessRunner:
    """Runs external commands on behalf of the build components."""

    def __init__(self, base_env: Optional[Mapping[str, str]] = None):
        """Initialize process runner.

        Args:
            base_env: Environment passed to child processes. Defaults to the
                environment captured when the build configuration was loaded.
        """
        self.base_env = dict(base_env) if base_env is not None else None

    def run(
        self,
        cmd: Command,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        capture: bool = True
    ) -> ProcessResult:
        """Run a command to completion.

        Args:
            cmd: Program and arguments
            cwd: Working directory
            env: Extra environment variables layered over base_env
            capture: Capture stdout/stderr (False streams them to the console)

        Returns:
            ProcessResult (never raises for a non-zero exit)

        Raises:
            ExternalProcessError: If the program cannot be started at all
        """
        args = [str(c) for c in cmd]
        where = f" (in {cwd})" if cwd else ""
        logger.debug(f"Running command: {format_command(args)}{where}")

        child_env: Optional[Dict[str, str]] = None
        if self.base_env is not None or env:
            child_env = dict(self.base_env if self.base_env is not None else os.environ)
            child_env.update(env or {})

        try:
            proc = subprocess.Popen(
                args,
                cwd=str(cwd) if cwd else None,
                env=child_env,
                stdout=subprocess.PIPE if capture else None,
                stderr=subprocess.PIPE if capture else None,
                text=True,
            )
        except OSError as e:
            raise ExternalProcessError(
                args[0], args, None,
                message=f"Failed to start `{format_command(args)}`: {e}"
            ) from e

        try:
            stdout, stderr = proc.communicate()
        except KeyboardInterrupt as ke:
            handle_keyboard_interrupt_properly(ke, proc.pid)
            raise  # Never reached, but satisfies type checker

        return ProcessResult(
            args=args,
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
        )
