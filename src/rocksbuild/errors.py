"""Exception hierarchy for rocksbuild.

Every fatal build condition raises a subclass of BuildError. Nothing in the
build is caught and retried; the orchestrator turns the first BuildError
into a failed BuildResult and the CLI into a non-zero exit.
"""

from typing import List, Optional, Sequence


class BuildError(Exception):
    """Base exception for all build failures."""
    pass


class ConfigError(BuildError):
    """Raised when the build configuration cannot be loaded."""
    pass


class MissingDependencyError(BuildError):
    """Raised when a source tree, header or system library is missing."""

    FETCH_HINT = "Try `git submodule update --init --recursive`"

    def __init__(self, message: str, hint: Optional[str] = FETCH_HINT):
        self.hint = hint
        if hint:
            message = f"{message}\n{hint}"
        super().__init__(message)


class ExternalProcessError(BuildError):
    """Raised when an external process exits non-zero or is killed."""

    def __init__(
        self,
        step: str,
        cmd: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        message: Optional[str] = None
    ):
        self.step = step
        self.cmd: List[str] = [str(c) for c in cmd]
        self.returncode = returncode
        self.stderr = stderr

        if message is None:
            message = f"{step} failed: {self.describe_status()}"
            if stderr:
                message += f"\n{stderr}"
        super().__init__(message)

    @property
    def signal(self) -> Optional[int]:
        """Signal number when the process was terminated by a signal."""
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None

    def describe_status(self) -> str:
        if self.returncode is None:
            return f"could not run `{' '.join(self.cmd)}`"
        if self.signal is not None:
            return f"process was terminated by signal {self.signal}"
        return f"process failed with exit code {self.returncode}"


class CompilerError(ExternalProcessError):
    """Raised when the C++ compiler fails on a source file."""
    pass


class ArchiveError(ExternalProcessError):
    """Raised when the archiver fails to create a static library."""
    pass


class BindingGenerationError(BuildError):
    """Raised when header parsing or binding emission fails."""
    pass


class SubsystemStateError(BuildError):
    """Raised when an external build step is run out of order."""
    pass
