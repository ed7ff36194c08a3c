"""
Pytest configuration for rocksbuild test suite.

This configuration enables the --full flag to run integration tests and
provides a fake process runner so the build steps can be exercised without
a real toolchain.
"""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import pytest

from rocksbuild.process_runner import ProcessResult, ProcessRunner


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--full",
        action="store_true",
        default=False,
        help="Run full test suite including integration tests (slow)",
    )


def pytest_configure(config):
    """Configure pytest based on command-line options."""
    config.addinivalue_line("markers", "integration: needs a real compiler and network access")


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --full is given."""
    if config.getoption("--full"):
        return
    skip_integration = pytest.mark.skip(reason="integration test, use --full to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@dataclass
class RecordedCall:
    """One command seen by the FakeProcessRunner."""

    args: List[str]
    cwd: Optional[Path]
    env: Optional[dict]
    capture: bool


@dataclass
class _Rule:
    prefix: List[str]
    returncode: int
    stdout: str
    stderr: str
    side_effect: Optional[Callable[[List[str], Optional[Path]], Optional[ProcessResult]]]


class FakeProcessRunner(ProcessRunner):
    """
    Records every command and answers with scripted results.

    Rules are matched by command prefix; the most recently added rule wins.
    Commands without a matching rule succeed with empty output. A side
    effect that returns a ProcessResult replaces the scripted one.

    Example:
        fake.on("make", returncode=2, stderr="boom")
        fake.on(["git", "submodule"], side_effect=lambda args, cwd: marker.touch())
    """

    def __init__(self):
        super().__init__({})
        self.calls: List[RecordedCall] = []
        self.rules: List[_Rule] = []
        self._lock = threading.Lock()

    def on(
        self,
        prefix: Union[str, Sequence[str]],
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        side_effect: Optional[Callable[[List[str], Optional[Path]], Optional[ProcessResult]]] = None
    ) -> "FakeProcessRunner":
        prefix_list = [prefix] if isinstance(prefix, str) else [str(p) for p in prefix]
        self.rules.append(_Rule(prefix_list, returncode, stdout, stderr, side_effect))
        return self

    def run(self, cmd, cwd=None, env=None, capture=True) -> ProcessResult:
        args = [str(c) for c in cmd]
        with self._lock:
            self.calls.append(RecordedCall(args, Path(cwd) if cwd else None, dict(env) if env else None, capture))
        for rule in reversed(self.rules):
            if args[:len(rule.prefix)] == rule.prefix:
                if rule.side_effect is not None:
                    outcome = rule.side_effect(args, Path(cwd) if cwd else None)
                    if isinstance(outcome, ProcessResult):
                        return outcome
                return ProcessResult(args, rule.returncode, rule.stdout, rule.stderr)
        return ProcessResult(args, 0)

    def commands(self, program: Optional[str] = None) -> List[List[str]]:
        """Recorded argument lists, optionally only those of one program."""
        return [c.args for c in self.calls if program is None or c.args[0] == program]


@pytest.fixture
def fake_runner():
    """A FakeProcessRunner with no rules (every command succeeds)."""
    return FakeProcessRunner()
