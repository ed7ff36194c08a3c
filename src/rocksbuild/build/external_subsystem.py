"""External subsystem (SPDK) build.

SPDK ships its own configure/make build. rocksbuild treats it as an opaque
external process, then merges every static archive it produced (SPDK's and
the bundled DPDK's) into one shared object, libspdk_fat.so, which the
consumer links dynamically.

Design:
    - Explicit state machine: NOT_FETCHED -> FETCHED -> CONFIGURED -> BUILT -> MERGED
    - Calling a step out of order raises SubsystemStateError
    - Every failure is fatal; nothing is retried
    - All processes go through the ProcessRunner so the state machine can be
      driven by a fake runner in tests
"""

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from ..config.build_config import BuildConfig
from ..errors import ExternalProcessError, MissingDependencyError, SubsystemStateError
from ..packages.submodules import SPDK, SubmoduleSynchronizer
from ..process_runner import ProcessRunner
from .directives import LinkDirective

logger = logging.getLogger(__name__)

FAT_LIBRARY = "spdk_fat"
FAT_SHARED_OBJECT = f"lib{FAT_LIBRARY}.so"

# Unit-test mock library; defines symbols that clash with the real ones
EXCLUDED_ARCHIVES = frozenset({"libspdk_ut_mock.a"})

# Linked into the shared object, in this order
MERGE_SYSTEM_LIBRARIES = ("aio", "numa", "uuid", "crypto")

# Required by consumers of libspdk_fat.so, in this order
CONSUMER_LIBRARIES = ("aio", "numa", "uuid", "crypto", "stdc++", "ssl")

WRAPPER_HEADER = "wrapper.h"


class SubsystemState(Enum):
    """Progress of the external build."""

    NOT_FETCHED = "not_fetched"
    FETCHED = "fetched"
    CONFIGURED = "configured"
    BUILT = "built"
    MERGED = "merged"


@dataclass(frozen=True)
class ExternalArtifact:
    """The merged shared object and how it was produced."""

    shared_object: Path
    archives: Tuple[Path, ...]
    system_libraries: Tuple[str, ...]
    installed_copy: Optional[Path] = None

    def link_directives(self) -> List[LinkDirective]:
        """Directives for linking against the merged shared object."""
        directives = [LinkDirective.lib(FAT_LIBRARY)]
        directives.extend(LinkDirective.lib(lib) for lib in CONSUMER_LIBRARIES)
        directives.append(LinkDirective.search(self.shared_object.parent))
        directives.append(LinkDirective.rerun_if_changed(WRAPPER_HEADER))
        return directives


class ExternalSubsystemBuilder:
    """
    Drives the SPDK fetch/configure/make pipeline and the whole-archive merge.

    Example usage:
        builder = ExternalSubsystemBuilder(config, runner, synchronizer)
        artifact = builder.run()
    """

    def __init__(
        self,
        config: BuildConfig,
        runner: ProcessRunner,
        synchronizer: SubmoduleSynchronizer,
        cc: Optional[str] = None
    ):
        """
        Initialize external subsystem builder.

        Args:
            config: Build configuration
            runner: Process runner
            synchronizer: Used to fetch the spdk/ tree
            cc: C compiler driver used for the merge link (default: config.cc or 'cc')
        """
        self.config = config
        self.runner = runner
        self.synchronizer = synchronizer
        self.cc = cc or config.cc or "cc"
        self.state = SubsystemState.NOT_FETCHED
        self.source_dir = SPDK.directory(config.project_dir)
        self.artifact: Optional[ExternalArtifact] = None

    def _require(self, expected: SubsystemState, step: str) -> None:
        if self.state is not expected:
            raise SubsystemStateError(
                f"Cannot {step} SPDK in state '{self.state.value}' "
                + f"(expected '{expected.value}')"
            )

    def fetch(self) -> None:
        """Make sure the spdk/ tree (and its own submodules) is present."""
        self._require(SubsystemState.NOT_FETCHED, "fetch")
        self.synchronizer.ensure(SPDK)
        self.state = SubsystemState.FETCHED

    def configure(self) -> None:
        """Run `./configure --without-isal`."""
        self._require(SubsystemState.FETCHED, "configure")
        logger.info("Configuring SPDK")
        cmd = ["bash", "./configure", "--without-isal"]
        self.runner.run(cmd, cwd=self.source_dir, capture=False).check("configure SPDK")
        self.state = SubsystemState.CONFIGURED

    def build(self) -> None:
        """Run `make -j<jobs>`."""
        self._require(SubsystemState.CONFIGURED, "build")
        logger.info(f"Building SPDK with {self.config.jobs} job(s)")
        cmd = ["make", f"-j{self.config.jobs}"]
        self.runner.run(cmd, cwd=self.source_dir, capture=False).check("make SPDK")
        self.state = SubsystemState.BUILT

    def collect_archives(self) -> List[Path]:
        """
        Static archives to merge: SPDK's, then DPDK's, each sorted by name.

        Raises:
            MissingDependencyError: If a library directory does not exist
        """
        archives: List[Path] = []
        for lib_dir in (self.source_dir / "build" / "lib", self.source_dir / "dpdk" / "build" / "lib"):
            if not lib_dir.is_dir():
                raise MissingDependencyError(
                    f"SPDK library directory not found: {lib_dir}", hint=None
                )
            for entry in sorted(lib_dir.iterdir(), key=lambda p: p.name):
                name = entry.name
                if name in EXCLUDED_ARCHIVES:
                    continue
                if name.startswith("lib") and name.endswith(".a"):
                    archives.append(entry)
        return archives

    def merge_command(self, output: Path, archives: List[Path]) -> List[str]:
        """Whole-archive link command producing the fat shared object."""
        cmd = [self.cc, "-shared", "-o", str(output)]
        cmd.extend(f"-l{lib}" for lib in MERGE_SYSTEM_LIBRARIES)
        cmd.append("-Wl,--whole-archive")
        cmd.extend(str(a) for a in archives)
        cmd.append("-Wl,--no-whole-archive")
        return cmd

    def merge(self) -> ExternalArtifact:
        """
        Link every archive into libspdk_fat.so and install a copy.

        Returns:
            ExternalArtifact

        Raises:
            ExternalProcessError: If the link fails
        """
        self._require(SubsystemState.BUILT, "merge")
        archives = self.collect_archives()
        output = self.config.out_dir / FAT_SHARED_OBJECT
        output.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Merging {len(archives)} archives into {FAT_SHARED_OBJECT}")
        self.runner.run(self.merge_command(output, archives)).check(f"link {FAT_SHARED_OBJECT}")

        install_dir = self.config.resolved_artifact_dir()
        installed = install_dir / FAT_SHARED_OBJECT
        try:
            install_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(output, installed)
        except OSError as e:
            raise ExternalProcessError(
                f"copy {FAT_SHARED_OBJECT}", ["cp", str(output), str(installed)],
                message=f"Failed to copy {output} to {installed}: {e}"
            ) from e

        self.artifact = ExternalArtifact(
            shared_object=output,
            archives=tuple(archives),
            system_libraries=MERGE_SYSTEM_LIBRARIES,
            installed_copy=installed,
        )
        self.state = SubsystemState.MERGED
        return self.artifact

    def run(self) -> ExternalArtifact:
        """Run every remaining step in order."""
        if self.state is SubsystemState.NOT_FETCHED:
            self.fetch()
        if self.state is SubsystemState.FETCHED:
            self.configure()
        if self.state is SubsystemState.CONFIGURED:
            self.build()
        if self.state is SubsystemState.BUILT:
            return self.merge()
        if self.artifact is None:
            raise SubsystemStateError(f"SPDK reached state '{self.state.value}' without an artifact")
        return self.artifact
