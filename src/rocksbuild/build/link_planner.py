"""Link planning.

Decides, per library, whether to compile it from source or link against a
pre-installed copy, and assembles the final list of link directives.

Design:
    - <LIB>_COMPILE=true/1 forces the source build
    - Otherwise <LIB>_LIB_DIR selects the prebuilt library and skips compilation
    - Directives are emitted in dependency order and never duplicated
"""

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ..config.build_config import BuildConfig, LibraryOverride
from ..config.target import TargetTriple
from ..errors import MissingDependencyError
from ..process_runner import ProcessRunner
from .directives import LinkDirective

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LibraryPlan:
    """How one library gets into the final link."""

    library: str  # ROCKSDB, SNAPPY
    prebuilt: bool
    lib_dir: Optional[Path] = None
    static: bool = False

    @property
    def link_name(self) -> str:
        return self.library.lower()

    def prebuilt_directives(self) -> List[LinkDirective]:
        if not self.prebuilt:
            return []
        return [
            LinkDirective.search(self.lib_dir),
            LinkDirective.lib(self.link_name, "static" if self.static else "dylib"),
        ]


def prebuilt_runtime_directives(triple: TargetTriple) -> List[LinkDirective]:
    """
    C++ runtime needed when linking a prebuilt RocksDB.

    Example:
        >>> [d.render() for d in prebuilt_runtime_directives(TargetTriple.parse("x86_64-unknown-linux-gnu"))]
        ['cargo:rustc-link-lib=dylib=stdc++']
    """
    if triple.contains("apple") or triple.contains("freebsd") or triple.contains("openbsd"):
        return [LinkDirective.lib("c++", "dylib")]
    if triple.contains("linux"):
        return [LinkDirective.lib("stdc++", "dylib")]
    return []


def probe_pkg_config(
    runner: ProcessRunner,
    package: str,
    pkg_config: str = "pkg-config"
) -> List[LinkDirective]:
    """
    Look up a system library with pkg-config.

    Args:
        runner: Process runner
        package: pkg-config package name (e.g. 'liburing')
        pkg_config: pkg-config executable

    Returns:
        Search-path and library directives from `pkg-config --libs`

    Raises:
        MissingDependencyError: If pkg-config does not know the package
    """
    result = runner.run([pkg_config, "--libs", package])
    if not result.success:
        raise MissingDependencyError(
            f"The `{package}` library was requested but is not available via pkg-config\n"
            + result.stderr.strip(),
            hint=f"Install the {package} development package",
        )

    directives: List[LinkDirective] = []
    for token in shlex.split(result.stdout):
        if token.startswith("-L"):
            directives.append(LinkDirective.search(token[2:]))
        elif token.startswith("-l"):
            directives.append(LinkDirective.lib(token[2:]))
    logger.debug(f"pkg-config {package}: {' '.join(d.render() for d in directives)}")
    return directives


def dedup_directives(directives: Iterable[LinkDirective]) -> List[LinkDirective]:
    seen = set()
    out = []
    for directive in directives:
        if directive not in seen:
            seen.add(directive)
            out.append(directive)
    return out


class LinkPlanner:
    """
    Chooses between source builds and prebuilt libraries.

    Example usage:
        planner = LinkPlanner(config)
        plan = planner.plan("ROCKSDB")
        if not plan.prebuilt:
            archive = invoker.compile(...)
    """

    def __init__(self, config: BuildConfig):
        """
        Initialize link planner.

        Args:
            config: Build configuration carrying the per-library overrides
        """
        self.config = config

    def plan(self, library: str) -> LibraryPlan:
        """
        Decide how to link one library.

        Args:
            library: Upper-case library name (ROCKSDB, SNAPPY)

        Returns:
            LibraryPlan
        """
        override: LibraryOverride = self.config.library_override(library)
        if override.force_compile:
            logger.info(f"{library}_COMPILE set, building {library.lower()} from source")
            return LibraryPlan(library, prebuilt=False)
        if override.lib_dir is not None:
            mode = "static" if override.static else "dynamic"
            logger.info(f"Using prebuilt {library.lower()} ({mode}) from {override.lib_dir}")
            return LibraryPlan(library, prebuilt=True, lib_dir=override.lib_dir, static=override.static)
        return LibraryPlan(library, prebuilt=False)

    def library_directives(
        self,
        plan: LibraryPlan,
        compiled: Sequence[LinkDirective] = (),
        system_libraries: Sequence[str] = (),
        extra: Sequence[LinkDirective] = (),
        rerun_dir: Optional[str] = None
    ) -> List[LinkDirective]:
        """
        Directives for one library.

        Args:
            plan: Result of plan()
            compiled: The compiled archive's own directives (source build only)
            system_libraries: OS libraries linked dynamically (source build only)
            extra: Further directives, e.g. from pkg-config (source build only)
            rerun_dir: Source directory whose changes trigger a rebuild

        Returns:
            Ordered directives
        """
        if plan.prebuilt:
            directives = plan.prebuilt_directives()
            if plan.library == "ROCKSDB":
                directives.extend(prebuilt_runtime_directives(self.config.target))
            return directives

        directives: List[LinkDirective] = []
        if rerun_dir:
            directives.append(LinkDirective.rerun_if_changed(rerun_dir))
        directives.extend(compiled)
        directives.extend(LinkDirective.lib(lib, "dylib") for lib in system_libraries)
        directives.extend(extra)
        return directives

    def metadata_directives(self) -> List[LinkDirective]:
        """Root and output directory for dependent builds."""
        return [
            LinkDirective.metadata("cargo_manifest_dir", self.config.project_dir),
            LinkDirective.metadata("out_dir", self.config.out_dir),
        ]
