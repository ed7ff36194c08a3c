"""Source Set Assembler.

This module builds the ordered list of C++ files that make up the RocksDB
static library for one target.

Design:
    - Base manifest is the packaged RocksDB LIB_SOURCES list
    - final = (base + added) - excluded, first-seen order, no duplicates
    - util/build_version.cc is replaced by the project's pre-generated copy
    - Empty source trees fail fast, before any compiler runs
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from ..errors import MissingDependencyError

logger = logging.getLogger(__name__)

ASSETS_DIR = Path(__file__).parent.parent / "assets"
LIB_SOURCES_FILE = ASSETS_DIR / "rocksdb_lib_sources.txt"

ROCKSDB_DIR = "rocksdb"
GENERATED_VERSION_SOURCE = "build_version.cc"
UPSTREAM_VERSION_SOURCE = "util/build_version.cc"


@dataclass(frozen=True)
class SourceManifest:
    """Ordered source files relative to the project root."""

    root: Path
    files: Tuple[str, ...]

    def __len__(self) -> int:
        return len(self.files)

    def __contains__(self, path: object) -> bool:
        return path in self.files

    def paths(self) -> List[Path]:
        """Absolute source paths in manifest order."""
        return [self.root / f for f in self.files]


def load_lib_sources(path: Optional[Path] = None) -> List[str]:
    """
    Read a LIB_SOURCES list (one path per line, relative to rocksdb/).

    Blank lines and '#' comments are ignored.

    Args:
        path: List file (defaults to the packaged rocksdb_lib_sources.txt)

    Returns:
        Source paths in file order
    """
    path = path or LIB_SOURCES_FILE
    with open(path, "r", encoding="utf-8") as f:
        lines = [line.strip() for line in f]
    return [line for line in lines if line and not line.startswith("#")]


def fail_on_empty_directory(directory: Path) -> None:
    """
    Ensure a third-party source tree has been fetched.

    Args:
        directory: Source tree (e.g. <project>/rocksdb)

    Raises:
        MissingDependencyError: If the directory is missing or empty
    """
    if not directory.is_dir():
        raise MissingDependencyError(
            f"The `{directory.name}` directory does not exist, did you forget to pull the submodules?"
        )
    if not any(directory.iterdir()):
        raise MissingDependencyError(
            f"The `{directory.name}` directory is empty, did you forget to pull the submodules?"
        )


class SourceSetAssembler:
    """Assembles the RocksDB source manifest for one platform/feature set.

    Example usage:
        assembler = SourceSetAssembler(project_dir)
        manifest = assembler.assemble(
            added=platform.added_sources + features.added_sources,
            excluded=platform.excluded_sources,
        )
    """

    def __init__(self, project_dir: Path, base_sources: Optional[Iterable[str]] = None):
        """Initialize source set assembler.

        Args:
            project_dir: Project root containing rocksdb/ and build_version.cc
            base_sources: Base list relative to rocksdb/ (defaults to the packaged list)
        """
        self.project_dir = Path(project_dir)
        if base_sources is None:
            base_sources = load_lib_sources()
        self.base_sources = [s for s in base_sources if s != UPSTREAM_VERSION_SOURCE]

    def assemble(
        self,
        added: Iterable[str] = (),
        excluded: Iterable[str] = (),
        check_tree: bool = True
    ) -> SourceManifest:
        """
        Compute the final source manifest.

        Args:
            added: Extra sources relative to rocksdb/
            excluded: Sources to drop, relative to rocksdb/
            check_tree: Verify that rocksdb/ is populated first

        Returns:
            SourceManifest with paths relative to the project root

        Raises:
            MissingDependencyError: If the rocksdb/ tree is absent or empty
        """
        if check_tree:
            fail_on_empty_directory(self.project_dir / ROCKSDB_DIR)

        excluded_set = set(excluded)
        seen = set()
        files: List[str] = []
        for source in list(self.base_sources) + list(added):
            if source in excluded_set or source in seen:
                continue
            seen.add(source)
            files.append(f"{ROCKSDB_DIR}/{source}")

        files.append(GENERATED_VERSION_SOURCE)

        if excluded_set:
            logger.debug(f"Excluded {len(excluded_set)} platform source(s)")
        logger.info(f"Source manifest: {len(files)} files")
        return SourceManifest(root=self.project_dir, files=tuple(files))
