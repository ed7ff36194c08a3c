"""Archive Creator.

This module handles creating static library archives from compiled object
files using the toolchain's archiver.

Design:
    - Wraps archiver command execution through the ProcessRunner
    - GNU archivers get 'rcs', MSVC gets 'lib /OUT:'
    - Archiver stderr is surfaced verbatim in ArchiveError
    - Logs archive size information
"""

import logging
from pathlib import Path
from typing import List, Sequence

from ..errors import ArchiveError
from ..process_runner import ProcessRunner

logger = logging.getLogger(__name__)


class ArchiveCreator:
    """Creates static library archives from object files.

    This class handles:
    - Running archiver (ar / lib.exe) commands
    - Validating archive creation
    - Reporting size information
    """

    def __init__(self, runner: ProcessRunner):
        """Initialize archive creator.

        Args:
            runner: Process runner used to invoke the archiver
        """
        self.runner = runner

    @staticmethod
    def archive_command(
        ar: str,
        archive_path: Path,
        object_files: Sequence[Path],
        msvc: bool = False
    ) -> List[str]:
        """Build the archiver command line.

        Example:
            >>> ArchiveCreator.archive_command("ar", Path("libx.a"), [Path("a.o")])
            ['ar', 'rcs', 'libx.a', 'a.o']
        """
        if msvc:
            cmd = [ar, "/nologo", f"/OUT:{archive_path}"]
        else:
            # 'rcs' flags: r=insert/replace, c=create, s=index (ranlib)
            cmd = [ar, "rcs", str(archive_path)]
        cmd.extend(str(obj) for obj in object_files)
        return cmd

    def create_archive(
        self,
        ar: str,
        archive_path: Path,
        object_files: Sequence[Path],
        msvc: bool = False
    ) -> Path:
        """Create static library archive from object files.

        Args:
            ar: Archiver program (ar, llvm-ar, lib)
            archive_path: Path for output archive
            object_files: Object file paths to archive
            msvc: Use MSVC lib.exe syntax

        Returns:
            Path to generated archive file

        Raises:
            ArchiveError: If archive creation fails
        """
        if not object_files:
            raise ArchiveError(
                f"archive {archive_path.name}", [ar],
                message=f"No object files provided for {archive_path.name}"
            )

        archive_path.parent.mkdir(parents=True, exist_ok=True)
        # ar 'r' appends to a stale archive left by an earlier build
        if archive_path.exists():
            archive_path.unlink()

        logger.info(f"Creating {archive_path.name} from {len(object_files)} object files")

        cmd = self.archive_command(ar, archive_path, object_files, msvc)
        self.runner.run(cmd).check(f"archive {archive_path.name}", ArchiveError)

        if archive_path.exists():
            size = archive_path.stat().st_size
            logger.info(f"Created {archive_path.name}: {size:,} bytes ({size / 1024 / 1024:.2f} MB)")

        return archive_path
