"""Third-party source tree synchronization.

RocksDB and SPDK are git submodules of the project. Before anything is
compiled, the SubmoduleSynchronizer makes sure their trees are present,
running `git submodule update --init` when a marker file is missing, or
downloading a configured release archive when git is not available.
"""

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..config.build_config import BuildConfig
from ..errors import ExternalProcessError, MissingDependencyError
from ..process_runner import ProcessRunner
from .downloader import PackageDownloader

logger = logging.getLogger(__name__)

# Written into a submodule directory populated from a release archive
ARCHIVE_STAMP = ".rocksbuild-archive"


@dataclass(frozen=True)
class Submodule:
    """A third-party source tree tracked as a git submodule.

    path and marker are relative to the project directory. When
    from_git_root is set the update runs in the repository's git root
    (the parent of the project by default), otherwise in the project.
    """

    name: str
    path: str
    marker: str
    recursive: bool = False
    from_git_root: bool = False

    def directory(self, project_dir: Path) -> Path:
        return project_dir / self.path

    def is_present(self, project_dir: Path) -> bool:
        """True once the tree has been fetched by git or from an archive."""
        if (project_dir / self.marker).exists():
            return True
        return (self.directory(project_dir) / ARCHIVE_STAMP).exists()


ROCKSDB = Submodule("rocksdb", "rocksdb", "rocksdb/AUTHORS", recursive=False, from_git_root=True)
SPDK = Submodule("spdk", "spdk", "spdk/.git", recursive=True, from_git_root=False)

SUBMODULES = {sub.name: sub for sub in (ROCKSDB, SPDK)}


class SubmoduleSynchronizer:
    """
    Ensures third-party source trees are present.

    Example usage:
        sync = SubmoduleSynchronizer(config, ProcessRunner(config.environment()))
        sync.ensure_all()
    """

    def __init__(
        self,
        config: BuildConfig,
        runner: ProcessRunner,
        downloader: Optional[PackageDownloader] = None,
        git: str = "git"
    ):
        """
        Initialize submodule synchronizer.

        Args:
            config: Build configuration
            runner: Process runner for git
            downloader: Archive downloader (created on demand)
            git: git executable
        """
        self.config = config
        self.runner = runner
        self.downloader = downloader
        self.git = git

    def required_submodules(self) -> List[Submodule]:
        """Submodules needed for the configured features."""
        required = [ROCKSDB]
        if self.config.has_feature("spdk"):
            required.append(SPDK)
        return required

    def ensure_all(self) -> List[str]:
        """
        Ensure every required submodule is present.

        Returns:
            Names of the submodules that had to be fetched
        """
        return [sub.name for sub in self.required_submodules() if self.ensure(sub)]

    def ensure(self, submodule: Submodule) -> bool:
        """
        Fetch a submodule if its marker is missing.

        Args:
            submodule: Submodule to check

        Returns:
            True if a fetch was performed, False if already present

        Raises:
            ExternalProcessError: If git fails or is killed
            MissingDependencyError: If the tree is still missing afterwards
        """
        project_dir = self.config.project_dir
        if submodule.is_present(project_dir):
            logger.debug(f"Submodule {submodule.name} already present")
            return False

        settings = self.config.submodule_settings(submodule.name)
        if settings.archive_url and not self.git_available():
            self._fetch_archive(submodule, settings.archive_url, settings.archive_sha256)
        else:
            self._fetch_git(submodule)

        if not submodule.is_present(project_dir):
            raise MissingDependencyError(
                f"Submodule `{submodule.name}` is still missing after fetching "
                + f"({submodule.marker} not found)"
            )
        return True

    def git_available(self) -> bool:
        return shutil.which(self.git) is not None

    def git_command(self, submodule: Submodule) -> List[str]:
        """
        Build the `git submodule update` command for a submodule.

        The pathspec is relative to the directory the command runs in.
        """
        cwd = self._git_cwd(submodule)
        target = submodule.directory(self.config.project_dir)
        cmd = [self.git, "submodule", "update", "--init"]
        if submodule.recursive:
            cmd.append("--recursive")
        cmd.extend(["--", os.path.relpath(target, cwd).replace(os.sep, "/")])
        return cmd

    def _git_cwd(self, submodule: Submodule) -> Path:
        if submodule.from_git_root:
            return self.config.resolved_git_root()
        return self.config.project_dir

    def _fetch_git(self, submodule: Submodule) -> None:
        cwd = self._git_cwd(submodule)
        cmd = self.git_command(submodule)
        logger.info(f"Fetching submodule {submodule.name} in {cwd}")
        self.runner.run(cmd, cwd=cwd, capture=False).check(
            f"git submodule update ({submodule.name})", ExternalProcessError
        )

    def _fetch_archive(self, submodule: Submodule, url: str, checksum: Optional[str]) -> None:
        target = submodule.directory(self.config.project_dir)
        logger.info(f"git not available, downloading {submodule.name} from {url}")
        downloader = self.downloader or PackageDownloader()
        cache_dir = self.config.out_dir / "downloads"
        downloader.download_and_extract(url, cache_dir, target, checksum, strip_top_level=True)
        (target / ARCHIVE_STAMP).write_text(url + "\n", encoding="utf-8")
