"""Release archive fallback for submodules.

When git cannot fetch a submodule, its configured release archive is
downloaded into the build's download cache, checked against the pinned
SHA-256 and unpacked in place of the submodule tree.

Design:
    - Archives are written to "<name>.part" and renamed once complete
    - A cached archive is re-verified before reuse, never downloaded again
    - GitHub-style archives wrap everything in one top-level directory,
      which is dropped on extraction
"""

import hashlib
import logging
import shutil
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from tqdm import tqdm

from ..errors import BuildError

logger = logging.getLogger(__name__)

TAR_SUFFIXES = (".tar.gz", ".tgz", ".tar.bz2", ".tar.xz")
REQUEST_TIMEOUT = 30


class DownloadError(BuildError):
    """An archive could not be fetched."""


class ChecksumError(BuildError):
    """An archive does not match its pinned SHA-256."""


class ExtractionError(BuildError):
    """An archive could not be unpacked."""


def archive_name(url: str) -> str:
    """File name of the archive a URL points at."""
    return Path(urlparse(url).path).name


def _check_digest(source: str, actual: str, expected: Optional[str]) -> None:
    if expected and actual.lower() != expected.lower():
        raise ChecksumError(
            f"Checksum mismatch for {source}\n"
            + f"Expected: {expected}\n"
            + f"Got: {actual}"
        )


class PackageDownloader:
    """
    Fetches, verifies and unpacks release archives.

    Example usage:
        downloader = PackageDownloader()
        downloader.download_and_extract(url, out_dir / "downloads", project_dir / "spdk", sha256)
    """

    def __init__(self, chunk_size: int = 64 * 1024):
        self.chunk_size = chunk_size

    def download(
        self,
        url: str,
        dest_path: Path,
        checksum: Optional[str] = None,
        show_progress: bool = True,
    ) -> Path:
        """
        Stream a URL to dest_path.

        Raises:
            DownloadError: On an HTTP or connection failure
            ChecksumError: If the content does not match checksum
        """
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        partial = dest_path.with_name(dest_path.name + ".part")
        digest = hashlib.sha256()

        logger.info(f"Downloading {url}")
        try:
            response = requests.get(url, stream=True, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            total = int(response.headers.get("content-length", 0)) or None
            with open(partial, "wb") as f, tqdm(
                total=total,
                unit="B",
                unit_scale=True,
                unit_divisor=1024,
                desc=archive_name(url),
                disable=not show_progress,
            ) as progress:
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    f.write(chunk)
                    digest.update(chunk)
                    progress.update(len(chunk))
            _check_digest(url, digest.hexdigest(), checksum)
            partial.replace(dest_path)
        except requests.RequestException as e:
            raise DownloadError(f"Failed to download {url}: {e}") from e
        finally:
            partial.unlink(missing_ok=True)
        return dest_path

    def verify_checksum(self, file_path: Path, expected: str) -> None:
        """
        Raises:
            ChecksumError: If the file's SHA-256 is not `expected`
        """
        digest = hashlib.sha256()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                digest.update(chunk)
        _check_digest(str(file_path), digest.hexdigest(), expected)

    def extract_archive(
        self,
        archive_path: Path,
        dest_dir: Path,
        strip_top_level: bool = False
    ) -> Path:
        """
        Unpack a .zip or tar archive into dest_dir.

        Args:
            archive_path: Archive file
            dest_dir: Directory to unpack into
            strip_top_level: Move the contents of a single top-level directory
                (e.g. 'spdk-23.01/' in GitHub archives) up into dest_dir

        Returns:
            dest_dir

        Raises:
            ExtractionError: If the archive is missing, of an unknown format or corrupt
        """
        archive_path = Path(archive_path)
        dest_dir = Path(dest_dir)
        if not archive_path.exists():
            raise ExtractionError(f"Archive not found: {archive_path}")
        if archive_path.suffix == ".zip":
            opener = zipfile.ZipFile
        elif archive_path.name.endswith(TAR_SUFFIXES):
            opener = tarfile.open
        else:
            raise ExtractionError(f"Unsupported archive format: {archive_path.suffix}")

        dest_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Extracting {archive_path.name} into {dest_dir}")
        try:
            with tempfile.TemporaryDirectory(dir=dest_dir.parent) as tmp:
                staging = Path(tmp)
                with opener(archive_path) as archive:
                    archive.extractall(staging)
                entries = list(staging.iterdir())
                root = staging
                if strip_top_level and len(entries) == 1 and entries[0].is_dir():
                    root = entries[0]
                for entry in root.iterdir():
                    shutil.move(str(entry), str(dest_dir / entry.name))
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise ExtractionError(f"Failed to extract {archive_path}: {e}") from e
        return dest_dir

    def download_and_extract(
        self,
        url: str,
        cache_dir: Path,
        extract_dir: Path,
        checksum: Optional[str] = None,
        show_progress: bool = True,
        strip_top_level: bool = True,
    ) -> Path:
        """Fetch an archive into cache_dir, reusing a verified cached copy, and unpack it."""
        archive_path = Path(cache_dir) / archive_name(url)
        if archive_path.exists():
            logger.info(f"Using cached {archive_path.name}")
            if checksum:
                self.verify_checksum(archive_path, checksum)
        else:
            self.download(url, archive_path, checksum, show_progress)
        return self.extract_archive(archive_path, extract_dir, strip_top_level)
