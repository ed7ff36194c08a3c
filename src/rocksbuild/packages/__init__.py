"""Third-party source management for rocksbuild."""

from .downloader import ChecksumError, DownloadError, ExtractionError, PackageDownloader
from .submodules import ROCKSDB, SPDK, SUBMODULES, Submodule, SubmoduleSynchronizer

__all__ = [
    "ChecksumError",
    "DownloadError",
    "ExtractionError",
    "PackageDownloader",
    "ROCKSDB",
    "SPDK",
    "SUBMODULES",
    "Submodule",
    "SubmoduleSynchronizer",
]
