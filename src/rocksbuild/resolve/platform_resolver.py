"""
Platform resolution.

Maps a target triple to an OS family and the platform-specific parts of
the RocksDB build: preprocessor defines, POSIX/Windows source swaps, OS
libraries and compiler environment. Pure data; nothing is executed here.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from ..config.target import TargetTriple
from .compiler_config import Define

logger = logging.getLogger(__name__)


class OSFamily(Enum):
    """Operating system families with distinct build settings."""

    WINDOWS = "windows"
    MACOS = "macos"
    IOS = "ios"
    ANDROID = "android"
    LINUX = "linux"
    FREEBSD = "freebsd"
    POSIX = "posix"  # fallback for unrecognized triples


POSIX_DEFINES: Tuple[Define, ...] = (
    ("ROCKSDB_PLATFORM_POSIX", None),
    ("ROCKSDB_LIB_IO_POSIX", None),
)

# POSIX process/file/env layers replaced by native equivalents on Windows
POSIX_ONLY_SOURCES = (
    "port/port_posix.cc",
    "env/env_posix.cc",
    "env/fs_posix.cc",
    "env/io_posix.cc",
)

WINDOWS_SOURCES = (
    "port/win/env_default.cc",
    "port/win/port_win.cc",
    "port/win/xpress_win.cc",
    "port/win/io_win.cc",
    "port/win/win_thread.cc",
    "port/win/env_win.cc",
    "port/win/win_logger.cc",
)

WINDOWS_DEFINES: Tuple[Define, ...] = (
    ("DWIN32", None),
    ("OS_WIN", None),
    ("_MBCS", None),
    ("WIN64", None),
    ("NOMINMAX", None),
    ("ROCKSDB_WINDOWS_UTF8_FILENAMES", None),
)

WINDOWS_SYSTEM_LIBS = ("rpcrt4", "shlwapi")

IOS_DEPLOYMENT_TARGET = "11.0"


@dataclass(frozen=True)
class PlatformResolution:
    """Platform-specific build settings for one target triple.

    Source paths are relative to the RocksDB source root.
    """

    os_family: OSFamily
    defines: Tuple[Define, ...] = ()
    excluded_sources: Tuple[str, ...] = ()
    added_sources: Tuple[str, ...] = ()
    link_libraries: Tuple[str, ...] = ()  # dynamic OS libraries
    compiler_env: Tuple[Tuple[str, str], ...] = ()

    def compiler_env_dict(self) -> Dict[str, str]:
        return dict(self.compiler_env)


class PlatformResolver:
    """
    Resolves target triples into PlatformResolution values.

    Exactly one OS family is selected. The checks run in a fixed order
    because triples overlap: iOS triples contain "apple", Android triples
    contain "linux". Unrecognized triples fall back to the generic POSIX
    branch without error.

    Example usage:
        resolution = PlatformResolver().resolve(TargetTriple.parse("x86_64-pc-windows-msvc"))
        assert "env/env_posix.cc" in resolution.excluded_sources
    """

    def resolve(self, triple: TargetTriple) -> PlatformResolution:
        """
        Resolve platform settings for a triple.

        Args:
            triple: Target triple

        Returns:
            PlatformResolution
        """
        if triple.contains("apple-ios"):
            return PlatformResolution(
                os_family=OSFamily.IOS,
                defines=(
                    ("OS_MACOSX", None),
                    ("IOS_CROSS_COMPILE", None),
                    ("PLATFORM", "IOS"),
                    ("NIOSTATS_CONTEXT", None),
                    ("NPERF_CONTEXT", None),
                ) + POSIX_DEFINES,
                compiler_env=(("IPHONEOS_DEPLOYMENT_TARGET", IOS_DEPLOYMENT_TARGET),),
            )
        if triple.contains("darwin"):
            return self._posix(OSFamily.MACOS, "OS_MACOSX")
        if triple.contains("android"):
            return self._posix(OSFamily.ANDROID, "OS_ANDROID")
        if triple.contains("linux"):
            return self._posix(OSFamily.LINUX, "OS_LINUX")
        if triple.contains("freebsd"):
            return self._posix(OSFamily.FREEBSD, "OS_FREEBSD")
        if triple.contains("windows"):
            return self._windows(triple)

        logger.debug(f"Unrecognized target '{triple}', using generic POSIX settings")
        return self._posix(OSFamily.POSIX, None)

    @staticmethod
    def _posix(family: OSFamily, os_define: Optional[str]) -> PlatformResolution:
        defines: Tuple[Define, ...] = ((os_define, None),) if os_define else ()
        return PlatformResolution(os_family=family, defines=defines + POSIX_DEFINES)

    @staticmethod
    def _windows(triple: TargetTriple) -> PlatformResolution:
        defines = WINDOWS_DEFINES
        if str(triple) == "x86_64-pc-windows-gnu":
            # MinGW: create localtime_r wrappers and use Vista-level headers
            defines = defines + (
                ("_POSIX_C_SOURCE", "1"),
                ("_WIN32_WINNT", "_WIN32_WINNT_VISTA"),
            )
        return PlatformResolution(
            os_family=OSFamily.WINDOWS,
            defines=defines,
            excluded_sources=POSIX_ONLY_SOURCES,
            added_sources=WINDOWS_SOURCES,
            link_libraries=WINDOWS_SYSTEM_LIBS,
        )
