"""Configuration loading modules for rocksbuild."""

from .build_config import BuildConfig, LibraryOverride, SubmoduleSettings, normalize_cxx_standard
from .ini_parser import ProjectConfig, ProjectConfigError
from .target import TargetTriple

__all__ = [
    "BuildConfig",
    "LibraryOverride",
    "SubmoduleSettings",
    "normalize_cxx_standard",
    "ProjectConfig",
    "ProjectConfigError",
    "TargetTriple",
]
