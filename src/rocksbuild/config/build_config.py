"""
Build configuration loading.

BuildConfig.load() is the single place where rocksbuild reads the process
environment. It combines environment variables (the Cargo build-script
interface: TARGET, OUT_DIR, NUM_JOBS, ...), the optional rocksbuild.ini
file and built-in defaults into one immutable value that is passed
explicitly to every build component.

Precedence: explicit overrides > environment > rocksbuild.ini > defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

import psutil

from ..errors import ConfigError
from .ini_parser import ProjectConfig, split_list
from .target import TargetTriple

logger = logging.getLogger(__name__)

INI_FILENAME = "rocksbuild.ini"
DEFAULT_CXX_STD = "-std=c++17"

# Libraries whose build can be replaced by a prebuilt copy
OVERRIDABLE_LIBRARIES = ("ROCKSDB", "SNAPPY")

# Feature name -> environment variable carrying its include directory
DEPENDENCY_INCLUDE_VARS = {
    "lz4": "DEP_LZ4_INCLUDE",
    "zstd": "DEP_ZSTD_INCLUDE",
    "zlib": "DEP_Z_INCLUDE",
    "bzip2": "DEP_BZIP2_INCLUDE",
}


@dataclass(frozen=True)
class LibraryOverride:
    """Per-library link overrides (<LIB>_COMPILE, <LIB>_LIB_DIR, <LIB>_STATIC)."""

    force_compile: bool = False
    lib_dir: Optional[Path] = None
    static: bool = False


@dataclass(frozen=True)
class SubmoduleSettings:
    """Per-submodule settings from rocksbuild.ini."""

    archive_url: Optional[str] = None
    archive_sha256: Optional[str] = None


@dataclass(frozen=True)
class BuildConfig:
    """Resolved, immutable build configuration."""

    project_dir: Path
    out_dir: Path
    target: TargetTriple
    features: FrozenSet[str] = frozenset()
    target_features: FrozenSet[str] = frozenset()
    jobs: int = 1
    big_endian: bool = False
    cxx_std: str = DEFAULT_CXX_STD
    rocksdb_include_dir: Optional[Path] = None
    dependency_includes: Tuple[Tuple[str, Path], ...] = ()
    library_overrides: Tuple[Tuple[str, LibraryOverride], ...] = ()
    submodules: Tuple[Tuple[str, SubmoduleSettings], ...] = ()
    git_root: Optional[Path] = None
    artifact_dir: Optional[Path] = None
    cxx: Optional[str] = None
    cc: Optional[str] = None
    ar: Optional[str] = None
    child_env: Tuple[Tuple[str, str], ...] = field(default=(), repr=False)

    @classmethod
    def load(
        cls,
        project_dir: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        ini_path: Optional[Path] = None,
        overrides: Optional[Mapping[str, object]] = None
    ) -> "BuildConfig":
        """
        Load configuration from the environment and rocksbuild.ini.

        Args:
            project_dir: Project root (defaults to CARGO_MANIFEST_DIR, then cwd)
            environ: Environment mapping (defaults to os.environ)
            ini_path: Explicit rocksbuild.ini path (defaults to project_dir/rocksbuild.ini)
            overrides: Values from the command line, keyed like the INI file
                ('features', 'target', 'jobs', 'out_dir')

        Returns:
            BuildConfig

        Raises:
            ConfigError: If a value is malformed
        """
        env = dict(os.environ if environ is None else environ)
        overrides = dict(overrides or {})

        if project_dir is None:
            project_dir = Path(env.get("CARGO_MANIFEST_DIR") or Path.cwd())
        project_dir = Path(project_dir).resolve()

        # rocksbuild.ini (optional)
        settings: Dict[str, str] = {}
        ini_features = []
        submodules = []
        if ini_path is None:
            ini_path = project_dir / INI_FILENAME
            ini = ProjectConfig(ini_path, project_dir) if ini_path.exists() else None
        else:
            ini = ProjectConfig(ini_path, project_dir)
        if ini is not None:
            logger.debug(f"Loading {ini_path}")
            settings = ini.get_settings()
            ini_features = ini.get_features()
            for name in ini.get_submodules():
                sub = ini.get_submodule_config(name)
                submodules.append((name, SubmoduleSettings(
                    archive_url=sub.get("archive_url") or None,
                    archive_sha256=sub.get("archive_sha256") or None,
                )))

        def pick(key: str, env_var: Optional[str] = None) -> Optional[str]:
            if overrides.get(key) not in (None, ""):
                return str(overrides[key])
            if env_var and env.get(env_var):
                return env[env_var]
            return settings.get(key) or None

        # Target triple and CPU features
        triple_str = pick("target", "TARGET")
        target = TargetTriple.parse(triple_str) if triple_str else TargetTriple.host()

        target_features = frozenset(split_list(pick("target_features", "CARGO_CFG_TARGET_FEATURE") or ""))

        endian = env.get("CARGO_CFG_TARGET_ENDIAN", "").lower()
        big_endian = endian == "big" if endian else target.is_big_endian

        # Features: command line, CARGO_FEATURE_* variables and the INI file
        features = set(ini_features)
        for name, value in env.items():
            if name.startswith("CARGO_FEATURE_") and value:
                features.add(name[len("CARGO_FEATURE_"):].lower().replace("_", "-"))
        cli_features = overrides.get("features")
        if cli_features:
            features.update(cli_features if not isinstance(cli_features, str) else split_list(cli_features))

        # Parallelism hint
        jobs_str = pick("jobs", "NUM_JOBS")
        if jobs_str:
            try:
                jobs = int(jobs_str)
            except ValueError as e:
                raise ConfigError(f"Invalid job count: {jobs_str!r}") from e
            if jobs < 1:
                raise ConfigError(f"Job count must be positive, got {jobs}")
        else:
            jobs = psutil.cpu_count(logical=True) or 1

        out_dir_str = pick("out_dir", "OUT_DIR")
        out_dir = Path(out_dir_str) if out_dir_str else project_dir / ".rocksbuild" / "out"
        if not out_dir.is_absolute():
            out_dir = project_dir / out_dir

        git_root_str = settings.get("git_root")
        artifact_str = pick("artifact_dir", "ROCKSBUILD_ARTIFACT_DIR")

        # Include overrides
        rocksdb_include = env.get("ROCKSDB_INCLUDE_DIR")
        dependency_includes = []
        for feature, var in sorted(DEPENDENCY_INCLUDE_VARS.items()):
            if env.get(var):
                dependency_includes.append((feature, Path(env[var])))

        # Per-library link overrides
        library_overrides = []
        for lib in OVERRIDABLE_LIBRARIES:
            compile_value = env.get(f"{lib}_COMPILE", "")
            lib_dir = env.get(f"{lib}_LIB_DIR")
            library_overrides.append((lib, LibraryOverride(
                force_compile=compile_value.lower() == "true" or compile_value == "1",
                lib_dir=Path(lib_dir) if lib_dir else None,
                static=f"{lib}_STATIC" in env,
            )))

        return cls(
            project_dir=project_dir,
            out_dir=out_dir,
            target=target,
            features=frozenset(features),
            target_features=target_features,
            jobs=jobs,
            big_endian=big_endian,
            cxx_std=normalize_cxx_standard(env.get("ROCKSDB_CXX_STD")),
            rocksdb_include_dir=Path(rocksdb_include) if rocksdb_include else None,
            dependency_includes=tuple(dependency_includes),
            library_overrides=tuple(library_overrides),
            submodules=tuple(sorted(submodules, key=lambda item: item[0])),
            git_root=Path(git_root_str) if git_root_str else None,
            artifact_dir=Path(artifact_str) if artifact_str else None,
            cxx=env.get("CXX") or None,
            cc=env.get("CC") or None,
            ar=env.get("AR") or None,
            child_env=tuple(sorted(env.items())),
        )

    def has_feature(self, name: str) -> bool:
        return name in self.features

    def include_dir(self) -> Path:
        """RocksDB public include directory (ROCKSDB_INCLUDE_DIR or rocksdb/include)."""
        if self.rocksdb_include_dir is not None:
            return self.rocksdb_include_dir
        return self.project_dir / "rocksdb" / "include"

    def dependency_include(self, feature: str) -> Optional[Path]:
        return dict(self.dependency_includes).get(feature)

    def library_override(self, lib: str) -> LibraryOverride:
        return dict(self.library_overrides).get(lib.upper(), LibraryOverride())

    def submodule_settings(self, name: str) -> SubmoduleSettings:
        return dict(self.submodules).get(name, SubmoduleSettings())

    def resolved_git_root(self) -> Path:
        """Directory the top-level `git submodule update` runs in."""
        return self.git_root if self.git_root is not None else self.project_dir.parent

    def resolved_artifact_dir(self) -> Path:
        """Where the merged shared object is copied for executables to find."""
        if self.artifact_dir is not None:
            return self.artifact_dir
        return self.out_dir.parent.parent.parent

    def environment(self) -> Dict[str, str]:
        """Environment captured at load time, handed to child processes."""
        return dict(self.child_env)


def normalize_cxx_standard(value: Optional[str]) -> str:
    """
    Normalize a C++ standard override to compiler-flag form.

    Example:
        >>> normalize_cxx_standard('c++20')
        '-std=c++20'
        >>> normalize_cxx_standard('-std=gnu++17')
        '-std=gnu++17'
    """
    if not value:
        return DEFAULT_CXX_STD
    value = value.strip()
    if not value.startswith("-std="):
        return f"-std={value}"
    return value
