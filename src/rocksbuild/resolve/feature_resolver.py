"""Feature flag resolution.

Turns the enabled feature set (compression codecs, RTTI, allocator,
io_uring, SPDK) and the target's CPU features into a CompilerConfig delta,
extra source files, extra link libraries and pkg-config probes.

Design:
    - Every feature is an independent toggle evaluated here, not scattered
      through the build logic
    - CPU feature flags require BOTH an x86_64 target AND the feature in the
      configured target feature set
    - Include paths for compression libraries come from the peer build; when
      absent the default search paths are trusted
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from ..config.target import TargetTriple
from .compiler_config import CompilerConfig, Define

logger = logging.getLogger(__name__)

KNOWN_FEATURES = frozenset({
    "snappy", "lz4", "zstd", "zlib", "bzip2", "rtti", "jemalloc", "io-uring", "spdk",
})

# feature -> define enabling the codec in RocksDB
COMPRESSION_DEFINES: Tuple[Tuple[str, str], ...] = (
    ("lz4", "LZ4"),
    ("zstd", "ZSTD"),
    ("zlib", "ZLIB"),
    ("bzip2", "BZIP2"),
)


@dataclass(frozen=True)
class CpuFeatureRule:
    """Compiler flag (and optional define) enabled by one CPU feature."""

    feature: str
    flag: str
    define: Optional[str] = None
    skip_android: bool = False


# Mirrors build_tools/build_detect_platform in RocksDB. SSE 4.2 enables the
# hardware CRC32C path.
CPU_FEATURE_RULES: Tuple[CpuFeatureRule, ...] = (
    CpuFeatureRule("sse2", "-msse2"),
    CpuFeatureRule("sse4.1", "-msse4.1"),
    CpuFeatureRule("sse4.2", "-msse4.2", "HAVE_SSE42"),
    CpuFeatureRule("avx2", "-mavx2", "HAVE_AVX2"),
    CpuFeatureRule("bmi1", "-mbmi", "HAVE_BMI"),
    CpuFeatureRule("lzcnt", "-mlzcnt", "HAVE_LZCNT"),
    CpuFeatureRule("pclmulqdq", "-mpclmul", "HAVE_PCLMUL", skip_android=True),
)

WINDOWS_JEMALLOC_SOURCE = "port/win/win_jemalloc.cc"

LIB_SOURCES_LIST = "rocksdb_lib_sources.txt"
SPDK_LIB_SOURCES_LIST = "rocksdb_lib_sources_spdk.txt"


@dataclass(frozen=True)
class FeatureResolution:
    """Build additions implied by the enabled features.

    Source paths are relative to the RocksDB source root; include paths are
    absolute. base_sources names the packaged LIB_SOURCES list to start from.
    """

    config: CompilerConfig
    base_sources: str = LIB_SOURCES_LIST
    added_sources: Tuple[str, ...] = ()
    link_libraries: Tuple[str, ...] = ()  # dynamic system libraries
    pkg_config_probes: Tuple[str, ...] = ()


class FeatureFlagResolver:
    """
    Resolves enabled features into compiler settings.

    Example usage:
        resolver = FeatureFlagResolver(project_dir, dependency_includes={"lz4": Path("/opt/lz4/include")})
        resolution = resolver.resolve({"lz4", "rtti"}, triple, target_features={"sse4.2"})
    """

    def __init__(
        self,
        project_dir: Path,
        dependency_includes: Optional[Mapping[str, Path]] = None
    ):
        """
        Initialize feature resolver.

        Args:
            project_dir: Project root containing the rocksdb/ and snappy/ trees
            dependency_includes: Feature name -> include dir from the peer build
        """
        self.project_dir = Path(project_dir)
        self.dependency_includes: Dict[str, Path] = dict(dependency_includes or {})

    def resolve(
        self,
        features: Iterable[str],
        triple: TargetTriple,
        target_features: Iterable[str] = ()
    ) -> FeatureResolution:
        """
        Resolve features for a target.

        Args:
            features: Enabled feature names
            triple: Target triple
            target_features: CPU features available at compile time

        Returns:
            FeatureResolution
        """
        enabled: FrozenSet[str] = frozenset(features)
        for unknown in sorted(enabled - KNOWN_FEATURES):
            logger.warning(f"Ignoring unknown feature '{unknown}'")

        includes: List[Path] = []
        defines: List[Define] = []
        sources: List[str] = []
        libraries: List[str] = []
        probes: List[str] = []

        base_sources = LIB_SOURCES_LIST
        if "spdk" in enabled:
            base_sources = SPDK_LIB_SOURCES_LIST
            includes.append(self.project_dir / "spdk" / "build" / "include")

        if "snappy" in enabled:
            defines.append(("SNAPPY", "1"))
            includes.append(self.project_dir / "snappy")

        for feature, define in COMPRESSION_DEFINES:
            if feature not in enabled:
                continue
            defines.append((define, "1"))
            include = self.dependency_includes.get(feature)
            if include is not None:
                includes.append(Path(include))

        if "rtti" in enabled:
            defines.append(("USE_RTTI", "1"))

        cpu_flags, cpu_defines = self.resolve_cpu_features(triple, target_features)
        defines.extend(cpu_defines)

        if triple.is_windows and "jemalloc" in enabled:
            sources.append(WINDOWS_JEMALLOC_SOURCE)

        defines.append(("ROCKSDB_SUPPORT_THREAD_LOCAL", None))

        if "jemalloc" in enabled:
            defines.append(("WITH_JEMALLOC", "ON"))

        if "io-uring" in enabled and triple.contains("linux"):
            probes.append("liburing")
            libraries.append("uring")
            defines.append(("ROCKSDB_IOURING_PRESENT", "1"))

        return FeatureResolution(
            config=CompilerConfig(
                include_paths=tuple(includes),
                defines=tuple(defines),
                optional_flags=tuple(cpu_flags),
            ),
            base_sources=base_sources,
            added_sources=tuple(sources),
            link_libraries=tuple(libraries),
            pkg_config_probes=tuple(probes),
        )

    @staticmethod
    def resolve_cpu_features(
        triple: TargetTriple,
        target_features: Iterable[str]
    ) -> Tuple[List[str], List[Define]]:
        """
        Compute CPU-feature flags and defines.

        A rule applies only when the target is x86_64 and the feature is in
        the target feature set; either condition alone is not enough.

        Args:
            triple: Target triple
            target_features: CPU features reported for the target

        Returns:
            Tuple of (flags, defines)

        Example:
            >>> FeatureFlagResolver.resolve_cpu_features(
            ...     TargetTriple.parse("x86_64-unknown-linux-gnu"), {"sse2", "sse4.2"})
            (['-msse2', '-msse4.2'], [('HAVE_SSE42', '1')])
        """
        flags: List[str] = []
        defines: List[Define] = []
        if not triple.is_x86_64:
            return flags, defines

        available = set(target_features)
        for rule in CPU_FEATURE_RULES:
            if rule.feature not in available:
                continue
            if rule.skip_android and triple.is_android:
                continue
            flags.append(rule.flag)
            if rule.define:
                defines.append((rule.define, "1"))
        return flags, defines
