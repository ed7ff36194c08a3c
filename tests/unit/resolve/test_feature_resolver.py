"""
Unit tests for FeatureFlagResolver.

Tests compression codecs, RTTI, jemalloc, io_uring and the CPU feature
conjunction rule.
"""

import logging

import pytest
from pathlib import Path

from rocksbuild.config import TargetTriple
from rocksbuild.resolve import FeatureFlagResolver
from rocksbuild.resolve.feature_resolver import (
    LIB_SOURCES_LIST,
    SPDK_LIB_SOURCES_LIST,
    WINDOWS_JEMALLOC_SOURCE,
)

LINUX = TargetTriple.parse("x86_64-unknown-linux-gnu")
ARM_LINUX = TargetTriple.parse("aarch64-unknown-linux-gnu")
ANDROID_X86 = TargetTriple.parse("x86_64-linux-android")
WINDOWS = TargetTriple.parse("x86_64-pc-windows-msvc")
MACOS = TargetTriple.parse("aarch64-apple-darwin")


@pytest.fixture
def resolver(tmp_path):
    return FeatureFlagResolver(tmp_path, dependency_includes={"lz4": Path("/opt/lz4/include")})


class TestCompression:
    """Codec defines and include paths."""

    def test_snappy(self, resolver, tmp_path):
        config = resolver.resolve({"snappy"}, LINUX).config
        assert ("SNAPPY", "1") in config.defines
        assert tmp_path / "snappy" in config.include_paths

    def test_lz4_uses_peer_include(self, resolver):
        config = resolver.resolve({"lz4"}, LINUX).config
        assert ("LZ4", "1") in config.defines
        assert Path("/opt/lz4/include") in config.include_paths

    def test_zstd_without_peer_include(self, resolver):
        config = resolver.resolve({"zstd"}, LINUX).config
        assert ("ZSTD", "1") in config.defines
        assert config.include_paths == ()

    @pytest.mark.parametrize("feature,define", [("zlib", "ZLIB"), ("bzip2", "BZIP2")])
    def test_other_codecs(self, resolver, feature, define):
        assert (define, "1") in resolver.resolve({feature}, LINUX).config.defines

    def test_disabled_codec_absent(self, resolver):
        config = resolver.resolve(set(), LINUX).config
        assert not config.has_define("LZ4")
        assert not config.has_define("SNAPPY")


class TestToggles:
    """RTTI, jemalloc, io_uring, SPDK."""

    def test_rtti(self, resolver):
        assert resolver.resolve({"rtti"}, LINUX).config.define_value("USE_RTTI") == "1"

    def test_thread_local_always(self, resolver):
        assert resolver.resolve(set(), LINUX).config.has_define("ROCKSDB_SUPPORT_THREAD_LOCAL")

    def test_jemalloc(self, resolver):
        resolution = resolver.resolve({"jemalloc"}, LINUX)
        assert resolution.config.define_value("WITH_JEMALLOC") == "ON"
        assert resolution.added_sources == ()

    def test_jemalloc_windows_source(self, resolver):
        resolution = resolver.resolve({"jemalloc"}, WINDOWS)
        assert resolution.added_sources == (WINDOWS_JEMALLOC_SOURCE,)

    def test_io_uring_on_linux(self, resolver):
        resolution = resolver.resolve({"io-uring"}, LINUX)
        assert resolution.pkg_config_probes == ("liburing",)
        assert resolution.link_libraries == ("uring",)
        assert resolution.config.has_define("ROCKSDB_IOURING_PRESENT")

    def test_io_uring_ignored_elsewhere(self, resolver):
        resolution = resolver.resolve({"io-uring"}, MACOS)
        assert resolution.pkg_config_probes == ()
        assert not resolution.config.has_define("ROCKSDB_IOURING_PRESENT")

    def test_spdk_include(self, resolver, tmp_path):
        config = resolver.resolve({"spdk"}, LINUX).config
        assert config.include_paths[0] == tmp_path / "spdk" / "build" / "include"

    def test_spdk_source_list(self, resolver):
        assert resolver.resolve({"spdk"}, LINUX).base_sources == SPDK_LIB_SOURCES_LIST
        assert resolver.resolve({"snappy"}, LINUX).base_sources == LIB_SOURCES_LIST

    def test_unknown_feature_warns(self, resolver, caplog):
        with caplog.at_level(logging.WARNING):
            resolver.resolve({"turbo"}, LINUX)
        assert "turbo" in caplog.text


class TestCpuFeatures:
    """Flags require an x86_64 target AND the feature."""

    def test_sse_pair(self):
        flags, defines = FeatureFlagResolver.resolve_cpu_features(LINUX, {"sse2", "sse4.2"})
        assert flags == ["-msse2", "-msse4.2"]
        assert defines == [("HAVE_SSE42", "1")]

    def test_feature_without_x86_64(self):
        flags, defines = FeatureFlagResolver.resolve_cpu_features(ARM_LINUX, {"sse2", "avx2"})
        assert flags == []
        assert defines == []

    def test_x86_64_without_feature(self):
        assert FeatureFlagResolver.resolve_cpu_features(LINUX, set()) == ([], [])

    def test_all_features_in_rule_order(self):
        features = {"pclmulqdq", "lzcnt", "bmi1", "avx2", "sse4.2", "sse4.1", "sse2"}
        flags, _ = FeatureFlagResolver.resolve_cpu_features(LINUX, features)
        assert flags == ["-msse2", "-msse4.1", "-msse4.2", "-mavx2", "-mbmi", "-mlzcnt", "-mpclmul"]

    def test_pclmul_skipped_on_android(self):
        flags, defines = FeatureFlagResolver.resolve_cpu_features(ANDROID_X86, {"pclmulqdq"})
        assert flags == []
        assert defines == []

    def test_cpu_flags_are_optional(self, resolver):
        config = resolver.resolve(set(), LINUX, target_features={"avx2"}).config
        assert config.optional_flags == ("-mavx2",)
        assert "-mavx2" not in config.flags


def test_resolution_is_deterministic(resolver):
    features = {"snappy", "lz4", "zstd", "rtti", "jemalloc"}
    first = resolver.resolve(features, LINUX, {"sse2", "sse4.2", "avx2"})
    second = resolver.resolve(set(features), LINUX, ["avx2", "sse4.2", "sse2"])
    assert first == second
