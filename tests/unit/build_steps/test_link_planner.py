"""
Unit tests for LinkPlanner.

Tests prebuilt vs. source decisions, directive ordering and pkg-config
probing.
"""

import pytest
from pathlib import Path

from rocksbuild.build.directives import LinkDirective
from rocksbuild.build.link_planner import (
    LinkPlanner,
    dedup_directives,
    prebuilt_runtime_directives,
    probe_pkg_config,
)
from rocksbuild.config import BuildConfig, LibraryOverride, TargetTriple
from rocksbuild.errors import MissingDependencyError


def make_config(tmp_path, triple="x86_64-unknown-linux-gnu", **overrides):
    return BuildConfig(
        project_dir=tmp_path,
        out_dir=tmp_path / "out",
        target=TargetTriple.parse(triple),
        library_overrides=tuple(overrides.items()),
    )


class TestPlan:
    """Source build or prebuilt."""

    def test_default_is_source_build(self, tmp_path):
        plan = LinkPlanner(make_config(tmp_path)).plan("ROCKSDB")
        assert not plan.prebuilt

    def test_lib_dir_selects_prebuilt(self, tmp_path):
        config = make_config(tmp_path, ROCKSDB=LibraryOverride(lib_dir=Path("/opt/lib")))
        plan = LinkPlanner(config).plan("ROCKSDB")
        assert plan.prebuilt
        assert plan.lib_dir == Path("/opt/lib")

    def test_compile_beats_lib_dir(self, tmp_path):
        override = LibraryOverride(force_compile=True, lib_dir=Path("/opt/lib"))
        plan = LinkPlanner(make_config(tmp_path, SNAPPY=override)).plan("SNAPPY")
        assert not plan.prebuilt


class TestLibraryDirectives:
    """Directive lists per library."""

    def test_prebuilt_dynamic_linux(self, tmp_path):
        config = make_config(tmp_path, ROCKSDB=LibraryOverride(lib_dir=Path("/opt/lib")))
        planner = LinkPlanner(config)
        rendered = [d.render() for d in planner.library_directives(planner.plan("ROCKSDB"))]
        assert rendered == [
            "cargo:rustc-link-search=native=/opt/lib",
            "cargo:rustc-link-lib=dylib=rocksdb",
            "cargo:rustc-link-lib=dylib=stdc++",
        ]

    def test_prebuilt_static_snappy_has_no_runtime(self, tmp_path):
        config = make_config(tmp_path, SNAPPY=LibraryOverride(lib_dir=Path("/opt/lib"), static=True))
        planner = LinkPlanner(config)
        rendered = [d.render() for d in planner.library_directives(planner.plan("SNAPPY"))]
        assert rendered == [
            "cargo:rustc-link-search=native=/opt/lib",
            "cargo:rustc-link-lib=static=snappy",
        ]

    def test_prebuilt_ignores_compiled(self, tmp_path):
        config = make_config(tmp_path, ROCKSDB=LibraryOverride(lib_dir=Path("/opt/lib")))
        planner = LinkPlanner(config)
        directives = planner.library_directives(
            planner.plan("ROCKSDB"), compiled=[LinkDirective.lib("bogus")], rerun_dir="rocksdb/"
        )
        assert LinkDirective.lib("bogus") not in directives
        assert LinkDirective.rerun_if_changed("rocksdb/") not in directives

    def test_source_build_order(self, tmp_path):
        planner = LinkPlanner(make_config(tmp_path, "x86_64-pc-windows-msvc"))
        compiled = [LinkDirective.search("/out"), LinkDirective.lib("rocksdb", "static")]
        directives = planner.library_directives(
            planner.plan("ROCKSDB"),
            compiled=compiled,
            system_libraries=("rpcrt4", "shlwapi"),
            extra=[LinkDirective.lib("uring")],
            rerun_dir="rocksdb/",
        )
        assert [d.render() for d in directives] == [
            "cargo:rerun-if-changed=rocksdb/",
            "cargo:rustc-link-search=native=/out",
            "cargo:rustc-link-lib=static=rocksdb",
            "cargo:rustc-link-lib=dylib=rpcrt4",
            "cargo:rustc-link-lib=dylib=shlwapi",
            "cargo:rustc-link-lib=uring",
        ]

    def test_metadata(self, tmp_path):
        rendered = [d.render() for d in LinkPlanner(make_config(tmp_path)).metadata_directives()]
        assert rendered == [
            f"cargo:cargo_manifest_dir={tmp_path}",
            f"cargo:out_dir={tmp_path / 'out'}",
        ]


@pytest.mark.parametrize("triple,expected", [
    ("aarch64-apple-darwin", ["cargo:rustc-link-lib=dylib=c++"]),
    ("x86_64-unknown-freebsd", ["cargo:rustc-link-lib=dylib=c++"]),
    ("x86_64-unknown-linux-gnu", ["cargo:rustc-link-lib=dylib=stdc++"]),
    ("x86_64-pc-windows-msvc", []),
])
def test_prebuilt_runtime(triple, expected):
    assert [d.render() for d in prebuilt_runtime_directives(TargetTriple.parse(triple))] == expected


class TestPkgConfig:
    """pkg-config probes."""

    def test_parses_libs(self, fake_runner):
        fake_runner.on(["pkg-config", "--libs", "liburing"], stdout="-L/usr/local/lib -luring\n")
        directives = probe_pkg_config(fake_runner, "liburing")
        assert directives == [LinkDirective.search("/usr/local/lib"), LinkDirective.lib("uring")]

    def test_missing_package(self, fake_runner):
        fake_runner.on("pkg-config", returncode=1, stderr="Package liburing was not found")
        with pytest.raises(MissingDependencyError, match="liburing") as exc_info:
            probe_pkg_config(fake_runner, "liburing")
        assert exc_info.value.hint == "Install the liburing development package"


def test_dedup_keeps_first():
    a, b = LinkDirective.lib("stdc++"), LinkDirective.lib("uuid")
    assert dedup_directives([a, b, a, b, a]) == [a, b]
