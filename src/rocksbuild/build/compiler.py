"""C++ compiler invocation.

This module turns a CompilerConfig plus a list of sources into one static
archive, the way a cc-style build helper would: probe optional flags,
compile every file in a worker pool, then archive the objects.

Design:
    - Two driver flavors: GNU-style (c++/cc/ar, also clang) and MSVC (cl/lib)
    - "Flag if supported" flags are probed once per invoker and cached
    - Objects go to <out_dir>/<library>/obj/, archives to <out_dir>/lib<library>.a
    - The first failing compile cancels the remaining work and raises
      CompilerError with the compiler's stderr
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..config.build_config import BuildConfig
from ..config.target import TargetTriple
from ..errors import CompilerError, ExternalProcessError
from ..process_runner import ProcessRunner
from ..resolve.compiler_config import CompilerConfig
from ..resolve.feature_resolver import FeatureResolution
from ..resolve.platform_resolver import PlatformResolution
from .archive_creator import ArchiveCreator
from .directives import LinkDirective

logger = logging.getLogger(__name__)

# Matches the warning set in RocksDB's CMakeLists.txt
ROCKSDB_WARNING_FLAGS = (
    "-Wsign-compare",
    "-Wshadow",
    "-Wno-unused-parameter",
    "-Wno-unused-variable",
    "-Woverloaded-virtual",
    "-Wnon-virtual-dtor",
    "-Wno-missing-field-initializers",
    "-Wno-strict-aliasing",
    "-Wno-invalid-offsetof",
)

SNAPPY_SOURCES = (
    "snappy/snappy.cc",
    "snappy/snappy-sinksource.cc",
    "snappy/snappy-c.cc",
)

FLAG_CHECK_SOURCE = "int main(void) { return 0; }\n"


@dataclass(frozen=True)
class Toolchain:
    """Compiler driver, C compiler and archiver for one target."""

    cxx: str
    cc: str
    ar: str
    msvc: bool = False

    @classmethod
    def for_target(
        cls,
        triple: TargetTriple,
        cxx: Optional[str] = None,
        cc: Optional[str] = None,
        ar: Optional[str] = None
    ) -> "Toolchain":
        """
        Pick the tools for a target, honoring CXX/CC/AR overrides.

        Args:
            triple: Target triple
            cxx: C++ driver override
            cc: C compiler override
            ar: Archiver override

        Returns:
            Toolchain
        """
        if triple.is_msvc:
            return cls(cxx or "cl", cc or "cl", ar or "lib", msvc=True)
        return cls(cxx or "c++", cc or "cc", ar or "ar")

    @classmethod
    def from_config(cls, config: BuildConfig) -> "Toolchain":
        return cls.for_target(config.target, config.cxx, config.cc, config.ar)

    @property
    def object_suffix(self) -> str:
        return ".obj" if self.msvc else ".o"

    def archive_name(self, library: str) -> str:
        return f"{library}.lib" if self.msvc else f"lib{library}.a"


def default_cxx_runtime(triple: TargetTriple) -> Optional[str]:
    """
    C++ runtime library the driver links by default for a target.

    Example:
        >>> default_cxx_runtime(TargetTriple.parse("aarch64-apple-darwin"))
        'c++'
        >>> default_cxx_runtime(TargetTriple.parse("x86_64-pc-windows-msvc")) is None
        True
    """
    if triple.is_msvc:
        return None
    if triple.contains("apple") or triple.contains("freebsd") or triple.contains("openbsd"):
        return "c++"
    if triple.is_android:
        return "c++_shared"
    return "stdc++"


@dataclass(frozen=True)
class CompiledArchive:
    """A static archive produced by the CompilerInvoker."""

    library: str
    path: Path
    objects: Tuple[Path, ...]
    runtime: Optional[str] = None

    def link_directives(self) -> List[LinkDirective]:
        """Directives needed to link this archive into the consumer."""
        directives = [
            LinkDirective.search(self.path.parent),
            LinkDirective.lib(self.library, "static"),
        ]
        if self.runtime:
            directives.append(LinkDirective.lib(self.runtime))
        return directives


def rocksdb_compiler_config(
    config: BuildConfig,
    platform: PlatformResolution,
    features: FeatureResolution,
    msvc: bool = False
) -> CompilerConfig:
    """
    Compose the full compiler configuration for the RocksDB archive.

    Args:
        config: Build configuration
        platform: Platform resolution for the target
        features: Feature resolution for the target
        msvc: Produce MSVC flags

    Returns:
        CompilerConfig
    """
    project = config.project_dir
    base = CompilerConfig(
        include_paths=(
            config.include_dir(),
            project / "rocksdb",
            project / "rocksdb" / "third-party" / "gtest-1.8.1" / "fused-src",
        ),
    )
    local = CompilerConfig(
        include_paths=(project,),
        defines=(("NDEBUG", "1"),),
    )
    if msvc:
        toolchain = CompilerConfig(flags=("-EHsc", "-std:c++17"))
    else:
        toolchain = CompilerConfig(
            defines=(("HAVE_UINT128_EXTENSION", "1"),),
            flags=ROCKSDB_WARNING_FLAGS,
            cxx_standard=config.cxx_std,
        )
    return (
        base.merge(features.config)
        .merge(local)
        .merge(CompilerConfig(defines=platform.defines))
        .merge(toolchain)
    )


def snappy_compiler_config(config: BuildConfig, msvc: bool = False) -> CompilerConfig:
    """Compiler configuration for the Snappy archive."""
    defines = [("NDEBUG", "1")]
    if config.big_endian:
        defines.append(("SNAPPY_IS_BIG_ENDIAN", "1"))
    return CompilerConfig(
        include_paths=(config.project_dir / "snappy", config.project_dir),
        defines=tuple(defines),
        flags=("-EHsc",) if msvc else (),
        cxx_standard=None if msvc else "-std=c++11",
    )


class CompilerInvoker:
    """
    Compiles source files into a static archive.

    Example usage:
        invoker = CompilerInvoker(Toolchain.from_config(config), runner, config.out_dir, jobs=8)
        archive = invoker.compile("rocksdb", compiler_config, manifest.paths(), project_dir)
    """

    def __init__(
        self,
        toolchain: Toolchain,
        runner: ProcessRunner,
        out_dir: Path,
        jobs: int = 1,
        runtime: Optional[str] = None,
        env: Optional[Dict[str, str]] = None
    ):
        """
        Initialize compiler invoker.

        Args:
            toolchain: Tools to run
            runner: Process runner
            out_dir: Build output directory
            jobs: Worker pool size
            runtime: C++ runtime reported in the archive's link directives
            env: Extra environment for the compiler (e.g. IPHONEOS_DEPLOYMENT_TARGET)
        """
        self.toolchain = toolchain
        self.runner = runner
        self.out_dir = Path(out_dir)
        self.jobs = max(1, jobs)
        self.runtime = runtime
        self.env = dict(env or {})
        self._flag_cache: Dict[str, bool] = {}
        self._flag_lock = threading.Lock()

    def is_flag_supported(self, flag: str) -> bool:
        """
        Check whether the compiler accepts a flag by compiling a trivial file.

        Args:
            flag: Compiler flag to probe

        Returns:
            True if the probe compile succeeded
        """
        with self._flag_lock:
            if flag in self._flag_cache:
                return self._flag_cache[flag]

            probe_dir = self.out_dir / "flag_check"
            probe_dir.mkdir(parents=True, exist_ok=True)
            source = probe_dir / "flag_check.cpp"
            source.write_text(FLAG_CHECK_SOURCE)
            obj = probe_dir / f"flag_check{self.toolchain.object_suffix}"

            if self.toolchain.msvc:
                cmd = [self.toolchain.cxx, "/nologo", "/c", flag, str(source), f"/Fo{obj}"]
            else:
                cmd = [self.toolchain.cxx, "-Werror", flag, "-c", str(source), "-o", str(obj)]

            supported = self.runner.run(cmd, cwd=probe_dir, env=self.env).success
            if not supported:
                logger.info(f"Compiler does not support {flag}, skipping")
            self._flag_cache[flag] = supported
            return supported

    def command_flags(self, config: CompilerConfig) -> List[str]:
        """
        Render a CompilerConfig into compiler arguments.

        Optional flags are probed; rejected ones are dropped.
        """
        msvc = self.toolchain.msvc
        args: List[str] = ["/nologo"] if msvc else []
        if config.cxx_standard:
            args.append(config.cxx_standard)
        args.extend(config.flags)
        args.extend(f for f in config.optional_flags if self.is_flag_supported(f))
        args.extend(config.define_flags(msvc))
        args.extend(config.include_flags(msvc))
        return args

    def object_path(self, library: str, source: Path, root: Path) -> Path:
        """Object file for a source, mirroring its path below the root."""
        try:
            relative = source.relative_to(root)
        except ValueError:
            relative = Path(source.name)
        obj_dir = self.out_dir / library / "obj"
        return obj_dir / relative.parent / f"{relative.name}{self.toolchain.object_suffix}"

    def compile_source(self, args: Sequence[str], source: Path, obj: Path, root: Path) -> Path:
        """
        Compile a single source file.

        Raises:
            CompilerError: If the compiler fails
        """
        obj.parent.mkdir(parents=True, exist_ok=True)
        cmd = [self.toolchain.cxx]
        cmd.extend(args)
        if self.toolchain.msvc:
            cmd.extend(["/c", str(source), f"/Fo{obj}"])
        else:
            cmd.extend(["-c", str(source), "-o", str(obj)])

        self.runner.run(cmd, cwd=root, env=self.env).check(f"compile {source.name}", CompilerError)
        return obj

    def compile(
        self,
        library: str,
        config: CompilerConfig,
        sources: Sequence[Path],
        root: Path
    ) -> CompiledArchive:
        """
        Compile sources and archive them.

        Args:
            library: Library name (archive becomes lib<library>.a)
            config: Compiler configuration
            sources: Absolute source paths
            root: Project root, used as working directory and for object naming

        Returns:
            CompiledArchive

        Raises:
            CompilerError: If any compile fails
            ArchiveError: If the archiver fails
        """
        args = self.command_flags(config)
        logger.info(f"Compiling {len(sources)} {library} sources with {self.jobs} job(s)")

        jobs: List[Tuple[Path, Path]] = [
            (src, self.object_path(library, src, root)) for src in sources
        ]

        with ThreadPoolExecutor(max_workers=self.jobs) as executor:
            futures: List[Future] = [
                executor.submit(self.compile_source, args, src, obj, root)
                for src, obj in jobs
            ]
            try:
                for future in as_completed(futures):
                    future.result()
            except ExternalProcessError:
                for future in futures:
                    future.cancel()
                raise

        objects = tuple(obj for _, obj in jobs)
        archive_path = self.out_dir / self.toolchain.archive_name(library)
        ArchiveCreator(self.runner).create_archive(
            self.toolchain.ar, archive_path, objects, self.toolchain.msvc
        )
        return CompiledArchive(
            library=library,
            path=archive_path,
            objects=objects,
            runtime=self.runtime,
        )
