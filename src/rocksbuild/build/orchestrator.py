"""
Build orchestration for rocksbuild.

This module coordinates the whole native build, from making sure the
third-party trees are present to emitting the final link directives. It
integrates all build system components:
- Submodule synchronization (rocksdb/, spdk/)
- Platform and feature resolution
- Source manifest assembly
- SPDK configure/make/merge (feature 'spdk')
- Compilation and archiving (RocksDB, Snappy)
- cffi binding generation
- Link planning
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config.build_config import BuildConfig
from ..errors import BuildError
from ..packages.downloader import PackageDownloader
from ..packages.submodules import ROCKSDB, SubmoduleSynchronizer
from ..process_runner import ProcessRunner
from ..resolve.compiler_config import CompilerConfig
from ..resolve.feature_resolver import FeatureFlagResolver, FeatureResolution
from ..resolve.platform_resolver import PlatformResolution, PlatformResolver
from .bindings import BindingDenylist, BindingGenerator
from .compiler import (
    SNAPPY_SOURCES,
    CompiledArchive,
    CompilerInvoker,
    Toolchain,
    default_cxx_runtime,
    rocksdb_compiler_config,
    snappy_compiler_config,
)
from .directives import DirectiveKind, LinkDirective
from .external_subsystem import WRAPPER_HEADER, ExternalArtifact, ExternalSubsystemBuilder
from .link_planner import LinkPlanner, dedup_directives, probe_pkg_config
from .source_set import (
    ASSETS_DIR,
    SourceManifest,
    SourceSetAssembler,
    fail_on_empty_directory,
    load_lib_sources,
)

logger = logging.getLogger(__name__)

TOTAL_STEPS = 7


@dataclass
class BuildPlan:
    """Resolved configuration for the RocksDB archive, without building."""

    platform: PlatformResolution
    features: FeatureResolution
    compiler_config: CompilerConfig
    manifest: SourceManifest

    def to_dict(self) -> Dict[str, Any]:
        return {
            "os_family": self.platform.os_family.value,
            "base_sources": self.features.base_sources,
            "compiler_config": self.compiler_config.to_dict(),
            "sources": list(self.manifest.files),
            "link_libraries": list(self.platform.link_libraries + self.features.link_libraries),
            "pkg_config_probes": list(self.features.pkg_config_probes),
        }


@dataclass
class BuildResult:
    """Result of a complete build operation."""

    success: bool
    archives: List[Path] = field(default_factory=list)
    external_artifact: Optional[ExternalArtifact] = None
    bindings_path: Optional[Path] = None
    directives: List[LinkDirective] = field(default_factory=list)
    build_time: float = 0.0
    message: str = ""
    failed_step: Optional[str] = None

    @property
    def metadata(self) -> Dict[str, str]:
        return {d.key: d.value for d in self.directives if d.kind is DirectiveKind.METADATA}

    def render_directives(self) -> List[str]:
        return [d.render() for d in self.directives]


class BuildOrchestrator:
    """
    Orchestrates the complete RocksDB build.

    This class coordinates all phases of the build:
    1. Ensure the rocksdb/ submodule is present
    2. Resolve platform, features and the source manifest
    3. Build SPDK and merge it into libspdk_fat.so (feature 'spdk')
    4. Compile RocksDB unless a prebuilt library is configured
    5. Compile Snappy (feature 'snappy') unless prebuilt
    6. Generate cffi bindings
    7. Plan link directives

    Example usage:
        config = BuildConfig.load(Path("."))
        result = BuildOrchestrator().build(config)
        if result.success:
            for line in result.render_directives():
                print(line)
    """

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        downloader: Optional[PackageDownloader] = None
    ):
        """
        Initialize build orchestrator.

        Args:
            runner: Process runner (defaults to one using the configured environment)
            downloader: Archive downloader for submodules without git
        """
        self.runner = runner
        self.downloader = downloader

    def _runner(self, config: BuildConfig) -> ProcessRunner:
        if self.runner is None:
            self.runner = ProcessRunner(config.environment())
        return self.runner

    def plan(self, config: BuildConfig, check_tree: bool = False) -> BuildPlan:
        """
        Resolve everything needed to compile RocksDB, without running anything.

        Args:
            config: Build configuration
            check_tree: Fail if the rocksdb/ tree is absent or empty

        Returns:
            BuildPlan

        Raises:
            MissingDependencyError: If check_tree is set and rocksdb/ is empty
        """
        platform = PlatformResolver().resolve(config.target)
        features = FeatureFlagResolver(
            config.project_dir, dict(config.dependency_includes)
        ).resolve(config.features, config.target, config.target_features)

        base_sources = load_lib_sources(ASSETS_DIR / features.base_sources)
        manifest = SourceSetAssembler(config.project_dir, base_sources).assemble(
            added=platform.added_sources + features.added_sources,
            excluded=platform.excluded_sources,
            check_tree=check_tree,
        )
        compiler_config = rocksdb_compiler_config(
            config, platform, features, msvc=config.target.is_msvc
        )
        return BuildPlan(platform, features, compiler_config, manifest)

    def build(self, config: BuildConfig) -> BuildResult:
        """
        Execute the complete build.

        Args:
            config: Build configuration

        Returns:
            BuildResult with status, artifacts and link directives. A BuildError
            in any phase yields success=False and names the failing step.
        """
        start_time = time.time()
        step = "sync submodules"
        runner = self._runner(config)
        toolchain = Toolchain.from_config(config)
        planner = LinkPlanner(config)
        directives: List[LinkDirective] = []
        archives: List[Path] = []
        external: Optional[ExternalArtifact] = None

        try:
            config.out_dir.mkdir(parents=True, exist_ok=True)
            synchronizer = SubmoduleSynchronizer(config, runner, self.downloader)

            logger.info(f"[1/{TOTAL_STEPS}] Checking submodules...")
            synchronizer.ensure(ROCKSDB)

            step = "resolve configuration"
            logger.info(f"[2/{TOTAL_STEPS}] Resolving {config.target} with features: "
                        + (", ".join(sorted(config.features)) or "none"))
            rocksdb_plan = planner.plan("ROCKSDB")
            plan = self.plan(config, check_tree=not rocksdb_plan.prebuilt)

            # a prebuilt RocksDB brings its own link requirements
            pkg_config_directives: List[LinkDirective] = []
            probes = () if rocksdb_plan.prebuilt else plan.features.pkg_config_probes
            for package in probes:
                step = f"pkg-config {package}"
                pkg_config_directives.extend(probe_pkg_config(runner, package))

            if config.has_feature("spdk"):
                step = "build SPDK"
                logger.info(f"[3/{TOTAL_STEPS}] Building SPDK...")
                external = ExternalSubsystemBuilder(config, runner, synchronizer, cc=toolchain.cc).run()
                directives.extend(external.link_directives())
            else:
                logger.info(f"[3/{TOTAL_STEPS}] SPDK disabled, skipping")

            invoker = CompilerInvoker(
                toolchain,
                runner,
                config.out_dir,
                jobs=config.jobs,
                runtime=default_cxx_runtime(config.target),
                env=plan.platform.compiler_env_dict(),
            )

            step = "compile rocksdb"
            logger.info(f"[4/{TOTAL_STEPS}] Building RocksDB...")
            compiled: List[LinkDirective] = []
            if not rocksdb_plan.prebuilt:
                archive = invoker.compile(
                    "rocksdb", plan.compiler_config, plan.manifest.paths(), config.project_dir
                )
                archives.append(archive.path)
                compiled = archive.link_directives()
            directives.extend(planner.library_directives(
                rocksdb_plan,
                compiled=compiled,
                system_libraries=plan.platform.link_libraries,
                extra=pkg_config_directives,
                rerun_dir="rocksdb/",
            ))

            if config.has_feature("snappy"):
                step = "compile snappy"
                logger.info(f"[5/{TOTAL_STEPS}] Building Snappy...")
                snappy_archive = self._build_snappy(config, planner, invoker, toolchain)
                snappy_plan = planner.plan("SNAPPY")
                directives.extend(planner.library_directives(
                    snappy_plan,
                    compiled=snappy_archive.link_directives() if snappy_archive else (),
                ))
                if snappy_archive:
                    archives.append(snappy_archive.path)
            else:
                logger.info(f"[5/{TOTAL_STEPS}] Snappy disabled, skipping")

            step = "generate bindings"
            logger.info(f"[6/{TOTAL_STEPS}] Generating bindings...")
            bindings_path = self._generate_bindings(config, runner, toolchain)

            step = "plan link"
            logger.info(f"[7/{TOTAL_STEPS}] Planning link directives...")
            directives.extend(planner.metadata_directives())

            build_time = time.time() - start_time
            logger.info(f"Build complete in {build_time:.2f}s")
            return BuildResult(
                success=True,
                archives=archives,
                external_artifact=external,
                bindings_path=bindings_path,
                directives=dedup_directives(directives),
                build_time=build_time,
                message="Build successful",
            )

        except BuildError as e:
            build_time = time.time() - start_time
            return BuildResult(
                success=False,
                archives=archives,
                external_artifact=external,
                build_time=build_time,
                message=f"{step} failed: {e}",
                failed_step=step,
            )

    def _build_snappy(
        self,
        config: BuildConfig,
        planner: LinkPlanner,
        invoker: CompilerInvoker,
        toolchain: Toolchain
    ) -> Optional[CompiledArchive]:
        if planner.plan("SNAPPY").prebuilt:
            return None
        fail_on_empty_directory(config.project_dir / "snappy")
        snappy_config = snappy_compiler_config(config, msvc=toolchain.msvc)
        sources = [config.project_dir / s for s in SNAPPY_SOURCES]
        return invoker.compile("snappy", snappy_config, sources, config.project_dir)

    def _generate_bindings(
        self,
        config: BuildConfig,
        runner: ProcessRunner,
        toolchain: Toolchain
    ) -> Path:
        headers = [config.include_dir() / "rocksdb" / "c.h"]
        include_paths = []
        if config.has_feature("spdk"):
            headers.append(config.project_dir / WRAPPER_HEADER)
            include_paths.append(config.project_dir / "spdk" / "build" / "include")
        include_paths.append(config.include_dir())

        # cl.exe has no -dD; headers are read with clang on MSVC targets
        cc = "clang" if toolchain.msvc else toolchain.cc
        generator = BindingGenerator(runner, cc=cc)
        binding_set = generator.generate(
            headers,
            include_paths,
            BindingDenylist.for_features(config.features),
            config.out_dir,
        )
        return generator.write(binding_set, config.out_dir)
