"""Build pipeline components for rocksbuild."""

from .archive_creator import ArchiveCreator
from .bindings import BindingDenylist, BindingGenerator, GeneratedBindingSet
from .compiler import CompiledArchive, CompilerInvoker, Toolchain
from .directives import DirectiveKind, LinkDirective
from .external_subsystem import ExternalArtifact, ExternalSubsystemBuilder, SubsystemState
from .link_planner import LibraryPlan, LinkPlanner
from .orchestrator import BuildOrchestrator, BuildPlan, BuildResult
from .source_set import SourceManifest, SourceSetAssembler

__all__ = [
    "ArchiveCreator",
    "BindingDenylist",
    "BindingGenerator",
    "BuildOrchestrator",
    "BuildPlan",
    "BuildResult",
    "CompiledArchive",
    "CompilerInvoker",
    "DirectiveKind",
    "ExternalArtifact",
    "ExternalSubsystemBuilder",
    "GeneratedBindingSet",
    "LibraryPlan",
    "LinkDirective",
    "LinkPlanner",
    "SourceManifest",
    "SourceSetAssembler",
    "SubsystemState",
    "Toolchain",
]
