"""Link directives in Cargo build-script form.

The consumer of a rocksbuild run is the linker of the embedding crate, which
reads `cargo:` lines from the build script's stdout. Each LinkDirective
renders to exactly one such line.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union


class DirectiveKind(Enum):
    """Kinds of build-script output lines."""

    LINK_LIB = "rustc-link-lib"
    LINK_SEARCH = "rustc-link-search"
    RERUN_IF_CHANGED = "rerun-if-changed"
    METADATA = "metadata"


@dataclass(frozen=True)
class LinkDirective:
    """One build-script output line.

    mode is the link mode for libraries (static, dylib or None for the
    linker default) and the search kind for search paths (native).
    key names the metadata entry for METADATA directives.
    """

    kind: DirectiveKind
    value: str
    mode: Optional[str] = None
    key: Optional[str] = None

    @classmethod
    def lib(cls, name: str, mode: Optional[str] = None) -> "LinkDirective":
        return cls(DirectiveKind.LINK_LIB, name, mode)

    @classmethod
    def search(cls, path: Union[str, Path], kind: str = "native") -> "LinkDirective":
        return cls(DirectiveKind.LINK_SEARCH, str(path), kind)

    @classmethod
    def rerun_if_changed(cls, path: Union[str, Path]) -> "LinkDirective":
        return cls(DirectiveKind.RERUN_IF_CHANGED, str(path))

    @classmethod
    def metadata(cls, key: str, value: Union[str, Path]) -> "LinkDirective":
        return cls(DirectiveKind.METADATA, str(value), key=key)

    def render(self) -> str:
        """
        Render as a build-script line.

        Example:
            >>> LinkDirective.lib("rocksdb", "static").render()
            'cargo:rustc-link-lib=static=rocksdb'
            >>> LinkDirective.metadata("out_dir", "/tmp/out").render()
            'cargo:out_dir=/tmp/out'
        """
        if self.kind is DirectiveKind.METADATA:
            return f"cargo:{self.key}={self.value}"
        prefix = f"{self.mode}=" if self.mode else ""
        return f"cargo:{self.kind.value}={prefix}{self.value}"

    def __str__(self) -> str:
        return self.render()
