"""Compiler configuration value.

CompilerConfig is an immutable bundle of include paths, preprocessor
defines and compiler flags. Resolvers each produce a partial config (a
delta) and the orchestrator folds them together with merge(). Order is
preserved so the resolved configuration is byte-for-byte reproducible.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

Define = Tuple[str, Optional[str]]


def _dedup(items: Iterable) -> tuple:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return tuple(out)


@dataclass(frozen=True)
class CompilerConfig:
    """Include paths, defines and flags for one compilation."""

    include_paths: Tuple[Path, ...] = ()
    defines: Tuple[Define, ...] = ()
    flags: Tuple[str, ...] = ()
    optional_flags: Tuple[str, ...] = ()  # passed only if the compiler accepts them
    cxx_standard: Optional[str] = None

    def merge(self, other: "CompilerConfig") -> "CompilerConfig":
        """Append another config's entries to this one.

        Duplicate entries keep their first position. The other config's C++
        standard wins when it sets one.
        """
        return CompilerConfig(
            include_paths=_dedup(self.include_paths + other.include_paths),
            defines=_dedup(self.defines + other.defines),
            flags=_dedup(self.flags + other.flags),
            optional_flags=_dedup(self.optional_flags + other.optional_flags),
            cxx_standard=other.cxx_standard or self.cxx_standard,
        )

    def has_define(self, name: str) -> bool:
        return any(key == name for key, _ in self.defines)

    def define_value(self, name: str) -> Optional[str]:
        for key, value in self.defines:
            if key == name:
                return value
        return None

    def define_flags(self, msvc: bool = False) -> List[str]:
        """Render defines as -DNAME / -DNAME=VALUE (or /D for MSVC)."""
        prefix = "/D" if msvc else "-D"
        flags = []
        for key, value in self.defines:
            if value is not None:
                flags.append(f"{prefix}{key}={value}")
            else:
                flags.append(f"{prefix}{key}")
        return flags

    def include_flags(self, msvc: bool = False) -> List[str]:
        """Render include paths with forward slashes for GCC compatibility."""
        prefix = "/I" if msvc else "-I"
        return [f"{prefix}{str(inc).replace(chr(92), '/')}" for inc in self.include_paths]

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation (used by `rocksbuild plan`)."""
        return {
            "include_paths": [str(p) for p in self.include_paths],
            "defines": [[key, value] for key, value in self.defines],
            "flags": list(self.flags),
            "optional_flags": list(self.optional_flags),
            "cxx_standard": self.cxx_standard,
        }
