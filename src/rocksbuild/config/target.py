"""
Target triple parsing.

A target triple describes the platform being built for, in the
`<arch>-<vendor>-<os>[-<abi>]` form used by Rust and LLVM
(e.g. `x86_64-unknown-linux-gnu`, `aarch64-apple-ios`,
`x86_64-pc-windows-msvc`). Some triples omit the vendor
(`aarch64-linux-android`); platform decisions therefore test for
substrings of the raw triple rather than trusting field positions.
"""

import platform
import sys
from dataclasses import dataclass, field
from typing import Optional

# Architectures whose default byte order is big-endian
BIG_ENDIAN_ARCHS = ("s390x", "powerpc", "powerpc64", "mips", "mips64", "sparc", "sparc64", "sparcv9")


@dataclass(frozen=True)
class TargetTriple:
    """Immutable target platform description."""

    architecture: str
    vendor: str
    os: str
    abi: Optional[str] = None
    raw: str = field(default="", compare=False)

    @classmethod
    def parse(cls, triple: str) -> "TargetTriple":
        """
        Parse a target triple string.

        Missing fields are left empty rather than rejected: an unknown or
        short triple still selects the generic POSIX platform later on.

        Args:
            triple: Target triple (e.g. 'x86_64-unknown-linux-gnu')

        Returns:
            TargetTriple

        Example:
            >>> TargetTriple.parse('x86_64-pc-windows-gnu').abi
            'gnu'
        """
        triple = triple.strip()
        parts = triple.split("-")
        architecture = parts[0] if parts else ""
        vendor = parts[1] if len(parts) > 1 else ""
        os_name = parts[2] if len(parts) > 2 else ""
        abi = "-".join(parts[3:]) or None
        return cls(architecture, vendor, os_name, abi, raw=triple)

    @classmethod
    def host(cls) -> "TargetTriple":
        """Best-effort triple for the machine running the build."""
        machine = platform.machine().lower()
        arch = {"amd64": "x86_64", "arm64": "aarch64"}.get(machine, machine or "x86_64")

        if sys.platform.startswith("win"):
            return cls.parse(f"{arch}-pc-windows-msvc")
        if sys.platform == "darwin":
            return cls.parse(f"{arch}-apple-darwin")
        if sys.platform.startswith("freebsd"):
            return cls.parse(f"{arch}-unknown-freebsd")
        return cls.parse(f"{arch}-unknown-linux-gnu")

    def __str__(self) -> str:
        return self.raw or "-".join(p for p in (self.architecture, self.vendor, self.os, self.abi) if p)

    def contains(self, fragment: str) -> bool:
        """Check whether the raw triple contains a fragment."""
        return fragment in str(self)

    @property
    def is_x86_64(self) -> bool:
        return self.architecture == "x86_64"

    @property
    def is_windows(self) -> bool:
        return self.os == "windows" or self.contains("windows")

    @property
    def is_msvc(self) -> bool:
        return self.contains("msvc")

    @property
    def is_android(self) -> bool:
        return self.contains("android")

    @property
    def is_big_endian(self) -> bool:
        arch = self.architecture
        if arch.endswith(("le", "el")):
            return False
        return arch in BIG_ENDIAN_ARCHS or arch.startswith("sparc")
