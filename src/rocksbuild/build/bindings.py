"""Foreign-function binding generation.

Produces a cffi cdef for the RocksDB C API (and SPDK, when enabled) from
the real headers. The C compiler preprocesses the headers, pycparser parses
the result, and the declarations that originate in the header roots (plus
every type they depend on) are rendered back to C and validated by cffi.

Design:
    - One preprocessor pass with -dD: line markers tell which header each
      declaration and #define came from
    - GNU extensions pycparser cannot read are neutralized with -D;
      __attribute__ is cut from the text after its layout effect is recorded
    - Packed records go into a second cdef loaded with packed=True; records
      with other layout attributes are omitted like denylisted types
    - Denylisted types are omitted together with everything that refers to
      them; opaque types become a blob with the compiler's size and alignment
    - Only integer-literal macros become constants, sorted by name
    - Output is byte-for-byte deterministic for the same headers and denylist
"""

import copy
import functools
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

import cffi
from cffi import commontypes, model
from pycparser import c_ast, c_generator, c_parser
from pycparser.c_parser import ParseError

from ..errors import BindingGenerationError
from ..process_runner import ProcessRunner, format_command
from .layout import LINE_MARKER, Layout, SourceLayouts

logger = logging.getLogger(__name__)

BINDINGS_FILENAME = "bindings.py"
UMBRELLA_FILENAME = "bindings_umbrella.h"
LAYOUT_CHECK_DIR = "layout_check"

MAX_MEASURED_SIZE = 1 << 16
MAX_MEASURED_ALIGNMENT = 64

# Element type of an opaque blob, by alignment
OPAQUE_FIELD_TYPES = {1: "uint8_t", 2: "uint16_t", 4: "uint32_t", 8: "uint64_t"}

LayoutMeasure = Callable[[str], Optional[Tuple[int, int]]]

# GNU extensions that pycparser does not understand
NEUTRALIZING_DEFINES = (
    "__asm__(x)=",
    "__asm(x)=",
    "__declspec(x)=",
    "__extension__=",
    "__inline=",
    "__inline__=",
    "__restrict=",
    "__restrict__=",
    "__signed__=signed",
    "__volatile__=volatile",
    "__const=const",
    "__builtin_va_list=char*",
    "_Noreturn=",
    "_Nullable=",
    "_Nonnull=",
    "__float128=long double",
    "_Float128=long double",
)

SPDK_DENYLIST_TYPES = (
    # packed structs that contain aligned members
    "spdk_nvme_tcp_rsp",
    "spdk_nvme_tcp_cmd",
    "spdk_nvmf_fabric_prop_get_rsp",
    "spdk_nvmf_fabric_connect_rsp",
    "spdk_nvmf_fabric_connect_cmd",
    "spdk_nvmf_fabric_auth_send_cmd",
    "spdk_nvmf_fabric_auth_recv_cmd",
    "spdk_nvme_health_information_page",
    "spdk_nvme_ctrlr_data",
)

SPDK_DENYLIST_MACROS = ("FP_INFINITE", "FP_NAN", "FP_NORMAL", "FP_SUBNORMAL", "FP_ZERO")

C_TYPE_KEYWORDS = frozenset({
    "void", "char", "short", "int", "long", "float", "double",
    "signed", "unsigned", "_Bool", "_Complex",
})

OBJECT_MACRO = re.compile(r"^#\s*define\s+([A-Za-z_]\w*)(?:\s+(.*))?$")
FUNCTION_MACRO = re.compile(r"^#\s*define\s+[A-Za-z_]\w*\(")
UNDEF = re.compile(r"^#\s*undef\s+([A-Za-z_]\w*)")
INT_LITERAL = re.compile(
    r"^\(?\s*(-?)\s*(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)(?:[uU]?[lL]{0,2}|[lL]{1,2}[uU]?)\s*\)?$"
)

TypeKey = Tuple[str, str]


def known_cffi_types() -> FrozenSet[str]:
    """Type names cffi resolves on its own (size_t, uint64_t, FILE, ...)."""
    return frozenset(model.PrimitiveType.ALL_PRIMITIVE_TYPES) | frozenset(commontypes.COMMON_TYPES)


@dataclass(frozen=True)
class BindingDenylist:
    """Names excluded from the generated bindings.

    items are regular expressions matched against whole function, global
    variable and macro names.
    """

    types: FrozenSet[str] = frozenset({"max_align_t"})
    opaque_types: FrozenSet[str] = frozenset()
    functions: FrozenSet[str] = frozenset()
    macros: FrozenSet[str] = frozenset()
    items: Tuple[str, ...] = ()

    @classmethod
    def for_features(cls, features: Iterable[str]) -> "BindingDenylist":
        """Default denylist, extended for SPDK when that feature is enabled."""
        denylist = cls()
        if "spdk" in set(features):
            denylist = denylist.merge(cls(
                types=frozenset(SPDK_DENYLIST_TYPES),
                opaque_types=frozenset({"spdk_nvme_sgl_descriptor"}),
                functions=frozenset({"spdk_nvme_ctrlr_get_data"}),
                macros=frozenset(SPDK_DENYLIST_MACROS),
                items=("IPPORT_.*",),
            ))
        return denylist

    def merge(self, other: "BindingDenylist") -> "BindingDenylist":
        return BindingDenylist(
            types=self.types | other.types,
            opaque_types=self.opaque_types | other.opaque_types,
            functions=self.functions | other.functions,
            macros=self.macros | other.macros,
            items=self.items + tuple(p for p in other.items if p not in self.items),
        )

    def blocks_item(self, name: str) -> bool:
        return any(re.fullmatch(pattern, name) for pattern in self.items)


@dataclass(frozen=True)
class BindingDeclaration:
    """One rendered top-level declaration."""

    kind: str  # function, variable, type
    name: str
    text: str
    complete_type: Optional[str] = None  # record spelling that must have a size


@dataclass(frozen=True)
class GeneratedBindingSet:
    """Declarations and integer constants for one cdef.

    packed_declarations hold the bodies of packed records; their forward
    declarations sit in declarations.
    """

    declarations: Tuple[BindingDeclaration, ...]
    macros: Tuple[Tuple[str, int], ...]
    packed_declarations: Tuple[BindingDeclaration, ...] = ()

    def names(self, kind: Optional[str] = None) -> List[str]:
        return [d.name for d in self.declarations if kind is None or d.kind == kind]

    def render_cdef(self) -> str:
        lines = [d.text for d in self.declarations]
        lines.extend(f"#define {name} {value}" for name, value in self.macros)
        return "\n".join(lines) + "\n"

    def render_packed_cdef(self) -> str:
        if not self.packed_declarations:
            return ""
        return "\n".join(d.text for d in self.packed_declarations) + "\n"

    def load(self) -> cffi.FFI:
        """A fresh FFI with both cdefs loaded."""
        ffi = cffi.FFI()
        ffi.cdef(self.render_cdef())
        if self.packed_declarations:
            ffi.cdef(self.render_packed_cdef(), packed=True)
        return ffi

    def render_module(self) -> str:
        """Python module exposing the cdef text and a ready FFI object."""
        text = (
            '"""cffi bindings generated by rocksbuild. Do not edit."""\n'
            "\n"
            "from cffi import FFI\n"
            "\n"
            f'CDEF = r"""\n{self.render_cdef()}"""\n'
        )
        if self.packed_declarations:
            text += f'\nPACKED_CDEF = r"""\n{self.render_packed_cdef()}"""\n'
        text += "\nffi = FFI()\nffi.cdef(CDEF)\n"
        if self.packed_declarations:
            text += "ffi.cdef(PACKED_CDEF, packed=True)\n"
        return text


@dataclass
class _Unit:
    """A top-level declaration with its type dependencies."""

    index: int
    node: c_ast.Node
    kind: str
    name: str
    in_scope: bool
    provides: Set[TypeKey] = field(default_factory=set)
    requires: Set[TypeKey] = field(default_factory=set)
    # types used by value (not behind a pointer)
    value_requires: Set[TypeKey] = field(default_factory=set)
    has_body: bool = False
    layout: Layout = Layout.NATURAL
    opaque_layout: Optional[Tuple[int, int]] = None


class _TypeRefCollector(c_ast.NodeVisitor):
    """Collects the type names a declaration defines and references."""

    def __init__(self, known: FrozenSet[str]):
        self.known = known
        self.provides: Set[TypeKey] = set()
        self.requires: Set[TypeKey] = set()
        self.value_requires: Set[TypeKey] = set()
        self.has_body = False
        self.has_enum_body = False
        self._pointers = 0

    def _require(self, key: TypeKey) -> None:
        self.requires.add(key)
        if self._pointers == 0:
            self.value_requires.add(key)

    def _tagged(self, node, kind: str, body) -> None:
        if body is not None:
            self.has_body = True
        if node.name:
            if body is not None:
                self.provides.add((kind, node.name))
            else:
                self._require((kind, node.name))

    def visit_PtrDecl(self, node):
        self._pointers += 1
        self.generic_visit(node)
        self._pointers -= 1

    def visit_Struct(self, node):
        self._tagged(node, "struct", node.decls)
        self.generic_visit(node)

    def visit_Union(self, node):
        self._tagged(node, "union", node.decls)
        self.generic_visit(node)

    def visit_Enum(self, node):
        self._tagged(node, "enum", node.values)
        if node.values is not None:
            self.has_enum_body = True
            for enumerator in node.values.enumerators:
                self.provides.add(("const", enumerator.name))
        self.generic_visit(node)

    def visit_IdentifierType(self, node):
        names = [n for n in node.names if n not in C_TYPE_KEYWORDS]
        if len(names) == 1 and names[0] not in self.known:
            self._require(("typedef", names[0]))

    def visit_ID(self, node):
        self.requires.add(("const", node.name))


def _first_record(node: c_ast.Node):
    for child in _walk(node):
        if isinstance(child, (c_ast.Struct, c_ast.Union)):
            return child
    return None


def _record_keyword(record) -> str:
    return "union" if isinstance(record, c_ast.Union) else "struct"


def _record_spelling(unit: "_Unit") -> Optional[str]:
    """How to name a record type a declaration defines, for sizeof."""
    if unit.kind != "type":
        return None
    record = _first_record(unit.node)
    if record is None or record.decls is None:
        return None
    if isinstance(unit.node, c_ast.Typedef):
        return unit.name
    if record.name:
        return f"{_record_keyword(record)} {record.name}"
    return None


def _smallest_bound(fits: Callable[[int], bool], limit: int) -> Optional[int]:
    """Smallest n in [1, limit] with fits(n); fits must be monotonic."""
    if not fits(limit):
        return None
    low, high = 0, limit
    while high - low > 1:
        mid = (low + high) // 2
        if fits(mid):
            high = mid
        else:
            low = mid
    return high


def _is_within(path: str, roots: Sequence[Path]) -> bool:
    if not path or path.startswith("<"):
        return False
    resolved = Path(os.path.normpath(os.path.abspath(path)))
    for root in roots:
        try:
            resolved.relative_to(root)
            return True
        except ValueError:
            continue
    return False


def split_preprocessed(text: str) -> Tuple[str, List[Tuple[str, Optional[str], str]]]:
    """
    Separate `cc -E -dD` output into C text and macro events.

    Directive lines other than line markers and pragmas are blanked so that
    line numbers stay correct for the parser.

    Returns:
        Tuple of (C source for pycparser, [(name, value or None for #undef, file)])
    """
    current_file = ""
    events: List[Tuple[str, Optional[str], str]] = []
    out: List[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.startswith("#"):
            out.append(line)
            continue
        marker = LINE_MARKER.match(stripped)
        if marker:
            current_file = marker.group(2)
            out.append(line)
            continue
        if re.match(r"^#\s*pragma\b", stripped):
            out.append("")
            continue
        macro = OBJECT_MACRO.match(stripped)
        if macro and not FUNCTION_MACRO.match(stripped):
            events.append((macro.group(1), (macro.group(2) or "").strip(), current_file))
        else:
            undef = UNDEF.match(stripped)
            if undef:
                events.append((undef.group(1), None, current_file))
        out.append("")
    return "\n".join(out) + "\n", events


def parse_int_literal(value: str) -> Optional[int]:
    """
    Parse a C integer literal (with optional sign, suffix and parentheses).

    Example:
        >>> parse_int_literal("(0x10UL)")
        16
        >>> parse_int_literal("1.5") is None
        True
    """
    match = INT_LITERAL.match(value.strip())
    if not match:
        return None
    sign, digits = match.group(1), match.group(2)
    if digits.lower().startswith("0x"):
        number = int(digits, 16)
    elif digits.startswith("0") and len(digits) > 1:
        number = int(digits, 8)
    else:
        number = int(digits)
    return -number if sign else number


class BindingGenerator:
    """
    Generates a cffi binding module from C headers.

    Example usage:
        generator = BindingGenerator(runner, cc="cc")
        binding_set = generator.generate(
            [include_dir / "rocksdb" / "c.h"], [include_dir], BindingDenylist(), out_dir
        )
        generator.write(binding_set, out_dir)
    """

    def __init__(self, runner: ProcessRunner, cc: str = "cc"):
        """
        Initialize binding generator.

        Args:
            runner: Process runner used for the preprocessor
            cc: C compiler driver used to preprocess headers
        """
        self.runner = runner
        self.cc = cc
        self.known_types = known_cffi_types()

    def preprocess_command(self, umbrella: Path, include_paths: Sequence[Path]) -> List[str]:
        cmd = [self.cc, "-E", "-dD", "-x", "c"]
        cmd.extend(f"-D{define}" for define in NEUTRALIZING_DEFINES)
        cmd.extend(f"-I{inc}" for inc in include_paths)
        cmd.append(str(umbrella))
        return cmd

    def preprocess(
        self,
        headers: Sequence[Path],
        include_paths: Sequence[Path],
        work_dir: Path
    ) -> str:
        """
        Run the C preprocessor over the root headers.

        Raises:
            BindingGenerationError: If a header is missing or preprocessing fails
        """
        for header in headers:
            if not Path(header).exists():
                raise BindingGenerationError(f"Header not found: {header}")

        work_dir.mkdir(parents=True, exist_ok=True)
        umbrella = work_dir / UMBRELLA_FILENAME
        umbrella.write_text(
            "".join(f'#include "{Path(h).resolve().as_posix()}"\n' for h in headers),
            encoding="utf-8",
        )

        cmd = self.preprocess_command(umbrella, include_paths)
        result = self.runner.run(cmd, cwd=work_dir)
        if not result.success:
            raise BindingGenerationError(
                f"Preprocessing headers failed: `{format_command(cmd)}`\n{result.stderr}"
            )
        return result.stdout

    def generate(
        self,
        headers: Sequence[Path],
        include_paths: Sequence[Path],
        denylist: BindingDenylist,
        work_dir: Path
    ) -> GeneratedBindingSet:
        """
        Preprocess, parse and filter the headers into a binding set.

        Args:
            headers: Root headers
            include_paths: Include directories (also count as header roots)
            denylist: Names to exclude
            work_dir: Directory for intermediate files

        Returns:
            GeneratedBindingSet

        Raises:
            BindingGenerationError: On preprocessing, parse or validation failure
        """
        text = self.preprocess(headers, include_paths, work_dir)
        roots = [Path(h).resolve().parent for h in headers]
        roots.extend(Path(inc).resolve() for inc in include_paths)
        measure = functools.partial(
            self.measure_layout, headers=headers, include_paths=include_paths, work_dir=work_dir
        )
        binding_set = self.build_binding_set(text, roots, denylist, measure=measure)
        self.validate(binding_set)
        return binding_set

    def measure_layout(
        self,
        spelling: str,
        headers: Sequence[Path],
        include_paths: Sequence[Path],
        work_dir: Path
    ) -> Optional[Tuple[int, int]]:
        """
        Ask the compiler for the size and alignment of a type.

        Each check is a compile-only test of `sizeof(T) <= N`, bisected over
        N, so nothing has to run on the target.

        Args:
            spelling: C type name (e.g. "struct spdk_nvme_sgl_descriptor")
            headers: Headers declaring the type
            include_paths: Include directories
            work_dir: Directory for the check file

        Returns:
            (size, alignment), or None if the compiler cannot evaluate them
        """
        check_dir = work_dir / LAYOUT_CHECK_DIR
        check_dir.mkdir(parents=True, exist_ok=True)
        source = check_dir / "layout_check.c"
        includes = "".join(f'#include "{Path(h).resolve().as_posix()}"\n' for h in headers)
        cmd = [self.cc, "-fsyntax-only", "-x", "c"]
        cmd.extend(f"-I{inc}" for inc in include_paths)
        cmd.append(str(source))

        def fits(expression: str, bound: int) -> bool:
            source.write_text(
                includes
                + f"typedef char rocksbuild_layout_check[({expression}) <= {bound} ? 1 : -1];\n",
                encoding="utf-8",
            )
            return self.runner.run(cmd, cwd=check_dir).success

        size = _smallest_bound(lambda n: fits(f"sizeof({spelling})", n), MAX_MEASURED_SIZE)
        if size is None:
            logger.warning(f"Could not determine the size of {spelling}")
            return None
        align = _smallest_bound(lambda n: fits(f"__alignof__({spelling})", n), MAX_MEASURED_ALIGNMENT)
        if align is None:
            logger.warning(f"Could not determine the alignment of {spelling}")
            return None
        logger.debug(f"{spelling}: size {size}, alignment {align}")
        return size, align

    def build_binding_set(
        self,
        preprocessed: str,
        roots: Sequence[Path],
        denylist: BindingDenylist,
        measure: Optional[LayoutMeasure] = None
    ) -> GeneratedBindingSet:
        """
        Turn preprocessed header text into a binding set.

        Args:
            preprocessed: `cc -E -dD` output with line markers
            roots: Directories whose declarations are emitted
            denylist: Names to exclude
            measure: Returns (size, alignment) for an opaque type's C
                spelling. Without it opaque types stay incomplete and every
                declaration that holds one by value is omitted.

        Returns:
            GeneratedBindingSet
        """
        roots = [Path(os.path.abspath(r)) for r in roots]
        source, macro_events = split_preprocessed(preprocessed)
        source, layouts = SourceLayouts.scan(source, preprocessed)

        try:
            ast = c_parser.CParser().parse(source, filename="<bindings>")
        except ParseError as e:
            raise BindingGenerationError(f"Failed to parse headers: {e}") from e

        units = self._collect_units(ast, roots, layouts)
        for unit in units:
            if unit.has_body and self._type_names(unit) & denylist.opaque_types:
                unit.opaque_layout = self._opaque_layout(unit, measure)
        selected = self._select(units, denylist)

        # cffi rejects repeated declarations of one name
        declarations: List[BindingDeclaration] = []
        packed: List[BindingDeclaration] = []
        seen: Set[Tuple[bool, str, str]] = set()
        for unit in selected:
            for is_packed, decl in zip((False, True), self._render(unit, denylist)):
                if decl is None:
                    continue
                key = (is_packed, decl.kind, decl.name if decl.kind != "type" else decl.text)
                if key in seen:
                    continue
                seen.add(key)
                (packed if is_packed else declarations).append(decl)

        emitted_names = {unit.name for unit in selected}
        macros = self._collect_macros(macro_events, roots, denylist, emitted_names)

        logger.info(
            f"Generated bindings: {sum(1 for u in selected if u.kind == 'function')} functions, "
            + f"{sum(1 for u in selected if u.kind == 'type')} types "
            + f"({len(packed)} packed), {len(macros)} constants"
        )
        return GeneratedBindingSet(
            declarations=tuple(declarations),
            macros=macros,
            packed_declarations=tuple(packed),
        )

    def _opaque_layout(self, unit: _Unit, measure: Optional[LayoutMeasure]) -> Optional[Tuple[int, int]]:
        if measure is None:
            return None
        record = _first_record(unit.node)
        if isinstance(unit.node, c_ast.Typedef) or record is None or not record.name:
            spelling = unit.name
        else:
            spelling = f"{_record_keyword(record)} {record.name}"
        found = measure(spelling)
        if found is None:
            return None
        size, align = found
        if align not in OPAQUE_FIELD_TYPES or size % align:
            logger.warning(f"Opaque type {spelling} has alignment {align}, leaving it incomplete")
            return None
        return found

    def _collect_units(
        self,
        ast: c_ast.FileAST,
        roots: Sequence[Path],
        layouts: Optional[SourceLayouts] = None
    ) -> List[_Unit]:
        units: List[_Unit] = []
        for index, node in enumerate(ast.ext):
            if isinstance(node, (c_ast.FuncDef, c_ast.Pragma)) or not isinstance(node, (c_ast.Decl, c_ast.Typedef)):
                continue
            if isinstance(node, c_ast.Decl) and "static" in (node.storage or []):
                continue

            if isinstance(node, c_ast.Typedef):
                kind, name = "type", node.name
            elif isinstance(node.type, c_ast.FuncDecl):
                kind, name = "function", node.name
            elif node.name is None:
                kind, name = "type", getattr(node.type, "name", None) or ""
            else:
                kind, name = "variable", node.name

            collector = _TypeRefCollector(self.known_types)
            collector.visit(node)
            unit = _Unit(
                index=index,
                node=node,
                kind=kind,
                name=name,
                in_scope=_is_within(node.coord.file if node.coord else "", roots),
                provides=set(collector.provides),
                requires=collector.requires - collector.provides,
                value_requires=collector.value_requires - collector.provides,
            )
            if isinstance(node, c_ast.Typedef):
                unit.provides.add(("typedef", node.name))
            unit.has_body = collector.has_body
            if kind == "type" and collector.has_body and layouts is not None and node.coord:
                unit.layout = layouts.layout_at(
                    node.coord.file, node.coord.line, getattr(node.coord, "column", None)
                )
                # cffi's packed mode only applies to structs and unions
                if unit.layout is Layout.PACKED and collector.has_enum_body:
                    unit.layout = Layout.UNSUPPORTED
            if kind == "type" and name in self.known_types:
                continue
            units.append(unit)
        return units

    def _type_names(self, unit: _Unit) -> Set[str]:
        return {name for kind, name in unit.provides if kind != "const"}

    def _select(self, units: List[_Unit], denylist: BindingDenylist) -> List[_Unit]:
        providers: Dict[TypeKey, _Unit] = {}
        for unit in units:
            for key in unit.provides:
                current = providers.get(key)
                # a full definition beats a forward declaration
                if current is None or (not current.has_body and unit.has_body):
                    providers[key] = unit

        dropped: Set[int] = set()
        opaque: Set[int] = set()
        omitted: Set[TypeKey] = set()
        for unit in units:
            names = self._type_names(unit)
            if unit.kind == "function":
                if unit.name in denylist.functions or denylist.blocks_item(unit.name):
                    dropped.add(unit.index)
            elif unit.kind == "variable":
                if denylist.blocks_item(unit.name):
                    dropped.add(unit.index)
            elif names & denylist.types:
                dropped.add(unit.index)
                omitted |= unit.provides
            elif names & denylist.opaque_types and unit.has_body:
                opaque.add(unit.index)
            elif unit.layout is Layout.UNSUPPORTED:
                if unit.in_scope:
                    logger.info(f"Omitting {unit.name or '<anonymous>'}: layout attributes cffi cannot express")
                dropped.add(unit.index)
                omitted |= unit.provides

        # An opaque type of unknown size cannot be held by value
        incomplete: Set[TypeKey] = set()
        for unit in units:
            if unit.index in opaque and unit.opaque_layout is None:
                incomplete |= {key for key in unit.provides if key[0] != "const"}
        changed = bool(incomplete)
        while changed:
            changed = False
            for unit in units:
                if unit.index in dropped or unit.index in opaque:
                    continue
                if not unit.value_requires & incomplete:
                    continue
                if unit.kind == "type" and not unit.has_body:
                    aliases = {key for key in unit.provides if key[0] == "typedef"} - incomplete
                    if aliases:
                        incomplete |= aliases
                        changed = True
                else:
                    dropped.add(unit.index)
                    omitted |= unit.provides
                    changed = True

        # Everything that refers to an omitted type goes too
        changed = True
        while changed:
            changed = False
            for unit in units:
                if unit.index in dropped or unit.index in opaque:
                    continue
                if unit.requires & omitted:
                    dropped.add(unit.index)
                    omitted |= unit.provides
                    changed = True

        for unit in units:
            if unit.in_scope and unit.index in dropped:
                logger.debug(f"Omitting {unit.kind} {unit.name or '<anonymous>'}")

        selected: Dict[int, _Unit] = {}
        pending = [u for u in units if u.in_scope and u.index not in dropped]
        while pending:
            unit = pending.pop()
            if unit.index in selected:
                continue
            selected[unit.index] = unit
            if unit.index in opaque:
                continue
            for key in unit.requires:
                provider = providers.get(key)
                if provider is not None and provider.index not in dropped:
                    pending.append(provider)

        return [selected[i] for i in sorted(selected)]

    def _render(
        self,
        unit: _Unit,
        denylist: BindingDenylist
    ) -> Tuple[BindingDeclaration, Optional[BindingDeclaration]]:
        """Render a unit as (declaration, packed record body or None)."""
        node = copy.deepcopy(unit.node)
        if isinstance(node, c_ast.Decl):
            node.storage = []
            node.funcspec = []
        generator = c_generator.CGenerator()

        if self._type_names(unit) & denylist.opaque_types:
            self._make_opaque(node, unit.name)
            forward = generator.visit(node) + ";"
            if unit.opaque_layout is None:
                return BindingDeclaration(unit.kind, unit.name, forward), None
            record = _first_record(node)
            head = f"{_record_keyword(record)} {record.name}"
            size, align = unit.opaque_layout
            body = f"{head} {{ {OPAQUE_FIELD_TYPES[align]} _opaque[{size // align}]; }};"
            text = body if forward == f"{head};" else f"{body}\n{forward}"
            return BindingDeclaration(unit.kind, unit.name, text, complete_type=head), None

        if unit.layout is Layout.PACKED:
            record = copy.deepcopy(_first_record(node))
            record.name = record.name or unit.name
            self._make_opaque(node, unit.name)
            body = BindingDeclaration(
                unit.kind,
                unit.name,
                generator.visit(record) + ";",
                complete_type=f"{_record_keyword(record)} {record.name}",
            )
            return BindingDeclaration(unit.kind, unit.name, generator.visit(node) + ";"), body

        text = generator.visit(node) + ";"
        return BindingDeclaration(unit.kind, unit.name, text, complete_type=_record_spelling(unit)), None

    @staticmethod
    def _make_opaque(node: c_ast.Node, name: str) -> None:
        """Drop struct/union bodies so only a forward declaration remains."""
        for child in _walk(node):
            if isinstance(child, (c_ast.Struct, c_ast.Union)):
                child.decls = None
                if not child.name:
                    child.name = name

    def _collect_macros(
        self,
        events: List[Tuple[str, Optional[str], str]],
        roots: Sequence[Path],
        denylist: BindingDenylist,
        declared: Set[str]
    ) -> Tuple[Tuple[str, int], ...]:
        values: Dict[str, int] = {}
        for name, value, source in events:
            if value is None:
                values.pop(name, None)
                continue
            if not _is_within(source, roots):
                continue
            number = parse_int_literal(value)
            if number is None:
                values.pop(name, None)
                continue
            values[name] = number

        macros = []
        for name in sorted(values):
            if name in denylist.macros or denylist.blocks_item(name):
                logger.debug(f"Dropping denylisted macro {name}")
                continue
            if name in declared:
                continue
            macros.append((name, values[name]))
        return tuple(macros)

    def validate(self, binding_set: GeneratedBindingSet) -> None:
        """
        Load the cdefs into a fresh FFI and complete every record type.

        Raises:
            BindingGenerationError: If cffi rejects the declarations or a
                record cannot be laid out
        """
        try:
            ffi = binding_set.load()
        except (cffi.CDefError, cffi.FFIError) as e:
            raise BindingGenerationError(f"cffi rejected the generated declarations: {e}") from e

        for decl in binding_set.declarations + binding_set.packed_declarations:
            if decl.complete_type is None:
                continue
            try:
                ffi.sizeof(decl.complete_type)
            except (cffi.CDefError, cffi.FFIError, ffi._backend.FFI.error, TypeError) as e:
                raise BindingGenerationError(f"cffi cannot lay out {decl.complete_type}: {e}") from e

    def write(self, binding_set: GeneratedBindingSet, out_dir: Path) -> Path:
        """Write <out_dir>/bindings.py."""
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / BINDINGS_FILENAME
        path.write_text(binding_set.render_module(), encoding="utf-8")
        logger.info(f"Wrote {path}")
        return path


def _walk(node: c_ast.Node):
    yield node
    for _, child in node.children():
        yield from _walk(child)
