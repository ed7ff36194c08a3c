"""Record layout attributes in preprocessed headers.

pycparser cannot read GNU attributes, so they are cut out of the header
text before parsing. The ones that change a record's layout (packed,
aligned, #pragma pack) are remembered per top-level statement, which lets
the binding generator tell which records cffi would lay out differently
from the C compiler.

Design:
    - Attributes are replaced by spaces so line/column positions stay valid
    - A top-level statement ends at ';' or at the brace closing a function body
    - packed on the record itself, or #pragma pack(1), maps to cffi's packed mode
    - aligned(N), attributes on members and other pack values cannot be expressed
"""

import bisect
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

LINE_MARKER = re.compile(r'^#\s*(?:line\s+)?(\d+)\s+"((?:[^"\\]|\\.)*)"')
ATTRIBUTE_KEYWORD = re.compile(r"\b__attribute(?:__)?\b")
LAYOUT_WORD = re.compile(r"\b_*(packed|aligned)_*\b")
PRAGMA_PACK = re.compile(r"^#\s*pragma\s+pack\s*\(([^)]*)\)")


class Layout(Enum):
    """How a record's layout relates to natural C layout."""

    NATURAL = "natural"
    PACKED = "packed"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class Statement:
    """Character span of one top-level statement."""

    start: int
    end: int
    layout: Layout = Layout.NATURAL


def _balanced_end(text: str, pos: int) -> Optional[int]:
    while pos < len(text) and text[pos].isspace():
        pos += 1
    if pos >= len(text) or text[pos] != "(":
        return None
    depth = 0
    for i in range(pos, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def strip_attributes(source: str) -> Tuple[str, List[Tuple[int, str]]]:
    """
    Blank out every `__attribute__((...))`.

    Returns:
        Tuple of (text with attributes replaced by spaces, [(offset, attribute text)])

    Example:
        >>> strip_attributes("struct s { int a; } __attribute__((packed));")[1]
        [(20, '__attribute__((packed))')]
    """
    chars = list(source)
    found: List[Tuple[int, str]] = []
    pos = 0
    while True:
        match = ATTRIBUTE_KEYWORD.search(source, pos)
        if not match:
            break
        end = _balanced_end(source, match.end())
        if end is None:
            pos = match.end()
            continue
        found.append((match.start(), source[match.start():end]))
        for i in range(match.start(), end):
            if chars[i] != "\n":
                chars[i] = " "
        pos = end
    return "".join(chars), found


def pack_values(text: str) -> List[Optional[int]]:
    """The `#pragma pack` value in effect on each line (None for the default)."""
    values: List[Optional[int]] = []
    current: Optional[int] = None
    stack: List[Optional[int]] = []
    for line in text.splitlines():
        match = PRAGMA_PACK.match(line.strip())
        if match:
            args = [a.strip() for a in match.group(1).split(",") if a.strip()]
            numbers = [int(a) for a in args if a.isdigit()]
            if args and args[0] == "push":
                stack.append(current)
                if numbers:
                    current = numbers[-1]
            elif args and args[0] == "pop":
                current = stack.pop() if stack else None
            elif numbers:
                current = numbers[-1]
            else:
                current = None
        values.append(current)
    return values


def _skip_literal(text: str, pos: int) -> int:
    quote = text[pos]
    i = pos + 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
        elif text[i] == quote:
            return i + 1
        elif text[i] == "\n":
            return i
        else:
            i += 1
    return len(text)


def scan_statements(
    source: str,
    attributes: Sequence[Tuple[int, str]],
    packs: Sequence[Optional[int]] = ()
) -> List[Statement]:
    """
    Split attribute-free C text into top-level statements and classify them.

    Args:
        source: Text returned by strip_attributes
        attributes: Attribute offsets returned by strip_attributes
        packs: Per-line `#pragma pack` values from pack_values

    Returns:
        Statements in source order
    """
    layout_attributes: Dict[int, str] = {
        offset: text for offset, text in attributes if LAYOUT_WORD.search(text)
    }
    statements: List[Statement] = []
    start = 0
    depth = 0
    line = 0
    previous = ""
    function_body = False
    packed = unsupported = False

    i = 0
    while i < len(source):
        if i in layout_attributes:
            words = {m.group(1) for m in LAYOUT_WORD.finditer(layout_attributes[i])}
            if "aligned" in words or depth > 0:
                unsupported = True
            else:
                packed = True

        ch = source[i]
        if ch == "\n":
            line += 1
            i += 1
            continue
        if ch == "#" and (i == 0 or source[i - 1] == "\n"):
            newline = source.find("\n", i)
            i = len(source) if newline < 0 else newline
            continue
        if ch in "\"'":
            i = _skip_literal(source, i)
            previous = ch
            continue
        if ch.isspace():
            i += 1
            continue

        closes = False
        if ch == "{":
            if depth == 0:
                function_body = previous == ")"
            depth += 1
        elif ch == "}":
            depth -= 1
            closes = depth == 0 and function_body
        elif ch == ";" and depth == 0:
            closes = True
        previous = ch
        i += 1

        if closes:
            pack = packs[line] if line < len(packs) else None
            if pack == 1:
                packed = True
            elif pack is not None:
                unsupported = True
            if unsupported:
                layout = Layout.UNSUPPORTED
            elif packed:
                layout = Layout.PACKED
            else:
                layout = Layout.NATURAL
            statements.append(Statement(start, i, layout))
            start = i
            function_body = False
            packed = unsupported = False
    return statements


class SourceLayouts:
    """
    Looks up the layout of the statement at a parser coordinate.

    pycparser reports positions as (file, line, column) taken from line
    markers; this maps them back to offsets in the text that was parsed.
    """

    def __init__(self, source: str, statements: Sequence[Statement]):
        self.statements = list(statements)
        self._starts = [s.start for s in self.statements]
        self._line_offsets = [0] + [m.end() for m in re.finditer("\n", source)]
        self._lines: Dict[Tuple[str, int], int] = {}
        current_file, current_line = "", 1
        for index, text in enumerate(source.split("\n")):
            marker = LINE_MARKER.match(text.strip())
            if marker:
                current_file, current_line = marker.group(2), int(marker.group(1))
                continue
            self._lines.setdefault((current_file, current_line), index)
            current_line += 1

    @classmethod
    def scan(cls, source: str, original: str) -> Tuple[str, "SourceLayouts"]:
        """
        Strip attributes from parser input and index its statements.

        Args:
            source: C text for the parser (directives already blanked)
            original: Preprocessor output the source was derived from, line for line

        Returns:
            Tuple of (attribute-free source, SourceLayouts)
        """
        stripped, attributes = strip_attributes(source)
        statements = scan_statements(stripped, attributes, pack_values(original))
        return stripped, cls(stripped, statements)

    def layout_at(self, file: str, line: int, column: Optional[int] = None) -> Layout:
        index = self._lines.get((file, line))
        if index is None or index >= len(self._line_offsets):
            return Layout.NATURAL
        offset = self._line_offsets[index] + max((column or 1) - 1, 0)
        pos = bisect.bisect_right(self._starts, offset) - 1
        if pos < 0 or offset >= self.statements[pos].end:
            return Layout.NATURAL
        return self.statements[pos].layout
