from __future__ import annotations
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Tuple, Union

from lexer import COMMENT, SIGIL, SiglaParseError, scan_identifier


MAX_NESTING_DEPTH = 32

KIND_TEXT = "TEXT"
KIND_DIRECTIVE = "DIRECTIVE"
KIND_IF = "IF"
KIND_ELSEIF = "ELSEIF"
KIND_ELSE = "ELSE"
KIND_ENDIF = "ENDIF"
KIND_WHILE = "WHILE"
KIND_ENDWHILE = "ENDWHILE"
KIND_FOR = "FOR"
KIND_ENDFOR = "ENDFOR"

# Openers only count when they carry bracketed arguments.
OPENER_KINDS = {"if": KIND_IF, "elseif": KIND_ELSEIF, "while": KIND_WHILE, "for": KIND_FOR}
TERMINATOR_KINDS = {"else": KIND_ELSE, "endif": KIND_ENDIF, "endwhile": KIND_ENDWHILE, "endfor": KIND_ENDFOR}

BLOCK_OPENERS = {KIND_IF, KIND_WHILE, KIND_FOR}
BLOCK_CLOSERS = {KIND_ENDIF: KIND_IF, KIND_ENDWHILE: KIND_WHILE, KIND_ENDFOR: KIND_FOR}

_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_INT_RE = re.compile(r"[+-]?\d+")


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


# ---- Fragment tree ----


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Call:
    name: str
    raw_args: str
    source: str
    children: Tuple["Node", ...]
    depth: int


Node = Union[Text, Call]


def find_closing_bracket(text: str, open_index: int, end: Optional[int] = None) -> Optional[int]:
    """Index of the ``]`` balancing the ``[`` at ``open_index``, or None."""
    stop = len(text) if end is None else end
    depth = 0
    for i in range(open_index, stop):
        ch = text[i]
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return i
    return None


@lru_cache(maxsize=4096)
def parse_fragment(text: str) -> Tuple[Node, ...]:
    """Parse ``text`` into literal runs and directive calls.

    A call is ``§identifier[...]`` with balanced brackets; anything else,
    including a sigil without a bracket, stays literal. Arguments are parsed
    recursively so every call records the depth of the subtree under it.
    """
    nodes: List[Node] = []
    n = len(text)
    i = 0
    literal_start = 0
    while i < n:
        if text[i] != SIGIL:
            i += 1
            continue
        name_end = scan_identifier(text, i + 1)
        if name_end == i + 1 or name_end >= n or text[name_end] != "[":
            i += 1
            continue
        close = find_closing_bracket(text, name_end)
        if close is None:
            i += 1
            continue
        if literal_start < i:
            nodes.append(Text(text[literal_start:i]))
        raw_args = text[name_end + 1:close]
        children = parse_fragment(raw_args)
        depth = 1 + max((child.depth for child in children if isinstance(child, Call)), default=0)
        if depth > MAX_NESTING_DEPTH:
            raise SiglaParseError(f"Directive nesting deeper than {MAX_NESTING_DEPTH} levels")
        nodes.append(
            Call(
                name=text[i + 1:name_end],
                raw_args=raw_args,
                source=text[i:close + 1],
                children=children,
                depth=depth,
            )
        )
        i = close + 1
        literal_start = i
    if literal_start < n:
        nodes.append(Text(text[literal_start:]))
    return tuple(nodes)


# ---- Statements ----


@dataclass(frozen=True)
class Statement:
    name: str
    args: str
    has_args: bool
    trailing: str
    kind: str


def classify(name: str, has_args: bool) -> str:
    if name in TERMINATOR_KINDS:
        return TERMINATOR_KINDS[name]
    if has_args and name in OPENER_KINDS:
        return OPENER_KINDS[name]
    return KIND_DIRECTIVE


def parse_statement(line: str) -> Optional[Statement]:
    """Split a stripped program line into its leading directive.

    Returns None for plain text lines. Raises SiglaParseError when the
    argument bracket never closes.
    """
    if not line.startswith(SIGIL):
        return None
    name_end = scan_identifier(line, 1)
    if name_end == 1:
        return None
    name = line[1:name_end]
    if name_end >= len(line) or line[name_end] != "[":
        trailing = line[name_end:].strip()
        return Statement(name=name, args="", has_args=False, trailing=trailing, kind=classify(name, False))
    close = find_closing_bracket(line, name_end)
    if close is None:
        raise SiglaParseError(f"Missing closing bracket ']' for '{SIGIL}{name}'")
    return Statement(
        name=name,
        args=line[name_end + 1:close],
        has_args=True,
        trailing=line[close + 1:].strip(),
        kind=classify(name, True),
    )


@dataclass(frozen=True)
class SourceLine:
    number: int
    text: str
    kind: str
    name: str
    args: str
    trailing: str
    location: SourceLocation

    @property
    def is_opener(self) -> bool:
        return self.kind in BLOCK_OPENERS

    @property
    def is_closer(self) -> bool:
        return self.kind in BLOCK_CLOSERS


@dataclass(frozen=True)
class Program:
    filename: str
    lines: Tuple[SourceLine, ...]

    @classmethod
    def from_source(cls, text: str, filename: str = "<string>") -> "Program":
        lines: List[SourceLine] = []
        for number, raw in enumerate(text.split("\n"), start=1):
            stripped = raw.strip()
            if not stripped or stripped.startswith(COMMENT):
                continue
            column = len(raw) - len(raw.lstrip()) + 1
            location = SourceLocation(file=filename, line=number, column=column, statement=stripped)
            statement = parse_statement(stripped)
            if statement is None:
                lines.append(SourceLine(number, stripped, KIND_TEXT, "", "", "", location))
                continue
            lines.append(
                SourceLine(
                    number=number,
                    text=stripped,
                    kind=statement.kind,
                    name=statement.name,
                    args=statement.args,
                    trailing=statement.trailing,
                    location=location,
                )
            )
        return cls(filename=filename, lines=tuple(lines))

    def __len__(self) -> int:
        return len(self.lines)


# ---- Argument and value helpers ----


def split_args(args: str) -> List[str]:
    """Split on ``;`` outside brackets and quotes. A trailing empty part is dropped."""
    parts: List[str] = []
    current: List[str] = []
    depth = 0
    quote = ""
    for ch in args:
        if quote:
            if ch == quote:
                quote = ""
        elif ch in ('"', "'"):
            quote = ch
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
        if ch == ";" and depth == 0 and not quote:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    if current:
        parts.append("".join(current))
    return parts


def strip_quotes(text: str) -> str:
    result = text.strip()
    if len(result) >= 2 and result[0] == result[-1] and result[0] in ('"', "'"):
        return result[1:-1]
    return result


def parse_number(text: str) -> Optional[float]:
    candidate = text.strip()
    if not _NUMBER_RE.fullmatch(candidate):
        return None
    return float(candidate)


def is_integer_text(text: str) -> bool:
    return _INT_RE.fullmatch(text.strip()) is not None


def format_number(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(float(value))
