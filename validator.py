from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional

from lexer import SIGIL, scan_identifier
from parser import (
    BLOCK_CLOSERS,
    BLOCK_OPENERS,
    KIND_ELSE,
    KIND_ELSEIF,
    KIND_IF,
    OPENER_KINDS,
    classify,
)


_KIND_NAMES = {kind: name for name, kind in OPENER_KINDS.items()}


@dataclass
class ValidationError:
    line: int
    message: str
    statement: str = ""

    def __str__(self) -> str:
        return f"Line {self.line}: {self.message}"


@dataclass
class _OpenBlock:
    kind: str
    line: int
    seen_else: bool = False


def _bracket_error(text: str) -> Optional[str]:
    depth = 0
    for index, ch in enumerate(text):
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth < 0:
                return f"Closing ']' without opening bracket at column {index + 1}"
    if depth > 0:
        return f"Unclosed '[' ({depth} missing ']')"
    return None


class StructuralValidator:
    """Checks block structure of resolved source before anything executes.

    Every problem is collected; nothing is raised. An empty result means the
    program may run.
    """

    def validate(self, text: str) -> List[ValidationError]:
        errors: List[ValidationError] = []
        stack: List[_OpenBlock] = []

        for number, raw in enumerate(text.split("\n"), start=1):
            line = raw.strip()
            if not line.startswith(SIGIL):
                continue
            name_end = scan_identifier(line, 1)
            if name_end == 1:
                continue
            name = line[1:name_end]
            has_args = name_end < len(line) and line[name_end] == "["

            problem = _bracket_error(line)
            if problem is not None:
                errors.append(ValidationError(number, problem, line))
            if name in OPENER_KINDS and not has_args:
                errors.append(ValidationError(number, f"{SIGIL}{name} requires bracketed arguments", line))
                continue

            kind = classify(name, has_args)
            if kind in BLOCK_OPENERS:
                stack.append(_OpenBlock(kind, number))
            elif kind in BLOCK_CLOSERS:
                if not stack:
                    errors.append(ValidationError(number, f"Unmatched {SIGIL}{name} at line {number}", line))
                    continue
                expected = BLOCK_CLOSERS[kind]
                top = stack[-1]
                if top.kind != expected:
                    errors.append(
                        ValidationError(
                            number,
                            f"Mismatched {SIGIL}{name} at line {number}, expected end of "
                            f"{SIGIL}{_KIND_NAMES[top.kind]} started at line {top.line}",
                            line,
                        )
                    )
                    continue
                stack.pop()
            elif kind in (KIND_ELSEIF, KIND_ELSE):
                if not stack or stack[-1].kind != KIND_IF:
                    errors.append(ValidationError(number, f"{SIGIL}{name} at line {number} without matching {SIGIL}if", line))
                    continue
                top = stack[-1]
                if top.seen_else:
                    message = "Duplicate" if kind == KIND_ELSE else "Unexpected"
                    errors.append(
                        ValidationError(
                            number,
                            f"{message} {SIGIL}{name} at line {number} after {SIGIL}else "
                            f"(conditional started at line {top.line})",
                            line,
                        )
                    )
                if kind == KIND_ELSE:
                    top.seen_else = True

        while stack:
            block = stack.pop()
            errors.append(
                ValidationError(block.line, f"Unclosed {SIGIL}{_KIND_NAMES[block.kind]} starting at line {block.line}")
            )
        return errors
