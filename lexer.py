from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List


class SiglaError(Exception):
    """Base class for interpreter errors."""


class SiglaParseError(SiglaError):
    """Raised when a fragment cannot be parsed."""


SIGIL = "§"
VARIABLE_PREFIX = "$"
COMMENT = "#"

KEYWORDS = {
    "if",
    "elseif",
    "else",
    "endif",
    "while",
    "endwhile",
    "for",
    "endfor",
    "break",
    "continue",
    "exit",
}

BOOLEANS = {"true", "false"}

SYMBOLS = {
    "[": "LBRACKET",
    "]": "RBRACKET",
    ";": "SEMICOLON",
}

_IDENT_START = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_"
_IDENT_PART = _IDENT_START + "0123456789"
# Barewords double as file arguments (§require[lib/util.sgl]).
_BAREWORD_PART = _IDENT_PART + "-./"


def is_identifier_start(ch: str) -> bool:
    return ch != "" and ch in _IDENT_START


def is_identifier_part(ch: str) -> bool:
    return ch != "" and ch in _IDENT_PART


def scan_identifier(text: str, index: int) -> int:
    """Return the end index of the identifier starting at ``index``.

    Returns ``index`` itself when no identifier starts there.
    """
    n = len(text)
    if index >= n or not is_identifier_start(text[index]):
        return index
    end = index + 1
    while end < n and text[end] in _IDENT_PART:
        end += 1
    return end


def is_valid_name(name: str) -> bool:
    return name != "" and scan_identifier(name, 0) == len(name)


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"Token({self.type}, {self.value!r}, L{self.line}:C{self.column})"


class Lexer:
    """One-pass scanner used for diagnostics and tooling.

    Execution never consumes this token stream; the statement and fragment
    parsers in ``parser.py`` share the identifier primitives defined above.
    """

    def __init__(self, text: str, filename: str = "<string>") -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        symbols = SYMBOLS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in " \t\r\n":
                _advance()
                continue
            if ch == COMMENT:
                self._consume_comment()
                continue
            if ch == SIGIL:
                tokens_append(self._consume_sigil("FUNCTION"))
                continue
            if ch == VARIABLE_PREFIX:
                tokens_append(self._consume_sigil("VARIABLE"))
                continue
            if ch in symbols:
                tokens_append(Token(symbols[ch], ch, self.line, self.column))
                _advance()
                continue
            if ch in ('"', "'"):
                tokens_append(self._consume_string())
                continue
            if ch.isdigit():
                tokens_append(self._consume_number())
                continue
            if ch in _BAREWORD_PART:
                tokens_append(self._consume_bareword())
                continue
            tokens_append(Token("OTHER", ch, self.line, self.column))
            _advance()
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_sigil(self, token_type: str) -> Token:
        line, col = self.line, self.column
        sigil = self._peek()
        self._advance()
        end = scan_identifier(self.text, self.index)
        if end == self.index:
            # A lone sigil is not a reference.
            return Token("OTHER", sigil, line, col)
        name = self.text[self.index:end]
        while self.index < end:
            self._advance()
        return Token(token_type, name, line, col)

    def _consume_string(self) -> Token:
        line, col = self.line, self.column
        opening = self._peek()
        self._advance()
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == "\\":
                self._advance()
                if not self._eof:
                    chars.append(self._peek())
                    self._advance()
                continue
            if ch == opening:
                self._advance()
                break
            chars.append(ch)
            self._advance()
        # Unterminated strings run to end of input; tooling reports, never raises.
        return Token("STRING", "".join(chars), line, col)

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        while not self._eof and (self._peek().isdigit() or self._peek() == "."):
            chars.append(self._peek())
            self._advance()
        return Token("NUMBER", "".join(chars), line, col)

    def _consume_bareword(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        while not self._eof and self._peek() in _BAREWORD_PART:
            chars.append(self._peek())
            self._advance()
        value = "".join(chars)
        if value in BOOLEANS:
            return Token("BOOLEAN", value, line, col)
        if value in KEYWORDS:
            return Token("KEYWORD", value, line, col)
        return Token("IDENTIFIER", value, line, col)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def dump_tokens(tokens: List[Token]) -> str:
    grouped: Dict[str, List[Token]] = {}
    for token in tokens:
        if token.type == "EOF":
            continue
        grouped.setdefault(token.type, []).append(token)
    lines = [f"Total tokens: {sum(len(group) for group in grouped.values())}"]
    for token_type, group in grouped.items():
        lines.append(f"{token_type} ({len(group)}):")
        for token in group:
            lines.append(f"  {token.value!r} @ L{token.line}:C{token.column}")
    return "\n".join(lines)
