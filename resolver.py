from __future__ import annotations
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Set

from lexer import COMMENT, SIGIL, SiglaError


DEFAULT_EXTENSION = ".sgl"

POLICY_SKIP = "skip"
POLICY_REPEAT = "repeat"
POLICY_ERROR = "error"
REQUIRE_POLICIES = (POLICY_SKIP, POLICY_REPEAT, POLICY_ERROR)

SKIP_MARKER = "# require skipped: {path}"

REQUIRE_RE = re.compile(re.escape(SIGIL) + r"require\[([^\]]+)\]")


class RequireError(SiglaError):
    """Raised for a repeated inclusion under the "error" policy."""


def iter_require_directives(text: str) -> Iterator["re.Match[str]"]:
    """Yield §require matches that are not inside a comment line."""
    for match in REQUIRE_RE.finditer(text):
        line_start = text.rfind("\n", 0, match.start()) + 1
        if text[line_start:match.start()].lstrip().startswith(COMMENT):
            continue
        yield match


@dataclass
class ResolveResult:
    text: str
    errors: List[str] = field(default_factory=list)
    included: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def unresolved(self) -> List[str]:
        return [match.group(0) for match in iter_require_directives(self.text)]

    @property
    def complete(self) -> bool:
        return not self.errors and not self.unresolved


@dataclass
class _ResolveState:
    seen: Set[str]
    chain: List[str]
    result: ResolveResult


class RequireResolver:
    def __init__(
        self,
        base_dir: Optional[str] = None,
        *,
        extension: str = DEFAULT_EXTENSION,
        policy: str = POLICY_SKIP,
        trace: Optional[Callable[[str], None]] = None,
    ) -> None:
        if policy not in REQUIRE_POLICIES:
            raise ValueError(f"Unknown require policy '{policy}' (expected one of {', '.join(REQUIRE_POLICIES)})")
        self.base_dir = base_dir
        self.extension = extension
        self.policy = policy
        self.trace = trace or (lambda message: None)

    def resolve_path(self, raw: str) -> str:
        path = raw.strip()
        if not path.endswith(self.extension):
            path += self.extension
        if not os.path.isabs(path):
            path = os.path.join(self.base_dir or os.getcwd(), path)
        return os.path.abspath(path)

    def resolve(self, source: str, *, origin: Optional[str] = None) -> ResolveResult:
        """Inline every §require in ``source``.

        ``origin`` is the absolute path of the file ``source`` came from, if
        any; it counts as already resolved. Resolution stops at the first
        missing file and returns the text resolved so far.
        """
        result = ResolveResult(text="")
        seen: Set[str] = set()
        chain: List[str] = []
        if origin is not None:
            origin_path = os.path.abspath(origin)
            seen.add(origin_path)
            chain.append(origin_path)
        state = _ResolveState(seen=seen, chain=chain, result=result)
        result.text = self._resolve_text(source, state)
        return result

    def _resolve_text(self, text: str, state: _ResolveState) -> str:
        out: List[str] = []
        pos = 0
        for match in iter_require_directives(text):
            out.append(text[pos:match.start()])
            pos = match.end()
            path = self.resolve_path(match.group(1))

            if self._is_repeat(path, state):
                if self.policy == POLICY_ERROR:
                    raise RequireError(f"File required more than once: {path}")
                self.trace(f"Repeated require skipped: {path}")
                state.result.skipped.append(path)
                out.append(SKIP_MARKER.format(path=path))
                continue

            if not os.path.isfile(path):
                state.result.errors.append(f"File not found: {path}")
                out.append(text[match.start():])
                return "".join(out)
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    content = handle.read()
            except (OSError, UnicodeDecodeError) as exc:
                state.result.errors.append(f"Failed to read {path}: {exc}")
                out.append(text[match.start():])
                return "".join(out)

            self.trace(f"Loading: {path}")
            state.seen.add(path)
            state.result.included.append(path)
            state.chain.append(path)
            try:
                out.append(self._resolve_text(content, state))
            finally:
                state.chain.pop()
            if state.result.errors:
                out.append(text[pos:])
                return "".join(out)
        out.append(text[pos:])
        return "".join(out)

    def _is_repeat(self, path: str, state: _ResolveState) -> bool:
        if path in state.chain:
            return True
        if self.policy == POLICY_REPEAT:
            return False
        return path in state.seen
