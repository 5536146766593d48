from __future__ import annotations
import json
import os
import re
import sys
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Pattern, Tuple

from expression import ExpressionError, build_context, evaluate_condition
from extensions import FunctionRegistry, RuntimeServices, build_default_services
from handlers import Builtins
from lexer import SIGIL, SiglaError, SiglaParseError, is_valid_name
from parser import (
    KIND_DIRECTIVE,
    KIND_ELSE,
    KIND_ELSEIF,
    KIND_ENDIF,
    KIND_FOR,
    KIND_IF,
    KIND_WHILE,
    Call,
    Node,
    Program,
    SourceLine,
    SourceLocation,
    Text,
    format_number,
    parse_fragment,
    parse_number,
    split_args,
    strip_quotes,
)
from resolver import POLICY_SKIP, RequireError, RequireResolver
from validator import StructuralValidator


MAX_WHILE_ITERATIONS = 1000
MAX_FOR_ITERATIONS = 10000

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"
SEVERITY_DEBUG = "debug"


class SiglaRuntimeError(SiglaError):
    """Raised for faults that stop the run."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class ControlSignal(Exception):
    pass


class ExitSignal(ControlSignal):
    def __init__(self, code: int = 0) -> None:
        super().__init__(code)
        self.code = code


class BreakSignal(ControlSignal):
    pass


class ContinueSignal(ControlSignal):
    pass


@dataclass
class ControlFlags:
    exit_requested: bool = False
    exit_code: int = 0
    break_requested: bool = False
    continue_requested: bool = False

    def request_exit(self, code: int = 0) -> None:
        self.exit_requested = True
        self.exit_code = code

    def request_break(self) -> None:
        self.break_requested = True

    def request_continue(self) -> None:
        self.continue_requested = True

    def reset_loop(self) -> None:
        self.break_requested = False
        self.continue_requested = False


@dataclass
class Diagnostic:
    severity: str
    rule: str
    message: str
    location: Optional[SourceLocation] = None

    def format(self) -> str:
        where = f"{self.location.file}:{self.location.line}: " if self.location else ""
        return f"[{self.severity.upper()} {self.rule}] {where}{self.message}"


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    rule: str
    env_snapshot: Optional[Dict[str, str]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0

    def record(
        self,
        *,
        location: Optional[SourceLocation],
        statement: Optional[str],
        rule: str,
        env: Optional[Mapping[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            source_location=location,
            statement=statement,
            rule=rule,
            env_snapshot=dict(env) if self.verbose and env is not None else None,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    @property
    def last(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


def _default_diagnostic_sink(diagnostic: Diagnostic) -> None:
    print(diagnostic.format(), file=sys.stderr)


def _clear_terminal() -> None:
    print("\x1b[2J\x1b[H", end="", flush=True)


class ExecutionContext:
    """Per-run state handed to every directive handler.

    Holds the variable store, control flags, diagnostics and I/O sinks.
    Handlers receive their raw argument text and resolve it themselves
    through ``argument``/``arguments``/``resolve``.
    """

    def __init__(
        self,
        *,
        registry: FunctionRegistry,
        debug: bool = False,
        rng: Optional[np.random.Generator] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        input_provider: Optional[Callable[[str], str]] = None,
        diagnostic_sink: Optional[Callable[[Diagnostic], None]] = None,
        clear_screen: Optional[Callable[[], None]] = None,
    ) -> None:
        self.registry = registry
        self.debug = debug
        self.rng = rng if rng is not None else np.random.default_rng()
        self.output_sink = output_sink or (lambda text: print(text))
        self.input_provider = input_provider or input
        self.diagnostic_sink = diagnostic_sink or _default_diagnostic_sink
        self.clear_screen = clear_screen or _clear_terminal
        self.variables: Dict[str, str] = {}
        self.flags = ControlFlags()
        self.diagnostics: List[Diagnostic] = []
        self.io_log: List[Dict[str, Any]] = []
        self.location: Optional[SourceLocation] = None
        self._substitution: Optional[Tuple[Tuple[str, ...], Pattern[str]]] = None

    # ---- variables ----
    def set_variable(self, name: str, value: str) -> None:
        if not is_valid_name(name):
            raise SiglaRuntimeError(f"Invalid variable name '{name}'", location=self.location, rule="VAR")
        self.variables[name] = str(value)

    def get_variable(self, name: str, default: str = "") -> str:
        return self.variables.get(name, default)

    def _substitution_pattern(self) -> Optional[Pattern[str]]:
        names = tuple(self.variables)
        if not names:
            return None
        cached = self._substitution
        if cached is not None and cached[0] == names:
            return cached[1]
        # Longest names first so $total wins over $to.
        ordered = sorted(names, key=len, reverse=True)
        pattern = re.compile(r"\$(" + "|".join(re.escape(name) for name in ordered) + ")")
        self._substitution = (names, pattern)
        return pattern

    def substitute(self, text: str) -> str:
        if "$" not in text:
            return text
        pattern = self._substitution_pattern()
        if pattern is None:
            return text
        variables = self.variables
        return pattern.sub(lambda match: variables[match.group(1)], text)

    # ---- fragments ----
    def _parse(self, text: str) -> Optional[Tuple[Node, ...]]:
        if SIGIL not in text:
            return (Text(text),) if text else ()
        try:
            return parse_fragment(text)
        except SiglaParseError as exc:
            self.report("PARSE", str(exc))
            return None

    def _call(self, node: Call) -> str:
        if node.name not in self.registry:
            self.trace("CALL", f"Unknown directive {SIGIL}{node.name} left as text")
            return node.source
        result = self.invoke(node.name, strip_quotes(node.raw_args))
        return node.source if result is None else result

    def expand(self, text: str) -> str:
        nodes = self._parse(text)
        if nodes is None:
            return text
        return "".join(node.value if isinstance(node, Text) else self._call(node) for node in nodes)

    def resolve(self, text: str) -> str:
        nodes = self._parse(text)
        if nodes is None:
            return self.substitute(text)
        return "".join(self.substitute(node.value) if isinstance(node, Text) else self._call(node) for node in nodes)

    def argument(self, text: str) -> str:
        # Unquote the written text, never the resolved value.
        return self.resolve(strip_quotes(text))

    def arguments(self, text: str) -> List[str]:
        return [self.argument(part) for part in split_args(text)]

    def invoke(self, name: str, args: str) -> Optional[str]:
        try:
            result = self.registry.invoke(self, name, args)
        except (ControlSignal, SiglaRuntimeError):
            raise
        except Exception as exc:
            raise SiglaRuntimeError(
                f"Internal interpreter error in {SIGIL}{name}: {exc}",
                location=self.location,
                rule=name.upper(),
            ) from exc
        if result is None:
            return None
        if isinstance(result, bool):
            return "true" if result else "false"
        if isinstance(result, float):
            return format_number(result)
        return str(result)

    def evaluate_condition(self, text: str) -> bool:
        resolved = self.resolve(text)
        try:
            result = evaluate_condition(resolved, build_context(self.variables))
        except (ExpressionError, ArithmeticError, ValueError, RecursionError) as exc:
            self.trace("CONDITION", f"'{resolved}' could not be evaluated ({exc}); treated as false")
            return False
        self.trace("CONDITION", f"'{resolved}' -> {'true' if result else 'false'}")
        return result

    # ---- diagnostics ----
    def report(
        self,
        rule: str,
        message: str,
        *,
        severity: str = SEVERITY_ERROR,
        location: Optional[SourceLocation] = None,
    ) -> Diagnostic:
        diagnostic = Diagnostic(severity=severity, rule=rule, message=message, location=location or self.location)
        self.diagnostics.append(diagnostic)
        self.diagnostic_sink(diagnostic)
        return diagnostic

    def warn(self, rule: str, message: str, *, location: Optional[SourceLocation] = None) -> Diagnostic:
        return self.report(rule, message, severity=SEVERITY_WARNING, location=location)

    def trace(self, rule: str, message: str) -> None:
        if self.debug:
            self.report(rule, message, severity=SEVERITY_DEBUG)

    # ---- I/O ----
    def output(self, text: str) -> None:
        self.io_log.append({"event": "LOG", "text": text})
        self.output_sink(text)

    def read_input(self, prompt: str) -> str:
        try:
            text = self.input_provider(prompt)
        except EOFError:
            text = ""
        self.io_log.append({"event": "INPUT", "prompt": prompt, "text": text})
        return text

    def clear(self) -> None:
        self.clear_screen()


@dataclass
class RunResult:
    success: bool
    exit_code: int = 0
    diagnostics: List[Diagnostic] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == SEVERITY_ERROR]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == SEVERITY_WARNING]


@dataclass
class _Branch:
    line: SourceLine
    kind: str
    body_start: int
    body_end: int = -1


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str = "<string>",
        debug: bool = False,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[str], str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        diagnostic_sink: Optional[Callable[[Diagnostic], None]] = None,
        clear_screen: Optional[Callable[[], None]] = None,
        base_dir: Optional[str] = None,
        require_policy: str = POLICY_SKIP,
        seed: Optional[int] = None,
    ) -> None:
        self.source = source
        self.filename = filename if filename == "<string>" else os.path.abspath(filename)
        self.debug = debug
        self.services = services or build_default_services()
        self.input_provider = input_provider
        self.output_sink = output_sink
        self.diagnostic_sink = diagnostic_sink
        self.clear_screen = clear_screen
        self.base_dir = base_dir
        self.require_policy = require_policy
        self.seed = seed

        # Built-ins first, then plugins; precedence is decided by the registry.
        self.registry = FunctionRegistry()
        Builtins().install(self.registry)
        self.services.install(self.registry)

        self.logger = StateLogger(verbose=debug)
        self.context: Optional[ExecutionContext] = None
        self.program: Optional[Program] = None
        self.last_error: Optional[SiglaRuntimeError] = None

    def plugin_info(self) -> List[Dict[str, Any]]:
        return [plugin.info() for plugin in self.services.plugins]

    def _new_context(self) -> ExecutionContext:
        return ExecutionContext(
            registry=self.registry,
            debug=self.debug,
            rng=np.random.default_rng(self.seed),
            output_sink=self.output_sink,
            input_provider=self.input_provider,
            diagnostic_sink=self.diagnostic_sink,
            clear_screen=self.clear_screen,
        )

    # ---- preparation ----
    def prepare(self, ctx: ExecutionContext) -> Optional[Program]:
        """Resolve requires and validate structure; None when the program must not run."""
        if not self.source.strip():
            ctx.report("RUN", "Program is empty")
            return None
        origin = None if self.filename == "<string>" else self.filename
        resolver = RequireResolver(
            self.base_dir,
            policy=self.require_policy,
            trace=lambda message: ctx.trace("REQUIRE", message),
        )
        try:
            resolved = resolver.resolve(self.source, origin=origin)
        except RequireError as exc:
            ctx.report("REQUIRE", str(exc))
            return None
        for message in resolved.errors:
            ctx.report("REQUIRE", message)
        if not resolved.complete:
            if not resolved.errors:
                ctx.report("REQUIRE", f"Unresolved directives remain: {', '.join(resolved.unresolved)}")
            return None

        problems = StructuralValidator().validate(resolved.text)
        for problem in problems:
            location = SourceLocation(file=self.filename, line=problem.line, column=1, statement=problem.statement)
            ctx.report("VALIDATE", problem.message, location=location)
        if problems:
            return None
        try:
            return Program.from_source(resolved.text, self.filename)
        except SiglaParseError as exc:
            ctx.report("PARSE", str(exc))
            return None

    def check(self) -> RunResult:
        ctx = self._new_context()
        self.context = ctx
        program = self.prepare(ctx)
        return RunResult(success=program is not None, diagnostics=list(ctx.diagnostics))

    # ---- execution ----
    def run(self) -> RunResult:
        ctx = self._new_context()
        self.context = ctx
        self.last_error = None
        program = self.prepare(ctx)
        if program is None:
            return self._result(ctx, success=False)
        self.program = program
        exit_code = 0
        try:
            self._execute_top_level()
        except ExitSignal as sig:
            exit_code = sig.code
        except SiglaRuntimeError as error:
            self._fail(ctx, error)
            return self._result(ctx, success=False)
        except Exception as exc:
            last = self.logger.last
            wrapped = SiglaRuntimeError(
                f"Internal interpreter error: {exc}",
                location=last.source_location if last else None,
                rule="internal",
            )
            self._fail(ctx, wrapped)
            return self._result(ctx, success=False)
        return self._result(ctx, success=True, exit_code=exit_code)

    def _fail(self, ctx: ExecutionContext, error: SiglaRuntimeError) -> None:
        if self.logger.entries:
            error.step_index = self.logger.entries[-1].step_index
        self.last_error = error
        ctx.report(error.rule or "RUNTIME", error.message, location=error.location)

    def _result(self, ctx: ExecutionContext, *, success: bool, exit_code: int = 0) -> RunResult:
        return RunResult(
            success=success,
            exit_code=exit_code,
            diagnostics=list(ctx.diagnostics),
            variables=dict(ctx.variables),
        )

    @property
    def _lines(self) -> Tuple[SourceLine, ...]:
        assert self.program is not None
        return self.program.lines

    def _execute_top_level(self) -> None:
        ctx = self.context
        lines = self._lines
        pc = 0
        stop = len(lines)
        while pc < stop:
            self._check_exit()
            end = self._find_terminator(pc, stop) + 1 if lines[pc].is_opener else pc + 1
            try:
                pc = self._step(pc, stop)
            except (BreakSignal, ContinueSignal) as signal:
                word = "break" if isinstance(signal, BreakSignal) else "continue"
                ctx.report(word.upper(), f"{SIGIL}{word} used outside of a loop", location=ctx.location)
                ctx.flags.reset_loop()
                pc = end

    def _execute_block(self, start: int, stop: int) -> None:
        pc = start
        while pc < stop:
            self._check_exit()
            pc = self._step(pc, stop)

    def _step(self, pc: int, stop: int) -> int:
        line = self._lines[pc]
        kind = line.kind
        if kind == KIND_IF:
            return self._execute_if(pc, stop)
        if kind == KIND_WHILE:
            return self._execute_while(pc, stop)
        if kind == KIND_FOR:
            return self._execute_for(pc, stop)
        if kind == KIND_DIRECTIVE:
            self._execute_statement(line)
        return pc + 1

    def _check_exit(self) -> None:
        flags = self.context.flags
        if flags.exit_requested:
            raise ExitSignal(flags.exit_code)

    def _raise_pending(self) -> None:
        flags = self.context.flags
        if flags.exit_requested:
            raise ExitSignal(flags.exit_code)
        if flags.break_requested:
            raise BreakSignal()
        if flags.continue_requested:
            raise ContinueSignal()

    def _log_step(self, line: SourceLine) -> None:
        ctx = self.context
        ctx.location = line.location
        self.logger.record(location=line.location, statement=line.text, rule=line.name or line.kind, env=ctx.variables)

    def _execute_statement(self, line: SourceLine) -> None:
        ctx = self.context
        self._log_step(line)
        if line.trailing:
            ctx.warn("STATEMENT", f"Unexpected text after {SIGIL}{line.name}[...]: '{line.trailing}'; statement skipped")
            return
        if line.name not in self.registry:
            ctx.warn("DISPATCH", f"Unknown directive {SIGIL}{line.name}")
            return
        ctx.invoke(line.name, line.args)
        self._raise_pending()

    def _condition(self, line: SourceLine) -> bool:
        self._check_exit()
        self._log_step(line)
        result = self.context.evaluate_condition(line.args)
        self._raise_pending()
        return result

    def _find_terminator(self, pc: int, stop: int) -> int:
        lines = self._lines
        depth = 0
        for index in range(pc, stop):
            line = lines[index]
            if line.is_opener:
                depth += 1
            elif line.is_closer:
                depth -= 1
                if depth == 0:
                    return index
        opener = lines[pc]
        raise SiglaRuntimeError(f"No terminator for {SIGIL}{opener.name}", location=opener.location, rule=opener.kind)

    def _scan_conditional(self, pc: int, stop: int) -> Tuple[List[_Branch], int]:
        lines = self._lines
        branches: List[_Branch] = []
        current = _Branch(line=lines[pc], kind=KIND_IF, body_start=pc + 1)
        depth = 0
        for index in range(pc + 1, stop):
            line = lines[index]
            if line.is_opener:
                depth += 1
                continue
            if depth > 0:
                if line.is_closer:
                    depth -= 1
                continue
            if line.kind in (KIND_ELSEIF, KIND_ELSE):
                current.body_end = index
                branches.append(current)
                current = _Branch(line=line, kind=line.kind, body_start=index + 1)
            elif line.kind == KIND_ENDIF:
                current.body_end = index
                branches.append(current)
                return branches, index
            elif line.is_closer:
                raise SiglaRuntimeError(f"Unexpected {SIGIL}{line.name} inside {SIGIL}if", location=line.location, rule=KIND_IF)
        opener = lines[pc]
        raise SiglaRuntimeError(f"No {SIGIL}endif for {SIGIL}if", location=opener.location, rule=KIND_IF)

    def _execute_if(self, pc: int, stop: int) -> int:
        branches, endif_index = self._scan_conditional(pc, stop)
        for branch in branches:
            taken = branch.kind == KIND_ELSE or self._condition(branch.line)
            if taken:
                self._execute_block(branch.body_start, branch.body_end)
                break
        return endif_index + 1

    def _loop_condition(self, line: SourceLine) -> bool:
        # break/continue raised while evaluating the loop head end the loop
        try:
            return self._condition(line)
        except (BreakSignal, ContinueSignal):
            return False

    def _execute_while(self, pc: int, stop: int) -> int:
        ctx = self.context
        line = self._lines[pc]
        end = self._find_terminator(pc, stop)
        iterations = 0
        try:
            while True:
                ctx.flags.reset_loop()
                if not self._loop_condition(line):
                    break
                if iterations >= MAX_WHILE_ITERATIONS:
                    ctx.report(
                        "WHILE",
                        f"Loop exceeded {MAX_WHILE_ITERATIONS} iterations, possible infinite loop: {SIGIL}while[{line.args}]",
                        location=line.location,
                    )
                    break
                iterations += 1
                try:
                    self._execute_block(pc + 1, end)
                except BreakSignal:
                    break
                except ContinueSignal:
                    continue
        finally:
            ctx.flags.reset_loop()
        ctx.trace("WHILE", f"{SIGIL}while[{line.args}] finished after {iterations} iterations")
        return end + 1

    def _execute_for(self, pc: int, stop: int) -> int:
        ctx = self.context
        line = self._lines[pc]
        end = self._find_terminator(pc, stop)
        self._check_exit()
        self._log_step(line)

        parts = split_args(line.args)
        if len(parts) != 3:
            ctx.report("FOR", f"Invalid {SIGIL}for syntax: expected {SIGIL}for[var; start; end], got: {SIGIL}for[{line.args}]")
            return end + 1
        name = parts[0].strip()
        if not is_valid_name(name):
            ctx.report("FOR", f"Invalid loop variable name '{name}'")
            return end + 1
        start_text = ctx.argument(parts[1])
        end_text = ctx.argument(parts[2])
        self._raise_pending()
        start, limit = parse_number(start_text), parse_number(end_text)
        if start is None or limit is None:
            ctx.report("FOR", f"Invalid loop bounds: '{start_text}' and '{end_text}' must be numbers")
            return end + 1

        counter = start
        iterations = 0
        try:
            while counter < limit:
                ctx.flags.reset_loop()
                self._check_exit()
                if iterations >= MAX_FOR_ITERATIONS:
                    ctx.report("FOR", f"Loop exceeded {MAX_FOR_ITERATIONS} iterations: {SIGIL}for[{line.args}]", location=line.location)
                    break
                ctx.set_variable(name, format_number(counter))
                iterations += 1
                try:
                    self._execute_block(pc + 1, end)
                except BreakSignal:
                    break
                except ContinueSignal:
                    pass
                counter += 1
        finally:
            ctx.flags.reset_loop()
        ctx.trace("FOR", f"{SIGIL}for[{line.args}] finished after {iterations} iterations")
        return end + 1


@dataclass
class TracebackFrame:
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter, *, depth: int = 5) -> None:
        self.interpreter = interpreter
        self.depth = depth

    def build_frames(self) -> List[TracebackFrame]:
        entries = self.interpreter.logger.entries[-self.depth:]
        return [TracebackFrame(location=e.source_location, statement=e.statement, state_entry=e) for e in entries]

    def format_text(self, error: SiglaRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent step last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append("  <unknown location>")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.env_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v}" for k, v in frame.state_entry.env_snapshot.items())
                    lines.append(f"    Env snapshot: {snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: SiglaRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                entry["rule"] = frame.state_entry.rule
                if frame.state_entry.env_snapshot is not None:
                    entry["env_snapshot"] = frame.state_entry.env_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
