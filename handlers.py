from __future__ import annotations
import json
import math
import os
import re
import time
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import numpy as np

from expression import ExpressionError, evaluate_math, is_math_expression
from extensions import FunctionRegistry, Handler, ORIGIN_BUILTIN
from lexer import SIGIL, is_valid_name
from parser import format_number, is_integer_text, parse_number, split_args, strip_quotes


DEFAULT_SLEEP_MS = 1000
MAX_SLEEP_MS = 24 * 60 * 60 * 1000
DEFAULT_DATE_FORMAT = "YYYY-MM-DD"

_INT64 = np.iinfo(np.int64)


def _bool_text(flag: bool) -> str:
    return "true" if flag else "false"


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def type_of(text: str) -> str:
    if text in ("true", "false"):
        return "bool"
    if is_integer_text(text):
        return "int"
    if parse_number(text) is not None:
        return "float"
    if _is_json(text):
        return "json"
    return "string"


def _json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _walk_path(document: Any, key: str) -> Tuple[bool, Any]:
    current = document
    for part in key.split("."):
        if isinstance(current, dict):
            if part not in current:
                return False, None
            current = current[part]
        elif isinstance(current, list):
            if not is_integer_text(part):
                return False, None
            index = int(part)
            if not -len(current) <= index < len(current):
                return False, None
            current = current[index]
        else:
            return False, None
    return True, current


def _set_path(document: Any, key: str, value: Any) -> Any:
    if key == "":
        return value
    parts = key.split(".")
    if not isinstance(document, (dict, list)):
        document = {}
    current = document
    for part in parts[:-1]:
        if isinstance(current, list) and is_integer_text(part) and -len(current) <= int(part) < len(current):
            child = current[int(part)]
            if not isinstance(child, (dict, list)):
                child = {}
                current[int(part)] = child
        elif isinstance(current, dict):
            child = current.get(part)
            if not isinstance(child, (dict, list)):
                child = {}
                current[part] = child
        else:
            raise KeyError(part)
        current = child
    last = parts[-1]
    if isinstance(current, list):
        if not is_integer_text(last) or not -len(current) <= int(last) < len(current):
            raise KeyError(last)
        current[int(last)] = value
    else:
        current[last] = value
    return document


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, Handler] = {}
        # Output, variables, control
        self._register("log", self._log)
        self._register("var", self._var)
        self._register("exit", self._exit)
        self._register("break", self._break)
        self._register("continue", self._continue)
        self._register("require", self._require)
        # Arithmetic
        self._register_binary("add", lambda a, b: a + b)
        self._register_binary("sub", lambda a, b: a - b)
        self._register_binary("mul", lambda a, b: a * b)
        self._register("div", self._div)
        self._register("round", self._round)
        self._register("random", self._random)
        # Strings
        self._register("upper", lambda ctx, args: ctx.argument(args).upper())
        self._register("lower", lambda ctx, args: ctx.argument(args).lower())
        self._register("trim", self._trim)
        self._register("len", self._len)
        self._register("contains", self._contains)
        self._register("replace", self._replace)
        self._register("equalsIgnoreCase", self._equals_ignore_case)
        # Type predicates
        self._register_predicate("isNumeric", lambda text: parse_number(text) is not None)
        self._register_predicate("isText", lambda text: text != "" and parse_number(text) is None)
        self._register_predicate("isBool", lambda text: text in ("true", "false"))
        self._register_predicate("isInt", is_integer_text)
        self._register_predicate("isFloat", lambda text: parse_number(text) is not None and not is_integer_text(text))
        self._register_predicate("isJson", _is_json)
        self._register_predicate("isNaN", lambda text: parse_number(text) is None)
        self._register_predicate("isEven", lambda text: self._parity(text) == 0)
        self._register_predicate("isOdd", lambda text: self._parity(text) == 1)
        self._register_predicate("isMathExpression", is_math_expression)
        self._register("typeOf", lambda ctx, args: type_of(ctx.argument(args)))
        # Files and JSON
        self._register("isFileExist", lambda ctx, args: _bool_text(os.path.isfile(ctx.argument(args))))
        self._register("createFile", self._create_file)
        self._register("readFile", self._read_file)
        self._register("writeFile", self._write_file)
        self._register("jsonRead", self._json_read)
        self._register("jsonWrite", self._json_write)
        self._register("jsonGet", self._json_get)
        self._register("jsonSet", self._json_set)
        self._register("getPath", lambda ctx, args: os.path.abspath(ctx.argument(args) or "."))
        # Time and terminal
        self._register("time", lambda ctx, args: str(int(time.time() * 1000)))
        self._register("date", self._date)
        self._register("sleep", self._sleep)
        self._register("input", self._input)
        self._register("clear", self._clear)

    def _register(self, name: str, impl: Handler) -> None:
        self.table[name] = impl

    def _register_binary(self, name: str, func) -> None:
        rule = name.upper()

        def impl(ctx: Any, args: str) -> str:
            operands = self._numeric_operands(ctx, args, name)
            if operands is None:
                return "0"
            return self._finite(ctx, rule, func(*operands))

        self.table[name] = impl

    def _register_predicate(self, name: str, func) -> None:
        def impl(ctx: Any, args: str) -> str:
            return _bool_text(func(ctx.argument(args)))

        self.table[name] = impl

    def install(self, registry: FunctionRegistry) -> None:
        for name, impl in self.table.items():
            registry.register(name, impl, origin=ORIGIN_BUILTIN)

    # Helpers
    def _numeric_operands(self, ctx: Any, args: str, name: str) -> Optional[Tuple[float, float]]:
        parts = ctx.arguments(args)
        if len(parts) < 2:
            ctx.report(name.upper(), f"{SIGIL}{name} expects two arguments, got: {SIGIL}{name}[{args}]")
            return None
        a, b = parse_number(parts[0]), parse_number(parts[1])
        if a is None or b is None:
            ctx.report(name.upper(), f"Invalid numeric arguments: '{parts[0]}' and '{parts[1]}'")
            return None
        return a, b

    def _finite(self, ctx: Any, rule: str, value: float) -> str:
        if not math.isfinite(value):
            ctx.report(rule, f"Result is not a finite number ({format_number(value)})")
            return "0"
        return format_number(value)

    def _parity(self, text: str) -> Optional[int]:
        number = parse_number(text)
        if number is None or not number.is_integer():
            return None
        return int(number) % 2

    def _evaluate_math(self, ctx: Any, text: str) -> str:
        try:
            result = evaluate_math(text)
        except (ExpressionError, ArithmeticError, RecursionError) as exc:
            ctx.report("MATH", f"Cannot evaluate '{text}': {exc}")
            return "0"
        return self._finite(ctx, "MATH", result)

    def _read_json(self, ctx: Any, rule: str, path: str) -> Tuple[bool, Any]:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return True, json.load(handle)
        except FileNotFoundError:
            ctx.report(rule, f"File not found: {path}")
        except ValueError as exc:
            ctx.report(rule, f"Invalid JSON in {path}: {exc}")
        except OSError as exc:
            ctx.report(rule, f"Failed to read {path}: {exc}")
        return False, None

    def _write_json(self, ctx: Any, rule: str, path: str, document: Any) -> str:
        try:
            with open(path, "w", encoding="utf-8", newline="") as handle:
                handle.write(json.dumps(document, indent=2, ensure_ascii=False))
        except OSError as exc:
            ctx.report(rule, f"Failed to write {path}: {exc}")
            return "false"
        return "true"

    # Output, variables, control
    def _log(self, ctx: Any, args: str) -> None:
        ctx.output(ctx.argument(args))
        return None

    def _var(self, ctx: Any, args: str) -> None:
        parts = split_args(args)
        if len(parts) < 2:
            ctx.report("VAR", f"Invalid {SIGIL}var syntax: expected {SIGIL}var[name; value], got: {SIGIL}var[{args}]")
            return None
        name = parts[0].strip()
        if not is_valid_name(name):
            ctx.report("VAR", f"Invalid variable name '{name}'")
            return None
        value = ctx.resolve(";".join(parts[1:]).strip())
        if is_math_expression(value):
            value = self._evaluate_math(ctx, value)
        value = strip_quotes(value)
        ctx.set_variable(name, value)
        ctx.trace("VAR", f"{name} = {value}")
        return None

    def _exit(self, ctx: Any, args: str) -> str:
        number = parse_number(ctx.argument(args))
        code = int(number) if number is not None and math.isfinite(number) else 0
        ctx.flags.request_exit(code)
        ctx.io_log.append({"event": "EXIT", "code": code})
        return str(code)

    def _break(self, ctx: Any, args: str) -> None:
        ctx.flags.request_break()
        return None

    def _continue(self, ctx: Any, args: str) -> None:
        ctx.flags.request_continue()
        return None

    def _require(self, ctx: Any, args: str) -> str:
        ctx.warn("REQUIRE", f"{SIGIL}require[{args}] reached execution unresolved; ignored")
        return ""

    # Arithmetic
    def _div(self, ctx: Any, args: str) -> str:
        operands = self._numeric_operands(ctx, args, "div")
        if operands is None:
            return "0"
        a, b = operands
        if b == 0:
            ctx.report("DIV", f"Division by zero: {format_number(a)} / {format_number(b)}")
            return "0"
        return self._finite(ctx, "DIV", a / b)

    def _round(self, ctx: Any, args: str) -> str:
        text = ctx.argument(args)
        number = parse_number(text)
        if number is None:
            ctx.report("ROUND", f"Invalid numeric argument: '{text}'")
            return "0"
        return self._finite(ctx, "ROUND", float(math.floor(number + 0.5)))

    def _random(self, ctx: Any, args: str) -> str:
        parts = ctx.arguments(args)
        if len(parts) < 2:
            ctx.report("RANDOM", f"{SIGIL}random expects [min; max], got: {SIGIL}random[{args}]")
            return "0"
        low, high = parse_number(parts[0]), parse_number(parts[1])
        if low is None or high is None or not math.isfinite(low) or not math.isfinite(high):
            ctx.report("RANDOM", f"Invalid numeric arguments: '{parts[0]}' and '{parts[1]}'")
            return "0"
        low_i, high_i = int(low), int(high)
        if low_i > high_i:
            ctx.report("RANDOM", f"Invalid range: min {low_i} is greater than max {high_i}")
            return "0"
        if low_i < _INT64.min or high_i > _INT64.max:
            ctx.report("RANDOM", f"Range {low_i}..{high_i} is outside the supported integer range")
            return "0"
        return str(int(ctx.rng.integers(low_i, high_i, endpoint=True)))

    # Strings
    def _trim(self, ctx: Any, args: str) -> str:
        return re.sub(r"\s+", "", ctx.argument(args))

    def _len(self, ctx: Any, args: str) -> str:
        text = ctx.argument(args)
        if text == "":
            return "0"
        if ";" in text:
            return str(len(text.split(";")))
        return str(len(text))

    def _contains(self, ctx: Any, args: str) -> str:
        parts = ctx.arguments(args)
        if len(parts) < 2:
            return "false"
        return _bool_text(parts[1] in parts[0])

    def _replace(self, ctx: Any, args: str) -> str:
        parts = ctx.arguments(args)
        if len(parts) < 2:
            ctx.report("REPLACE", f"{SIGIL}replace expects [text; search; replacement], got: {SIGIL}replace[{args}]")
            return parts[0] if parts else ""
        text, search = parts[0], parts[1]
        replacement = parts[2] if len(parts) > 2 else ""
        if search == "":
            return text
        return text.replace(search, replacement)

    def _equals_ignore_case(self, ctx: Any, args: str) -> str:
        parts = ctx.arguments(args)
        if len(parts) < 2:
            return "false"
        return _bool_text(parts[0].lower() == parts[1].lower())

    # Files and JSON
    def _create_file(self, ctx: Any, args: str) -> str:
        path = ctx.argument(args)
        if os.path.isfile(path):
            return "true"
        try:
            with open(path, "x", encoding="utf-8"):
                pass
        except OSError as exc:
            ctx.report("CREATEFILE", f"Failed to create {path}: {exc}")
            return "false"
        return "true"

    def _read_file(self, ctx: Any, args: str) -> str:
        path = ctx.argument(args)
        try:
            with open(path, "r", encoding="utf-8", newline="") as handle:
                return handle.read()
        except FileNotFoundError:
            ctx.report("READFILE", f"File not found: {path}")
        except (OSError, UnicodeDecodeError) as exc:
            ctx.report("READFILE", f"Failed to read {path}: {exc}")
        return ""

    def _write_file(self, ctx: Any, args: str) -> str:
        parts = split_args(args)
        if not parts:
            ctx.report("WRITEFILE", f"{SIGIL}writeFile expects [path; content]")
            return "false"
        path = ctx.argument(parts[0])
        content = ctx.argument(";".join(parts[1:]))
        try:
            with open(path, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
        except OSError as exc:
            ctx.report("WRITEFILE", f"Failed to write {path}: {exc}")
            return "false"
        return "true"

    def _json_read(self, ctx: Any, args: str) -> str:
        ok, document = self._read_json(ctx, "JSONREAD", ctx.argument(args))
        return _json_text(document) if ok else ""

    def _json_write(self, ctx: Any, args: str) -> str:
        parts = split_args(args)
        if len(parts) < 2:
            ctx.report("JSONWRITE", f"{SIGIL}jsonWrite expects [path; json], got: {SIGIL}jsonWrite[{args}]")
            return "false"
        path = ctx.argument(parts[0])
        text = ctx.argument(";".join(parts[1:]))
        try:
            document = json.loads(text)
        except ValueError as exc:
            ctx.report("JSONWRITE", f"Invalid JSON: {exc}")
            return "false"
        return self._write_json(ctx, "JSONWRITE", path, document)

    def _json_get(self, ctx: Any, args: str) -> str:
        parts = ctx.arguments(args)
        if not parts:
            ctx.report("JSONGET", f"{SIGIL}jsonGet expects [path; key]")
            return ""
        ok, document = self._read_json(ctx, "JSONGET", parts[0])
        if not ok:
            return ""
        key = parts[1] if len(parts) > 1 else ""
        if key == "":
            value = document
        else:
            found, value = _walk_path(document, key)
            if not found:
                ctx.trace("JSONGET", f"Key '{key}' not found in {parts[0]}")
                return ""
        return value if isinstance(value, str) else _json_text(value)

    def _json_set(self, ctx: Any, args: str) -> str:
        parts = split_args(args)
        if len(parts) < 3:
            ctx.report("JSONSET", f"{SIGIL}jsonSet expects [path; key; value], got: {SIGIL}jsonSet[{args}]")
            return "false"
        path = ctx.argument(parts[0])
        key = ctx.argument(parts[1])
        text = ctx.argument(";".join(parts[2:]))
        if os.path.exists(path):
            ok, document = self._read_json(ctx, "JSONSET", path)
            if not ok:
                return "false"
        else:
            document = {}
        try:
            value = json.loads(text)
        except ValueError:
            value = text
        try:
            document = _set_path(document, key, value)
        except KeyError as exc:
            ctx.report("JSONSET", f"Cannot set '{key}' in {path}: no such index {exc}")
            return "false"
        return self._write_json(ctx, "JSONSET", path, document)

    # Time and terminal
    def _date(self, ctx: Any, args: str) -> str:
        pattern = ctx.argument(args) or DEFAULT_DATE_FORMAT
        now = datetime.now()
        for token, value in (
            ("YYYY", f"{now.year:04d}"),
            ("MM", f"{now.month:02d}"),
            ("DD", f"{now.day:02d}"),
            ("HH", f"{now.hour:02d}"),
            ("mm", f"{now.minute:02d}"),
            ("ss", f"{now.second:02d}"),
        ):
            pattern = pattern.replace(token, value, 1)
        return pattern

    def _sleep(self, ctx: Any, args: str) -> None:
        number = parse_number(ctx.argument(args))
        millis = DEFAULT_SLEEP_MS if number is None or not math.isfinite(number) else max(0.0, number)
        if millis > MAX_SLEEP_MS:
            ctx.report("SLEEP", f"Sleep of {format_number(millis)} ms exceeds the limit of {MAX_SLEEP_MS} ms; skipped")
            return None
        time.sleep(millis / 1000.0)
        return None

    def _input(self, ctx: Any, args: str) -> str:
        prompt = ctx.argument(args)
        return ctx.read_input(f"{prompt} " if prompt else "")

    def _clear(self, ctx: Any, args: str) -> str:
        ctx.clear()
        return "cleared"
