"""Sigla extension: greetings and JSON helpers.

Usage:
  §greet[Alice]                 -> Hello Alice!
  §countProperties[{"a": 1}]    -> 1
"""

from __future__ import annotations
import json
from typing import Any

SIGLA_EXTENSION_NAME = "greeting"
SIGLA_EXTENSION_VERSION = "1.0.0"
SIGLA_EXTENSION_DESCRIPTION = "Greeting and JSON property helpers"
SIGLA_EXTENSION_AUTHOR = "Sigla contributors"
SIGLA_EXTENSION_API_VERSION = 1


def _greet(ctx: Any, args: str) -> str:
    name = ctx.argument(args) or "World"
    return f"Hello {name}!"


def _count_properties(ctx: Any, args: str) -> str:
    text = ctx.argument(args)
    try:
        document = json.loads(text)
    except ValueError as exc:
        ctx.report("COUNTPROPERTIES", f"Invalid JSON: {exc}")
        return "0"
    if not isinstance(document, dict):
        return "0"
    return str(len(document))


SIGLA_FUNCTIONS = {
    "greet": _greet,
    "countProperties": _count_properties,
}
