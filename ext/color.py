"""Sigla extension: ANSI text styling.

Usage:
  §log[§red[failed]]
  §log[§bold[§green[ok]]]
"""

from __future__ import annotations
from typing import Any

SIGLA_EXTENSION_NAME = "color"
SIGLA_EXTENSION_VERSION = "1.0.0"
SIGLA_EXTENSION_DESCRIPTION = "ANSI colour and weight for terminal output"
SIGLA_EXTENSION_API_VERSION = 1

RESET = "\x1b[0m"
STYLES = {
    "red": "\x1b[31m",
    "green": "\x1b[32m",
    "bold": "\x1b[1m",
}


def sigla_register(ext: Any) -> None:
    for name, code in STYLES.items():
        ext.register_directive(name, _styler(code))


def _styler(code: str):
    def impl(ctx: Any, args: str) -> str:
        return f"{code}{ctx.argument(args)}{RESET}"

    return impl
