from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from lexer import SiglaError, is_valid_name


EXTENSION_API_VERSION = 1

BUILTIN_PRIORITY = 0
PLUGIN_PRIORITY = 100

ORIGIN_BUILTIN = "builtin"


class SiglaExtensionError(SiglaError):
    pass


# handler(ctx, raw_args) -> replacement text, or None to leave the call as written
Handler = Callable[[Any, str], Optional[str]]


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "1.0.0"
    description: str = ""
    author: str = "Unknown"
    requires_api: int = EXTENSION_API_VERSION
    path: Optional[str] = None


@dataclass(frozen=True)
class DirectiveSpec:
    name: str
    handler: Handler
    origin: str
    priority: int
    sequence: int


@dataclass
class FunctionRegistry:
    """Name -> handler table consulted at dispatch time.

    Every registration is kept. Lookup returns the entry with the highest
    priority, and among equal priorities the one registered last, so plugin
    handlers win over built-ins no matter which side registered first.
    """

    _entries: Dict[str, List[DirectiveSpec]] = field(default_factory=dict)
    _sequence: int = 0

    def register(
        self,
        name: str,
        handler: Handler,
        *,
        origin: str = ORIGIN_BUILTIN,
        priority: int = BUILTIN_PRIORITY,
    ) -> DirectiveSpec:
        if not isinstance(name, str) or not is_valid_name(name):
            raise SiglaExtensionError(f"Invalid directive name {name!r}")
        if not callable(handler):
            raise SiglaExtensionError(f"Handler for '{name}' is not callable")
        self._sequence += 1
        spec = DirectiveSpec(name=name, handler=handler, origin=origin, priority=priority, sequence=self._sequence)
        self._entries.setdefault(name, []).append(spec)
        return spec

    def install_plugin(self, plugin: "Plugin") -> None:
        for name, handler in plugin.functions.items():
            self.register(name, handler, origin=plugin.metadata.name, priority=PLUGIN_PRIORITY)

    def get(self, name: str) -> Optional[DirectiveSpec]:
        candidates = self._entries.get(name)
        if not candidates:
            return None
        return max(candidates, key=lambda spec: (spec.priority, spec.sequence))

    def names(self) -> List[str]:
        return sorted(self._entries)

    def invoke(self, ctx: Any, name: str, args: str) -> Optional[str]:
        spec = self.get(name)
        if spec is None:
            raise SiglaExtensionError(f"Unknown directive '{name}'")
        return spec.handler(ctx, args)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class Plugin:
    metadata: ExtensionMetadata
    functions: Dict[str, Handler] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name

    def info(self) -> Dict[str, Any]:
        return {
            "name": self.metadata.name,
            "version": self.metadata.version,
            "description": self.metadata.description,
            "author": self.metadata.author,
            "functions": sorted(self.functions),
            "path": self.metadata.path,
        }


class ExtensionAPI:
    """Handed to a module's ``sigla_register(ext)`` hook."""

    def __init__(self, *, plugin: Plugin) -> None:
        self._plugin = plugin

    def register_directive(self, name: str, handler: Handler) -> None:
        if not is_valid_name(name):
            raise SiglaExtensionError(f"Invalid directive name {name!r} in extension '{self._plugin.name}'")
        if not callable(handler):
            raise SiglaExtensionError(f"Directive '{name}' in extension '{self._plugin.name}' is not callable")
        self._plugin.functions[name] = handler

    def directive(self, name: str):
        def deco(fn: Handler) -> Handler:
            self.register_directive(name, fn)
            return fn

        return deco


@dataclass
class RuntimeServices:
    plugins: List[Plugin] = field(default_factory=list)

    def add_plugin(self, plugin: Plugin) -> None:
        self.plugins.append(plugin)

    def install(self, registry: FunctionRegistry) -> None:
        # Load order decides precedence between plugins.
        for plugin in self.plugins:
            registry.install_plugin(plugin)


def _unique_module_name(path: str) -> str:
    base = os.path.basename(path)
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    safe = "".join(ch if ch.isalnum() else "_" for ch in base)
    return f"sigla_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.exists(path):
        raise SiglaExtensionError(f"Extension not found: {path}")
    mod_name = _unique_module_name(path)
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise SiglaExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Let extensions import siblings by temporarily prepending their directory.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)  # type: ignore[union-attr]
    except SiglaError:
        raise
    except Exception as exc:
        raise SiglaExtensionError(f"Extension {path} failed to import: {exc}") from exc
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def plugin_from_module(module: Any, path: Optional[str] = None) -> Plugin:
    where = path or getattr(module, "__name__", "<module>")
    name = getattr(module, "SIGLA_EXTENSION_NAME", None)
    if not isinstance(name, str) or not name.strip():
        raise SiglaExtensionError(f"Extension {where} must define SIGLA_EXTENSION_NAME")
    api_version = getattr(module, "SIGLA_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise SiglaExtensionError(
            f"Extension {where} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
        )
    metadata = ExtensionMetadata(
        name=name.strip(),
        version=str(getattr(module, "SIGLA_EXTENSION_VERSION", "1.0.0")),
        description=str(getattr(module, "SIGLA_EXTENSION_DESCRIPTION", "")),
        author=str(getattr(module, "SIGLA_EXTENSION_AUTHOR", "Unknown")),
        requires_api=api_version,
        path=os.path.abspath(path) if path else None,
    )
    plugin = Plugin(metadata=metadata)
    api = ExtensionAPI(plugin=plugin)

    functions = getattr(module, "SIGLA_FUNCTIONS", None)
    register = getattr(module, "sigla_register", None)
    if functions is None and register is None:
        raise SiglaExtensionError(f"Extension {where} must define SIGLA_FUNCTIONS or callable sigla_register(ext)")
    if functions is not None:
        if not isinstance(functions, Mapping):
            raise SiglaExtensionError(f"SIGLA_FUNCTIONS in {where} must be a mapping of name to handler")
        for directive_name, handler in functions.items():
            api.register_directive(directive_name, handler)
    if register is not None:
        if not callable(register):
            raise SiglaExtensionError(f"sigla_register in {where} must be callable")
        register(api)
    return plugin


def load_plugin(path: str) -> Plugin:
    return plugin_from_module(load_extension_module(path), path)


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in paths:
        services.add_plugin(load_plugin(os.path.abspath(path)))
    return services
