from __future__ import annotations

import importlib.util
import itertools
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from lexer import BFError


EXTENSION_API_VERSION = 1

EVENTS = frozenset(
    {
        "program_start",
        "before_instruction",
        "after_instruction",
        "on_output",
        "on_input",
        "on_error",
        "program_end",
    }
)


class BFExtensionError(BFError):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    instruction: str
    ledger_index: int
    pointer: int
    replay: bool


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            raise BFExtensionError(f"Unknown event '{event}'")
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str) -> None:
        if every_n <= 0:
            raise BFExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


def _check_api(requested: int, owner: str) -> None:
    if requested != EXTENSION_API_VERSION:
        raise BFExtensionError(
            f"{owner} requires API {requested}, host supports {EXTENSION_API_VERSION}"
        )


class ExtensionAPI:
    """Handle passed to ``bfstream_register``; everything it registers lands in one RuntimeServices."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        _check_api(requires_api, f"Extension '{name}'")
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        """Subscribe to ``event``; usable directly or as ``@ext.on_event(event)``."""
        registry = self._services.hook_registry

        def attach(fn: Callable[..., None]) -> Callable[..., None]:
            registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
            return fn

        return attach if handler is None else attach(handler)

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        """Run a step rule on steps 0, n, 2n, ...; usable directly or as a decorator."""
        registry = self._services.hook_registry

        def attach(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
            registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
            return fn

        return attach if handler is None else attach(handler)


_loaded_count = itertools.count()


@contextmanager
def _importable_from(directory: str) -> Iterator[None]:
    # extensions may import helper modules that sit next to them
    sys.path.insert(0, directory)
    try:
        yield
    finally:
        if directory in sys.path:
            sys.path.remove(directory)


def load_extension_module(path: str) -> Any:
    if not os.path.isfile(path):
        raise BFExtensionError(f"Extension not found: {path}")
    stem = os.path.splitext(os.path.basename(path))[0]
    mod_name = f"bfstream_ext_{next(_loaded_count)}_{stem}"
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise BFExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)
    with _importable_from(os.path.dirname(os.path.abspath(path))):
        spec.loader.exec_module(module)
    return module


def read_bfx(pointer_file: str) -> List[str]:
    """Extension paths listed in a pointer file, resolved against the file's directory."""
    if not os.path.isfile(pointer_file):
        raise BFExtensionError(f".bfx file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    with open(pointer_file, "r", encoding="utf-8") as handle:
        entries = [raw.partition("#")[0].strip() for raw in handle]
    return [os.path.join(base_dir, entry) for entry in entries if entry]


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    """Expand pointer files and drop repeats, so no extension registers its hooks twice."""
    expanded: List[str] = []
    for p in paths:
        for candidate in (read_bfx(p) if p.lower().endswith(".bfx") else [p]):
            resolved = os.path.abspath(candidate)
            if resolved not in expanded:
                expanded.append(resolved)
    return expanded


def register_extension(services: RuntimeServices, module: Any, path: str) -> None:
    _check_api(getattr(module, "BFSTREAM_EXTENSION_API_VERSION", EXTENSION_API_VERSION), f"Extension {path}")
    register = getattr(module, "bfstream_register", None)
    if not callable(register):
        raise BFExtensionError(f"Extension {path} must define callable bfstream_register(ext)")
    ext_name = getattr(module, "BFSTREAM_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0])
    register(ExtensionAPI(services=services, ext_name=str(ext_name)))


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = RuntimeServices()
    for path in gather_extension_paths(paths):
        register_extension(services, load_extension_module(path), path)
    return services
