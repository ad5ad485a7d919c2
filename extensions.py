from __future__ import annotations

import hashlib
import importlib.util
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from lexer import MeowError


EXTENSION_API_VERSION = 1

# Events emitted by the interpreter, in the order they can occur in a run.
EVENTS = ("program_start", "before_step", "program_end", "on_error")


class MeowExtensionError(Exception):
    pass


class ExtensionHookError(MeowExtensionError):
    """A registered handler raised while the interpreter was running it."""

    def __init__(self, ext_name: str, hook: str, cause: Exception) -> None:
        super().__init__(f"extension '{ext_name}' failed in {hook}: {cause}")
        self.ext_name = ext_name
        self.hook = hook
        self.cause = cause


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    ip: int
    opcode: int
    opname: str
    # Index of the descriptor that was dispatched (NOP for out-of-range opcodes).
    table_index: int


StepHandler = Callable[[Any, StepContext], None]


@dataclass(frozen=True)
class EventHandler:
    ext_name: str
    priority: int
    fn: Callable[..., None]


@dataclass(frozen=True)
class StepRule:
    ext_name: str
    name: str
    every_n: int
    fn: StepHandler

    def due(self, step_index: int) -> bool:
        return step_index % self.every_n == 0


def _call(ext_name: str, hook: str, fn: Callable[..., None], *args: Any) -> None:
    try:
        fn(*args)
    except MeowError:
        raise
    except Exception as exc:
        raise ExtensionHookError(ext_name, hook, exc) from exc


@dataclass
class HookRegistry:
    events: Dict[str, List[EventHandler]] = field(default_factory=dict)
    step_rules: List[StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: EventHandler) -> None:
        if event not in EVENTS:
            raise MeowExtensionError(f"Unknown event '{event}' from extension '{handler.ext_name}'")
        handlers = self.events.setdefault(event, [])
        handlers.append(handler)
        # Highest priority first; ties keep registration order.
        handlers.sort(key=lambda h: -h.priority)

    def emit(self, event: str, *args: Any) -> None:
        for handler in self.events.get(event, ()):
            _call(handler.ext_name, event, handler.fn, *args)

    def add_step_rule(self, rule: StepRule) -> None:
        if rule.every_n < 1:
            raise MeowExtensionError(f"every_n_steps must be >= 1, got {rule.every_n} for '{rule.name}'")
        self.step_rules.append(rule)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self.step_rules:
            if rule.due(ctx.step_index):
                _call(rule.ext_name, f"step rule '{rule.name}'", rule.fn, interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    """Registration surface handed to an extension's ``meow_register``."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self.services = services
        self.name = ext_name

    def metadata(
        self,
        *,
        name: Optional[str] = None,
        version: str = "0.0.0",
        requires_api: int = EXTENSION_API_VERSION,
    ) -> ExtensionMetadata:
        if requires_api != EXTENSION_API_VERSION:
            raise MeowExtensionError(
                f"Extension '{self.name}' requires API {requires_api}, host supports {EXTENSION_API_VERSION}"
            )
        entry = ExtensionMetadata(name=name or self.name, version=version, requires_api=requires_api)
        self.services.metadata.append(entry)
        return entry

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        """Subscribe to ``event``; usable directly or as a decorator."""
        def register(fn: Callable[..., None]) -> Callable[..., None]:
            self.services.hook_registry.on_event(event, EventHandler(self.name, priority, fn))
            return fn
        return register if handler is None else register(handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        def register(fn: StepHandler) -> StepHandler:
            rule = StepRule(self.name, name or fn.__name__, every_n, fn)
            self.services.hook_registry.add_step_rule(rule)
            return fn
        return register if handler is None else register(handler)


def _module_name_for(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    return f"meow_ext_{re.sub(r'[^0-9A-Za-z]', '_', stem)}_{digest}"


def load_extension_module(path: str) -> Any:
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise MeowExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name_for(path), path)
    if spec is None or spec.loader is None:
        raise MeowExtensionError(f"Cannot import extension: {path}")
    module = importlib.util.module_from_spec(spec)

    # Sibling imports resolve against the extension's own directory.
    ext_dir = os.path.dirname(path)
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise MeowExtensionError(f"Extension {path} failed to import: {exc}") from exc
    finally:
        sys.path.remove(ext_dir)
    return module


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def register_extension(services: RuntimeServices, module: Any, *, origin: str) -> None:
    ext_name = str(getattr(module, "MEOW_EXTENSION_NAME", "") or os.path.splitext(os.path.basename(origin))[0])
    wanted = getattr(module, "MEOW_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if wanted != EXTENSION_API_VERSION:
        raise MeowExtensionError(
            f"Extension '{ext_name}' requires API {wanted}, host supports {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "meow_register", None)
    if not callable(register):
        raise MeowExtensionError(f"Extension '{ext_name}' ({origin}) must define callable meow_register(ext)")
    register(ExtensionAPI(services=services, ext_name=ext_name))


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in paths:
        register_extension(services, load_extension_module(path), origin=os.path.abspath(path))
    return services
