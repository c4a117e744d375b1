"""Extension loading and hook dispatch for the RegAsm interpreter.

An extension is a Python file defining ``regasm_register(ext)``. It may set
``REGASM_EXTENSION_NAME`` and ``REGASM_EXTENSION_API_VERSION``; the latter
must match :data:`EXTENSION_API_VERSION`.

Hook signatures, by event:

- ``program_start(interpreter, program)``
- ``before_instruction(interpreter, instruction)``
- ``after_instruction(interpreter, instruction)``
- ``on_read(interpreter, instruction, value)``: a ``Read`` stored ``value``
- ``on_write(interpreter, instruction, record)``: a ``Write`` emitted ``record``
- ``on_error(interpreter, error)``
- ``program_end(interpreter, records)``
"""

from __future__ import annotations

import importlib.util
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence


EXTENSION_API_VERSION = 1

EVENTS = (
    "program_start",
    "before_instruction",
    "after_instruction",
    "on_read",
    "on_write",
    "on_error",
    "program_end",
)

Handler = Callable[..., None]


class ExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class Hook:
    handler: Handler
    priority: int
    ext_name: str


class HookRegistry:
    def __init__(self) -> None:
        self._hooks: Dict[str, List[Hook]] = {event: [] for event in EVENTS}

    def on_event(self, event: str, handler: Handler, *, priority: int = 0, ext_name: str = "") -> None:
        if event not in self._hooks:
            raise ExtensionError(f"Unknown event '{event}' (expected one of: {', '.join(EVENTS)})")
        hooks = self._hooks[event]
        hooks.append(Hook(handler, priority, ext_name))
        # Stable: equal priorities keep registration order.
        hooks.sort(key=lambda hook: -hook.priority)

    def hooks(self, event: str) -> List[Hook]:
        return list(self._hooks.get(event, ()))

    def emit(self, event: str, *args: Any) -> None:
        for hook in self._hooks[event]:
            hook.handler(*args)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    """Handle passed to ``regasm_register``; records hooks under one extension name."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        if requires_api > EXTENSION_API_VERSION:
            raise ExtensionError(
                f"Extension {name} requires API {requires_api}, host supports {EXTENSION_API_VERSION}"
            )
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Handler, *, priority: int = 0) -> None:
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)

    def every_n_steps(self, every_n: int, handler: Callable[[Any, Any], None], *, priority: int = 0) -> None:
        """Call ``handler(interpreter, instruction)`` before every ``every_n``-th executed instruction."""
        if every_n <= 0:
            raise ExtensionError("every_n_steps must be >= 1")

        def on_step(interpreter: Any, instruction: Any) -> None:
            if interpreter.step_count % every_n == 0:
                handler(interpreter, instruction)

        self.on_event("before_instruction", on_step, priority=priority)


def load_extension_module(path: Path, index: int = 0) -> Any:
    if not path.is_file():
        raise ExtensionError(f"Extension not found: {path}")
    stem = "".join(ch if ch.isalnum() else "_" for ch in path.stem)
    spec = importlib.util.spec_from_file_location(f"regasm_ext_{index}_{stem}", str(path))
    if spec is None or spec.loader is None:
        raise ExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for index, raw in enumerate(paths):
        path = Path(raw).resolve()
        module = load_extension_module(path, index)
        api_version = getattr(module, "REGASM_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise ExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "regasm_register", None)
        if not callable(register):
            raise ExtensionError(f"Extension {path} must define callable regasm_register(ext)")
        ext_name = str(getattr(module, "REGASM_EXTENSION_NAME", path.stem))
        register(ExtensionAPI(services=services, ext_name=ext_name))
    return services
