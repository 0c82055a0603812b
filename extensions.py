from __future__ import annotations

import importlib.util
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from lexer import WSError


EXTENSION_API_VERSION = 1

EVENTS = ("program_start", "program_end", "on_error", "on_output")


class WSExtensionError(WSError):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    ip: int
    rule: str
    instruction: Any  # Instruction


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            raise WSExtensionError(f"Unknown event '{event}' (expected one of: {', '.join(EVENTS)})")
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def has_handlers(self, event: str) -> bool:
        return bool(self._events.get(event))

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str) -> None:
        if every_n <= 0:
            raise WSExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    @property
    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    @property
    def name(self) -> str:
        return self._ext_name

    # ---- metadata ----
    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    # ---- hooks ----
    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        if handler is None:
            def deco(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
                self._services.hook_registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
        return handler


def read_wsx(pointer_file: str) -> List[str]:
    """Read a .wsx pointer file: one extension path per line, '#' comments, relative to the file."""
    pointer = Path(pointer_file)
    if not pointer.is_file():
        raise WSExtensionError(f".wsx file not found: {pointer_file}")
    out: List[str] = []
    for raw in pointer.read_text(encoding="utf-8").splitlines():
        line = raw.split("#", 1)[0].strip()
        if line:
            out.append(str((pointer.parent / line).resolve()))
    return out


def expand_extension_paths(paths: Sequence[str]) -> List[Path]:
    expanded: List[Path] = []
    for p in paths:
        found = read_wsx(p) if p.lower().endswith(".wsx") else [p]
        for item in found:
            path = Path(item).resolve()
            # Loading twice would register every hook and step rule twice.
            if path not in expanded:
                expanded.append(path)
    return expanded


def _import_extension(path: Path, index: int) -> Any:
    if not path.is_file():
        raise WSExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(f"wsl_ext_{index}_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise WSExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)  # type: ignore[union-attr]
    return module


def register_extension(module: Any, path: Path, services: RuntimeServices) -> None:
    api_version = getattr(module, "WS_LANG_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise WSExtensionError(f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}")
    register = getattr(module, "ws_lang_register", None)
    if not callable(register):
        raise WSExtensionError(f"Extension {path} must define callable ws_lang_register(ext)")
    ext = ExtensionAPI(services=services, ext_name=str(getattr(module, "WS_LANG_EXTENSION_NAME", path.stem)))
    declared = len(services.metadata)
    register(ext)
    if len(services.metadata) == declared:
        ext.metadata(name=ext.name)


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for index, path in enumerate(expand_extension_paths(paths)):
        register_extension(_import_extension(path, index), path, services)
    return services
