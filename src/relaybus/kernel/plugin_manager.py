"""Plugin lifecycle hooks and manifest-based plugin discovery."""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

try:  # pragma: no cover - exercised on Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python 3.9/3.10
    import tomli as tomllib  # type: ignore[no-redef]

from relaybus.kernel.debug_log import BusLogger
from relaybus.kernel.types import ListenerId

HOOK_NAMES = (
    "on_init",
    "on_subscribe",
    "on_unsubscribe",
    "on_before_emit",
    "on_after_emit",
    "on_error",
)

REQUIRED_MANIFEST_FIELDS = [
    "id",
    "name",
    "version",
    "entry",
    "core_api",
    "requires",
]

MANIFEST_FILE_NAME = "plugin.toml"


class Plugin:
    """Base class for bus plugins.

    Every hook is optional and may be a plain method or a coroutine. Hooks
    observe the bus; they cannot change dispatch results.
    """

    name = "plugin"

    def on_init(self) -> Any:
        return None

    def on_subscribe(self, pattern: str, listener_id: ListenerId) -> Any:
        return None

    def on_unsubscribe(self, pattern: str, listener_id: ListenerId) -> Any:
        return None

    def on_before_emit(self, event: str, payload: Any) -> Any:
        return None

    def on_after_emit(self, event: str, payload: Any, duration_ms: float, handler_count: int) -> Any:
        return None

    def on_error(
        self,
        event: str,
        payload: Any,
        error: BaseException,
        listener_id: Optional[ListenerId],
    ) -> Any:
        return None


class PluginManager:
    """Calls lifecycle hooks on every registered plugin.

    Hooks for one call run concurrently; a failing hook is logged and never
    stops the other plugins or the caller.
    """

    def __init__(
        self,
        plugins: Optional[Sequence[Any]] = None,
        logger: Optional[BusLogger] = None,
    ) -> None:
        self._plugins: List[Any] = list(plugins or [])
        self._logger = logger or BusLogger(component="plugins")

    @property
    def plugins(self) -> List[Any]:
        return list(self._plugins)

    def add(self, plugin: Any) -> None:
        self._plugins.append(plugin)

    def __len__(self) -> int:
        return len(self._plugins)

    async def call_hook(self, hook_name: str, *args: Any) -> None:
        if hook_name not in HOOK_NAMES:
            raise ValueError("unknown plugin hook: {0}".format(hook_name))
        if not self._plugins:
            return

        pending: List[Tuple[str, Any]] = []
        for plugin in list(self._plugins):
            hook = getattr(plugin, hook_name, None)
            if not callable(hook):
                continue
            plugin_name = str(getattr(plugin, "name", type(plugin).__name__))
            try:
                returned = hook(*args)
            except Exception as exc:
                self._log_failure(plugin_name, hook_name, exc)
                continue
            if inspect.isawaitable(returned):
                pending.append((plugin_name, returned))

        if not pending:
            return
        outcomes = await asyncio.gather(*(item for _, item in pending), return_exceptions=True)
        for (plugin_name, _), outcome in zip(pending, outcomes):
            if isinstance(outcome, Exception):
                self._log_failure(plugin_name, hook_name, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome

    def _log_failure(self, plugin_name: str, hook_name: str, exc: BaseException) -> None:
        self._logger.error(
            'Error in plugin "{0}" hook "{1}"'.format(plugin_name, hook_name),
            error=exc,
            kind="plugin_hook_failed",
            plugin=plugin_name,
            hook=hook_name,
        )


@dataclass
class PluginManifest:
    plugin_id: str
    name: str
    version: str
    entry: str
    core_api: str
    requires: List[str]
    plugin_dir: Path
    raw: Dict[str, object] = field(default_factory=dict)

    @property
    def entry_module(self) -> str:
        return self.entry.split(":", 1)[0]

    @property
    def entry_function(self) -> str:
        parts = self.entry.split(":", 1)
        return parts[1] if len(parts) == 2 and parts[1] else "register"

    @property
    def entry_file(self) -> Path:
        return self.plugin_dir / (self.entry_module.replace(".", "/") + ".py")


@dataclass
class PluginLoadReport:
    loaded: Dict[str, PluginManifest] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    plugins: List[Any] = field(default_factory=list)

    @property
    def loaded_count(self) -> int:
        return len(self.loaded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


class PluginLoader:
    """Discovers ``plugin.toml`` manifests and runs their entry functions.

    Each entry is called with the bus so it can subscribe listeners; if it
    returns an object it is attached as a hook plugin. Dependencies listed in
    ``requires`` are registered first.
    """

    def __init__(
        self,
        plugin_roots: Sequence[Path],
        core_major: int = 1,
        logger: Optional[BusLogger] = None,
    ) -> None:
        self._plugin_roots = [Path(root) for root in plugin_roots]
        self._core_major = core_major
        self._logger = logger or BusLogger(component="plugins")

    def scan(self) -> PluginLoadReport:
        manifests, failures = self._scan_manifests()

        cycle_nodes = self._detect_cycles(manifests)
        for plugin_id in cycle_nodes:
            failures[plugin_id] = "plugin dependency cycle detected"
            manifests.pop(plugin_id, None)

        # Dropping one plugin can strand the plugins that require it.
        while True:
            missing_by_plugin = self._missing_dependencies(manifests)
            if not missing_by_plugin:
                break
            for plugin_id, missing in missing_by_plugin.items():
                failures[plugin_id] = "missing dependencies: {0}".format(", ".join(missing))
                manifests.pop(plugin_id, None)

        return PluginLoadReport(loaded=manifests, failed=failures)

    def load(self, bus: Any) -> PluginLoadReport:
        report = self.scan()
        ordered = self._dependency_order(report.loaded)
        for plugin_id in ordered:
            manifest = report.loaded[plugin_id]
            unmet = [dep for dep in manifest.requires if dep in report.failed]
            if unmet:
                report.failed[plugin_id] = "dependency failed to load: {0}".format(", ".join(unmet))
                report.loaded.pop(plugin_id)
                continue
            try:
                register = self._import_entry(manifest)
                plugin = register(bus)
            except Exception as exc:
                report.failed[plugin_id] = "entry load error: {0}".format(exc)
                report.loaded.pop(plugin_id)
                self._logger.error(
                    "plugin entry failed",
                    error=exc,
                    kind="plugin_load_failed",
                    plugin=plugin_id,
                )
                continue
            if plugin is not None:
                report.plugins.append(plugin)
            self._logger.info("plugin loaded", kind="plugin_loaded", plugin=plugin_id)
        return report

    def _scan_manifests(self) -> Tuple[Dict[str, PluginManifest], Dict[str, str]]:
        manifests: Dict[str, PluginManifest] = {}
        failures: Dict[str, str] = {}

        for root in self._plugin_roots:
            if not root.exists() or not root.is_dir():
                continue
            for plugin_dir in sorted(root.iterdir()):
                if not plugin_dir.is_dir():
                    continue
                manifest_file = plugin_dir / MANIFEST_FILE_NAME
                if not manifest_file.exists():
                    continue

                try:
                    raw = tomllib.loads(manifest_file.read_text(encoding="utf-8"))
                except Exception as exc:
                    failures[plugin_dir.name] = "manifest parse error: {0}".format(exc)
                    continue

                missing = [name for name in REQUIRED_MANIFEST_FIELDS if name not in raw]
                if missing:
                    failures[plugin_dir.name] = "missing manifest fields: {0}".format(", ".join(missing))
                    continue

                plugin_id = str(raw["id"])
                if plugin_id in manifests:
                    # Earlier roots win; later duplicates are ignored.
                    continue

                if not self._core_api_compatible(str(raw["core_api"])):
                    failures[plugin_id] = "core_api not compatible with core major {0}".format(
                        self._core_major
                    )
                    continue

                manifest = PluginManifest(
                    plugin_id=plugin_id,
                    name=str(raw["name"]),
                    version=str(raw["version"]),
                    entry=str(raw["entry"]),
                    core_api=str(raw["core_api"]),
                    requires=[str(item) for item in list(raw.get("requires") or [])],
                    plugin_dir=plugin_dir,
                    raw=dict(raw),
                )
                if not manifest.entry_file.exists():
                    failures[plugin_id] = "entry target not found: {0}".format(manifest.entry_file.name)
                    continue

                manifests[plugin_id] = manifest

        return manifests, failures

    def _core_api_compatible(self, core_api: str) -> bool:
        """Check ranges like ``>=1.0,<2.0`` against the core major version."""

        major = self._core_major
        parts = [part.strip() for part in core_api.split(",") if part.strip()]
        lower_ok = True
        upper_ok = True

        for part in parts:
            try:
                if part.startswith(">="):
                    lower_ok = major >= int(part[2:].split(".", 1)[0])
                elif part.startswith("<"):
                    upper_ok = major < int(part[1:].split(".", 1)[0])
            except ValueError:
                return False

        return lower_ok and upper_ok

    def _import_entry(self, manifest: PluginManifest) -> Callable[[Any], Any]:
        module_name = "relaybus_plugin_{0}_{1}".format(
            manifest.plugin_id.replace("-", "_").replace(".", "_"),
            manifest.entry_module.replace(".", "_"),
        )
        spec = importlib.util.spec_from_file_location(module_name, manifest.entry_file)
        if spec is None or spec.loader is None:
            raise ImportError("cannot load {0}".format(manifest.entry_file))
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception:
            sys.modules.pop(module_name, None)
            raise
        register = getattr(module, manifest.entry_function, None)
        if not callable(register):
            raise ImportError(
                "entry function not found: {0}".format(manifest.entry)
            )
        return register

    @staticmethod
    def _missing_dependencies(manifests: Dict[str, PluginManifest]) -> Dict[str, List[str]]:
        missing: Dict[str, List[str]] = {}
        for plugin_id, manifest in manifests.items():
            absent = [dep for dep in manifest.requires if dep not in manifests]
            if absent:
                missing[plugin_id] = absent
        return missing

    @staticmethod
    def _dependency_order(manifests: Dict[str, PluginManifest]) -> List[str]:
        ordered: List[str] = []
        seen: Set[str] = set()

        def visit(node: str) -> None:
            if node in seen or node not in manifests:
                return
            seen.add(node)
            for dep in manifests[node].requires:
                visit(dep)
            ordered.append(node)

        for node in sorted(manifests.keys()):
            visit(node)
        return ordered

    @staticmethod
    def _detect_cycles(manifests: Dict[str, PluginManifest]) -> Set[str]:
        graph: Dict[str, List[str]] = {}
        for plugin_id, manifest in manifests.items():
            graph[plugin_id] = [dep for dep in manifest.requires if dep in manifests]

        visiting: Set[str] = set()
        visited: Set[str] = set()
        cycle_nodes: Set[str] = set()

        def walk(node: str, stack: List[str]) -> None:
            if node in visited:
                return
            if node in visiting:
                if node in stack:
                    cycle_nodes.update(stack[stack.index(node) :])
                return

            visiting.add(node)
            stack.append(node)
            for dep in graph.get(node, []):
                walk(dep, stack)
            stack.pop()
            visiting.remove(node)
            visited.add(node)

        for node in list(graph.keys()):
            walk(node, [])

        return cycle_nodes
