"""Runtime container wiring settings, logging, plugins and the bus."""

from __future__ import annotations

from typing import Any, Dict

from relaybus.config import Settings
from relaybus.kernel.debug_log import BusLogger, DebugLogWriter
from relaybus.kernel.eventbus import EventBus
from relaybus.kernel.plugin_manager import PluginLoader, PluginLoadReport


class BusRuntime:
    """One configured bus with its manifest plugins loaded."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.debug_log = DebugLogWriter(
            logs_dir=settings.logs_dir,
            enabled=settings.logs_enabled,
            log_format=settings.logs_format,
            max_file_bytes=settings.logs_max_file_bytes,
            max_files=settings.logs_max_files,
            redaction=settings.logs_redaction,
            redact_patterns=settings.logs_redact_patterns,
        )
        self.logger = BusLogger(self.debug_log, component="runtime")
        self.bus = EventBus(
            logger=self.logger.child("eventbus"),
            report_handler_errors=settings.report_handler_errors,
        )
        self.plugin_loader = PluginLoader(
            settings.plugin_dirs,
            core_major=settings.core_major,
            logger=self.logger.child("plugins"),
        )
        self.plugin_report: PluginLoadReport = self.plugin_loader.load(self.bus)
        for plugin in self.plugin_report.plugins:
            self.bus.add_plugin(plugin)

        self.logger.info(
            "runtime ready",
            kind="startup",
            plugins_loaded=self.plugin_report.loaded_count,
            plugins_failed=self.plugin_report.failed_count,
        )

    async def start(self) -> None:
        await self.bus.init()

    def listener_count(self) -> int:
        return len(self.bus.store)

    def doctor(self, verbose: bool = False) -> Dict[str, Any]:
        report: Dict[str, Any] = {
            "project_root": str(self.settings.project_root),
            "config_root": str(self.settings.config_root),
            "report_handler_errors": bool(self.settings.report_handler_errors),
            "core_major": int(self.settings.core_major),
            "plugin_dirs": [str(path) for path in self.settings.plugin_dirs],
            "plugins_loaded": self.plugin_report.loaded_count,
            "plugins_failed": self.plugin_report.failed_count,
            "hook_plugins": len(self.bus.plugin_manager),
            "listeners": self.listener_count(),
            "patterns": len(self.bus.store.patterns()),
        }
        report.update(self.debug_log.status())

        if verbose:
            report["plugin_failures"] = dict(self.plugin_report.failed)
            report["plugin_ids"] = sorted(self.plugin_report.loaded.keys())
        return report

    def close(self) -> None:
        self.debug_log.close()
