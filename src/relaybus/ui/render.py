"""Presentation helpers for relaybus CLI output."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, TextIO

from rich import box
from rich.console import Console
from rich.table import Table

from relaybus.kernel.plugin_manager import PluginLoadReport
from relaybus.kernel.types import ListenerMap

_LISTENER_COLUMNS = ("pattern", "id", "priority", "once", "executions", "avg_ms")


def render_notice(level: str, message: str) -> str:
    prefix_map = {
        "info": "Info",
        "warn": "Warning",
        "error": "Error",
        "success": "Success",
    }
    prefix = prefix_map.get(level, "Info")
    return "{0}: {1}".format(prefix, message)


def _is_tty(stream: TextIO, forced: Optional[bool]) -> bool:
    if forced is not None:
        return forced
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except Exception:
            return False
    return False


def _listener_rows(listeners: ListenerMap) -> List[List[str]]:
    rows: List[List[str]] = []
    for pattern, infos in listeners.items():
        for info in infos:
            rows.append(
                [
                    pattern,
                    str(info.id.value),
                    str(info.priority),
                    "yes" if info.once else "no",
                    str(info.execution_count),
                    "{0:.3f}".format(info.avg_duration),
                ]
            )
    return rows


def render_listeners(listeners: ListenerMap, stream: TextIO, is_tty: Optional[bool] = None) -> None:
    rows = _listener_rows(listeners)
    if not rows:
        stream.write(render_notice("info", "No listeners registered.") + "\n")
        stream.flush()
        return

    if _is_tty(stream, is_tty):
        table = Table(title="Listeners", box=box.ROUNDED, header_style="cyan")
        for column in _LISTENER_COLUMNS:
            table.add_column(column)
        for row in rows:
            table.add_row(*row)
        Console(file=stream, highlight=False, soft_wrap=True).print(table)
        return

    widths = [len(column) for column in _LISTENER_COLUMNS]
    for row in rows:
        widths = [max(width, len(cell)) for width, cell in zip(widths, row)]
    stream.write("  ".join(col.ljust(width) for col, width in zip(_LISTENER_COLUMNS, widths)).rstrip() + "\n")
    for row in rows:
        stream.write("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() + "\n")
    stream.flush()


def render_plugin_report(report: PluginLoadReport) -> str:
    lines = ["plugins_loaded={0} plugins_failed={1}".format(report.loaded_count, report.failed_count)]
    for plugin_id in sorted(report.loaded.keys()):
        manifest = report.loaded[plugin_id]
        lines.append("ok {0} {1} ({2})".format(plugin_id, manifest.version, manifest.plugin_dir))
    for plugin_id in sorted(report.failed.keys()):
        lines.append("failed {0}: {1}".format(plugin_id, report.failed[plugin_id]))
    return "\n".join(lines)


def render_doctor_text(report: Dict[str, Any]) -> str:
    lines = [
        "Doctor Report",
        "project_root={0}".format(report.get("project_root", "")),
        "config_root={0}".format(report.get("config_root", "")),
        "",
        "Bus",
        "report_handler_errors={0}".format(bool(report.get("report_handler_errors"))),
        "core_major={0}".format(int(report.get("core_major") or 0)),
        "listeners={0} patterns={1}".format(
            int(report.get("listeners") or 0),
            int(report.get("patterns") or 0),
        ),
        "",
        "Plugins",
        "plugins_loaded={0} plugins_failed={1} hook_plugins={2}".format(
            int(report.get("plugins_loaded") or 0),
            int(report.get("plugins_failed") or 0),
            int(report.get("hook_plugins") or 0),
        ),
        "",
        "Debug Logs",
        "logs_enabled={0}".format(bool(report.get("logs_enabled"))),
        "logs_active_size_bytes={0} logs_total_size_bytes={1}".format(
            int(report.get("logs_active_size_bytes") or 0),
            int(report.get("logs_total_size_bytes") or 0),
        ),
        "logs_max_file_bytes={0} logs_max_files={1}".format(
            int(report.get("logs_max_file_bytes") or 0),
            int(report.get("logs_max_files") or 0),
        ),
        "logs_write_errors={0}".format(int(report.get("logs_write_errors") or 0)),
        "logs_redaction={0}".format(report.get("logs_redaction", "")),
    ]

    logs_dir = report.get("logs_dir")
    if logs_dir:
        lines.append("logs_dir={0}".format(logs_dir))
    rotated = report.get("logs_rotated_files")
    if isinstance(rotated, list):
        lines.append("logs_rotated_files={0}".format(len(rotated)))

    plugin_failures = report.get("plugin_failures")
    if isinstance(plugin_failures, dict) and plugin_failures:
        lines.append("")
        lines.append("Plugin Failures")
        for plugin_id in sorted(plugin_failures.keys()):
            lines.append("{0}: {1}".format(plugin_id, plugin_failures[plugin_id]))

    return "\n".join(lines)
