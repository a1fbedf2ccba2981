"""JSONL debug log for bus activity: size-based rotation and error-text redaction."""

from __future__ import annotations

import json
import re
import threading
import traceback
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Pattern

from relaybus.kernel.types import now_ms

REDACTED = "***REDACTED***"
ACTIVE_LOG_NAME = "debug.log.jsonl"
REDACTION_MODES = ("none", "default", "strict")

# Data fields that carry exception text raised by handlers and plugin hooks.
ERROR_TEXT_FIELDS = ("error", "traceback")


class _RotatingJsonl:
    """``debug.log.jsonl`` plus numbered backups ``.1`` (newest) to ``.N``."""

    def __init__(self, directory: Path, max_bytes: int, backups: int) -> None:
        self.directory = directory
        self.max_bytes = max_bytes
        self.backups = backups

    @property
    def active(self) -> Path:
        return self.directory / ACTIVE_LOG_NAME

    def backup(self, index: int) -> Path:
        return self.directory / "{0}.{1}".format(ACTIVE_LOG_NAME, index)

    def existing_backups(self) -> List[Path]:
        return [path for path in map(self.backup, range(1, self.backups + 1)) if path.exists()]

    def append(self, line: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        if self._size(self.active) + len(line) > self.max_bytes:
            self._shift()
        with self.active.open("ab") as fp:
            fp.write(line)

    def sizes(self) -> Dict[str, int]:
        active_size = self._size(self.active)
        backup_size = sum(self._size(path) for path in self.existing_backups())
        return {"active": active_size, "total": active_size + backup_size}

    def _shift(self) -> None:
        self.backup(self.backups).unlink(missing_ok=True)
        for index in reversed(range(1, self.backups)):
            older = self.backup(index)
            if older.exists():
                older.replace(self.backup(index + 1))
        if self.active.exists():
            self.active.replace(self.backup(1))

    @staticmethod
    def _size(path: Path) -> int:
        return int(path.stat().st_size) if path.exists() else 0


class DebugLogWriter:
    """Best-effort writer for bus diagnostics.

    Records are ``{ts_ms, level, component, kind, event, message, data}``.
    The bus only logs event names, counters, durations and exception text, so
    redaction targets the exception text (``data.error``, ``data.traceback``)
    and the message line:

    * ``none`` writes records untouched;
    * ``default`` masks every match of ``redact_patterns``;
    * ``strict`` also replaces exception text and tracebacks wholesale,
      keeping ``error_type`` so failures stay countable.

    Write failures are counted in ``status()`` and never raised.
    """

    def __init__(
        self,
        *,
        logs_dir: Path,
        enabled: bool,
        log_format: str = "jsonl",
        max_file_bytes: int = 10 * 1024 * 1024,
        max_files: int = 5,
        redaction: str = "default",
        redact_patterns: Iterable[str] = (),
    ) -> None:
        self._enabled = bool(enabled)
        # jsonl is the only supported format today.
        self._log_format = "jsonl"
        self._files = _RotatingJsonl(
            Path(logs_dir),
            max_bytes=max(1, int(max_file_bytes or 0)),
            backups=max(1, int(max_files or 0)),
        )
        mode = str(redaction or "default").strip().lower()
        self._redaction = mode if mode in REDACTION_MODES else "default"
        self._patterns: List[Pattern[str]] = [re.compile(item) for item in redact_patterns]
        self._write_errors = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def redaction(self) -> str:
        return self._redaction

    @property
    def active_log_file(self) -> Path:
        return self._files.active

    def write_entry(
        self,
        *,
        level: str,
        component: str,
        kind: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        event: Optional[str] = None,
        ts_ms: Optional[int] = None,
    ) -> None:
        if not self._enabled:
            return

        record = self.redact(
            {
                "ts_ms": int(ts_ms if ts_ms is not None else now_ms()),
                "level": str(level or "info"),
                "component": str(component or "eventbus"),
                "kind": str(kind or "diagnostic"),
                "event": str(event or ""),
                "message": str(message or ""),
                "data": dict(data or {}),
            }
        )
        with self._lock:
            try:
                line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
                self._files.append((line + "\n").encode("utf-8"))
            except Exception:
                self._write_errors += 1

    def redact(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Return ``record`` with exception text masked for the current mode."""

        if self._redaction == "none":
            return record
        data = dict(record.get("data") or {})
        for name in ERROR_TEXT_FIELDS:
            if name not in data or data[name] is None:
                continue
            if self._redaction == "strict":
                data[name] = REDACTED
            else:
                data[name] = self._mask(str(data[name]))
        redacted = dict(record)
        redacted["message"] = self._mask(str(record.get("message") or ""))
        redacted["data"] = data
        return redacted

    def status(self) -> Dict[str, Any]:
        with self._lock:
            backups = self._files.existing_backups() if self._enabled else []
            sizes = self._files.sizes() if self._enabled else {"active": 0, "total": 0}
            return {
                "logs_enabled": self._enabled,
                "logs_dir": str(self._files.directory),
                "logs_active_file": str(self._files.active),
                "logs_active_size_bytes": sizes["active"],
                "logs_max_file_bytes": self._files.max_bytes,
                "logs_max_files": self._files.backups,
                "logs_total_size_bytes": sizes["total"],
                "logs_rotated_files": [str(path) for path in backups],
                "logs_redaction": self._redaction,
                "logs_write_errors": self._write_errors,
            }

    def close(self) -> None:
        # Files are opened per record.
        return

    def _mask(self, text: str) -> str:
        for pattern in self._patterns:
            text = pattern.sub(REDACTED, text)
        return text


class BusLogger:
    """Message sink used by the bus and its plugin layer.

    Without a writer every call is dropped, so the core can always log.
    """

    def __init__(self, writer: Optional[DebugLogWriter] = None, component: str = "eventbus") -> None:
        self._writer = writer
        self._component = component

    @property
    def writer(self) -> Optional[DebugLogWriter]:
        return self._writer

    def child(self, component: str) -> BusLogger:
        return BusLogger(self._writer, component=component)

    def error(self, message: str, *, error: Optional[BaseException] = None, **data: Any) -> None:
        if error is not None:
            data["error_type"] = type(error).__name__
            data["error"] = str(error)
            data["traceback"] = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        self._log("error", message, data)

    def warn(self, message: str, **data: Any) -> None:
        self._log("warn", message, data)

    def info(self, message: str, **data: Any) -> None:
        self._log("info", message, data)

    def debug(self, message: str, **data: Any) -> None:
        self._log("debug", message, data)

    def _log(self, level: str, message: str, data: Dict[str, Any]) -> None:
        if self._writer is None:
            return
        event = data.pop("event", None)
        self._writer.write_entry(
            level=level,
            component=self._component,
            kind=str(data.pop("kind", "diagnostic")),
            message=message,
            data=data,
            event=event,
        )
