"""Configuration loading and directory resolution for relaybus."""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

try:  # pragma: no cover - exercised on Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python 3.9/3.10
    import tomli as tomllib  # type: ignore[no-redef]

CONFIG_DIR_NAME = ".relaybus_config"
CONFIG_FILE_NAME = "config.toml"
PLUGINS_DIR_NAME = "plugins"
LOGS_DIR_NAME = "logs"

CORE_MAJOR = 1
DEFAULT_REPORT_HANDLER_ERRORS = True
DEFAULT_LOGS_ENABLED = True
DEFAULT_LOGS_FORMAT = "jsonl"
DEFAULT_LOGS_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_LOGS_MAX_FILES = 5
DEFAULT_LOGS_REDACTION = "default"
ALLOWED_LOG_FORMATS = ("jsonl",)
ALLOWED_LOG_REDACTION = ("default", "none", "strict")


class ProjectConfigError(RuntimeError):
    """Raised when project configuration is missing or invalid."""


@dataclass
class ProjectConfig:
    report_handler_errors: bool = DEFAULT_REPORT_HANDLER_ERRORS
    core_major: int = CORE_MAJOR
    plugin_dirs: List[str] = field(default_factory=list)
    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_format: str = DEFAULT_LOGS_FORMAT
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION
    logs_redact_patterns: List[str] = field(default_factory=list)


@dataclass
class Settings:
    """Resolved runtime settings for one process."""

    project_root: Path
    config_root: Path
    report_handler_errors: bool = DEFAULT_REPORT_HANDLER_ERRORS
    core_major: int = CORE_MAJOR
    plugin_dirs: List[Path] = field(default_factory=list)
    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_format: str = DEFAULT_LOGS_FORMAT
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION
    logs_redact_patterns: List[str] = field(default_factory=list)

    @property
    def logs_dir(self) -> Path:
        return self.config_root / LOGS_DIR_NAME

    @property
    def default_plugins_dir(self) -> Path:
        return self.config_root / PLUGINS_DIR_NAME


def resolve_project_root(workspace_dir: Optional[Path] = None) -> Path:
    return (workspace_dir or Path.cwd()).resolve()


def resolve_project_config_root(workspace_dir: Optional[Path] = None) -> Path:
    return resolve_project_root(workspace_dir) / CONFIG_DIR_NAME


def project_config_exists(workspace_dir: Optional[Path] = None) -> bool:
    config_root = resolve_project_config_root(workspace_dir)
    return config_root.is_dir() and (config_root / CONFIG_FILE_NAME).is_file()


def _dedupe_paths(paths: List[Path]) -> List[Path]:
    result: List[Path] = []
    seen = set()
    for path in paths:
        normalized = str(path.expanduser().resolve())
        if normalized in seen:
            continue
        seen.add(normalized)
        result.append(Path(normalized))
    return result


def _safe_positive_int_or_default(value: object, default: int) -> int:
    try:
        converted = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return default
    if converted <= 0:
        return default
    return converted


def _safe_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _safe_choice(value: object, default: str, allowed: Sequence[str]) -> str:
    normalized = str(value or default).strip().lower()
    if normalized not in allowed:
        return default
    return normalized


def _safe_string_list(value: object) -> List[str]:
    if not isinstance(value, list):
        return []
    result: List[str] = []
    for item in value:
        text = str(item or "").strip()
        if text:
            result.append(text)
    return result


def _safe_pattern_list(value: object) -> List[str]:
    result: List[str] = []
    for item in _safe_string_list(value):
        try:
            re.compile(item)
        except re.error:
            continue
        result.append(item)
    return result


def _section(data: Dict[str, object], name: str) -> Dict[str, object]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _parse_project_config_data(data: Dict[str, object]) -> ProjectConfig:
    bus = _section(data, "bus")
    plugins = _section(data, "plugins")
    logs = _section(data, "logs")

    return ProjectConfig(
        report_handler_errors=_safe_bool(bus.get("report_handler_errors"), DEFAULT_REPORT_HANDLER_ERRORS),
        core_major=_safe_positive_int_or_default(bus.get("core_major"), CORE_MAJOR),
        plugin_dirs=_safe_string_list(plugins.get("dirs")),
        logs_enabled=_safe_bool(logs.get("enabled"), DEFAULT_LOGS_ENABLED),
        logs_format=_safe_choice(logs.get("format"), DEFAULT_LOGS_FORMAT, ALLOWED_LOG_FORMATS),
        logs_max_file_bytes=_safe_positive_int_or_default(
            logs.get("max_file_bytes"),
            DEFAULT_LOGS_MAX_FILE_BYTES,
        ),
        logs_max_files=_safe_positive_int_or_default(logs.get("max_files"), DEFAULT_LOGS_MAX_FILES),
        logs_redaction=_safe_choice(logs.get("redaction"), DEFAULT_LOGS_REDACTION, ALLOWED_LOG_REDACTION),
        logs_redact_patterns=_safe_pattern_list(logs.get("redact_patterns")),
    )


def _toml_string(value: str) -> str:
    return '"{0}"'.format(str(value or "").replace("\\", "\\\\").replace('"', '\\"'))


def _render_project_config(config: ProjectConfig) -> str:
    lines: List[str] = [
        "[bus]",
        "report_handler_errors = {0}".format(str(bool(config.report_handler_errors)).lower()),
        "core_major = {0}".format(_safe_positive_int_or_default(config.core_major, CORE_MAJOR)),
        "",
        "[plugins]",
        "dirs = [{0}]".format(", ".join(_toml_string(item) for item in config.plugin_dirs)),
        "",
        "[logs]",
        "enabled = {0}".format(str(bool(config.logs_enabled)).lower()),
        "format = {0}".format(
            _toml_string(_safe_choice(config.logs_format, DEFAULT_LOGS_FORMAT, ALLOWED_LOG_FORMATS))
        ),
        "max_file_bytes = {0}".format(
            _safe_positive_int_or_default(config.logs_max_file_bytes, DEFAULT_LOGS_MAX_FILE_BYTES)
        ),
        "max_files = {0}".format(_safe_positive_int_or_default(config.logs_max_files, DEFAULT_LOGS_MAX_FILES)),
        "redaction = {0}".format(
            _toml_string(_safe_choice(config.logs_redaction, DEFAULT_LOGS_REDACTION, ALLOWED_LOG_REDACTION))
        ),
        "redact_patterns = [{0}]".format(", ".join(_toml_string(item) for item in config.logs_redact_patterns)),
        "",
    ]
    return "\n".join(lines)


def initialize_project_config(workspace_dir: Optional[Path] = None, force: bool = False) -> Path:
    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)

    if config_root.exists():
        if not force:
            raise ProjectConfigError(
                "configuration directory already exists: {0}".format(config_root)
            )
        shutil.rmtree(config_root)

    (config_root / PLUGINS_DIR_NAME).mkdir(parents=True, exist_ok=True)
    (config_root / LOGS_DIR_NAME).mkdir(parents=True, exist_ok=True)
    (config_root / CONFIG_FILE_NAME).write_text(
        _render_project_config(ProjectConfig()),
        encoding="utf-8",
    )
    return config_root


def load_project_config(config_root: Optional[Path] = None, workspace_dir: Optional[Path] = None) -> ProjectConfig:
    resolved_root = (config_root or resolve_project_config_root(workspace_dir)).resolve()
    config_file = resolved_root / CONFIG_FILE_NAME
    if not resolved_root.is_dir() or not config_file.is_file():
        raise ProjectConfigError(
            "missing project config directory: {0}, run `relaybus init` first".format(resolved_root)
        )

    try:
        parsed = tomllib.loads(config_file.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ProjectConfigError("invalid config file: {0}".format(config_file)) from exc

    return _parse_project_config_data(parsed)


def save_project_config(
    config: ProjectConfig,
    config_root: Optional[Path] = None,
    workspace_dir: Optional[Path] = None,
) -> Path:
    resolved_root = (config_root or resolve_project_config_root(workspace_dir)).resolve()
    if not resolved_root.is_dir():
        raise ProjectConfigError(
            "missing project config directory: {0}, run `relaybus init` first".format(resolved_root)
        )
    config_file = resolved_root / CONFIG_FILE_NAME
    config_file.write_text(_render_project_config(config), encoding="utf-8")
    return config_file


def load_settings(workspace_dir: Optional[Path] = None) -> Settings:
    """Resolve settings from the project config directory."""

    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)
    project_config = load_project_config(config_root=config_root)

    extra_dirs = [
        path if path.is_absolute() else project_root / path
        for path in (Path(item) for item in project_config.plugin_dirs)
    ]

    return Settings(
        project_root=project_root,
        config_root=config_root,
        report_handler_errors=project_config.report_handler_errors,
        core_major=project_config.core_major,
        plugin_dirs=_dedupe_paths([config_root / PLUGINS_DIR_NAME] + extra_dirs),
        logs_enabled=project_config.logs_enabled,
        logs_format=project_config.logs_format,
        logs_max_file_bytes=project_config.logs_max_file_bytes,
        logs_max_files=project_config.logs_max_files,
        logs_redaction=project_config.logs_redaction,
        logs_redact_patterns=list(project_config.logs_redact_patterns),
    )
