from __future__ import annotations

import pytest

from relaybus.config import (
    CORE_MAJOR,
    DEFAULT_LOGS_ENABLED,
    DEFAULT_LOGS_FORMAT,
    DEFAULT_LOGS_MAX_FILE_BYTES,
    DEFAULT_LOGS_MAX_FILES,
    DEFAULT_LOGS_REDACTION,
    ProjectConfigError,
    initialize_project_config,
    load_project_config,
    load_settings,
    save_project_config,
)


def test_init_config_contains_logs_defaults(tmp_path):
    config_root = initialize_project_config(workspace_dir=tmp_path)
    config = load_project_config(workspace_dir=tmp_path)
    config_text = (config_root / "config.toml").read_text(encoding="utf-8")

    assert "[logs]" in config_text
    assert "enabled = true" in config_text
    assert 'format = "jsonl"' in config_text
    assert "max_file_bytes = 10485760" in config_text
    assert "max_files = 5" in config_text
    assert 'redaction = "default"' in config_text
    assert "redact_patterns = []" in config_text
    assert (config_root / "plugins").is_dir()
    assert (config_root / "logs").is_dir()

    assert config.report_handler_errors is True
    assert config.core_major == CORE_MAJOR
    assert config.logs_enabled is DEFAULT_LOGS_ENABLED
    assert config.logs_format == DEFAULT_LOGS_FORMAT
    assert config.logs_max_file_bytes == DEFAULT_LOGS_MAX_FILE_BYTES
    assert config.logs_max_files == DEFAULT_LOGS_MAX_FILES
    assert config.logs_redaction == DEFAULT_LOGS_REDACTION


def test_init_refuses_existing_directory_unless_forced(tmp_path):
    config_root = initialize_project_config(workspace_dir=tmp_path)
    (config_root / "plugins" / "stale").mkdir()

    with pytest.raises(ProjectConfigError, match="already exists"):
        initialize_project_config(workspace_dir=tmp_path)

    initialize_project_config(workspace_dir=tmp_path, force=True)
    assert not (config_root / "plugins" / "stale").exists()


def test_invalid_values_fallback_to_defaults(tmp_path):
    config_root = initialize_project_config(workspace_dir=tmp_path)
    (config_root / "config.toml").write_text(
        "\n".join(
            [
                "[bus]",
                'report_handler_errors = "maybe"',
                "core_major = 0",
                "",
                "[plugins]",
                'dirs = "not-a-list"',
                "",
                "[logs]",
                'enabled = "maybe"',
                'format = "xml"',
                "max_file_bytes = -1",
                "max_files = 0",
                'redaction = "unknown"',
                "",
            ]
        ),
        encoding="utf-8",
    )

    settings = load_settings(workspace_dir=tmp_path)
    assert settings.report_handler_errors is True
    assert settings.core_major == CORE_MAJOR
    assert settings.plugin_dirs == [(config_root / "plugins").resolve()]
    assert settings.logs_enabled is DEFAULT_LOGS_ENABLED
    assert settings.logs_format == DEFAULT_LOGS_FORMAT
    assert settings.logs_max_file_bytes == DEFAULT_LOGS_MAX_FILE_BYTES
    assert settings.logs_max_files == DEFAULT_LOGS_MAX_FILES
    assert settings.logs_redaction == DEFAULT_LOGS_REDACTION


def test_missing_sections_use_defaults(tmp_path):
    config_root = initialize_project_config(workspace_dir=tmp_path)
    (config_root / "config.toml").write_text("", encoding="utf-8")

    settings = load_settings(workspace_dir=tmp_path)
    assert settings.report_handler_errors is True
    assert settings.logs_redaction == DEFAULT_LOGS_REDACTION


def test_extra_plugin_dirs_resolve_against_project_root(tmp_path):
    config_root = initialize_project_config(workspace_dir=tmp_path)
    config = load_project_config(workspace_dir=tmp_path)
    config.plugin_dirs = ["vendor/plugins", ".relaybus_config/plugins"]
    config.report_handler_errors = False
    save_project_config(config, workspace_dir=tmp_path)

    settings = load_settings(workspace_dir=tmp_path)
    assert settings.plugin_dirs == [
        (config_root / "plugins").resolve(),
        (tmp_path / "vendor" / "plugins").resolve(),
    ]
    assert settings.report_handler_errors is False
    assert settings.logs_dir == config_root / "logs"


def test_missing_config_directory_mentions_init(tmp_path):
    with pytest.raises(ProjectConfigError, match="relaybus init"):
        load_settings(workspace_dir=tmp_path)


def test_malformed_toml_is_reported(tmp_path):
    config_root = initialize_project_config(workspace_dir=tmp_path)
    (config_root / "config.toml").write_text("[bus\nbroken", encoding="utf-8")

    with pytest.raises(ProjectConfigError, match="invalid config file"):
        load_project_config(workspace_dir=tmp_path)


def test_redact_patterns_round_trip_and_invalid_entries_are_dropped(tmp_path):
    initialize_project_config(workspace_dir=tmp_path)
    config = load_project_config(workspace_dir=tmp_path)
    config.logs_redact_patterns = [r"\d{4}-\d{4}", "(unclosed"]
    save_project_config(config, workspace_dir=tmp_path)

    settings = load_settings(workspace_dir=tmp_path)

    assert settings.logs_redact_patterns == [r"\d{4}-\d{4}"]
