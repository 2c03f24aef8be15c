"""Tests for config loading and validation."""

from pathlib import Path

import pytest
import yaml

from oneshot.config.loader import (
    DEFAULT_SCRIPT_DIR,
    ConfigError,
    load_config,
    read_settings,
    settings_from_config,
    validate_config,
)

VALID = {
    "defaults": {"backend": "agent", "instance": "SQLHOST1", "destination": r"D:\Backups"},
    "connection": {"driver": "ODBC Driver 17 for SQL Server", "timeout": 5},
    "task": {"script_dir": "~/oneshot-scripts", "run_as": "CORP\\svc", "execution_time_limit_hours": 4},
    "agent": {"server_name": "SQLHOST1", "owner_login": "sa"},
    "settings": {"notifications": {"ntfy_topic": "dba"}},
}


def _write(path: Path, data: object) -> Path:
    path.write_text(yaml.dump(data))
    return path


class TestLoadConfig:
    def test_loads_yaml(self, tmp_path: Path) -> None:
        assert load_config(_write(tmp_path / "c.yaml", VALID)) == VALID

    def test_empty_file_returns_none(self, tmp_path: Path) -> None:
        f = tmp_path / "c.yaml"
        f.write_text("")
        assert load_config(f) is None

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")


class TestValidateConfig:
    def test_valid(self) -> None:
        assert validate_config(VALID) == []

    def test_root_must_be_mapping(self) -> None:
        assert validate_config(["a"]) == ["Config root must be a YAML mapping"]  # type: ignore[arg-type]

    def test_section_must_be_mapping(self) -> None:
        assert validate_config({"task": "yes"}) == ["'task' must be a mapping"]

    def test_unknown_section(self) -> None:
        assert validate_config({"jobs": {}}) == ["unknown section 'jobs'"]

    def test_bad_backend(self) -> None:
        errors = validate_config({"defaults": {"backend": "cron"}})
        assert len(errors) == 1
        assert "defaults.backend" in errors[0]

    @pytest.mark.parametrize("timeout", [0, -1, "ten"])
    def test_bad_timeout(self, timeout: object) -> None:
        assert validate_config({"connection": {"timeout": timeout}}) == [
            "connection.timeout: must be a positive integer"
        ]

    def test_password_without_username(self) -> None:
        errors = validate_config({"connection": {"password": "secret"}})
        assert errors == ["connection.password: set connection.username as well"]

    def test_bad_time_limit(self) -> None:
        errors = validate_config({"task": {"execution_time_limit_hours": 0}})
        assert errors == ["task.execution_time_limit_hours: must be a positive integer"]

    def test_notifications_must_be_mapping(self) -> None:
        errors = validate_config({"settings": {"notifications": "ntfy"}})
        assert errors == ["settings.notifications: must be a mapping"]


class TestSettings:
    def test_builtin_defaults(self) -> None:
        settings = settings_from_config(None)
        assert settings.defaults == {}
        assert settings.connection.driver == "ODBC Driver 18 for SQL Server"
        assert settings.connection.timeout == 15
        assert settings.task.script_dir == DEFAULT_SCRIPT_DIR
        assert settings.task.run_as == "SYSTEM"
        assert settings.agent.server_name == "(local)"
        assert settings.raw == {}

    def test_values_from_config(self) -> None:
        settings = settings_from_config(VALID)
        assert settings.defaults["backend"] == "agent"
        assert settings.defaults["destination"] == r"D:\Backups"
        assert settings.connection.driver == "ODBC Driver 17 for SQL Server"
        assert settings.connection.timeout == 5
        assert settings.task.script_dir == Path.home() / "oneshot-scripts"
        assert settings.task.execution_time_limit_hours == 4
        assert settings.agent.owner_login == "sa"
        assert settings.raw is VALID

    def test_default_values_are_strings(self) -> None:
        settings = settings_from_config({"defaults": {"at": "2026-10-17 03:00", "instance": 42}})
        assert settings.defaults["instance"] == "42"


class TestReadSettings:
    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        settings = read_settings(tmp_path / "nope.yaml")
        assert settings.defaults == {}

    def test_valid_file(self, tmp_path: Path) -> None:
        settings = read_settings(_write(tmp_path / "c.yaml", VALID))
        assert settings.agent.server_name == "SQLHOST1"

    def test_empty_file(self, tmp_path: Path) -> None:
        f = tmp_path / "c.yaml"
        f.write_text("")
        with pytest.raises(ConfigError, match="empty"):
            read_settings(f)

    def test_bad_yaml(self, tmp_path: Path) -> None:
        f = tmp_path / "c.yaml"
        f.write_text("defaults: [unclosed")
        with pytest.raises(ConfigError, match="Cannot parse"):
            read_settings(f)

    def test_invalid_config(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="defaults.backend"):
            read_settings(_write(tmp_path / "c.yaml", {"defaults": {"backend": "cron"}}))
