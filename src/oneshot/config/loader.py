"""YAML configuration loader and validator."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from oneshot.core.connection import DEFAULT_DRIVER, ConnectionSettings

BACKENDS = ("task", "agent")
DEFAULT_SCRIPT_DIR = Path.home() / ".local" / "share" / "oneshot" / "scripts"

_SECTIONS = ("defaults", "connection", "task", "agent", "settings")


class ConfigError(Exception):
    """Raised for invalid or missing configuration."""


@dataclass
class TaskSettings:
    script_dir: Path = DEFAULT_SCRIPT_DIR
    python: Optional[str] = None
    powershell: str = "powershell.exe"
    sqlcmd: str = "sqlcmd"
    run_as: str = "SYSTEM"
    execution_time_limit_hours: int = 72


@dataclass
class AgentSettings:
    server_name: str = "(local)"
    owner_login: Optional[str] = None


@dataclass
class Settings:
    """Effective settings: config file values over built-in defaults."""

    defaults: dict[str, str] = field(default_factory=dict)
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    task: TaskSettings = field(default_factory=TaskSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    raw: dict[str, Any] = field(default_factory=dict)


def load_config(path: Path) -> Optional[dict[str, Any]]:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to the YAML config file

    Returns:
        Parsed configuration dictionary, or None if file is empty

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    with open(path) as f:
        result: Optional[dict[str, Any]] = yaml.safe_load(f)
        return result


def validate_config(config: dict[str, Any]) -> list[str]:
    """
    Validate a loaded configuration dictionary.

    Returns:
        List of validation error messages (empty list = valid)
    """
    if not isinstance(config, dict):
        return ["Config root must be a YAML mapping"]

    errors: list[str] = []
    for section in _SECTIONS:
        value = config.get(section)
        if value is not None and not isinstance(value, dict):
            errors.append(f"'{section}' must be a mapping")
    if errors:
        return errors

    unknown = sorted(set(config) - set(_SECTIONS))
    for key in unknown:
        errors.append(f"unknown section '{key}'")

    defaults = config.get("defaults") or {}
    backend = defaults.get("backend")
    if backend is not None and backend not in BACKENDS:
        errors.append(f"defaults.backend: must be one of {', '.join(BACKENDS)}, got '{backend}'")

    connection = config.get("connection") or {}
    timeout = connection.get("timeout")
    if timeout is not None and (not isinstance(timeout, int) or timeout <= 0):
        errors.append("connection.timeout: must be a positive integer")
    if connection.get("password") and not connection.get("username"):
        errors.append("connection.password: set connection.username as well")

    task = config.get("task") or {}
    limit = task.get("execution_time_limit_hours")
    if limit is not None and (not isinstance(limit, int) or limit <= 0):
        errors.append("task.execution_time_limit_hours: must be a positive integer")

    notifications = (config.get("settings") or {}).get("notifications")
    if notifications is not None and not isinstance(notifications, dict):
        errors.append("settings.notifications: must be a mapping")

    return errors


def settings_from_config(config: Optional[dict[str, Any]]) -> Settings:
    """
    Build Settings from a validated config dict (None = built-in defaults).
    """
    config = config or {}
    defaults = {k: str(v) for k, v in (config.get("defaults") or {}).items() if v is not None}

    conn_raw = config.get("connection") or {}
    connection = ConnectionSettings(
        driver=conn_raw.get("driver", DEFAULT_DRIVER),
        trust_server_certificate=bool(conn_raw.get("trust_server_certificate", True)),
        timeout=int(conn_raw.get("timeout", 15)),
        username=conn_raw.get("username"),
        password=conn_raw.get("password"),
    )

    task_raw = config.get("task") or {}
    task = TaskSettings(
        script_dir=Path(task_raw.get("script_dir", DEFAULT_SCRIPT_DIR)).expanduser(),
        python=task_raw.get("python"),
        powershell=task_raw.get("powershell", "powershell.exe"),
        sqlcmd=task_raw.get("sqlcmd", "sqlcmd"),
        run_as=task_raw.get("run_as", "SYSTEM"),
        execution_time_limit_hours=int(task_raw.get("execution_time_limit_hours", 72)),
    )

    agent_raw = config.get("agent") or {}
    agent = AgentSettings(
        server_name=agent_raw.get("server_name", "(local)"),
        owner_login=agent_raw.get("owner_login"),
    )
    return Settings(defaults=defaults, connection=connection, task=task, agent=agent, raw=config)


def read_settings(path: Path) -> Settings:
    """
    Load, validate and convert a config file.

    A missing file yields built-in defaults.

    Raises:
        ConfigError: If the file is empty, unparsable or invalid
    """
    if not path.exists():
        return settings_from_config(None)
    try:
        raw = load_config(path)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse {path}: {exc}") from exc
    if not raw:
        raise ConfigError(f"Config file {path} is empty.")
    errors = validate_config(raw)
    if errors:
        raise ConfigError("Config validation errors:\n" + "\n".join(f"  • {e}" for e in errors))
    return settings_from_config(raw)
