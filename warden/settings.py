"""
Bootstrap settings: a YAML file plus environment overrides.

Example ``warden.yaml``::

    agent:
      id: agent-123
      api_base_url: https://api.example.com/api
      api_token: ""            # usually supplied through WARDEN_API_TOKEN
      timeout_ms: 30000
    paths:
      config_file: config/agent-config.json
      log_file: logs/warden.log
    tasks:
      command_worker:
        schedule: "*/10 * * * * *"
      check_in:
        schedule: "*/15 * * * * *"
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from . import checkin, command_worker
from .errors import ConfigError, ScheduleError
from .log import LOG_FILE
from .remote import DEFAULT_TIMEOUT_MS
from .scheduler import to_croniter_expression

DEFAULT_SETTINGS_FILE = "warden.yaml"
DEFAULT_API_BASE_URL = "http://127.0.0.1:8080/api"
DEFAULT_CONFIG_FILE = "config/agent-config.json"

ENV_AGENT_ID = "WARDEN_AGENT_ID"
ENV_API_BASE_URL = "WARDEN_API_BASE_URL"
ENV_API_TOKEN = "WARDEN_API_TOKEN"


@dataclass(frozen=True)
class AgentSettings:
    agent_id: str
    api_base_url: str
    api_token: str
    timeout_ms: int


@dataclass(frozen=True)
class PathSettings:
    config_file: Path
    log_file: Path


@dataclass(frozen=True)
class TaskSettings:
    schedule: str
    enabled: bool = True


@dataclass(frozen=True)
class Settings:
    agent: AgentSettings
    paths: PathSettings
    tasks: Dict[str, TaskSettings]
    source: Optional[Path] = None


TASK_DEFAULTS = {
    "command_worker": (command_worker.TASK_NAME, command_worker.DEFAULT_SCHEDULE),
    "check_in": (checkin.TASK_NAME, checkin.DEFAULT_SCHEDULE),
}


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def optional_str(value: Any, field_path: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be a string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: set) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def ensure_schedule(value: Any, field_path: str, default: str) -> str:
    if value is None:
        return default
    schedule = ensure_str(value, field_path)
    try:
        to_croniter_expression(schedule)
    except ScheduleError as exc:
        raise ConfigError(f"Error: {field_path} is not a valid schedule: {exc}") from exc
    return schedule


def _resolve_path(value: str, base_dir: Path) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return path


def _load_payload(settings_path: Path) -> Dict[str, Any]:
    if not settings_path.exists():
        raise ConfigError(f"Error: Settings file not found: {settings_path}")
    try:
        payload = yaml.safe_load(settings_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {settings_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level settings must be a mapping.")
    return payload


def parse_settings(
    payload: Mapping[str, Any],
    base_dir: Path,
    env: Optional[Mapping[str, str]] = None,
    source: Optional[Path] = None,
) -> Settings:
    env = os.environ if env is None else env
    ensure_mapping(dict(payload), "settings", {"agent", "paths", "tasks"})

    agent_raw = ensure_mapping(payload.get("agent"), "agent", {"id", "api_base_url", "api_token", "timeout_ms"})
    agent_id = env.get(ENV_AGENT_ID) or optional_str(agent_raw.get("id"), "agent.id")
    base_url = env.get(ENV_API_BASE_URL) or optional_str(agent_raw.get("api_base_url"), "agent.api_base_url")
    base_url = base_url or DEFAULT_API_BASE_URL
    if not (base_url.startswith("http://") or base_url.startswith("https://")):
        raise ConfigError("Error: agent.api_base_url must be an HTTP URL.")
    token = env.get(ENV_API_TOKEN) or optional_str(agent_raw.get("api_token"), "agent.api_token")
    timeout_ms = ensure_int(agent_raw.get("timeout_ms"), "agent.timeout_ms", DEFAULT_TIMEOUT_MS, 1)

    paths_raw = ensure_mapping(payload.get("paths"), "paths", {"config_file", "log_file"})
    config_file = ensure_str(paths_raw.get("config_file", DEFAULT_CONFIG_FILE), "paths.config_file")
    log_file = ensure_str(paths_raw.get("log_file", LOG_FILE), "paths.log_file")

    tasks_raw = ensure_mapping(payload.get("tasks"), "tasks", set(TASK_DEFAULTS))
    tasks: Dict[str, TaskSettings] = {}
    for key, (task_name, default_schedule) in TASK_DEFAULTS.items():
        field_path = f"tasks.{key}"
        task_raw = ensure_mapping(tasks_raw.get(key), field_path, {"schedule", "enabled"})
        tasks[task_name] = TaskSettings(
            schedule=ensure_schedule(task_raw.get("schedule"), f"{field_path}.schedule", default_schedule),
            enabled=ensure_bool(task_raw.get("enabled"), f"{field_path}.enabled", True),
        )

    return Settings(
        agent=AgentSettings(
            agent_id=agent_id.strip(),
            api_base_url=base_url.strip(),
            api_token=token.strip(),
            timeout_ms=timeout_ms,
        ),
        paths=PathSettings(
            config_file=_resolve_path(config_file, base_dir),
            log_file=_resolve_path(log_file, base_dir),
        ),
        tasks=tasks,
        source=source,
    )


def load_settings(
    settings_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from YAML. Without an explicit path a missing default file means env-only settings."""
    if settings_path is None:
        default_path = Path(DEFAULT_SETTINGS_FILE).resolve()
        if not default_path.exists():
            return parse_settings({}, Path.cwd(), env)
        settings_path = default_path
    settings_path = settings_path.resolve()
    payload = _load_payload(settings_path)
    return parse_settings(payload, settings_path.parent, env, source=settings_path)
