from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from warden.errors import ConfigError
from warden.settings import ENV_API_TOKEN, ENV_AGENT_ID, load_settings, parse_settings


def _write_settings(tmp_path: Path, payload: dict) -> Path:
    path = tmp_path / "warden.yaml"
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path


def test_empty_settings_use_defaults(tmp_path: Path) -> None:
    settings = parse_settings({}, tmp_path, env={})
    assert settings.agent.agent_id == ""
    assert settings.agent.api_base_url == "http://127.0.0.1:8080/api"
    assert settings.agent.timeout_ms == 30000
    assert settings.paths.config_file == (tmp_path / "config" / "agent-config.json").resolve()
    assert settings.tasks["command-worker"].schedule == "*/10 * * * * *"
    assert settings.tasks["check-in"].schedule == "*/15 * * * * *"
    assert all(task.enabled for task in settings.tasks.values())


def test_yaml_file_is_loaded_relative_to_its_directory(tmp_path: Path) -> None:
    path = _write_settings(
        tmp_path,
        {
            "agent": {"id": "agent-7", "api_base_url": "https://api.example.com/api", "timeout_ms": 5000},
            "paths": {"config_file": "state/config.json", "log_file": "logs/agent.log"},
            "tasks": {"check_in": {"schedule": "0 * * * * *", "enabled": False}},
        },
    )

    settings = load_settings(path, env={})
    assert settings.source == path.resolve()
    assert settings.agent.agent_id == "agent-7"
    assert settings.agent.timeout_ms == 5000
    assert settings.paths.config_file == (tmp_path / "state" / "config.json").resolve()
    assert settings.paths.log_file == (tmp_path / "logs" / "agent.log").resolve()
    assert settings.tasks["check-in"].schedule == "0 * * * * *"
    assert settings.tasks["check-in"].enabled is False


def test_environment_overrides_yaml(tmp_path: Path) -> None:
    path = _write_settings(tmp_path, {"agent": {"id": "from-yaml", "api_token": "yaml-token"}})
    settings = load_settings(path, env={ENV_AGENT_ID: "from-env", ENV_API_TOKEN: "env-token"})
    assert settings.agent.agent_id == "from-env"
    assert settings.agent.api_token == "env-token"


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"tasks": {"check_in": {"schedule": "*/15 * * * *"}}}, "tasks.check_in.schedule"),
        ({"agent": {"api_base_url": "ftp://example.com"}}, "api_base_url"),
        ({"agent": {"timeout_ms": 0}}, "agent.timeout_ms"),
        ({"agent": {"name": "x"}}, "Unknown keys in agent"),
        ({"tasks": {"backup": {}}}, "Unknown keys in tasks"),
        ({"tasks": {"command_worker": {"enabled": "yes"}}}, "tasks.command_worker.enabled"),
        ({"monitor": {}}, "Unknown keys in settings"),
    ],
)
def test_invalid_settings_rejected(tmp_path: Path, payload: dict, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_settings(payload, tmp_path, env={})


def test_missing_explicit_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Settings file not found"):
        load_settings(tmp_path / "absent.yaml", env={})


def test_non_mapping_yaml_rejected(tmp_path: Path) -> None:
    path = tmp_path / "warden.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Top-level settings must be a mapping"):
        load_settings(path, env={})


def test_default_file_is_optional(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    settings = load_settings(env={ENV_AGENT_ID: "env-only"})
    assert settings.source is None
    assert settings.agent.agent_id == "env-only"
