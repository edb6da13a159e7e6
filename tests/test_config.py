from __future__ import annotations

from pathlib import Path

import allure
import pytest

from exec_agent.config import BackendSettings, ExecutionSettings, Settings

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Configuration"),
]


def test_from_env_uses_local_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("EXEC_AGENT_BACKEND", "EXEC_AGENT_POLL_INTERVAL_SECONDS", "EXEC_AGENT_DB_PATH"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.backend.kind == "sqlite"
    assert settings.db_path == Path(".exec_agent.db")
    assert settings.detection.poll_interval_seconds == 15.0
    assert settings.execution.close_grace_seconds == 1.0
    assert settings.schedule.heartbeat_interval_seconds == 60.0
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("EXEC_AGENT_DESTINATION_ID", "mac-mini")
    monkeypatch.setenv("EXEC_AGENT_ALLOWED_TASK_TYPES", "single, Workflow,single")
    monkeypatch.setenv("EXEC_AGENT_PUSH_ENABLED", "off")
    monkeypatch.setenv("EXEC_AGENT_MAX_CONCURRENT_ITEMS", "3")

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.db_path == tmp_path / "x.db"
    assert settings.destination.destination_id == "mac-mini"
    assert settings.destination.allowed_task_types == ("single", "workflow")
    assert settings.detection.push_enabled is False
    assert settings.execution.max_concurrent_items == 3


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXEC_AGENT_ECHO_OUTPUT", "maybe")

    with pytest.raises(ValueError, match="EXEC_AGENT_ECHO_OUTPUT"):
        Settings.from_env()


def test_rest_backend_requires_url_and_key() -> None:
    settings = Settings(backend=BackendSettings(kind="rest", rest_url="ftp://example.com"))
    with pytest.raises(ValueError, match="EXEC_AGENT_REST_URL"):
        settings.validate()

    settings = Settings(backend=BackendSettings(kind="rest", rest_url="https://db.example.com"))
    with pytest.raises(ValueError, match="EXEC_AGENT_API_KEY"):
        settings.validate()


def test_unknown_task_type_filter_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXEC_AGENT_ALLOWED_TASK_TYPES", "single,deploy")

    with pytest.raises(ValueError, match="deploy"):
        Settings.from_env().validate()


def test_terminal_command_needs_script_placeholder() -> None:
    settings = Settings(execution=ExecutionSettings(terminal_command="xterm -e bash"))

    with pytest.raises(ValueError, match="placeholder"):
        settings.validate()
