from __future__ import annotations

from pathlib import Path

import allure
import pytest

from swarm_conductor.config import (
    DEFAULT_BACKEND_COMMAND,
    BackendSettings,
    RetentionSettings,
    SessionDefaults,
    Settings,
    StorageSettings,
)

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "SWARM_CONDUCTOR_DB_PATH",
    "SWARM_CONDUCTOR_MEMORY_DIR",
    "SWARM_CONDUCTOR_AUTO_CHECKPOINT",
    "SWARM_CONDUCTOR_SQLITE_BUSY_TIMEOUT_MS",
    "SWARM_CONDUCTOR_CONFIDENCE_THRESHOLD",
    "SWARM_CONDUCTOR_MAX_SPRINTS",
    "SWARM_CONDUCTOR_PARALLEL_SWARMS",
    "SWARM_CONDUCTOR_BACKEND_COMMAND",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_from_env_uses_local_defaults(clean_env) -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".swarm-conductor/state.db")
    assert settings.memory_dir == Path(".swarm-conductor/memory")
    assert settings.auto_checkpoint is True
    assert settings.session.confidence_threshold == 0.8
    assert settings.session.max_sprints == 10
    assert settings.backend.command_template == DEFAULT_BACKEND_COMMAND
    settings.validate()


def test_memory_dir_follows_explicit_db_path(clean_env, tmp_path: Path) -> None:
    settings = Settings.from_env(db_path=tmp_path / "nested" / "state.db")

    assert settings.memory_dir == tmp_path / "nested" / "memory"


def test_from_env_reads_overrides(clean_env, monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SWARM_CONDUCTOR_DB_PATH", str(tmp_path / "custom.db"))
    monkeypatch.setenv("SWARM_CONDUCTOR_MEMORY_DIR", str(tmp_path / "mem"))
    monkeypatch.setenv("SWARM_CONDUCTOR_AUTO_CHECKPOINT", "off")
    monkeypatch.setenv("SWARM_CONDUCTOR_MAX_SPRINTS", "4")
    monkeypatch.setenv("SWARM_CONDUCTOR_BACKEND_COMMAND", "engine {task}")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.memory_dir == tmp_path / "mem"
    assert settings.auto_checkpoint is False
    assert settings.session.max_sprints == 4
    assert settings.backend.command_template == "engine {task}"


def test_invalid_boolean_env_names_the_variable(clean_env, monkeypatch) -> None:
    monkeypatch.setenv("SWARM_CONDUCTOR_AUTO_CHECKPOINT", "maybe")

    with pytest.raises(ValueError, match="SWARM_CONDUCTOR_AUTO_CHECKPOINT"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(storage=StorageSettings(busy_timeout_ms=0)), "BUSY_TIMEOUT_MS"),
        (Settings(session=SessionDefaults(confidence_threshold=1.5)), "CONFIDENCE_THRESHOLD"),
        (Settings(session=SessionDefaults(max_sprints=0)), "MAX_SPRINTS"),
        (Settings(retention=RetentionSettings(interval_seconds=0)), "CLEANUP_INTERVAL_SECONDS"),
        (Settings(backend=BackendSettings(command_template="engine --go")), "{task}"),
        (
            Settings(backend=BackendSettings(command_template="engine {task} {model}")),
            "unsupported placeholder",
        ),
    ],
)
def test_validate_rejects_invalid_settings(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
