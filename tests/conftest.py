"""Shared test fixtures."""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update

from swarm_conductor.state.memory import FileMemoryStore
from swarm_conductor.state.repository import StateRepository
from swarm_conductor.storage.common import to_db_datetime
from swarm_conductor.storage.sqlmodel_models import CheckpointRow, SessionRow

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m swarm_conductor.backend.echo_agent "
    "--swarm-id {swarm_id} --agents {agents} {task}"
)


@pytest.fixture()
def repository(tmp_path: Path):
    repo = StateRepository(tmp_path / "state.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def memory_store(tmp_path: Path) -> FileMemoryStore:
    return FileMemoryStore(tmp_path / "memory")


@pytest.fixture()
def echo_command_template() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def echo_agent(monkeypatch):
    """Point the CLI at the local echo agent instead of the real engine."""

    monkeypatch.setenv("SWARM_CONDUCTOR_BACKEND_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.delenv("SWARM_CONDUCTOR_MEMORY_DIR", raising=False)


@pytest.fixture()
def backdate_session(repository: StateRepository):
    """Rewrite a session's updated_at so retention can see it as old."""

    def _backdate(session_id: str, updated_at: datetime) -> None:
        _set_timestamp(repository, SessionRow, session_id, updated_at=updated_at)

    return _backdate


@pytest.fixture()
def backdate_checkpoint(repository: StateRepository):
    def _backdate(checkpoint_id: str, created_at: datetime) -> None:
        _set_timestamp(repository, CheckpointRow, checkpoint_id, created_at=created_at)

    return _backdate


def _set_timestamp(
    repository: StateRepository,
    model: type[SessionRow] | type[CheckpointRow],
    row_id: str,
    **values: datetime,
) -> None:
    with repository.engine.begin() as connection:
        connection.execute(
            sa_update(model)
            .where(model.id == row_id)  # type: ignore[arg-type]
            .values({name: to_db_datetime(value) for name, value in values.items()}),
        )
