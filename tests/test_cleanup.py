from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest

from swarm_conductor.config import RetentionSettings
from swarm_conductor.state.cleanup import (
    CleanupOptions,
    CleanupScheduler,
    CleanupStats,
    StateCleanup,
)
from swarm_conductor.state.memory import FileMemoryStore
from swarm_conductor.state.models import (
    CheckpointCreate,
    CheckpointState,
    SessionStatus,
    SessionUpdate,
)
from swarm_conductor.state.repository import StateRepository

pytestmark = [
    allure.epic("Durable State"),
    allure.feature("Retention Cleanup"),
]


def _checkpoint(repository: StateRepository, session_id: str, name: str) -> str:
    session = repository.get_session(session_id)
    assert session is not None
    sprints = repository.get_sprints_by_session(session_id)
    sprint = sprints[-1] if sprints else repository.create_sprint(session_id, "work")
    return repository.create_checkpoint(
        CheckpointCreate(
            session_id=session_id,
            sprint_id=sprint.id,
            name=name,
            state=CheckpointState(session=session, sprints=(sprint,), artifacts=()),
        ),
    ).id


def test_options_from_settings() -> None:
    options = CleanupOptions.from_settings(
        RetentionSettings(
            max_session_age_days=3,
            max_checkpoint_age_days=0,
            vacuum_after_cleanup=False,
        ),
    )

    assert options.max_session_age == timedelta(days=3)
    assert options.max_checkpoint_age is None
    assert options.vacuum is False


def test_cleanup_run_is_idempotent(
    repository: StateRepository,
    backdate_session,
    backdate_checkpoint,
) -> None:
    long_ago = datetime.now(UTC) - timedelta(days=60)
    expired = repository.create_session("expired")
    repository.update_session(expired.id, SessionUpdate(status=SessionStatus.COMPLETED))
    active = repository.create_session("active")
    old_checkpoint = _checkpoint(repository, active.id, "old")
    fresh_checkpoint = _checkpoint(repository, active.id, "fresh")
    backdate_session(expired.id, long_ago)
    backdate_checkpoint(old_checkpoint, long_ago)

    cleanup = StateCleanup(repository)
    first = cleanup.run()
    second = cleanup.run()

    assert (first.sessions_deleted, first.checkpoints_deleted) == (1, 1)
    assert (second.sessions_deleted, second.checkpoints_deleted) == (0, 0)
    assert first.space_reclaimed_bytes >= 0
    assert repository.get_session(expired.id) is None
    assert [checkpoint.id for checkpoint in repository.list_checkpoints(active.id)] == [
        fresh_checkpoint,
    ]


def test_cleanup_keeps_checkpoints_when_age_disabled(
    repository: StateRepository,
    backdate_checkpoint,
) -> None:
    session = repository.create_session("task")
    checkpoint_id = _checkpoint(repository, session.id, "old")
    backdate_checkpoint(checkpoint_id, datetime.now(UTC) - timedelta(days=365))

    stats = StateCleanup(
        repository,
        CleanupOptions(max_checkpoint_age=None, vacuum=False),
    ).run()

    assert stats.checkpoints_deleted == 0
    assert repository.load_checkpoint(checkpoint_id) is not None


def test_scheduler_run_once_survives_failures() -> None:
    outcomes: list[Exception | CleanupStats] = [
        RuntimeError("disk unavailable"),
        CleanupStats(sessions_deleted=1, checkpoints_deleted=0, space_reclaimed_bytes=0),
    ]

    def run_cleanup() -> CleanupStats:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    scheduler = CleanupScheduler(run_cleanup, interval_seconds=60)

    assert scheduler.run_once() is None
    stats = scheduler.run_once()

    assert stats is not None
    assert stats.sessions_deleted == 1
    assert scheduler.cycles == 2
    assert scheduler.failures == 1
    assert scheduler.last_stats == stats


def test_scheduler_keeps_running_after_failed_cycle() -> None:
    calls = 0
    reached = threading.Event()

    def run_cleanup() -> CleanupStats:
        nonlocal calls
        calls += 1
        if calls >= 3:
            reached.set()
        if calls == 1:
            raise RuntimeError("first cycle fails")
        return CleanupStats(sessions_deleted=0, checkpoints_deleted=0, space_reclaimed_bytes=0)

    scheduler = CleanupScheduler(run_cleanup, interval_seconds=0.01)
    scheduler.start()
    try:
        assert scheduler.running
        assert reached.wait(timeout=5)
    finally:
        scheduler.stop()

    assert not scheduler.running
    assert scheduler.failures == 1
    assert scheduler.cycles >= 3


def test_scheduler_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError, match="interval_seconds"):
        CleanupScheduler(lambda: CleanupStats(0, 0, 0), interval_seconds=0)


def test_cleanup_removes_memory_of_deleted_sessions(
    repository: StateRepository,
    memory_store: FileMemoryStore,
    backdate_session,
) -> None:
    expired = repository.create_session("expired")
    kept = repository.create_session("kept")
    memory_store.put(expired.id, {"status": "done"})
    memory_store.put(kept.id, {"status": "running"})
    repository.update_session(expired.id, SessionUpdate(status=SessionStatus.COMPLETED))
    backdate_session(expired.id, datetime.now(UTC) - timedelta(days=60))

    stats = StateCleanup(
        repository,
        CleanupOptions(vacuum=False),
        memory=memory_store,
    ).run()

    assert stats.sessions_deleted == 1
    assert not memory_store.root_dir.joinpath(f"{expired.id}.json").exists()
    assert memory_store.get(kept.id) == {"status": "running"}


def test_cleanup_forgets_session_locks(
    repository: StateRepository,
    backdate_session,
) -> None:
    expired = repository.create_session("expired")
    repository.create_sprint(expired.id, "work")
    repository.update_session(expired.id, SessionUpdate(status=SessionStatus.FAILED))
    backdate_session(expired.id, datetime.now(UTC) - timedelta(days=60))
    assert expired.id in repository._session_locks

    assert repository.cleanup_old_sessions(timedelta(days=7)) == [expired.id]
    assert expired.id not in repository._session_locks


def test_run_loop_stops_after_max_cycles() -> None:
    calls = 0

    def run_cleanup() -> CleanupStats:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("first cycle fails")
        return CleanupStats(sessions_deleted=calls, checkpoints_deleted=0, space_reclaimed_bytes=0)

    scheduler = CleanupScheduler(run_cleanup, interval_seconds=0.01)

    assert scheduler.run_loop(max_cycles=3) == 3
    assert scheduler.failures == 1
    assert scheduler.last_stats is not None
    assert scheduler.last_stats.sessions_deleted == 3


def test_run_loop_returns_when_stop_requested() -> None:
    scheduler: CleanupScheduler

    def run_cleanup() -> CleanupStats:
        scheduler.request_stop()
        return CleanupStats(sessions_deleted=0, checkpoints_deleted=0, space_reclaimed_bytes=0)

    scheduler = CleanupScheduler(run_cleanup, interval_seconds=60)

    assert scheduler.run_loop() == 1
