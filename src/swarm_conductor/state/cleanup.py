"""Retention policy: delete expired sessions/checkpoints, optionally compact storage."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from swarm_conductor.config import RetentionSettings
from swarm_conductor.state.memory import MemoryStore
from swarm_conductor.state.repository import StateRepository
from swarm_conductor.storage.common import database_size_bytes

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CleanupOptions:
    """What one cleanup run removes.

    ``max_checkpoint_age`` of ``None`` keeps checkpoints until their session
    is deleted.
    """

    max_session_age: timedelta = timedelta(days=7)
    max_checkpoint_age: timedelta | None = timedelta(days=30)
    vacuum: bool = True

    @classmethod
    def from_settings(cls, settings: RetentionSettings) -> CleanupOptions:
        return cls(
            max_session_age=timedelta(days=settings.max_session_age_days),
            max_checkpoint_age=(
                timedelta(days=settings.max_checkpoint_age_days)
                if settings.max_checkpoint_age_days > 0
                else None
            ),
            vacuum=settings.vacuum_after_cleanup,
        )


@dataclass(slots=True, frozen=True)
class CleanupStats:
    sessions_deleted: int
    checkpoints_deleted: int
    space_reclaimed_bytes: int


class StateCleanup:
    """Single idempotent cleanup operation over one repository."""

    def __init__(
        self,
        repository: StateRepository,
        options: CleanupOptions | None = None,
        *,
        memory: MemoryStore | None = None,
    ) -> None:
        self.repository = repository
        self.options = options or CleanupOptions()
        self.memory = memory

    def run(self) -> CleanupStats:
        size_before = database_size_bytes(self.repository.engine)
        deleted_ids = self.repository.cleanup_old_sessions(self.options.max_session_age)
        if self.memory is not None:
            for session_id in deleted_ids:
                self.memory.delete(session_id)
        checkpoints_deleted = 0
        if self.options.max_checkpoint_age is not None:
            checkpoints_deleted = self.repository.cleanup_old_checkpoints(
                self.options.max_checkpoint_age,
            )
        if self.options.vacuum:
            self.repository.vacuum()
        reclaimed = max(0, size_before - database_size_bytes(self.repository.engine))
        stats = CleanupStats(
            sessions_deleted=len(deleted_ids),
            checkpoints_deleted=checkpoints_deleted,
            space_reclaimed_bytes=reclaimed,
        )
        logger.info(
            "Cleanup finished: sessions=%d checkpoints=%d reclaimed=%d bytes",
            stats.sessions_deleted,
            stats.checkpoints_deleted,
            stats.space_reclaimed_bytes,
        )
        return stats


class CleanupScheduler:
    """Repeating timer around one cleanup callable.

    A failed cycle is logged and the next cycle still runs.
    """

    def __init__(
        self,
        run_cleanup: Callable[[], CleanupStats],
        *,
        interval_seconds: float,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._run_cleanup = run_cleanup
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.cycles = 0
        self.failures = 0
        self.last_stats: CleanupStats | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="state-cleanup",
        )
        self._thread.start()
        logger.info("Cleanup scheduler started (interval=%ss)", self._interval)

    def stop(self, timeout: float = 15.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Cleanup scheduler stopped")

    def run_once(self) -> CleanupStats | None:
        """Run one cycle; failures are logged, never raised."""

        self.cycles += 1
        try:
            self.last_stats = self._run_cleanup()
        except Exception:
            self.failures += 1
            logger.exception("Scheduled cleanup cycle failed")
            return None
        return self.last_stats

    def run_loop(self, *, max_cycles: int | None = None) -> int:
        """Run cycles in the calling thread until stopped or max_cycles reached.

        The first cycle runs immediately; later ones follow the interval.
        Returns the number of cycles run by this call.
        """

        self._stop.clear()
        completed = 0
        while not self._stop.is_set():
            self.run_once()
            completed += 1
            if max_cycles is not None and completed >= max_cycles:
                break
            if self._stop.wait(timeout=self._interval):
                break
        return completed

    def request_stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self._interval):
            self.run_once()
