"""Durable session/sprint/artifact/checkpoint repository backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, literal_column
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session as DbSession
from sqlmodel import col, select

from swarm_conductor.errors import (
    ConductorError,
    ConstraintViolationError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from swarm_conductor.state.contracts import (
    checkpoint_state_from_payload,
    checkpoint_state_to_payload,
    dump_json,
    load_json,
    session_metadata_from_payload,
    session_metadata_to_payload,
    sprint_result_from_payload,
    sprint_result_to_payload,
)
from swarm_conductor.state.models import (
    SPRINT_STATUS_TRANSITIONS,
    TERMINAL_SESSION_STATUSES,
    Artifact,
    ArtifactType,
    ArtifactWrite,
    Checkpoint,
    CheckpointCreate,
    CheckpointState,
    Session,
    SessionMetadata,
    SessionStatus,
    SessionUpdate,
    Sprint,
    SprintStatus,
    SprintUpdate,
)
from swarm_conductor.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
    vacuum_database,
)
from swarm_conductor.storage.migrations import MigrationRunner
from swarm_conductor.storage.sqlmodel_models import (
    ArtifactRow,
    CheckpointRow,
    SessionRow,
    SprintRow,
)

logger = logging.getLogger(__name__)


class StateRepository:
    """Persistence facade owning every session state transaction."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._session_locks: dict[str, threading.RLock] = {}
        self._session_locks_guard = threading.Lock()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> list[int]:
        """Apply pending schema migrations; return applied versions."""

        return MigrationRunner(self.engine).migrate()

    # -- sessions ---------------------------------------------------------------

    def create_session(self, task_id: str, metadata: SessionMetadata | None = None) -> Session:
        """Create an active session with zeroed counters."""

        if not task_id.strip():
            raise ValidationError("task_id must be a non-empty string")
        metadata = metadata or SessionMetadata()
        _validate_metadata(metadata)
        metadata_json = dump_json(session_metadata_to_payload(metadata))

        now = to_db_datetime(utc_now())
        with _storage_errors("create session"), DbSession(self.engine) as db:
            row = SessionRow(
                id=_new_id("session"),
                task_id=task_id,
                sprint_count=0,
                confidence_level=0.0,
                status=SessionStatus.ACTIVE.value,
                started_at=now,
                updated_at=now,
                completed_at=None,
                metadata_json=metadata_json,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.debug("Created session %s for task %r", row.id, task_id)
            return _to_session(row)

    def get_session(self, session_id: str) -> Session | None:
        with _storage_errors("get session"), DbSession(self.engine) as db:
            row = db.get(SessionRow, session_id)
            return _to_session(row) if row is not None else None

    def update_session(self, session_id: str, update: SessionUpdate) -> Session:
        """Apply supplied fields only; reject illegal status or counter changes."""

        with _storage_errors("update session"), DbSession(self.engine) as db:
            row = db.get(SessionRow, session_id)
            if row is None:
                raise NotFoundError(f"Session not found: {session_id}")
            current = SessionStatus(row.status)
            now = utc_now()
            changed = False

            if update.status is not None and update.status is not current:
                if current.is_terminal:
                    raise ValidationError(
                        f"Session {session_id} is {current.value}; terminal status is immutable",
                    )
                row.status = update.status.value
                if update.status.is_terminal and update.completed_at is None:
                    row.completed_at = to_db_datetime(now)
                changed = True
            if update.sprint_count is not None and update.sprint_count != row.sprint_count:
                if update.sprint_count < row.sprint_count:
                    raise ValidationError(
                        "sprint_count can only increase "
                        f"({row.sprint_count} -> {update.sprint_count})",
                    )
                row.sprint_count = update.sprint_count
                changed = True
            if update.confidence_level is not None:
                _validate_unit_interval("confidence_level", update.confidence_level)
                if update.confidence_level != row.confidence_level:
                    row.confidence_level = update.confidence_level
                    changed = True
            if update.completed_at is not None:
                completed_at = to_db_datetime(update.completed_at)
                if completed_at != row.completed_at:
                    row.completed_at = completed_at
                    changed = True
            if update.metadata is not None:
                _validate_metadata(update.metadata)
                metadata_json = dump_json(session_metadata_to_payload(update.metadata))
                if metadata_json != row.metadata_json:
                    row.metadata_json = metadata_json
                    changed = True
            if not changed:
                return _to_session(row)
            row.updated_at = to_db_datetime(now)

            db.add(row)
            db.commit()
            db.refresh(row)
            logger.debug("Updated session %s (status=%s)", session_id, row.status)
            return _to_session(row)

    def list_active_sessions(self) -> list[Session]:
        """Active sessions, most recently updated first."""

        with _storage_errors("list active sessions"), DbSession(self.engine) as db:
            rows = db.exec(
                select(SessionRow)
                .where(SessionRow.status == SessionStatus.ACTIVE.value)
                .order_by(
                    col(SessionRow.updated_at).desc(),
                    literal_column("sessions.rowid").desc(),
                ),
            ).all()
            return [_to_session(row) for row in rows]

    def delete_session(self, session_id: str) -> bool:
        """Delete one session; sprints, artifacts, and checkpoints cascade."""

        with _storage_errors("delete session"), DbSession(self.engine) as db:
            result = db.exec(  # type: ignore[call-overload]
                sa_delete(SessionRow).where(col(SessionRow.id) == session_id),
            )
            db.commit()
            deleted = bool(result.rowcount)
        self._forget_session_locks([session_id])
        return deleted

    # -- sprints ----------------------------------------------------------------

    def create_sprint(
        self,
        session_id: str,
        objective: str,
        *,
        max_sprints: int | None = None,
    ) -> Sprint:
        """Create the next sprint; number = existing sprints + 1, allocated atomically.

        With ``max_sprints`` the session's existing sprints are counted in the same
        transaction and creation is refused once the limit is reached.
        """

        if not objective.strip():
            raise ValidationError("objective must be a non-empty string")
        with (
            self.session_lock(session_id),
            _storage_errors("create sprint"),
            DbSession(self.engine) as db,
        ):
            parent = db.get(SessionRow, session_id)
            if parent is None:
                raise ConstraintViolationError(
                    f"Cannot create sprint: session {session_id} does not exist",
                )
            if parent.status != SessionStatus.ACTIVE.value:
                raise ValidationError(
                    f"Session {session_id} is not active (status: {parent.status})",
                )
            existing = db.exec(
                select(func.count())
                .select_from(SprintRow)
                .where(SprintRow.session_id == session_id),
            ).one()
            if max_sprints is not None and existing >= max_sprints:
                raise ValidationError(
                    f"Session {session_id} reached max_sprints ({max_sprints})",
                )
            row = SprintRow(
                id=_new_id("sprint"),
                session_id=session_id,
                sprint_number=int(existing) + 1,
                objective=objective,
                confidence=0.0,
                status=SprintStatus.PLANNING.value,
                started_at=to_db_datetime(utc_now()),
                completed_at=None,
                result_json=None,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.debug("Created sprint %s #%d in %s", row.id, row.sprint_number, session_id)
            return _to_sprint(row)

    def get_sprint(self, sprint_id: str) -> Sprint | None:
        with _storage_errors("get sprint"), DbSession(self.engine) as db:
            row = db.get(SprintRow, sprint_id)
            return _to_sprint(row) if row is not None else None

    def update_sprint(self, sprint_id: str, update: SprintUpdate) -> Sprint:
        """Apply supplied fields; finished sprints are immutable."""

        result_json = (
            dump_json(sprint_result_to_payload(update.result)) if update.result is not None else None
        )
        with _storage_errors("update sprint"), DbSession(self.engine) as db:
            row = db.get(SprintRow, sprint_id)
            if row is None:
                raise NotFoundError(f"Sprint not found: {sprint_id}")
            current = SprintStatus(row.status)
            if not SPRINT_STATUS_TRANSITIONS[current]:
                raise ValidationError(f"Sprint {sprint_id} is {current.value} and cannot change")

            if update.status is not None and update.status is not current:
                if update.status not in SPRINT_STATUS_TRANSITIONS[current]:
                    raise ValidationError(
                        f"Invalid sprint status change {current.value} -> {update.status.value}",
                    )
                row.status = update.status.value
                if (
                    update.status in {SprintStatus.COMPLETED, SprintStatus.FAILED}
                    and update.completed_at is None
                ):
                    row.completed_at = to_db_datetime(utc_now())
            if update.confidence is not None:
                _validate_unit_interval("confidence", update.confidence)
                row.confidence = update.confidence
            if update.completed_at is not None:
                row.completed_at = to_db_datetime(update.completed_at)
            if result_json is not None:
                row.result_json = result_json

            db.add(row)
            db.commit()
            db.refresh(row)
            return _to_sprint(row)

    def get_sprints_by_session(self, session_id: str) -> list[Sprint]:
        """Sprints of one session in sprint-number order."""

        with _storage_errors("list sprints"), DbSession(self.engine) as db:
            return _select_sprints(db, session_id)

    # -- artifacts --------------------------------------------------------------

    def save_artifact(self, sprint_id: str, artifact: ArtifactWrite) -> Artifact:
        if not artifact.path.strip():
            raise ValidationError("artifact path must be a non-empty string")
        with _storage_errors("save artifact"), DbSession(self.engine) as db:
            row = ArtifactRow(
                id=_new_id("artifact"),
                sprint_id=sprint_id,
                type=ArtifactType(artifact.type).value,
                path=artifact.path,
                content=artifact.content,
                checksum=artifact.checksum,
                created_at=to_db_datetime(utc_now()),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _to_artifact(row)

    def get_artifacts_by_sprint(self, sprint_id: str) -> list[Artifact]:
        """Artifacts of one sprint in creation order."""

        with _storage_errors("list artifacts"), DbSession(self.engine) as db:
            return _select_artifacts(db, sprint_id)

    # -- checkpoints ------------------------------------------------------------

    def snapshot_session(
        self,
        session_id: str,
        sprint_id: str,
    ) -> tuple[Session, list[Sprint], list[Artifact]]:
        """Read session, its sprints, and one sprint's artifacts in a single transaction."""

        with _storage_errors("snapshot session"), DbSession(self.engine) as db:
            row = db.get(SessionRow, session_id)
            if row is None:
                raise NotFoundError(f"Session not found: {session_id}")
            sprint_row = db.get(SprintRow, sprint_id)
            if sprint_row is None or sprint_row.session_id != session_id:
                raise NotFoundError(f"Sprint {sprint_id} not found in session {session_id}")
            return _to_session(row), _select_sprints(db, session_id), _select_artifacts(
                db,
                sprint_id,
            )

    def create_checkpoint(self, checkpoint: CheckpointCreate) -> Checkpoint:
        """Persist an immutable checkpoint; the state is serialized before any write."""

        if not checkpoint.name.strip():
            raise ValidationError("checkpoint name must be a non-empty string")
        state_json = dump_json(checkpoint_state_to_payload(checkpoint.state))

        with _storage_errors("create checkpoint"), DbSession(self.engine) as db:
            sprint_row = db.get(SprintRow, checkpoint.sprint_id)
            if sprint_row is not None and sprint_row.session_id != checkpoint.session_id:
                raise ValidationError(
                    f"Sprint {checkpoint.sprint_id} does not belong to "
                    f"session {checkpoint.session_id}",
                )
            row = CheckpointRow(
                id=_new_id("checkpoint"),
                session_id=checkpoint.session_id,
                sprint_id=checkpoint.sprint_id,
                name=checkpoint.name,
                description=checkpoint.description,
                state_json=state_json,
                created_at=to_db_datetime(utc_now()),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.debug("Created checkpoint %s (%r) for %s", row.id, row.name, row.session_id)
            return _to_checkpoint(row, state=checkpoint.state)

    def load_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        with _storage_errors("load checkpoint"), DbSession(self.engine) as db:
            row = db.get(CheckpointRow, checkpoint_id)
            return _to_checkpoint(row) if row is not None else None

    def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        """Checkpoints of one session, newest first."""

        with _storage_errors("list checkpoints"), DbSession(self.engine) as db:
            rows = db.exec(
                select(CheckpointRow)
                .where(CheckpointRow.session_id == session_id)
                .order_by(
                    col(CheckpointRow.created_at).desc(),
                    literal_column("checkpoints.rowid").desc(),
                ),
            ).all()
            return [_to_checkpoint(row) for row in rows]

    # -- retention --------------------------------------------------------------

    def cleanup_old_sessions(self, max_age: timedelta) -> list[str]:
        """Delete terminal sessions last updated before now - max_age; return their ids.

        The status/age predicate is evaluated by the DELETE itself, so rows that
        changed after a caller's earlier read are never removed by mistake.
        """

        cutoff = to_db_datetime(utc_now() - max_age)
        with _storage_errors("cleanup sessions"), DbSession(self.engine) as db:
            result = db.exec(  # type: ignore[call-overload]
                sa_delete(SessionRow).where(
                    col(SessionRow.status).in_(
                        [status.value for status in TERMINAL_SESSION_STATUSES],
                    ),
                    col(SessionRow.updated_at) < cutoff,
                )
                .returning(col(SessionRow.id)),
            )
            deleted = list(result.scalars().all())
            db.commit()
        self._forget_session_locks(deleted)
        if deleted:
            logger.info("Deleted %d expired sessions", len(deleted))
        return deleted

    def cleanup_old_checkpoints(self, max_age: timedelta) -> int:
        """Delete checkpoints created before now - max_age."""

        cutoff = to_db_datetime(utc_now() - max_age)
        with _storage_errors("cleanup checkpoints"), DbSession(self.engine) as db:
            result = db.exec(  # type: ignore[call-overload]
                sa_delete(CheckpointRow).where(col(CheckpointRow.created_at) < cutoff),
            )
            db.commit()
            deleted = int(result.rowcount or 0)
        if deleted:
            logger.info("Deleted %d expired checkpoints", deleted)
        return deleted

    def vacuum(self) -> None:
        """Reclaim free pages; no logical effect."""

        with _storage_errors("vacuum"):
            vacuum_database(self.engine)

    @contextmanager
    def session_lock(self, session_id: str) -> Iterator[None]:
        """Serialize in-process writers of one session; re-entrant for nested calls."""

        with self._session_locks_guard:
            lock = self._session_locks.setdefault(session_id, threading.RLock())
        with lock:
            yield

    def _forget_session_locks(self, session_ids: list[str]) -> None:
        with self._session_locks_guard:
            for session_id in session_ids:
                self._session_locks.pop(session_id, None)


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except ConductorError:
        raise
    except IntegrityError as error:
        raise ConstraintViolationError(f"Failed to {operation}: {error.orig}") from error
    except (SQLAlchemyError, OSError) as error:
        raise StorageError(f"Failed to {operation}: {error}") from error


def _new_id(kind: str) -> str:
    return f"{kind}-{uuid4().hex}"


def _validate_unit_interval(name: str, value: float) -> None:
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be between 0 and 1, got {value!r}")


def _validate_metadata(metadata: SessionMetadata) -> None:
    _validate_unit_interval("confidence_threshold", metadata.confidence_threshold)
    if metadata.max_sprints <= 0:
        raise ValidationError("max_sprints must be a positive integer")
    if metadata.parallel_swarms <= 0:
        raise ValidationError("parallel_swarms must be a positive integer")


def _select_sprints(db: DbSession, session_id: str) -> list[Sprint]:
    rows = db.exec(
        select(SprintRow)
        .where(SprintRow.session_id == session_id)
        .order_by(col(SprintRow.sprint_number).asc()),
    ).all()
    return [_to_sprint(row) for row in rows]


def _select_artifacts(db: DbSession, sprint_id: str) -> list[Artifact]:
    rows = db.exec(
        select(ArtifactRow)
        .where(ArtifactRow.sprint_id == sprint_id)
        .order_by(col(ArtifactRow.created_at).asc(), literal_column("artifacts.rowid").asc()),
    ).all()
    return [_to_artifact(row) for row in rows]


def _to_session(row: SessionRow) -> Session:
    metadata = (
        session_metadata_from_payload(load_json(row.metadata_json, kind="session metadata"))
        if row.metadata_json
        else SessionMetadata()
    )
    return Session(
        id=row.id,
        task_id=row.task_id,
        sprint_count=row.sprint_count,
        confidence_level=row.confidence_level,
        status=SessionStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        metadata=metadata,
    )


def _to_sprint(row: SprintRow) -> Sprint:
    return Sprint(
        id=row.id,
        session_id=row.session_id,
        sprint_number=row.sprint_number,
        objective=row.objective,
        confidence=row.confidence,
        status=SprintStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        result=(
            sprint_result_from_payload(load_json(row.result_json, kind="sprint result"))
            if row.result_json
            else None
        ),
    )


def _to_artifact(row: ArtifactRow) -> Artifact:
    return Artifact(
        id=row.id,
        sprint_id=row.sprint_id,
        type=ArtifactType(row.type),
        path=row.path,
        content=row.content,
        checksum=row.checksum,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_checkpoint(row: CheckpointRow, *, state: CheckpointState | None = None) -> Checkpoint:
    if state is None:
        state = checkpoint_state_from_payload(load_json(row.state_json, kind="checkpoint state"))
    return Checkpoint(
        id=row.id,
        session_id=row.session_id,
        sprint_id=row.sprint_id,
        name=row.name,
        description=row.description,
        state=state,
        created_at=to_utc_aware_datetime(row.created_at),
    )
