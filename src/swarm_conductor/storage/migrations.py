"""Versioned schema migrations tracked in the ``migrations`` ledger table.

Each migration runs in its own ``BEGIN IMMEDIATE`` transaction together with
its ledger insert, so a failure leaves the schema at the previous version.
DDL is expressed through Alembic's ``Operations`` facade bound to that
transaction, the same way Alembic revision files describe schema changes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import sqlalchemy as sa
from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from swarm_conductor.errors import MigrationError, StorageError
from swarm_conductor.storage.common import to_db_datetime, utc_now
from swarm_conductor.storage.sqlmodel_models import (
    ARTIFACT_TYPES,
    SESSION_STATUSES,
    SPRINT_STATUSES,
    MigrationRow,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Migration:
    """One schema version."""

    version: int
    name: str
    upgrade: Callable[[Operations], None]


class MigrationRunner:
    """Applies pending migrations in ascending version order."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def initialize(self) -> None:
        """Create the ledger table if missing."""

        try:
            with self.engine.begin() as connection:
                MigrationRow.__table__.create(connection, checkfirst=True)  # type: ignore[attr-defined]
        except SQLAlchemyError as error:
            raise StorageError(f"Failed to initialize migrations ledger: {error}") from error

    def current_version(self) -> int:
        """Highest applied version, 0 on an empty ledger."""

        try:
            with self.engine.begin() as connection:
                value = connection.execute(
                    sa.select(sa.func.max(MigrationRow.version)),  # type: ignore[arg-type]
                ).scalar_one_or_none()
        except SQLAlchemyError as error:
            raise StorageError(f"Failed to read current schema version: {error}") from error
        return int(value or 0)

    def pending(self, migrations: Sequence[Migration]) -> list[Migration]:
        current = self.current_version()
        return sorted(
            (migration for migration in migrations if migration.version > current),
            key=lambda migration: migration.version,
        )

    def migrate(self, migrations: Sequence[Migration] | None = None) -> list[int]:
        """Apply pending migrations; return the versions applied by this call."""

        self.initialize()
        applied: list[int] = []
        for migration in self.pending(MIGRATIONS if migrations is None else migrations):
            self._apply(migration)
            applied.append(migration.version)
        return applied

    def _apply(self, migration: Migration) -> None:
        try:
            with self.engine.begin() as connection:
                context = MigrationContext.configure(connection)
                migration.upgrade(Operations(context))
                connection.execute(
                    sa.insert(MigrationRow.__table__).values(  # type: ignore[attr-defined]
                        version=migration.version,
                        name=migration.name,
                        applied_at=to_db_datetime(utc_now()),
                    ),
                )
        except Exception as error:
            raise MigrationError(
                f"Failed to apply migration {migration.version} ({migration.name}): {error}",
                version=migration.version,
            ) from error
        logger.info("Applied schema migration %d (%s)", migration.version, migration.name)


def _upgrade_0001_initial_schema(op: Operations) -> None:
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("task_id", sa.Text(), nullable=False),
        sa.Column("sprint_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("confidence_level", sa.Float(), nullable=False, server_default=sa.text("0.0")),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.CheckConstraint(_in_list("status", SESSION_STATUSES), name="ck_sessions_status"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_sessions_status", "sessions", ["status"], unique=False)
    op.create_index("idx_sessions_updated_at", "sessions", ["updated_at"], unique=False)

    op.create_table(
        "sprints",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("sprint_number", sa.Integer(), nullable=False),
        sa.Column("objective", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default=sa.text("0.0")),
        sa.Column("status", sa.String(), nullable=False, server_default="planning"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.CheckConstraint(_in_list("status", SPRINT_STATUSES), name="ck_sprints_status"),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", "sprint_number", name="uq_sprints_session_number"),
    )
    op.create_index("idx_sprints_session_id", "sprints", ["session_id"], unique=False)

    op.create_table(
        "artifacts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("sprint_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("checksum", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(_in_list("type", ARTIFACT_TYPES), name="ck_artifacts_type"),
        sa.ForeignKeyConstraint(["sprint_id"], ["sprints.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_artifacts_sprint_id", "artifacts", ["sprint_id"], unique=False)

    op.create_table(
        "checkpoints",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("sprint_id", sa.String(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("state", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sprint_id"], ["sprints.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_checkpoints_session_id", "checkpoints", ["session_id"], unique=False)


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


MIGRATIONS: tuple[Migration, ...] = (
    Migration(version=1, name="initial_schema", upgrade=_upgrade_0001_initial_schema),
)
