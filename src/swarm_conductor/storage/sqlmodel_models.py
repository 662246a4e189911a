"""SQLModel ORM tables for session state storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

SESSION_STATUSES = ("active", "completed", "failed", "cancelled")
SPRINT_STATUSES = ("planning", "executing", "completed", "failed")
ARTIFACT_TYPES = ("file", "directory", "command", "memory")


def _in_check(column: str, values: tuple[str, ...], name: str) -> CheckConstraint:
    quoted = ", ".join(f"'{value}'" for value in values)
    return CheckConstraint(f"{column} IN ({quoted})", name=name)


class SessionRow(SQLModel, table=True):
    __tablename__ = "sessions"  # type: ignore[bad-override]
    __table_args__ = (_in_check("status", SESSION_STATUSES, "ck_sessions_status"),)

    id: str = Field(primary_key=True)
    task_id: str = Field(sa_column=Column(Text, nullable=False))
    sprint_count: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    confidence_level: float = Field(default=0.0, sa_column=Column(Float, nullable=False))
    status: str = Field(default="active", index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    metadata_json: str | None = Field(default=None, sa_column=Column("metadata", Text))


class SprintRow(SQLModel, table=True):
    __tablename__ = "sprints"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("session_id", "sprint_number", name="uq_sprints_session_number"),
        _in_check("status", SPRINT_STATUSES, "ck_sprints_status"),
    )

    id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sprint_number: int = Field(sa_column=Column(Integer, nullable=False))
    objective: str = Field(sa_column=Column(Text, nullable=False))
    confidence: float = Field(default=0.0, sa_column=Column(Float, nullable=False))
    status: str = Field(default="planning")
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    result_json: str | None = Field(default=None, sa_column=Column("result", Text))


class ArtifactRow(SQLModel, table=True):
    __tablename__ = "artifacts"  # type: ignore[bad-override]
    __table_args__ = (_in_check("type", ARTIFACT_TYPES, "ck_artifacts_type"),)

    id: str = Field(primary_key=True)
    sprint_id: str = Field(
        sa_column=Column(
            ForeignKey("sprints.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    type: str
    path: str = Field(sa_column=Column(Text, nullable=False))
    content: str | None = Field(default=None, sa_column=Column(Text))
    checksum: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CheckpointRow(SQLModel, table=True):
    __tablename__ = "checkpoints"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sprint_id: str = Field(
        sa_column=Column(ForeignKey("sprints.id", ondelete="CASCADE"), nullable=False),
    )
    name: str = Field(sa_column=Column(Text, nullable=False))
    description: str | None = Field(default=None, sa_column=Column(Text))
    state_json: str = Field(sa_column=Column("state", Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MigrationRow(SQLModel, table=True):
    __tablename__ = "migrations"  # type: ignore[bad-override]

    version: int = Field(primary_key=True)
    name: str = Field(sa_column=Column(Text, nullable=False))
    applied_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
