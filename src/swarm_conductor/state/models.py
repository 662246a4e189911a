"""Domain records for sessions, sprints, artifacts, and checkpoints.

Records are frozen values; the repository hands out fresh copies and callers
derive new values with ``dataclasses.replace``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """Session lifecycle states."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


TERMINAL_SESSION_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED},
)


class SprintStatus(str, Enum):
    """Sprint lifecycle states."""

    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


SPRINT_STATUS_TRANSITIONS: dict[SprintStatus, frozenset[SprintStatus]] = {
    SprintStatus.PLANNING: frozenset(
        {SprintStatus.EXECUTING, SprintStatus.COMPLETED, SprintStatus.FAILED},
    ),
    SprintStatus.EXECUTING: frozenset({SprintStatus.COMPLETED, SprintStatus.FAILED}),
    SprintStatus.COMPLETED: frozenset(),
    SprintStatus.FAILED: frozenset(),
}


class ArtifactType(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    COMMAND = "command"
    MEMORY = "memory"


@dataclass(slots=True, frozen=True)
class SessionMetadata:
    """Tunable parameters persisted with a session."""

    confidence_threshold: float = 0.8
    max_sprints: int = 10
    parallel_swarms: int = 3
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SprintMetrics:
    """Execution measurements reported for one sprint."""

    duration_ms: int = 0
    token_count: int = 0
    agent_count: int = 0
    memory_usage: int = 0
    error_count: int = 0


@dataclass(slots=True, frozen=True)
class SprintResult:
    """Outcome attached to a finished sprint."""

    success: bool
    output: str
    artifact_ids: tuple[str, ...] = ()
    metrics: SprintMetrics = field(default_factory=SprintMetrics)
    next_steps: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Session:
    id: str
    task_id: str
    sprint_count: int
    confidence_level: float
    status: SessionStatus
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    metadata: SessionMetadata


@dataclass(slots=True, frozen=True)
class Sprint:
    id: str
    session_id: str
    sprint_number: int
    objective: str
    confidence: float
    status: SprintStatus
    started_at: datetime
    completed_at: datetime | None = None
    result: SprintResult | None = None


@dataclass(slots=True, frozen=True)
class Artifact:
    id: str
    sprint_id: str
    type: ArtifactType
    path: str
    content: str | None
    checksum: str | None
    created_at: datetime


@dataclass(slots=True, frozen=True)
class ArtifactWrite:
    """Artifact payload before the repository assigns identity."""

    type: ArtifactType
    path: str
    content: str | None = None
    checksum: str | None = None


@dataclass(slots=True, frozen=True)
class CheckpointState:
    """Full recoverable state captured by a checkpoint."""

    session: Session
    sprints: tuple[Sprint, ...]
    artifacts: tuple[Artifact, ...]
    memory: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class CheckpointCreate:
    """Checkpoint payload before the repository assigns identity."""

    session_id: str
    sprint_id: str
    name: str
    state: CheckpointState
    description: str | None = None


@dataclass(slots=True, frozen=True)
class Checkpoint:
    id: str
    session_id: str
    sprint_id: str
    name: str
    description: str | None
    state: CheckpointState
    created_at: datetime


@dataclass(slots=True, frozen=True)
class SessionUpdate:
    """Partial session update; ``None`` leaves a field untouched."""

    sprint_count: int | None = None
    confidence_level: float | None = None
    status: SessionStatus | None = None
    completed_at: datetime | None = None
    metadata: SessionMetadata | None = None


@dataclass(slots=True, frozen=True)
class SprintUpdate:
    """Partial sprint update; ``None`` leaves a field untouched."""

    confidence: float | None = None
    status: SprintStatus | None = None
    completed_at: datetime | None = None
    result: SprintResult | None = None
