"""Checkpoint capture and restore over the repository and external memory."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from swarm_conductor.errors import NotFoundError
from swarm_conductor.state.memory import MemoryStore
from swarm_conductor.state.models import (
    Artifact,
    Checkpoint,
    CheckpointCreate,
    CheckpointState,
    Session,
    Sprint,
)
from swarm_conductor.state.repository import StateRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RestoredAggregate:
    """Snapshot handed back by restore; the live session row is untouched."""

    checkpoint_id: str
    name: str
    session: Session
    sprints: tuple[Sprint, ...]
    artifacts: tuple[Artifact, ...]
    memory: dict[str, Any] = field(default_factory=dict)


class CheckpointManager:
    """Snapshots a session aggregate into a named checkpoint and reads it back."""

    def __init__(self, *, repository: StateRepository, memory: MemoryStore) -> None:
        self.repository = repository
        self.memory = memory

    def checkpoint(
        self,
        session_id: str,
        sprint_id: str,
        name: str,
        description: str | None = None,
    ) -> Checkpoint:
        session, sprints, artifacts = self.repository.snapshot_session(session_id, sprint_id)
        state = CheckpointState(
            session=session,
            sprints=tuple(sprints),
            artifacts=tuple(artifacts),
            memory=self.memory.get(session_id),
        )
        checkpoint = self.repository.create_checkpoint(
            CheckpointCreate(
                session_id=session_id,
                sprint_id=sprint_id,
                name=name,
                description=description,
                state=state,
            ),
        )
        logger.info(
            "Checkpoint %s (%r) captured %d sprints for session %s",
            checkpoint.id,
            name,
            len(sprints),
            session_id,
        )
        return checkpoint

    def restore(self, checkpoint_id: str) -> RestoredAggregate:
        """Return the captured aggregate; resuming execution is the caller's decision."""

        checkpoint = self.repository.load_checkpoint(checkpoint_id)
        if checkpoint is None:
            raise NotFoundError(f"Checkpoint not found: {checkpoint_id}")
        state = checkpoint.state
        return RestoredAggregate(
            checkpoint_id=checkpoint.id,
            name=checkpoint.name,
            session=state.session,
            sprints=state.sprints,
            artifacts=state.artifacts,
            memory=state.memory,
        )
