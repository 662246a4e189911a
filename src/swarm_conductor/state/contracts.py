"""JSON contracts for the blob columns: session metadata, sprint results, checkpoint state.

Every blob carries ``schema_version`` so that storage and in-memory records
share one typed contract.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from swarm_conductor.errors import ValidationError
from swarm_conductor.state.models import (
    Artifact,
    ArtifactType,
    CheckpointState,
    Session,
    SessionMetadata,
    SessionStatus,
    Sprint,
    SprintMetrics,
    SprintResult,
    SprintStatus,
)
from swarm_conductor.storage.common import to_utc_aware_datetime

SCHEMA_VERSION = 1


def dump_json(payload: dict[str, Any]) -> str:
    """Serialize deterministically; raises ValidationError for non-JSON values."""

    try:
        return json.dumps(payload, ensure_ascii=False, sort_keys=True, allow_nan=False)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Payload is not JSON-serializable: {error}") from error


def load_json(raw: str, *, kind: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValidationError(f"Stored {kind} is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValidationError(f"Stored {kind} must be a JSON object")
    version = payload.get("schema_version", SCHEMA_VERSION)
    if version != SCHEMA_VERSION:
        raise ValidationError(f"Unsupported {kind} schema_version: {version!r}")
    return payload


def session_metadata_to_payload(metadata: SessionMetadata) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "confidence_threshold": metadata.confidence_threshold,
        "max_sprints": metadata.max_sprints,
        "parallel_swarms": metadata.parallel_swarms,
        "extra": dict(metadata.extra),
    }


def session_metadata_from_payload(payload: dict[str, Any]) -> SessionMetadata:
    extra = payload.get("extra", {})
    if not isinstance(extra, dict):
        raise ValidationError("session metadata extra must be an object")
    defaults = SessionMetadata()
    return SessionMetadata(
        confidence_threshold=float(
            payload.get("confidence_threshold", defaults.confidence_threshold),
        ),
        max_sprints=int(payload.get("max_sprints", defaults.max_sprints)),
        parallel_swarms=int(payload.get("parallel_swarms", defaults.parallel_swarms)),
        extra=extra,
    )


def sprint_result_to_payload(result: SprintResult) -> dict[str, Any]:
    metrics = result.metrics
    return {
        "schema_version": SCHEMA_VERSION,
        "success": result.success,
        "output": result.output,
        "artifact_ids": list(result.artifact_ids),
        "metrics": {
            "duration_ms": metrics.duration_ms,
            "token_count": metrics.token_count,
            "agent_count": metrics.agent_count,
            "memory_usage": metrics.memory_usage,
            "error_count": metrics.error_count,
        },
        "next_steps": list(result.next_steps),
    }


def sprint_result_from_payload(payload: dict[str, Any]) -> SprintResult:
    metrics = payload.get("metrics", {})
    if not isinstance(metrics, dict):
        raise ValidationError("sprint result metrics must be an object")
    output = payload.get("output", "")
    if not isinstance(output, str):
        raise ValidationError("sprint result output must be a string")
    return SprintResult(
        success=bool(payload.get("success", False)),
        output=output,
        artifact_ids=tuple(str(item) for item in payload.get("artifact_ids", [])),
        metrics=SprintMetrics(
            duration_ms=int(metrics.get("duration_ms", 0)),
            token_count=int(metrics.get("token_count", 0)),
            agent_count=int(metrics.get("agent_count", 0)),
            memory_usage=int(metrics.get("memory_usage", 0)),
            error_count=int(metrics.get("error_count", 0)),
        ),
        next_steps=tuple(str(item) for item in payload.get("next_steps", [])),
    )


def session_to_payload(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "task_id": session.task_id,
        "sprint_count": session.sprint_count,
        "confidence_level": session.confidence_level,
        "status": session.status.value,
        "started_at": session.started_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
        "completed_at": _iso_or_none(session.completed_at),
        "metadata": session_metadata_to_payload(session.metadata),
    }


def session_from_payload(payload: dict[str, Any]) -> Session:
    try:
        return Session(
            id=str(payload["id"]),
            task_id=str(payload["task_id"]),
            sprint_count=int(payload["sprint_count"]),
            confidence_level=float(payload["confidence_level"]),
            status=SessionStatus(payload["status"]),
            started_at=_parse_datetime(payload["started_at"]),
            updated_at=_parse_datetime(payload["updated_at"]),
            completed_at=_parse_optional_datetime(payload.get("completed_at")),
            metadata=session_metadata_from_payload(payload.get("metadata") or {}),
        )
    except (KeyError, TypeError, ValueError) as error:
        raise ValidationError(f"Invalid session payload: {error}") from error


def sprint_to_payload(sprint: Sprint) -> dict[str, Any]:
    return {
        "id": sprint.id,
        "session_id": sprint.session_id,
        "sprint_number": sprint.sprint_number,
        "objective": sprint.objective,
        "confidence": sprint.confidence,
        "status": sprint.status.value,
        "started_at": sprint.started_at.isoformat(),
        "completed_at": _iso_or_none(sprint.completed_at),
        "result": sprint_result_to_payload(sprint.result) if sprint.result is not None else None,
    }


def sprint_from_payload(payload: dict[str, Any]) -> Sprint:
    try:
        raw_result = payload.get("result")
        return Sprint(
            id=str(payload["id"]),
            session_id=str(payload["session_id"]),
            sprint_number=int(payload["sprint_number"]),
            objective=str(payload["objective"]),
            confidence=float(payload["confidence"]),
            status=SprintStatus(payload["status"]),
            started_at=_parse_datetime(payload["started_at"]),
            completed_at=_parse_optional_datetime(payload.get("completed_at")),
            result=sprint_result_from_payload(raw_result) if raw_result is not None else None,
        )
    except (KeyError, TypeError, ValueError) as error:
        raise ValidationError(f"Invalid sprint payload: {error}") from error


def artifact_to_payload(artifact: Artifact) -> dict[str, Any]:
    return {
        "id": artifact.id,
        "sprint_id": artifact.sprint_id,
        "type": artifact.type.value,
        "path": artifact.path,
        "content": artifact.content,
        "checksum": artifact.checksum,
        "created_at": artifact.created_at.isoformat(),
    }


def artifact_from_payload(payload: dict[str, Any]) -> Artifact:
    try:
        return Artifact(
            id=str(payload["id"]),
            sprint_id=str(payload["sprint_id"]),
            type=ArtifactType(payload["type"]),
            path=str(payload["path"]),
            content=payload.get("content"),
            checksum=payload.get("checksum"),
            created_at=_parse_datetime(payload["created_at"]),
        )
    except (KeyError, TypeError, ValueError) as error:
        raise ValidationError(f"Invalid artifact payload: {error}") from error


def checkpoint_state_to_payload(state: CheckpointState) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "session": session_to_payload(state.session),
        "sprints": [sprint_to_payload(sprint) for sprint in state.sprints],
        "artifacts": [artifact_to_payload(artifact) for artifact in state.artifacts],
        "memory": state.memory,
    }


def checkpoint_state_from_payload(payload: dict[str, Any]) -> CheckpointState:
    sprints = payload.get("sprints", [])
    artifacts = payload.get("artifacts", [])
    memory = payload.get("memory", {})
    if not isinstance(sprints, list) or not isinstance(artifacts, list):
        raise ValidationError("checkpoint state sprints/artifacts must be arrays")
    if not isinstance(memory, dict):
        raise ValidationError("checkpoint state memory must be an object")
    session = payload.get("session")
    if not isinstance(session, dict):
        raise ValidationError("checkpoint state session must be an object")
    return CheckpointState(
        session=session_from_payload(session),
        sprints=tuple(sprint_from_payload(item) for item in sprints),
        artifacts=tuple(artifact_from_payload(item) for item in artifacts),
        memory=memory,
    )


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: object) -> datetime:
    if not isinstance(value, str):
        raise TypeError(f"expected ISO datetime string, got {type(value).__name__}")
    return to_utc_aware_datetime(datetime.fromisoformat(value))


def _parse_optional_datetime(value: object) -> datetime | None:
    if value is None:
        return None
    return _parse_datetime(value)
