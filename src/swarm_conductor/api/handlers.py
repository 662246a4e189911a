"""Control API: request/response contract over sessions, sprints, and checkpoints.

Every request yields either a result payload or a structured error; no core
exception escapes :meth:`ConductorApi.handle`.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, assert_never

from swarm_conductor.backend import BackendRunError, ExecutionBackend, ExecutionRequest
from swarm_conductor.config import Settings
from swarm_conductor.core.conductor import ConductorStep, record_sprint
from swarm_conductor.core.confidence import (
    DEFAULT_OUTCOME_POLICY,
    OutcomePolicy,
    confidence_level,
    confidence_recommendations,
    evaluate_outcome,
)
from swarm_conductor.core.phases import PhaseDecisionKind
from swarm_conductor.core.state import (
    SwarmState,
    create_initial_state,
    swarm_state_from_payload,
    swarm_state_to_payload,
)
from swarm_conductor.errors import (
    ConductorError,
    ConstraintViolationError,
    NotFoundError,
    ValidationError,
)
from swarm_conductor.resources import capture_resources, peak_rss_bytes
from swarm_conductor.state.checkpoints import CheckpointManager
from swarm_conductor.state.contracts import (
    artifact_to_payload,
    session_metadata_to_payload,
    sprint_to_payload,
)
from swarm_conductor.state.memory import MemoryStore
from swarm_conductor.state.models import (
    SPRINT_STATUS_TRANSITIONS,
    ArtifactType,
    ArtifactWrite,
    Session,
    SessionMetadata,
    SessionStatus,
    SessionUpdate,
    Sprint,
    SprintMetrics,
    SprintResult,
    SprintStatus,
    SprintUpdate,
)
from swarm_conductor.state.repository import StateRepository

logger = logging.getLogger(__name__)

METHOD_PREFIX = "swarm_conductor_"
SWARM_STATE_KEY = "swarm_state"


class ControlMethod(str, Enum):
    INIT = "init"
    STATUS = "status"
    SPRINT = "sprint"
    CHECKPOINT = "checkpoint"
    RESTORE = "restore"
    LIST = "list"
    CANCEL = "cancel"
    METRICS = "metrics"

    @classmethod
    def parse(cls, name: str) -> ControlMethod:
        """Accept both ``sprint`` and ``swarm_conductor_sprint``."""

        return cls(name.removeprefix(METHOD_PREFIX))


class ErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    NOT_FOUND = -32001
    CONSTRAINT_VIOLATION = -32002


@dataclass(slots=True, frozen=True)
class ControlRequest:
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    id: str | int | None = None

    @classmethod
    def from_payload(cls, payload: object) -> ControlRequest:
        if not isinstance(payload, dict):
            raise ValidationError("Request must be a JSON object")
        method = payload.get("method")
        if not isinstance(method, str) or not method:
            raise ValidationError("Request method must be a non-empty string")
        params = payload.get("params") or {}
        if not isinstance(params, dict):
            raise ValidationError("Request params must be an object")
        request_id = payload.get("id")
        if request_id is not None and (
            isinstance(request_id, bool) or not isinstance(request_id, str | int)
        ):
            raise ValidationError("Request id must be a string or integer")
        return cls(method=method, params=params, id=request_id)


@dataclass(slots=True, frozen=True)
class ControlError:
    code: ErrorCode
    message: str
    kind: str | None = None


@dataclass(slots=True, frozen=True)
class ControlResponse:
    id: str | int | None
    result: dict[str, Any] | None = None
    error: ControlError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(
        cls,
        request_id: str | int | None,
        code: ErrorCode,
        message: str,
        *,
        kind: str | None = None,
    ) -> ControlResponse:
        return cls(id=request_id, error=ControlError(code=code, message=message, kind=kind))

    def to_payload(self) -> dict[str, Any]:
        if self.error is not None:
            error: dict[str, Any] = {"code": int(self.error.code), "message": self.error.message}
            if self.error.kind is not None:
                error["data"] = {"kind": self.error.kind}
            return {"error": error, "id": self.id}
        return {"result": self.result, "id": self.id}


class ConductorApi:
    """Handlers for every control method, sharing one repository and memory store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: StateRepository,
        memory: MemoryStore,
        backend: ExecutionBackend,
        settings: Settings | None = None,
        outcome_policy: OutcomePolicy = DEFAULT_OUTCOME_POLICY,
        conductor: ConductorStep | None = None,
    ) -> None:
        self.repository = repository
        self.memory = memory
        self.backend = backend
        self.settings = settings or Settings()
        self.outcome_policy = outcome_policy
        self.conductor = conductor or ConductorStep()
        self.checkpoints = CheckpointManager(repository=repository, memory=memory)

    def handle(self, request: ControlRequest) -> ControlResponse:
        try:
            method = ControlMethod.parse(request.method)
        except ValueError:
            return ControlResponse.failure(
                request.id,
                ErrorCode.METHOD_NOT_FOUND,
                f"Method not found: {request.method}",
            )

        try:
            result = self._dispatch(method, request.params)
        except ConductorError as error:
            return ControlResponse.failure(
                request.id,
                _error_code(error),
                str(error),
                kind=error.code,
            )
        except BackendRunError as error:
            return ControlResponse.failure(
                request.id,
                ErrorCode.INTERNAL_ERROR,
                str(error),
                kind="backend",
            )
        except Exception as error:
            logger.exception("Unhandled error in %s", method.value)
            return ControlResponse.failure(
                request.id,
                ErrorCode.INTERNAL_ERROR,
                f"Internal error: {error}",
            )
        return ControlResponse(id=request.id, result=result)

    def _dispatch(self, method: ControlMethod, params: dict[str, Any]) -> dict[str, Any]:
        match method:
            case ControlMethod.INIT:
                return self.init(params)
            case ControlMethod.STATUS:
                return self.status(params)
            case ControlMethod.SPRINT:
                return self.sprint(params)
            case ControlMethod.CHECKPOINT:
                return self.checkpoint(params)
            case ControlMethod.RESTORE:
                return self.restore(params)
            case ControlMethod.LIST:
                return self.list_entries(params)
            case ControlMethod.CANCEL:
                return self.cancel(params)
            case ControlMethod.METRICS:
                return self.metrics(params)
            case _:
                assert_never(method)

    # -- handlers -------------------------------------------------------------------

    def init(self, params: dict[str, Any]) -> dict[str, Any]:
        task = _require_str(params, "task")
        defaults = self.settings.session
        metadata = SessionMetadata(
            confidence_threshold=_optional_float(
                params,
                "confidence_threshold",
                defaults.confidence_threshold,
            ),
            max_sprints=_optional_int(params, "max_sprints", defaults.max_sprints),
            parallel_swarms=_optional_int(params, "parallel_swarms", defaults.parallel_swarms),
        )
        session = self.repository.create_session(task, metadata)
        swarm = create_initial_state(task, metadata.parallel_swarms, state_id=session.id)
        self.memory.put(
            session.id,
            {
                "task": task,
                "status": "initialized",
                SWARM_STATE_KEY: swarm_state_to_payload(swarm),
            },
        )
        logger.info("Initialized session %s for task %r", session.id, task)
        return {
            "session_id": session.id,
            "status": session.status.value,
            "message": f"Session {session.id} created for task: {task}",
        }

    def status(self, params: dict[str, Any]) -> dict[str, Any]:
        session = self._get_session(_require_str(params, "session_id"))
        response = _session_summary(session)
        response["metadata"] = session_metadata_to_payload(session.metadata)
        swarm = self._load_swarm(session)
        response["phase"] = swarm.phase.value
        if _optional_bool(params, "verbose", False):
            response["sprints"] = [
                sprint_to_payload(sprint)
                for sprint in self.repository.get_sprints_by_session(session.id)
            ]
            response["recommendations"] = confidence_recommendations(swarm)
        return response

    def sprint(self, params: dict[str, Any]) -> dict[str, Any]:
        session_id = _require_str(params, "session_id")
        objective = _optional_str(params, "objective")
        # One sprint at a time per session: the swarm aggregate in memory is read-modify-write.
        with self.repository.session_lock(session_id):
            return self._run_sprint(session_id, objective)

    def _run_sprint(self, session_id: str, objective: str | None) -> dict[str, Any]:
        session = self._get_session(session_id)
        if session.status is not SessionStatus.ACTIVE:
            raise ValidationError(
                f"Session {session.id} is not active (status: {session.status.value})",
            )
        memory = self.memory.get(session.id)
        swarm = self._swarm_from_memory(session, memory)
        objective = objective or f"Sprint {session.sprint_count + 1} for {session.task_id}"

        sprint = self.repository.create_sprint(
            session.id,
            objective,
            max_sprints=session.metadata.max_sprints,
        )
        request = ExecutionRequest(
            task=objective,
            swarm_id=f"{session.id}-sprint-{sprint.sprint_number}",
            agents=session.metadata.parallel_swarms,
            timeout_seconds=self.settings.backend.timeout_seconds,
        )
        try:
            return self._execute_sprint(session, sprint, request, swarm, memory)
        except Exception as error:
            self._mark_sprint_failed(sprint, request, error)
            raise

    def _execute_sprint(  # noqa: PLR0913
        self,
        session: Session,
        sprint: Sprint,
        request: ExecutionRequest,
        swarm: SwarmState,
        memory: dict[str, Any],
    ) -> dict[str, Any]:
        self.repository.update_sprint(sprint.id, SprintUpdate(status=SprintStatus.EXECUTING))
        outcome = self.backend.run(request)

        confidence = evaluate_outcome(outcome.success, outcome.output, self.outcome_policy)
        artifact = self.repository.save_artifact(
            sprint.id,
            ArtifactWrite(
                type=ArtifactType.COMMAND,
                path=request.swarm_id,
                content=outcome.output,
                checksum=hashlib.sha256(outcome.output.encode("utf-8")).hexdigest(),
            ),
        )

        swarm = record_sprint(
            swarm,
            task_id=sprint.id,
            description=request.task,
            success=outcome.success,
        )
        step = self.conductor.run(swarm, observed_confidence=confidence)

        finished = self.repository.update_sprint(
            sprint.id,
            SprintUpdate(
                status=SprintStatus.COMPLETED if outcome.success else SprintStatus.FAILED,
                confidence=confidence,
                result=SprintResult(
                    success=outcome.success,
                    output=outcome.output,
                    artifact_ids=(artifact.id,),
                    metrics=SprintMetrics(
                        duration_ms=outcome.duration_ms,
                        token_count=len(outcome.output.split()),
                        agent_count=request.agents,
                        memory_usage=peak_rss_bytes(),
                        error_count=0 if outcome.success else 1,
                    ),
                    next_steps=tuple(confidence_recommendations(step.state)),
                ),
            ),
        )
        current = self._get_session(session.id)
        self.repository.update_session(
            session.id,
            SessionUpdate(
                sprint_count=max(current.sprint_count, sprint.sprint_number),
                confidence_level=confidence,
            ),
        )

        memory[SWARM_STATE_KEY] = swarm_state_to_payload(step.state)
        memory["status"] = "running"
        memory["last_sprint_id"] = sprint.id
        self.memory.put(session.id, memory)

        checkpoint_id: str | None = None
        if step.checkpoint_requested and self.settings.auto_checkpoint:
            checkpoint = self.checkpoints.checkpoint(
                session.id,
                sprint.id,
                name=f"auto-{step.previous_phase.value}-to-{step.state.phase.value}",
                description=step.decision.reason,
            )
            checkpoint_id = checkpoint.id

        return {
            "sprint_id": finished.id,
            "sprint_number": finished.sprint_number,
            "status": finished.status.value,
            "confidence": confidence,
            "confidence_level": confidence_level(confidence).value,
            "duration_ms": outcome.duration_ms,
            "should_continue": confidence < session.metadata.confidence_threshold,
            "phase": step.state.phase.value,
            "phase_decision": step.decision.kind.value,
            "stalled": step.decision.kind is PhaseDecisionKind.STALL,
            "checkpoint_id": checkpoint_id,
        }

    def _mark_sprint_failed(
        self,
        sprint: Sprint,
        request: ExecutionRequest,
        error: Exception,
    ) -> None:
        """Move an unfinished sprint to failed so no sprint is left executing."""

        try:
            current = self.repository.get_sprint(sprint.id)
            if current is None or not SPRINT_STATUS_TRANSITIONS[current.status]:
                return
            self.repository.update_sprint(
                sprint.id,
                SprintUpdate(
                    status=SprintStatus.FAILED,
                    result=SprintResult(
                        success=False,
                        output=str(error),
                        metrics=SprintMetrics(agent_count=request.agents, error_count=1),
                    ),
                ),
            )
        except ConductorError:
            logger.exception("Could not mark sprint %s failed after: %s", sprint.id, error)

    def checkpoint(self, params: dict[str, Any]) -> dict[str, Any]:
        session_id = _require_str(params, "session_id")
        name = _require_str(params, "name")
        description = _optional_str(params, "description")
        self._get_session(session_id)
        sprint_id = _optional_str(params, "sprint_id")
        if sprint_id is None:
            sprints = self.repository.get_sprints_by_session(session_id)
            if not sprints:
                raise ValidationError(f"No sprints found in session {session_id}")
            sprint_id = sprints[-1].id
        checkpoint = self.checkpoints.checkpoint(session_id, sprint_id, name, description)
        return {
            "checkpoint_id": checkpoint.id,
            "name": checkpoint.name,
            "message": f"Checkpoint '{name}' created successfully",
        }

    def restore(self, params: dict[str, Any]) -> dict[str, Any]:
        restored = self.checkpoints.restore(_require_str(params, "checkpoint_id"))
        with self.repository.session_lock(restored.session.id):
            self.memory.put(restored.session.id, restored.memory)
        return {
            "session_id": restored.session.id,
            "checkpoint_id": restored.checkpoint_id,
            "message": f"Restored from checkpoint '{restored.name}'",
            "state": {
                "session": {
                    **_session_summary(restored.session),
                    "metadata": session_metadata_to_payload(restored.session.metadata),
                },
                "sprints": [sprint_to_payload(sprint) for sprint in restored.sprints],
                "artifacts": [artifact_to_payload(artifact) for artifact in restored.artifacts],
                "memory": restored.memory,
            },
        }

    def list_entries(self, params: dict[str, Any]) -> dict[str, Any]:
        kind = _require_str(params, "type")
        if kind == "sessions":
            return {
                "sessions": [
                    _session_summary(session) for session in self.repository.list_active_sessions()
                ],
            }
        if kind == "checkpoints":
            session_id = _require_str(params, "session_id")
            return {
                "checkpoints": [
                    {
                        "id": checkpoint.id,
                        "name": checkpoint.name,
                        "description": checkpoint.description,
                        "sprint_id": checkpoint.sprint_id,
                        "created_at": checkpoint.created_at.isoformat(),
                    }
                    for checkpoint in self.repository.list_checkpoints(session_id)
                ],
            }
        raise ValidationError(f"Invalid list type: {kind!r} (expected sessions or checkpoints)")

    def cancel(self, params: dict[str, Any]) -> dict[str, Any]:
        session_id = _require_str(params, "session_id")
        session = self.repository.update_session(
            session_id,
            SessionUpdate(status=SessionStatus.CANCELLED),
        )
        logger.info("Cancelled session %s", session_id)
        return {
            "session_id": session.id,
            "status": session.status.value,
            "message": "Session cancelled successfully",
        }

    def metrics(self, params: dict[str, Any]) -> dict[str, Any]:
        session = self._get_session(_require_str(params, "session_id"))
        sprints = self.repository.get_sprints_by_session(session.id)
        results = [sprint.result for sprint in sprints if sprint.result is not None]
        response: dict[str, Any] = {
            "session_id": session.id,
            "total_sprints": len(sprints),
            "completed_sprints": _count_status(sprints, SprintStatus.COMPLETED),
            "failed_sprints": _count_status(sprints, SprintStatus.FAILED),
            "total_duration_ms": sum(result.metrics.duration_ms for result in results),
            "total_tokens": sum(result.metrics.token_count for result in results),
            "total_errors": sum(result.metrics.error_count for result in results),
            "average_confidence": (
                sum(sprint.confidence for sprint in sprints) / len(sprints) if sprints else 0.0
            ),
            "latest_confidence": session.confidence_level,
            "confidence_level": confidence_level(session.confidence_level).value,
        }
        if _optional_bool(params, "include_resources", False):
            response["resources"] = capture_resources(self.repository.db_path).to_payload()
        return response

    # -- helpers ----------------------------------------------------------------------

    def _get_session(self, session_id: str) -> Session:
        session = self.repository.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def _load_swarm(self, session: Session) -> SwarmState:
        return self._swarm_from_memory(session, self.memory.get(session.id))

    def _swarm_from_memory(self, session: Session, memory: dict[str, Any]) -> SwarmState:
        payload = memory.get(SWARM_STATE_KEY)
        if isinstance(payload, dict):
            return swarm_state_from_payload(payload)
        return create_initial_state(
            session.task_id,
            session.metadata.parallel_swarms,
            state_id=session.id,
        )


def _error_code(error: ConductorError) -> ErrorCode:
    if isinstance(error, NotFoundError):
        return ErrorCode.NOT_FOUND
    if isinstance(error, ConstraintViolationError):
        return ErrorCode.CONSTRAINT_VIOLATION
    if isinstance(error, ValidationError):
        return ErrorCode.INVALID_PARAMS
    return ErrorCode.INTERNAL_ERROR


def _session_summary(session: Session) -> dict[str, Any]:
    return {
        "session_id": session.id,
        "task_id": session.task_id,
        "status": session.status.value,
        "sprint_count": session.sprint_count,
        "confidence_level": session.confidence_level,
        "started_at": session.started_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
    }


def _count_status(sprints: list[Sprint], status: SprintStatus) -> int:
    return sum(1 for sprint in sprints if sprint.status is status)


def _require_str(params: dict[str, Any], name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Parameter '{name}' is required and must be a non-empty string")
    return value


def _optional_str(params: dict[str, Any], name: str) -> str | None:
    value = params.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Parameter '{name}' must be a string")
    return value or None


def _optional_float(params: dict[str, Any], name: str, default: float) -> float:
    value = params.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValidationError(f"Parameter '{name}' must be a number")
    return float(value)


def _optional_int(params: dict[str, Any], name: str, default: int) -> int:
    value = params.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Parameter '{name}' must be an integer")
    return value


def _optional_bool(params: dict[str, Any], name: str, default: bool) -> bool:
    value = params.get(name)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"Parameter '{name}' must be a boolean")
    return value
