"""Phase state machine over an immutable swarm aggregate.

``reduce_state`` is pure: it returns a new :class:`SwarmState` or raises a
``ValidationError``/``NotFoundError`` subclass without touching its input.
Phase transitions append the prior aggregate to ``previous_states``; history
entries are stored without their own history so it stays linear.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any
from uuid import uuid4

from swarm_conductor.errors import InvalidPhaseTransitionError, NotFoundError, ValidationError


class Phase(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    TESTING = "testing"
    REFACTORING = "refactoring"
    COMPLETING = "completing"


VALID_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PLANNING: frozenset({Phase.EXECUTING}),
    Phase.EXECUTING: frozenset({Phase.TESTING, Phase.PLANNING}),
    Phase.TESTING: frozenset({Phase.REFACTORING, Phase.EXECUTING}),
    Phase.REFACTORING: frozenset({Phase.TESTING, Phase.COMPLETING}),
    Phase.COMPLETING: frozenset(),
}


def can_transition(current: Phase, target: Phase) -> bool:
    return target in VALID_TRANSITIONS[current]


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


class AgentType(str, Enum):
    ARCHITECT = "architect"
    DEVELOPER = "developer"
    TESTER = "tester"
    REVIEWER = "reviewer"
    COORDINATOR = "coordinator"


AGENT_ROTATION = (
    AgentType.ARCHITECT,
    AgentType.DEVELOPER,
    AgentType.TESTER,
    AgentType.REVIEWER,
    AgentType.COORDINATOR,
)


@dataclass(slots=True, frozen=True)
class Task:
    id: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    assigned_to: str | None = None
    dependencies: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Agent:
    id: str
    name: str
    type: AgentType
    status: AgentStatus = AgentStatus.IDLE
    current_task: str | None = None


@dataclass(slots=True, frozen=True)
class SwarmState:
    """Aggregate driven by the phase machine."""

    id: str
    phase: Phase
    confidence: float
    context: str
    tasks: tuple[Task, ...] = ()
    agents: tuple[Agent, ...] = ()
    previous_states: tuple[SwarmState, ...] = field(default=(), repr=False)

    def iterations_in_phase(self) -> int:
        """Times the aggregate has been in its current phase, including now."""

        return 1 + sum(1 for previous in self.previous_states if previous.phase is self.phase)


def create_initial_state(context: str, agent_count: int, *, state_id: str | None = None) -> SwarmState:
    """Fresh planning-phase aggregate with idle agents rotated over the agent types."""

    if agent_count < 0:
        raise ValidationError("agent_count must be >= 0")
    agents = tuple(
        Agent(
            id=f"agent-{uuid4().hex}",
            name=f"{AGENT_ROTATION[index % len(AGENT_ROTATION)].value}-{index + 1}",
            type=AGENT_ROTATION[index % len(AGENT_ROTATION)],
        )
        for index in range(agent_count)
    )
    return SwarmState(
        id=state_id or f"swarm-{uuid4().hex}",
        phase=Phase.PLANNING,
        confidence=0.5,
        context=context,
        agents=agents,
    )


# -- actions --------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TransitionPhase:
    phase: Phase


@dataclass(slots=True, frozen=True)
class UpdateConfidence:
    confidence: float


@dataclass(slots=True, frozen=True)
class AddTask:
    task: Task


@dataclass(slots=True, frozen=True)
class UpdateTask:
    """Field changes for one task; ``id`` cannot be changed."""

    task_id: str
    changes: dict[str, Any]


@dataclass(slots=True, frozen=True)
class AssignTask:
    task_id: str
    agent_id: str


@dataclass(slots=True, frozen=True)
class UpdateAgent:
    """Field changes for one agent; ``id`` cannot be changed."""

    agent_id: str
    changes: dict[str, Any]


StateAction = TransitionPhase | UpdateConfidence | AddTask | UpdateTask | AssignTask | UpdateAgent

_TASK_FIELDS = frozenset({"description", "status", "assigned_to", "dependencies"})
_AGENT_FIELDS = frozenset({"name", "type", "status", "current_task"})


def reduce_state(state: SwarmState, action: StateAction) -> SwarmState:
    match action:
        case TransitionPhase(phase=phase):
            return _transition_phase(state, Phase(phase))
        case UpdateConfidence(confidence=confidence):
            if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
                raise ValidationError(f"Confidence must be between 0 and 1, got {confidence!r}")
            return replace(state, confidence=confidence)
        case AddTask(task=task):
            if any(existing.id == task.id for existing in state.tasks):
                raise ValidationError(f"Task {task.id} already exists")
            return replace(state, tasks=(*state.tasks, task))
        case UpdateTask(task_id=task_id, changes=changes):
            return _update_task(state, task_id, changes)
        case AssignTask(task_id=task_id, agent_id=agent_id):
            _find_index(state.agents, agent_id, kind="Agent")
            assigned = _update_task(state, task_id, {"assigned_to": agent_id})
            return _update_agent(
                assigned,
                agent_id,
                {"status": AgentStatus.BUSY, "current_task": task_id},
            )
        case UpdateAgent(agent_id=agent_id, changes=changes):
            return _update_agent(state, agent_id, changes)
    raise ValidationError(f"Unknown state action: {type(action).__name__}")


def _transition_phase(state: SwarmState, target: Phase) -> SwarmState:
    if not can_transition(state.phase, target):
        raise InvalidPhaseTransitionError(
            f"Invalid phase transition from {state.phase.value} to {target.value}",
        )
    snapshot = replace(state, previous_states=())
    return replace(state, phase=target, previous_states=(*state.previous_states, snapshot))


def _update_task(state: SwarmState, task_id: str, changes: dict[str, Any]) -> SwarmState:
    index = _find_index(state.tasks, task_id, kind="Task")
    unknown = set(changes) - _TASK_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported task fields: {sorted(unknown)}")
    normalized = dict(changes)
    if "status" in normalized:
        normalized["status"] = TaskStatus(normalized["status"])
    if "dependencies" in normalized:
        normalized["dependencies"] = tuple(normalized["dependencies"])
    tasks = list(state.tasks)
    tasks[index] = replace(tasks[index], **normalized)
    return replace(state, tasks=tuple(tasks))


def _update_agent(state: SwarmState, agent_id: str, changes: dict[str, Any]) -> SwarmState:
    index = _find_index(state.agents, agent_id, kind="Agent")
    unknown = set(changes) - _AGENT_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported agent fields: {sorted(unknown)}")
    normalized = dict(changes)
    if "status" in normalized:
        normalized["status"] = AgentStatus(normalized["status"])
    if "type" in normalized:
        normalized["type"] = AgentType(normalized["type"])
    agents = list(state.agents)
    agents[index] = replace(agents[index], **normalized)
    return replace(state, agents=tuple(agents))


def _find_index(items: tuple[Task, ...] | tuple[Agent, ...], item_id: str, *, kind: str) -> int:
    for index, item in enumerate(items):
        if item.id == item_id:
            return index
    raise NotFoundError(f"{kind} {item_id} not found")


# -- payloads -------------------------------------------------------------------


def swarm_state_to_payload(state: SwarmState) -> dict[str, Any]:
    return {
        "id": state.id,
        "phase": state.phase.value,
        "confidence": state.confidence,
        "context": state.context,
        "tasks": [
            {
                "id": task.id,
                "description": task.description,
                "status": task.status.value,
                "assigned_to": task.assigned_to,
                "dependencies": list(task.dependencies),
            }
            for task in state.tasks
        ],
        "agents": [
            {
                "id": agent.id,
                "name": agent.name,
                "type": agent.type.value,
                "status": agent.status.value,
                "current_task": agent.current_task,
            }
            for agent in state.agents
        ],
        "previous_states": [swarm_state_to_payload(item) for item in state.previous_states],
    }


def swarm_state_from_payload(payload: dict[str, Any]) -> SwarmState:
    try:
        return SwarmState(
            id=str(payload["id"]),
            phase=Phase(payload["phase"]),
            confidence=float(payload["confidence"]),
            context=str(payload.get("context", "")),
            tasks=tuple(
                Task(
                    id=str(item["id"]),
                    description=str(item["description"]),
                    status=TaskStatus(item.get("status", TaskStatus.PENDING.value)),
                    assigned_to=item.get("assigned_to"),
                    dependencies=tuple(str(dep) for dep in item.get("dependencies", [])),
                )
                for item in payload.get("tasks", [])
            ),
            agents=tuple(
                Agent(
                    id=str(item["id"]),
                    name=str(item["name"]),
                    type=AgentType(item["type"]),
                    status=AgentStatus(item.get("status", AgentStatus.IDLE.value)),
                    current_task=item.get("current_task"),
                )
                for item in payload.get("agents", [])
            ),
            previous_states=tuple(
                swarm_state_from_payload(item) for item in payload.get("previous_states", [])
            ),
        )
    except (KeyError, TypeError, ValueError) as error:
        raise ValidationError(f"Invalid swarm state payload: {error}") from error
