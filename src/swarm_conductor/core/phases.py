"""Phase-advance criteria, next-phase routing, and per-phase guidance."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from swarm_conductor.core.state import Phase, SwarmState, Task, TaskStatus, can_transition


@dataclass(slots=True, frozen=True)
class PhaseCriteria:
    """Advance when confidence and completion both reach their minimums."""

    min_confidence: float
    required_completion: float
    max_iterations: int


PHASE_CRITERIA: dict[Phase, PhaseCriteria] = {
    Phase.PLANNING: PhaseCriteria(min_confidence=0.7, required_completion=1.0, max_iterations=3),
    Phase.EXECUTING: PhaseCriteria(min_confidence=0.6, required_completion=0.8, max_iterations=5),
    Phase.TESTING: PhaseCriteria(min_confidence=0.8, required_completion=1.0, max_iterations=3),
    Phase.REFACTORING: PhaseCriteria(
        min_confidence=0.85,
        required_completion=1.0,
        max_iterations=2,
    ),
    Phase.COMPLETING: PhaseCriteria(min_confidence=0.9, required_completion=1.0, max_iterations=1),
}

_REGRESSION_CONFIDENCE = 0.5
_TEST_FAILURE_LIMIT = 0.3


class PhaseDecisionKind(str, Enum):
    ADVANCE = "advance"
    HOLD = "hold"
    STALL = "stall"


@dataclass(slots=True, frozen=True)
class PhaseDecision:
    kind: PhaseDecisionKind
    reason: str
    next_phase: Phase | None = None
    confidence: float = 0.0
    completion: float = 0.0
    iteration: int = 1

    @property
    def should_transition(self) -> bool:
        return self.kind is PhaseDecisionKind.ADVANCE


def completion_rate(state: SwarmState) -> float:
    """Completed ÷ total tasks; the testing phase counts passing test tasks only."""

    tasks = state.tasks
    if state.phase is Phase.TESTING:
        tests = _test_tasks(state)
        if tests:
            tasks = tests
    if not tasks:
        return 0.0
    return sum(1 for task in tasks if task.status is TaskStatus.COMPLETED) / len(tasks)


def failed_test_ratio(state: SwarmState) -> float:
    tests = _test_tasks(state)
    if not tests:
        return 0.0
    return sum(1 for task in tests if task.status is TaskStatus.FAILED) / len(tests)


def next_phase(state: SwarmState) -> Phase | None:
    match state.phase:
        case Phase.PLANNING:
            return Phase.EXECUTING
        case Phase.EXECUTING:
            if state.confidence < _REGRESSION_CONFIDENCE:
                return Phase.PLANNING
            return Phase.TESTING
        case Phase.TESTING:
            if failed_test_ratio(state) > _TEST_FAILURE_LIMIT:
                return Phase.EXECUTING
            return Phase.REFACTORING
        case Phase.REFACTORING:
            if state.confidence >= PHASE_CRITERIA[Phase.COMPLETING].min_confidence:
                return Phase.COMPLETING
            return Phase.TESTING
    return None


def decide_phase_advance(
    state: SwarmState,
    confidence: float,
    criteria: PhaseCriteria | None = None,
) -> PhaseDecision:
    """Compare freshly computed confidence against the phase criteria.

    Returns a STALL decision once the iteration cap is exceeded with criteria
    still unmet; callers decide whether that is fatal.
    """

    current = criteria or PHASE_CRITERIA[state.phase]
    completion = completion_rate(state)
    iteration = state.iterations_in_phase()

    def decision(kind: PhaseDecisionKind, reason: str, target: Phase | None = None) -> PhaseDecision:
        return PhaseDecision(
            kind=kind,
            reason=reason,
            next_phase=target,
            confidence=confidence,
            completion=completion,
            iteration=iteration,
        )

    unmet: str | None = None
    if confidence < current.min_confidence:
        unmet = f"Confidence {confidence:.3f} below minimum {current.min_confidence}"
    elif completion < current.required_completion:
        unmet = f"Completion rate {completion:.3f} below required {current.required_completion}"

    if unmet is not None:
        if iteration > current.max_iterations:
            return decision(
                PhaseDecisionKind.STALL,
                f"{unmet} after {iteration} iterations of {state.phase.value} "
                f"(cap {current.max_iterations})",
            )
        return decision(PhaseDecisionKind.HOLD, unmet)

    target = next_phase(state)
    if target is None or not can_transition(state.phase, target):
        return decision(PhaseDecisionKind.HOLD, "No valid next phase available")
    return decision(PhaseDecisionKind.ADVANCE, "All criteria met for phase transition", target)


PHASE_PROMPTS: dict[Phase, str] = {
    Phase.PLANNING: (
        "You are in the PLANNING phase. Focus on:\n"
        "- Understanding the problem thoroughly\n"
        "- Breaking down into clear, actionable tasks\n"
        "- Identifying dependencies and risks\n"
        "- Creating a comprehensive plan"
    ),
    Phase.EXECUTING: (
        "You are in the EXECUTING phase. Focus on:\n"
        "- Implementing the planned tasks\n"
        "- Maintaining code quality\n"
        "- Tracking progress and blockers"
    ),
    Phase.TESTING: (
        "You are in the TESTING phase. Focus on:\n"
        "- Writing tests for the implemented behaviour\n"
        "- Validating functionality and edge cases"
    ),
    Phase.REFACTORING: (
        "You are in the REFACTORING phase. Focus on:\n"
        "- Improving code structure and reducing complexity\n"
        "- Keeping behaviour unchanged"
    ),
    Phase.COMPLETING: (
        "You are in the COMPLETING phase. Focus on:\n"
        "- Final validation\n"
        "- Documentation and cleanup\n"
        "- Delivery preparation"
    ),
}


def phase_prompt(phase: Phase) -> str:
    return PHASE_PROMPTS[phase]


def _test_tasks(state: SwarmState) -> list[Task]:
    return [task for task in state.tasks if "test" in task.description.lower()]
