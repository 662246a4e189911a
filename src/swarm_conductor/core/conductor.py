"""One conductor step: rescore the aggregate, decide, and apply a phase transition."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from fractions import Fraction

from swarm_conductor.core.confidence import ConfidenceScore, evaluate_state
from swarm_conductor.core.phases import (
    PHASE_CRITERIA,
    PhaseCriteria,
    PhaseDecision,
    decide_phase_advance,
)
from swarm_conductor.core.state import (
    AddTask,
    Phase,
    SwarmState,
    Task,
    TaskStatus,
    TransitionPhase,
    UpdateConfidence,
    UpdateTask,
    reduce_state,
)
from swarm_conductor.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StepResult:
    state: SwarmState
    score: ConfidenceScore
    confidence: float
    decision: PhaseDecision
    previous_phase: Phase

    @property
    def transitioned(self) -> bool:
        return self.state.phase is not self.previous_phase

    @property
    def checkpoint_requested(self) -> bool:
        """Set whenever this step applied a phase transition."""

        return self.transitioned


class ConductorStep:
    """Feeds an observed sprint confidence into the phase machine.

    Step confidence blends the aggregate's factor score with the observed
    confidence: ``(1 - observed_weight) * factor + observed_weight * observed``.
    """

    def __init__(
        self,
        *,
        observed_weight: float = 0.5,
        criteria: Mapping[Phase, PhaseCriteria] | None = None,
    ) -> None:
        if not 0.0 <= observed_weight <= 1.0:
            raise ValidationError("observed_weight must be between 0 and 1")
        self.observed_weight = observed_weight
        self.criteria = dict(criteria or PHASE_CRITERIA)

    def run(self, state: SwarmState, observed_confidence: float | None = None) -> StepResult:
        score = evaluate_state(state)
        confidence = self._blend(score.value, observed_confidence)
        updated = reduce_state(state, UpdateConfidence(confidence))
        decision = decide_phase_advance(updated, confidence, self.criteria.get(updated.phase))
        if decision.should_transition and decision.next_phase is not None:
            updated = reduce_state(updated, TransitionPhase(decision.next_phase))
            logger.info(
                "Swarm %s advanced %s -> %s (confidence=%.3f)",
                state.id,
                state.phase.value,
                updated.phase.value,
                confidence,
            )
        else:
            logger.debug("Swarm %s holds in %s: %s", state.id, state.phase.value, decision.reason)
        return StepResult(
            state=updated,
            score=score,
            confidence=confidence,
            decision=decision,
            previous_phase=state.phase,
        )

    def _blend(self, factor_value: float, observed: float | None) -> float:
        if observed is None:
            return factor_value
        weight = Fraction(self.observed_weight)
        blended = (1 - weight) * Fraction(factor_value) + weight * Fraction(observed)
        return max(0.0, min(1.0, float(blended)))


def record_sprint(state: SwarmState, *, task_id: str, description: str, success: bool) -> SwarmState:
    """Record a finished sprint as a task of the aggregate."""

    status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
    if any(task.id == task_id for task in state.tasks):
        return reduce_state(state, UpdateTask(task_id, {"status": status}))
    return reduce_state(state, AddTask(Task(id=task_id, description=description, status=status)))
