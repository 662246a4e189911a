"""Confidence evaluation: weighted factor scores, outcome scoring, and the level ladder.

Weighted sums are computed with :class:`fractions.Fraction`, so re-normalized
weights introduce no rounding: a weight set with one non-zero entry yields that
factor's value exactly, and all-ones factors yield exactly ``1.0``.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from fractions import Fraction
from typing import Literal, Protocol

from swarm_conductor.core.state import AgentStatus, SwarmState, TaskStatus
from swarm_conductor.errors import ValidationError
from swarm_conductor.storage.common import utc_now


@dataclass(slots=True, frozen=True)
class ConfidenceFactors:
    success_rate: float
    consensus_level: float
    resource_utilization: float
    progress_rate: float
    error_rate: float
    complexity: float
    experience: float


DEFAULT_CONFIDENCE_WEIGHTS: Mapping[str, float] = {
    "success_rate": 0.25,
    "consensus_level": 0.20,
    "resource_utilization": 0.10,
    "progress_rate": 0.15,
    "error_rate": 0.15,
    "complexity": 0.10,
    "experience": 0.05,
}


@dataclass(slots=True, frozen=True)
class ConfidenceScore:
    """Bounded value plus the breakdown that produced it.

    ``timestamp`` is excluded from equality so repeated evaluations compare equal.
    """

    value: float
    factors: dict[str, float]
    weights: dict[str, float]
    calculation: str = "weighted_average"
    timestamp: datetime = field(default_factory=utc_now, compare=False)

    @property
    def level(self) -> ConfidenceLevel:
        return confidence_level(self.value)


def evaluate_weighted(
    factors: Mapping[str, float],
    weights: Mapping[str, float],
) -> ConfidenceScore:
    """Weighted average after re-normalizing weights to sum to 1, clamped to [0, 1].

    Factors without a weight contribute nothing; weights without a factor are
    rejected.
    """

    if not factors:
        raise ValidationError("At least one confidence factor is required")
    missing = set(weights) - set(factors)
    if missing:
        raise ValidationError(f"Weights reference unknown factors: {sorted(missing)}")
    for name, value in factors.items():
        _require_finite(f"factor {name}", value)
    for name, weight in weights.items():
        _require_finite(f"weight {name}", weight)
        if weight < 0:
            raise ValidationError(f"weight {name} must be >= 0, got {weight!r}")

    exact_weights = {name: Fraction(weights.get(name, 0.0)) for name in factors}
    total = sum(exact_weights.values(), Fraction(0))
    if total == 0:
        raise ValidationError("Confidence weights must not all be zero")

    weighted = sum(
        (Fraction(value) * exact_weights[name] for name, value in factors.items()),
        Fraction(0),
    )
    return ConfidenceScore(
        value=_clamp(float(weighted / total)),
        factors=dict(factors),
        weights={name: float(weight / total) for name, weight in exact_weights.items()},
    )


def evaluate_factors(
    factors: ConfidenceFactors,
    weights: Mapping[str, float] = DEFAULT_CONFIDENCE_WEIGHTS,
) -> ConfidenceScore:
    return evaluate_weighted(asdict(factors), weights)


# -- outcome scoring --------------------------------------------------------------


class OutcomePolicy(Protocol):
    """Maps an execution outcome to a raw score; callers clamp the result."""

    def score(self, success: bool, output: str) -> float:
        """Score one execution outcome."""


@dataclass(slots=True, frozen=True)
class KeywordOutcomePolicy:
    """Case-insensitive marker heuristic over the engine's free-text output."""

    base: float = 0.5
    success_markers: tuple[str, ...] = ("completed", "success")
    success_bonus: float = 0.2
    failure_markers: tuple[str, ...] = ("error", "failed")
    failure_penalty: float = 0.3

    def score(self, success: bool, output: str) -> float:
        if not success:
            return 0.0
        text = output.lower()
        value = self.base
        value += self.success_bonus * sum(1 for marker in self.success_markers if marker in text)
        if any(marker in text for marker in self.failure_markers):
            value -= self.failure_penalty
        return value


DEFAULT_OUTCOME_POLICY = KeywordOutcomePolicy()


def evaluate_outcome(
    success: bool,
    output: str,
    policy: OutcomePolicy = DEFAULT_OUTCOME_POLICY,
) -> float:
    """Score a finished execution; a failed execution always scores 0."""

    if not success:
        return 0.0
    return _clamp(policy.score(success, output))


# -- level ladder ---------------------------------------------------------------


class ConfidenceLevel(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    MINIMAL = "MINIMAL"


CONFIDENCE_THRESHOLDS: Mapping[ConfidenceLevel, float] = {
    ConfidenceLevel.CRITICAL: 0.95,
    ConfidenceLevel.HIGH: 0.80,
    ConfidenceLevel.MEDIUM: 0.60,
    ConfidenceLevel.LOW: 0.40,
    ConfidenceLevel.MINIMAL: 0.20,
}


def confidence_level(value: float) -> ConfidenceLevel:
    """Map any value, including out-of-range ones, onto the ladder."""

    if math.isnan(value):
        return ConfidenceLevel.MINIMAL
    for level in (
        ConfidenceLevel.CRITICAL,
        ConfidenceLevel.HIGH,
        ConfidenceLevel.MEDIUM,
        ConfidenceLevel.LOW,
    ):
        if value >= CONFIDENCE_THRESHOLDS[level]:
            return level
    return ConfidenceLevel.MINIMAL


def meets_threshold(score: ConfidenceScore | float, threshold: float | ConfidenceLevel) -> bool:
    value = score.value if isinstance(score, ConfidenceScore) else score
    required = (
        CONFIDENCE_THRESHOLDS[threshold] if isinstance(threshold, ConfidenceLevel) else threshold
    )
    return value >= required


# -- state-derived factors ------------------------------------------------------


@dataclass(slots=True, frozen=True)
class StateFactors:
    task_completion: float
    agent_utilization: float
    task_failure_rate: float
    phase_iterations: float
    context_clarity: float


STATE_CONFIDENCE_WEIGHTS: Mapping[str, float] = {
    "task_completion": 0.3,
    "agent_utilization": 0.2,
    "task_success": 0.2,
    "phase_iterations": 0.15,
    "context_clarity": 0.15,
}

_ITERATION_PENALTIES = (1.0, 0.8, 0.6, 0.4)
_TECHNICAL_TERMS = ("implement", "build", "create", "develop", "test", "deploy")
_VAGUE_TERMS = ("something", "stuff", "thing", "whatever")


def state_factors(state: SwarmState) -> StateFactors:
    return StateFactors(
        task_completion=_task_completion(state),
        agent_utilization=_agent_utilization(state),
        task_failure_rate=_task_failure_rate(state),
        phase_iterations=_phase_iteration_factor(state),
        context_clarity=_context_clarity(state.context),
    )


def evaluate_state(state: SwarmState) -> ConfidenceScore:
    """Factor-based confidence of a swarm aggregate."""

    factors = state_factors(state)
    return evaluate_weighted(
        {
            "task_completion": factors.task_completion,
            "agent_utilization": factors.agent_utilization,
            "task_success": 1.0 - factors.task_failure_rate,
            "phase_iterations": factors.phase_iterations,
            "context_clarity": factors.context_clarity,
        },
        STATE_CONFIDENCE_WEIGHTS,
    )


def confidence_trend(
    states: Sequence[SwarmState],
) -> Literal["improving", "declining", "stable"]:
    if len(states) < 3:
        return "stable"
    recent = [evaluate_state(state).value for state in states[-3:]]
    diff = recent[-1] - recent[0]
    if diff > 0.1:
        return "improving"
    if diff < -0.1:
        return "declining"
    return "stable"


def confidence_recommendations(state: SwarmState) -> list[str]:
    factors = state_factors(state)
    recommendations: list[str] = []
    if factors.task_completion < 0.5:
        recommendations.append("Focus on completing more tasks to improve confidence")
    if factors.agent_utilization < 0.6:
        recommendations.append("Assign more tasks to idle agents")
    elif factors.agent_utilization > 0.9:
        recommendations.append("Agents are overloaded - consider redistributing tasks")
    if factors.task_failure_rate > 0.2:
        recommendations.append("High failure rate detected - review task requirements")
    if factors.phase_iterations < 0.6:
        recommendations.append("Multiple phase iterations detected - consider adjusting approach")
    if factors.context_clarity < 0.5:
        recommendations.append("Context could be clearer - consider refining requirements")
    return recommendations


def _task_completion(state: SwarmState) -> float:
    if not state.tasks:
        return 0.5
    completed = sum(1 for task in state.tasks if task.status is TaskStatus.COMPLETED)
    return completed / len(state.tasks)


def _agent_utilization(state: SwarmState) -> float:
    """Utilization scored against an 80% optimum; overload is penalized."""

    if not state.agents:
        return 0.0
    busy = sum(1 for agent in state.agents if agent.status is AgentStatus.BUSY)
    utilization = busy / len(state.agents)
    if utilization <= 0.8:
        return utilization / 0.8
    return 1.0 - ((utilization - 0.8) / 0.2) * 0.2


def _task_failure_rate(state: SwarmState) -> float:
    failed = sum(1 for task in state.tasks if task.status is TaskStatus.FAILED)
    attempted = sum(
        1 for task in state.tasks if task.status in {TaskStatus.COMPLETED, TaskStatus.FAILED}
    )
    if attempted == 0:
        return 0.0
    return failed / attempted


def _phase_iteration_factor(state: SwarmState) -> float:
    iteration = state.iterations_in_phase()
    if iteration <= len(_ITERATION_PENALTIES):
        return _ITERATION_PENALTIES[iteration - 1]
    return 0.2


def _context_clarity(context: str) -> float:
    words = context.split()
    if len(words) < 5:
        return 0.2
    if len(words) > 500:
        return 0.7
    lowered = context.lower()
    clarity = 0.5
    if ":" in context or "-" in context:
        clarity += 0.1
    if "\n" in context:
        clarity += 0.1
    if any(term in lowered for term in _TECHNICAL_TERMS):
        clarity += 0.2
    if any(term in lowered for term in _VAGUE_TERMS):
        clarity -= 0.1
    return _clamp(clarity)


def _require_finite(name: str, value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number, got {value!r}")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
