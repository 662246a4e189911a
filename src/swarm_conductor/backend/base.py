"""Interface to the external execution engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs for one sprint run of the external engine."""

    task: str
    swarm_id: str
    agents: int
    timeout_seconds: int


@dataclass(slots=True)
class ExecutionOutcome:
    """Pass/fail plus combined output; the only things the core consumes."""

    success: bool
    output: str
    exit_code: int
    duration_ms: int
    timed_out: bool = False


class ExecutionBackend(Protocol):
    """Protocol implemented by execution engine adapters."""

    def run(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Run one unit of work and report its outcome."""
