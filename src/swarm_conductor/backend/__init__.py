"""Execution engine backend implementations."""

from swarm_conductor.backend.base import ExecutionBackend, ExecutionOutcome, ExecutionRequest
from swarm_conductor.backend.cli_backend import BackendRunError, CliExecutionBackend, build_run_args

__all__ = [
    "BackendRunError",
    "CliExecutionBackend",
    "ExecutionBackend",
    "ExecutionOutcome",
    "ExecutionRequest",
    "build_run_args",
]
