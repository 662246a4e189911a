"""Control API request handling."""

from swarm_conductor.api.handlers import (
    ConductorApi,
    ControlMethod,
    ControlRequest,
    ControlResponse,
    ErrorCode,
)

__all__ = [
    "ConductorApi",
    "ControlMethod",
    "ControlRequest",
    "ControlResponse",
    "ErrorCode",
]
