"""Typed failures raised by repository, reducer, and checkpoint operations."""

from __future__ import annotations


class ConductorError(Exception):
    """Base class for all failures reported by the conductor core."""

    code = "conductor_error"


class NotFoundError(ConductorError):
    """Session, sprint, or checkpoint id is absent."""

    code = "not_found"


class ValidationError(ConductorError, ValueError):
    """Request rejected before any mutation was applied."""

    code = "validation"


class InvalidPhaseTransitionError(ValidationError):
    """Target phase is not reachable from the current phase."""

    code = "invalid_phase_transition"


class ConstraintViolationError(ConductorError):
    """Storage constraint rejected the write (unique or foreign key)."""

    code = "constraint_violation"


class StorageError(ConductorError):
    """Disk or connection failure; fatal to the calling operation."""

    code = "storage_io"


class MigrationError(StorageError):
    """A schema migration failed; later migrations were not attempted."""

    code = "migration_failed"

    def __init__(self, message: str, *, version: int) -> None:
        super().__init__(message)
        self.version = version
