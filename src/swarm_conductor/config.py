"""Runtime configuration for the conductor core and its CLI adapters."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BACKEND_COMMAND = "npx claude-flow@alpha --swarm-id {swarm_id} --agents {agents} {task}"
SUPPORTED_COMMAND_PLACEHOLDERS = frozenset({"task", "swarm_id", "agents"})


@dataclass(slots=True)
class StorageSettings:
    """SQLite connection policy."""

    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class SessionDefaults:
    """Tunables stored in session metadata when `init` omits them."""

    confidence_threshold: float = 0.8
    max_sprints: int = 10
    parallel_swarms: int = 3


@dataclass(slots=True)
class RetentionSettings:
    """Retention policy for terminal sessions and old checkpoints."""

    max_session_age_days: int = 7
    max_checkpoint_age_days: int = 30
    vacuum_after_cleanup: bool = True
    interval_seconds: int = 3_600


@dataclass(slots=True)
class BackendSettings:
    """External execution engine invocation."""

    command_template: str = DEFAULT_BACKEND_COMMAND
    timeout_seconds: int = 300


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".swarm-conductor/state.db")
    memory_dir: Path = Path(".swarm-conductor/memory")
    auto_checkpoint: bool = True
    storage: StorageSettings = field(default_factory=StorageSettings)
    session: SessionDefaults = field(default_factory=SessionDefaults)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with local-development defaults."""

        resolved_db_path = db_path or Path(
            os.getenv("SWARM_CONDUCTOR_DB_PATH", ".swarm-conductor/state.db"),
        )
        memory_dir = os.getenv("SWARM_CONDUCTOR_MEMORY_DIR")
        return cls(
            db_path=resolved_db_path,
            memory_dir=Path(memory_dir) if memory_dir else resolved_db_path.parent / "memory",
            auto_checkpoint=_env_bool("SWARM_CONDUCTOR_AUTO_CHECKPOINT", default=True),
            storage=StorageSettings(
                busy_timeout_ms=int(os.getenv("SWARM_CONDUCTOR_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            session=SessionDefaults(
                confidence_threshold=float(
                    os.getenv("SWARM_CONDUCTOR_CONFIDENCE_THRESHOLD", "0.8"),
                ),
                max_sprints=int(os.getenv("SWARM_CONDUCTOR_MAX_SPRINTS", "10")),
                parallel_swarms=int(os.getenv("SWARM_CONDUCTOR_PARALLEL_SWARMS", "3")),
            ),
            retention=RetentionSettings(
                max_session_age_days=int(
                    os.getenv("SWARM_CONDUCTOR_MAX_SESSION_AGE_DAYS", "7"),
                ),
                max_checkpoint_age_days=int(
                    os.getenv("SWARM_CONDUCTOR_MAX_CHECKPOINT_AGE_DAYS", "30"),
                ),
                vacuum_after_cleanup=_env_bool(
                    "SWARM_CONDUCTOR_VACUUM_AFTER_CLEANUP",
                    default=True,
                ),
                interval_seconds=int(os.getenv("SWARM_CONDUCTOR_CLEANUP_INTERVAL_SECONDS", "3600")),
            ),
            backend=BackendSettings(
                command_template=os.getenv(
                    "SWARM_CONDUCTOR_BACKEND_COMMAND",
                    DEFAULT_BACKEND_COMMAND,
                ),
                timeout_seconds=int(os.getenv("SWARM_CONDUCTOR_BACKEND_TIMEOUT_SECONDS", "300")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the first invalid setting."""

        if self.storage.busy_timeout_ms <= 0:
            raise ValueError("SWARM_CONDUCTOR_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not 0.0 <= self.session.confidence_threshold <= 1.0:
            raise ValueError("SWARM_CONDUCTOR_CONFIDENCE_THRESHOLD must be within [0, 1].")
        if self.session.max_sprints <= 0:
            raise ValueError("SWARM_CONDUCTOR_MAX_SPRINTS must be > 0.")
        if self.session.parallel_swarms <= 0:
            raise ValueError("SWARM_CONDUCTOR_PARALLEL_SWARMS must be > 0.")
        if self.retention.max_session_age_days < 0:
            raise ValueError("SWARM_CONDUCTOR_MAX_SESSION_AGE_DAYS must be >= 0.")
        if self.retention.max_checkpoint_age_days < 0:
            raise ValueError("SWARM_CONDUCTOR_MAX_CHECKPOINT_AGE_DAYS must be >= 0.")
        if self.retention.interval_seconds <= 0:
            raise ValueError("SWARM_CONDUCTOR_CLEANUP_INTERVAL_SECONDS must be > 0.")
        if self.backend.timeout_seconds <= 0:
            raise ValueError("SWARM_CONDUCTOR_BACKEND_TIMEOUT_SECONDS must be > 0.")
        _validate_command_template(self.backend.command_template)


def _validate_command_template(template: str) -> None:
    stripped = template.strip()
    if not stripped:
        raise ValueError("SWARM_CONDUCTOR_BACKEND_COMMAND must not be empty.")
    if "{task}" not in stripped:
        raise ValueError("SWARM_CONDUCTOR_BACKEND_COMMAND must include the {task} placeholder.")
    try:
        stripped.format(**{name: "" for name in SUPPORTED_COMMAND_PLACEHOLDERS})
    except (KeyError, IndexError) as error:
        raise ValueError(
            f"SWARM_CONDUCTOR_BACKEND_COMMAND uses unsupported placeholder: {error}",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
