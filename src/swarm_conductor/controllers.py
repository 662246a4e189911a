"""Controllers for swarm-conductor CLI commands."""

from __future__ import annotations

import json
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from swarm_conductor.api import ConductorApi, ControlRequest, ControlResponse, ErrorCode
from swarm_conductor.backend import CliExecutionBackend
from swarm_conductor.config import Settings
from swarm_conductor.errors import ValidationError
from swarm_conductor.state.cleanup import (
    CleanupOptions,
    CleanupScheduler,
    CleanupStats,
    StateCleanup,
)
from swarm_conductor.state.memory import FileMemoryStore
from swarm_conductor.state.repository import StateRepository
from swarm_conductor.storage.migrations import MIGRATIONS, MigrationRunner


@dataclass(slots=True)
class CommandResult:
    """Rendered output plus success flag for the CLI layer."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for an on-demand retention cleanup."""

    db_path: Path | None
    max_session_age_days: int | None
    max_checkpoint_age_days: int | None
    vacuum: bool
    watch: bool = False
    max_cycles: int | None = None


class ConductorCliController:
    """Thin adapter from CLI commands to the control API."""

    def call(self, db_path: Path | None, method: str, params: dict[str, Any]) -> CommandResult:
        settings = _settings(db_path)
        with _api(settings) as api:
            response = api.handle(ControlRequest(method=method, params=params, id=method))
        return _render_response(response)

    def rpc(self, db_path: Path | None, raw_request: str) -> CommandResult:
        """Handle one JSON request; parse failures become error responses too."""

        try:
            payload = json.loads(raw_request)
        except json.JSONDecodeError as error:
            response = ControlResponse.failure(
                None,
                ErrorCode.PARSE_ERROR,
                f"Parse error: {error}",
            )
            return _render_payload(response)
        try:
            request = ControlRequest.from_payload(payload)
        except ValidationError as error:
            request_id = payload.get("id") if isinstance(payload, dict) else None
            response = ControlResponse.failure(
                request_id if isinstance(request_id, str | int) else None,
                ErrorCode.INVALID_REQUEST,
                str(error),
            )
            return _render_payload(response)

        settings = _settings(db_path)
        with _api(settings) as api:
            response = api.handle(request)
        return _render_payload(response)

    def cleanup(self, command: CleanupCommand) -> CommandResult:
        settings = _settings(command.db_path)
        defaults = CleanupOptions.from_settings(settings.retention)
        max_checkpoint_age = defaults.max_checkpoint_age
        if command.max_checkpoint_age_days is not None:
            max_checkpoint_age = (
                timedelta(days=command.max_checkpoint_age_days)
                if command.max_checkpoint_age_days > 0
                else None
            )
        options = CleanupOptions(
            max_session_age=(
                timedelta(days=command.max_session_age_days)
                if command.max_session_age_days is not None
                else defaults.max_session_age
            ),
            max_checkpoint_age=max_checkpoint_age,
            vacuum=command.vacuum and defaults.vacuum,
        )
        with _repository(settings) as repository:
            cleanup = StateCleanup(
                repository,
                options,
                memory=FileMemoryStore(settings.memory_dir),
            )
            if not command.watch:
                return CommandResult(lines=[_format_stats(cleanup.run())], success=True)

            scheduler = CleanupScheduler(
                cleanup.run,
                interval_seconds=settings.retention.interval_seconds,
            )
            with _stop_on_signals(scheduler):
                cycles = scheduler.run_loop(max_cycles=command.max_cycles)
        lines = [f"Cleanup watch stopped: cycles={cycles} failures={scheduler.failures}"]
        if scheduler.last_stats is not None:
            lines.append(_format_stats(scheduler.last_stats))
        return CommandResult(lines=lines, success=scheduler.failures == 0)

    def migrate(self, db_path: Path | None) -> CommandResult:
        settings = _settings(db_path)
        repository = StateRepository(
            settings.db_path,
            busy_timeout_ms=settings.storage.busy_timeout_ms,
        )
        try:
            runner = MigrationRunner(repository.engine)
            applied = runner.migrate()
            current = runner.current_version()
        finally:
            repository.close()
        applied_text = ", ".join(str(version) for version in applied) or "none"
        return CommandResult(
            lines=[
                f"Applied migrations: {applied_text}",
                f"Schema version: {current} (latest {MIGRATIONS[-1].version})",
            ],
            success=True,
        )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[StateRepository]:
    repository = StateRepository(
        settings.db_path,
        busy_timeout_ms=settings.storage.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _api(settings: Settings) -> Iterator[ConductorApi]:
    with _repository(settings) as repository:
        yield ConductorApi(
            repository=repository,
            memory=FileMemoryStore(settings.memory_dir),
            backend=CliExecutionBackend(settings.backend.command_template),
            settings=settings,
        )


@contextmanager
def _stop_on_signals(scheduler: CleanupScheduler) -> Iterator[None]:
    # Handlers can only be installed from the main thread.
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, _: object | None) -> None:
        scheduler.request_stop()

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)
    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _format_stats(stats: CleanupStats) -> str:
    return (
        "Cleanup finished: "
        f"sessions_deleted={stats.sessions_deleted} "
        f"checkpoints_deleted={stats.checkpoints_deleted} "
        f"space_reclaimed_bytes={stats.space_reclaimed_bytes}"
    )


def _render_response(response: ControlResponse) -> CommandResult:
    if response.error is not None:
        return CommandResult(
            lines=[f"Error {int(response.error.code)}: {response.error.message}"],
            success=False,
        )
    return CommandResult(
        lines=json.dumps(response.result, indent=2, sort_keys=True).splitlines(),
        success=True,
    )


def _render_payload(response: ControlResponse) -> CommandResult:
    return CommandResult(
        lines=[json.dumps(response.to_payload(), sort_keys=True)],
        success=response.ok,
    )
