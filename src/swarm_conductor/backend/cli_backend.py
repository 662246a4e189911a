"""Subprocess-based backend running the execution engine from a command template."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time

from swarm_conductor.backend.base import ExecutionOutcome, ExecutionRequest

logger = logging.getLogger(__name__)


class BackendRunError(RuntimeError):
    """Engine could not be started; ``transient`` hints whether a retry may help."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliExecutionBackend:
    """Render ``{task}``, ``{swarm_id}``, ``{agents}`` into a command and run it."""

    def __init__(self, command_template: str, *, env: dict[str, str] | None = None) -> None:
        self.command_template = command_template
        self.env = env

    def run(self, request: ExecutionRequest) -> ExecutionOutcome:
        run_args = build_run_args(command_template=self.command_template, request=request)
        env = os.environ.copy()
        env["SWARM_CONDUCTOR_SWARM_ID"] = request.swarm_id
        env["SWARM_CONDUCTOR_AGENTS"] = str(request.agents)
        if self.env:
            env.update(self.env)

        logger.debug("Running execution engine: %s", run_args[0])
        started = time.monotonic()
        try:
            completed = subprocess.run(  # noqa: S603
                run_args,
                env=env,
                capture_output=True,
                text=True,
                timeout=request.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Execution engine command not found: {run_args[0]}",
                transient=False,
            ) from error
        except subprocess.TimeoutExpired as error:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                "Execution engine timed out after %ss (swarm %s)",
                request.timeout_seconds,
                request.swarm_id,
            )
            return ExecutionOutcome(
                success=False,
                output=_combine(_as_text(error.stdout), _as_text(error.stderr)),
                exit_code=-1,
                duration_ms=duration_ms,
                timed_out=True,
            )
        except OSError as error:
            raise BackendRunError(
                f"Execution engine failed to start: {error}",
                transient=True,
            ) from error

        duration_ms = int((time.monotonic() - started) * 1000)
        return ExecutionOutcome(
            success=completed.returncode == 0,
            output=_combine(completed.stdout, completed.stderr),
            exit_code=completed.returncode,
            duration_ms=duration_ms,
        )


def build_run_args(*, command_template: str, request: ExecutionRequest) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Execution engine command template is empty.", transient=False)
    if "{task}" not in stripped:
        raise BackendRunError(
            "Execution engine command template must include {task}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            task=shlex.quote(request.task),
            swarm_id=shlex.quote(request.swarm_id),
            agents=shlex.quote(str(request.agents)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "Execution engine command template rendered empty command.",
            transient=False,
        )
    return argv


def _combine(stdout: str, stderr: str) -> str:
    if stderr:
        return f"{stdout}\n{stderr}"
    return stdout


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
