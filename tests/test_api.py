from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

import allure
import pytest

from swarm_conductor.api import ConductorApi, ControlRequest, ControlResponse, ErrorCode
from swarm_conductor.backend import BackendRunError, ExecutionOutcome, ExecutionRequest
from swarm_conductor.config import Settings
from swarm_conductor.errors import StorageError, ValidationError
from swarm_conductor.state.memory import FileMemoryStore
from swarm_conductor.state.models import SessionStatus, SprintStatus
from swarm_conductor.state.repository import StateRepository

pytestmark = [
    allure.epic("Control API"),
    allure.feature("Request Handlers"),
]


@dataclass
class FakeBackend:
    """Returns queued outcomes (or raises queued errors) in order."""

    outcomes: list[ExecutionOutcome | Exception] = field(default_factory=list)
    requests: list[ExecutionRequest] = field(default_factory=list)

    def run(self, request: ExecutionRequest) -> ExecutionOutcome:
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _ok(output: str = "completed with success") -> ExecutionOutcome:
    return ExecutionOutcome(success=True, output=output, exit_code=0, duration_ms=40)


def _failed(output: str = "boom") -> ExecutionOutcome:
    return ExecutionOutcome(success=False, output=output, exit_code=1, duration_ms=10)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def api(
    repository: StateRepository,
    memory_store: FileMemoryStore,
    backend: FakeBackend,
) -> ConductorApi:
    return ConductorApi(
        repository=repository,
        memory=memory_store,
        backend=backend,
        settings=Settings(),
    )


def _call(api: ConductorApi, method: str, **params: object) -> ControlResponse:
    return api.handle(ControlRequest(method=method, params=dict(params), id=1))


def _result(api: ConductorApi, method: str, **params: object) -> dict:
    response = _call(api, method, **params)
    assert response.error is None, response.error
    assert response.result is not None
    return response.result


def _init(api: ConductorApi, **params: object) -> str:
    return _result(api, "init", task="build-api", **params)["session_id"]


def test_init_creates_active_session_and_memory(
    api: ConductorApi,
    memory_store: FileMemoryStore,
) -> None:
    result = _result(api, "init", task="build-api", max_sprints=4, parallel_swarms=2)

    assert result["status"] == "active"
    assert result["session_id"].startswith("session-")
    memory = memory_store.get(result["session_id"])
    assert memory["task"] == "build-api"
    assert memory["status"] == "initialized"
    assert memory["swarm_state"]["phase"] == "planning"
    assert len(memory["swarm_state"]["agents"]) == 2

    status = _result(api, "status", session_id=result["session_id"])
    assert status["metadata"]["max_sprints"] == 4
    assert status["sprint_count"] == 0
    assert status["phase"] == "planning"


def test_method_prefix_is_accepted(api: ConductorApi) -> None:
    result = _result(api, "swarm_conductor_init", task="build-api")

    status = _result(api, "swarm_conductor_status", session_id=result["session_id"])

    assert status["status"] == "active"


@pytest.mark.parametrize(
    ("method", "params", "code"),
    [
        ("explode", {}, ErrorCode.METHOD_NOT_FOUND),
        ("init", {}, ErrorCode.INVALID_PARAMS),
        ("init", {"task": "x", "confidence_threshold": 2.0}, ErrorCode.INVALID_PARAMS),
        ("init", {"task": "x", "max_sprints": "3"}, ErrorCode.INVALID_PARAMS),
        ("status", {"session_id": "session-missing"}, ErrorCode.NOT_FOUND),
        ("sprint", {"session_id": "session-missing"}, ErrorCode.NOT_FOUND),
        ("cancel", {"session_id": "session-missing"}, ErrorCode.NOT_FOUND),
        ("restore", {"checkpoint_id": "checkpoint-missing"}, ErrorCode.NOT_FOUND),
        ("list", {"type": "sprints"}, ErrorCode.INVALID_PARAMS),
        ("list", {"type": "checkpoints"}, ErrorCode.INVALID_PARAMS),
        ("metrics", {"session_id": "session-missing"}, ErrorCode.NOT_FOUND),
    ],
)
def test_errors_map_to_codes(
    api: ConductorApi,
    method: str,
    params: dict,
    code: ErrorCode,
) -> None:
    response = api.handle(ControlRequest(method=method, params=params, id="req-7"))

    assert response.error is not None
    assert response.error.code is code
    payload = response.to_payload()
    assert payload["id"] == "req-7"
    assert payload["error"]["code"] == int(code)


def test_validation_errors_carry_kind(api: ConductorApi) -> None:
    payload = _call(api, "init").to_payload()

    assert payload["error"]["data"] == {"kind": "validation"}


def test_sprint_success_advances_phase_and_checkpoints(
    api: ConductorApi,
    backend: FakeBackend,
    repository: StateRepository,
    memory_store: FileMemoryStore,
) -> None:
    session_id = _init(api)
    backend.outcomes.append(_ok())

    result = _result(api, "sprint", session_id=session_id)

    assert result["sprint_number"] == 1
    assert result["status"] == "completed"
    assert result["confidence"] == pytest.approx(0.9)
    assert result["confidence_level"] == "HIGH"
    assert result["should_continue"] is False
    assert result["phase"] == "executing"
    assert result["phase_decision"] == "advance"
    assert result["stalled"] is False
    assert result["checkpoint_id"] is not None

    request = backend.requests[0]
    assert request.task == "Sprint 1 for build-api"
    assert request.swarm_id == f"{session_id}-sprint-1"
    assert request.agents == 3

    sprint = repository.get_sprint(result["sprint_id"])
    assert sprint is not None
    assert sprint.status is SprintStatus.COMPLETED
    assert sprint.result is not None
    assert sprint.result.metrics.token_count == 3
    artifacts = repository.get_artifacts_by_sprint(sprint.id)
    assert [artifact.id for artifact in artifacts] == list(sprint.result.artifact_ids)
    assert artifacts[0].checksum is not None
    assert len(artifacts[0].checksum) == 64

    session = repository.get_session(session_id)
    assert session is not None
    assert session.sprint_count == 1
    assert session.confidence_level == pytest.approx(0.9)

    memory = memory_store.get(session_id)
    assert memory["status"] == "running"
    assert memory["last_sprint_id"] == sprint.id
    assert memory["swarm_state"]["phase"] == "executing"

    checkpoints = repository.list_checkpoints(session_id)
    assert [checkpoint.name for checkpoint in checkpoints] == ["auto-planning-to-executing"]


def test_failed_sprint_scores_zero_and_holds(
    api: ConductorApi,
    backend: FakeBackend,
    repository: StateRepository,
) -> None:
    session_id = _init(api)
    backend.outcomes.append(_failed())

    result = _result(api, "sprint", session_id=session_id, objective="Draft schema")

    assert result["status"] == "failed"
    assert result["confidence"] == 0.0
    assert result["should_continue"] is True
    assert result["phase"] == "planning"
    assert result["phase_decision"] == "hold"
    assert result["checkpoint_id"] is None
    assert backend.requests[0].task == "Draft schema"
    assert repository.list_checkpoints(session_id) == []


def test_auto_checkpoint_can_be_disabled(
    repository: StateRepository,
    memory_store: FileMemoryStore,
    backend: FakeBackend,
) -> None:
    api = ConductorApi(
        repository=repository,
        memory=memory_store,
        backend=backend,
        settings=Settings(auto_checkpoint=False),
    )
    session_id = _init(api)
    backend.outcomes.append(_ok())

    result = _result(api, "sprint", session_id=session_id)

    assert result["phase"] == "executing"
    assert result["checkpoint_id"] is None


def test_sprint_respects_max_sprints(api: ConductorApi, backend: FakeBackend) -> None:
    session_id = _init(api, max_sprints=1)
    backend.outcomes.append(_ok())
    _result(api, "sprint", session_id=session_id)

    response = _call(api, "sprint", session_id=session_id)

    assert response.error is not None
    assert response.error.code is ErrorCode.INVALID_PARAMS
    assert "max_sprints" in response.error.message
    assert len(backend.requests) == 1


def test_cancelled_session_rejects_sprints(api: ConductorApi, backend: FakeBackend) -> None:
    session_id = _init(api)

    cancelled = _result(api, "cancel", session_id=session_id)
    response = _call(api, "sprint", session_id=session_id)

    assert cancelled["status"] == "cancelled"
    assert response.error is not None
    assert response.error.code is ErrorCode.INVALID_PARAMS
    assert backend.requests == []
    assert _result(api, "list", type="sessions")["sessions"] == []


def test_backend_start_failure_marks_sprint_failed(
    api: ConductorApi,
    backend: FakeBackend,
    repository: StateRepository,
) -> None:
    session_id = _init(api)
    backend.outcomes.append(BackendRunError("engine missing", transient=False))

    response = _call(api, "sprint", session_id=session_id)

    assert response.error is not None
    assert response.error.code is ErrorCode.INTERNAL_ERROR
    assert response.error.kind == "backend"
    sprints = repository.get_sprints_by_session(session_id)
    assert [sprint.status for sprint in sprints] == [SprintStatus.FAILED]
    assert sprints[0].result is not None
    assert sprints[0].result.metrics.error_count == 1


def test_unexpected_errors_become_internal_errors(
    api: ConductorApi,
    backend: FakeBackend,
    repository: StateRepository,
    caplog,
) -> None:
    session_id = _init(api)
    backend.outcomes.append(RuntimeError("kaboom"))

    response = _call(api, "sprint", session_id=session_id)

    assert response.error is not None
    assert response.error.code is ErrorCode.INTERNAL_ERROR
    assert "kaboom" in response.error.message
    assert "Unhandled error in sprint" in caplog.text
    sprints = repository.get_sprints_by_session(session_id)
    assert [sprint.status for sprint in sprints] == [SprintStatus.FAILED]
    assert sprints[0].result is not None
    assert sprints[0].result.output == "kaboom"


def test_corrupt_memory_rejects_sprint_before_any_write(
    api: ConductorApi,
    backend: FakeBackend,
    repository: StateRepository,
    tmp_path,
) -> None:
    session_id = _init(api)
    (tmp_path / "memory" / f"{session_id}.json").write_text("{broken", "utf-8")

    response = _call(api, "sprint", session_id=session_id)

    assert response.error is not None
    assert response.error.code is ErrorCode.INVALID_PARAMS
    assert "not valid JSON" in response.error.message
    assert repository.get_sprints_by_session(session_id) == []
    assert backend.requests == []


def test_failure_after_backend_run_marks_sprint_failed(
    api: ConductorApi,
    backend: FakeBackend,
    repository: StateRepository,
    monkeypatch,
) -> None:
    session_id = _init(api)
    backend.outcomes.append(_ok())

    def broken_save(*_args: object, **_kwargs: object) -> None:
        raise StorageError("Failed to save artifact: disk full")

    monkeypatch.setattr(repository, "save_artifact", broken_save)

    response = _call(api, "sprint", session_id=session_id)

    assert response.error is not None
    assert response.error.code is ErrorCode.INTERNAL_ERROR
    assert response.error.kind == "storage_io"
    sprints = repository.get_sprints_by_session(session_id)
    assert [sprint.status for sprint in sprints] == [SprintStatus.FAILED]


@dataclass
class SlowBackend:
    """Succeeds after a delay so concurrent sprints overlap."""

    delay_seconds: float = 0.05
    calls: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)

    def run(self, request: ExecutionRequest) -> ExecutionOutcome:
        with self.lock:
            self.calls += 1
        time.sleep(self.delay_seconds)
        return _ok()


def test_concurrent_sprints_respect_max_sprints_and_keep_history(
    repository: StateRepository,
    memory_store: FileMemoryStore,
) -> None:
    backend = SlowBackend()
    api = ConductorApi(
        repository=repository,
        memory=memory_store,
        backend=backend,
        settings=Settings(),
    )
    session_id = _init(api, max_sprints=2)
    responses: list[ControlResponse] = []
    responses_lock = threading.Lock()

    def run_sprint() -> None:
        response = _call(api, "sprint", session_id=session_id)
        with responses_lock:
            responses.append(response)

    threads = [threading.Thread(target=run_sprint) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    succeeded = [response for response in responses if response.ok]
    rejected = [response for response in responses if not response.ok]
    assert len(succeeded) == 2
    assert len(rejected) == 4
    assert all(response.error.code is ErrorCode.INVALID_PARAMS for response in rejected)
    assert all("max_sprints" in response.error.message for response in rejected)
    assert backend.calls == 2

    sprints = repository.get_sprints_by_session(session_id)
    assert [sprint.sprint_number for sprint in sprints] == [1, 2]
    assert all(sprint.status is SprintStatus.COMPLETED for sprint in sprints)
    tasks = memory_store.get(session_id)["swarm_state"]["tasks"]
    assert sorted(task["id"] for task in tasks) == sorted(sprint.id for sprint in sprints)


def test_checkpoint_and_restore(
    api: ConductorApi,
    backend: FakeBackend,
    memory_store: FileMemoryStore,
    repository: StateRepository,
) -> None:
    session_id = _init(api)
    no_sprints = _call(api, "checkpoint", session_id=session_id, name="empty")
    assert no_sprints.error is not None
    assert no_sprints.error.code is ErrorCode.INVALID_PARAMS

    backend.outcomes.append(_failed())
    sprint_id = _result(api, "sprint", session_id=session_id)["sprint_id"]
    created = _result(api, "checkpoint", session_id=session_id, name="manual", description="d")
    captured_memory = memory_store.get(session_id)
    memory_store.put(session_id, {"status": "corrupted"})

    restored = _result(api, "restore", checkpoint_id=created["checkpoint_id"])

    assert restored["session_id"] == session_id
    assert restored["message"] == "Restored from checkpoint 'manual'"
    assert [sprint["id"] for sprint in restored["state"]["sprints"]] == [sprint_id]
    assert len(restored["state"]["artifacts"]) == 1
    assert restored["state"]["memory"] == captured_memory
    assert memory_store.get(session_id) == captured_memory

    listed = _result(api, "list", type="checkpoints", session_id=session_id)["checkpoints"]
    assert [item["name"] for item in listed] == ["manual"]
    assert listed[0]["sprint_id"] == sprint_id
    session = repository.get_session(session_id)
    assert session is not None
    assert session.status is SessionStatus.ACTIVE


def test_status_verbose_and_metrics(api: ConductorApi, backend: FakeBackend) -> None:
    session_id = _init(api)
    empty_metrics = _result(api, "metrics", session_id=session_id)
    assert empty_metrics["total_sprints"] == 0
    assert empty_metrics["average_confidence"] == 0.0
    assert "resources" not in empty_metrics

    backend.outcomes.extend([_ok(), _failed()])
    _result(api, "sprint", session_id=session_id)
    _result(api, "sprint", session_id=session_id)

    status = _result(api, "status", session_id=session_id, verbose=True)
    assert status["sprint_count"] == 2
    assert [sprint["sprint_number"] for sprint in status["sprints"]] == [1, 2]
    assert isinstance(status["recommendations"], list)

    metrics = _result(api, "metrics", session_id=session_id, include_resources=True)
    assert metrics["total_sprints"] == 2
    assert metrics["completed_sprints"] == 1
    assert metrics["failed_sprints"] == 1
    assert metrics["total_duration_ms"] == 50
    assert metrics["total_tokens"] == 4
    assert metrics["total_errors"] == 1
    assert metrics["average_confidence"] == pytest.approx(0.45)
    assert metrics["latest_confidence"] == 0.0
    assert metrics["confidence_level"] == "MINIMAL"
    assert metrics["resources"]["cpu"]["count"] >= 1


def test_list_sessions_returns_active_sessions(api: ConductorApi) -> None:
    first = _init(api)
    second = _result(api, "init", task="other")["session_id"]

    sessions = _result(api, "list", type="sessions")["sessions"]

    assert {item["session_id"] for item in sessions} == {first, second}


def test_request_parsing() -> None:
    request = ControlRequest.from_payload({"method": "status", "params": {"a": 1}, "id": 5})

    assert request == ControlRequest(method="status", params={"a": 1}, id=5)
    assert ControlRequest.from_payload({"method": "list"}).params == {}


@pytest.mark.parametrize(
    "payload",
    [
        ["status"],
        {"params": {}},
        {"method": "x", "params": [1]},
        {"method": "x", "id": True},
    ],
)
def test_malformed_requests_are_rejected(payload: object) -> None:
    with pytest.raises(ValidationError):
        ControlRequest.from_payload(payload)


def test_success_payload_shape() -> None:
    response = ControlResponse(id="abc", result={"ok": True})

    assert response.ok
    assert response.to_payload() == {"result": {"ok": True}, "id": "abc"}
