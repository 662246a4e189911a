"""File-backed external memory: one JSON document per session."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from swarm_conductor.errors import StorageError, ValidationError


class MemoryStore(Protocol):
    """Opaque per-session memory captured by checkpoints."""

    def get(self, session_id: str) -> dict[str, Any]:
        """Return stored memory, empty when nothing was stored."""

    def put(self, session_id: str, payload: dict[str, Any]) -> None:
        """Replace stored memory."""

    def delete(self, session_id: str) -> None:
        """Drop stored memory if present."""


class FileMemoryStore:
    """Stores ``<root>/<session_id>.json`` with atomic replace on write."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def get(self, session_id: str) -> dict[str, Any]:
        path = self._path(session_id)
        try:
            raw = path.read_text("utf-8")
        except FileNotFoundError:
            return {}
        except OSError as error:
            raise StorageError(f"Failed to read memory for {session_id}: {error}") from error
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            raise ValidationError(f"Memory for {session_id} is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise ValidationError(f"Memory for {session_id} must be a JSON object")
        return payload

    def put(self, session_id: str, payload: dict[str, Any]) -> None:
        try:
            encoded = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)
        except (TypeError, ValueError) as error:
            raise ValidationError(f"Memory for {session_id} is not JSON-serializable") from error

        path = self._path(session_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(encoded)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as error:
            raise StorageError(f"Failed to write memory for {session_id}: {error}") from error

    def delete(self, session_id: str) -> None:
        try:
            self._path(session_id).unlink(missing_ok=True)
        except OSError as error:
            raise StorageError(f"Failed to delete memory for {session_id}: {error}") from error

    def _path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise ValidationError(f"Invalid session id for memory store: {session_id!r}")
        return self.root_dir / f"{session_id}.json"
