from __future__ import annotations

import json
import os
import threading
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from epicflow.models import utcnow_iso
from epicflow.observability import get_logger

logger = get_logger(__name__)

NAMESPACES = frozenset({"tasks", "epics"})
SCHEMA_VERSION = 1
_CONFLICT_MARKER = "Concurrent state update detected"


class EpicflowStateError(RuntimeError):
    """Raised when shared-state operations fail."""


class StateBackend(Protocol):
    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        ...

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        ...


def _validate_namespace(namespace: str) -> None:
    if namespace not in NAMESPACES:
        raise EpicflowStateError(f"Unsupported namespace: {namespace}")


def normalize_envelope(raw_payload: Any, default: Any) -> dict[str, Any]:
    if (
        isinstance(raw_payload, dict)
        and "schema_version" in raw_payload
        and "data" in raw_payload
        and "revision" in raw_payload
    ):
        return {
            "schema_version": int(raw_payload.get("schema_version") or SCHEMA_VERSION),
            "revision": int(raw_payload.get("revision") or 1),
            "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
            "data": raw_payload.get("data", default),
        }
    return {
        "schema_version": SCHEMA_VERSION,
        "revision": 1,
        "updated_at": utcnow_iso(),
        "data": default if raw_payload is None else raw_payload,
    }


def get_json(backend: StateBackend, namespace: str, default: Any | None = None) -> Any:
    return backend.get_envelope(namespace, default=default).get("data")


def update_json(
    backend: StateBackend,
    namespace: str,
    updater: Callable[[Any], Any],
    default: Any | None = None,
) -> Any:
    """Read-modify-write with a revision check, retried on concurrent updates."""
    default_value = {} if default is None else default
    last_error: Exception | None = None
    for _ in range(4):
        current = backend.get_envelope(namespace, default=default_value)
        updated = updater(current.get("data", default_value))
        try:
            backend.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
            return updated
        except EpicflowStateError as exc:
            last_error = exc
            if _CONFLICT_MARKER not in str(exc):
                raise
            logger.debug("Retrying %s update after revision conflict", namespace)
            time.sleep(0.01)
    raise EpicflowStateError(str(last_error) if last_error else "State update failed.")


class JsonFileBackend:
    """JSON envelopes under ``<root>/state``, serialized by an exclusive lock file."""

    def __init__(self, root: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.root = root.resolve()
        self.state_dir = self.root / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise EpicflowStateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file %s", path)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        staging = path.with_suffix(".json.tmp")
        staging.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(staging, path)

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        _validate_namespace(namespace)
        default_value = {} if default is None else default
        return normalize_envelope(self._read_raw_json(namespace), default_value)

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        _validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise EpicflowStateError(
                    f"{_CONFLICT_MARKER} for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )


class MemoryBackend:
    """Process-local envelopes with the same revision semantics as the file backend."""

    def __init__(self) -> None:
        self._envelopes: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        _validate_namespace(namespace)
        default_value = {} if default is None else default
        with self._lock:
            raw = self._envelopes.get(namespace)
            # Callers mutate the returned data before writing it back.
            raw = json.loads(json.dumps(raw)) if raw is not None else None
        return normalize_envelope(raw, default_value)

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        _validate_namespace(namespace)
        with self._lock:
            current = self._envelopes.get(namespace)
            current_revision = int(current["revision"]) if current else 1
            if expected_revision is not None and expected_revision != current_revision:
                raise EpicflowStateError(
                    f"{_CONFLICT_MARKER} for namespace '{namespace}'."
                )
            self._envelopes[namespace] = {
                "schema_version": SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": utcnow_iso(),
                "data": json.loads(json.dumps(data)),
            }


def create_backend(kind: str, root: Path, *, lock_timeout_seconds: float = 3.0) -> StateBackend:
    if kind == "local":
        return JsonFileBackend(root, lock_timeout_seconds=lock_timeout_seconds)
    if kind == "memory":
        return MemoryBackend()
    raise EpicflowStateError(f"Unsupported state backend: {kind}")
