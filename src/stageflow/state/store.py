from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from stageflow.errors import StateStoreError
from stageflow.models import RegistryKind, utcnow_iso

logger = logging.getLogger(__name__)


class StateStore:
    """Namespaced JSON documents with revision-checked updates.

    Every document is stored as an envelope
    ``{"schema_version", "revision", "updated_at", "data"}``. A namespace
    holds either one document, or one document per ``key`` under a
    directory of the same name, each with its own lock and revision.
    """

    NAMESPACES = {kind.value for kind in RegistryKind} | {"runs", "batches", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, root: Path, *, lock_timeout_seconds: float = 5.0) -> None:
        self.root = root.resolve()
        self.state_dir = self.root / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _stem(self, namespace: str, key: str | None) -> tuple[Path, str]:
        if key is None:
            return self.state_dir, namespace
        if not key:
            raise StateStoreError(f"Empty document key in namespace '{namespace}'.")
        return self.state_dir / namespace, quote(key, safe="")

    def _file(self, namespace: str, key: str | None = None) -> Path:
        directory, stem = self._stem(namespace, key)
        return directory / f"{stem}.json"

    def _lock_file(self, namespace: str, key: str | None = None) -> Path:
        directory, stem = self._stem(namespace, key)
        return directory / f".{stem}.lock"

    @contextmanager
    def _state_lock(self, namespace: str, key: str | None = None):
        lock_file = self._lock_file(namespace, key)
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    label = namespace if key is None else f"{namespace}/{key}"
                    raise StateStoreError(
                        f"Timed out waiting for state lock on '{label}'."
                    ) from exc
                time.sleep(0.01)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str, key: str | None = None) -> Any:
        path = self._file(namespace, key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable state document %s", path)
            return None

    def _write_raw_json(self, namespace: str, payload: Any, key: str | None = None) -> None:
        path = self._file(namespace, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(serialized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": data,
        }

    def get_envelope(
        self, namespace: str, default: Any | None = None, *, key: str | None = None
    ) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace, key), default_value)

    def get_json(
        self, namespace: str, default: Any | None = None, *, key: str | None = None
    ) -> Any:
        return self.get_envelope(namespace, default=default, key=key).get("data")

    def keys(self, namespace: str) -> list[str]:
        """Keys of the per-key documents stored under ``namespace``."""

        self._validate_namespace(namespace)
        directory = self.state_dir / namespace
        if not directory.is_dir():
            return []
        return sorted(unquote(path.name[: -len(".json")]) for path in directory.glob("*.json"))

    def set_json(
        self,
        namespace: str,
        data: Any,
        expected_revision: int | None = None,
        *,
        key: str | None = None,
    ) -> None:
        self._validate_namespace(namespace)
        with self._state_lock(namespace, key):
            current = self.get_envelope(namespace, default={}, key=key)
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
                key,
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(8):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(
                    namespace, updated, expected_revision=int(current.get("revision", 1))
                )
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")
