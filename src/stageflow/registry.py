"""Key-addressed project fact catalogs read and updated by stages."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from stageflow.models import RegistryKind
from stageflow.state.store import StateStore

logger = logging.getLogger(__name__)


class ContextRegistry:
    """One state document per ``(kind, key)``.

    Each record carries its own lock and revision, so writers to different
    keys never wait on each other and the last writer to a key wins.
    """

    def __init__(self, state: StateStore) -> None:
        self.state = state

    def get(self, kind: RegistryKind, key: str) -> dict[str, Any] | None:
        if not key:
            return None
        record = self.state.get_json(RegistryKind(kind).value, default={}, key=key)
        return dict(record) if isinstance(record, dict) and record else None

    def keys(self, kind: RegistryKind) -> list[str]:
        return self.state.keys(RegistryKind(kind).value)

    def prefix(self, kind: RegistryKind, prefix: str = "") -> dict[str, dict[str, Any]]:
        records: dict[str, dict[str, Any]] = {}
        for key in self.keys(kind):
            if not key.startswith(prefix):
                continue
            record = self.get(kind, key)
            if record is not None:
                records[key] = record
        return records

    def merge(self, kind: RegistryKind, records: Mapping[str, Mapping[str, Any]]) -> None:
        """Add or replace each record by key; untouched keys are left as they are."""

        namespace = RegistryKind(kind).value
        for key in sorted(records):
            self.state.set_json(namespace, dict(records[key]), key=str(key))
            logger.debug("Registry %s updated key %s", namespace, key)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {kind.value: self.prefix(kind) for kind in RegistryKind}
