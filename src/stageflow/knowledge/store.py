"""Append-only, category-partitioned knowledge log with a rebuildable index.

Each category owns two files under ``<root>/knowledge/``:

* ``<category>.log.jsonl``: one JSON entry per line, never rewritten.
* ``<category>.index.json``: derived token/tag postings, per-entry metadata
  with the byte offset of its log line, plus a header (``count``,
  ``last_id``, ``last_timestamp``, ``log_size``) used to detect drift from
  the log.

The log is the source of truth. Any mismatch between the two is handled by
rebuilding the index from the log. Queries rank from the index alone and
read only the log lines of the entries they return.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from stageflow.errors import MemoryIndexInconsistent, StageflowError
from stageflow.models import MemoryCategory, MemoryEntry, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

TITLE_WEIGHT = 2.0
BODY_WEIGHT = 1.0
TAG_WEIGHT = 3.0
INDEX_VERSION = 2

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9_\-:.]*")


def tokenize(text: str) -> list[str]:
    return [token.strip(".-") for token in _TOKEN_RE.findall(text.lower()) if token.strip(".-")]


@dataclass(slots=True, frozen=True)
class ScoredEntry:
    entry: MemoryEntry
    score: float
    relevance: float


@dataclass(slots=True, frozen=True)
class _Candidate:
    category: MemoryCategory
    entry_id: str
    offset: int
    timestamp: datetime
    score: float
    relevance: float


class KnowledgeStore:
    def __init__(
        self, root: Path, *, half_life_days: float = 30.0, default_limit: int = 10
    ) -> None:
        self.root = root.resolve() / "knowledge"
        self.root.mkdir(parents=True, exist_ok=True)
        self.half_life_days = half_life_days
        self.default_limit = default_limit
        self._locks = {category: threading.Lock() for category in MemoryCategory}
        for category in MemoryCategory:
            self._ensure_index(category)

    def log_path(self, category: MemoryCategory) -> Path:
        return self.root / f"{MemoryCategory(category).value}.log.jsonl"

    def index_path(self, category: MemoryCategory) -> Path:
        return self.root / f"{MemoryCategory(category).value}.index.json"

    # ------------------------------------------------------------------ log

    def _log_size(self, category: MemoryCategory) -> int:
        path = self.log_path(category)
        return path.stat().st_size if path.exists() else 0

    def _scan_log(self, category: MemoryCategory) -> list[tuple[int, MemoryEntry]]:
        """Every readable entry with the byte offset of its line."""

        path = self.log_path(category)
        if not path.exists():
            return []
        records: list[tuple[int, MemoryEntry]] = []
        position = 0
        with path.open("rb") as handle:
            for line_number, raw in enumerate(handle, start=1):
                offset, position = position, position + len(raw)
                line = raw.strip()
                if not line:
                    continue
                try:
                    records.append((offset, MemoryEntry.from_dict(json.loads(line))))
                except (json.JSONDecodeError, KeyError, ValueError):
                    # A torn trailing write is the only expected way to get here.
                    logger.warning(
                        "Skipping unreadable knowledge record %s:%d", path.name, line_number
                    )
        return records

    def _read_log(self, category: MemoryCategory) -> list[MemoryEntry]:
        return [entry for _, entry in self._scan_log(category)]

    def _read_at(self, category: MemoryCategory, offsets: Iterable[int]) -> dict[int, MemoryEntry]:
        loaded: dict[int, MemoryEntry] = {}
        with self.log_path(category).open("rb") as handle:
            for offset in sorted(set(offsets)):
                handle.seek(offset)
                try:
                    loaded[offset] = MemoryEntry.from_dict(json.loads(handle.readline()))
                except (json.JSONDecodeError, KeyError, ValueError) as exc:
                    raise MemoryIndexInconsistent(
                        category, f"no readable record at offset {offset}"
                    ) from exc
        return loaded

    def _append_line(self, category: MemoryCategory, entry: MemoryEntry) -> int:
        """Append ``entry`` and return the byte offset of its line."""

        serialized = json.dumps(entry.to_dict(), ensure_ascii=False, separators=(",", ":"))
        with self.log_path(category).open("a+b") as handle:
            handle.seek(0, os.SEEK_END)
            offset = handle.tell()
            if offset:
                handle.seek(offset - 1)
                if handle.read(1) != b"\n":
                    # Terminate a torn trailing write so it stays a line of its own.
                    handle.write(b"\n")
                    offset += 1
            handle.write(serialized.encode("utf-8") + b"\n")
            handle.flush()
            os.fsync(handle.fileno())
        return offset

    # ---------------------------------------------------------------- index

    @staticmethod
    def _entry_terms(entry: MemoryEntry) -> dict[str, float]:
        weights: dict[str, float] = {}
        for token in tokenize(entry.title):
            weights[token] = weights.get(token, 0.0) + TITLE_WEIGHT
        for token in tokenize(entry.body):
            weights[token] = weights.get(token, 0.0) + BODY_WEIGHT
        for tag in entry.tags:
            for token in {tag.lower(), *tokenize(tag)}:
                weights[token] = weights.get(token, 0.0) + TAG_WEIGHT
        return weights

    @staticmethod
    def _entry_meta(entry: MemoryEntry, offset: int) -> dict[str, Any]:
        return {
            "offset": offset,
            "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
            "author_stage": entry.author_stage,
        }

    def _build_index(
        self, records: list[tuple[int, MemoryEntry]], log_size: int = 0
    ) -> dict[str, Any]:
        terms: dict[str, dict[str, float]] = {}
        tags: dict[str, list[str]] = {}
        entries_meta: dict[str, dict[str, Any]] = {}
        for offset, entry in records:
            entry_id = str(entry.entry_id)
            entries_meta[entry_id] = self._entry_meta(entry, offset)
            for term, weight in self._entry_terms(entry).items():
                terms.setdefault(term, {})[entry_id] = weight
            for tag in entry.tags:
                tags.setdefault(tag.lower(), []).insert(0, entry_id)
        last = records[-1][1] if records else None
        return {
            "version": INDEX_VERSION,
            "count": len(records),
            "last_id": last.entry_id if last else None,
            "last_timestamp": last.timestamp.isoformat() if last and last.timestamp else None,
            "log_size": log_size,
            "entries": entries_meta,
            "terms": terms,
            "tags": tags,
        }

    def _write_index(self, category: MemoryCategory, index: dict[str, Any]) -> None:
        path = self.index_path(category)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(index, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, path)

    def _read_index(self, category: MemoryCategory) -> dict[str, Any] | None:
        path = self.index_path(category)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    def verify_index(self, category: MemoryCategory) -> None:
        """Raise ``MemoryIndexInconsistent`` when the index header disagrees with the log."""

        category = MemoryCategory(category)
        index = self._read_index(category)
        if index is None:
            raise MemoryIndexInconsistent(category, "index missing or unreadable")
        if index.get("version") != INDEX_VERSION:
            raise MemoryIndexInconsistent(category, f"index version {index.get('version')!r}")
        log_size = self._log_size(category)
        if index.get("log_size") != log_size:
            raise MemoryIndexInconsistent(
                category, f"index covers {index.get('log_size')} bytes, log has {log_size}"
            )
        entries = self._read_log(category)
        if int(index.get("count", -1)) != len(entries):
            raise MemoryIndexInconsistent(
                category, f"index counts {index.get('count')} entries, log has {len(entries)}"
            )
        last_id = entries[-1].entry_id if entries else None
        if index.get("last_id") != last_id:
            raise MemoryIndexInconsistent(
                category, f"index ends at {index.get('last_id')!r}, log ends at {last_id!r}"
            )

    def rebuild_index(self, category: MemoryCategory) -> int:
        category = MemoryCategory(category)
        with self._locks[category]:
            records = self._scan_log(category)
            self._write_index(category, self._build_index(records, self._log_size(category)))
        logger.info("Rebuilt %s knowledge index from %d entries", category.value, len(records))
        return len(records)

    def _ensure_index(self, category: MemoryCategory) -> dict[str, Any]:
        try:
            self.verify_index(category)
        except MemoryIndexInconsistent as exc:
            if self.log_path(category).exists():
                logger.warning("%s; rebuilding from log", exc)
            self.rebuild_index(category)
        index = self._read_index(category)
        if index is None:
            raise StageflowError(f"Could not load knowledge index for {category.value}")
        return index

    def _current_index(self, category: MemoryCategory) -> dict[str, Any]:
        """The index, fully checked against the log only when its header looks stale."""

        index = self._read_index(category)
        if (
            index is None
            or index.get("version") != INDEX_VERSION
            or index.get("log_size") != self._log_size(category)
        ):
            return self._ensure_index(category)
        return index

    # ---------------------------------------------------------------- write

    def append(self, entry: MemoryEntry) -> MemoryEntry:
        """Persist ``entry`` and return it with its assigned id and timestamp."""

        category = MemoryCategory(entry.category)
        self._current_index(category)
        with self._locks[category]:
            index = self._read_index(category) or self._build_index([])
            count = int(index.get("count", 0))
            timestamp = entry.timestamp or utcnow()
            last_raw = index.get("last_timestamp")
            if last_raw:
                last_timestamp = parse_timestamp(last_raw)
                if timestamp <= last_timestamp:
                    timestamp = last_timestamp + timedelta(microseconds=1)
            stored = replace(
                entry,
                category=category,
                timestamp=timestamp,
                entry_id=f"{category.value}-{count + 1:06d}",
            )
            offset = self._append_line(category, stored)

            entry_id = str(stored.entry_id)
            index["count"] = count + 1
            index["last_id"] = entry_id
            index["last_timestamp"] = timestamp.isoformat()
            index["log_size"] = self._log_size(category)
            index.setdefault("entries", {})[entry_id] = self._entry_meta(stored, offset)
            postings = index.setdefault("terms", {})
            for term, weight in self._entry_terms(stored).items():
                postings.setdefault(term, {})[entry_id] = weight
            tag_postings = index.setdefault("tags", {})
            for tag in stored.tags:
                tag_postings.setdefault(tag.lower(), []).insert(0, entry_id)
            self._write_index(category, index)
        logger.debug("Appended knowledge entry %s", stored.entry_id)
        return stored

    def supersede(self, old_id: str, entry: MemoryEntry) -> MemoryEntry:
        """Append a correction of ``old_id``; the original stays in the log."""

        original = self.get(old_id)
        related = tuple(dict.fromkeys((*entry.related, original.entry_id)))
        return self.append(replace(entry, category=original.category, related=related))

    # ----------------------------------------------------------------- read

    def get(self, entry_id: str) -> MemoryEntry:
        category_name = entry_id.rsplit("-", 1)[0]
        try:
            category = MemoryCategory(category_name)
        except ValueError as exc:
            raise StageflowError(f"Unknown knowledge entry: {entry_id}") from exc
        meta = self._current_index(category).get("entries", {}).get(entry_id)
        if meta is None:
            raise StageflowError(f"Unknown knowledge entry: {entry_id}")
        offset = int(meta["offset"])
        return self._read_at(category, [offset])[offset]

    def entries(self, category: MemoryCategory) -> list[MemoryEntry]:
        return self._read_log(MemoryCategory(category))

    def _decay(self, age: timedelta) -> float:
        age_days = max(age.total_seconds(), 0.0) / 86400.0
        return math.pow(0.5, age_days / self.half_life_days)

    def query(
        self,
        text: str = "",
        *,
        category: MemoryCategory | None = None,
        tags: Iterable[str] | None = None,
        stage: str | None = None,
        recency_window: timedelta | None = None,
        limit: int | None = None,
        as_of: datetime | None = None,
    ) -> list[MemoryEntry]:
        scored = self.query_scored(
            text,
            category=category,
            tags=tags,
            stage=stage,
            recency_window=recency_window,
            limit=limit,
            as_of=as_of,
        )
        return [item.entry for item in scored]

    def query_scored(
        self,
        text: str = "",
        *,
        category: MemoryCategory | None = None,
        tags: Iterable[str] | None = None,
        stage: str | None = None,
        recency_window: timedelta | None = None,
        limit: int | None = None,
        as_of: datetime | None = None,
    ) -> list[ScoredEntry]:
        """Rank entries by relevance times recency decay.

        Only entries appended at or before ``as_of`` are eligible. With no
        query text every eligible entry has relevance 1, so ordering is
        purely by recency.
        """

        reference = parse_timestamp(as_of) if as_of else utcnow()
        query_terms = tokenize(text)
        tag_filter = {tag.lower() for tag in tags or ()}
        categories = [MemoryCategory(category)] if category else list(MemoryCategory)
        limit = self.default_limit if limit is None else limit

        candidates: list[_Candidate] = []
        for cat in categories:
            index = self._current_index(cat)
            postings: dict[str, dict[str, float]] = index.get("terms", {})
            tagged: set[str] | None = None
            if tag_filter:
                tag_postings: dict[str, list[str]] = index.get("tags", {})
                tagged = {entry_id for tag in tag_filter for entry_id in tag_postings.get(tag, ())}
            for entry_id, meta in index.get("entries", {}).items():
                if tagged is not None and entry_id not in tagged:
                    continue
                if not meta.get("timestamp"):
                    continue
                timestamp = parse_timestamp(meta["timestamp"])
                if timestamp > reference:
                    continue
                if recency_window is not None and reference - timestamp > recency_window:
                    continue
                if stage is not None and meta.get("author_stage") != stage:
                    continue
                if query_terms:
                    relevance = sum(
                        postings.get(term, {}).get(entry_id, 0.0) for term in query_terms
                    )
                    if relevance <= 0:
                        continue
                else:
                    relevance = 1.0
                candidates.append(
                    _Candidate(
                        category=cat,
                        entry_id=entry_id,
                        offset=int(meta["offset"]),
                        timestamp=timestamp,
                        score=relevance * self._decay(reference - timestamp),
                        relevance=relevance,
                    )
                )

        candidates.sort(key=lambda item: (-item.score, -item.timestamp.timestamp(), item.entry_id))
        if limit > 0:
            candidates = candidates[:limit]

        loaded: dict[MemoryCategory, dict[int, MemoryEntry]] = {}
        for cat in {item.category for item in candidates}:
            loaded[cat] = self._read_at(
                cat, [item.offset for item in candidates if item.category is cat]
            )
        return [
            ScoredEntry(
                entry=loaded[item.category][item.offset],
                score=item.score,
                relevance=item.relevance,
            )
            for item in candidates
        ]
