"""Durable document store for rider and route-schedule documents.

Collections are addressed by slash paths (``schooldetails/{school}/students``)
and hold JSON documents keyed by id. The whole store is persisted as a single
JSON file written atomically; pass ``path=None`` for a purely in-memory store.
"""

from __future__ import annotations

import asyncio
import copy
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from tracking_config import STORE_BATCH_CEILING


class BatchLimitError(ValueError):
    """Raised when a write batch holds more operations than the store accepts."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def riders_collection(school_id: str) -> str:
    return f"schooldetails/{school_id}/students"


def schedules_collection(school_id: str) -> str:
    return f"schooldetails/{school_id}/route_schedules"


class WriteBatch:
    """Collects set/update operations and applies them all-or-nothing on commit."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._ops: List[Tuple[str, str, str, Dict[str, Any]]] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> "WriteBatch":
        self._ops.append(("set", collection, str(doc_id), dict(data)))
        return self

    def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> "WriteBatch":
        self._ops.append(("update", collection, str(doc_id), dict(fields)))
        return self

    async def commit(self) -> int:
        if self._committed:
            raise RuntimeError("batch already committed")
        if len(self._ops) > self._store.max_batch_ops:
            raise BatchLimitError(
                f"batch has {len(self._ops)} operations; limit is {self._store.max_batch_ops}"
            )
        applied = await self._store._apply_ops(self._ops)
        self._committed = True
        return applied


class DocumentStore:
    def __init__(self, path: Optional[Path] = None, *, max_batch_ops: int = STORE_BATCH_CEILING):
        self._path = path
        self.max_batch_ops = max_batch_ops
        self._lock = asyncio.Lock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._collections.clear()
        if self._path is None:
            return
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[store] failed to load {self._path}: {exc}")
            return
        collections = raw.get("collections", {}) if isinstance(raw, dict) else {}
        for name, docs in collections.items():
            if not isinstance(docs, dict):
                continue
            self._collections[name] = {
                str(doc_id): doc for doc_id, doc in docs.items() if isinstance(doc, dict)
            }

    def _serialise_state(self) -> str:
        data = {"collections": self._collections, "updated_at": _now_iso()}
        return json.dumps(data, indent=2, sort_keys=True)

    def _persist(self) -> None:
        if self._path is None:
            return
        payload = self._serialise_state()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(payload)
        tmp_path.replace(self._path)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            doc = self._collections.get(collection, {}).get(str(doc_id))
            return copy.deepcopy(doc) if doc is not None else None

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        async with self._lock:
            self._collections.setdefault(collection, {})[str(doc_id)] = copy.deepcopy(dict(data))
            self._persist()

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        """Merge ``fields`` into an existing document; KeyError if it does not exist."""
        async with self._lock:
            doc = self._collections.get(collection, {}).get(str(doc_id))
            if doc is None:
                raise KeyError(f"{collection}/{doc_id}")
            doc.update(copy.deepcopy(dict(fields)))
            self._persist()

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._lock:
            removed = self._collections.get(collection, {}).pop(str(doc_id), None)
            if removed is not None:
                self._persist()
            return removed is not None

    async def query(
        self, collection: str, filters: Optional[Mapping[str, Any]] = None
    ) -> List[Tuple[str, Dict[str, Any]]]:
        """Return ``(doc_id, document)`` pairs whose fields equal every filter value.

        A missing field only matches a ``None`` filter value.
        """
        filters = dict(filters or {})
        async with self._lock:
            results: List[Tuple[str, Dict[str, Any]]] = []
            for doc_id, doc in self._collections.get(collection, {}).items():
                if all(doc.get(key) == value for key, value in filters.items()):
                    results.append((doc_id, copy.deepcopy(doc)))
            return results

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def _apply_ops(self, ops: List[Tuple[str, str, str, Dict[str, Any]]]) -> int:
        async with self._lock:
            for kind, collection, doc_id, _ in ops:
                if kind == "update" and doc_id not in self._collections.get(collection, {}):
                    raise KeyError(f"{collection}/{doc_id}")
            for kind, collection, doc_id, data in ops:
                docs = self._collections.setdefault(collection, {})
                if kind == "set":
                    docs[doc_id] = copy.deepcopy(data)
                else:
                    docs[doc_id].update(copy.deepcopy(data))
            if ops:
                self._persist()
            return len(ops)


__all__ = [
    "BatchLimitError",
    "DocumentStore",
    "WriteBatch",
    "riders_collection",
    "schedules_collection",
]
