"""Tree store for live bus state.

Mirrors the realtime-database layout the driver app writes to:

    bus_locations/{school_id}/{bus_id}          -> BusLocation fields
    route_schedules_cache/{school_id}/{bus_id}  -> {"schedules": {...}, "cachedAt": ms}

Writes are scoped to one subtree. ``update`` merges children and, as in the
realtime database, a ``None`` value deletes that child.
"""

from __future__ import annotations

import asyncio
import copy
import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from bus_models import BusLocation

BUS_LOCATIONS_ROOT = "bus_locations"
SCHEDULE_CACHE_ROOT = "route_schedules_cache"


def bus_location_path(school_id: str, bus_id: str) -> str:
    return f"{BUS_LOCATIONS_ROOT}/{school_id}/{bus_id}"


def schedule_cache_path(school_id: str, bus_id: str) -> str:
    return f"{SCHEDULE_CACHE_ROOT}/{school_id}/{bus_id}"


def _split(path: str) -> List[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError("empty tree path")
    return parts


def _prune(value: Any) -> Any:
    """Drop None children recursively; empty containers collapse to None."""
    if isinstance(value, Mapping):
        cleaned = {str(k): _prune(v) for k, v in value.items()}
        cleaned = {k: v for k, v in cleaned.items() if v is not None}
        return cleaned or None
    if isinstance(value, (list, tuple)):
        return [_prune(v) for v in value] or None
    return value


class LocationTreeStore:
    def __init__(self, path: Optional[Path] = None):
        self._path = path
        self._lock = asyncio.Lock()
        self._root: Dict[str, Any] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._root = {}
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
        if isinstance(raw, dict):
            self._root = raw

    def _persist(self) -> None:
        if self._path is None:
            return
        payload = json.dumps(self._root, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(payload)
        tmp_path.replace(self._path)

    def _node(self, parts: List[str]) -> Any:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _parent(self, parts: List[str]) -> Dict[str, Any]:
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        return node

    def _remove(self, parts: List[str]) -> None:
        parent = self._node(parts[:-1]) if len(parts) > 1 else self._root
        if isinstance(parent, dict):
            parent.pop(parts[-1], None)

    async def get(self, path: str) -> Any:
        async with self._lock:
            return copy.deepcopy(self._node(_split(path)))

    async def load_bus(self, school_id: str, bus_id: str) -> BusLocation:
        raw = await self.get(bus_location_path(school_id, bus_id))
        return BusLocation.from_dict(school_id, bus_id, raw)

    async def snapshot(self, path: str) -> Dict[str, Any]:
        """Whole-subtree read; always a dict (empty when nothing is stored)."""
        value = await self.get(path)
        return value if isinstance(value, dict) else {}

    async def set(self, path: str, value: Any) -> None:
        parts = _split(path)
        cleaned = _prune(copy.deepcopy(value))
        async with self._lock:
            if cleaned is None:
                self._remove(parts)
            else:
                self._parent(parts)[parts[-1]] = cleaned
            self._persist()

    async def update(self, path: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Merge ``fields`` into the node at ``path`` and return the resulting node."""
        parts = _split(path)
        async with self._lock:
            parent = self._parent(parts)
            node = parent.get(parts[-1])
            if not isinstance(node, dict):
                node = {}
            for key, value in fields.items():
                cleaned = _prune(copy.deepcopy(value))
                if cleaned is None:
                    node.pop(key, None)
                else:
                    node[key] = cleaned
            parent[parts[-1]] = node
            self._persist()
            return copy.deepcopy(node)


__all__ = [
    "BUS_LOCATIONS_ROOT",
    "LocationTreeStore",
    "SCHEDULE_CACHE_ROOT",
    "bus_location_path",
    "schedule_cache_path",
]
