"""Named snapshots of an extension's error store, diffed later by key."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import ToolExecutionError
from .event_store import EventStoreRegistry, _now_ms


@dataclass(frozen=True, slots=True)
class StateMarker:
    extension_id: str
    key: str
    taken_at: int
    error_count: int
    console_count: int
    last_ts: int | None


class StateMarkers:
    """Markers live for the process lifetime; taking one again overwrites it."""

    def __init__(self, stores: EventStoreRegistry) -> None:
        self.stores = stores
        self._markers: dict[str, StateMarker] = {}

    @staticmethod
    def _key(extension_id: str, key: str | None) -> str:
        return f"{extension_id}:{key or 'default'}"

    def snapshot(self, extension_id: str, key: str | None = None) -> dict[str, Any]:
        snap = self.stores.extension(extension_id).snapshot()
        entries = snap["errors"] + snap["console"]
        marker = StateMarker(
            extension_id=extension_id,
            key=key or "default",
            taken_at=_now_ms(),
            error_count=len(snap["errors"]),
            console_count=len(snap["console"]),
            last_ts=max((e["ts"] for e in entries), default=None),
        )
        self._markers[self._key(extension_id, key)] = marker
        return {
            "success": True,
            "extensionId": extension_id,
            "key": marker.key,
            "takenAt": marker.taken_at,
            "errors": marker.error_count,
            "console": marker.console_count,
        }

    def diff(self, extension_id: str, key: str | None = None) -> dict[str, Any]:
        marker = self._markers.get(self._key(extension_id, key))
        if marker is None:
            raise ToolExecutionError(f"No snapshot '{key or 'default'}' for extension {extension_id}")
        snap = self.stores.extension(extension_id).snapshot(since_ts=marker.taken_at)
        return {
            "success": True,
            "extensionId": extension_id,
            "key": marker.key,
            "since": marker.taken_at,
            "newErrors": snap["errors"],
            "newConsole": snap["console"],
            "errorsBefore": marker.error_count,
            "consoleBefore": marker.console_count,
        }
