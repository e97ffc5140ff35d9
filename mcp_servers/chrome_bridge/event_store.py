"""Bounded event stores fed by the debugger event stream.

- `TabEventStore`: per-tab console/network/animation/dom ring buffers. Dropped when
  the tab closes.
- `ExtensionErrorStore`: per-extension errors/console. Survives attach/detach and
  tab close; only an explicit clear empties it.
- `EventStoreRegistry`: owns both kinds and mirrors console/exception entries of tabs
  under error capture into the owning extension's store.

Every stored entry has the shape `{"ts": <ms>, "kind": <str>, "payload": {...}}`.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import DEFAULT_EXTENSION_STORE_SIZE, DEFAULT_TAB_STORE_SIZE
from .server.redaction import redact_url

logger = logging.getLogger("mcp.chrome_bridge.debug")

ANIMATION_EVENTS = {
    "Animation.animationCreated",
    "Animation.animationStarted",
    "Animation.animationUpdated",
    "Animation.animationCanceled",
}

DOM_MUTATION_EVENTS = {
    "DOM.attributeModified",
    "DOM.attributeRemoved",
    "DOM.characterDataModified",
    "DOM.childNodeCountUpdated",
    "DOM.childNodeInserted",
    "DOM.childNodeRemoved",
}

CONSOLE_KINDS = frozenset({"console", "exception", "log"})


def _now_ms() -> int:
    return int(time.time() * 1000)


def _str(x: Any, *, max_len: int = 500) -> str:
    try:
        s = str(x)
    except Exception:
        s = "<unstringifiable>"
    if len(s) <= max_len:
        return s
    return s[:max_len] + f"… <truncated len={len(s)}>"


def _remote_obj_to_str(obj: Any) -> str:
    """Best-effort conversion of CDP RemoteObject to short string."""
    if not isinstance(obj, dict):
        return _str(obj)
    for k in ("value", "unserializableValue", "description"):
        if k in obj and obj.get(k) is not None:
            return _str(obj.get(k))
    typ = obj.get("type")
    subtype = obj.get("subtype")
    return _str(f"<{typ}{('/' + subtype) if subtype else ''}>")


def _stack_top(params: dict[str, Any]) -> dict[str, Any] | None:
    """Extract the top stack frame (if present) from CDP event params."""
    st = params.get("stackTrace")
    if not isinstance(st, dict):
        return None
    frames = st.get("callFrames")
    if not isinstance(frames, list) or not frames or not isinstance(frames[0], dict):
        return None
    f0 = frames[0]
    out: dict[str, Any] = {}
    if isinstance(f0.get("url"), str) and f0.get("url"):
        out["url"] = redact_url(f0["url"])
    if isinstance(f0.get("functionName"), str) and f0.get("functionName"):
        out["function"] = _str(f0["functionName"], max_len=120)
    if isinstance(f0.get("lineNumber"), int):
        out["line"] = int(f0["lineNumber"])
    if isinstance(f0.get("columnNumber"), int):
        out["col"] = int(f0["columnNumber"])
    return out or None


def _entry(kind: str, payload: dict[str, Any], ts: int | None = None) -> dict[str, Any]:
    return {"ts": ts if ts is not None else _now_ms(), "kind": kind, "payload": payload}


def is_error_entry(entry: dict[str, Any]) -> bool:
    if entry.get("kind") == "exception":
        return True
    payload = entry.get("payload")
    return isinstance(payload, dict) and payload.get("level") == "error"


class ChangeThrottle:
    """Suppress bursts: more than `max_changes` changes per key within `window_s` are dropped."""

    max_keys = 2000

    def __init__(self, max_changes: int = 3, window_s: float = 0.5, *, clock: Callable[[], float] = time.monotonic):
        self.max_changes = max(1, int(max_changes))
        self.window_s = max(0.0, float(window_s))
        self.suppressed = 0
        self._clock = clock
        self._seen: dict[Any, deque[float]] = {}

    def allow(self, key: Any) -> bool:
        now = self._clock()
        stamps = self._seen.get(key)
        if stamps is None:
            if len(self._seen) >= self.max_keys:
                self._prune(now)
            stamps = self._seen[key] = deque()
        while stamps and now - stamps[0] > self.window_s:
            stamps.popleft()
        if len(stamps) >= self.max_changes:
            self.suppressed += 1
            return False
        stamps.append(now)
        return True

    def _prune(self, now: float) -> None:
        for key in [k for k, v in self._seen.items() if not v or now - v[-1] > self.window_s]:
            self._seen.pop(key, None)
        if len(self._seen) >= self.max_keys:
            self._seen.clear()


@dataclass(slots=True)
class TabEventStore:
    """Bounded event buffers for one tab."""

    tab_id: str
    max_events: int = DEFAULT_TAB_STORE_SIZE
    max_request_map: int = 800
    throttle: ChangeThrottle = field(default_factory=ChangeThrottle)

    console: deque = field(init=False)
    network: deque = field(init=False)
    animation: deque = field(init=False)
    dom: deque = field(init=False)

    # requestId -> in-flight request record
    _req: dict[str, dict[str, Any]] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.console = deque(maxlen=self.max_events)
        self.network = deque(maxlen=self.max_events)
        self.animation = deque(maxlen=self.max_events)
        self.dom = deque(maxlen=self.max_events)

    def ingest(self, method: str, params: dict[str, Any] | None) -> dict[str, Any] | None:
        """Ingest one CDP event. Returns the console-ish entry it produced (if any)."""
        if not isinstance(method, str) or not method:
            return None
        if not isinstance(params, dict):
            params = {}

        if method == "Runtime.consoleAPICalled":
            level = params.get("type")
            if level == "warning":
                level = "warn"
            level = level if isinstance(level, str) else "log"
            args = params.get("args")
            text = " ".join(_remote_obj_to_str(a) for a in args[:8]) if isinstance(args, list) else ""
            payload: dict[str, Any] = {"level": level, "text": text}
            top = _stack_top(params)
            if top:
                payload["stackTop"] = top
            entry = _entry("console", payload)
            self.console.append(entry)
            return entry

        if method == "Runtime.exceptionThrown":
            details = params.get("exceptionDetails")
            if not isinstance(details, dict):
                details = {}
            msg = details.get("text") or "Uncaught exception"
            exception = details.get("exception")
            if isinstance(exception, dict):
                msg = exception.get("description") or exception.get("value") or msg
            payload = {"level": "error", "text": _str(msg, max_len=1200)}
            if isinstance(details.get("url"), str) and details.get("url"):
                payload["url"] = redact_url(details["url"])
            if isinstance(details.get("lineNumber"), int):
                payload["line"] = details["lineNumber"]
            if isinstance(details.get("columnNumber"), int):
                payload["col"] = details["columnNumber"]
            top = _stack_top(details)
            if top:
                payload["stackTop"] = top
            entry = _entry("exception", payload)
            self.console.append(entry)
            return entry

        if method == "Log.entryAdded":
            raw = params.get("entry")
            if not isinstance(raw, dict):
                return None
            level = raw.get("level") if isinstance(raw.get("level"), str) else "info"
            if level == "warning":
                level = "warn"
            payload = {"level": level, "text": _str(raw.get("text") or "", max_len=1200)}
            if isinstance(raw.get("source"), str):
                payload["source"] = raw["source"]
            if isinstance(raw.get("url"), str) and raw.get("url"):
                payload["url"] = redact_url(raw["url"])
            entry = _entry("log", payload)
            self.console.append(entry)
            return entry

        if method.startswith("Network."):
            self._ingest_network(method, params)
            return None

        if method in ANIMATION_EVENTS:
            self._ingest_animation(method, params)
            return None

        if method in DOM_MUTATION_EVENTS:
            node = params.get("nodeId", params.get("parentNodeId"))
            if self.throttle.allow(node):
                self.dom.append(_entry(method.split(".", 1)[1], dict(params)))
            return None

        return None

    # ─────────────────────────────────────────────────────────────────────────
    # Network (correlated by requestId)
    # ─────────────────────────────────────────────────────────────────────────

    def _remember_request(self, request_id: str, record: dict[str, Any]) -> None:
        self._req[request_id] = record
        if len(self._req) > self.max_request_map:
            drop = len(self._req) - self.max_request_map
            for k in list(self._req.keys())[:drop]:
                self._req.pop(k, None)

    def _finish_request(self, request_id: str, ts: int, **extra: Any) -> None:
        record = self._req.pop(request_id, None) or {"requestId": request_id}
        started = record.get("startTs")
        if isinstance(started, int):
            record["durationMs"] = max(0, ts - started)
        record.update(extra)
        self.network.append(_entry("request", record, ts))

    def _ingest_network(self, method: str, params: dict[str, Any]) -> None:
        request_id = params.get("requestId")
        if not isinstance(request_id, str) or not request_id:
            return
        ts = _now_ms()

        if method == "Network.requestWillBeSent":
            redirect = params.get("redirectResponse")
            if isinstance(redirect, dict) and request_id in self._req:
                self._finish_request(request_id, ts, status=redirect.get("status"), ok=True, redirected=True)
            req = params.get("request")
            if not isinstance(req, dict):
                req = {}
            record: dict[str, Any] = {"requestId": request_id, "startTs": ts}
            if isinstance(req.get("url"), str):
                record["url"] = redact_url(req["url"])
            if isinstance(req.get("method"), str):
                record["method"] = req["method"]
            if isinstance(params.get("type"), str):
                record["type"] = params["type"]
            self._remember_request(request_id, record)
            return

        if method == "Network.responseReceived":
            record = self._req.get(request_id)
            resp = params.get("response")
            if record is None or not isinstance(resp, dict):
                return
            if isinstance(resp.get("status"), int):
                record["status"] = resp["status"]
            if isinstance(resp.get("mimeType"), str) and resp.get("mimeType"):
                record["mimeType"] = _str(resp["mimeType"], max_len=120)
            return

        if method == "Network.loadingFinished":
            if request_id not in self._req:
                return
            status = self._req[request_id].get("status")
            extra: dict[str, Any] = {"ok": not (isinstance(status, int) and status >= 400)}
            if isinstance(params.get("encodedDataLength"), (int, float)):
                extra["encodedDataLength"] = params["encodedDataLength"]
            self._finish_request(request_id, ts, **extra)
            return

        if method == "Network.loadingFailed":
            extra = {"ok": False, "errorText": _str(params.get("errorText") or "")}
            if isinstance(params.get("blockedReason"), str) and params.get("blockedReason"):
                extra["blockedReason"] = params["blockedReason"]
            if params.get("canceled") is True:
                extra["canceled"] = True
            self._finish_request(request_id, ts, **extra)
            return

    def _ingest_animation(self, method: str, params: dict[str, Any]) -> None:
        kind = method.split(".", 1)[1]
        anim = params.get("animation")
        payload: dict[str, Any] = {}
        if isinstance(anim, dict):
            for key in ("id", "name", "type", "playState", "playbackRate", "startTime"):
                if key in anim:
                    payload[key] = anim[key]
            source = anim.get("source")
            if isinstance(source, dict):
                for key in ("duration", "delay", "iterations", "easing"):
                    if key in source:
                        payload[key] = source[key]
        elif "id" in params:
            payload["id"] = params["id"]
        self.animation.append(_entry(kind, payload))

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def console_entries(self, *, limit: int | None = None, level: str | None = None) -> list[dict[str, Any]]:
        items = list(self.console)
        if level:
            items = [e for e in items if e["payload"].get("level") == level]
        return items[-limit:] if limit else items

    def network_entries(self, *, limit: int | None = None, failed_only: bool = False) -> list[dict[str, Any]]:
        items = list(self.network)
        if failed_only:
            items = [e for e in items if not e["payload"].get("ok", True)]
        return items[-limit:] if limit else items

    def animation_entries(self, *, limit: int | None = None) -> list[dict[str, Any]]:
        items = list(self.animation)
        return items[-limit:] if limit else items

    def dom_entries(self, *, limit: int | None = None) -> list[dict[str, Any]]:
        items = list(self.dom)
        return items[-limit:] if limit else items

    @property
    def in_flight(self) -> int:
        return len(self._req)


@dataclass(slots=True)
class ExtensionErrorStore:
    """Errors and console output attributed to one extension."""

    extension_id: str
    max_events: int = DEFAULT_EXTENSION_STORE_SIZE

    errors: deque = field(init=False)
    console: deque = field(init=False)

    def __post_init__(self) -> None:
        self.errors = deque(maxlen=self.max_events)
        self.console = deque(maxlen=self.max_events)

    def add(self, entry: dict[str, Any]) -> None:
        if is_error_entry(entry):
            self.errors.append(entry)
        else:
            self.console.append(entry)

    def snapshot(self, *, limit: int | None = None, since_ts: int | None = None) -> dict[str, Any]:
        errors = list(self.errors)
        console = list(self.console)
        if since_ts is not None:
            errors = [e for e in errors if e["ts"] >= since_ts]
            console = [e for e in console if e["ts"] >= since_ts]
        if limit:
            errors = errors[-limit:]
            console = console[-limit:]
        return {"extensionId": self.extension_id, "errors": errors, "console": console}

    def clear(self) -> int:
        n = len(self.errors) + len(self.console)
        self.errors.clear()
        self.console.clear()
        return n


class EventStoreRegistry:
    """All stores of one agent process, plus the tab -> extension capture mapping."""

    def __init__(
        self,
        *,
        tab_size: int = DEFAULT_TAB_STORE_SIZE,
        extension_size: int = DEFAULT_EXTENSION_STORE_SIZE,
        mutation_max_changes: int = 3,
        mutation_window: float = 0.5,
    ) -> None:
        self.tab_size = tab_size
        self.extension_size = extension_size
        self.mutation_max_changes = mutation_max_changes
        self.mutation_window = mutation_window
        self._tabs: dict[str, TabEventStore] = {}
        self._extensions: dict[str, ExtensionErrorStore] = {}
        self._capturing: dict[str, str] = {}

    def tab(self, tab_id: str) -> TabEventStore:
        store = self._tabs.get(tab_id)
        if store is None:
            store = TabEventStore(
                tab_id=tab_id,
                max_events=self.tab_size,
                throttle=ChangeThrottle(self.mutation_max_changes, self.mutation_window),
            )
            self._tabs[tab_id] = store
        return store

    def has_tab(self, tab_id: str) -> bool:
        return tab_id in self._tabs

    def drop_tab(self, tab_id: str) -> None:
        self._tabs.pop(tab_id, None)
        self._capturing.pop(tab_id, None)

    def extension(self, extension_id: str) -> ExtensionErrorStore:
        store = self._extensions.get(extension_id)
        if store is None:
            store = ExtensionErrorStore(extension_id=extension_id, max_events=self.extension_size)
            self._extensions[extension_id] = store
        return store

    def clear_extension(self, extension_id: str) -> int:
        store = self._extensions.get(extension_id)
        return store.clear() if store is not None else 0

    def begin_capture(self, tab_id: str, extension_id: str) -> None:
        self._capturing[tab_id] = extension_id

    def end_capture(self, tab_id: str) -> None:
        self._capturing.pop(tab_id, None)

    def capturing_extension(self, tab_id: str) -> str | None:
        return self._capturing.get(tab_id)

    def ingest(self, tab_id: str, method: str, params: dict[str, Any] | None) -> None:
        store = self._tabs.get(tab_id)
        if store is None:
            # Late event for a tab that was never attached or is already gone.
            logger.debug("event %s for unknown tab=%s dropped", method, tab_id)
            return
        entry = store.ingest(method, params)
        if entry is None or entry["kind"] not in CONSOLE_KINDS:
            return
        ext_id = self._capturing.get(tab_id)
        if ext_id is not None:
            self.extension(ext_id).add(entry)
