"""Per-tab debugger sessions and the debugger event fan-out.

One `DebugSession` per tab: Detached -> Attaching -> Attached. Domains are enabled
lazily, at most once per session. The manager is the host's event listener: every
debugger event is routed into the tab's store (and the extension store while an
error capture is running), tab close purges per-tab state, an external detach
simply forgets the session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .browser_host import BrowserHost
from .errors import BridgeError, DebugSessionError
from .event_store import EventStoreRegistry

logger = logging.getLogger("mcp.chrome_bridge.debug")

# Domains whose `enable` only turns on event delivery. Fetch/Input/Target/Browser are
# deliberately absent: enabling them changes browser behaviour or does not exist.
AUTO_ENABLE_DOMAINS = frozenset(
    {
        "Accessibility",
        "Animation",
        "CSS",
        "DOM",
        "DOMStorage",
        "Debugger",
        "HeapProfiler",
        "IndexedDB",
        "Inspector",
        "LayerTree",
        "Log",
        "Network",
        "Overlay",
        "Page",
        "Performance",
        "Profiler",
        "Runtime",
        "Security",
        "ServiceWorker",
    }
)

# CSS/Overlay refuse to enable before DOM.
DOMAIN_PREREQUISITES: dict[str, tuple[str, ...]] = {"CSS": ("DOM",), "Overlay": ("DOM",)}


class DebugState(Enum):
    DETACHED = "detached"
    ATTACHING = "attaching"
    ATTACHED = "attached"


@dataclass
class DebugSession:
    tab_id: str
    state: DebugState = DebugState.DETACHED
    enabled_domains: set[str] = field(default_factory=set)
    attach_future: asyncio.Future | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {"tabId": self.tab_id, "state": self.state.value, "enabledDomains": sorted(self.enabled_domains)}


def split_method(method: str) -> tuple[str, str]:
    domain, _, command = (method or "").partition(".")
    if not domain or not command:
        raise DebugSessionError(f"Invalid debugger method: {method!r}")
    return domain, command


class DebugSessionManager:
    def __init__(self, host: BrowserHost, stores: EventStoreRegistry) -> None:
        self.host = host
        self.stores = stores
        self.page_listener: Callable[[str, str | None, str | None], None] | None = None
        self._sessions: dict[str, DebugSession] = {}

    def session(self, tab_id: str) -> DebugSession | None:
        return self._sessions.get(tab_id)

    def is_attached(self, tab_id: str) -> bool:
        sess = self._sessions.get(tab_id)
        return sess is not None and sess.state is DebugState.ATTACHED

    def status(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._sessions.values()]

    # ─────────────────────────────────────────────────────────────────────────
    # Attach / detach
    # ─────────────────────────────────────────────────────────────────────────

    async def attach(self, tab_id: str) -> dict[str, Any]:
        sess = self._sessions.get(tab_id)
        if sess is not None and sess.state is DebugState.ATTACHED:
            return {"success": True, "already": True, "tabId": tab_id}
        if sess is not None and sess.state is DebugState.ATTACHING and sess.attach_future is not None:
            # Join the attach already in progress.
            await asyncio.shield(sess.attach_future)
            return {"success": True, "already": True, "tabId": tab_id}

        sess = DebugSession(tab_id=tab_id, state=DebugState.ATTACHING)
        fut = asyncio.get_running_loop().create_future()
        sess.attach_future = fut
        self._sessions[tab_id] = sess

        try:
            await self.host.attach_debugger(tab_id)
        except Exception as exc:
            if self._sessions.get(tab_id) is sess:
                del self._sessions[tab_id]
            err = exc if isinstance(exc, BridgeError) else DebugSessionError(f"Cannot attach to tab {tab_id}: {exc}")
            fut.set_exception(err)
            # Joiners (if any) observe it; mark retrieved for the no-joiner case.
            fut.exception()
            if err is exc:
                raise
            raise err from exc

        if self._sessions.get(tab_id) is not sess:
            # Tab closed or debugger detached while attaching.
            err = DebugSessionError(f"Tab {tab_id} went away while attaching")
            fut.set_exception(err)
            fut.exception()
            raise err

        sess.state = DebugState.ATTACHED
        self.stores.tab(tab_id)
        fut.set_result(None)
        logger.info("debugger attached tab=%s", tab_id)
        return {"success": True, "tabId": tab_id}

    async def detach(self, tab_id: str) -> dict[str, Any]:
        sess = self._sessions.pop(tab_id, None)
        if sess is None:
            return {"success": True, "tabId": tab_id, "wasAttached": False}
        await self.host.detach_debugger(tab_id)
        logger.info("debugger detached tab=%s", tab_id)
        return {"success": True, "tabId": tab_id, "wasAttached": True}

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def send_command(self, tab_id: str, method: str, params: dict[str, Any] | None = None) -> Any:
        domain, command = split_method(method)
        await self.attach(tab_id)
        sess = self._sessions.get(tab_id)
        if sess is None:
            raise DebugSessionError(f"Debugger is not attached to tab {tab_id}")

        if command == "enable":
            if domain in sess.enabled_domains:
                return {}
            for prereq in DOMAIN_PREREQUISITES.get(domain, ()):
                await self._ensure_domain(sess, prereq)
            sess.enabled_domains.add(domain)
        elif command == "disable":
            sess.enabled_domains.discard(domain)
        else:
            await self._ensure_domain(sess, domain)

        return await self.host.send_debugger_command(tab_id, method, params or {})

    async def ensure_domains(self, tab_id: str, domains: Iterable[str]) -> list[str]:
        """Attach (if needed) and enable the given domains. Returns the enabled set."""
        await self.attach(tab_id)
        sess = self._sessions.get(tab_id)
        if sess is None:
            raise DebugSessionError(f"Debugger is not attached to tab {tab_id}")
        for domain in domains:
            await self._ensure_domain(sess, domain)
        return sorted(sess.enabled_domains)

    async def _ensure_domain(self, sess: DebugSession, domain: str) -> None:
        if domain not in AUTO_ENABLE_DOMAINS or domain in sess.enabled_domains:
            return
        for prereq in DOMAIN_PREREQUISITES.get(domain, ()):
            await self._ensure_domain(sess, prereq)
        # Mark first: a failed enable is not retried within this session.
        sess.enabled_domains.add(domain)
        try:
            await self.host.send_debugger_command(sess.tab_id, f"{domain}.enable", {})
        except BridgeError as exc:
            logger.warning("auto-enable %s failed tab=%s: %s", domain, sess.tab_id, exc.message)

    # ─────────────────────────────────────────────────────────────────────────
    # Host listener
    # ─────────────────────────────────────────────────────────────────────────

    def on_debugger_event(self, tab_id: str, method: str, params: dict[str, Any]) -> None:
        self.stores.ingest(tab_id, method, params)

    def on_debugger_detached(self, tab_id: str, reason: str) -> None:
        if self._sessions.pop(tab_id, None) is not None:
            logger.info("debugger detached externally tab=%s reason=%s", tab_id, reason)

    def on_tab_closed(self, tab_id: str) -> None:
        self._sessions.pop(tab_id, None)
        self.stores.drop_tab(tab_id)

    def on_page_changed(self, tab_id: str, url: str | None, title: str | None) -> None:
        cb = self.page_listener
        if cb is not None:
            cb(tab_id, url, title)
