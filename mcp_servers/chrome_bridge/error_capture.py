"""Extension error capture.

Opens an extension page in the background, attaches the debugger, and records
everything it logs or throws during a short observation window into the
extension's persistent error store.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from .browser_host import EXTENSION_SCHEME, BrowserHost
from .config import DEFAULT_CAPTURE_WINDOW_S, PAGE_SETTLE_DELAY_S
from .debug_sessions import DebugSessionManager
from .errors import BridgeError, ToolExecutionError
from .event_store import EventStoreRegistry, _entry, _now_ms

logger = logging.getLogger("mcp.chrome_bridge.debug")

CAPTURE_DOMAINS = ("Runtime", "Log")

# Reads the error markers pages commonly leave behind.
PROBE_EXPRESSION = r"""
(() => {
  const out = [];
  const push = (source, value) => {
    if (value === undefined || value === null) return;
    const text = value && value.message ? String(value.message) : String(value);
    out.push({ source, text: text.slice(0, 500), stack: value && value.stack ? String(value.stack).slice(0, 1000) : null });
  };
  try { push('window.__lastError', window.__lastError); } catch (e) {}
  try {
    const list = window.__errors;
    if (Array.isArray(list)) list.slice(-50).forEach(e => push('window.__errors', e));
  } catch (e) {}
  try {
    if (typeof chrome !== 'undefined' && chrome.runtime && chrome.runtime.lastError) {
      push('chrome.runtime.lastError', chrome.runtime.lastError);
    }
  } catch (e) {}
  return out;
})()
"""


def extension_page_url(extension_id: str, path: str) -> str:
    return f"{EXTENSION_SCHEME}://{extension_id}/{(path or '').lstrip('/')}"


class ErrorCapture:
    def __init__(
        self,
        host: BrowserHost,
        debug: DebugSessionManager,
        stores: EventStoreRegistry,
        *,
        settle_delay: float = PAGE_SETTLE_DELAY_S,
        window: float = DEFAULT_CAPTURE_WINDOW_S,
    ) -> None:
        self.host = host
        self.debug = debug
        self.stores = stores
        self.settle_delay = settle_delay
        self.window = window

    @contextlib.asynccontextmanager
    async def _extension_page(self, url: str, *, close: bool) -> AsyncIterator[str]:
        tab_id = await self.host.open_page(url, background=True)
        try:
            yield tab_id
        finally:
            if close:
                with contextlib.suppress(BridgeError):
                    await self.debug.detach(tab_id)
                with contextlib.suppress(BridgeError):
                    await self.host.close_page(tab_id)

    @contextlib.asynccontextmanager
    async def _listening(self, tab_id: str, extension_id: str) -> AsyncIterator[None]:
        self.stores.begin_capture(tab_id, extension_id)
        try:
            yield
        finally:
            self.stores.end_capture(tab_id)

    async def capture(
        self,
        extension_id: str,
        *,
        path: str = "popup.html",
        wait_s: float | None = None,
        probe: bool = True,
        close_page: bool = True,
    ) -> dict[str, Any]:
        window = self.window if wait_s is None else max(0.0, float(wait_s))
        url = extension_page_url(extension_id, path)
        since = _now_ms()
        probed: list[dict[str, Any]] = []

        async with self._extension_page(url, close=close_page) as tab_id:
            await asyncio.sleep(self.settle_delay)
            await self.debug.attach(tab_id)
            # Listen before enabling: Runtime/Log replay buffered entries on enable.
            async with self._listening(tab_id, extension_id):
                await self.debug.ensure_domains(tab_id, CAPTURE_DOMAINS)
                await asyncio.sleep(window)
                if probe:
                    probed = await self._probe(tab_id, extension_id)

        store = self.stores.extension(extension_id)
        snap = store.snapshot(since_ts=since)
        logger.info(
            "capture ext=%s url=%s errors=%d console=%d probed=%d",
            extension_id,
            url,
            len(snap["errors"]),
            len(snap["console"]),
            len(probed),
        )
        return {
            "success": True,
            "extensionId": extension_id,
            "url": url,
            "errors": snap["errors"],
            "console": snap["console"],
            "probe": probed,
        }

    async def _probe(self, tab_id: str, extension_id: str) -> list[dict[str, Any]]:
        try:
            res = await self.debug.send_command(
                tab_id,
                "Runtime.evaluate",
                {"expression": PROBE_EXPRESSION, "returnByValue": True},
            )
        except BridgeError as exc:
            logger.warning("capture probe failed ext=%s: %s", extension_id, exc.message)
            return []

        value = (res.get("result") or {}).get("value") if isinstance(res, dict) else None
        if not isinstance(value, list):
            return []
        store = self.stores.extension(extension_id)
        found: list[dict[str, Any]] = []
        for item in value:
            if not isinstance(item, dict):
                continue
            payload = {
                "level": "error",
                "text": str(item.get("text") or ""),
                "source": item.get("source"),
                "stack": item.get("stack"),
            }
            store.add(_entry("exception", payload))
            found.append(payload)
        return found


def require_extension_id(params: dict[str, Any]) -> str:
    ext_id = params.get("extensionId")
    if not isinstance(ext_id, str) or not ext_id.strip():
        raise ToolExecutionError("Extension ID is required")
    return ext_id.strip()
