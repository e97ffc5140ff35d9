"""Browser host: the seam between the agent and the browser's APIs.

`BrowserHost` is what the dispatcher, the debug session manager and error capture
talk to (tabs, content-script executor, debugger, extension management).
`CdpBrowserHost` implements it over Chrome's remote debugging WebSocket using
flattened target sessions, so the agent can run as a plain process.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Protocol
from urllib.parse import urlsplit

from .config import (
    CDP_COMMAND_TIMEOUT_S,
    CDP_DISCOVERY_TIMEOUT_S,
    DEFAULT_CDP_URL,
    EXTENSION_TOGGLE_PAUSE_S,
    NAVIGATION_SETTLE_TIMEOUT_S,
)
from .errors import DebugSessionError, HostError, ToolExecutionError
from .page_agent import run_expression
from .peer_channel import _import_websockets

logger = logging.getLogger("mcp.chrome_bridge.host")

EXTENSION_SCHEME = "chrome-extension"
EXTENSION_TARGET_TYPES = {"service_worker", "background_page"}


class HostListener(Protocol):
    def on_debugger_event(self, tab_id: str, method: str, params: dict[str, Any]) -> None: ...

    def on_debugger_detached(self, tab_id: str, reason: str) -> None: ...

    def on_tab_closed(self, tab_id: str) -> None: ...

    def on_page_changed(self, tab_id: str, url: str | None, title: str | None) -> None: ...


class _NullListener:
    def on_debugger_event(self, tab_id: str, method: str, params: dict[str, Any]) -> None:
        return None

    def on_debugger_detached(self, tab_id: str, reason: str) -> None:
        return None

    def on_tab_closed(self, tab_id: str) -> None:
        return None

    def on_page_changed(self, tab_id: str, url: str | None, title: str | None) -> None:
        return None


class BrowserHost(ABC):
    """Browser capabilities the agent needs. Tab ids are opaque strings."""

    def __init__(self) -> None:
        self.listener: HostListener = _NullListener()

    def set_listener(self, listener: HostListener | None) -> None:
        self.listener = listener or _NullListener()

    # Tabs
    @abstractmethod
    async def active_tab(self) -> str | None: ...

    @abstractmethod
    async def navigate(self, tab_id: str, url: str) -> dict[str, Any]: ...

    @abstractmethod
    async def capture_screenshot(self, tab_id: str, *, format: str = "png", quality: int = 90) -> dict[str, Any]: ...

    @abstractmethod
    async def run_content_action(self, tab_id: str, action: dict[str, Any]) -> Any:
        """Hand an action object to the content-script executor of the tab."""

    @abstractmethod
    async def open_page(self, url: str, *, background: bool = True) -> str: ...

    @abstractmethod
    async def close_page(self, tab_id: str) -> None: ...

    # Debugger
    @abstractmethod
    async def attach_debugger(self, tab_id: str) -> None: ...

    @abstractmethod
    async def detach_debugger(self, tab_id: str) -> None: ...

    @abstractmethod
    async def send_debugger_command(self, tab_id: str, method: str, params: dict[str, Any] | None = None) -> Any: ...

    # Extensions
    @abstractmethod
    async def list_extensions(self, *, include_disabled: bool = True) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def get_extension(self, extension_id: str) -> dict[str, Any]: ...

    @abstractmethod
    async def set_extension_enabled(self, extension_id: str, enabled: bool) -> dict[str, Any]: ...

    async def reload_extension(self, extension_id: str) -> dict[str, Any]:
        """Reload by toggling the extension off and on."""
        info = await self.get_extension(extension_id)
        await self.set_extension_enabled(extension_id, False)
        await asyncio.sleep(EXTENSION_TOGGLE_PAUSE_S)
        await self.set_extension_enabled(extension_id, True)
        name = info.get("name") or extension_id
        return {
            "success": True,
            "message": f"Extension {name} ({extension_id}) reloaded",
            "extension": {"id": extension_id, "name": name, "enabled": True},
        }

    async def close(self) -> None:
        return None


def _http_get_json(url: str, timeout: float = CDP_DISCOVERY_TIMEOUT_S) -> Any:
    """Fetch JSON from URL."""
    from urllib.error import URLError
    from urllib.request import urlopen

    try:
        with urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (URLError, OSError, ValueError) as e:
        raise HostError(f"Browser not reachable at {url}: {e}") from e


def _extension_id(url: Any) -> str | None:
    if not isinstance(url, str):
        return None
    parts = urlsplit(url)
    if parts.scheme != EXTENSION_SCHEME or not parts.netloc:
        return None
    return parts.netloc


class CdpBrowserHost(BrowserHost):
    """BrowserHost over a single browser-level CDP WebSocket."""

    def __init__(self, cdp_url: str = DEFAULT_CDP_URL, *, command_timeout: float = CDP_COMMAND_TIMEOUT_S) -> None:
        super().__init__()
        self.cdp_url = cdp_url.rstrip("/")
        self.command_timeout = command_timeout

        self._ws: Any | None = None
        self._reader: asyncio.Task | None = None
        self._next_id = 0
        self._pending: dict[int, asyncio.Future] = {}

        self._targets: dict[str, dict[str, Any]] = {}
        self._hidden: set[str] = set()
        self._exec_sessions: dict[str, str] = {}
        self._debug_sessions: dict[str, str] = {}
        # sessionId -> (tab id, "exec" | "debug")
        self._session_owner: dict[str, tuple[str, str]] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Connection
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        version = await asyncio.to_thread(_http_get_json, f"{self.cdp_url}/json/version")
        ws_url = version.get("webSocketDebuggerUrl") if isinstance(version, dict) else None
        if not isinstance(ws_url, str) or not ws_url:
            raise HostError("Browser did not report a webSocketDebuggerUrl")
        websockets = _import_websockets()
        self._ws = await websockets.connect(ws_url, ping_interval=None, max_size=64_000_000)
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

        await self._call("Target.setDiscoverTargets", {"discover": True})
        res = await self._call("Target.getTargets")
        for info in res.get("targetInfos") or []:
            if isinstance(info, dict) and isinstance(info.get("targetId"), str):
                self._targets[info["targetId"]] = info
        logger.info("cdp host connected: %s (%d targets)", ws_url, len(self._targets))

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        reader = self._reader
        self._reader = None
        if reader is not None:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_pending("Browser connection closed")

    async def _call(self, method: str, params: dict[str, Any] | None = None, *, session_id: str | None = None) -> Any:
        ws = self._ws
        if ws is None:
            raise HostError("Browser connection is not open")
        self._next_id += 1
        msg_id = self._next_id
        msg: dict[str, Any] = {"id": msg_id, "method": method, "params": params or {}}
        if session_id:
            msg["sessionId"] = session_id

        fut = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        try:
            await ws.send(json.dumps(msg))
            reply = await asyncio.wait_for(fut, timeout=self.command_timeout)
        except asyncio.TimeoutError as exc:
            raise HostError(f"{method} timed out") from exc
        finally:
            self._pending.pop(msg_id, None)

        err = reply.get("error")
        if isinstance(err, dict):
            raise HostError(str(err.get("message") or f"{method} failed"))
        result = reply.get("result")
        return result if isinstance(result, dict) else {}

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except Exception:
                    continue
                if not isinstance(msg, dict):
                    continue
                if "id" in msg:
                    fut = self._pending.get(msg["id"])
                    if fut is not None and not fut.done():
                        fut.set_result(msg)
                    continue
                if isinstance(msg.get("method"), str):
                    self._on_event(msg)
        except Exception as exc:  # noqa: BLE001
            logger.warning("cdp host connection ended: %s", exc)
        finally:
            self._fail_pending("Browser connection closed")

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(HostError(reason))

    def _on_event(self, msg: dict[str, Any]) -> None:
        method = msg["method"]
        params = msg.get("params") if isinstance(msg.get("params"), dict) else {}
        session_id = msg.get("sessionId")

        if session_id:
            owner = self._session_owner.get(session_id)
            if owner is not None and owner[1] == "debug":
                self.listener.on_debugger_event(owner[0], method, params)
            return

        if method in {"Target.targetCreated", "Target.targetInfoChanged"}:
            info = params.get("targetInfo")
            if not isinstance(info, dict) or not isinstance(info.get("targetId"), str):
                return
            tid = info["targetId"]
            previous = self._targets.get(tid)
            self._targets[tid] = info
            if (
                info.get("type") == "page"
                and tid not in self._hidden
                and previous is not None
                and previous.get("url") != info.get("url")
            ):
                self.listener.on_page_changed(tid, info.get("url"), info.get("title"))
            return

        if method == "Target.targetDestroyed":
            tid = params.get("targetId")
            if not isinstance(tid, str):
                return
            info = self._targets.pop(tid, None)
            self._hidden.discard(tid)
            self._forget_sessions(tid)
            if info is None or info.get("type") == "page":
                self.listener.on_tab_closed(tid)
            return

        if method == "Target.detachedFromTarget":
            sid = params.get("sessionId")
            owner = self._session_owner.pop(sid, None) if isinstance(sid, str) else None
            if owner is None:
                return
            tab_id, kind = owner
            if kind == "debug":
                self._debug_sessions.pop(tab_id, None)
                self.listener.on_debugger_detached(tab_id, "target_detached")
            else:
                self._exec_sessions.pop(tab_id, None)
            return

    def _forget_sessions(self, tab_id: str) -> None:
        for sessions in (self._exec_sessions, self._debug_sessions):
            sid = sessions.pop(tab_id, None)
            if sid is not None:
                self._session_owner.pop(sid, None)

    async def _attach(self, target_id: str) -> str:
        res = await self._call("Target.attachToTarget", {"targetId": target_id, "flatten": True})
        sid = res.get("sessionId")
        if not isinstance(sid, str) or not sid:
            raise HostError(f"Could not attach to target {target_id}")
        return sid

    async def _exec_session(self, tab_id: str) -> str:
        sid = self._exec_sessions.get(tab_id)
        if sid is None:
            sid = await self._attach(tab_id)
            self._exec_sessions[tab_id] = sid
            self._session_owner[sid] = (tab_id, "exec")
        return sid

    async def _evaluate(self, session_id: str, expression: str) -> Any:
        res = await self._call(
            "Runtime.evaluate",
            {"expression": expression, "awaitPromise": True, "returnByValue": True},
            session_id=session_id,
        )
        details = res.get("exceptionDetails")
        if isinstance(details, dict):
            exc = details.get("exception")
            text = (exc.get("description") if isinstance(exc, dict) else None) or details.get("text")
            raise ToolExecutionError(str(text or "Script failed"))
        value = res.get("result")
        return value.get("value") if isinstance(value, dict) else None

    # ─────────────────────────────────────────────────────────────────────────
    # Tabs
    # ─────────────────────────────────────────────────────────────────────────

    async def active_tab(self) -> str | None:
        # /json/list reports pages most recently focused first.
        listing = await asyncio.to_thread(_http_get_json, f"{self.cdp_url}/json/list")
        for item in listing if isinstance(listing, list) else []:
            if not isinstance(item, dict) or item.get("type") != "page":
                continue
            tid = item.get("id")
            url = str(item.get("url") or "")
            if isinstance(tid, str) and tid not in self._hidden and not url.startswith("devtools://"):
                return tid
        return None

    async def navigate(self, tab_id: str, url: str) -> dict[str, Any]:
        sid = await self._exec_session(tab_id)
        res = await self._call("Page.navigate", {"url": url}, session_id=sid)
        if res.get("errorText"):
            raise ToolExecutionError(str(res["errorText"]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + NAVIGATION_SETTLE_TIMEOUT_S
        while loop.time() < deadline:
            await asyncio.sleep(0.25)
            with contextlib.suppress(HostError, ToolExecutionError):
                if await self._evaluate(sid, "document.readyState") == "complete":
                    break
        return {"success": True, "url": url}

    async def capture_screenshot(self, tab_id: str, *, format: str = "png", quality: int = 90) -> dict[str, Any]:
        fmt = "jpeg" if format in {"jpeg", "jpg"} else "png"
        params: dict[str, Any] = {"format": fmt}
        if fmt == "jpeg":
            params["quality"] = int(quality)
        sid = await self._exec_session(tab_id)
        res = await self._call("Page.captureScreenshot", params, session_id=sid)
        data = res.get("data")
        if not isinstance(data, str) or not data:
            raise ToolExecutionError("Screenshot data is empty")
        return {"success": True, "dataUrl": f"data:image/{fmt};base64,{data}"}

    async def run_content_action(self, tab_id: str, action: dict[str, Any]) -> Any:
        sid = await self._exec_session(tab_id)
        return await self._evaluate(sid, run_expression(action))

    async def open_page(self, url: str, *, background: bool = True) -> str:
        res = await self._call("Target.createTarget", {"url": url, "background": bool(background)})
        tid = res.get("targetId")
        if not isinstance(tid, str) or not tid:
            raise HostError(f"Could not open {url}")
        if background:
            self._hidden.add(tid)
        return tid

    async def close_page(self, tab_id: str) -> None:
        await self._call("Target.closeTarget", {"targetId": tab_id})

    # ─────────────────────────────────────────────────────────────────────────
    # Debugger
    # ─────────────────────────────────────────────────────────────────────────

    async def attach_debugger(self, tab_id: str) -> None:
        if tab_id in self._debug_sessions:
            return
        try:
            sid = await self._attach(tab_id)
        except HostError as exc:
            raise DebugSessionError(f"Cannot attach to tab {tab_id}: {exc.message}") from exc
        self._debug_sessions[tab_id] = sid
        self._session_owner[sid] = (tab_id, "debug")

    async def detach_debugger(self, tab_id: str) -> None:
        sid = self._debug_sessions.pop(tab_id, None)
        if sid is None:
            return
        # Forget first so the resulting detachedFromTarget is not reported as external.
        self._session_owner.pop(sid, None)
        with contextlib.suppress(HostError):
            await self._call("Target.detachFromTarget", {"sessionId": sid})

    async def send_debugger_command(self, tab_id: str, method: str, params: dict[str, Any] | None = None) -> Any:
        sid = self._debug_sessions.get(tab_id)
        if sid is None:
            raise DebugSessionError(f"Debugger is not attached to tab {tab_id}")
        try:
            return await self._call(method, params, session_id=sid)
        except HostError as exc:
            raise DebugSessionError(exc.message) from exc

    # ─────────────────────────────────────────────────────────────────────────
    # Extensions (service worker / background page targets)
    # ─────────────────────────────────────────────────────────────────────────

    async def _extension_targets(self) -> dict[str, dict[str, Any]]:
        res = await self._call("Target.getTargets")
        found: dict[str, dict[str, Any]] = {}
        for info in res.get("targetInfos") or []:
            if not isinstance(info, dict) or info.get("type") not in EXTENSION_TARGET_TYPES:
                continue
            ext_id = _extension_id(info.get("url"))
            if ext_id and ext_id not in found:
                found[ext_id] = info
        return found

    async def _evaluate_in_target(self, target_id: str, expression: str) -> Any:
        sid = await self._attach(target_id)
        try:
            return await self._evaluate(sid, expression)
        finally:
            with contextlib.suppress(HostError):
                await self._call("Target.detachFromTarget", {"sessionId": sid})

    async def _manifest(self, target_id: str) -> dict[str, Any]:
        manifest = await self._evaluate_in_target(target_id, "chrome.runtime.getManifest()")
        return manifest if isinstance(manifest, dict) else {}

    async def list_extensions(self, *, include_disabled: bool = True) -> list[dict[str, Any]]:
        # Disabled extensions have no running targets; include_disabled cannot widen the list.
        out: list[dict[str, Any]] = []
        for ext_id, info in (await self._extension_targets()).items():
            try:
                manifest = await self._manifest(info["targetId"])
            except (HostError, ToolExecutionError):
                manifest = {}
            out.append(
                {
                    "id": ext_id,
                    "name": manifest.get("name") or info.get("title") or ext_id,
                    "version": manifest.get("version"),
                    "enabled": True,
                    "type": "extension",
                    "description": str(manifest.get("description") or "")[:100],
                }
            )
        return out

    async def _find_extension(self, extension_id: str) -> dict[str, Any]:
        info = (await self._extension_targets()).get(extension_id)
        if info is None:
            raise HostError(f"Extension {extension_id} not found")
        return info

    async def get_extension(self, extension_id: str) -> dict[str, Any]:
        info = await self._find_extension(extension_id)
        manifest = await self._manifest(info["targetId"])
        return {
            "id": extension_id,
            "name": manifest.get("name") or info.get("title") or extension_id,
            "version": manifest.get("version"),
            "description": manifest.get("description"),
            "enabled": True,
            "type": "extension",
            "manifestVersion": manifest.get("manifest_version"),
            "permissions": manifest.get("permissions") or [],
            "hostPermissions": manifest.get("host_permissions") or [],
            "homepageUrl": manifest.get("homepage_url"),
            "backgroundUrl": info.get("url"),
        }

    async def set_extension_enabled(self, extension_id: str, enabled: bool) -> dict[str, Any]:
        raise HostError("Enabling or disabling extensions is not available over the remote debugging protocol")

    async def reload_extension(self, extension_id: str) -> dict[str, Any]:
        info = await self._find_extension(extension_id)
        name = info.get("title") or extension_id
        sid = await self._attach(info["targetId"])
        try:
            # The worker goes away while reloading, so the evaluate reply may never arrive.
            with contextlib.suppress(HostError, ToolExecutionError, asyncio.TimeoutError):
                await asyncio.wait_for(self._evaluate(sid, "chrome.runtime.reload()"), timeout=1.0)
        finally:
            with contextlib.suppress(HostError):
                await self._call("Target.detachFromTarget", {"sessionId": sid})
        return {
            "success": True,
            "message": f"Extension {name} ({extension_id}) reloaded",
            "extension": {"id": extension_id, "name": name, "enabled": True},
        }
