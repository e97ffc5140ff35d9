from __future__ import annotations

import asyncio
from typing import Any

import pytest

from mcp_servers.chrome_bridge.browser_host import BrowserHost
from mcp_servers.chrome_bridge.errors import DebugSessionError, HostError


class FakeBrowserHost(BrowserHost):
    """In-memory BrowserHost that records what the agent asked for."""

    def __init__(self) -> None:
        super().__init__()
        self.tab: str | None = "7"
        self.attach_delay = 0.0
        self.fail_attach = False
        self.fail_methods: set[str] = set()
        self.command_results: dict[str, Any] = {}
        self.content_results: dict[str, Any] = {}
        self.extensions: list[dict[str, Any]] = []

        self.attach_calls = 0
        self.attached: set[str] = set()
        self.commands: list[tuple[str, str, dict[str, Any]]] = []
        self.actions: list[tuple[str, dict[str, Any]]] = []
        self.navigations: list[tuple[str, str]] = []
        self.opened: list[str] = []
        self.closed: list[str] = []
        self.on_open: Any = None
        self.on_command: Any = None

    def commands_for(self, method: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [c for c in self.commands if c[1] == method]

    async def active_tab(self) -> str | None:
        return self.tab

    async def navigate(self, tab_id: str, url: str) -> dict[str, Any]:
        self.navigations.append((tab_id, url))
        return {"success": True, "url": url}

    async def capture_screenshot(self, tab_id: str, *, format: str = "png", quality: int = 90) -> dict[str, Any]:
        return {"success": True, "dataUrl": f"data:image/{format};base64,AAAA"}

    async def run_content_action(self, tab_id: str, action: dict[str, Any]) -> Any:
        self.actions.append((tab_id, action))
        return self.content_results.get(action["type"], {"success": True, "action": action["type"]})

    async def open_page(self, url: str, *, background: bool = True) -> str:
        self.opened.append(url)
        tab_id = f"page-{len(self.opened)}"
        if self.on_open is not None:
            self.on_open(tab_id)
        return tab_id

    async def close_page(self, tab_id: str) -> None:
        self.closed.append(tab_id)

    async def attach_debugger(self, tab_id: str) -> None:
        self.attach_calls += 1
        if self.attach_delay:
            await asyncio.sleep(self.attach_delay)
        if self.fail_attach:
            raise DebugSessionError(f"Cannot attach to tab {tab_id}")
        self.attached.add(tab_id)

    async def detach_debugger(self, tab_id: str) -> None:
        self.attached.discard(tab_id)

    async def send_debugger_command(self, tab_id: str, method: str, params: dict[str, Any] | None = None) -> Any:
        if tab_id not in self.attached:
            raise DebugSessionError(f"Debugger is not attached to tab {tab_id}")
        self.commands.append((tab_id, method, dict(params or {})))
        if self.on_command is not None:
            self.on_command(tab_id, method)
        if method in self.fail_methods:
            raise DebugSessionError(f"{method} failed")
        return self.command_results.get(method, {})

    async def list_extensions(self, *, include_disabled: bool = True) -> list[dict[str, Any]]:
        return [dict(e) for e in self.extensions]

    async def get_extension(self, extension_id: str) -> dict[str, Any]:
        for ext in self.extensions:
            if ext["id"] == extension_id:
                return dict(ext)
        raise HostError(f"Extension {extension_id} not found")

    async def set_extension_enabled(self, extension_id: str, enabled: bool) -> dict[str, Any]:
        for ext in self.extensions:
            if ext["id"] == extension_id:
                ext["enabled"] = enabled
                return {"success": True, "extension": dict(ext)}
        raise HostError(f"Extension {extension_id} not found")


@pytest.fixture
def fake_host() -> FakeBrowserHost:
    return FakeBrowserHost()
