from __future__ import annotations

import asyncio
from typing import Any

import pytest

from mcp_servers.chrome_bridge.agent_main import build_agent
from mcp_servers.chrome_bridge.agent_tools import NO_PRIVILEGE_TOOLS, NO_TARGET_TOOLS, build_registry
from mcp_servers.chrome_bridge.config import AgentConfig, AgentPermissions
from mcp_servers.chrome_bridge.server.contract import tool_names


def _dispatcher(host, **perms: Any):
    cfg = AgentConfig(permissions=AgentPermissions(**{"enabled": True, **perms}), settle_delay=0.0, capture_window=0.0)
    dispatcher, _link = build_agent(cfg, host)
    return dispatcher


def test_every_advertised_tool_is_routed() -> None:
    registry = build_registry()
    assert set(registry.names()) == tool_names()
    assert NO_PRIVILEGE_TOOLS <= tool_names()
    assert NO_TARGET_TOOLS <= tool_names()


def test_disabled_agent_only_allows_read_only_tools(fake_host) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host, enabled=False)
        assert await d.execute("browser_click", {"selector": "#go"}) == {"error": "Agent control is disabled"}
        assert await d.execute("list_extensions", {}) == {"error": "Agent control is disabled"}
        assert await d.execute("nonexistent", {}) == {"error": "Agent control is disabled"}
        assert fake_host.actions == []

        assert await d.execute("browser_snapshot", {}) == {"success": True, "action": "GET_SNAPSHOT"}
        assert await d.execute("get_page_info", {}) == {"success": True, "action": "GET_PAGE_STATE"}

    asyncio.run(_main())


@pytest.mark.parametrize(
    ("tool", "permission", "message"),
    [
        ("browser_navigate", "navigation", "Navigation not permitted"),
        ("browser_screenshot", "screenshot", "Screenshots not permitted"),
        ("browser_evaluate", "scripts", "Script execution not permitted"),
        ("cdp_send", "scripts", "Script execution not permitted"),
        ("browser_click", "mouse", "Mouse control not permitted"),
        ("browser_type", "keyboard", "Keyboard control not permitted"),
    ],
)
def test_permission_toggles(fake_host, tool: str, permission: str, message: str) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host, **{permission: False})
        assert await d.execute(tool, {"url": "https://example.com", "method": "Page.reload"}) == {"error": message}

    asyncio.run(_main())


def test_missing_tab_and_unknown_tool(fake_host) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host)
        assert await d.execute("no_such_tool", {}) == {"error": "Unknown tool: no_such_tool"}

        fake_host.tab = None
        assert await d.execute("browser_click", {"ref": "e1"}) == {"error": "No active tab"}
        assert await d.execute("no_such_tool", {}) == {"error": "No active tab"}
        # Extension tools do not need a tab.
        assert await d.execute("list_extensions", {}) == []

    asyncio.run(_main())


def test_content_actions_are_shaped_for_the_page(fake_host) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host)
        await d.execute("browser_click", {"ref": "e3"})
        await d.execute("browser_type", {"selector": "#q", "text": "hello"})
        await d.execute("browser_scroll", {"direction": "down"})
        await d.execute("browser_evaluate", {"code": "1 + 1"})
        await d.execute("get_storage", {"type": "session"})
        await d.execute("get_element_html", {"selector": "#a", "outer": False})

        actions = [a for _tab, a in fake_host.actions]
        assert actions[0] == {"type": "CLICK", "selector": "e3", "options": {"ref": "e3"}}
        assert actions[1]["type"] == "TYPE" and actions[1]["selector"] == "#q" and actions[1]["text"] == "hello"
        assert actions[2]["selector"] == "window"
        assert actions[3] == {"type": "EVALUATE", "script": "1 + 1"}
        assert actions[4] == {"type": "GET_STORAGE", "storageType": "session"}
        assert actions[5]["outer"] is False
        assert {tab for tab, _a in fake_host.actions} == {"7"}

    asyncio.run(_main())


def test_host_errors_become_error_results(fake_host) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host)
        assert await d.execute("get_extension_info", {}) == {"error": "Extension ID is required"}
        assert await d.execute("get_extension_info", {"extensionId": "nope"}) == {"error": "Extension nope not found"}
        assert await d.execute("browser_navigate", {}) == {"error": "url is required"}

        async def _boom(tab_id: str, action: dict) -> Any:
            raise RuntimeError("content script gone")

        fake_host.run_content_action = _boom  # type: ignore[method-assign]
        assert await d.execute("browser_snapshot", {}) == {"error": "content script gone"}

    asyncio.run(_main())


def test_extension_management(fake_host) -> None:
    async def _main() -> None:
        fake_host.extensions = [
            {"id": "abc", "name": "Helper", "enabled": True},
            {"id": "off", "name": "Old", "enabled": False},
        ]
        d = _dispatcher(fake_host)
        assert [e["id"] for e in await d.execute("list_extensions", {})] == ["abc", "off"]
        assert [e["id"] for e in await d.execute("list_extensions", {"includeDisabled": False})] == ["abc"]

        res = await d.execute("reload_extension", {"extensionId": "abc"})
        assert res["success"] is True
        assert res["extension"] == {"id": "abc", "name": "Helper", "enabled": True}

        res = await d.execute("disable_extension", {"extensionId": "abc"})
        assert res["extension"]["enabled"] is False

    asyncio.run(_main())


def test_debug_tools_read_tab_stores(fake_host) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host)
        res = await d.execute("cdp_send", {"method": "Network.getCookies"})
        assert res == {"success": True, "method": "Network.getCookies", "result": {}}

        fake_host.listener.on_debugger_event(
            "7", "Runtime.consoleAPICalled", {"type": "error", "args": [{"type": "string", "value": "bad"}]}
        )
        fake_host.listener.on_debugger_event(
            "7", "Network.loadingFailed", {"requestId": "r9", "errorText": "net::ERR_FAILED"}
        )
        logs = await d.execute("get_console_logs", {"level": "error"})
        assert logs["count"] == 1 and logs["entries"][0]["payload"]["text"] == "bad"
        net = await d.execute("get_network_log", {"failedOnly": True})
        assert net["count"] == 1 and net["entries"][0]["payload"]["errorText"] == "net::ERR_FAILED"
        anim = await d.execute("get_animations", {"tabId": "7"})
        assert anim["count"] == 0

        enabled = {c[1] for c in fake_host.commands if c[1].endswith(".enable")}
        assert {"Network.enable", "Runtime.enable", "Log.enable", "Animation.enable"} <= enabled

        assert (await d.execute("debugger_detach", {}))["wasAttached"] is True

    asyncio.run(_main())


def test_worker_replies_in_arrival_order(fake_host) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host)
        sent: list[dict] = []
        done = asyncio.Event()

        async def _send(payload: dict) -> None:
            sent.append(payload)
            if len(sent) == 3:
                done.set()

        worker = asyncio.create_task(d.run(_send))
        d.submit({"type": "tool_call", "id": 1, "tool": "get_page_info", "params": {}})
        d.submit({"type": "tool_call", "id": "x", "tool": "get_page_info", "params": {}})
        d.submit({"type": "tool_call", "id": 2, "tool": "bogus", "params": {}})
        d.submit({"type": "tool_call", "id": 3, "tool": "browser_snapshot"})
        await asyncio.wait_for(done.wait(), 2)
        worker.cancel()

        assert [m["id"] for m in sent] == [1, 2, 3]
        assert sent[1]["result"] == {"error": "Unknown tool: bogus"}
        assert all(m["type"] == "tool_result" for m in sent)

    asyncio.run(_main())


def test_dom_mutations_are_readable_and_throttled(fake_host) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host)
        first = await d.execute("get_dom_mutations", {"requestDocument": True})
        assert first == {"tabId": "7", "count": 0, "entries": []}
        assert [c[1] for c in fake_host.commands] == ["DOM.enable", "DOM.getDocument"]
        assert fake_host.commands_for("DOM.getDocument")[0][2] == {"depth": -1}

        for value in ("a", "b", "c", "d"):
            fake_host.listener.on_debugger_event(
                "7", "DOM.attributeModified", {"nodeId": 4, "name": "class", "value": value}
            )
        fake_host.listener.on_debugger_event("7", "DOM.childNodeInserted", {"parentNodeId": 1, "node": {}})

        res = await d.execute("get_dom_mutations", {"limit": 10})
        assert res["count"] == 4
        assert [e["kind"] for e in res["entries"]] == ["attributeModified"] * 3 + ["childNodeInserted"]
        assert len(fake_host.commands_for("DOM.getDocument")) == 1

    asyncio.run(_main())
