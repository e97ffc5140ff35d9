from __future__ import annotations

import asyncio

import pytest

from mcp_servers.chrome_bridge.agent_main import build_agent
from mcp_servers.chrome_bridge.config import AgentConfig, AgentPermissions
from mcp_servers.chrome_bridge.errors import ToolExecutionError
from mcp_servers.chrome_bridge.event_store import EventStoreRegistry, _entry
from mcp_servers.chrome_bridge.state_markers import StateMarkers


def _dispatcher(host):
    cfg = AgentConfig(permissions=AgentPermissions(enabled=True), settle_delay=0.0, capture_window=0.0)
    dispatcher, _link = build_agent(cfg, host)
    return dispatcher


def test_capture_records_errors_from_extension_page(fake_host) -> None:
    def _replay(tab_id: str, method: str) -> None:
        # Runtime replays buffered exceptions when it is enabled.
        if method == "Runtime.enable":
            fake_host.listener.on_debugger_event(
                tab_id, "Runtime.exceptionThrown", {"exceptionDetails": {"text": "Uncaught popup"}}
            )
            fake_host.listener.on_debugger_event(
                tab_id, "Runtime.consoleAPICalled", {"type": "log", "args": [{"type": "string", "value": "ready"}]}
            )

    fake_host.on_command = _replay
    fake_host.command_results["Runtime.evaluate"] = {
        "result": {"value": [{"source": "window.__lastError", "text": "probe boom", "stack": None}]}
    }

    async def _main() -> None:
        d = _dispatcher(fake_host)
        res = await d.execute("capture_extension_errors", {"extensionId": "abc", "waitMs": 0})

        assert res["success"] is True
        assert res["url"] == "chrome-extension://abc/popup.html"
        assert [e["payload"]["text"] for e in res["errors"]] == ["Uncaught popup", "probe boom"]
        assert [e["payload"]["text"] for e in res["console"]] == ["ready"]
        assert res["probe"][0]["source"] == "window.__lastError"

        assert fake_host.opened == ["chrome-extension://abc/popup.html"]
        assert fake_host.closed == ["page-1"]
        assert d.ctx.stores.capturing_extension("page-1") is None
        assert not d.ctx.debug.is_attached("page-1")

        # The extension store persists until explicitly cleared.
        stored = await d.execute("get_extension_errors", {"extensionId": "abc"})
        assert len(stored["errors"]) == 2
        cleared = await d.execute("clear_extension_errors", {"extensionId": "abc"})
        assert cleared == {"success": True, "extensionId": "abc", "cleared": 3}
        assert (await d.execute("get_extension_errors", {"extensionId": "abc"}))["errors"] == []

    asyncio.run(_main())


def test_capture_can_keep_page_open_and_skip_probe(fake_host) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host)
        res = await d.execute(
            "capture_extension_errors",
            {"extensionId": "abc", "path": "/options.html", "probe": False, "closePage": False, "waitMs": 0},
        )
        assert res["url"] == "chrome-extension://abc/options.html"
        assert res["probe"] == []
        assert fake_host.closed == []
        assert fake_host.commands_for("Runtime.evaluate") == []
        assert d.ctx.stores.capturing_extension("page-1") is None

    asyncio.run(_main())


def test_capture_releases_listener_and_page_on_failure(fake_host) -> None:
    def _explode(tab_id: str, method: str) -> None:
        if method == "Log.enable":
            raise RuntimeError("browser went away")

    fake_host.on_command = _explode

    async def _main() -> None:
        d = _dispatcher(fake_host)
        res = await d.execute("capture_extension_errors", {"extensionId": "abc", "waitMs": 0})
        assert res == {"error": "browser went away"}
        assert fake_host.closed == ["page-1"]
        assert d.ctx.stores.capturing_extension("page-1") is None

    asyncio.run(_main())


def test_capture_requires_extension_id(fake_host) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host)
        assert await d.execute("capture_extension_errors", {}) == {"error": "Extension ID is required"}
        assert fake_host.opened == []

    asyncio.run(_main())


def test_state_markers_snapshot_and_diff() -> None:
    stores = EventStoreRegistry()
    markers = StateMarkers(stores)
    store = stores.extension("abc")
    store.add(_entry("exception", {"level": "error", "text": "old"}, ts=1))

    snap = markers.snapshot("abc")
    assert snap["key"] == "default" and snap["errors"] == 1

    store.add(_entry("exception", {"level": "error", "text": "new"}))
    store.add(_entry("console", {"level": "log", "text": "hello"}))
    diff = markers.diff("abc")
    assert [e["payload"]["text"] for e in diff["newErrors"]] == ["new"]
    assert [e["payload"]["text"] for e in diff["newConsole"]] == ["hello"]
    assert diff["errorsBefore"] == 1

    # Taking the same marker again overwrites it.
    assert markers.snapshot("abc")["errors"] == 2
    assert markers.diff("abc")["errorsBefore"] == 2

    with pytest.raises(ToolExecutionError, match="No snapshot 'other'"):
        markers.diff("abc", "other")


def test_state_marker_tools(fake_host) -> None:
    async def _main() -> None:
        d = _dispatcher(fake_host)
        assert await d.execute("diff_extension_state", {"extensionId": "abc", "key": "k"}) == {
            "error": "No snapshot 'k' for extension abc"
        }
        res = await d.execute("snapshot_extension_state", {"extensionId": "abc", "key": "k"})
        assert res["success"] is True and res["key"] == "k"
        diff = await d.execute("diff_extension_state", {"extensionId": "abc", "key": "k"})
        assert diff["newErrors"] == [] and diff["newConsole"] == []

    asyncio.run(_main())


def test_extension_store_accumulates_across_captures_until_cleared(fake_host) -> None:
    def _replay(tab_id: str, method: str) -> None:
        if method == "Runtime.enable":
            fake_host.listener.on_debugger_event(
                tab_id, "Runtime.exceptionThrown", {"exceptionDetails": {"text": f"boom {tab_id}"}}
            )

    fake_host.on_command = _replay

    def _texts(entries: list[dict]) -> list[str]:
        return [e["payload"]["text"] for e in entries]

    async def _main() -> None:
        d = _dispatcher(fake_host)
        args = {"extensionId": "abc", "waitMs": 0, "probe": False}

        first = await d.execute("capture_extension_errors", args)
        await asyncio.sleep(0.01)
        second = await d.execute("capture_extension_errors", args)
        assert _texts(first["errors"]) == ["boom page-1"]
        assert _texts(second["errors"]) == ["boom page-2"]
        # Each capture ran its own attach/detach cycle on its own page.
        assert fake_host.attach_calls == 2
        assert fake_host.closed == ["page-1", "page-2"]
        assert fake_host.attached == set()

        stored = await d.execute("get_extension_errors", {"extensionId": "abc"})
        assert _texts(stored["errors"]) == ["boom page-1", "boom page-2"]

        cleared = await d.execute("clear_extension_errors", {"extensionId": "abc"})
        assert cleared["cleared"] == 2
        await asyncio.sleep(0.01)
        third = await d.execute("capture_extension_errors", args)
        assert _texts(third["errors"]) == ["boom page-3"]
        stored = await d.execute("get_extension_errors", {"extensionId": "abc"})
        assert _texts(stored["errors"]) == ["boom page-3"]

    asyncio.run(_main())
