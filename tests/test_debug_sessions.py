from __future__ import annotations

import asyncio

import pytest

from mcp_servers.chrome_bridge.debug_sessions import DebugSessionManager, DebugState
from mcp_servers.chrome_bridge.errors import DebugSessionError
from mcp_servers.chrome_bridge.event_store import EventStoreRegistry


def _manager(host) -> DebugSessionManager:
    mgr = DebugSessionManager(host, EventStoreRegistry())
    host.set_listener(mgr)
    return mgr


def test_attach_is_idempotent(fake_host) -> None:
    async def _main() -> None:
        mgr = _manager(fake_host)
        assert await mgr.attach("7") == {"success": True, "tabId": "7"}
        assert await mgr.attach("7") == {"success": True, "already": True, "tabId": "7"}
        assert fake_host.attach_calls == 1
        assert mgr.session("7").state is DebugState.ATTACHED

    asyncio.run(_main())


def test_concurrent_attaches_share_one_host_attach(fake_host) -> None:
    async def _main() -> None:
        fake_host.attach_delay = 0.05
        mgr = _manager(fake_host)
        first, second = await asyncio.gather(mgr.attach("7"), mgr.attach("7"))
        assert first == {"success": True, "tabId": "7"}
        assert second["already"] is True
        assert fake_host.attach_calls == 1

    asyncio.run(_main())


def test_failed_attach_leaves_tab_detached(fake_host) -> None:
    async def _main() -> None:
        fake_host.fail_attach = True
        mgr = _manager(fake_host)
        with pytest.raises(DebugSessionError):
            await mgr.attach("7")
        assert mgr.session("7") is None

        fake_host.fail_attach = False
        assert (await mgr.attach("7"))["success"] is True

    asyncio.run(_main())


def test_domain_is_enabled_once_per_session(fake_host) -> None:
    async def _main() -> None:
        mgr = _manager(fake_host)
        await mgr.send_command("7", "Network.getResponseBody", {"requestId": "r1"})
        await mgr.send_command("7", "Network.setCacheDisabled", {"cacheDisabled": True})
        await mgr.send_command("7", "Network.enable")

        assert len(fake_host.commands_for("Network.enable")) == 1
        assert [c[1] for c in fake_host.commands] == [
            "Network.enable",
            "Network.getResponseBody",
            "Network.setCacheDisabled",
        ]

    asyncio.run(_main())


def test_failed_auto_enable_is_not_retried(fake_host) -> None:
    async def _main() -> None:
        fake_host.fail_methods.add("Animation.enable")
        mgr = _manager(fake_host)
        await mgr.send_command("7", "Animation.getPlaybackRate")
        await mgr.send_command("7", "Animation.getPlaybackRate")
        assert len(fake_host.commands_for("Animation.enable")) == 1
        assert len(fake_host.commands_for("Animation.getPlaybackRate")) == 2

    asyncio.run(_main())


def test_disable_forgets_domain_and_prerequisites_come_first(fake_host) -> None:
    async def _main() -> None:
        mgr = _manager(fake_host)
        await mgr.send_command("7", "CSS.getComputedStyleForNode", {"nodeId": 1})
        assert [c[1] for c in fake_host.commands][:2] == ["DOM.enable", "CSS.enable"]

        await mgr.send_command("7", "CSS.disable")
        assert "CSS" not in mgr.session("7").enabled_domains
        await mgr.send_command("7", "CSS.getComputedStyleForNode", {"nodeId": 1})
        assert len(fake_host.commands_for("CSS.enable")) == 2
        assert len(fake_host.commands_for("DOM.enable")) == 1

    asyncio.run(_main())


def test_non_event_domains_are_never_auto_enabled(fake_host) -> None:
    async def _main() -> None:
        mgr = _manager(fake_host)
        await mgr.send_command("7", "Input.dispatchMouseEvent", {"type": "mouseMoved", "x": 1, "y": 1})
        await mgr.send_command("7", "Fetch.continueRequest", {"requestId": "f"})
        assert [c[1] for c in fake_host.commands] == ["Input.dispatchMouseEvent", "Fetch.continueRequest"]

        with pytest.raises(DebugSessionError):
            await mgr.send_command("7", "nodot")

    asyncio.run(_main())


def test_external_detach_forgets_session(fake_host) -> None:
    async def _main() -> None:
        mgr = _manager(fake_host)
        await mgr.send_command("7", "Network.enable")
        fake_host.listener.on_debugger_detached("7", "canceled_by_user")
        assert mgr.session("7") is None
        assert not mgr.is_attached("7")

        # Re-attach starts a fresh session and re-enables on demand.
        await mgr.send_command("7", "Network.getCookies")
        assert len(fake_host.commands_for("Network.enable")) == 2
        assert fake_host.attach_calls == 2

    asyncio.run(_main())


def test_events_fan_out_and_tab_close_purges(fake_host) -> None:
    async def _main() -> None:
        mgr = _manager(fake_host)
        await mgr.attach("7")
        fake_host.listener.on_debugger_event(
            "7", "Runtime.consoleAPICalled", {"type": "log", "args": [{"type": "string", "value": "hi"}]}
        )
        assert len(mgr.stores.tab("7").console_entries()) == 1

        fake_host.listener.on_tab_closed("7")
        assert mgr.session("7") is None
        assert not mgr.stores.has_tab("7")
        # A late event for the closed tab does not bring its store back.
        fake_host.listener.on_debugger_event("7", "Runtime.exceptionThrown", {"exceptionDetails": {"text": "late"}})
        assert not mgr.stores.has_tab("7")

    asyncio.run(_main())


def test_tab_closed_while_attaching_fails_the_attach(fake_host) -> None:
    async def _main() -> None:
        fake_host.attach_delay = 0.05
        mgr = _manager(fake_host)
        task = asyncio.create_task(mgr.attach("7"))
        await asyncio.sleep(0.01)
        fake_host.listener.on_tab_closed("7")
        with pytest.raises(DebugSessionError):
            await task
        assert mgr.session("7") is None

    asyncio.run(_main())


def test_page_changes_are_forwarded(fake_host) -> None:
    seen = []
    mgr = _manager(fake_host)
    mgr.page_listener = lambda tab, url, title: seen.append((tab, url, title))
    fake_host.listener.on_page_changed("7", "https://example.com", "Example")
    assert seen == [("7", "https://example.com", "Example")]
