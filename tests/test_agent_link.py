from __future__ import annotations

import asyncio
import json
import socket

import pytest

from mcp_servers.chrome_bridge.agent_link import LinkStatus
from mcp_servers.chrome_bridge.agent_main import build_agent
from mcp_servers.chrome_bridge.config import AgentConfig, AgentPermissions


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _websockets():
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")
    return websockets


def test_reconnect_attempts_are_bounded(fake_host) -> None:
    _websockets()

    async def _main() -> None:
        cfg = AgentConfig(
            relay_port=_free_port(),
            reconnect_delay=0.01,
            max_reconnect_attempts=2,
            connect_timeout=0.5,
        )
        _dispatcher, link = build_agent(cfg, fake_host)
        await asyncio.wait_for(link.run(), timeout=5)
        assert link.connect_attempts == 3
        assert link.status is LinkStatus.DISCONNECTED
        assert link.last_error

    asyncio.run(_main())


def test_no_auto_reconnect_tries_once(fake_host) -> None:
    _websockets()

    async def _main() -> None:
        cfg = AgentConfig(relay_port=_free_port(), auto_reconnect=False, connect_timeout=0.5)
        _dispatcher, link = build_agent(cfg, fake_host)
        await asyncio.wait_for(link.run(), timeout=5)
        assert link.connect_attempts == 1

    asyncio.run(_main())


def test_dial_register_and_answer_tool_calls(fake_host) -> None:
    websockets = _websockets()

    async def _main() -> None:
        port = _free_port()
        replies: list[dict] = []
        registered = asyncio.Event()
        done = asyncio.Event()

        async def _relay(ws) -> None:  # type: ignore[no-untyped-def]
            hello = json.loads(await ws.recv())
            assert hello == {"type": "register", "client": "chrome-bridge"}
            await ws.send(json.dumps({"type": "registered"}))
            registered.set()
            await ws.send(json.dumps({"type": "tool_call", "id": 1, "tool": "browser_click", "params": {"ref": "e1"}}))
            await ws.send(json.dumps({"type": "tool_call", "id": 2, "tool": "get_page_info", "params": {}}))
            while len(replies) < 2:
                msg = json.loads(await ws.recv())
                if msg.get("type") == "tool_result":
                    replies.append(msg)
            done.set()
            await ws.wait_closed()

        server = await websockets.serve(_relay, "127.0.0.1", port, ping_interval=None)
        cfg = AgentConfig(relay_port=port, ping_interval=60.0, permissions=AgentPermissions(enabled=False))
        _dispatcher, link = build_agent(cfg, fake_host)
        task = asyncio.create_task(link.run())
        try:
            await asyncio.wait_for(done.wait(), timeout=5)
            assert link.status is LinkStatus.CONNECTED
            # Replies keep arrival order; control-gated tools fail without touching the page.
            assert replies[0] == {"type": "tool_result", "id": 1, "result": {"error": "Agent control is disabled"}}
            assert replies[1]["id"] == 2
            assert replies[1]["result"] == {"success": True, "action": "GET_PAGE_STATE"}
            assert fake_host.actions == [("7", {"type": "GET_PAGE_STATE"})]
        finally:
            await link.close()
            await asyncio.wait_for(task, 5)
            server.close()
            await server.wait_closed()

    asyncio.run(_main())


def test_page_changed_is_sent_when_connected(fake_host) -> None:
    websockets = _websockets()

    async def _main() -> None:
        port = _free_port()
        seen = asyncio.Queue()

        async def _relay(ws) -> None:  # type: ignore[no-untyped-def]
            await ws.recv()
            await ws.send(json.dumps({"type": "registered"}))
            async for raw in ws:
                await seen.put(json.loads(raw))

        server = await websockets.serve(_relay, "127.0.0.1", port, ping_interval=None)
        cfg = AgentConfig(relay_port=port, ping_interval=60.0)
        _dispatcher, link = build_agent(cfg, fake_host)
        task = asyncio.create_task(link.run())
        try:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 3
            while not link.connected:
                assert loop.time() < deadline
                await asyncio.sleep(0.01)
            fake_host.listener.on_page_changed("7", "https://example.com/next", "Next")
            msg = await asyncio.wait_for(seen.get(), 3)
            assert msg == {"type": "page_changed", "url": "https://example.com/next", "title": "Next"}
        finally:
            await link.close()
            await asyncio.wait_for(task, 5)
            server.close()
            await server.wait_closed()

    asyncio.run(_main())


class _RecordingSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def close(self) -> None:
        return None


def _click(call_id: int) -> dict:
    return {"type": "tool_call", "id": call_id, "tool": "browser_click", "params": {"ref": "e1"}}


def test_queued_calls_are_dropped_when_the_relay_connection_goes_away(fake_host) -> None:
    async def _main() -> None:
        cfg = AgentConfig(ping_interval=60.0, permissions=AgentPermissions(enabled=True))
        dispatcher, link = build_agent(cfg, fake_host)
        old, new = _RecordingSocket(), _RecordingSocket()

        link._activate(old)
        await link._on_frame(old, _click(1))
        await link._on_frame(old, _click(2))
        link._release("relay closed")
        assert dispatcher.queued == 0

        link._activate(new)
        await link._on_frame(new, {"type": "tool_call", "id": 1, "tool": "get_page_info", "params": {}})
        worker = asyncio.create_task(dispatcher.run(link.send, accepts=link._is_current))
        try:
            await asyncio.wait_for(dispatcher._queue.join(), 2)
        finally:
            worker.cancel()
            link._stop_liveness()

        # The old clicks never ran; the new connection only sees its own call.
        assert fake_host.actions == [("7", {"type": "GET_PAGE_STATE"})]
        assert old.sent == []
        assert new.sent == [{"type": "tool_result", "id": 1, "result": {"success": True, "action": "GET_PAGE_STATE"}}]

    asyncio.run(_main())


def test_result_of_a_running_call_is_not_sent_to_a_newer_connection(fake_host) -> None:
    async def _main() -> None:
        cfg = AgentConfig(ping_interval=60.0, permissions=AgentPermissions(enabled=True))
        dispatcher, link = build_agent(cfg, fake_host)
        old, new = _RecordingSocket(), _RecordingSocket()
        started = asyncio.Event()
        gate = asyncio.Event()

        async def _slow(tab_id: str, action: dict) -> dict:
            started.set()
            await gate.wait()
            return {"success": True}

        fake_host.run_content_action = _slow  # type: ignore[method-assign]
        worker = asyncio.create_task(dispatcher.run(link.send, accepts=link._is_current))
        try:
            link._activate(old)
            await link._on_frame(old, _click(1))
            await asyncio.wait_for(started.wait(), 2)

            link._release("relay closed")
            link._activate(new)
            gate.set()
            await asyncio.wait_for(dispatcher._queue.join(), 2)
        finally:
            worker.cancel()
            link._stop_liveness()

        assert old.sent == []
        assert new.sent == []

    asyncio.run(_main())
