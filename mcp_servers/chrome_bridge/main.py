"""
MCP relay: line-delimited JSON-RPC on stdio in front of a browser agent.

Each `tools/call` is forwarded to the browser agent over the peer channel
(see relay.py / peer_channel.py) and the agent's result is rendered as text.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from .config import CHANNEL_START_DELAY_S, EOF_POLL_INTERVAL_S, RelayConfig
from .errors import TransportParseError
from .peer_channel import PeerChannel
from .relay import RelayCore
from .server.contract import DEFAULT_PROTOCOL_VERSION, initialize_result, select_protocol, tools_list
from .server.redaction import redact_jsonrpc_for_log, redact_tool_arguments
from .server.types import ToolResult

logger = logging.getLogger("mcp.chrome_bridge")

__all__ = ["DEFAULT_PROTOCOL_VERSION", "TransportFront", "main"]


def _write_message(payload: dict[str, Any]) -> None:
    """Write JSON-RPC message to stdout."""
    data = json.dumps(payload, ensure_ascii=False)
    sys.stdout.buffer.write((data + "\n").encode())
    sys.stdout.buffer.flush()


def parse_line(line: bytes | str) -> dict[str, Any]:
    """Decode one input line into a JSON-RPC object or raise TransportParseError."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        msg = json.loads(line)
    except ValueError as exc:
        raise TransportParseError(f"Malformed input line: {exc}") from exc
    if not isinstance(msg, dict):
        raise TransportParseError("Malformed input line: expected a JSON object")
    return msg


class TransportFront:
    """Terminates the client protocol and hands tool calls to the RelayCore."""

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        write: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.config = config or RelayConfig.from_env()
        self.relay = RelayCore(self.config)
        self.channel: PeerChannel | None = None
        self._write = write or _write_message
        self._tasks: set[asyncio.Task] = set()
        self._channel_task: asyncio.Task | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Input
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_line(self, line: bytes | str) -> None:
        if not line or not line.strip():
            return
        try:
            message = parse_line(line)
        except TransportParseError as exc:
            logger.warning("%s", exc.message)
            return
        if os.environ.get("CHROME_BRIDGE_TRACE"):
            logger.info("recv %s", redact_jsonrpc_for_log(message))
        await self.dispatch(message)

    async def serve(self, read_line: Callable[[], Awaitable[bytes]]) -> None:
        """Read lines until EOF, then keep serving while a peer connection is active."""
        while True:
            line = await read_line()
            if not line:
                break
            await self.handle_line(line)

        logger.info("stdin closed")
        while self.channel is not None and self.channel.active:
            await asyncio.sleep(EOF_POLL_INTERVAL_S)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.shutdown()

    async def shutdown(self) -> None:
        task = self._channel_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self.channel is not None:
            await self.channel.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    async def dispatch(self, message: dict[str, Any]) -> None:
        """Dispatch incoming JSON-RPC message to appropriate handler."""
        method = message.get("method")
        request_id = message.get("id")
        has_id = request_id is not None
        params = message.get("params")
        if not isinstance(params, dict):
            params = {}

        if method == "initialize":
            self.handle_initialize(request_id, params, reply=has_id)
            return
        if isinstance(method, str) and method.startswith("notifications/"):
            return
        if not has_id:
            logger.debug("ignoring notification method=%s", method)
            return

        if method == "tools/list":
            self._reply(request_id, {"tools": tools_list()})
        elif method == "tools/call":
            name = params.get("name")
            arguments = params.get("arguments")
            task = asyncio.get_running_loop().create_task(
                self.handle_call_tool(request_id, name if isinstance(name, str) else "", arguments)
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif method == "ping":
            self._reply(request_id, {})
        elif method == "resources/list":
            self._reply(request_id, {"resources": []})
        elif method == "prompts/list":
            self._reply(request_id, {"prompts": []})
        else:
            self._write(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Unknown method: {method}"},
                }
            )

    def handle_initialize(self, request_id: Any, params: dict[str, Any], *, reply: bool = True) -> None:
        """Reply to the handshake and start the peer channel (first time only)."""
        if self.channel is None:
            self.config = self.config.with_options(params.get("relayOptions"))
            self.relay.config = self.config
            self.channel = PeerChannel(self.relay, self.config)
            self._channel_task = asyncio.get_running_loop().create_task(self._start_channel())

        if reply:
            self._reply(request_id, initialize_result(select_protocol(params.get("protocolVersion"))))

    async def _start_channel(self) -> None:
        await asyncio.sleep(CHANNEL_START_DELAY_S)
        assert self.channel is not None
        try:
            await self.channel.start()
        except Exception:
            logger.exception("peer_channel_start_failed")

    def _log_call(self, name: str, arguments: dict[str, Any]) -> None:
        """Log tool call with sanitized arguments."""
        logger.info("tool=%s args=%s", name, redact_tool_arguments(name, arguments))

    async def handle_call_tool(self, request_id: Any, name: str, arguments: Any) -> None:
        args = arguments if isinstance(arguments, dict) else {}
        self._log_call(name, args)

        if not name:
            result = ToolResult.error("Missing tool name")
        else:
            try:
                raw = await self.relay.submit(name, args)
            except Exception as exc:
                logger.exception("tool_call_failed")
                raw = {"error": str(exc)}
            result = ToolResult.from_agent_result(raw)

        self._reply(request_id, {"content": result.to_content_list(), "isError": result.is_error})

    def _reply(self, request_id: Any, result: dict[str, Any]) -> None:
        self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def status(self) -> dict[str, Any]:
        return {**self.relay.status(), **(self.channel.status() if self.channel is not None else {})}


async def _stdin_line() -> bytes:
    return await asyncio.to_thread(sys.stdin.buffer.readline)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MCP relay for the Chrome bridge agent")
    parser.add_argument("--host", help="Peer channel host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Peer channel port (default: 3052)")
    parser.add_argument("--call-timeout", type=float, help="Per-call timeout in seconds (default: 30)")
    parser.add_argument("--ping-interval", type=float, help="Liveness ping interval in seconds (default: 20)")
    parser.add_argument("--no-auto-reconnect", action="store_true", help="Do not re-dial after a dropped connection")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the relay."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    args = _parse_args(argv)
    config = RelayConfig.from_env().with_options(
        {
            "host": args.host,
            "port": args.port,
            "callTimeout": args.call_timeout,
            "pingInterval": args.ping_interval,
            **({"autoReconnect": False} if args.no_auto_reconnect else {}),
        }
    )

    async def _run() -> None:
        front = TransportFront(config)
        await front.serve(_stdin_line)

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_run())


if __name__ == "__main__":
    main()
