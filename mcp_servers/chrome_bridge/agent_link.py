"""Agent side of the peer channel.

Dials the relay (or, in listen mode, accepts the relay's connection), registers,
keeps the link alive, and hands `tool_call` messages to the dispatcher.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any

from . import protocol
from .config import MISSED_PONGS_BEFORE_CLOSE, AgentConfig
from .dispatcher import AgentDispatcher
from .errors import PeerDisconnectError
from .peer_channel import Liveness, _import_websockets, _trace_enabled

logger = logging.getLogger("mcp.chrome_bridge.agent")


class LinkStatus(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


class AgentLink:
    def __init__(self, config: AgentConfig, dispatcher: AgentDispatcher) -> None:
        self.config = config
        self.dispatcher = dispatcher
        self.status = LinkStatus.DISCONNECTED
        self.connect_attempts = 0
        self.last_error: str | None = None

        self._ws: Any | None = None
        self._liveness: Liveness | None = None
        self._server: Any | None = None
        self._worker: asyncio.Task | None = None
        self._closing = False
        self._stopped: asyncio.Event | None = None
        self._notify_tasks: set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def status_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "url": self.config.relay_url,
            "mode": "listen" if self.config.listen else "dial",
            "queued": self.dispatcher.queued,
            **({"lastError": self.last_error} if self.last_error else {}),
        }

    def _set_status(self, status: LinkStatus) -> None:
        if status is not self.status:
            logger.info("agent link %s -> %s", self.status.value, status.value)
            self.status = status

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Serve until closed or, when dialing, until reconnect attempts run out."""
        self._stopped = asyncio.Event()
        self._worker = asyncio.get_running_loop().create_task(
            self.dispatcher.run(self.send, accepts=self._is_current)
        )
        try:
            if self.config.listen:
                await self._listen()
            else:
                await self._dial_loop()
        finally:
            worker = self._worker
            self._worker = None
            if worker is not None:
                worker.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await worker
            self._set_status(LinkStatus.DISCONNECTED)

    async def close(self) -> None:
        self._closing = True
        self._stop_liveness()
        ws = self._ws
        self._ws = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        srv = self._server
        self._server = None
        if srv is not None:
            srv.close()
            with contextlib.suppress(Exception):
                await srv.wait_closed()
        if self._stopped is not None:
            self._stopped.set()

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, payload: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise PeerDisconnectError("Not connected to relay")
        try:
            await ws.send(protocol.encode(payload))
        except Exception as exc:
            raise PeerDisconnectError(f"Send failed: {exc}") from exc

    def notify_page_changed(self, tab_id: str, url: str | None, title: str | None) -> None:
        """Fire-and-forget page_changed for top-frame navigations."""
        if self._ws is None:
            return
        task = asyncio.get_running_loop().create_task(self._send_quietly(protocol.page_changed(url, title)))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _send_quietly(self, payload: dict[str, Any]) -> None:
        try:
            await self.send(payload)
        except PeerDisconnectError as exc:
            logger.debug("%s dropped: %s", payload.get("type"), exc.message)

    # ─────────────────────────────────────────────────────────────────────────
    # Dial mode
    # ─────────────────────────────────────────────────────────────────────────

    async def _dial_loop(self) -> None:
        attempts = 0
        while not self._closing:
            registered = False
            try:
                registered = await self._connect_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.last_error = str(exc) or type(exc).__name__
                logger.warning("agent link connect to %s failed: %s", self.config.relay_url, self.last_error)

            if self._closing or not self.config.auto_reconnect:
                return
            attempts = 1 if registered else attempts + 1
            if attempts > self.config.max_reconnect_attempts:
                logger.error("agent link: giving up after %d reconnect attempts", attempts - 1)
                return
            self._set_status(LinkStatus.RECONNECTING)
            logger.info(
                "agent link: reconnecting in %.1fs (attempt %d/%d)",
                self.config.reconnect_delay,
                attempts,
                self.config.max_reconnect_attempts,
            )
            await asyncio.sleep(self.config.reconnect_delay)

    async def _connect_once(self) -> bool:
        websockets = _import_websockets()
        self.connect_attempts += 1
        async with websockets.connect(
            self.config.relay_url,
            ping_interval=None,
            open_timeout=self.config.connect_timeout,
            max_size=64_000_000,
        ) as ws:
            await ws.send(protocol.encode(protocol.register(self.config.client_name)))
            await asyncio.wait_for(self._await_registered(ws), timeout=self.config.connect_timeout)
            self._activate(ws)
            try:
                await self._pump(ws)
            finally:
                if self._ws is ws:
                    self._release("relay closed")
            return True

    async def _await_registered(self, ws: Any) -> None:
        while True:
            msg = protocol.decode(await ws.recv())
            if msg is None:
                continue
            if msg["type"] == protocol.REGISTERED:
                return
            if msg["type"] == protocol.PING:
                await ws.send(protocol.encode(protocol.pong()))

    # ─────────────────────────────────────────────────────────────────────────
    # Listen mode
    # ─────────────────────────────────────────────────────────────────────────

    async def _listen(self) -> None:
        websockets = _import_websockets()
        self._server = await websockets.serve(
            self._handle_connection,
            self.config.relay_host,
            int(self.config.relay_port),
            max_size=64_000_000,
            ping_interval=None,
        )
        logger.info("agent link listening on %s", self.config.relay_url)
        assert self._stopped is not None
        await self._stopped.wait()

    async def _handle_connection(self, ws) -> None:  # type: ignore[no-untyped-def]
        try:
            await self._pump(ws)
        finally:
            if self._ws is ws:
                self._release("relay closed")

    async def _accept_registration(self, ws: Any) -> None:
        previous = self._ws
        if previous is not None and previous is not ws:
            logger.info("agent link: newer relay connection replaces the active one")
            self._release("replaced")
            with contextlib.suppress(Exception):
                await previous.close()
        await ws.send(protocol.encode(protocol.registered()))
        self._activate(ws)

    # ─────────────────────────────────────────────────────────────────────────
    # Shared
    # ─────────────────────────────────────────────────────────────────────────

    async def _pump(self, ws: Any) -> None:
        try:
            async for raw in ws:
                msg = protocol.decode(raw)
                if msg is None:
                    continue
                await self._on_frame(ws, msg)
        except Exception as exc:  # noqa: BLE001
            logger.debug("relay connection ended: %s", exc)

    async def _on_frame(self, ws: Any, msg: dict[str, Any]) -> None:
        if _trace_enabled():
            logger.info("agent recv %s", str(msg)[:500])

        mtype = msg["type"]
        if mtype == protocol.REGISTER:
            if self.config.listen:
                await self._accept_registration(ws)
            return
        if mtype == protocol.PING:
            with contextlib.suppress(Exception):
                await ws.send(protocol.encode(protocol.pong()))
            return
        if mtype == protocol.PONG:
            if self._liveness is not None and ws is self._ws:
                self._liveness.on_pong()
            return
        if ws is not self._ws:
            return
        if mtype == protocol.TOOL_CALL:
            self.dispatcher.submit(msg, origin=ws)

    def _activate(self, ws: Any) -> None:
        self._ws = ws
        self.last_error = None
        self._set_status(LinkStatus.CONNECTED)
        self._stop_liveness()

        async def _ping() -> None:
            await ws.send(protocol.encode(protocol.ping()))

        async def _dead() -> None:
            with contextlib.suppress(Exception):
                await ws.close()

        self._liveness = Liveness(
            self.config.ping_interval, send_ping=_ping, on_dead=_dead, max_missed=MISSED_PONGS_BEFORE_CLOSE
        )
        self._liveness.start()

    def _is_current(self, ws: Any) -> bool:
        return ws is not None and ws is self._ws

    def _stop_liveness(self) -> None:
        live = self._liveness
        self._liveness = None
        if live is not None:
            live.stop()

    def _release(self, reason: str) -> None:
        self._stop_liveness()
        self._ws = None
        dropped = self.dispatcher.discard_pending()
        if dropped:
            logger.info("agent link: %d queued tool_call(s) dropped", dropped)
        if not self._closing:
            self._set_status(LinkStatus.DISCONNECTED if self.config.listen else LinkStatus.RECONNECTING)
        logger.info("agent link released: %s", reason)
