"""Peer Channel: the WebSocket link between the relay and the browser agent.

Role negotiation:
- probe the configured port; if something answers, dial it (client role),
- otherwise listen on it (server role) and accept one registered peer at a time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any

from . import protocol
from .config import MISSED_PONGS_BEFORE_CLOSE, REGISTER_TIMEOUT_S, RelayConfig
from .errors import NoPeerError
from .relay import RelayCore

logger = logging.getLogger("mcp.chrome_bridge.peer")

ROLE_SERVER = "server"
ROLE_CLIENT = "client"


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The peer channel requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


def _trace_enabled() -> bool:
    return bool(os.environ.get("CHROME_BRIDGE_TRACE"))


async def probe_port(host: str, port: int, timeout: float = 0.2) -> bool:
    """Return True when something accepts a TCP connection on host:port.

    The probe connection is closed immediately; it never carries data.
    """
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, int(port)), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()
    return True


class Liveness:
    """Application-level ping with missed-pong accounting.

    Every `interval` seconds a ping is sent. Any pong resets the counter; after
    `max_missed` consecutive unanswered pings `on_dead` is invoked once.
    """

    def __init__(
        self,
        interval: float,
        *,
        send_ping: Callable[[], Awaitable[None]],
        on_dead: Callable[[], Awaitable[None]],
        max_missed: int = MISSED_PONGS_BEFORE_CLOSE,
    ) -> None:
        self.interval = float(interval)
        self.max_missed = int(max_missed)
        self.missed = 0
        self._send_ping = send_ping
        self._on_dead = on_dead
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None and self.interval > 0:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def on_pong(self) -> None:
        self.missed = 0

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self.missed >= self.max_missed:
                logger.warning("liveness: %d pings unanswered, closing", self.missed)
                await self._on_dead()
                return
            self.missed += 1
            try:
                await self._send_ping()
            except Exception as exc:  # noqa: BLE001
                logger.debug("liveness ping failed: %s", exc)


class PeerChannel:
    """Owns the socket(s); reports state transitions and messages to the RelayCore."""

    def __init__(self, relay: RelayCore, config: RelayConfig | None = None) -> None:
        self.relay = relay
        self.config = config or relay.config
        self.role: str | None = None

        self._ws: Any | None = None
        self._connections: set[Any] = set()
        self._liveness: Liveness | None = None
        self._server: Any | None = None
        self._client_task: asyncio.Task | None = None
        self._started = False
        self._closing = False
        self.last_error: str | None = None

        relay.set_sender(self)

    @property
    def active(self) -> bool:
        """True while a connection (registered or not) is open."""
        return self._ws is not None or bool(self._connections)

    def status(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "url": self.config.url,
            "active": self.active,
            **({"lastError": self.last_error} if self.last_error else {}),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Negotiate a role once. Later calls are no-ops."""
        if self._started:
            return
        self._started = True
        await self._negotiate()

    async def close(self) -> None:
        self._closing = True
        self.relay.begin_disconnect()
        self._stop_liveness()

        task = self._client_task
        self._client_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

        for ws in list(self._connections):
            with contextlib.suppress(Exception):
                await ws.close()
        srv = self._server
        self._server = None
        if srv is not None:
            srv.close()
            with contextlib.suppress(Exception):
                await srv.wait_closed()

        self._ws = None
        self._connections.clear()
        self.relay.peer_disconnected("shutdown")

    async def _negotiate(self) -> None:
        if await probe_port(self.config.host, self.config.port, self.config.probe_timeout):
            self.role = ROLE_CLIENT
            logger.info("peer_channel role=client url=%s", self.config.url)
            self._client_task = asyncio.get_running_loop().create_task(self._run_client())
            return
        self.role = ROLE_SERVER
        await self._serve()

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, payload: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise NoPeerError()
        await ws.send(protocol.encode(payload))

    async def _send_to(self, ws: Any, payload: dict[str, Any]) -> None:
        await ws.send(protocol.encode(payload))

    # ─────────────────────────────────────────────────────────────────────────
    # Server role
    # ─────────────────────────────────────────────────────────────────────────

    async def _serve(self) -> None:
        websockets = _import_websockets()
        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self.config.host,
                int(self.config.port),
                max_size=8_000_000,
                ping_interval=None,
            )
        except OSError as exc:
            self.last_error = f"bind failed: {exc}"
            logger.error("peer_channel bind failed on %s: %s", self.config.url, exc)
            return
        logger.info("peer_channel role=server listening on %s", self.config.url)

    async def _handle_connection(self, ws) -> None:  # type: ignore[no-untyped-def]
        self._connections.add(ws)
        if self._ws is None:
            self.relay.peer_connecting()
        try:
            async for raw in ws:
                msg = protocol.decode(raw)
                if msg is None:
                    continue
                await self._on_frame(ws, msg)
        except Exception as exc:  # noqa: BLE001
            logger.debug("peer connection ended: %s", exc)
        finally:
            self._connections.discard(ws)
            if self._ws is ws:
                self._release_active("peer closed")
            elif self._ws is None and not self._connections:
                # An unregistered socket went away; nothing is left to wait for.
                self.relay.peer_disconnected("unregistered peer closed")

    async def _accept_registration(self, ws: Any, msg: dict[str, Any]) -> None:
        previous = self._ws
        if previous is not None and previous is not ws:
            logger.info("peer_channel: newer registration replaces the active peer")
            self._release_active("replaced by newer registration")
            self._connections.discard(previous)
            with contextlib.suppress(Exception):
                await previous.close()

        self._ws = ws
        try:
            await self._send_to(ws, protocol.registered())
        except Exception as exc:  # noqa: BLE001
            logger.warning("peer_channel: registered ack failed: %s", exc)
            self._release_active("ack failed")
            return
        client = msg.get("client")
        self.relay.peer_registered(client if isinstance(client, str) else None)
        self._start_liveness(ws)

    # ─────────────────────────────────────────────────────────────────────────
    # Client role
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_client(self) -> None:
        attempts = 0
        while not self._closing:
            registered = False
            try:
                registered = await self._connect_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.last_error = str(exc)
                logger.warning("peer_channel connect failed: %s", exc)
                self.relay.peer_disconnected("connect failed")

            if self._closing or not self.config.auto_reconnect:
                return
            attempts = 1 if registered else attempts + 1
            if attempts > self.config.max_reconnect_attempts:
                logger.error("peer_channel: giving up after %d reconnect attempts", attempts - 1)
                return
            logger.info(
                "peer_channel: reconnecting in %.1fs (attempt %d/%d)",
                self.config.reconnect_delay,
                attempts,
                self.config.max_reconnect_attempts,
            )
            await asyncio.sleep(self.config.reconnect_delay)

            # Re-run negotiation: the listener may be gone, in which case we take over.
            if not await probe_port(self.config.host, self.config.port, self.config.probe_timeout):
                self.role = ROLE_SERVER
                await self._serve()
                return

    async def _connect_once(self) -> bool:
        """Dial, register, then pump frames until the socket closes. Returns True once registered."""
        websockets = _import_websockets()
        self.relay.peer_connecting()
        async with websockets.connect(
            self.config.url,
            ping_interval=None,
            open_timeout=max(REGISTER_TIMEOUT_S, self.config.probe_timeout),
            max_size=8_000_000,
        ) as ws:
            self._connections.add(ws)
            try:
                await self._send_to(ws, protocol.register(self.config.client_name))
                await asyncio.wait_for(self._await_registered(ws), timeout=REGISTER_TIMEOUT_S)

                self._ws = ws
                self.last_error = None
                self.relay.peer_registered(None)
                self._start_liveness(ws)

                try:
                    async for raw in ws:
                        msg = protocol.decode(raw)
                        if msg is None:
                            continue
                        await self._on_frame(ws, msg)
                except Exception as exc:  # noqa: BLE001
                    logger.debug("peer connection ended: %s", exc)
                return True
            finally:
                self._connections.discard(ws)
                if self._ws is ws:
                    self._release_active("peer closed")

    async def _await_registered(self, ws: Any) -> None:
        while True:
            msg = protocol.decode(await ws.recv())
            if msg is None:
                continue
            if msg["type"] == protocol.REGISTERED:
                return
            if msg["type"] == protocol.PING:
                await self._send_to(ws, protocol.pong())

    # ─────────────────────────────────────────────────────────────────────────
    # Shared
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_frame(self, ws: Any, msg: dict[str, Any]) -> None:
        if _trace_enabled():
            logger.info("peer recv %s", str(msg)[:500])

        mtype = msg["type"]
        if mtype == protocol.REGISTER:
            if self.role == ROLE_SERVER:
                await self._accept_registration(ws, msg)
            return
        if mtype == protocol.PING:
            with contextlib.suppress(Exception):
                await self._send_to(ws, protocol.pong())
            return
        if mtype == protocol.PONG:
            if self._liveness is not None and ws is self._ws:
                self._liveness.on_pong()
            return
        if ws is not self._ws:
            # Only the registered peer may deliver results.
            return
        if mtype in protocol.MESSAGE_TYPES:
            self.relay.on_message(msg)

    def _start_liveness(self, ws: Any) -> None:
        self._stop_liveness()

        async def _ping() -> None:
            await self._send_to(ws, protocol.ping())

        async def _dead() -> None:
            with contextlib.suppress(Exception):
                await ws.close()

        self._liveness = Liveness(self.config.ping_interval, send_ping=_ping, on_dead=_dead)
        self._liveness.start()

    def _stop_liveness(self) -> None:
        live = self._liveness
        self._liveness = None
        if live is not None:
            live.stop()

    def _release_active(self, reason: str) -> None:
        self._stop_liveness()
        self._ws = None
        self.relay.peer_disconnected(reason)
