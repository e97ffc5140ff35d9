"""Relay Core: pending-call correlation and the single-flight submission queue.

The relay owns the peer connection state. The Peer Channel reports transitions
(`peer_connecting`, `peer_registered`, `peer_disconnected`) and inbound messages
(`on_message`); the Transport Front calls `submit`.

Invariants:
- every submitted call is resolved exactly once (result or error value);
- at most one `tool_call` is in flight towards the peer;
- table/queue mutation happens synchronously within one handler (no awaits in between).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from . import protocol
from .config import RelayConfig
from .errors import BridgeError, CallTimeoutError, NoPeerError, PeerDisconnectError, error_result

logger = logging.getLogger("mcp.chrome_bridge.relay")


class PeerState(Enum):
    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    REGISTERED = "registered"
    DISCONNECTING = "disconnecting"


class PeerSender(Protocol):
    async def send(self, payload: dict[str, Any]) -> None: ...


@dataclass(slots=True)
class PendingCall:
    id: int
    tool: str
    submitted_at: float
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = None


@dataclass(slots=True)
class QueuedRequest:
    tool: str
    params: dict[str, Any]
    future: asyncio.Future


class RelayCore:
    def __init__(self, config: RelayConfig | None = None, *, sender: PeerSender | None = None) -> None:
        self.config = config or RelayConfig()
        self._sender = sender
        self.state = PeerState.UNCONNECTED
        self.peer_name: str | None = None

        self._next_id = 0
        self._pending: dict[int, PendingCall] = {}
        self._queue: deque[QueuedRequest] = deque()
        self._drain_task: asyncio.Task | None = None
        self._registered = asyncio.Event()

    # ─────────────────────────────────────────────────────────────────────────
    # Peer state transitions (called by the Peer Channel)
    # ─────────────────────────────────────────────────────────────────────────

    def set_sender(self, sender: PeerSender | None) -> None:
        self._sender = sender

    def peer_connecting(self) -> None:
        if self.state is PeerState.UNCONNECTED:
            self._set_state(PeerState.CONNECTING)

    def peer_registered(self, name: str | None = None) -> None:
        self.peer_name = name
        self._set_state(PeerState.REGISTERED)
        self._registered.set()
        if self._queue:
            self._ensure_drain()

    def begin_disconnect(self) -> None:
        if self.state is not PeerState.UNCONNECTED:
            self._set_state(PeerState.DISCONNECTING)
            self._registered.clear()

    def peer_disconnected(self, reason: str | None = None) -> None:
        """Back to UNCONNECTED: resolve everything outstanding with a connection error."""
        self._set_state(PeerState.UNCONNECTED)
        self._registered.clear()
        self.peer_name = None

        pending = list(self._pending.values())
        self._pending.clear()
        queued = list(self._queue)
        self._queue.clear()
        # A fresh drain starts with the next submission, so waits for registration
        # never carry over from the previous connection.
        drain = self._drain_task
        self._drain_task = None
        if drain is not None and not drain.done() and drain is not asyncio.current_task():
            drain.cancel()

        if pending or queued:
            logger.warning(
                "peer_disconnected reason=%s pending=%d queued=%d", reason or "closed", len(pending), len(queued)
            )
        err = error_result(PeerDisconnectError())
        for call in pending:
            if call.timer is not None:
                call.timer.cancel()
            if not call.future.done():
                call.future.set_result(dict(err))
        for req in queued:
            if not req.future.done():
                req.future.set_result(dict(err))

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound messages
    # ─────────────────────────────────────────────────────────────────────────

    def on_message(self, msg: dict[str, Any]) -> None:
        mtype = msg.get("type")
        if mtype == protocol.TOOL_RESULT:
            call_id = protocol.correlation_id(msg)
            if call_id is None:
                return
            if not self._resolve(call_id, msg.get("result")):
                logger.debug("discarding stale tool_result id=%s", call_id)
            return
        if mtype == protocol.PAGE_CHANGED:
            logger.info("page_changed url=%s title=%s", msg.get("url"), msg.get("title"))
            return

    # ─────────────────────────────────────────────────────────────────────────
    # Submission
    # ─────────────────────────────────────────────────────────────────────────

    async def submit(self, tool: str, params: dict[str, Any] | None = None) -> Any:
        if self._sender is None or self.state in {PeerState.UNCONNECTED, PeerState.DISCONNECTING}:
            return error_result(NoPeerError())

        fut = asyncio.get_running_loop().create_future()
        self._queue.append(QueuedRequest(tool=tool, params=dict(params or {}), future=fut))
        self._ensure_drain()
        return await fut

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            **({"peer": self.peer_name} if self.peer_name else {}),
            "pending": len(self._pending),
            "queued": len(self._queue),
            "nextId": self._next_id + 1,
        }

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _set_state(self, state: PeerState) -> None:
        if state is not self.state:
            logger.info("peer_state %s -> %s", self.state.value, state.value)
            self.state = state

    def _ensure_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            if self.state is not PeerState.REGISTERED:
                if self.state is not PeerState.CONNECTING:
                    self._fail_queue(NoPeerError())
                    break
                try:
                    await asyncio.wait_for(self._registered.wait(), timeout=self.config.call_timeout)
                except asyncio.TimeoutError:
                    self._fail_queue(NoPeerError())
                    break
                continue

            req = self._queue.popleft()
            await self._dispatch(req)
            if self._queue and self.config.inter_call_delay > 0:
                await asyncio.sleep(self.config.inter_call_delay)

    async def _dispatch(self, req: QueuedRequest) -> None:
        if req.future.done():
            # Caller gave up while queued.
            return

        self._next_id += 1
        call_id = self._next_id
        call = PendingCall(id=call_id, tool=req.tool, submitted_at=time.monotonic(), future=req.future)
        call.timer = asyncio.get_running_loop().call_later(self.config.call_timeout, self._expire, call_id)
        self._pending[call_id] = call

        sender = self._sender
        try:
            if sender is None:
                raise NoPeerError()
            await sender.send(protocol.tool_call(call_id, req.tool, req.params))
        except BridgeError as exc:
            self._resolve(call_id, error_result(exc))
        except Exception as exc:  # noqa: BLE001
            logger.warning("tool_call send failed id=%s tool=%s: %s", call_id, req.tool, exc)
            self._resolve(call_id, error_result(PeerDisconnectError(f"Send failed: {exc}")))

        await asyncio.wait({req.future})
        self._forget(call_id)

    def _resolve(self, call_id: int, result: Any) -> bool:
        call = self._pending.pop(call_id, None)
        if call is None:
            return False
        if call.timer is not None:
            call.timer.cancel()
        if not call.future.done():
            call.future.set_result(result)
        return True

    def _forget(self, call_id: int) -> None:
        call = self._pending.pop(call_id, None)
        if call is not None and call.timer is not None:
            call.timer.cancel()

    def _expire(self, call_id: int) -> None:
        call = self._pending.get(call_id)
        if call is None:
            return
        elapsed = time.monotonic() - call.submitted_at
        logger.warning("tool_call timeout id=%s tool=%s after %.1fs", call_id, call.tool, elapsed)
        self._resolve(call_id, error_result(CallTimeoutError()))

    def _fail_queue(self, exc: BridgeError) -> None:
        queued = list(self._queue)
        self._queue.clear()
        for req in queued:
            if not req.future.done():
                req.future.set_result(error_result(exc))
