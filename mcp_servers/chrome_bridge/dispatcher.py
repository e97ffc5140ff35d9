"""Browser-side tool dispatcher.

`execute()` applies the gating policy and runs one tool; `run()` is the single
worker that drains queued `tool_call` messages in arrival order and replies
with `tool_result`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from . import protocol
from .agent_tools import NO_PRIVILEGE_TOOLS, PERMISSION_MESSAGES, AgentContext, ToolRegistry, build_registry
from .config import AgentPermissions
from .errors import BridgeError, NoTargetError, ToolExecutionError, ToolPermissionError, error_result
from .server.redaction import redact_tool_arguments

logger = logging.getLogger("mcp.chrome_bridge.agent")


class AgentDispatcher:
    def __init__(
        self,
        ctx: AgentContext,
        permissions: AgentPermissions | None = None,
        *,
        registry: ToolRegistry | None = None,
    ) -> None:
        self.ctx = ctx
        self.permissions = permissions or AgentPermissions()
        self.registry = registry or build_registry()
        self._queue: asyncio.Queue[tuple[Any, dict[str, Any]]] = asyncio.Queue()

    def _check(self, tool: str) -> None:
        if not self.permissions.enabled and tool not in NO_PRIVILEGE_TOOLS:
            raise ToolPermissionError("Agent control is disabled")
        spec = self.registry.get(tool)
        if spec is not None and not self.permissions.allows(spec.permission):
            raise ToolPermissionError(PERMISSION_MESSAGES.get(spec.permission or "", "Not permitted"))

    async def execute(self, tool: str, params: dict[str, Any] | None = None) -> Any:
        """Run one tool; every failure comes back as `{"error": message}`."""
        params = params if isinstance(params, dict) else {}
        try:
            self._check(tool)
            spec = self.registry.get(tool)
            tab_id: str | None = None
            if spec is None or spec.needs_target:
                tab_id = await self.ctx.host.active_tab()
                if tab_id is None:
                    raise NoTargetError("No active tab")
            if spec is None:
                raise ToolExecutionError(f"Unknown tool: {tool}")
            return await self.registry.dispatch(tool, self.ctx, tab_id, params)
        except BridgeError as exc:
            logger.info("tool=%s failed: %s", tool, exc.message)
            return error_result(exc)
        except Exception as exc:
            logger.exception("tool=%s crashed", tool)
            return error_result(str(exc) or type(exc).__name__)

    # ─────────────────────────────────────────────────────────────────────────
    # tool_call worker
    # ─────────────────────────────────────────────────────────────────────────

    def submit(self, message: dict[str, Any], origin: Any = None) -> None:
        """Queue a tool_call; `origin` is the connection it arrived on."""
        self._queue.put_nowait((origin, message))

    def discard_pending(self) -> int:
        """Drop every queued tool_call that has not started yet."""
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            self._queue.task_done()
            dropped += 1

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def run(
        self,
        send: Callable[[dict[str, Any]], Awaitable[None]],
        *,
        accepts: Callable[[Any], bool] | None = None,
    ) -> None:
        """Drain the queue; results for an origin `accepts` rejects are dropped."""
        while True:
            origin, message = await self._queue.get()
            try:
                await self._handle(origin, message, send, accepts)
            finally:
                self._queue.task_done()

    async def _handle(
        self,
        origin: Any,
        message: dict[str, Any],
        send: Callable[[dict[str, Any]], Awaitable[None]],
        accepts: Callable[[Any], bool] | None,
    ) -> None:
        call_id = protocol.correlation_id(message)
        if call_id is None:
            logger.warning("tool_call without a usable id dropped")
            return
        if accepts is not None and not accepts(origin):
            logger.info("tool_call id=%s dropped: its relay connection is gone", call_id)
            return
        tool = message.get("tool")
        params = message.get("params") if isinstance(message.get("params"), dict) else {}
        logger.info("tool_call id=%s tool=%s args=%s", call_id, tool, redact_tool_arguments(str(tool), params))

        result = await self.execute(tool if isinstance(tool, str) else "", params)
        if accepts is not None and not accepts(origin):
            # The caller was already answered with "Connection closed".
            logger.info("tool_result id=%s dropped: its relay connection is gone", call_id)
            return
        try:
            await send(protocol.tool_result(call_id, result))
        except BridgeError as exc:
            # The relay resolves the call with "Connection closed" on its side.
            logger.warning("tool_result id=%s not delivered: %s", call_id, exc.message)
