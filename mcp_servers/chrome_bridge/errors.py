"""Error taxonomy shared by the relay and the browser agent.

Every error crossing the relay boundary is flattened into a plain result value
(`{"error": message}`); only transport corruption is reported as a JSON-RPC error.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base error. The message is user-facing."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    default_message = "Bridge error"

    @property
    def message(self) -> str:
        return str(self)


class TransportParseError(BridgeError):
    default_message = "Malformed input line"


class NoPeerError(BridgeError):
    default_message = "Not connected"


class CallTimeoutError(BridgeError):
    default_message = "Timeout"


class PeerDisconnectError(BridgeError):
    default_message = "Connection closed"


class ToolPermissionError(BridgeError):
    default_message = "Agent control is disabled"


class NoTargetError(BridgeError):
    default_message = "No active tab"


class ToolExecutionError(BridgeError):
    default_message = "Tool execution failed"


class DebugSessionError(BridgeError):
    default_message = "Debugger command failed"


class HostError(BridgeError):
    default_message = "Browser host error"


def error_result(exc: BaseException | str) -> dict[str, Any]:
    """Flatten an error into the `{error: message}` result shape."""
    if isinstance(exc, str):
        return {"error": exc}
    msg = str(exc) or type(exc).__name__
    return {"error": msg}
