from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3052

# Relay side.
DEFAULT_CALL_TIMEOUT_S = 30.0
DEFAULT_INTER_CALL_DELAY_S = 0.05
DEFAULT_PROBE_TIMEOUT_S = 0.2
DEFAULT_RELAY_PING_INTERVAL_S = 20.0
MISSED_PONGS_BEFORE_CLOSE = 2
REGISTER_TIMEOUT_S = 2.5
# The channel is started shortly after the initialize reply is written.
CHANNEL_START_DELAY_S = 0.05
EOF_POLL_INTERVAL_S = 0.25

# Agent side.
DEFAULT_AGENT_PING_INTERVAL_S = 30.0
DEFAULT_RECONNECT_DELAY_S = 3.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_CONNECT_TIMEOUT_S = 5.0
DEFAULT_CDP_URL = "http://127.0.0.1:9222"
CDP_COMMAND_TIMEOUT_S = 30.0
CDP_DISCOVERY_TIMEOUT_S = 2.0

# Settle delays before querying freshly opened pages.
PAGE_SETTLE_DELAY_S = 0.5
NAVIGATION_SETTLE_TIMEOUT_S = 10.0
EXTENSION_TOGGLE_PAUSE_S = 0.1
DEFAULT_CAPTURE_WINDOW_S = 2.0

DEFAULT_TAB_STORE_SIZE = 300
DEFAULT_EXTENSION_STORE_SIZE = 500

PERMISSION_NAMES = ("navigation", "screenshot", "scripts", "mouse", "keyboard")


def _env_float(name: str, default: float, *, lo: float, hi: float) -> float:
    try:
        value = float(os.environ.get(name) or default)
    except Exception:
        value = default
    return max(lo, min(value, hi))


def _env_int(name: str, default: int, *, lo: int, hi: int) -> int:
    try:
        value = int(os.environ.get(name) or default)
    except Exception:
        value = default
    return max(lo, min(value, hi))


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default


def _env_port() -> int:
    raw = os.environ.get("CHROME_BRIDGE_PORT") or os.environ.get("PORT") or ""
    try:
        port = int(raw)
    except Exception:
        return DEFAULT_PORT
    if port < 1 or port > 65535:
        return DEFAULT_PORT
    return port


@dataclass
class RelayConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    call_timeout: float = DEFAULT_CALL_TIMEOUT_S
    inter_call_delay: float = DEFAULT_INTER_CALL_DELAY_S
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_S
    ping_interval: float = DEFAULT_RELAY_PING_INTERVAL_S
    auto_reconnect: bool = True
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY_S
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    client_name: str = "chrome-bridge-relay"

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @classmethod
    def from_env(cls) -> RelayConfig:
        return cls(
            host=(os.environ.get("CHROME_BRIDGE_HOST") or DEFAULT_HOST).strip() or DEFAULT_HOST,
            port=_env_port(),
            call_timeout=_env_float("CHROME_BRIDGE_CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_S, lo=0.1, hi=600.0),
            inter_call_delay=_env_float("CHROME_BRIDGE_CALL_DELAY", DEFAULT_INTER_CALL_DELAY_S, lo=0.0, hi=1.0),
            ping_interval=_env_float("CHROME_BRIDGE_PING_INTERVAL", DEFAULT_RELAY_PING_INTERVAL_S, lo=1.0, hi=300.0),
            auto_reconnect=_env_bool("CHROME_BRIDGE_AUTO_RECONNECT", True),
        )

    def with_options(self, options: dict[str, Any] | None) -> RelayConfig:
        """Apply runtime options (from the handshake) on top of this config."""
        if not isinstance(options, dict) or not options:
            return self
        changes: dict[str, Any] = {}
        host = options.get("host")
        if isinstance(host, str) and host.strip():
            changes["host"] = host.strip()
        port = options.get("port")
        if isinstance(port, int) and not isinstance(port, bool) and 0 < port <= 65535:
            changes["port"] = port
        if isinstance(options.get("autoReconnect"), bool):
            changes["auto_reconnect"] = options["autoReconnect"]
        ping = options.get("pingInterval")
        if isinstance(ping, (int, float)) and not isinstance(ping, bool) and ping > 0:
            changes["ping_interval"] = max(1.0, min(float(ping), 300.0))
        timeout = options.get("callTimeout")
        if isinstance(timeout, (int, float)) and not isinstance(timeout, bool) and timeout > 0:
            changes["call_timeout"] = max(0.1, min(float(timeout), 600.0))
        return replace(self, **changes) if changes else self


@dataclass
class AgentPermissions:
    enabled: bool = False
    navigation: bool = True
    screenshot: bool = True
    scripts: bool = True
    mouse: bool = True
    keyboard: bool = True

    def allows(self, permission: str | None) -> bool:
        if not permission:
            return True
        return bool(getattr(self, permission, False))

    def to_dict(self) -> dict[str, bool]:
        return {"enabled": self.enabled, **{name: bool(getattr(self, name)) for name in PERMISSION_NAMES}}

    @classmethod
    def from_env(cls) -> AgentPermissions:
        denied = {
            p.strip().lower() for p in (os.environ.get("CHROME_BRIDGE_DENY") or "").split(",") if p.strip()
        }
        return cls(
            enabled=_env_bool("CHROME_BRIDGE_AGENT_ENABLED", False),
            **{name: name not in denied for name in PERMISSION_NAMES},
        )


@dataclass
class AgentConfig:
    relay_host: str = DEFAULT_HOST
    relay_port: int = DEFAULT_PORT
    cdp_url: str = DEFAULT_CDP_URL
    listen: bool = False
    auto_reconnect: bool = True
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY_S
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_S
    ping_interval: float = DEFAULT_AGENT_PING_INTERVAL_S
    client_name: str = "chrome-bridge"
    permissions: AgentPermissions = field(default_factory=AgentPermissions)
    tab_store_size: int = DEFAULT_TAB_STORE_SIZE
    extension_store_size: int = DEFAULT_EXTENSION_STORE_SIZE
    capture_window: float = DEFAULT_CAPTURE_WINDOW_S
    settle_delay: float = PAGE_SETTLE_DELAY_S
    # DOM mutation suppression: more than `mutation_max_changes` changes to the same
    # node within `mutation_window` seconds are dropped.
    mutation_max_changes: int = 3
    mutation_window: float = 0.5

    @property
    def relay_url(self) -> str:
        return f"ws://{self.relay_host}:{self.relay_port}"

    @classmethod
    def from_env(cls) -> AgentConfig:
        return cls(
            relay_host=(os.environ.get("CHROME_BRIDGE_HOST") or DEFAULT_HOST).strip() or DEFAULT_HOST,
            relay_port=_env_port(),
            cdp_url=(os.environ.get("CHROME_BRIDGE_CDP_URL") or DEFAULT_CDP_URL).strip() or DEFAULT_CDP_URL,
            listen=_env_bool("CHROME_BRIDGE_AGENT_LISTEN", False),
            auto_reconnect=_env_bool("CHROME_BRIDGE_AUTO_RECONNECT", True),
            reconnect_delay=_env_float("CHROME_BRIDGE_RECONNECT_DELAY", DEFAULT_RECONNECT_DELAY_S, lo=0.1, hi=60.0),
            max_reconnect_attempts=_env_int(
                "CHROME_BRIDGE_MAX_RECONNECTS", DEFAULT_MAX_RECONNECT_ATTEMPTS, lo=0, hi=1000
            ),
            ping_interval=_env_float("CHROME_BRIDGE_AGENT_PING_INTERVAL", DEFAULT_AGENT_PING_INTERVAL_S, lo=1.0, hi=300.0),
            permissions=AgentPermissions.from_env(),
            tab_store_size=_env_int("CHROME_BRIDGE_TAB_STORE_SIZE", DEFAULT_TAB_STORE_SIZE, lo=10, hi=5000),
            extension_store_size=_env_int(
                "CHROME_BRIDGE_EXTENSION_STORE_SIZE", DEFAULT_EXTENSION_STORE_SIZE, lo=10, hi=5000
            ),
            capture_window=_env_float("CHROME_BRIDGE_CAPTURE_WINDOW", DEFAULT_CAPTURE_WINDOW_S, lo=0.0, hi=60.0),
            settle_delay=_env_float("CHROME_BRIDGE_SETTLE_DELAY", PAGE_SETTLE_DELAY_S, lo=0.0, hi=10.0),
            mutation_max_changes=_env_int("CHROME_BRIDGE_MUTATION_MAX_CHANGES", 3, lo=1, hi=1000),
            mutation_window=_env_float("CHROME_BRIDGE_MUTATION_WINDOW", 0.5, lo=0.0, hi=60.0),
        )
