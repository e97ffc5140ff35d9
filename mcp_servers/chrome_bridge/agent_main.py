"""
Browser agent process: executes relay tool calls against Chrome over CDP.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from dataclasses import replace

from .agent_link import AgentLink
from .agent_tools import AgentContext
from .browser_host import BrowserHost, CdpBrowserHost
from .config import AgentConfig
from .debug_sessions import DebugSessionManager
from .dispatcher import AgentDispatcher
from .error_capture import ErrorCapture
from .event_store import EventStoreRegistry
from .state_markers import StateMarkers

logger = logging.getLogger("mcp.chrome_bridge.agent")


def build_agent(config: AgentConfig, host: BrowserHost) -> tuple[AgentDispatcher, AgentLink]:
    """Wire stores, debug sessions, capture and dispatcher around a browser host."""
    stores = EventStoreRegistry(
        tab_size=config.tab_store_size,
        extension_size=config.extension_store_size,
        mutation_max_changes=config.mutation_max_changes,
        mutation_window=config.mutation_window,
    )
    debug = DebugSessionManager(host, stores)
    host.set_listener(debug)
    ctx = AgentContext(
        host=host,
        stores=stores,
        debug=debug,
        capture=ErrorCapture(host, debug, stores, settle_delay=config.settle_delay, window=config.capture_window),
        markers=StateMarkers(stores),
    )
    dispatcher = AgentDispatcher(ctx, config.permissions)
    link = AgentLink(config, dispatcher)
    debug.page_listener = link.notify_page_changed
    return dispatcher, link


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chrome bridge browser agent")
    parser.add_argument("--relay-host", help="Relay host (default: 127.0.0.1)")
    parser.add_argument("--relay-port", type=int, help="Relay port (default: 3052)")
    parser.add_argument("--cdp-url", help="Chrome remote debugging URL (default: http://127.0.0.1:9222)")
    parser.add_argument("--listen", action="store_true", help="Accept the relay's connection instead of dialing it")
    parser.add_argument("--enable", action="store_true", help="Enable agent control (default: read-only tools only)")
    parser.add_argument("--no-auto-reconnect", action="store_true", help="Exit when the relay link drops")
    return parser.parse_args(argv)


def _apply_args(config: AgentConfig, args: argparse.Namespace) -> AgentConfig:
    changes: dict[str, object] = {}
    if args.relay_host:
        changes["relay_host"] = args.relay_host
    if args.relay_port:
        changes["relay_port"] = args.relay_port
    if args.cdp_url:
        changes["cdp_url"] = args.cdp_url
    if args.listen:
        changes["listen"] = True
    if args.no_auto_reconnect:
        changes["auto_reconnect"] = False
    if args.enable:
        changes["permissions"] = replace(config.permissions, enabled=True)
    return replace(config, **changes) if changes else config


async def _run(config: AgentConfig) -> None:
    host = CdpBrowserHost(config.cdp_url)
    await host.connect()
    _dispatcher, link = build_agent(config, host)
    logger.info(
        "agent starting relay=%s mode=%s permissions=%s",
        config.relay_url,
        "listen" if config.listen else "dial",
        config.permissions.to_dict(),
    )
    try:
        await link.run()
    finally:
        await link.close()
        await host.close()


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the browser agent."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    config = _apply_args(AgentConfig.from_env(), _parse_args(argv))
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_run(config))


if __name__ == "__main__":
    main()
