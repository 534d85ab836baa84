"""Command-line client that attaches the console to a remote terminal session."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Dict, Sequence, TextIO

from ..config import ClientConfig, ConfigError, TabConfig, load_config
from ..session import SessionRegistry
from .console_ui import ConsolePrompts, LoggingNotifier, StreamSurface
from .messaging import MessageChannel
from .remote_sessions import HttpRemoteSessionClient
from .session_controller import SessionController
from .transports import CloseCallback, ErrorCallback, MessageCallback, WebSocketTransport


logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Return parsed arguments for the session CLI."""

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to a TOML file with [client] settings and [[tabs]] entries",
    )
    parser.add_argument(
        "--tab",
        default=None,
        help="Id of the tab to open (default: the first configured tab)",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Override the session server host from the configuration",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Override the session server port from the configuration",
    )
    parser.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        default="WARNING",
        help="Logging threshold for diagnostics written to stderr",
    )
    return parser.parse_args(argv)


def apply_overrides(client: ClientConfig, args: argparse.Namespace) -> ClientConfig:
    changes: Dict[str, object] = {}
    if args.host is not None:
        changes["host"] = args.host
    if args.port is not None:
        changes["port"] = args.port
    return dataclasses.replace(client, **changes) if changes else client


def select_tab(tabs: Dict[str, TabConfig], tab_id: str | None) -> TabConfig:
    if not tabs:
        raise ConfigError("configuration defines no [[tabs]]")
    if tab_id is None:
        return next(iter(tabs.values()))
    try:
        return tabs[tab_id]
    except KeyError:
        raise ConfigError(f"no tab with id {tab_id!r}") from None


async def _pump_input(
    controller: SessionController, prompts: ConsolePrompts, stdin: TextIO
) -> None:
    while not controller.torn_down:
        line = await asyncio.to_thread(stdin.readline)
        if line == "":
            break
        if prompts.feed_line(line):
            continue
        controller.on_user_input(line.replace("\n", "\r"))


async def run_session(
    args: argparse.Namespace,
    *,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> int:
    """Open the selected tab and bridge it to the console until EOF."""

    client, tabs = load_config(args.config)
    client = apply_overrides(client, args)
    tab = select_tab(tabs, args.tab)
    registry = SessionRegistry()
    channel = MessageChannel()
    remote = HttpRemoteSessionClient(client.base_url, client.token)
    prompts = ConsolePrompts()
    heartbeat = client.keepalive_interval / 1000 if client.keepalive_interval else None

    def _transport_factory(
        url: str,
        on_message: MessageCallback,
        on_close: CloseCallback,
        on_error: ErrorCallback,
    ) -> WebSocketTransport:
        return WebSocketTransport(url, on_message, on_close, on_error, heartbeat=heartbeat)

    controller = SessionController(
        tab,
        client=client,
        remote=remote,
        transport_factory=_transport_factory,
        surface=StreamSurface(stdout),
        prompts=prompts,
        notifier=LoggingNotifier(),
        registry=registry,
        channel=channel,
    )
    registry.set_foreground(tab.id)
    try:
        if not await controller.initialize():
            return 1
        await _pump_input(controller, prompts, stdin if stdin is not None else sys.stdin)
    finally:
        await controller.teardown()
        await remote.close()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the session CLI."""

    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        return asyncio.run(run_session(args))
    except ConfigError as exc:
        logger.error("invalid configuration: %s", exc)
        return 2
    except KeyboardInterrupt:  # pragma: no cover - user interrupt
        return 130


if __name__ == "__main__":  # pragma: no cover - exercised via python -m
    raise SystemExit(main())


__all__ = ["apply_overrides", "main", "parse_args", "run_session", "select_tab"]
