"""storesync CLI: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler


def _configure_logging(level_name: str, *, to_stderr: bool) -> Path:
    """Send logs to ~/.storesync/logs, plus stderr outside the TUI."""
    log_dir = Path.home() / ".storesync" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "storesync.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if to_stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def _load_config(args):
    from storesync.engine.config import SyncConfig

    config = SyncConfig.from_env()
    config_path = args.config
    if not config_path:
        default = Path.cwd() / "storesync.yaml"
        if default.is_file():
            config_path = str(default)
    if config_path:
        from storesync.engine.yaml_config import load_yaml_config

        logging.getLogger(__name__).info("Using config file: %s", config_path)
        config = load_yaml_config(config_path, base=config)
    if args.api_url:
        config.api_base_url = args.api_url
    return config


async def _watch(args, config, token_provider) -> int:
    """Print snapshot changes until interrupted or the session expires."""
    from rich.console import Console

    from storesync.adapters.rest_client import StorefrontApiClient
    from storesync.adapters.ws_transport import websocket_transport_factory
    from storesync.engine.channel import EventChannelManager
    from storesync.engine.session import SessionContext
    from storesync.tui.widgets.session_timer import format_remaining

    console = Console()
    expired = asyncio.Event()

    def show(snapshot) -> None:
        dot = "[green]●[/green]" if snapshot.is_connected else "[dim]●[/dim]"
        detail = snapshot.last_error or format_remaining(snapshot.remaining_seconds)
        console.print(f"{dot} {snapshot.resource_id} {snapshot.state.value} {detail}")

    async with StorefrontApiClient(
        config.api_base_url, token_provider, timeout=config.api_timeout_seconds,
    ) as api:
        channels = EventChannelManager(
            config, websocket_transport_factory(token_provider=token_provider),
        )
        context = SessionContext(args.owner_id, config=config, api=api, channels=channels)
        try:
            handle = await context.open(
                args.resource_id, on_expire=lambda _rid: expired.set(), load=False,
            )
            handle.on_change(show)
            show(handle.snapshot())
            result = await handle.refresh()
            if not result.ok:
                console.print(f"[red]{result.error}[/red]")
                return 1
            if args.restart:
                restart = await handle.restart()
                if not restart.accepted:
                    console.print(f"[red]{restart.error}[/red]")
                    return 1
            await expired.wait()
            return 0
        finally:
            context.dispose()
            await channels.aclose()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="storesync",
        description="storesync: live runtime-session monitor for storefront apps",
    )
    parser.add_argument(
        "--resource-id", type=int, required=True,
        help="Resource (app) whose session to follow",
    )
    parser.add_argument(
        "--owner-id", metavar="ID", default=os.getenv("STORESYNC_OWNER_ID"),
        help="Signed-in owner; without it the session stays inert",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./storesync.yaml if present)",
    )
    parser.add_argument(
        "--api-url", metavar="URL",
        help="Platform API base URL (overrides config)",
    )
    parser.add_argument(
        "--token", metavar="TOKEN", default=os.getenv("STORESYNC_TOKEN"),
        help="Bearer token for the platform API",
    )
    parser.add_argument(
        "--plain", action="store_true",
        help="Print state changes instead of starting the TUI",
    )
    parser.add_argument(
        "--restart", action="store_true",
        help="With --plain: restart the session after loading it",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log at DEBUG level",
    )
    args = parser.parse_args()

    config = _load_config(args)
    level = "DEBUG" if args.verbose else config.log_level
    log_file = _configure_logging(level, to_stderr=args.plain)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting storesync resource=%s owner=%s api=%s log=%s",
        args.resource_id, args.owner_id or "<none>", config.api_base_url, log_file,
    )

    token = args.token

    def token_provider():
        return token

    if args.plain:
        try:
            sys.exit(asyncio.run(_watch(args, config, token_provider)))
        except KeyboardInterrupt:
            sys.exit(130)

    from storesync.adapters.rest_client import StorefrontApiClient
    from storesync.adapters.ws_transport import websocket_transport_factory
    from storesync.tui.app import StoreSyncApp

    api = StorefrontApiClient(
        config.api_base_url, token_provider, timeout=config.api_timeout_seconds,
    )
    app = StoreSyncApp(
        args.resource_id,
        args.owner_id,
        config=config,
        api=api,
        transport_factory=websocket_transport_factory(token_provider=token_provider),
    )
    app.run()
    logger.info("storesync exited")


if __name__ == "__main__":
    main()
