"""ccchat serve — run the HTTP backend until interrupted."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click

from ccchat.config.models import CCChatConfig
from ccchat.config.parser import ConfigError, load_config
from ccchat.context import AppContext
from ccchat.server.app import ChatServer

logger = logging.getLogger(__name__)

LOG_DIR = Path.home() / ".ccchat" / "logs"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(verbose: bool, log_dir: Path | None = LOG_DIR) -> Path | None:
    """Send root logging to stderr and, when possible, a rotating file.

    Returns the log file path, or None if the directory is unusable.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_dir is None:
        return None
    log_file = log_dir / "ccchat-server.log"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
    except OSError as exc:
        logger.warning("file logging disabled: %s", exc)
        return None
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return log_file


@click.command()
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option("--host", type=str, default=None, help="Override server.host.")
@click.option("--port", type=int, default=None, help="Override server.port.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def serve(
    config_file: str | None,
    host: str | None,
    port: int | None,
    verbose: bool,
) -> None:
    """Start the chat backend and serve until Ctrl-C."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    server_overrides = {}
    if host is not None:
        server_overrides["host"] = host
    if port is not None:
        if not 1 <= port <= 65535:
            click.echo(f"Error: port must be between 1 and 65535, got {port}", err=True)
            raise SystemExit(1)
        server_overrides["port"] = port
    if server_overrides:
        config = config.model_copy(
            update={"server": config.server.model_copy(update=server_overrides)}
        )

    log_file = configure_logging(verbose)
    logger.info(
        "starting ccchat cwd=%s port=%s config=%s log=%s",
        Path.cwd(),
        config.server.port,
        config_file or "<default>",
        log_file or "<stderr only>",
    )
    asyncio.run(_serve(config))


async def _serve(config: CCChatConfig) -> None:
    server = ChatServer(AppContext.from_config(config))
    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await server.start()
    except OSError as exc:
        click.echo(
            f"Error: cannot listen on {config.server.host}:{config.server.port}: {exc}",
            err=True,
        )
        raise SystemExit(1) from exc

    click.echo(f"  ccchat listening on http://{config.server.host}:{config.server.port}")
    try:
        await shutdown_event.wait()
    finally:
        click.echo("\nShutting down...", err=True)
        await server.stop()
