"""ccchat ask — run a single turn against the assistant in the terminal."""

from __future__ import annotations

import asyncio
import signal
import uuid
from pathlib import Path

import click

from ccchat.config.models import CCChatConfig
from ccchat.config.parser import ConfigError, load_config
from ccchat.history.models import Message
from ccchat.service import ChatRequest, ChatService


@click.command()
@click.argument("prompt")
@click.option(
    "-C",
    "--directory",
    "working_directory",
    type=click.Path(file_okay=False),
    default=".",
    show_default=True,
    help="Directory the assistant runs in.",
)
@click.option(
    "--continue",
    "is_existing_chat",
    is_flag=True,
    help="Continue the most recent conversation in that directory.",
)
@click.option("--verbose", is_flag=True, help="Echo raw stream records to stderr.")
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
def ask(
    prompt: str,
    working_directory: str,
    is_existing_chat: bool,
    verbose: bool,
    config_file: str | None,
) -> None:
    """Send PROMPT to Claude Code and print the response as it streams."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    request = ChatRequest(
        message=prompt,
        working_directory=str(Path(working_directory).resolve()),
        request_id=uuid.uuid4().hex[:12],
        is_existing_chat=is_existing_chat,
        verbose=verbose,
    )
    message = asyncio.run(_ask(config, request, verbose))

    click.echo()
    click.echo(message.content)
    if message.files:
        click.echo()
        for item in message.files:
            click.echo(f"  {item.name} ({item.size})")
    if message.status == "error":
        raise SystemExit(1)


async def _ask(config: CCChatConfig, request: ChatRequest, verbose: bool) -> Message:
    service = ChatService(config.assistant)
    turn = await service.start_turn(request)
    subscription = turn.subscribe()

    # The assistant runs in its own session, so Ctrl-C has to be relayed.
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, turn.cancel)
    try:
        async for update in subscription:
            if verbose and update.event is not None:
                click.echo(click.style(update.event.raw.rstrip(), dim=True), err=True)
            unit = update.unit
            if unit is not None and unit.should_display:
                click.echo(click.style(unit.text, fg="cyan"))
        return await turn.result()
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        subscription.close()
