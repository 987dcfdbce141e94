"""ccchat chats — list, clear or delete stored chat sessions."""

from __future__ import annotations

from pathlib import Path

import click

from ccchat.config.parser import ConfigError, load_config
from ccchat.helpers import truncate
from ccchat.history.store import ChatNotFoundError, ChatStore


@click.command()
@click.option("--delete", "delete_id", type=str, default=None, help="Delete the chat with this id.")
@click.option("--clear", "clear_id", type=str, default=None, help="Remove all messages from this chat.")
@click.option("--clear-all", is_flag=True, help="Delete every stored chat.")
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
def chats(
    delete_id: str | None,
    clear_id: str | None,
    clear_all: bool,
    config_file: str | None,
) -> None:
    """List stored chats, newest first."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    store = ChatStore(config.history.resolved_path)

    if clear_all:
        count = len(store.list_chats())
        store.clear_all()
        click.echo(f"Deleted {count} chat(s)")
        return

    if clear_id is not None:
        try:
            store.clear_chat(clear_id)
        except ChatNotFoundError:
            click.echo(f"No chat with id {clear_id}", err=True)
            raise SystemExit(1) from None
        click.echo(f"Cleared chat {clear_id}")
        return

    if delete_id is not None:
        if not store.delete_chat(delete_id):
            click.echo(f"No chat with id {delete_id}", err=True)
            raise SystemExit(1)
        click.echo(f"Deleted chat {delete_id}")
        return

    sessions = store.list_chats()
    if not sessions:
        click.echo("No chats yet.")
        return

    for chat in sessions:
        created = chat.created_at.strftime("%Y-%m-%d %H:%M")
        project = f"  [{chat.project_name}]" if chat.project_name else ""
        click.echo(f"{chat.id}  {created}  {chat.message_count:>3} msgs  {chat.title}{project}")
        if chat.last_message:
            click.echo(f"    {truncate(chat.last_message.replace(chr(10), ' '), 72)}")
