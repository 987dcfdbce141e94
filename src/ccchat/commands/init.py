"""ccchat init — scaffold a ccchat configuration in the current directory."""

from __future__ import annotations

from pathlib import Path

import click

CONFIG_FILENAME = "ccchat.yaml"
ENV_EXAMPLE_FILENAME = ".env.example"

TEMPLATE_YAML = """\
# ccchat configuration
version: "1"

# HTTP listener for the chat UI
server:
  host: 127.0.0.1
  port: 3002
  cors_origins:
    - http://localhost:3000
    - http://localhost:3001
    - http://localhost:3002
    - file://

# How the Claude Code CLI is invoked
assistant:
  binary: claude
  # streaming (stream-json events) or static (plain text)
  mode: streaming
  permission_mode: bypassPermissions
  # Seconds without any output before a request is killed (0 disables)
  idle_timeout: 600
  # Seconds between SIGTERM and SIGKILL when a request is cancelled
  terminate_grace: 3
  # Extra arguments placed before the prompt
  # extra_args: ["--model", "sonnet"]

# Where chat sessions are stored
history:
  path: ~/.ccchat/chats.json
"""

TEMPLATE_ENV_EXAMPLE = """\
# Environment overrides for ccchat.
# Copy this file to .env; it is read from the directory holding ccchat.yaml.

# Port for `ccchat serve` (takes precedence over server.port)
CCCHAT_PORT=
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing ccchat.yaml if it exists.",
)
def init(force: bool) -> None:
    """Scaffold a ccchat.yaml in the current directory."""
    cwd = Path.cwd()
    config_path = cwd / CONFIG_FILENAME
    env_example_path = cwd / ENV_EXAMPLE_FILENAME

    if config_path.exists() and not force:
        raise click.ClickException(
            f"{CONFIG_FILENAME} already exists. Use --force to overwrite."
        )

    try:
        config_path.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot write {CONFIG_FILENAME}: {exc}") from exc
    click.echo(f"  Created {CONFIG_FILENAME}")

    if not env_example_path.exists() or force:
        try:
            env_example_path.write_text(TEMPLATE_ENV_EXAMPLE, encoding="utf-8")
        except OSError as exc:
            raise click.ClickException(
                f"Cannot write {ENV_EXAMPLE_FILENAME}: {exc}"
            ) from exc
        click.echo(f"  Created {ENV_EXAMPLE_FILENAME}")
    else:
        click.echo(f"  Skipped {ENV_EXAMPLE_FILENAME} (already exists)")

    click.echo()
    click.echo("Next steps:")
    click.echo(f"  1. Edit {CONFIG_FILENAME} to point at your Claude Code install")
    click.echo("  2. Run `ccchat serve` and open the chat UI")
