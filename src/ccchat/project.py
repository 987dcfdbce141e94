"""Project inspection and one-shot initialization."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field

from ccchat.config.models import AssistantConfig
from ccchat.helpers import format_stderr_preview
from ccchat.history.models import Message
from ccchat.runner.process import IdleTimeoutError, SpawnError, run_once

logger = logging.getLogger(__name__)

#: File names that mark a directory as configured for the assistant.
CONFIG_FILENAMES = ("CLAUDE.md", "Claude.md", "claude.md", ".claude.md")

INIT_SUCCESS_TEXT = (
    "Project initialized successfully! "
    "Claude Code is now ready to assist with your project."
)


class ProjectInitError(Exception):
    """The initialization run failed."""


class ProjectInfo(BaseModel):
    """Whether a directory already carries assistant configuration."""

    has_claude_config: bool = Field(description="A config file was found")
    claude_config_path: str | None = Field(default=None)
    needs_init: bool = Field(description="True when no config file exists")


def check_project(working_directory: str | Path) -> ProjectInfo:
    """Look for a CLAUDE.md-style file directly inside *working_directory*."""
    root = Path(working_directory).expanduser()
    # Compare against the real listing: case-insensitive file systems
    # would otherwise report CLAUDE.md for every spelling.
    try:
        present = {entry.name for entry in root.iterdir()}
    except OSError:
        present = set()
    for name in CONFIG_FILENAMES:
        if name in present and (root / name).is_file():
            return ProjectInfo(
                has_claude_config=True,
                claude_config_path=str(root / name),
                needs_init=False,
            )
    return ProjectInfo(has_claude_config=False, needs_init=True)


async def init_project(
    working_directory: str | Path,
    config: AssistantConfig,
) -> Message:
    """Run the assistant's init command once and return its output.

    Raises:
        ProjectInitError: The CLI could not be spawned or exited non-zero.
    """
    try:
        returncode, stdout, stderr = await run_once(
            config, list(config.init_args), working_directory, name="init"
        )
    except (SpawnError, IdleTimeoutError) as exc:
        raise ProjectInitError(str(exc)) from exc

    if returncode != 0:
        msg = f"Claude init failed with exit code {returncode}"
        preview = format_stderr_preview(stderr)
        if preview:
            msg += f": {preview}"
        logger.error("init in %s: %s", working_directory, msg)
        raise ProjectInitError(msg)

    return Message(role="assistant", content=stdout.strip() or INIT_SUCCESS_TEXT)
