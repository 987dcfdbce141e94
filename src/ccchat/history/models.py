"""Pydantic v2 models for chat history."""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from ccchat.stream.events import ContentUnit

#: Characters of the last message kept as the chat preview.
PREVIEW_CHARS = 100

#: Characters of the first user message used as the chat title.
TITLE_CHARS = 50

_CODE_BLOCK_RE = re.compile(r"```(\w+)?\n([\s\S]*?)```")

_EXTENSIONS = {
    "javascript": "js",
    "typescript": "ts",
    "jsx": "jsx",
    "tsx": "tsx",
    "python": "py",
    "java": "java",
    "cpp": "cpp",
    "c": "c",
    "html": "html",
    "css": "css",
    "json": "json",
    "yaml": "yml",
    "yml": "yml",
    "markdown": "md",
    "sql": "sql",
    "bash": "sh",
    "shell": "sh",
}


def new_id() -> str:
    """Short unique identifier (12-char hex)."""
    return uuid.uuid4().hex[:12]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class FileItem(BaseModel):
    """A file-like artifact detected in a message."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Display name")
    size: str = Field(description="Human-readable size, e.g. '1.2 KB'")
    type: Literal["code", "image", "document"] = Field(default="code")


class Message(BaseModel):
    """The finalized artifact of one side of an exchange.  Never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id, description="Unique message id")
    role: Literal["user", "assistant"] = Field(description="Who wrote it")
    content: str = Field(description="Message text")
    content_units: list[ContentUnit] = Field(
        default_factory=list,
        description="Display units accumulated while streaming, for replay",
    )
    timestamp: datetime = Field(default_factory=utc_now)
    status: Literal["complete", "error", "cancelled"] = Field(
        default="complete",
        description="How the request producing this message ended",
    )
    streaming_details: list[str] = Field(
        default_factory=list,
        description="Raw stream records (verbose replay only)",
    )
    files: list[FileItem] = Field(
        default_factory=list,
        description="Code blocks detected in the content",
    )


class ChatSession(BaseModel):
    """A persisted conversation."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id)
    title: str = Field(default="New Chat")
    created_at: datetime = Field(default_factory=utc_now)
    messages: list[Message] = Field(default_factory=list)
    message_count: int = Field(default=0, ge=0)
    last_message: str | None = Field(default=None)
    project_path: str | None = Field(default=None)
    project_name: str | None = Field(default=None)


def detect_files(content: str) -> list[FileItem]:
    """Describe each fenced code block in *content* as a generated file."""
    files: list[FileItem] = []
    for index, match in enumerate(_CODE_BLOCK_RE.finditer(content), start=1):
        language = match.group(1) or "text"
        code = match.group(2)
        extension = _EXTENSIONS.get(language.lower(), "txt")
        size_kb = round(len(code) / 1024 * 10) / 10
        files.append(
            FileItem(name=f"generated_{index}.{extension}", size=f"{size_kb} KB")
        )
    return files
