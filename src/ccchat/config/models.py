"""Pydantic v2 models for ccchat.yaml configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ccchat.constants import DEFAULT_BINARY, DEFAULT_PORT

_DEFAULT_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
    "http://localhost:3002",
    "file://",
]


class ServerConfig(BaseModel):
    """HTTP listener settings."""

    model_config = ConfigDict(extra="forbid")

    host: str = Field(default="127.0.0.1", description="Interface to bind")
    port: int = Field(
        default=DEFAULT_PORT,
        ge=1,
        le=65535,
        description="TCP port to listen on",
    )
    cors_origins: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_ORIGINS),
        description="Origins allowed to call the API from a browser",
    )


class AssistantConfig(BaseModel):
    """How the external assistant CLI is invoked."""

    model_config = ConfigDict(extra="forbid")

    binary: str = Field(
        default=DEFAULT_BINARY,
        description="Executable name or path of the assistant CLI",
    )
    mode: Literal["streaming", "static"] = Field(
        default="streaming",
        description="Default response mode for chat requests",
    )
    permission_mode: str = Field(
        default="bypassPermissions",
        description="Value passed to --permission-mode",
    )
    extra_args: list[str] = Field(
        default_factory=list,
        description="Additional arguments placed before the prompt",
    )
    idle_timeout: float = Field(
        default=600.0,
        ge=0,
        description="Seconds without output before a request is killed (0 to disable)",
    )
    terminate_grace: float = Field(
        default=3.0,
        gt=0,
        description="Seconds between SIGTERM and SIGKILL on abort",
    )
    stripped_env: list[str] = Field(
        default_factory=list,
        description="Environment variables removed before spawning the CLI",
    )
    node_heap_limit_mb: int = Field(
        default=2048,
        ge=0,
        description="V8 heap cap for the Node.js based CLI (0 to disable)",
    )
    init_args: list[str] = Field(
        default_factory=lambda: ["init", "--output-format", "json"],
        description="Arguments for the one-shot project initialization run",
    )

    @field_validator("binary")
    @classmethod
    def _binary_not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "binary must not be empty"
            raise ValueError(msg)
        return value


class HistoryConfig(BaseModel):
    """Where chat history is persisted."""

    model_config = ConfigDict(extra="forbid")

    path: str = Field(
        default="~/.ccchat/chats.json",
        description="JSON file holding all chat sessions",
    )

    @property
    def resolved_path(self) -> Path:
        return Path(self.path).expanduser()


class CCChatConfig(BaseModel):
    """Top-level ccchat.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1", description="Config schema version")
    server: ServerConfig = Field(
        default_factory=ServerConfig,
        description="HTTP listener settings",
    )
    assistant: AssistantConfig = Field(
        default_factory=AssistantConfig,
        description="Assistant CLI invocation settings",
    )
    history: HistoryConfig = Field(
        default_factory=HistoryConfig,
        description="Chat history persistence",
    )
