"""Pydantic v2 models for parsed assistant stream records."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

EventKind = Literal["system", "assistant", "user", "result", "unknown"]

#: Event kinds recognised on the wire; anything else parses as ``unknown``.
KNOWN_KINDS: frozenset[str] = frozenset({"system", "assistant", "user", "result"})


class Event(BaseModel):
    """One parsed record from the assistant's stdout."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind = Field(description="Semantic kind from the 'type' field")
    subtype: str | None = Field(default=None, description="Optional 'subtype' field")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Parsed JSON object (empty for unknown records)",
    )
    raw: str = Field(default="", description="The record exactly as received")

    @property
    def message_content(self) -> Any:
        """``payload.message.content`` or ``None``."""
        message = self.payload.get("message")
        if isinstance(message, dict):
            return message.get("content")
        return None


class ContentUnit(BaseModel):
    """Minimal user-facing fact extracted from an Event."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(default="", description="Display text (empty means nothing)")
    category: str = Field(default="", description="UI grouping tag, mirrors Event kind")
    should_display: bool = Field(
        default=False,
        description="Whether the unit carries anything worth showing",
    )

    @classmethod
    def empty(cls) -> ContentUnit:
        return cls()

    @property
    def key(self) -> tuple[str, str]:
        """Identity used for de-duplication."""
        return (self.text, self.category)


class StreamUpdate(BaseModel):
    """What a Reconciler publishes to its subscribers."""

    model_config = ConfigDict(frozen=True)

    type: Literal["event", "progress"] = "event"
    event: Event | None = Field(default=None, description="The raw parsed record")
    unit: ContentUnit | None = Field(
        default=None,
        description="Newly accepted display unit, if this event produced one",
    )
    content: str | None = Field(
        default=None,
        description="Full text so far (static mode progress only)",
    )
