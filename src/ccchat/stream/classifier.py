"""Event classifier — parse stream-json records and extract display content.

``claude -p --output-format stream-json --verbose`` emits these
top-level record types:

* ``system``    — session init (``subtype="init"``) and other notices.
* ``assistant`` — wraps an API message; content blocks are nested inside
  ``message.content[]`` as ``text``, ``tool_use`` or ``thinking`` blocks.
  Each record carries the full current text, not a delta.
* ``user``      — tool results fed back to the model.
* ``result``    — final aggregated result with ``result``,
  ``duration_ms`` and ``total_cost_usd``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ccchat.stream.events import KNOWN_KINDS, ContentUnit, Event

logger = logging.getLogger(__name__)

#: Characters of the result payload shown in the completion notice.
_RESULT_PREVIEW_CHARS = 100


def parse_record(line: str) -> Event:
    """Parse one record into an Event.  Never raises."""
    stripped = line.strip()
    if not stripped:
        return Event(kind="unknown", raw=line)

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        logger.debug("skipping malformed stream record: %s", stripped[:200])
        return Event(kind="unknown", raw=line)

    if not isinstance(data, dict):
        logger.debug("skipping non-object stream record: %s", stripped[:200])
        return Event(kind="unknown", raw=line)

    event_type = data.get("type")
    subtype = data.get("subtype")
    return Event(
        kind=event_type if event_type in KNOWN_KINDS else "unknown",
        subtype=subtype if isinstance(subtype, str) else None,
        payload=data,
        raw=line,
    )


def extract_content(event: Event) -> ContentUnit:
    """Return the user-facing ContentUnit carried by *event*."""
    match event.kind:
        case "system":
            return _system_unit(event)
        case "assistant":
            return _assistant_unit(event)
        case "user":
            return _user_unit(event)
        case "result":
            return _result_unit(event)
    return ContentUnit.empty()


def classify(line: str) -> tuple[Event, ContentUnit]:
    """Parse *line* and extract its ContentUnit in one step."""
    event = parse_record(line)
    try:
        unit = extract_content(event)
    except Exception:
        # A record with an unexpected shape must not stop the stream.
        logger.warning("failed to extract content from %s record", event.kind, exc_info=True)
        unit = ContentUnit.empty()
    return event, unit


# ---------------------------------------------------------------------- #
# Per-kind extraction
# ---------------------------------------------------------------------- #


def _system_unit(event: Event) -> ContentUnit:
    if event.subtype == "init":
        text = "🔧 Initializing Claude Code session..."
    else:
        text = f"📋 System: {event.subtype or 'message'}"
    return ContentUnit(text=text, category="system", should_display=True)


def _assistant_unit(event: Event) -> ContentUnit:
    text = assistant_text(event)
    if text.strip():
        return ContentUnit(text=text, category="assistant", should_display=True)

    tool_names = [
        str(block.get("name", ""))
        for block in _blocks(event.message_content)
        if block.get("type") == "tool_use"
    ]
    if tool_names:
        return ContentUnit(
            text=f"⚙️ Using tools: {', '.join(tool_names)}",
            category="assistant",
            should_display=True,
        )
    return ContentUnit.empty()


def _user_unit(event: Event) -> ContentUnit:
    results = [
        block
        for block in _blocks(event.message_content)
        if block.get("type") == "tool_result"
    ]
    if not results:
        return ContentUnit.empty()
    count = len(results)
    plural = "s" if count > 1 else ""
    return ContentUnit(
        text=f"📄 Tool completed ({count} result{plural})",
        category="user",
        should_display=True,
    )


def _result_unit(event: Event) -> ContentUnit:
    result = result_text(event)
    if result is not None:
        preview = result[:_RESULT_PREVIEW_CHARS]
        ellipsis = "..." if len(result) > _RESULT_PREVIEW_CHARS else ""
        return ContentUnit(
            text=f"✅ Task completed: {preview}{ellipsis}",
            category="result",
            should_display=True,
        )

    parts: list[str] = []
    duration = event.payload.get("duration_ms")
    if _is_number(duration):
        parts.append(format_duration(duration))
    cost = event.payload.get("total_cost_usd")
    if _is_number(cost):
        parts.append(format_cost(cost))
    text = "✅ Task completed"
    if parts:
        text += f" ({', '.join(parts)})"
    return ContentUnit(text=text, category="result", should_display=True)


# ---------------------------------------------------------------------- #
# Field accessors used by the reconciler
# ---------------------------------------------------------------------- #


def assistant_text(event: Event) -> str:
    """Concatenated text of all ``text`` blocks of an assistant event."""
    if event.kind != "assistant":
        return ""
    content = event.message_content
    if isinstance(content, str):
        return content
    return "".join(
        block["text"]
        for block in _blocks(content)
        if block.get("type") == "text" and isinstance(block.get("text"), str)
    )


def result_text(event: Event) -> str | None:
    """The text of a result event's ``result`` payload, if any.

    A block list is flattened with :func:`extract_final_content`.
    """
    if event.kind != "result":
        return None
    result = event.payload.get("result")
    if isinstance(result, list):
        result = extract_final_content(result)
    if isinstance(result, str) and result:
        return result
    return None


def extract_final_content(content: Any) -> str:
    """Flatten a message ``content`` value (string or block list) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            block["text"]
            for block in _blocks(content)
            if block.get("type") == "text" and isinstance(block.get("text"), str)
        )
    return ""


# ---------------------------------------------------------------------- #
# Formatting
# ---------------------------------------------------------------------- #


def format_cost(usd: float) -> str:
    """``0.0001`` -> ``$0.1m`` (thousandths), ``0.05`` -> ``$0.050``."""
    if usd < 0.01:
        return f"${usd * 1000:.1f}m"
    return f"${usd:.3f}"


def format_duration(ms: float) -> str:
    """``850`` -> ``850ms``, ``12345`` -> ``12.3s``."""
    if ms < 1000:
        return f"{ms:g}ms"
    return f"{ms / 1000:.1f}s"


def _blocks(content: Any) -> list[dict[str, Any]]:
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)
