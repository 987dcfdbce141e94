"""Stream reconciler — fold classified events into one final Message."""

from __future__ import annotations

import asyncio
import logging

from ccchat.helpers import format_stderr_preview
from ccchat.history.models import Message, detect_files
from ccchat.stream.classifier import assistant_text, extract_content, result_text
from ccchat.stream.events import ContentUnit, Event, StreamUpdate

logger = logging.getLogger(__name__)

EMPTY_STREAM_TEXT = "Streaming completed but no content received."
EMPTY_STATIC_TEXT = "Command completed successfully."
CANCELLED_TEXT = "Request cancelled before any content was received."


class StreamAccumulator:
    """Mutable per-request state, touched only by its Reconciler."""

    def __init__(self) -> None:
        self.units: list[ContentUnit] = []
        self.events: list[Event] = []  # only kept with keep_details
        self.event_count = 0
        self.latest_assistant_text = ""
        self.final_text: str | None = None
        self._seen: set[tuple[str, str]] = set()

    def add_unit(self, unit: ContentUnit) -> bool:
        """Append *unit* unless an identical (text, category) pair exists."""
        if unit.key in self._seen:
            return False
        self._seen.add(unit.key)
        self.units.append(unit)
        return True

    @property
    def best_text(self) -> str:
        """``final_text`` if set, else the latest assistant text."""
        return self.final_text or self.latest_assistant_text


class Subscription:
    """Async iterator over the updates of one request.

    Backed by an unbounded queue so the producer never blocks and
    nothing is dropped when the consumer is slow.
    """

    def __init__(self, owner: Reconciler) -> None:
        self._owner = owner
        self._queue: asyncio.Queue[StreamUpdate | None] = asyncio.Queue()
        self._done = False

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> StreamUpdate:
        if self._done:
            raise StopAsyncIteration
        update = await self._queue.get()
        if update is None:
            self._done = True
            raise StopAsyncIteration
        return update

    def _put(self, update: StreamUpdate | None) -> None:
        self._queue.put_nowait(update)

    def close(self) -> None:
        """Stop receiving updates; the iterator ends after queued items."""
        self._owner._unsubscribe(self)
        self._put(None)


class Reconciler:
    """Owns the StreamAccumulator of one in-flight request.

    Events must be fed in arrival order from a single producer.  Any
    number of subscribers may observe the per-event updates.
    """

    def __init__(self, request_id: str, *, keep_details: bool = False) -> None:
        self.request_id = request_id
        self.accumulator = StreamAccumulator()
        self._keep_details = keep_details
        self._subscribers: list[Subscription] = []
        self._message: Message | None = None

    @property
    def finalized(self) -> bool:
        return self._message is not None

    @property
    def message(self) -> Message | None:
        return self._message

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self) -> Subscription:
        """Register a new subscriber.  Ends immediately if already final."""
        sub = Subscription(self)
        if self.finalized:
            sub._put(None)
        else:
            self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def _publish(self, update: StreamUpdate) -> None:
        for sub in self._subscribers:
            sub._put(update)

    def close(self) -> None:
        """End every subscription without finalizing."""
        subs, self._subscribers = self._subscribers, []
        for sub in subs:
            sub._put(None)

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def feed(self, event: Event, unit: ContentUnit | None = None) -> ContentUnit | None:
        """Fold *event* into the accumulator.

        Returns the ContentUnit if it was accepted as new display content,
        otherwise ``None``.  *unit* may be passed when the caller already
        extracted it.
        """
        if self.finalized:
            logger.warning("%s: event after finalize ignored", self.request_id)
            return None

        acc = self.accumulator
        acc.event_count += 1
        if self._keep_details:
            acc.events.append(event)

        if unit is None:
            unit = extract_content(event)
        accepted: ContentUnit | None = None
        if unit.should_display and unit.text and acc.add_unit(unit):
            accepted = unit

        if event.kind == "assistant":
            text = assistant_text(event)
            if text:
                acc.latest_assistant_text = text
        elif event.kind == "result":
            result = result_text(event)
            if result is not None:
                acc.final_text = result

        self._publish(StreamUpdate(event=event, unit=accepted))
        return accepted

    def progress(self, content: str) -> None:
        """Publish a plain-text progress update (static mode)."""
        if not self.finalized:
            self.accumulator.latest_assistant_text = content
            self._publish(StreamUpdate(type="progress", content=content))

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize(
        self,
        exit_code: int | None,
        *,
        error: str | None = None,
        cancelled: bool = False,
        stderr: str = "",
    ) -> Message:
        """Produce the single terminal Message for this request."""
        if self.finalized:
            msg = f"Request {self.request_id} already finalized"
            raise RuntimeError(msg)

        acc = self.accumulator
        if cancelled:
            content = acc.best_text or CANCELLED_TEXT
            status = "cancelled"
        elif error is None and exit_code == 0:
            content = acc.best_text or EMPTY_STREAM_TEXT
            status = "complete"
        else:
            content = _failure_text(exit_code, error, stderr, acc.best_text)
            status = "error"

        return self._emit(content, status)

    def finalize_static(
        self,
        exit_code: int | None,
        *,
        error: str | None = None,
        cancelled: bool = False,
        stderr: str = "",
    ) -> Message:
        """Terminal Message for plain-text mode: stdout is the answer."""
        if self.finalized:
            msg = f"Request {self.request_id} already finalized"
            raise RuntimeError(msg)

        text = self.accumulator.latest_assistant_text
        if cancelled:
            return self._emit(text or CANCELLED_TEXT, "cancelled")
        if error is None and exit_code == 0:
            return self._emit(text or EMPTY_STATIC_TEXT, "complete")
        return self._emit(_failure_text(exit_code, error, stderr, text), "error")

    def _emit(self, content: str, status: str) -> Message:
        acc = self.accumulator
        details = [event.raw for event in acc.events]
        message = Message(
            role="assistant",
            content=content,
            content_units=list(acc.units),
            status=status,
            streaming_details=details,
            files=detect_files(content) if status == "complete" else [],
        )
        self._message = message
        logger.debug(
            "%s: finalized (%s) with %d units from %d events",
            self.request_id,
            status,
            len(acc.units),
            acc.event_count,
        )
        self.close()
        return message


def _failure_text(
    exit_code: int | None,
    error: str | None,
    stderr: str,
    partial: str,
) -> str:
    if error is not None:
        text = f"Error executing Claude Code: {error}"
    else:
        text = f"Claude command failed with exit code {exit_code}."
    preview = format_stderr_preview(stderr)
    if preview:
        text += f"\n\nStderr:\n  {preview}"
    if partial:
        text += f"\n\nPartial response:\n{partial}"
    return text
