"""Chat service — run one request through the streaming pipeline."""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from ccchat.config.models import AssistantConfig
from ccchat.history.models import Message
from ccchat.history.store import ChatNotFoundError, ChatStore
from ccchat.runner.process import IdleTimeoutError, ProcessRunner, SpawnError
from ccchat.stream.classifier import classify
from ccchat.stream.framer import frame_records
from ccchat.stream.reconciler import Reconciler, Subscription

logger = logging.getLogger(__name__)


class DuplicateRequestError(Exception):
    """Raised when a request id is reused while its turn is still live."""


class ChatRequest(BaseModel):
    """One prompt to send to the assistant."""

    model_config = ConfigDict(frozen=True)

    message: str = Field(min_length=1, description="Prompt text")
    working_directory: str = Field(min_length=1, description="Directory to run in")
    request_id: str = Field(min_length=1, description="Client-chosen identifier")
    is_existing_chat: bool = Field(
        default=False,
        description="Follow-up turn: pass --continue to the assistant",
    )
    chat_id: str | None = Field(
        default=None,
        description="Chat to record the exchange in, if any",
    )
    mode: Literal["streaming", "static"] | None = Field(
        default=None,
        description="Response mode (None: use the configured default)",
    )
    verbose: bool = Field(
        default=False,
        description="Keep raw stream records on the final message",
    )


class ChatTurn:
    """A single request/response exchange.

    Owns one ProcessRunner and one Reconciler.  ``result()`` always
    resolves to exactly one assistant Message: spawn failures, non-zero
    exits, idle timeouts and cancellation all end in a Message rather
    than an exception.
    """

    def __init__(
        self,
        request: ChatRequest,
        config: AssistantConfig,
        on_finish: Callable[[ChatTurn, Message], None] | None = None,
    ) -> None:
        self.request = request
        self._config = config
        self._streaming = (request.mode or config.mode) == "streaming"
        self._runner = ProcessRunner(config, name=f"req:{request.request_id}")
        self._reconciler = Reconciler(request.request_id, keep_details=request.verbose)
        self._on_finish = on_finish
        self._task: asyncio.Task[Message] | None = None
        self._cancelled = False

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def streaming(self) -> bool:
        return self._streaming

    @property
    def runner(self) -> ProcessRunner:
        return self._runner

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def subscribe(self) -> Subscription:
        """Observe this turn's updates.

        Subscribe before the event loop next runs the turn's task, or
        earlier updates are missed.
        """
        return self._reconciler.subscribe()

    def start(self) -> asyncio.Task[Message]:
        """Schedule the turn.  Idempotent."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"turn-{self.request_id}")
        return self._task

    async def result(self) -> Message:
        """Wait for the final Message without letting callers cancel the turn."""
        return await asyncio.shield(self.start())

    def cancel(self) -> None:
        """Stop the subprocess and end all subscriptions now.

        The final Message still carries whatever arrived before the signal.
        Idempotent.
        """
        if self._cancelled or self.done:
            return
        self._cancelled = True
        logger.info("%s: cancelling request", self.request_id)
        self._runner.abort()
        self._reconciler.close()

    # ------------------------------------------------------------------ #
    # Pipeline
    # ------------------------------------------------------------------ #

    async def _run(self) -> Message:
        finalize = self._reconciler.finalize if self._streaming else self._reconciler.finalize_static
        if self._cancelled:
            return self._finish(finalize(None, cancelled=True))

        req = self.request
        try:
            await self._runner.start(
                req.message,
                req.working_directory,
                is_existing_chat=req.is_existing_chat,
                streaming=self._streaming,
            )
        except SpawnError as exc:
            logger.error("%s: %s", self.request_id, exc)
            return self._finish(finalize(None, error=str(exc)))

        if self._cancelled:
            # cancel() arrived while the process was being spawned.
            self._runner.abort()

        error: str | None = None
        try:
            if self._streaming:
                await self._consume_stream()
            else:
                await self._consume_text()
        except IdleTimeoutError as exc:
            logger.warning("%s: %s, killing assistant", self.request_id, exc)
            error = str(exc)
            self._runner.abort()
        except asyncio.CancelledError:
            self._cancelled = True
            self._runner.abort()
            self._finish(finalize(None, cancelled=True))
            raise
        except Exception as exc:
            logger.exception("%s: error reading assistant output", self.request_id)
            error = f"Unexpected error reading output: {exc}"
            self._runner.abort()

        exit_code = await self._runner.wait()
        message = finalize(
            exit_code,
            error=error,
            cancelled=self._cancelled and error is None,
            stderr=self._runner.stderr,
        )
        if message.status == "error":
            logger.error("%s: request failed (exit code %s)", self.request_id, exit_code)
        return self._finish(message)

    async def _consume_stream(self) -> None:
        chunks = self._runner.iter_stdout(self._config.idle_timeout)
        async for record in frame_records(chunks):
            if not record.strip():
                continue
            event, unit = classify(record)
            self._reconciler.feed(event, unit)

    async def _consume_text(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        text = ""
        async for chunk in self._runner.iter_stdout(self._config.idle_timeout):
            piece = decoder.decode(chunk)
            if piece:
                text += piece
                self._reconciler.progress(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            self._reconciler.progress(text + tail)

    def _finish(self, message: Message) -> Message:
        if self._on_finish is not None:
            try:
                self._on_finish(self, message)
            except Exception:
                logger.exception("%s: on_finish hook failed", self.request_id)
        return message


class ChatService:
    """Starts ChatTurns and keeps at most one in flight per chat."""

    def __init__(self, config: AssistantConfig, store: ChatStore | None = None) -> None:
        self._config = config
        self._store = store
        self._turns: dict[str, ChatTurn] = {}
        self._chat_turns: dict[str, ChatTurn] = {}
        self._chat_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def config(self) -> AssistantConfig:
        return self._config

    @property
    def active_turns(self) -> list[ChatTurn]:
        return list(self._turns.values())

    def get_turn(self, request_id: str) -> ChatTurn | None:
        return self._turns.get(request_id)

    def cancel(self, request_id: str) -> bool:
        """Cancel the live turn for *request_id*, even one still queued behind its chat."""
        turn = self._turns.get(request_id)
        if turn is None:
            return False
        turn.cancel()
        return True

    async def start_turn(self, request: ChatRequest) -> ChatTurn:
        """Start *request*, cancelling the chat's previous turn first.

        The request id is reserved before anything is awaited, and the
        cancel-and-start step runs under a per-chat lock, so concurrent
        calls for one chat leave exactly one turn live.

        The returned turn has been scheduled but has not run yet, so the
        caller can subscribe before any update is published.

        Raises:
            DuplicateRequestError: a live turn already uses ``request_id``.
            ChatNotFoundError: ``chat_id`` is set but unknown to the store.
        """
        request_id = request.request_id
        chat_id = request.chat_id
        if request_id in self._turns:
            msg = f"Request {request_id!r} is already active"
            raise DuplicateRequestError(msg)
        if chat_id is not None and self._store is not None and chat_id not in self._store:
            raise ChatNotFoundError(chat_id)

        turn = ChatTurn(request, self._config, on_finish=self._turn_finished)
        self._turns[request_id] = turn
        if chat_id is None:
            turn.start()
            return turn

        try:
            async with self._chat_locks[chat_id]:
                prior = self._chat_turns.get(chat_id)
                if prior is not None and not prior.done:
                    logger.info(
                        "chat %s: cancelling %s before starting %s",
                        chat_id,
                        prior.request_id,
                        request_id,
                    )
                    prior.cancel()
                    await prior.result()
                if self._store is not None:
                    self._store.append_message(
                        chat_id, Message(role="user", content=request.message)
                    )
                self._chat_turns[chat_id] = turn
                turn.start()
        except BaseException:
            if self._turns.get(request_id) is turn:
                del self._turns[request_id]
            raise
        return turn

    def _turn_finished(self, turn: ChatTurn, message: Message) -> None:
        if self._turns.get(turn.request_id) is turn:
            del self._turns[turn.request_id]
        chat_id = turn.request.chat_id
        if chat_id is None:
            return
        if self._chat_turns.get(chat_id) is turn:
            del self._chat_turns[chat_id]
        if self._store is not None:
            try:
                self._store.append_message(chat_id, message)
            except ChatNotFoundError:
                logger.warning("chat %s deleted before %s finished", chat_id, turn.request_id)

    async def shutdown(self) -> None:
        """Cancel every in-flight turn and wait for their final messages."""
        turns = list(self._turns.values())
        for turn in turns:
            turn.cancel()
        if turns:
            await asyncio.gather(*(turn.result() for turn in turns), return_exceptions=True)
