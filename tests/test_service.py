"""Tests for ChatTurn / ChatService orchestration."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ccchat.config.models import AssistantConfig
from ccchat.history.store import ChatNotFoundError, ChatStore
from ccchat.service import ChatRequest, ChatService, ChatTurn, DuplicateRequestError
from ccchat.stream.reconciler import CANCELLED_TEXT

INIT = b'{"type":"system","subtype":"init","session_id":"s1"}\n'
HELLO = (
    json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Hello"}]}})
    + "\n"
).encode()
DONE = b'{"type":"result","subtype":"success","result":"Done.","total_cost_usd":0.0001}\n'

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class MockAsyncStdout:
    """Async-aware mock stdout; ``read()`` blocks until fed or closed."""

    def __init__(self, *chunks: bytes, eof: bool = False) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        for chunk in chunks:
            self.feed(chunk)
        if eof:
            self.close()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def close(self) -> None:
        self._queue.put_nowait(b"")

    async def read(self, n: int = -1) -> bytes:
        return await self._queue.get()


def _make_mock_process(stdout: MockAsyncStdout, returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.pid = 1001
    proc.stdout = stdout
    proc.stderr = MagicMock()
    proc.stderr.read = AsyncMock(return_value=b"")
    proc.wait = AsyncMock(return_value=returncode)
    proc.terminate = MagicMock(side_effect=stdout.close)
    proc.kill = MagicMock()
    return proc


def _request(tmp_path: Path, **overrides: object) -> ChatRequest:
    fields: dict[str, object] = {
        "message": "What does this repo do?",
        "working_directory": str(tmp_path),
        "request_id": "req-1",
    }
    fields.update(overrides)
    return ChatRequest(**fields)


@pytest.fixture
def store(tmp_path: Path) -> ChatStore:
    return ChatStore(tmp_path / "history" / "chats.json")


# ------------------------------------------------------------------ #
# ChatTurn
# ------------------------------------------------------------------ #


class TestStreamingTurn:
    async def test_full_exchange(self, tmp_path: Path) -> None:
        proc = _make_mock_process(MockAsyncStdout(INIT, HELLO, DONE, eof=True))
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path))
            sub = turn.subscribe()
            updates = [u async for u in sub]
            message = await turn.result()

        assert [u.event.kind for u in updates] == ["system", "assistant", "result"]
        assert message.content == "Done."
        assert message.status == "complete"
        assert [u.text for u in message.content_units] == [
            "🔧 Initializing Claude Code session...",
            "Hello",
            "✅ Task completed: Done.",
        ]
        assert service.active_turns == []

    async def test_records_split_across_chunks(self, tmp_path: Path) -> None:
        data = INIT + HELLO
        proc = _make_mock_process(MockAsyncStdout(data[:30], data[30:75], data[75:], eof=True))
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path))
            message = await turn.result()
        assert message.content == "Hello"
        assert len(message.content_units) == 2

    async def test_malformed_lines_skipped(self, tmp_path: Path) -> None:
        proc = _make_mock_process(MockAsyncStdout(b"not json\n\n", HELLO, eof=True))
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path))
            message = await turn.result()
        assert message.status == "complete"
        assert message.content == "Hello"

    async def test_nonzero_exit_without_output(self, tmp_path: Path) -> None:
        proc = _make_mock_process(MockAsyncStdout(eof=True), returncode=1)
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path))
            message = await turn.result()
        assert message.status == "error"
        assert "exit code 1" in message.content

    async def test_spawn_failure_becomes_message(self, tmp_path: Path) -> None:
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError()):
            turn = await service.start_turn(_request(tmp_path))
            sub = turn.subscribe()
            message = await turn.result()
        assert message.status == "error"
        assert "not found" in message.content
        assert [u async for u in sub] == []

    async def test_idle_timeout(self, tmp_path: Path) -> None:
        proc = _make_mock_process(MockAsyncStdout(INIT), returncode=-15)
        service = ChatService(AssistantConfig(idle_timeout=0.05))
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path))
            message = await asyncio.wait_for(turn.result(), timeout=2)
        assert message.status == "error"
        assert "No output from assistant" in message.content
        proc.terminate.assert_called_once()

    async def test_verbose_keeps_raw_records(self, tmp_path: Path) -> None:
        proc = _make_mock_process(MockAsyncStdout(INIT, DONE, eof=True))
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path, verbose=True))
            message = await turn.result()
        assert message.streaming_details == [INIT.decode().rstrip("\n"), DONE.decode().rstrip("\n")]


class TestStaticTurn:
    async def test_plain_text_answer(self, tmp_path: Path) -> None:
        proc = _make_mock_process(MockAsyncStdout(b"The answer ", "is 42 ✅".encode(), eof=True))
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", return_value=proc) as mock_exec:
            turn = await service.start_turn(_request(tmp_path, mode="static"))
            sub = turn.subscribe()
            updates = [u async for u in sub]
            message = await turn.result()
        assert "--output-format" not in mock_exec.call_args.args
        assert [u.content for u in updates] == ["The answer ", "The answer is 42 ✅"]
        assert message.content == "The answer is 42 ✅"

    async def test_configured_default_mode(self, tmp_path: Path) -> None:
        proc = _make_mock_process(MockAsyncStdout(eof=True))
        service = ChatService(AssistantConfig(mode="static"))
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path))
            message = await turn.result()
        assert not turn.streaming
        assert message.content == "Command completed successfully."


class TestCancellation:
    async def test_cancel_mid_stream(self, tmp_path: Path) -> None:
        stdout = MockAsyncStdout(INIT)
        proc = _make_mock_process(stdout, returncode=-15)
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path))
            sub = turn.subscribe()
            first = await anext(sub)
            turn.cancel()
            rest = [u async for u in sub]
            message = await turn.result()

        assert first.event.kind == "system"
        assert rest == []
        assert turn.cancelled
        assert message.status == "cancelled"
        assert message.content == CANCELLED_TEXT
        assert len(message.content_units) == 1
        proc.terminate.assert_called_once()

    async def test_cancel_is_idempotent(self, tmp_path: Path) -> None:
        proc = _make_mock_process(MockAsyncStdout(HELLO), returncode=-15)
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path))
            sub = turn.subscribe()
            await anext(sub)
            turn.cancel()
            turn.cancel()
            message = await turn.result()
            turn.cancel()
        assert message.content == "Hello"
        proc.terminate.assert_called_once()

    async def test_cancel_before_start(self, tmp_path: Path) -> None:
        turn = ChatTurn(_request(tmp_path), AssistantConfig())
        turn.cancel()
        with patch("asyncio.create_subprocess_exec") as mock_exec:
            message = await turn.result()
        mock_exec.assert_not_called()
        assert message.status == "cancelled"

    async def test_shutdown_cancels_everything(self, tmp_path: Path) -> None:
        procs = [
            _make_mock_process(MockAsyncStdout(), returncode=-15),
            _make_mock_process(MockAsyncStdout(), returncode=-15),
        ]
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", side_effect=procs):
            first = await service.start_turn(_request(tmp_path, request_id="a"))
            second = await service.start_turn(_request(tmp_path, request_id="b"))
            await asyncio.sleep(0)
            await service.shutdown()
        assert first.done and second.done
        assert (await first.result()).status == "cancelled"
        assert service.active_turns == []


# ------------------------------------------------------------------ #
# ChatService with history
# ------------------------------------------------------------------ #


class TestHistory:
    async def test_exchange_recorded(self, tmp_path: Path, store: ChatStore) -> None:
        chat = store.create_chat()
        proc = _make_mock_process(MockAsyncStdout(HELLO, DONE, eof=True))
        service = ChatService(AssistantConfig(), store)
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path, chat_id=chat.id))
            await turn.result()

        saved = store.get_chat(chat.id)
        assert [m.role for m in saved.messages] == ["user", "assistant"]
        assert saved.messages[1].content == "Done."
        assert saved.title == "What does this repo do?"
        assert saved.message_count == 2

    async def test_unknown_chat(self, tmp_path: Path, store: ChatStore) -> None:
        service = ChatService(AssistantConfig(), store)
        with patch("asyncio.create_subprocess_exec") as mock_exec:
            with pytest.raises(ChatNotFoundError):
                await service.start_turn(_request(tmp_path, chat_id="missing"))
        mock_exec.assert_not_called()

    async def test_new_turn_replaces_active_one(self, tmp_path: Path, store: ChatStore) -> None:
        chat = store.create_chat()
        first_proc = _make_mock_process(MockAsyncStdout(), returncode=-15)
        second_proc = _make_mock_process(MockAsyncStdout(HELLO, eof=True))
        service = ChatService(AssistantConfig(), store)
        with patch("asyncio.create_subprocess_exec", side_effect=[first_proc, second_proc]):
            first = await service.start_turn(_request(tmp_path, request_id="a", chat_id=chat.id))
            await asyncio.sleep(0)
            second = await service.start_turn(
                _request(tmp_path, request_id="b", chat_id=chat.id, is_existing_chat=True)
            )
            assert first.done
            await second.result()

        first_proc.terminate.assert_called_once()
        statuses = [m.status for m in store.get_chat(chat.id).messages]
        assert statuses == ["complete", "cancelled", "complete", "complete"]

    async def test_chat_deleted_mid_turn(self, tmp_path: Path, store: ChatStore) -> None:
        chat = store.create_chat()
        stdout = MockAsyncStdout(HELLO)
        proc = _make_mock_process(stdout)
        service = ChatService(AssistantConfig(), store)
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path, chat_id=chat.id))
            store.delete_chat(chat.id)
            stdout.close()
            message = await turn.result()
        assert message.content == "Hello"
        assert chat.id not in store

    async def test_concurrent_turns_leave_one_live(self, tmp_path: Path, store: ChatStore) -> None:
        chat = store.create_chat()
        procs = [_make_mock_process(MockAsyncStdout(), returncode=-15) for _ in range(3)]
        service = ChatService(AssistantConfig(), store)
        with patch("asyncio.create_subprocess_exec", side_effect=procs):
            first = await service.start_turn(_request(tmp_path, request_id="a", chat_id=chat.id))
            await asyncio.sleep(0)
            second, third = await asyncio.gather(
                service.start_turn(_request(tmp_path, request_id="b", chat_id=chat.id)),
                service.start_turn(_request(tmp_path, request_id="c", chat_id=chat.id)),
            )
            await asyncio.sleep(0)

            live = [t for t in (first, second, third) if not t.done]
            assert len(live) == 1
            assert service.active_turns == live
            await service.shutdown()

        assert first.done and second.done and third.done
        assert (await first.result()).status == "cancelled"


class TestRequestIds:
    async def test_duplicate_live_id_rejected(self, tmp_path: Path, store: ChatStore) -> None:
        chat = store.create_chat()
        proc = _make_mock_process(MockAsyncStdout(), returncode=-15)
        service = ChatService(AssistantConfig(), store)
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            first = await service.start_turn(_request(tmp_path, request_id="x", chat_id=chat.id))
            await asyncio.sleep(0)
            with pytest.raises(DuplicateRequestError):
                await service.start_turn(_request(tmp_path, request_id="x", chat_id=chat.id))
            assert service.get_turn("x") is first
            assert not first.done
            # The rejected request left no trace in the chat.
            assert [m.role for m in store.get_chat(chat.id).messages] == ["user"]

            await service.shutdown()
        assert first.done
        assert service.active_turns == []

    async def test_id_reusable_after_turn_ends(self, tmp_path: Path) -> None:
        procs = [
            _make_mock_process(MockAsyncStdout(HELLO, eof=True)),
            _make_mock_process(MockAsyncStdout(DONE, eof=True)),
        ]
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", side_effect=procs):
            first = await service.start_turn(_request(tmp_path, request_id="x"))
            await first.result()
            second = await service.start_turn(_request(tmp_path, request_id="x"))
            assert (await second.result()).content == "Done."

    async def test_cancel_by_id(self, tmp_path: Path) -> None:
        proc = _make_mock_process(MockAsyncStdout(), returncode=-15)
        service = ChatService(AssistantConfig())
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            turn = await service.start_turn(_request(tmp_path, request_id="x"))
            await asyncio.sleep(0)
            assert service.cancel("x") is True
            message = await turn.result()
        assert message.status == "cancelled"
        assert service.cancel("x") is False
        assert service.cancel("never") is False

    async def test_cancel_while_waiting_for_prior_turn(self, tmp_path: Path, store: ChatStore) -> None:
        chat = store.create_chat()
        procs = [
            _make_mock_process(MockAsyncStdout(), returncode=-15),
            _make_mock_process(MockAsyncStdout(), returncode=-15),
        ]
        service = ChatService(AssistantConfig(), store)
        with patch("asyncio.create_subprocess_exec", side_effect=procs):
            await service.start_turn(_request(tmp_path, request_id="a", chat_id=chat.id))
            await asyncio.sleep(0)
            pending = asyncio.create_task(
                service.start_turn(_request(tmp_path, request_id="b", chat_id=chat.id))
            )
            await asyncio.sleep(0)
            assert service.cancel("b") is True
            second = await pending
            message = await second.result()
        assert message.status == "cancelled"
        assert service.active_turns == []
