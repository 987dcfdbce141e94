"""Smoke tests for the ccchat CLI."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import yaml
from click.testing import CliRunner

from ccchat import __version__
from ccchat.cli import cli
from ccchat.history.models import Message
from ccchat.history.store import ChatStore

DONE = b'{"type":"result","subtype":"success","result":"All good.","total_cost_usd":0.02}\n'
INIT = b'{"type":"system","subtype":"init"}\n'


def _config_file(tmp_path: Path) -> Path:
    path = tmp_path / "ccchat.yaml"
    path.write_text(
        yaml.dump({"history": {"path": str(tmp_path / "chats.json")}}),
        encoding="utf-8",
    )
    return path


def _make_mock_process(*chunks: bytes, returncode: int = 0) -> MagicMock:
    queue: asyncio.Queue[bytes] | None = None

    async def _read(n: int = -1) -> bytes:
        # The queue must be created inside the loop asyncio.run() starts.
        nonlocal queue
        if queue is None:
            queue = asyncio.Queue()
            for chunk in (*chunks, b""):
                queue.put_nowait(chunk)
        return await queue.get()

    proc = MagicMock()
    proc.pid = 99
    proc.stdout = MagicMock()
    proc.stdout.read = _read
    proc.stderr = MagicMock()
    proc.stderr.read = AsyncMock(return_value=b"")
    proc.wait = AsyncMock(return_value=returncode)
    return proc


def test_help() -> None:
    result = CliRunner().invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "ccchat" in result.output
    for command in ("init", "serve", "ask", "chats"):
        assert command in result.output


def test_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert f"ccchat, version {__version__}" in result.output


def test_init_runs() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["init"])
        assert result.exit_code == 0
        assert "Created ccchat.yaml" in result.output


def test_serve_flags() -> None:
    result = CliRunner().invoke(cli, ["serve", "--help"])
    assert result.exit_code == 0
    assert "--port" in result.output
    assert "--host" in result.output
    assert "--verbose" in result.output


def test_serve_missing_config_file(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["serve", "-f", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_serve_rejects_bad_port(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["serve", "-f", str(_config_file(tmp_path)), "--port", "0"])
    assert result.exit_code == 1
    assert "port must be between" in result.output


class TestAsk:
    def test_prints_units_and_answer(self, tmp_path: Path) -> None:
        proc = _make_mock_process(INIT, DONE)
        with patch("asyncio.create_subprocess_exec", return_value=proc) as mock_exec:
            result = CliRunner().invoke(
                cli,
                ["ask", "check the build", "-C", str(tmp_path), "-f", str(_config_file(tmp_path))],
            )
        assert result.exit_code == 0, result.output
        assert "Initializing Claude Code session" in result.output
        assert "✅ Task completed: All good." in result.output
        assert result.output.rstrip().endswith("All good.")
        assert mock_exec.call_args.args[-1] == "check the build"
        assert mock_exec.call_args.kwargs["cwd"] == str(tmp_path.resolve())

    def test_continue_flag(self, tmp_path: Path) -> None:
        proc = _make_mock_process(DONE)
        with patch("asyncio.create_subprocess_exec", return_value=proc) as mock_exec:
            CliRunner().invoke(
                cli,
                ["ask", "and now?", "--continue", "-C", str(tmp_path), "-f", str(_config_file(tmp_path))],
            )
        assert mock_exec.call_args.args[-2:] == ("--continue", "and now?")

    def test_failure_exits_nonzero(self, tmp_path: Path) -> None:
        proc = _make_mock_process(returncode=1)
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            result = CliRunner().invoke(
                cli, ["ask", "hi", "-C", str(tmp_path), "-f", str(_config_file(tmp_path))]
            )
        assert result.exit_code == 1
        assert "exit code 1" in result.output


class TestChats:
    def test_empty(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(cli, ["chats", "-f", str(_config_file(tmp_path))])
        assert result.exit_code == 0
        assert "No chats yet." in result.output

    def test_lists_and_deletes(self, tmp_path: Path) -> None:
        config = _config_file(tmp_path)
        store = ChatStore(tmp_path / "chats.json")
        chat = store.create_chat()
        store.append_message(chat.id, Message(role="user", content="Explain the router"))

        listing = CliRunner().invoke(cli, ["chats", "-f", str(config)])
        assert chat.id in listing.output
        assert "Explain the router" in listing.output

        deleted = CliRunner().invoke(cli, ["chats", "--delete", chat.id, "-f", str(config)])
        assert deleted.exit_code == 0
        assert chat.id not in ChatStore(tmp_path / "chats.json")

    def test_delete_unknown(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(cli, ["chats", "--delete", "nope", "-f", str(_config_file(tmp_path))])
        assert result.exit_code == 1

    def test_clear_one_chat(self, tmp_path: Path) -> None:
        config = _config_file(tmp_path)
        store = ChatStore(tmp_path / "chats.json")
        chat = store.create_chat()
        store.append_message(chat.id, Message(role="user", content="hello"))

        result = CliRunner().invoke(cli, ["chats", "--clear", chat.id, "-f", str(config)])
        assert result.exit_code == 0
        assert f"Cleared chat {chat.id}" in result.output
        reloaded = ChatStore(tmp_path / "chats.json").get_chat(chat.id)
        assert reloaded.messages == []

    def test_clear_unknown_chat(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(cli, ["chats", "--clear", "nope", "-f", str(_config_file(tmp_path))])
        assert result.exit_code == 1

    def test_clear_all(self, tmp_path: Path) -> None:
        config = _config_file(tmp_path)
        store = ChatStore(tmp_path / "chats.json")
        store.create_chat()
        store.create_chat()

        result = CliRunner().invoke(cli, ["chats", "--clear-all", "-f", str(config)])
        assert result.exit_code == 0
        assert "Deleted 2 chat(s)" in result.output
        assert ChatStore(tmp_path / "chats.json").list_chats() == []
