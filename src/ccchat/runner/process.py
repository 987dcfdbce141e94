"""Process runner — one assistant CLI subprocess per request."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path

from ccchat.config.models import AssistantConfig

logger = logging.getLogger(__name__)

#: Bytes requested from stdout/stderr per read.
_READ_CHUNK = 65_536

#: Characters of stderr kept for error previews.
_STDERR_TAIL_CHARS = 8_192


class SpawnError(Exception):
    """The assistant binary could not be launched."""


class IdleTimeoutError(Exception):
    """The assistant produced no output for too long."""

    def __init__(self, seconds: float) -> None:
        super().__init__(f"No output from assistant for {seconds:g}s")
        self.seconds = seconds


class RunnerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


_TRANSITIONS: dict[RunnerState, frozenset[RunnerState]] = {
    RunnerState.IDLE: frozenset({RunnerState.RUNNING, RunnerState.TERMINATED}),
    RunnerState.RUNNING: frozenset({RunnerState.TERMINATING, RunnerState.TERMINATED}),
    RunnerState.TERMINATING: frozenset({RunnerState.TERMINATED}),
    RunnerState.TERMINATED: frozenset(),
}


def build_args(
    binary: str,
    prompt: str,
    *,
    streaming: bool = True,
    is_existing_chat: bool = False,
    permission_mode: str = "bypassPermissions",
    extra_args: list[str] | None = None,
) -> list[str]:
    """Compose the non-interactive assistant invocation.

    The prompt is always the last argument.
    """
    args = [binary, "-p"]
    if streaming:
        args.extend(["--output-format", "stream-json", "--verbose"])
    args.extend(["--permission-mode", permission_mode])
    if extra_args:
        args.extend(extra_args)
    if is_existing_chat:
        args.append("--continue")
    args.append(prompt)
    return args


class ProcessRunner:
    """Owns a single assistant subprocess from spawn to exit.

    A runner is single-use.  Its lifecycle is the state machine
    ``IDLE -> RUNNING -> TERMINATING -> TERMINATED`` (``TERMINATING`` is
    skipped on a natural exit); every change goes through
    ``_transition``.
    """

    def __init__(self, config: AssistantConfig, name: str = "runner") -> None:
        self.name = name
        self._config = config
        self._state = RunnerState.IDLE
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._kill_task: asyncio.Task[None] | None = None
        self._stderr_tail = ""
        self._returncode: int | None = None

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def pid(self) -> int | None:
        """PID of the live subprocess, if any."""
        if self._proc is None or self._state is RunnerState.TERMINATED:
            return None
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._returncode

    @property
    def stderr(self) -> str:
        """Tail of everything the subprocess wrote to stderr."""
        return self._stderr_tail

    def _transition(self, new: RunnerState) -> bool:
        """Move to *new*; returns False if already there."""
        if new is self._state:
            return False
        if new not in _TRANSITIONS[self._state]:
            msg = f"{self.name}: illegal runner transition {self._state.value} -> {new.value}"
            raise RuntimeError(msg)
        logger.debug("%s: %s -> %s", self.name, self._state.value, new.value)
        self._state = new
        return True

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(
        self,
        prompt: str,
        working_directory: str | Path,
        *,
        is_existing_chat: bool = False,
        streaming: bool = True,
    ) -> None:
        """Spawn the assistant for *prompt* in *working_directory*."""
        args = build_args(
            self._config.binary,
            prompt,
            streaming=streaming,
            is_existing_chat=is_existing_chat,
            permission_mode=self._config.permission_mode,
            extra_args=self._config.extra_args,
        )
        await self.launch(args, working_directory)

    async def launch(self, args: list[str], working_directory: str | Path) -> None:
        """Spawn exactly one process for *args*.

        Raises:
            SpawnError: Binary missing, not executable, or bad directory.
        """
        if self._state is not RunnerState.IDLE:
            msg = f"{self.name}: runner already used ({self._state.value})"
            raise RuntimeError(msg)

        cwd = Path(working_directory).expanduser()
        if not cwd.is_dir():
            self._transition(RunnerState.TERMINATED)
            msg = f"Working directory does not exist: {cwd}"
            raise SpawnError(msg)

        binary = args[0]
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=self._build_env(),
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            self._transition(RunnerState.TERMINATED)
            msg = (
                f"'{binary}' not found. Make sure the Claude Code CLI is installed "
                "and on your PATH (npm install -g @anthropic-ai/claude-code)."
            )
            raise SpawnError(msg) from exc
        except PermissionError as exc:
            self._transition(RunnerState.TERMINATED)
            msg = f"Permission denied launching '{binary}': {exc}"
            raise SpawnError(msg) from exc
        except OSError as exc:
            self._transition(RunnerState.TERMINATED)
            msg = f"Failed to spawn '{binary}': {exc}"
            raise SpawnError(msg) from exc

        self._proc = proc
        self._transition(RunnerState.RUNNING)
        logger.info("%s: spawned %s (pid %s) in %s", self.name, binary, proc.pid, cwd)
        self._stderr_task = asyncio.create_task(self._drain_stderr(proc))

    def _build_env(self) -> dict[str, str]:
        stripped = set(self._config.stripped_env)
        env = {k: v for k, v in os.environ.items() if k not in stripped}
        # Cap Node.js V8 heap so a runaway session cannot take the host down.
        heap_mb = self._config.node_heap_limit_mb
        node_opts = env.get("NODE_OPTIONS", "")
        if heap_mb > 0 and "--max-old-space-size" not in node_opts:
            separator = " " if node_opts else ""
            env["NODE_OPTIONS"] = f"{node_opts}{separator}--max-old-space-size={heap_mb}"
        return env

    async def iter_stdout(self, idle_timeout: float | None = None) -> AsyncIterator[bytes]:
        """Yield raw stdout chunks until EOF.

        Raises:
            IdleTimeoutError: No chunk arrived within *idle_timeout* seconds.
        """
        proc = self._proc
        if proc is None or proc.stdout is None:
            return
        timeout = idle_timeout or None
        while True:
            try:
                chunk = await asyncio.wait_for(proc.stdout.read(_READ_CHUNK), timeout=timeout)
            except TimeoutError as exc:
                raise IdleTimeoutError(timeout or 0.0) from exc
            if not chunk:
                return
            yield chunk

    async def wait(self) -> int | None:
        """Wait for exit and return the exit code (``None`` if never spawned)."""
        proc = self._proc
        if proc is None:
            return None

        returncode = await proc.wait()
        self._returncode = returncode

        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
        if self._kill_task is not None and not self._kill_task.done():
            self._kill_task.cancel()

        self._transition(RunnerState.TERMINATED)
        logger.info("%s: exited with code %s", self.name, returncode)
        return returncode

    def abort(self) -> bool:
        """Send SIGTERM, escalating to SIGKILL after the grace period.

        Idempotent.  Returns True if a signal was sent by this call.
        """
        proc = self._proc
        if proc is None or self._state is not RunnerState.RUNNING:
            return False

        self._transition(RunnerState.TERMINATING)
        logger.info("%s: terminating pid %s", self.name, proc.pid)
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        self._kill_task = asyncio.create_task(self._escalate(proc))
        return True

    async def _escalate(self, proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.terminate_grace)
        except TimeoutError:
            logger.warning("%s: pid %s ignored SIGTERM, killing", self.name, proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        """Read stderr so the pipe never fills; log it, never parse it."""
        stream = proc.stderr
        if stream is None:
            return
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                text = chunk.decode(errors="replace")
                self._stderr_tail = (self._stderr_tail + text)[-_STDERR_TAIL_CHARS:]
                for line in text.splitlines():
                    if line.strip():
                        logger.debug("%s stderr: %s", self.name, line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s: error reading stderr: %s", self.name, exc)


async def run_once(
    config: AssistantConfig,
    args: list[str],
    working_directory: str | Path,
    name: str = "oneshot",
) -> tuple[int | None, str, str]:
    """Run ``config.binary *args`` to completion.

    Returns ``(exit_code, stdout, stderr)``.  Raises SpawnError or
    IdleTimeoutError; the process is reaped either way.
    """
    runner = ProcessRunner(config, name=name)
    await runner.launch([config.binary, *args], working_directory)
    chunks: list[bytes] = []
    try:
        async for chunk in runner.iter_stdout(config.idle_timeout):
            chunks.append(chunk)
    except IdleTimeoutError:
        runner.abort()
        await runner.wait()
        raise
    returncode = await runner.wait()
    return returncode, b"".join(chunks).decode(errors="replace"), runner.stderr
