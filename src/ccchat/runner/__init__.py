"""Assistant subprocess management."""

from ccchat.runner.process import (
    IdleTimeoutError,
    ProcessRunner,
    RunnerState,
    SpawnError,
    build_args,
    run_once,
)

__all__ = [
    "IdleTimeoutError",
    "ProcessRunner",
    "RunnerState",
    "SpawnError",
    "build_args",
    "run_once",
]
