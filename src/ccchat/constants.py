"""Shared constants and type aliases for the ccchat runtime."""

from __future__ import annotations

from collections.abc import Callable

#: Name of the external assistant binary when none is configured.
DEFAULT_BINARY = "claude"

#: Default HTTP port for ``ccchat serve``.
DEFAULT_PORT = 3002

#: Callback type for cancellation capabilities held by the request registry.
CancelCallback = Callable[[], None]
