"""HTTP transport bridge."""

from ccchat.server.app import ChatServer
from ccchat.server.registry import DuplicateRequestError, RequestRegistry

__all__ = [
    "ChatServer",
    "DuplicateRequestError",
    "RequestRegistry",
]
