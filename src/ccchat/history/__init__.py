"""Chat history — message models and the JSON chat store."""

from ccchat.history.models import ChatSession, FileItem, Message, detect_files
from ccchat.history.store import ChatNotFoundError, ChatStore

__all__ = [
    "ChatNotFoundError",
    "ChatSession",
    "ChatStore",
    "FileItem",
    "Message",
    "detect_files",
]
