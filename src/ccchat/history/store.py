"""Chat store — JSON-file persistence for chat sessions."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from ccchat.helpers import truncate
from ccchat.history.models import (
    PREVIEW_CHARS,
    TITLE_CHARS,
    ChatSession,
    Message,
)

logger = logging.getLogger(__name__)

_SESSIONS_ADAPTER: TypeAdapter[list[ChatSession]] = TypeAdapter(list[ChatSession])


class ChatNotFoundError(KeyError):
    """Raised when a chat id does not exist in the store."""


class ChatStore:
    """Ordered collection of ChatSessions saved to one JSON file.

    Thread-safe: all reads and writes are serialized through a
    ``threading.Lock``.  Crash-safe: every mutation rewrites the file via
    a temporary sibling and ``os.replace``.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._chats: list[ChatSession] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_chats(self) -> list[ChatSession]:
        """All chats, newest first."""
        with self._lock:
            return [chat.model_copy(deep=True) for chat in self._chats]

    def get_chat(self, chat_id: str) -> ChatSession:
        with self._lock:
            return self._find(chat_id).model_copy(deep=True)

    def __contains__(self, chat_id: object) -> bool:
        with self._lock:
            return any(chat.id == chat_id for chat in self._chats)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_chat(
        self,
        title: str = "New Chat",
        project_path: str | None = None,
        project_name: str | None = None,
    ) -> ChatSession:
        chat = ChatSession(
            title=title,
            project_path=project_path,
            project_name=project_name,
        )
        with self._lock:
            self._chats.insert(0, chat)
            self._save()
            return chat.model_copy(deep=True)

    def delete_chat(self, chat_id: str) -> bool:
        with self._lock:
            for index, chat in enumerate(self._chats):
                if chat.id == chat_id:
                    del self._chats[index]
                    self._save()
                    return True
        return False

    def rename_chat(self, chat_id: str, title: str) -> ChatSession:
        with self._lock:
            chat = self._find(chat_id)
            chat.title = title
            self._save()
            return chat.model_copy(deep=True)

    def set_project(
        self, chat_id: str, project_path: str, project_name: str
    ) -> ChatSession:
        with self._lock:
            chat = self._find(chat_id)
            chat.project_path = project_path
            chat.project_name = project_name
            self._save()
            return chat.model_copy(deep=True)

    def append_message(self, chat_id: str, message: Message) -> ChatSession:
        """Append *message* and refresh the chat's derived metadata.

        The first message of a chat, when written by the user, also
        becomes the chat's title.
        """
        with self._lock:
            chat = self._find(chat_id)
            chat.messages.append(message)
            chat.message_count = len(chat.messages)
            chat.last_message = message.content[:PREVIEW_CHARS]
            if chat.message_count == 1 and message.role == "user":
                chat.title = truncate(message.content, TITLE_CHARS)
            self._save()
            return chat.model_copy(deep=True)

    def clear_chat(self, chat_id: str) -> ChatSession:
        with self._lock:
            chat = self._find(chat_id)
            chat.messages = []
            chat.message_count = 0
            chat.last_message = None
            self._save()
            return chat.model_copy(deep=True)

    def clear_all(self) -> None:
        with self._lock:
            self._chats = []
            self._save()

    # ------------------------------------------------------------------
    # Storage (caller must hold the lock, or be in __init__)
    # ------------------------------------------------------------------

    def _find(self, chat_id: str) -> ChatSession:
        for chat in self._chats:
            if chat.id == chat_id:
                return chat
        raise ChatNotFoundError(chat_id)

    def _load(self) -> list[ChatSession]:
        if not self._path.is_file():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return _SESSIONS_ADAPTER.validate_python(data)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.error("failed to load chats from %s: %s", self._path, exc)
            return []

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = _SESSIONS_ADAPTER.dump_json(self._chats, indent=2)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
