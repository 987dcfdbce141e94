"""Process-wide collaborators, built once and passed explicitly."""

from __future__ import annotations

from dataclasses import dataclass, field

from ccchat.config.models import CCChatConfig
from ccchat.history.store import ChatStore
from ccchat.server.registry import RequestRegistry
from ccchat.service import ChatService


@dataclass
class AppContext:
    """Everything a ccchat process shares across requests."""

    config: CCChatConfig
    store: ChatStore
    service: ChatService
    registry: RequestRegistry = field(default_factory=RequestRegistry)

    @classmethod
    def from_config(cls, config: CCChatConfig) -> AppContext:
        store = ChatStore(config.history.resolved_path)
        return cls(
            config=config,
            store=store,
            service=ChatService(config.assistant, store),
        )
