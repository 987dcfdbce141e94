"""Configuration models and parser for ccchat.yaml."""

from ccchat.config.models import (
    AssistantConfig,
    CCChatConfig,
    HistoryConfig,
    ServerConfig,
)
from ccchat.config.parser import ConfigError, load_config

__all__ = [
    "AssistantConfig",
    "CCChatConfig",
    "ConfigError",
    "HistoryConfig",
    "ServerConfig",
    "load_config",
]
