"""Configuration module."""

from agentloop.core.config.loader import load_config
from agentloop.core.config.schema import Config, NewMessageMode

__all__ = ["Config", "NewMessageMode", "load_config"]
