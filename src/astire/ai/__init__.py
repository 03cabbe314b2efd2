"""Model backend client and prompt helpers."""

from .ai_types import ChatBackend
from .client import AIClient, ClientSettings, StreamInterruptedError

__all__ = ["AIClient", "ChatBackend", "ClientSettings", "StreamInterruptedError"]
