"""Shared typing contracts for the model backend."""

from __future__ import annotations

from typing import Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable


@runtime_checkable
class ChatBackend(Protocol):
    """Anything able to stream a model reply as raw text chunks.

    Chunks may split lines (and JSON objects) at arbitrary positions; the
    caller is responsible for reassembling them.
    """

    def stream_text(self, messages: Sequence[Mapping[str, Any]]) -> AsyncIterator[str]:
        """Stream the reply to ``messages`` (OpenAI chat format)."""
        ...
