"""Incremental parser for the model's mixed prose / JSON-line stream.

The model backend emits one continuous text stream. Each line is either free
prose or a single JSON object describing an ACTION or QUESTION. Chunks arrive
at arbitrary boundaries, so the parser buffers until a line is complete and
then classifies it. Anything that is not a well-formed structured event is
passed through as text: no model output is ever dropped, and parsing never
raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Mapping, Optional, Union

from jsonschema import Draft7Validator

from .message_model import MessageKind

__all__ = [
    "TextDelta",
    "StructuredEvent",
    "ParsedUnit",
    "STRUCTURED_EVENT_SCHEMA",
    "StreamEventParser",
    "parse_structured_line",
    "parse_stream",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TextDelta:
    """A run of prose that should be appended to the running AI message."""

    content: str


@dataclass(slots=True, frozen=True)
class StructuredEvent:
    """A QUESTION or ACTION line decoded from the stream."""

    kind: MessageKind
    content: str
    action_type: Optional[str] = None
    action_payload: Optional[Dict[str, Any]] = field(default=None, hash=False, compare=True)


ParsedUnit = Union[TextDelta, StructuredEvent]

_PRIMITIVE_SCHEMA: Dict[str, Any] = {"type": ["string", "number", "boolean", "null"]}

STRUCTURED_EVENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["type", "content"],
    "properties": {
        "type": {"type": "string", "enum": [MessageKind.ACTION.value, MessageKind.QUESTION.value]},
        "content": {"type": "string"},
        "actionType": {"type": ["string", "null"]},
        "actionPayload": {
            "anyOf": [
                {"type": "object", "additionalProperties": _PRIMITIVE_SCHEMA},
                {"type": "null"},
            ]
        },
    },
    "additionalProperties": True,
    "allOf": [
        {
            "if": {"properties": {"type": {"const": MessageKind.ACTION.value}}},
            "then": {
                "required": ["actionType", "actionPayload"],
                "properties": {
                    "actionType": {"type": "string", "minLength": 1},
                },
            },
        }
    ],
}

_EVENT_VALIDATOR = Draft7Validator(STRUCTURED_EVENT_SCHEMA)


def parse_structured_line(line: str) -> StructuredEvent | None:
    """Return the structured event encoded by ``line`` or ``None`` for prose."""

    candidate = line.strip()
    if not candidate.startswith("{"):
        return None
    try:
        payload = json.loads(candidate)
    except (ValueError, RecursionError):
        LOGGER.debug("Line looked like JSON but failed to decode; treating as text")
        return None
    if not isinstance(payload, Mapping):
        return None
    if not _EVENT_VALIDATOR.is_valid(payload):
        LOGGER.debug(
            "JSON line did not match structured event schema: %s",
            _first_error(payload),
        )
        return None

    kind = MessageKind(payload["type"])
    if kind is MessageKind.ACTION:
        action_payload = payload["actionPayload"]
        return StructuredEvent(
            kind=kind,
            content=payload["content"],
            action_type=payload["actionType"],
            action_payload=dict(action_payload) if action_payload is not None else None,
        )
    return StructuredEvent(kind=kind, content=payload["content"])


def _first_error(payload: Mapping[str, Any]) -> str:
    error = next(iter(_EVENT_VALIDATOR.iter_errors(payload)), None)
    if error is None:  # pragma: no cover - only called on invalid payloads
        return ""
    location = ".".join(str(part) for part in error.path) or "<root>"
    return f"{location}: {error.message}"


class StreamEventParser:
    """Line-buffering parser turning text chunks into deltas and events.

    Newlines between prose lines are emitted as the prefix of the next prose
    delta, so a running message never ends with a dangling newline and the
    newline that terminates a structured-event line is consumed with it.

    A partial line whose first non-blank character is not ``{`` can never be
    a structured event; it is released immediately so consumers can render
    text progressively instead of waiting for the newline.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._line_streamed = False
        self._separator_pending = False

    @property
    def buffered(self) -> str:
        """Text held back while waiting for the rest of the line."""

        return self._buffer

    def feed(self, chunk: str) -> List[ParsedUnit]:
        """Consume ``chunk`` and return the units it completes, in order."""

        if not chunk:
            return []
        units: List[ParsedUnit] = []
        self._buffer += chunk
        while True:
            index = self._buffer.find("\n")
            if index < 0:
                break
            line = self._buffer[:index]
            self._buffer = self._buffer[index + 1 :]
            self._complete_line(line, units)

        if self._buffer and (self._line_streamed or not _could_be_event(self._buffer)):
            self._emit_text(self._buffer, units, continues_line=self._line_streamed)
            self._buffer = ""
            self._line_streamed = True
        return units

    def finish(self) -> List[ParsedUnit]:
        """Flush the trailing partial line at end of stream and reset state."""

        units: List[ParsedUnit] = []
        if self._buffer or self._line_streamed:
            self._complete_line(self._buffer, units)
        self.reset()
        return units

    def reset(self) -> None:
        """Drop any buffered text, e.g. after the stream was aborted."""

        self._buffer = ""
        self._line_streamed = False
        self._separator_pending = False

    def _complete_line(self, line: str, units: List[ParsedUnit]) -> None:
        if self._line_streamed:
            self._emit_text(line, units, continues_line=True)
            self._line_streamed = False
            self._separator_pending = True
            return

        event = parse_structured_line(line)
        if event is not None:
            units.append(event)
            return
        self._emit_text(line, units, continues_line=False)
        self._separator_pending = True

    def _emit_text(self, text: str, units: List[ParsedUnit], *, continues_line: bool) -> None:
        if not continues_line and self._separator_pending:
            text = "\n" + text
            self._separator_pending = False
        if text:
            units.append(TextDelta(text))


def _could_be_event(partial: str) -> bool:
    stripped = partial.lstrip()
    return not stripped or stripped.startswith("{")


async def parse_stream(chunks: AsyncIterable[str]) -> AsyncIterator[ParsedUnit]:
    """Drive a :class:`StreamEventParser` over an async stream of text chunks."""

    parser = StreamEventParser()
    async for chunk in chunks:
        for unit in parser.feed(chunk):
            yield unit
    for unit in parser.finish():
        yield unit
