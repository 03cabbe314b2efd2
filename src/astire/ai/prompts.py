"""System prompt and conversation context for the model backend."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Sequence

from ..chat.message_model import ChatMessage, MessageKind, Sender

__all__ = ["build_system_prompt", "build_chat_messages", "render_event_line"]

_BASE_PROMPT = """\
You are the assistant of the Astire chat system. Follow these output rules.

1. Plain text
   - Conversational replies are plain text.

2. Structured events
   - To propose an ACTION or ask a QUESTION, write exactly one JSON object on its own line.
   - Never mix prose and JSON on the same line. Do not use trailing commas.
   - Schema:
     {"type": "ACTION" | "QUESTION", "content": "text shown to the user",
      "actionType": <action type> | null, "actionPayload": {<string|number|boolean fields>} | null}
   - ACTION lines must carry an actionType and an actionPayload (null when the action needs no input).

3. Session discipline
   - The user must acknowledge every ACTION and QUESTION before the conversation continues.
   - Do not repeat questions or actions that already appear in the conversation.
   - Any ACTION may later be undone by the user; keep each one small and self-contained.
   - Give clear, concise content so the user can act quickly.
"""


def build_system_prompt(actions: Mapping[str, str] | None = None) -> str:
    """Return the protocol prompt, listing the available action types."""

    if not actions:
        return _BASE_PROMPT
    lines = [_BASE_PROMPT, "Available action types:"]
    for action_type, description in actions.items():
        suffix = f": {description}" if description else ""
        lines.append(f"- {action_type}{suffix}")
    return "\n".join(lines) + "\n"


def render_event_line(message: ChatMessage) -> str:
    """Serialize a QUESTION/ACTION message back into its wire line."""

    payload: Dict[str, Any] = {"type": message.kind.value, "content": message.content}
    if message.kind is MessageKind.ACTION:
        payload["actionType"] = message.action_type
        payload["actionPayload"] = dict(message.action_payload or {})
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def build_chat_messages(
    history: Sequence[ChatMessage],
    *,
    system_prompt: str,
    max_messages: int | None = None,
) -> List[Dict[str, str]]:
    """Map the session log to OpenAI chat messages, newest ``max_messages`` kept."""

    rendered: List[Dict[str, str]] = []
    for message in history:
        if message.sender is Sender.USER:
            rendered.append({"role": "user", "content": message.content})
        elif message.is_actionable:
            rendered.append({"role": "assistant", "content": render_event_line(message)})
        elif message.content:
            rendered.append({"role": "assistant", "content": message.content})

    if max_messages is not None and max_messages > 0 and len(rendered) > max_messages:
        rendered = rendered[-max_messages:]
    return [{"role": "system", "content": system_prompt}, *rendered]
