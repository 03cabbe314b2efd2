"""Command line bootstrap for the Astire chat engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .actions.builtin import ActionLedger, register_builtin_actions
from .actions.executor import ActionExecutor
from .actions.registry import ActionRegistry
from .ai.ai_types import ChatBackend
from .ai.client import AIClient
from .chat.commands import HELP_TEXT, ChatCommand, ChatCommandType, match_message_id, parse_chat_command
from .chat.message_model import MessageKind, Sender
from .chat.persistence import InMemorySessionBackend, JsonFileSessionBackend, SessionBackend
from .chat.session_store import SessionStore
from .events import (
    ActionExecuted,
    ActionFailed,
    ActionUndone,
    EventBus,
    MessageAppended,
    MessageContentUpdated,
    TurnCompleted,
)
from .orchestration.event_log import TurnEventLogger
from .orchestration.orchestrator import ChatStreamError, SessionOrchestrator
from .services.settings import Settings, SettingsStore, redact_secret, to_client_settings
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}

ReadLine = Callable[[str], Awaitable[str]]


@dataclass(slots=True)
class ChatRuntime:
    """Wired engine components returned by :func:`build_runtime`."""

    settings: Settings
    event_bus: EventBus
    store: SessionStore
    registry: ActionRegistry
    ledger: ActionLedger
    executor: ActionExecutor
    backend: ChatBackend
    orchestrator: SessionOrchestrator

    async def aclose(self) -> None:
        close = getattr(self.backend, "aclose", None)
        if close is not None:
            await close()


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the application."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_runtime(
    settings: Settings,
    *,
    backend: ChatBackend | None = None,
    session_backend: SessionBackend | None = None,
) -> ChatRuntime:
    """Wire store, executor, model backend and orchestrator from ``settings``."""

    bus = EventBus()
    if session_backend is None:
        if settings.sessions_dir:
            session_backend = JsonFileSessionBackend(Path(settings.sessions_dir).expanduser())
        else:
            session_backend = InMemorySessionBackend()
    store = SessionStore(session_backend, event_bus=bus)
    registry = ActionRegistry()
    ledger = register_builtin_actions(registry)
    executor = ActionExecutor(registry, event_bus=bus)
    model_backend = backend or AIClient(to_client_settings(settings))
    orchestrator = SessionOrchestrator(
        store,
        executor,
        model_backend,
        event_bus=bus,
        max_context_messages=settings.max_context_messages,
        event_logger=TurnEventLogger(enabled=settings.debug_event_logging),
    )
    return ChatRuntime(
        settings=settings,
        event_bus=bus,
        store=store,
        registry=registry,
        ledger=ledger,
        executor=executor,
        backend=model_backend,
        orchestrator=orchestrator,
    )


class TerminalRenderer:
    """Prints session activity to a text stream as events arrive."""

    def __init__(self, store: SessionStore, stream: TextIO) -> None:
        self._store = store
        self._stream = stream

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(MessageAppended, self._on_appended)
        bus.subscribe(MessageContentUpdated, self._on_content)
        bus.subscribe(TurnCompleted, self._on_turn_completed)
        bus.subscribe(ActionExecuted, self._on_action_executed)
        bus.subscribe(ActionFailed, self._on_action_failed)
        bus.subscribe(ActionUndone, self._on_action_undone)

    def _write(self, text: str) -> None:
        self._stream.write(text)
        self._stream.flush()

    def _on_appended(self, event: MessageAppended) -> None:
        if event.sender != Sender.AI.value:
            return
        message = self._store.get_message(event.message_id)
        if message.kind is MessageKind.TEXT:
            if message.content:
                self._write(f"ai> {message.content}\n")
            else:
                self._write("ai> ")
            return
        label = message.kind.value
        if message.kind is MessageKind.ACTION:
            label = f"{label} {message.action_type}"
        self._write(f"\n  [{label} {message.id[:8]}] {message.content}\n")

    def _on_content(self, event: MessageContentUpdated) -> None:
        self._write(event.delta)

    def _on_turn_completed(self, _event: TurnCompleted) -> None:
        self._write("\n")

    def _on_action_executed(self, event: ActionExecuted) -> None:
        self._write(f"  (executed {event.action_type}: {json.dumps(event.result)})\n")

    def _on_action_failed(self, event: ActionFailed) -> None:
        self._write(f"  (action {event.action_type or '?'} had no effect: {event.reason})\n")

    def _on_action_undone(self, event: ActionUndone) -> None:
        self._write(f"  (undid {event.action_type})\n")


async def run_chat(
    runtime: ChatRuntime,
    *,
    goal_id: str | None,
    owner_id: str,
    greeting: str | None = None,
    read_line: ReadLine | None = None,
    output: TextIO | None = None,
) -> str:
    """Run the interactive chat loop until /quit or end of input.

    Returns:
        The id of the session that was used.
    """
    out = output or sys.stdout
    reader = read_line or _read_stdin
    orchestrator = runtime.orchestrator
    await runtime.store.load()

    # The CLI drives a single session, so the renderer prints every event.
    renderer = TerminalRenderer(runtime.store, out)
    renderer.attach(runtime.event_bus)

    session = runtime.store.find_session(owner_id, goal_id)
    if session is None:
        out.write("Starting a new session. Type /help for commands.\n")
        try:
            session, _ = await orchestrator.start_session(goal_id, owner_id, greeting=greeting)
        except ChatStreamError as exc:
            out.write(f"\n[error] {exc}\n")
            session = runtime.store.get_session(exc.session_id)
    else:
        out.write(f"Resuming {session.name} ({session.id[:8]}). Type /help for commands.\n")

    while True:
        try:
            line = await reader("you> ")
        except EOFError:
            break
        try:
            command = parse_chat_command(line)
        except ValueError as exc:
            out.write(f"{exc}\n")
            continue
        if command is None:
            await _guarded(out, orchestrator.send_user_message(session.id, line))
            continue
        if command.command is ChatCommandType.QUIT:
            break
        await _run_command(runtime, session.id, owner_id, command, out)
    return session.id


async def _guarded(out: TextIO, awaitable: Awaitable[Any]) -> Any:
    try:
        return await awaitable
    except ChatStreamError as exc:
        out.write(f"\n[error] {exc}\n")
        return None


async def _run_command(
    runtime: ChatRuntime,
    session_id: str,
    owner_id: str,
    command: ChatCommand,
    out: TextIO,
) -> None:
    orchestrator = runtime.orchestrator
    kind = command.command
    if kind is ChatCommandType.HELP:
        out.write(HELP_TEXT + "\n")
    elif kind is ChatCommandType.PENDING:
        pending = orchestrator.list_pending(session_id)
        if not pending:
            out.write("Nothing pending.\n")
        for message in pending:
            out.write(f"  {message.id[:8]} {message.kind.value}: {message.content}\n")
    elif kind is ChatCommandType.RESOLVE:
        ids = [message.id for message in orchestrator.list_pending(session_id)]
        try:
            message_id = match_message_id(command.target or "", ids)
        except ValueError as exc:
            out.write(f"{exc}\n")
            return
        await orchestrator.resolve_pending(message_id)
        out.write(f"Resolved {message_id[:8]}.\n")
    elif kind is ChatCommandType.UNDO:
        ids = [record.message_id for record in runtime.executor.executed_actions()]
        try:
            message_id = match_message_id(command.target or "", ids)
        except ValueError as exc:
            out.write(f"{exc}\n")
            return
        if not await orchestrator.undo_action(message_id):
            out.write(f"Could not undo {message_id[:8]}.\n")
    elif kind is ChatCommandType.MESSAGES:
        for message in orchestrator.list_messages(session_id):
            out.write(f"  {message.id[:8]} {message.sender.value} {message.kind.value}: {message.content}\n")
    elif kind is ChatCommandType.SESSIONS:
        for session in orchestrator.list_sessions(owner_id=owner_id):
            goal = session.goal_id or "general"
            out.write(f"  {session.id[:8]} [{goal}] {session.name} ({len(session.messages)} messages)\n")
    elif kind is ChatCommandType.CLEAR_PENDING:
        cleared = await orchestrator.force_clear_pending(session_id)
        out.write(f"Cleared {len(cleared)} pending item(s).\n")
    elif kind is ChatCommandType.RESET:
        removed = await orchestrator.reset_session(session_id)
        out.write(f"Removed {len(removed)} message(s).\n")


async def _read_stdin(prompt: str) -> str:
    return await asyncio.to_thread(input, prompt)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `astire` console script."""

    args = _parse_cli_args(argv)

    debug = _env_flag("ASTIRE_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("ASTIRE_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    overrides_mapping: Dict[str, Any] | None = cli_overrides or None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides_mapping)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if not settings.api_key:
        _LOGGER.warning("No API key configured; set ASTIRE_API_KEY or use --set api_key=...")

    runtime = build_runtime(settings)
    owner_id = args.owner or settings.owner_id
    try:
        asyncio.run(_run_and_close(runtime, goal_id=args.goal, owner_id=owner_id, greeting=args.greeting))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


async def _run_and_close(runtime: ChatRuntime, **kwargs: Any) -> None:
    try:
        await run_chat(runtime, **kwargs)
    finally:
        await runtime.aclose()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="astire",
        add_help=True,
        description="Chat with the Astire assistant from the terminal or inspect its configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.astire/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings before launch (repeatable).",
    )
    parser.add_argument(
        "--goal",
        metavar="GOAL_ID",
        default=None,
        help="Open the session attached to this goal (default: the general session).",
    )
    parser.add_argument(
        "--owner",
        metavar="OWNER_ID",
        default=None,
        help="Session owner (default: the owner_id setting).",
    )
    parser.add_argument(
        "--greeting",
        default=None,
        help="Opening message sent when a new session starts; pass an empty string to skip.",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if _is_optional(annotation) and normalized.lower() in {"none", "null"}:
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is type(None) or normalized.lower() in {"none", "null"}:
        return None
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _is_optional(annotation: Any) -> bool:
    return get_origin(annotation) is not None and type(None) in get_args(annotation)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    api_key = payload.get("api_key", "")
    if isinstance(api_key, str):
        payload["api_key"] = redact_secret(api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("ASTIRE_"))
