"""Tests covering the application bootstrap helpers and the chat loop."""

from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Any, AsyncIterator, Callable, List, Mapping, Sequence

import pytest

from astire import app
from astire.ai.client import AIClient
from astire.chat.message_model import MessageKind
from astire.chat.persistence import InMemorySessionBackend
from astire.orchestration.orchestrator import BLOCKED_NOTICE
from astire.services.settings import Settings, SettingsStore

_QUESTION_LINE = '{"type":"QUESTION","content":"Which city?"}'
_TASK_LINE = '{"type":"ACTION","content":"Book it","actionType":"CREATE_TASK","actionPayload":{"title":"Book hotel"}}'


class _ScriptedBackend:
    def __init__(self, *replies: Sequence[Any]) -> None:
        self._replies = [list(reply) for reply in replies]
        self.calls: List[List[Mapping[str, Any]]] = []
        self.closed = False

    async def stream_text(self, messages: Sequence[Mapping[str, Any]]) -> AsyncIterator[str]:
        self.calls.append(list(messages))
        script = self._replies.pop(0) if self._replies else []
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item

    async def aclose(self) -> None:
        self.closed = True


class _ScriptedInput:
    """Feeds lines to the chat loop; callables are evaluated lazily."""

    def __init__(self, *lines: str | Callable[[], str]) -> None:
        self._lines = list(lines)
        self.prompts: List[str] = []

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self._lines:
            raise EOFError
        line = self._lines.pop(0)
        return line() if callable(line) else line


def _runtime(backend: _ScriptedBackend, **kwargs: Any) -> app.ChatRuntime:
    return app.build_runtime(Settings(api_key="test-key"), backend=backend, **kwargs)


def test_build_runtime_wires_components() -> None:
    runtime = app.build_runtime(Settings(api_key="test-key", max_context_messages=5))

    assert isinstance(runtime.backend, AIClient)
    assert runtime.backend.settings.api_key == "test-key"
    assert runtime.orchestrator.store is runtime.store
    assert runtime.executor.registry is runtime.registry
    assert sorted(runtime.registry.describe()) == ["ALLOCATE_FUNDS", "CREATE_TASK", "SUBMIT_CV"]


def test_build_runtime_uses_json_sessions_dir(tmp_path: Path) -> None:
    runtime = app.build_runtime(Settings(sessions_dir=str(tmp_path / "sessions")), backend=_ScriptedBackend())

    assert type(runtime.store.backend).__name__ == "JsonFileSessionBackend"


def test_coerce_cli_overrides_uses_field_types() -> None:
    overrides = app._coerce_cli_overrides(
        [
            "max_retries=5",
            "debug_logging=yes",
            "temperature=0.5",
            'metadata={"team": "ops"}',
            "model= gpt-test ",
        ]
    )

    assert overrides == {
        "max_retries": 5,
        "debug_logging": True,
        "temperature": 0.5,
        "metadata": {"team": "ops"},
        "model": "gpt-test",
    }


def test_coerce_cli_overrides_maps_null_for_optional_fields() -> None:
    overrides = app._coerce_cli_overrides(["sessions_dir=none", "organization=NULL", "model=none"])

    assert overrides == {"sessions_dir": None, "organization": None, "model": "none"}


@pytest.mark.parametrize("entry", ["model","=x", "colour=blue", "debug_logging=maybe", "max_retries=two"])
def test_coerce_cli_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides([entry])


def test_dump_settings_redacts_api_key(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    buffer = io.StringIO()

    app._dump_settings(Settings(api_key="sk-abcdef123"), store, overrides={"model": "x"}, stream=buffer)

    payload = json.loads(buffer.getvalue())
    assert payload["settings"]["api_key"] == "sk*******23"
    assert payload["meta"]["cli_overrides"] == ["model"]
    assert payload["meta"]["secret_backend"] == "fernet"
    assert "ASTIRE_LOG_DIR" in payload["meta"]["environment_variables"]


def test_main_dump_settings_applies_cli_overrides(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).save(Settings(model="from-file"))

    app.main(["--dump-settings", "--settings-path", str(path), "--set", "owner_id=grace"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["settings"]["model"] == "from-file"
    assert payload["settings"]["owner_id"] == "grace"
    assert payload["meta"]["path"] == str(path)


def test_main_rejects_invalid_override(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(["--dump-settings", "--settings-path", str(tmp_path / "s.json"), "--set", "nope"])

    assert excinfo.value.code == 2


@pytest.mark.asyncio
async def test_run_chat_greets_new_session_and_stops_on_eof() -> None:
    backend = _ScriptedBackend(["Wel", "come!"])
    runtime = _runtime(backend)
    output = io.StringIO()

    session_id = await app.run_chat(
        runtime,
        goal_id="goal-7",
        owner_id="owner",
        read_line=_ScriptedInput(),
        output=output,
    )

    text = output.getvalue()
    assert "Starting a new session" in text
    assert "ai> Welcome!\n" in text
    assert backend.calls[0][-1]["content"] == "Hello! I am your AI assistant for this goal."
    assert runtime.store.get_session(session_id).goal_id == "goal-7"


@pytest.mark.asyncio
async def test_run_chat_blocks_until_resolved() -> None:
    backend = _ScriptedBackend([f"Sure.\n{_QUESTION_LINE}\n"], ["Booked."])
    runtime = _runtime(backend)
    output = io.StringIO()
    session_holder: dict[str, str] = {}

    def _resolve_command() -> str:
        (pending,) = runtime.orchestrator.list_pending(session_holder["id"])
        return f"/resolve {pending.id[:8]}"

    def _remember_session() -> str:
        session = runtime.store.find_session("owner", None)
        assert session is not None
        session_holder["id"] = session.id
        return "/pending"

    reader = _ScriptedInput(
        "Find me a hotel",
        "And a flight",
        _remember_session,
        _resolve_command,
        "/pending",
        "Paris",
        "/bogus",
        "/quit",
        "never read",
    )

    session_id = await app.run_chat(
        runtime,
        goal_id=None,
        owner_id="owner",
        greeting="",
        read_line=reader,
        output=output,
    )

    text = output.getvalue()
    assert session_id == session_holder["id"]
    assert "ai> Sure." in text
    assert "[QUESTION" in text and "Which city?" in text
    assert f"ai> {BLOCKED_NOTICE}" in text
    assert "QUESTION: Which city?" in text
    assert "Resolved" in text
    assert "Nothing pending." in text
    assert "ai> Booked." in text
    assert "Unknown command 'bogus'" in text
    assert len(backend.calls) == 2
    assert len(reader.prompts) == 8


@pytest.mark.asyncio
async def test_run_chat_undo_command_reverses_action() -> None:
    backend = _ScriptedBackend([f"{_TASK_LINE}\n"])
    runtime = _runtime(backend)
    output = io.StringIO()

    def _undo_command() -> str:
        (record,) = runtime.executor.executed_actions()
        return f"/undo {record.message_id[:8]}"

    await app.run_chat(
        runtime,
        goal_id=None,
        owner_id="owner",
        greeting="",
        read_line=_ScriptedInput("Book the hotel", _undo_command),
        output=output,
    )

    text = output.getvalue()
    assert "(executed CREATE_TASK" in text
    assert "(undid CREATE_TASK)" in text
    assert runtime.ledger.tasks == {}


@pytest.mark.asyncio
async def test_run_chat_reports_stream_errors_and_continues() -> None:
    backend = _ScriptedBackend([RuntimeError("upstream down")], ["Back again"])
    runtime = _runtime(backend)
    output = io.StringIO()

    await app.run_chat(
        runtime,
        goal_id=None,
        owner_id="owner",
        read_line=_ScriptedInput("hello?"),
        output=output,
    )

    text = output.getvalue()
    assert "[error] Model stream failed: upstream down" in text
    assert "ai> Back again" in text


@pytest.mark.asyncio
async def test_run_chat_resumes_existing_session() -> None:
    shared = InMemorySessionBackend()
    first = _runtime(_ScriptedBackend(["Hi"]), session_backend=shared)
    session_id = await app.run_chat(
        first, goal_id=None, owner_id="owner", read_line=_ScriptedInput(), output=io.StringIO()
    )

    backend = _ScriptedBackend()
    second = _runtime(backend, session_backend=shared)
    output = io.StringIO()
    resumed_id = await app.run_chat(
        second,
        goal_id=None,
        owner_id="owner",
        read_line=_ScriptedInput("/messages", "/sessions", "/reset"),
        output=output,
    )

    text = output.getvalue()
    assert resumed_id == session_id
    assert "Resuming" in text
    assert "USER TEXT: Hello! I am your AI assistant for general chat." in text
    assert "[general]" in text
    assert "Removed 2 message(s)." in text
    assert backend.calls == []
    assert second.orchestrator.list_messages(session_id) == []
    assert all(m.kind is MessageKind.TEXT for m in first.orchestrator.list_messages(session_id))
