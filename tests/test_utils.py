"""Tests covering the utilities modules."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from astire.orchestration.event_log import TurnEventLogger
from astire.utils import file_io, logging as logging_utils


def test_read_text_strips_bom_and_normalizes_newlines(tmp_path: Path) -> None:
    target = tmp_path / "bom.txt"
    target.write_bytes("\ufeffLine1\r\nLine2\rLine3".encode("utf-8"))

    assert file_io.read_text(target) == "Line1\nLine2\nLine3"


def test_write_text_creates_parents_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "output.txt"

    returned = file_io.write_text(target, "Line1\r\nLine2")

    assert returned == target
    assert target.read_bytes() == b"Line1\nLine2"
    assert [path.name for path in target.parent.iterdir()] == ["output.txt"]


def test_write_text_non_atomic_overwrites(tmp_path: Path) -> None:
    target = tmp_path / "plain.txt"
    target.write_text("old", encoding="utf-8")

    file_io.write_text(target, "new", atomic=False)

    assert target.read_text(encoding="utf-8") == "new"


def test_json_helpers_roundtrip(tmp_path: Path) -> None:
    target = tmp_path / "data.json"

    file_io.write_json(target, {"b": 1, "a": ["x", None]})

    assert file_io.read_json(target) == {"a": ["x", None], "b": 1}
    assert target.read_text(encoding="utf-8").endswith("\n")


def test_read_json_rejects_invalid_documents(tmp_path: Path) -> None:
    target = tmp_path / "broken.json"
    target.write_text("{", encoding="utf-8")

    with pytest.raises(ValueError):
        file_io.read_json(target)


def _flush_root_handlers() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def test_setup_logging_creates_rotating_file(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"

    layout = logging_utils.setup_logging(level=logging.INFO, log_dir=log_dir, console=False, force=True)

    logging.getLogger("astire.tests").info("Logging smoke test")
    _flush_root_handlers()

    assert layout.engine_log == log_dir / "astire.log"
    assert layout.events_dir == log_dir / "events"
    assert logging_utils.get_log_layout() == layout
    assert "Logging smoke test" in layout.engine_log.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_records_carry_bound_session(tmp_path: Path) -> None:
    layout = logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)
    logger = logging.getLogger("astire.tests")

    with logging_utils.bind_session("session-42"):
        assert logging_utils.current_session() == "session-42"
        logger.info("inside turn")
    logger.info("outside turn")
    _flush_root_handlers()

    lines = layout.engine_log.read_text(encoding="utf-8").splitlines()
    assert any("| session-42 | inside turn" in line for line in lines)
    assert any("| - | outside turn" in line for line in lines)
    assert logging_utils.current_session() is None


def test_env_directory_moves_engine_log_and_event_logs(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("ASTIRE_LOG_DIR", str(tmp_path / "env-logs"))

    assert logging_utils.resolve_log_layout().events_dir == tmp_path / "env-logs" / "events"
    layout = logging_utils.setup_logging(console=False, force=True)

    assert layout.root == tmp_path / "env-logs"
    assert TurnEventLogger(enabled=True).base_dir == tmp_path / "env-logs" / "events"


def test_configured_layout_is_reused_without_force(tmp_path: Path) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "a", console=False, force=True)

    second = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False)

    assert second is first
    assert logging_utils.resolve_log_layout() is first
    assert logging_utils.resolve_log_layout(tmp_path / "c").root == tmp_path / "c"
