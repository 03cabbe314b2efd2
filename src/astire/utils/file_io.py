"""File IO helpers used by the JSON session backend and settings store."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

__all__ = ["read_text", "write_text", "read_json", "write_json"]


def read_text(path: Path | str, *, encoding: str = "utf-8") -> str:
    """Read a text file, stripping a UTF-8 BOM and normalizing newlines."""

    raw = Path(path).read_bytes()
    text = raw.decode(encoding)
    if text.startswith("\ufeff"):
        text = text[1:]
    return _normalize_newlines(text)


def write_text(
    path: Path | str,
    content: str,
    *,
    encoding: str = "utf-8",
    atomic: bool = True,
) -> Path:
    """Write text to disk, replacing the target atomically unless ``atomic`` is off."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    normalized = _normalize_newlines(content)
    if not atomic:
        with target.open("w", encoding=encoding, newline="") as handle:
            handle.write(normalized)
            handle.flush()
            os.fsync(handle.fileno())
        return target

    descriptor, tmp_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(descriptor, "w", encoding=encoding, newline="") as handle:
            handle.write(normalized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):  # pragma: no cover - cleanup path
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
    return target


def read_json(path: Path | str) -> Any:
    """Load a JSON document from ``path``."""

    return json.loads(read_text(path))


def write_json(path: Path | str, payload: Any, *, indent: int | None = 2) -> Path:
    """Serialize ``payload`` as JSON and write it atomically."""

    body = json.dumps(payload, indent=indent, sort_keys=True, ensure_ascii=False)
    return write_text(path, body + "\n")


def _normalize_newlines(text: str) -> str:
    if "\r" not in text:
        return text
    text = text.replace("\r\n", "\n")
    return text.replace("\r", "\n")
