"""Whole-file JSON/text persistence for state files.

Every write goes to a temp file in the target directory and is moved into
place with ``os.replace``, so a crash never leaves a half-written file.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def write_text_atomic(path: str | Path, text: str) -> None:
    """Replace ``path`` with ``text`` (UTF-8)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def write_json(path: str | Path, data: Any) -> None:
    """Write pretty JSON to disk atomically."""
    write_text_atomic(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


def read_json(path: str | Path) -> Any:
    """Read JSON from disk (UTF-8)."""
    with open(path, encoding="utf-8") as f:
        return json.load(f)


class StateFileError(ValueError):
    """An existing state file could not be parsed."""


def read_state(path: str | Path, default: Any = None) -> Any:
    """Read a JSON state file, returning ``default`` if it does not exist.

    A file that exists but is not valid JSON raises StateFileError rather
    than being treated as empty.
    """
    path = Path(path)
    if not path.exists():
        return default
    try:
        return read_json(path)
    except json.JSONDecodeError as e:
        raise StateFileError(f"Malformed state file {path}: {e}") from e
