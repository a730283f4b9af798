"""Atomic JSON file helpers shared by the local storage backends.

Writes go to a temp file in the target directory, are fsynced, then
renamed over the destination so readers see either the old or the new
content, never a torn write.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from district_spine.core.errors import StorageCorruptionError, StorageError


def atomic_write_json(path: Path, data: Any) -> int:
    """Write ``data`` as JSON to ``path`` atomically. Returns bytes written."""
    payload = json.dumps(data, indent=2).encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise StorageError(f"Failed to write {path}: {e}", cause=e) from e
    return len(payload)


def read_json_file(path: Path) -> Any | None:
    """Parsed JSON at ``path``, or None if the file does not exist.

    Raises:
        StorageCorruptionError: The file exists but is not valid JSON
        StorageError: The file could not be read
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageError(f"Failed to read {path}: {e}", cause=e) from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise StorageCorruptionError(
            f"{path.name} is not valid JSON: {e.msg} (line {e.lineno})",
            path=str(path),
            cause=e,
        ) from e
