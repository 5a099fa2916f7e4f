from __future__ import annotations

import json
import os
import stat
from pathlib import Path
from typing import Any

PRIVATE_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0600
PRIVATE_DIR_MODE = stat.S_IRWXU  # 0700


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True, mode=PRIVATE_DIR_MODE)
    try:
        os.chmod(path, PRIVATE_DIR_MODE)
    except OSError:
        pass


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write ``data`` as JSON so that readers see either the old or the new record.

    The temp file is created with 0600 before anything is written to it, then renamed
    over the destination.
    """
    ensure_private_dir(path.parent)
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PRIVATE_FILE_MODE)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2, sort_keys=True) + "\n")
        os.chmod(tmp, PRIVATE_FILE_MODE)
        tmp.replace(path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def read_json_object(path: Path) -> dict[str, Any] | None:
    """Return the JSON object stored at ``path``, or None if missing, unreadable or not an object."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(raw, dict):
        return None
    return raw
