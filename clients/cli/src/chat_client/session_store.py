"""Persist the authenticated session so a restart resumes without logging in."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

BASE_DIR = Path.home() / ".chat_client"
DEFAULT_SESSION_PATH = BASE_DIR / "session.json"


@dataclass(frozen=True)
class SessionRecord:
    token: str
    username: str
    full_name: str


def _atomic_write_json(path: Path, payload: Dict[str, str]) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def load_session(path: Path = DEFAULT_SESSION_PATH) -> Optional[SessionRecord]:
    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, ValueError):
        return None

    if not isinstance(data, dict):
        return None
    try:
        token = str(data["token"])
        username = str(data["username"])
    except KeyError:
        return None
    if not token or not username:
        return None
    return SessionRecord(token=token, username=username, full_name=str(data.get("fullName") or username))


def save_session(record: SessionRecord, path: Path = DEFAULT_SESSION_PATH) -> None:
    _atomic_write_json(
        Path(path),
        {
            "token": record.token,
            "username": record.username,
            "fullName": record.full_name,
        },
    )


def clear_session(path: Path = DEFAULT_SESSION_PATH) -> None:
    """Remove every persisted session key at once."""

    try:
        Path(path).expanduser().unlink()
    except FileNotFoundError:
        return
