"""Client configuration defaults and environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from chat_client.session_store import DEFAULT_SESSION_PATH

DEFAULT_BASE_URL = "http://127.0.0.1:8080"
BASE_URL_ENV = "CHAT_CLIENT_BASE_URL"
SESSION_FILE_ENV = "CHAT_CLIENT_SESSION_FILE"


@dataclass(frozen=True)
class ClientConfig:
    base_url: str = DEFAULT_BASE_URL
    ws_path: str = "/ws"
    session_path: Path = field(default=DEFAULT_SESSION_PATH)
    request_timeout_s: float = 10.0
    connect_timeout_s: float = 10.0
    # Delay before applying backlog badge counts, so the first contact load can finish.
    badge_seed_delay_s: float = 0.5
    contact_refresh_delay_s: float = 0.5
    search_debounce_s: float = 0.3

    @property
    def ws_url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}{self.ws_path}"


def load_config(
    base_url: Optional[str] = None,
    session_path: Optional[Path | str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ClientConfig:
    """Build a config from explicit arguments, falling back to the environment then defaults."""

    env = os.environ if environ is None else environ
    resolved_url = base_url or env.get(BASE_URL_ENV) or DEFAULT_BASE_URL
    resolved_path = session_path or env.get(SESSION_FILE_ENV) or DEFAULT_SESSION_PATH
    return ClientConfig(base_url=resolved_url, session_path=Path(resolved_path).expanduser())
