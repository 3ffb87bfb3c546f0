"""Error taxonomy for the chat client."""

from __future__ import annotations


class ChatClientError(Exception):
    pass


class AuthError(ChatClientError):
    """Bad credentials or a rejected registration; shown inline, no state change."""


class ChatConnectionError(ChatClientError):
    """The realtime transport handshake failed; realtime features stay down until restart."""


class FetchError(ChatClientError):
    """A REST call failed. ``status`` is ``None`` when no HTTP response arrived."""

    def __init__(self, path: str, *, status: int | None = None, message: str = "") -> None:
        self.path = path
        self.status = status
        self.message = message
        detail = f"HTTP {status}" if status is not None else "no response"
        super().__init__(f"{path}: {detail}{': ' + message if message else ''}")
