"""Runnable wrapper for the chat client CLI."""

from chat_client.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
