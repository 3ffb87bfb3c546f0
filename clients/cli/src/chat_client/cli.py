"""Line-oriented command-line front end for the chat client."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Any, List, Optional, TextIO

import aiohttp

from chat_client.api_client import ApiClient
from chat_client.config import ClientConfig, load_config
from chat_client.contacts import ContactSynchronizer
from chat_client.conversation import render_message
from chat_client.engine import ChatEngine
from chat_client.errors import AuthError, ChatConnectionError, FetchError
from chat_client.session_store import clear_session, load_session, save_session
from chat_client.status_tracker import MessageStatusTracker

CHAT_HELP = "Type a message and press enter. Commands: /open <user>, /search <query>, /contacts, /logout, /quit"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Realtime chat client")
    parser.add_argument("--base-url", default=None, help="Chat server URL (default: $CHAT_CLIENT_BASE_URL)")
    parser.add_argument("--session-file", default=None, help="Where the signed-in session is stored")
    parser.add_argument("--log-level", default="WARNING", help="Python logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    login = subparsers.add_parser("login", help="Sign in and store the session")
    login.add_argument("username")
    login.add_argument("--password", default=None, help="Prompted for when omitted")

    register = subparsers.add_parser("register", help="Create an account and store the session")
    register.add_argument("username")
    register.add_argument("full_name")
    register.add_argument("--password", default=None, help="Prompted for when omitted")

    subparsers.add_parser("logout", help="Forget the stored session")
    subparsers.add_parser("contacts", help="List conversations, most recent first")

    history = subparsers.add_parser("history", help="Print the conversation with a user")
    history.add_argument("peer")

    search = subparsers.add_parser("search", help="Find users by name")
    search.add_argument("query")

    chat = subparsers.add_parser("chat", help="Open an interactive conversation")
    chat.add_argument("peer", nargs="?", default=None)
    return parser


def _write(output: TextIO, text: str) -> None:
    output.write(text + "\n")
    output.flush()


async def _authenticate(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    password = args.password if args.password is not None else getpass.getpass("Password: ")
    async with aiohttp.ClientSession() as http:
        api = ApiClient(config, http)
        try:
            if args.command == "register":
                confirm = args.password if args.password is not None else getpass.getpass("Confirm password: ")
                record = await api.register(args.username, args.full_name, password, confirm)
            else:
                record = await api.login(args.username, password)
        except AuthError as exc:
            _write(output, f"error: {exc}")
            return 1
    save_session(record, config.session_path)
    _write(output, f"Signed in as {record.full_name} (@{record.username})")
    return 0


async def _contacts(config: ClientConfig, output: TextIO) -> int:
    session = load_session(config.session_path)
    if session is None:
        _write(output, "Not signed in. Run `login` first.")
        return 1
    async with aiohttp.ClientSession() as http:
        contacts = ContactSynchronizer(ApiClient(config, http, token=session.token), session.username)
        if not await contacts.refresh():
            _write(output, "error: could not load contacts")
            return 1
    for line in contacts.render():
        _write(output, line)
    return 0


async def _history(config: ClientConfig, peer: str, output: TextIO) -> int:
    session = load_session(config.session_path)
    if session is None:
        _write(output, "Not signed in. Run `login` first.")
        return 1
    async with aiohttp.ClientSession() as http:
        api = ApiClient(config, http, token=session.token)
        try:
            entries = await api.fetch_messages(session.username, peer)
        except FetchError as exc:
            _write(output, f"error: {exc}")
            return 1
    tracker = MessageStatusTracker(session.username)
    for message in tracker.load_history(peer, entries):
        _write(output, render_message(message, session.username).format())
    return 0


async def _search(config: ClientConfig, query: str, output: TextIO) -> int:
    session = load_session(config.session_path)
    if session is None:
        _write(output, "Not signed in. Run `login` first.")
        return 1
    async with aiohttp.ClientSession() as http:
        api = ApiClient(config, http, token=session.token)
        try:
            users = await api.search_users(query)
        except FetchError as exc:
            _write(output, f"error: {exc}")
            return 1
    users = [user for user in users if user.get("username") != session.username]
    if not users:
        _write(output, "No users found")
    for user in users:
        _write(output, f"{user.get('fullName')} (@{user.get('username')}) {str(user.get('status', '')).lower()}")
    return 0


def _print_event(output: TextIO, engine: ChatEngine):
    def listener(kind: str, data: Any) -> None:
        if kind == "conversation":
            _write(output, f"--- {engine.view.active_name} ---")
            for rendered in data:
                _write(output, rendered.format())
        elif kind == "status":
            for rendered in data:
                _write(output, f"  [{rendered.message_id}] {rendered.indicator}")
        elif kind in {"notice", "banner"}:
            _write(output, f"* {data}")
        elif kind == "search":
            if not data:
                _write(output, "No users found")
            for user in data:
                _write(output, f"  {user.get('fullName')} (@{user.get('username')})")

    return listener


async def _chat(config: ClientConfig, peer: Optional[str], output: TextIO, input_stream: TextIO) -> int:
    session = load_session(config.session_path)
    if session is None:
        _write(output, "Not signed in. Run `login` first.")
        return 1
    loop = asyncio.get_running_loop()
    async with aiohttp.ClientSession() as http:
        engine = ChatEngine(config, session, http)
        engine.add_listener(_print_event(output, engine))
        try:
            await engine.start()
        except ChatConnectionError:
            return 1
        for line in engine.contacts.render():
            _write(output, line)
        if peer:
            await engine.select_peer(peer)
        _write(output, CHAT_HELP)
        try:
            while True:
                line = await loop.run_in_executor(None, input_stream.readline)
                if not line:
                    break
                if engine.banner is not None:
                    return 1
                text = line.strip()
                if text == "/quit":
                    break
                if text == "/logout":
                    await engine.logout()
                    _write(output, "Signed out.")
                    return 0
                if text == "/contacts":
                    for entry in engine.contacts.render():
                        _write(output, entry)
                elif text.startswith("/open "):
                    await engine.select_peer(text[len("/open ") :].strip())
                elif text.startswith("/search "):
                    engine.search(text[len("/search ") :])
                elif engine.active_peer is None:
                    _write(output, "Open a conversation first with /open <user>.")
                else:
                    await engine.send_message(text)
        finally:
            await engine.close()
    return 0


def main(argv: List[str] | None = None, output: TextIO | None = None, input_stream: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    config = load_config(args.base_url, args.session_file)
    out = output or sys.stdout

    if args.command in {"login", "register"}:
        return asyncio.run(_authenticate(args, config, out))
    if args.command == "logout":
        clear_session(config.session_path)
        _write(out, "Signed out.")
        return 0
    if args.command == "contacts":
        return asyncio.run(_contacts(config, out))
    if args.command == "history":
        return asyncio.run(_history(config, args.peer, out))
    if args.command == "search":
        return asyncio.run(_search(config, args.query, out))
    if args.command == "chat":
        return asyncio.run(_chat(config, args.peer, out, input_stream or sys.stdin))
    parser.error(f"unknown command {args.command}")
    return 2
