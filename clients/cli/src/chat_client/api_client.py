"""Async REST client for the auth, search and history endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from typing import Any, Dict, List, Optional

import aiohttp

from chat_client.config import ClientConfig
from chat_client.errors import AuthError, FetchError
from chat_client.session_store import SessionRecord

logger = logging.getLogger(__name__)


def _segment(value: str) -> str:
    return urllib.parse.quote(value, safe="")


class ApiClient:
    """Thin wrapper over ``aiohttp.ClientSession`` that maps failures to ``FetchError``."""

    def __init__(self, config: ClientConfig, http: aiohttp.ClientSession, token: Optional[str] = None) -> None:
        self.config = config
        self.token = token
        self._http = http

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, object]] = None,
        params: Optional[Dict[str, str]] = None,
        auth: bool = True,
    ) -> Any:
        headers: Dict[str, str] = {}
        if auth and self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_s)
        try:
            async with self._http.request(
                method,
                self._url(path),
                json=payload,
                params=params,
                headers=headers,
                timeout=timeout,
            ) as response:
                status = response.status
                raw = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FetchError(path, message=str(exc) or exc.__class__.__name__) from exc

        try:
            body = json.loads(raw) if raw else None
        except ValueError as exc:
            raise FetchError(path, status=status, message="invalid json") from exc
        if status >= 400:
            message = body.get("error", "") if isinstance(body, dict) else ""
            raise FetchError(path, status=status, message=str(message))
        return body

    async def _get_list(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        body = await self._request("GET", path, params=params)
        if not isinstance(body, list):
            raise FetchError(path, message="expected a JSON list")
        return [entry for entry in body if isinstance(entry, dict)]

    async def _authenticate(self, path: str, payload: Dict[str, object], fallback: str) -> SessionRecord:
        try:
            body = await self._request("POST", path, payload=payload, auth=False)
        except FetchError as exc:
            if exc.status is None:
                raise AuthError("Connection error. Please try again.") from exc
            raise AuthError(exc.message or fallback) from exc
        if not isinstance(body, dict) or not body.get("token") or not body.get("username"):
            raise AuthError(fallback)
        record = SessionRecord(
            token=str(body["token"]),
            username=str(body["username"]),
            full_name=str(body.get("fullName") or body["username"]),
        )
        self.token = record.token
        return record

    async def login(self, username: str, password: str) -> SessionRecord:
        return await self._authenticate(
            "/api/auth/login",
            {"username": username.strip(), "password": password},
            "Login failed",
        )

    async def register(self, username: str, full_name: str, password: str, confirm_password: str) -> SessionRecord:
        if password != confirm_password:
            raise AuthError("Passwords do not match")
        return await self._authenticate(
            "/api/auth/register",
            {"username": username.strip(), "fullName": full_name.strip(), "password": password},
            "Registration failed",
        )

    async def search_users(self, query: str) -> List[Dict[str, Any]]:
        return await self._get_list("/users/search", params={"query": query})

    async def fetch_contacts(self, user_id: str) -> List[Dict[str, Any]]:
        return await self._get_list(f"/contacts/{_segment(user_id)}")

    async def fetch_messages(self, user_id: str, peer_id: str) -> List[Dict[str, Any]]:
        return await self._get_list(f"/messages/{_segment(user_id)}/{_segment(peer_id)}")

    async def fetch_undelivered(self, user_id: str) -> List[Dict[str, Any]]:
        return await self._get_list(f"/messages/undelivered/{_segment(user_id)}")

    async def mark_read(self, sender_id: str, recipient_id: str) -> None:
        await self._request("POST", f"/messages/read/{_segment(sender_id)}/{_segment(recipient_id)}")
