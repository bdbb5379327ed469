"""HTTP client store talking to the Parlor API.

This is the store a device uses: every call goes over the network, and any
transport failure or 5xx answer surfaces as :class:`NetworkError` so the
messaging core can divert writes to the offline outbox.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from parlor.core.errors import (
    NetworkError,
    NotFoundError,
    ParlorError,
    PermissionDeniedError,
    ValidationError,
)
from parlor.core.settings import settings
from parlor.schemas.direct_message import (
    MessageDraft,
    MessageRecord,
    ProfileRecord,
    ThreadRecord,
)

__all__ = ["HttpMessageStore"]

logger = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_INTERNAL_SERVER_ERROR = 500


class HttpMessageStore:
    """HTTP client wrapper implementing the message store contract."""

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        *,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._access_token = access_token
        self._base_url = (base_url or settings.api_base_url).rstrip("/")
        self._timeout = timeout_seconds or settings.http_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self._base_url,
                    timeout=httpx.Timeout(self._timeout),
                    headers={"Authorization": f"Bearer {self._access_token}"},
                    transport=self._transport,
                )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""
        method: str
        path: str
        json_data: Any | None = None
        params: Mapping[str, Any] | None = None

    async def _request(self, params: RequestParams) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(
                params.method,
                params.path,
                json=params.json_data,
                params=params.params,
            )
        except httpx.HTTPError as exc:
            logger.warning("Store request %s %s failed: %s", params.method, params.path, exc)
            raise NetworkError(f"Store request failed: {exc}") from exc

        status = response.status_code
        if status >= HTTP_INTERNAL_SERVER_ERROR:
            raise NetworkError(f"Store responded with {status}")
        if status == HTTP_NOT_FOUND:
            raise NotFoundError(self._detail(response, "Not found"))
        if status == HTTP_FORBIDDEN:
            raise PermissionDeniedError(self._detail(response, "Forbidden"))
        if status in (HTTP_BAD_REQUEST, HTTP_CONFLICT):
            raise ValidationError(self._detail(response, "Rejected by store"))
        if status >= HTTP_BAD_REQUEST:
            raise ParlorError(f"Unexpected store response ({status})")
        return response

    async def _request_optional(self, params: RequestParams) -> httpx.Response | None:
        try:
            return await self._request(params)
        except NotFoundError:
            return None

    @staticmethod
    def _detail(response: httpx.Response, fallback: str) -> str:
        try:
            return str(response.json().get("detail", fallback))
        except ValueError:
            return fallback

    async def get_profile(self, user_id: str) -> ProfileRecord | None:
        response = await self._request_optional(self.RequestParams("GET", f"/profiles/{user_id}"))
        return ProfileRecord.model_validate(response.json()) if response else None

    async def set_public_key(self, user_id: str, public_key: str) -> None:
        # The API derives the user from the bearer token; user_id is implied.
        await self._request(
            self.RequestParams("PUT", "/profiles/me/public-key", json_data={"public_key": public_key})
        )

    async def find_active_thread(self, user_a: str, user_b: str) -> ThreadRecord | None:
        # Threads are looked up from the caller's side, so user_a is the token owner.
        response = await self._request_optional(
            self.RequestParams("GET", "/threads/lookup", params={"peer_id": user_b})
        )
        return ThreadRecord.model_validate(response.json()) if response else None

    async def insert_thread(self, user_a: str, user_b: str) -> ThreadRecord:
        try:
            response = await self._request(
                self.RequestParams("POST", "/threads", json_data={"peer_id": user_b})
            )
        except ValidationError:
            existing = await self.find_active_thread(user_a, user_b)
            if existing is None:
                raise
            return existing
        return ThreadRecord.model_validate(response.json())

    async def get_thread(self, thread_id: str) -> ThreadRecord | None:
        response = await self._request_optional(self.RequestParams("GET", f"/threads/{thread_id}"))
        return ThreadRecord.model_validate(response.json()) if response else None

    async def list_threads(self, user_id: str) -> list[ThreadRecord]:
        response = await self._request(self.RequestParams("GET", "/threads"))
        return [ThreadRecord.model_validate(item) for item in response.json()]

    async def insert_message(self, draft: MessageDraft) -> MessageRecord:
        response = await self._request(
            self.RequestParams(
                "POST",
                f"/threads/{draft.thread_id}/messages",
                json_data=draft.model_dump(mode="json"),
            )
        )
        return MessageRecord.model_validate(response.json())

    async def get_message(self, message_id: str) -> MessageRecord | None:
        response = await self._request_optional(self.RequestParams("GET", f"/messages/{message_id}"))
        return MessageRecord.model_validate(response.json()) if response else None

    async def list_messages(
        self,
        thread_id: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[MessageRecord]:
        query: dict[str, Any] = {}
        if since is not None:
            query["since"] = since.isoformat()
        if limit is not None:
            query["limit"] = limit
        response = await self._request(
            self.RequestParams("GET", f"/threads/{thread_id}/messages", params=query)
        )
        return [MessageRecord.model_validate(item) for item in response.json()]

    async def last_message(self, thread_id: str) -> MessageRecord | None:
        response = await self._request_optional(
            self.RequestParams("GET", f"/threads/{thread_id}/messages/last")
        )
        return MessageRecord.model_validate(response.json()) if response else None

    async def count_unread(self, thread_id: str, reader_id: str) -> int:
        response = await self._request(
            self.RequestParams("GET", f"/threads/{thread_id}/unread-count")
        )
        return int(response.json()["count"])

    async def mark_read(
        self,
        thread_id: str,
        reader_id: str,
        up_to: datetime | None = None,
    ) -> list[str]:
        body: dict[str, Any] = {}
        if up_to is not None:
            body["up_to"] = up_to.isoformat()
        response = await self._request(
            self.RequestParams("POST", f"/threads/{thread_id}/read", json_data=body)
        )
        return list(response.json()["message_ids"])
