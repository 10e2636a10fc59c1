from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import httpx

from .errors import AriaError, HistoryLoadError
from .models import ChatMessage, Turn
from .prompts import GREETING

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "aria_messages"


class HistoryStore(ABC):
    """Read access to the server-side transcript of a thread."""

    @abstractmethod
    async def fetch(self, thread_id: str) -> list[ChatMessage]:
        """Return prior messages for a thread in conversational order."""
        raise NotImplementedError


class RestHistoryStore(HistoryStore):
    """History store backed by the PostgREST `aria_messages` table."""

    def __init__(
        self,
        base_url: str,
        *,
        headers: Mapping[str, str] | None = None,
        request_timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Configure the REST history store.

        Args:
            base_url: REST root, e.g. ``https://<project>.supabase.co/rest/v1``.
            headers: Auth headers (``apikey`` and ``Authorization``).
            request_timeout: Per-request timeout in seconds.
            client: Optional preconfigured client; used as-is and not closed.
        """
        if not base_url:
            raise ValueError("base_url must not be empty")
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers) if headers is not None else {}
        self._request_timeout = request_timeout
        self._client = client

    @classmethod
    def from_env(cls, *, request_timeout: float = 30.0) -> RestHistoryStore:
        """Build a store from `ARIA_REST_URL`, `ARIA_API_KEY` and `ARIA_ACCESS_TOKEN`."""
        base_url = os.getenv("ARIA_REST_URL") or "http://127.0.0.1:54321/rest/v1"
        headers: dict[str, str] = {}
        api_key = os.getenv("ARIA_API_KEY")
        token = os.getenv("ARIA_ACCESS_TOKEN") or api_key
        if api_key:
            headers["apikey"] = api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return cls(base_url, headers=headers, request_timeout=request_timeout)

    async def fetch(self, thread_id: str) -> list[ChatMessage]:
        params = {
            "select": "role,content,created_at",
            "thread_id": f"eq.{thread_id}",
            "order": "created_at.asc",
        }
        url = f"{self._base_url}/{MESSAGES_TABLE}"
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, headers=self._headers)
            else:
                async with httpx.AsyncClient(timeout=self._request_timeout) as client:
                    response = await client.get(url, params=params, headers=self._headers)
            response.raise_for_status()
            rows = response.json()
        except httpx.HTTPError as exc:
            raise HistoryLoadError(f"failed to fetch history for thread {thread_id}") from exc
        except ValueError as exc:
            raise HistoryLoadError("history response is not valid JSON") from exc

        if not isinstance(rows, list):
            raise HistoryLoadError("history response is not a list")
        return [m for m in (_message_from_row(row) for row in rows) if m is not None]


def _message_from_row(row: Any) -> ChatMessage | None:
    if not isinstance(row, Mapping):
        return None
    role = row.get("role")
    content = row.get("content")
    if role not in ("system", "user", "assistant") or not isinstance(content, str):
        return None
    return ChatMessage(role=role, content=content)


def greeting_turn(text: str = GREETING) -> Turn:
    return Turn(id="welcome", role="assistant", text=text)


async def load_history(
    store: HistoryStore,
    thread_id: str,
    *,
    greeting: str = GREETING,
) -> list[Turn]:
    """Fetch a thread's prior turns for display.

    `system` messages are dropped. Any failure, or an empty history, yields a
    single greeting turn so the conversation stays usable.
    """
    try:
        messages = await store.fetch(thread_id)
    except AriaError as exc:
        logger.warning("history load failed for thread %s: %s", thread_id, exc)
        return [greeting_turn(greeting)]
    except Exception:
        logger.exception("unexpected history load failure for thread %s", thread_id)
        return [greeting_turn(greeting)]

    turns = [
        Turn(role=m.role, text=m.content)
        for m in messages
        if m.role != "system"
    ]
    if not turns:
        return [greeting_turn(greeting)]
    return turns
