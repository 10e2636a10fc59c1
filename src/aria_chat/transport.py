from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from typing import Any

import httpx
import websockets
from websockets.exceptions import ConnectionClosedOK

from .errors import AriaProtocolError, AriaTransportError
from .protocol import SseDecoder

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Abstract transport carrying one streaming completion call at a time."""

    @abstractmethod
    async def connect(self) -> None:
        """Open transport resources."""
        raise NotImplementedError

    @abstractmethod
    def open_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[str]:
        """Send one request and yield each raw frame payload as text."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close transport resources."""
        raise NotImplementedError


class SseTransport(Transport):
    """Streaming completion calls over HTTP `text/event-stream`."""

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        request_timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Configure SSE transport.

        Args:
            url: Streaming endpoint URL.
            headers: Optional request headers, including auth.
            connect_timeout: Timeout for establishing the HTTP connection.
            request_timeout: Timeout for writes and pool acquisition. Reads are
                unbounded; stream silence is policed by the controller.
            client: Optional preconfigured client; it is not closed by `close()`.
        """
        if not url:
            raise ValueError("stream url must not be empty")
        self._url = url
        self._headers = dict(headers) if headers is not None else {}
        self._timeout = httpx.Timeout(
            request_timeout,
            connect=connect_timeout,
            read=None,
        )
        self._client = client
        self._owns_client = client is None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True

    async def open_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[str]:
        """POST the request and yield each event's `data:` payload."""
        if self._client is None:
            raise AriaTransportError("sse transport is not connected")

        headers = {"Accept": "text/event-stream", **self._headers}
        try:
            async with self._client.stream(
                "POST",
                self._url,
                json=dict(payload),
                headers=headers,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise AriaProtocolError(
                        f"stream request failed with HTTP {response.status_code}",
                        code=response.status_code,
                        data=body,
                    )
                decoder = SseDecoder()
                async for chunk in response.aiter_text():
                    for data in decoder.feed(chunk):
                        yield data
                for data in decoder.flush():
                    yield data
        except httpx.HTTPError as exc:
            raise AriaTransportError(
                f"sse transport failed: {self._url} ({exc.__class__.__name__}: {exc})"
            ) from exc

    async def close(self) -> None:
        if self._client is None:
            return
        client = self._client
        self._client = None
        if self._owns_client:
            await client.aclose()


class WebSocketTransport(Transport):
    """Streaming completion calls over websocket, one connection per stream."""

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        """Configure websocket transport.

        Args:
            url: Websocket endpoint URL.
            headers: Optional request headers, including auth.
            connect_timeout: Timeout for websocket handshake.
        """
        self._url = url
        self._headers = dict(headers) if headers is not None else None
        self._connect_timeout = connect_timeout
        self._closed = False

    async def connect(self) -> None:
        self._closed = False

    async def open_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[str]:
        """Send the request frame and yield every text frame until the peer closes."""
        if self._closed:
            raise AriaTransportError("websocket transport is closed")
        socket = await self._open_socket()
        try:
            try:
                await socket.send(json.dumps(dict(payload), separators=(",", ":")))
            except Exception as exc:
                raise AriaTransportError("failed writing to websocket transport") from exc

            while True:
                try:
                    message = await socket.recv()
                except ConnectionClosedOK:
                    return
                except Exception as exc:
                    raise AriaTransportError(
                        "failed reading from websocket transport"
                    ) from exc

                if isinstance(message, (bytes, bytearray)):
                    yield message.decode("utf-8")
                else:
                    yield str(message)
        finally:
            try:
                await socket.close()
            except Exception:
                logger.debug("websocket close failed", exc_info=True)

    async def close(self) -> None:
        self._closed = True

    async def _open_socket(self) -> Any:
        try:
            return await asyncio.wait_for(
                websockets.connect(
                    self._url,
                    additional_headers=self._headers,
                    compression=None,
                ),
                timeout=self._connect_timeout,
            )
        except Exception as exc:
            raise AriaTransportError(
                "failed to connect websocket transport: "
                f"{self._url} ({exc.__class__.__name__}: {exc})"
            ) from exc
