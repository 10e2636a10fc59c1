from __future__ import annotations

import contextlib
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from .errors import AriaProtocolError, AriaTransportError
from .models import ChatMessage, StreamResult
from .protocol import (
    decode_frame,
    extract_delta,
    extract_error,
    extract_thread_id,
    is_done_marker,
    is_side_channel_frame,
    make_stream_request,
)
from .relay import SideChannelRelay
from .transport import SseTransport, Transport, WebSocketTransport

logger = logging.getLogger(__name__)

FragmentCallback = Callable[[str], None]

DEFAULT_STREAM_URL = "http://127.0.0.1:54321/functions/v1/aria-chat-and-log-stream"


class StreamClient(ABC):
    """Consumption contract for the remote streaming completion service.

    One call delivers zero or more fragments through `on_fragment`, in
    emission order, then ends exactly once: by returning a `StreamResult`
    (success) or by raising an `AriaError` (failure).
    """

    @abstractmethod
    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        thread_id: str | None,
        on_fragment: FragmentCallback,
    ) -> StreamResult:
        raise NotImplementedError


class AriaStreamClient(StreamClient):
    """Stream client for the ARIA chat function over SSE or websocket."""

    def __init__(
        self,
        transport: Transport,
        *,
        side_channel: SideChannelRelay | None = None,
    ) -> None:
        """Create a client bound to a transport.

        Args:
            transport: Connected or connectable transport instance.
            side_channel: Optional relay receiving `{id, kind, payload}` frames
                that arrive interleaved with the text stream.
        """
        self._transport = transport
        self._side_channel = side_channel
        self._started = False
        self._closed = False

    @classmethod
    def connect_sse(
        cls,
        *,
        url: str | None = None,
        token: str | None = None,
        api_key: str | None = None,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        request_timeout: float = 30.0,
        side_channel: SideChannelRelay | None = None,
    ) -> AriaStreamClient:
        """Create an unstarted client configured for the SSE endpoint."""
        resolved_url = url or os.getenv("ARIA_STREAM_URL") or DEFAULT_STREAM_URL
        transport = SseTransport(
            resolved_url,
            headers=_auth_headers(headers, token=token, api_key=api_key),
            connect_timeout=connect_timeout,
            request_timeout=request_timeout,
        )
        return cls(transport, side_channel=side_channel)

    @classmethod
    def connect_websocket(
        cls,
        *,
        url: str | None = None,
        token: str | None = None,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        side_channel: SideChannelRelay | None = None,
    ) -> AriaStreamClient:
        """Create an unstarted client configured for websocket transport."""
        resolved_url = url or os.getenv("ARIA_STREAM_WS_URL") or "ws://127.0.0.1:8765"
        transport = WebSocketTransport(
            resolved_url,
            headers=_auth_headers(headers, token=token, api_key=None),
            connect_timeout=connect_timeout,
        )
        return cls(transport, side_channel=side_channel)

    async def start(self) -> AriaStreamClient:
        """Open transport resources once."""
        if self._closed:
            raise AriaTransportError("client is closed")
        if self._started:
            return self
        await self._transport.connect()
        self._started = True
        return self

    async def __aenter__(self) -> AriaStreamClient:
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._transport.close()
        self._started = False

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        thread_id: str | None,
        on_fragment: FragmentCallback,
    ) -> StreamResult:
        """Run one completion call and fold its frames into fragments."""
        if not self._started:
            await self.start()

        payload = make_stream_request(messages, thread_id)
        announced_thread_id: str | None = None
        parts: list[str] = []

        frames = self._transport.open_stream(payload)
        async with contextlib.aclosing(frames):
            async for data in frames:
                if is_done_marker(data):
                    break

                frame = decode_frame(data)
                if frame is None:
                    logger.debug("skipping undecodable stream frame: %.80r", data)
                    continue

                error = extract_error(frame)
                if error is not None:
                    raise AriaProtocolError(f"stream failed: {error}", data=frame)

                if is_side_channel_frame(frame):
                    if self._side_channel is not None:
                        self._side_channel.dispatch(frame)
                    continue

                frame_thread_id = extract_thread_id(frame)
                if frame_thread_id is not None:
                    if announced_thread_id is None:
                        announced_thread_id = frame_thread_id
                    elif announced_thread_id != frame_thread_id:
                        raise AriaProtocolError(
                            "stream announced more than one thread id",
                            data=frame,
                        )

                delta = extract_delta(frame)
                if delta is not None:
                    parts.append(delta)
                    on_fragment(delta)

        return StreamResult(
            thread_id=announced_thread_id,
            text="".join(parts),
            fragment_count=len(parts),
        )


def _auth_headers(
    headers: Mapping[str, str] | None,
    *,
    token: str | None,
    api_key: str | None,
) -> dict[str, str]:
    resolved = dict(headers) if headers is not None else {}
    resolved_token = token or os.getenv("ARIA_ACCESS_TOKEN")
    resolved_api_key = api_key or os.getenv("ARIA_API_KEY")
    if resolved_token and "Authorization" not in resolved:
        resolved["Authorization"] = f"Bearer {resolved_token}"
    if resolved_api_key and "apikey" not in resolved:
        resolved["apikey"] = resolved_api_key
    return resolved
