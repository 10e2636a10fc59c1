from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from .models import ChatMessage

# Terminal marker forwarded from the upstream chat-completions stream.
DONE_MARKER = "[DONE]"

# Side-channel payload kind routed to the relay.
PROGRAM_PATCH_KIND = "program_patch"

# Keys that may carry the announced thread id in a metadata frame.
THREAD_ID_KEYS = ("thread_id", "threadId")


def make_stream_request(
    messages: Sequence[ChatMessage],
    thread_id: str | None = None,
) -> dict[str, Any]:
    """Build the request body for one streaming completion call."""
    payload: dict[str, Any] = {
        "messages": [{"role": m.role, "content": m.content} for m in messages],
    }
    if thread_id is not None:
        payload["thread_id"] = thread_id
    return payload


def is_done_marker(data: str) -> bool:
    return data.strip() == DONE_MARKER


def decode_frame(data: str) -> dict[str, Any] | None:
    """Decode one frame's data field; return None for blank or non-object payloads."""
    text = data.strip()
    if not text:
        return None
    try:
        frame = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(frame, dict):
        return None
    return frame


def extract_delta(frame: Mapping[str, Any]) -> str | None:
    """Return the text delta carried by a frame, if any.

    Accepts the chat-completions chunk shape
    (``choices[0].delta.content``) and the flat ``{"type": "delta"}`` shape.
    """
    choices = frame.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, Mapping):
            delta = first.get("delta")
            if isinstance(delta, Mapping):
                content = delta.get("content")
                if isinstance(content, str):
                    return content
        return None

    if frame.get("type") == "delta":
        delta_text = frame.get("delta")
        if isinstance(delta_text, str):
            return delta_text
    return None


def extract_thread_id(frame: Mapping[str, Any]) -> str | None:
    for key in THREAD_ID_KEYS:
        value = frame.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_error(frame: Mapping[str, Any]) -> str | None:
    """Return the error description of a failure frame, if the frame is one."""
    if "error" not in frame:
        return None
    error = frame.get("error")
    if isinstance(error, Mapping):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
        return "stream failed"
    if isinstance(error, str) and error:
        return error
    if error is None:
        return None
    return str(error)


def is_side_channel_frame(frame: Mapping[str, Any]) -> bool:
    """Return True when a frame is an out-of-band `{id, kind, payload}` envelope."""
    return (
        isinstance(frame.get("kind"), str)
        and isinstance(frame.get("id"), str)
        and "choices" not in frame
    )


class SseDecoder:
    """Incremental `text/event-stream` decoder yielding joined `data:` payloads."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        """Consume a decoded text chunk and return every completed event's data."""
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")
        events: list[str] = []
        while True:
            idx = self._buffer.find("\n\n")
            if idx == -1:
                break
            packet = self._buffer[:idx]
            self._buffer = self._buffer[idx + 2 :]
            data = _packet_data(packet)
            if data is not None:
                events.append(data)
        return events

    def flush(self) -> list[str]:
        """Return the trailing event when the stream ended without a blank line."""
        packet = self._buffer
        self._buffer = ""
        if not packet.strip():
            return []
        data = _packet_data(packet)
        return [data] if data is not None else []


def _packet_data(packet: str) -> str | None:
    data_lines: list[str] = []
    for line in packet.split("\n"):
        if not line.startswith("data:"):
            continue
        value = line[5:]
        data_lines.append(value[1:] if value.startswith(" ") else value)
    if not data_lines:
        return None
    return "\n".join(data_lines)
