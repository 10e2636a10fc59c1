from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

#: Roles that may appear in the rendered transcript.
TurnRole: TypeAlias = Literal["user", "assistant"]

#: Roles accepted on the wire and in server-side history.
MessageRole: TypeAlias = Literal["system", "user", "assistant"]

#: Outcome of one `send_message` call.
#:
#: Values:
#: - ``"completed"``: stream terminated successfully.
#: - ``"failed"``: stream terminated with an error; fallback reply shown.
#: - ``"timeout"``: stream went silent past the inactivity timeout.
#: - ``"conflict"``: stream supplied a thread id different from the bound one.
#: - ``"superseded"``: the conversation was closed while the call was running.
#: - ``"empty_input"``: nothing to send; no turn appended.
#: - ``"already_pending"``: another exchange is in flight; no turn appended.
SendStatus: TypeAlias = Literal[
    "completed",
    "failed",
    "timeout",
    "conflict",
    "superseded",
    "empty_input",
    "already_pending",
]

#: Answer reported by the presentation layer for a side-channel payload.
Decision: TypeAlias = Literal["accept", "decline"]


def new_turn_id() -> str:
    """Return a fresh client-side turn id."""
    return uuid.uuid4().hex


class ChatMessage(BaseModel):
    """One `{role, content}` entry exchanged with the completion service."""

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str


class Turn(BaseModel):
    """One rendered conversational entry.

    Attributes:
        id: Opaque client-side identifier.
        role: Author of the turn.
        text: Accumulated content. Only changes while `is_streaming` is true.
        is_streaming: True from placeholder creation until the terminal event.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_turn_id)
    role: TurnRole
    text: str = ""
    is_streaming: bool = False

    def to_message(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.text)


class StreamResult(BaseModel):
    """Successful terminal outcome of one stream call.

    Attributes:
        thread_id: Thread id announced by the service, if any.
        text: Concatenation of every fragment the client emitted.
        fragment_count: Number of fragments emitted, including empty ones.
    """

    thread_id: str | None = None
    text: str = ""
    fragment_count: int = 0


class SendResult(BaseModel):
    """Outcome of `ConversationController.send_message`.

    Attributes:
        status: How the exchange resolved.
        user_turn_id: Id of the appended user turn, if one was appended.
        assistant_turn_id: Id of the placeholder assistant turn, if appended.
        thread_id: Bound thread id after the exchange, if any.
        error: Short description of the failure for non-success statuses.
    """

    status: SendStatus
    user_turn_id: str | None = None
    assistant_turn_id: str | None = None
    thread_id: str | None = None
    error: str | None = None

    @property
    def sent(self) -> bool:
        """True when the message was accepted and a stream call was issued."""
        return self.user_turn_id is not None


class SideChannelEvent(BaseModel):
    """Structured out-of-band payload awaiting an explicit user decision.

    Attributes:
        id: Correlation id used to accept or decline the payload.
        kind: Payload type, e.g. ``"program_patch"``.
        payload: Service-defined structured body.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Ephemeral:
    """Conversation not yet known to the completion service."""

    @property
    def thread_id(self) -> None:
        return None


@dataclass(frozen=True, slots=True)
class Bound:
    """Conversation bound to a server-issued thread id."""

    thread_id: str


ThreadState: TypeAlias = Ephemeral | Bound
