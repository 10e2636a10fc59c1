from .controller import ConversationController
from .errors import (
    AriaError,
    AriaProtocolError,
    AriaStreamInactiveError,
    AriaTimeoutError,
    AriaTransportError,
    HistoryLoadError,
    ThreadIdentityConflictError,
    TranscriptError,
)
from .history import HistoryStore, RestHistoryStore, load_history
from .models import (
    Bound,
    ChatMessage,
    Ephemeral,
    SendResult,
    SideChannelEvent,
    StreamResult,
    ThreadState,
    Turn,
)
from .prompts import FALLBACK_REPLY, GREETING, suggested_prompts
from .relay import SideChannelRelay
from .stream import AriaStreamClient, StreamClient
from .thread import ThreadLifecycle, thread_path
from .transcript import TranscriptStore

__all__ = [
    "AriaError",
    "AriaProtocolError",
    "AriaStreamClient",
    "AriaStreamInactiveError",
    "AriaTimeoutError",
    "AriaTransportError",
    "Bound",
    "ChatMessage",
    "ConversationController",
    "Ephemeral",
    "FALLBACK_REPLY",
    "GREETING",
    "HistoryLoadError",
    "HistoryStore",
    "RestHistoryStore",
    "SendResult",
    "SideChannelEvent",
    "SideChannelRelay",
    "StreamClient",
    "StreamResult",
    "ThreadIdentityConflictError",
    "ThreadLifecycle",
    "ThreadState",
    "TranscriptError",
    "TranscriptStore",
    "Turn",
    "load_history",
    "suggested_prompts",
    "thread_path",
]
