from __future__ import annotations

import logging
from collections.abc import Callable
from urllib.parse import quote

from .errors import ThreadIdentityConflictError
from .models import Bound, Ephemeral, ThreadState

logger = logging.getLogger(__name__)

BoundListener = Callable[[str], None]

# Route template used by the chat screen for deep links.
THREAD_PATH_TEMPLATE = "/aria/chat/{thread_id}"


def thread_path(thread_id: str, *, template: str = THREAD_PATH_TEMPLATE) -> str:
    """Return the shareable location for a bound thread."""
    return template.format(thread_id=quote(thread_id, safe=""))


class ThreadLifecycle:
    """Two-state tracker for the conversation's server identity.

    The state moves from `Ephemeral` to `Bound` at most once. Rebinding to the
    same id is a no-op; a different id is a protocol conflict and the bound id
    is kept.
    """

    def __init__(self, thread_id: str | None = None) -> None:
        self._state: ThreadState = Bound(thread_id) if thread_id else Ephemeral()
        self._listeners: list[BoundListener] = []

    @property
    def state(self) -> ThreadState:
        return self._state

    @property
    def thread_id(self) -> str | None:
        return self._state.thread_id

    @property
    def is_bound(self) -> bool:
        return isinstance(self._state, Bound)

    def subscribe(self, listener: BoundListener) -> Callable[[], None]:
        """Register an on-bound listener and return a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def bind(self, thread_id: str) -> bool:
        """Adopt a server-issued thread id.

        Returns:
            True when this call moved the state from Ephemeral to Bound.

        Raises:
            ThreadIdentityConflictError: Already bound to a different id.
        """
        if not thread_id:
            raise ValueError("thread_id must not be empty")

        state = self._state
        if isinstance(state, Bound):
            if state.thread_id == thread_id:
                return False
            raise ThreadIdentityConflictError(
                bound_id=state.thread_id,
                received_id=thread_id,
            )

        self._state = Bound(thread_id)
        logger.info("conversation bound to thread %s", thread_id)
        for listener in list(self._listeners):
            try:
                listener(thread_id)
            except Exception:
                logger.warning("on-bound listener failed for thread %s", thread_id, exc_info=True)
        return True
