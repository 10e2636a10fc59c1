from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from .models import Decision, SideChannelEvent
from .protocol import PROGRAM_PATCH_KIND

logger = logging.getLogger(__name__)

RelayListener = Callable[[SideChannelEvent | None], None]


class SideChannelRelay:
    """Holds the single structured payload awaiting a user decision.

    A new payload replaces the active one. The presentation layer calls
    `resolve` with accept or decline to clear it.
    """

    def __init__(self, *, kinds: frozenset[str] = frozenset({PROGRAM_PATCH_KIND})) -> None:
        self._kinds = kinds
        self._active: SideChannelEvent | None = None
        self._listeners: list[RelayListener] = []

    @property
    def active(self) -> SideChannelEvent | None:
        return self._active

    def subscribe(self, listener: RelayListener) -> Callable[[], None]:
        """Register a listener for active-payload changes."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def dispatch(self, raw: Mapping[str, Any]) -> bool:
        """Route a raw `{id, kind, payload}` envelope; return True when it became active."""
        kind = raw.get("kind")
        if kind not in self._kinds:
            logger.debug("ignoring side-channel event kind=%r", kind)
            return False
        try:
            event = SideChannelEvent.model_validate(dict(raw))
        except ValidationError as exc:
            logger.warning("malformed side-channel event: %s", exc)
            return False
        self.publish(event)
        return True

    def publish(self, event: SideChannelEvent) -> None:
        if self._active is not None and self._active.id != event.id:
            logger.debug("side-channel event %s replaced by %s", self._active.id, event.id)
        self._set_active(event)

    def resolve(self, event_id: str, decision: Decision) -> bool:
        """Clear the active payload after the user accepted or declined it."""
        if decision not in ("accept", "decline"):
            raise ValueError(f"unknown decision: {decision!r}")
        active = self._active
        if active is None or active.id != event_id:
            logger.debug("stale side-channel decision for %s", event_id)
            return False
        logger.info("side-channel event %s resolved: %s", event_id, decision)
        self._set_active(None)
        return True

    def _set_active(self, event: SideChannelEvent | None) -> None:
        self._active = event
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("side-channel listener failed", exc_info=True)
