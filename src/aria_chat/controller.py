from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .errors import (
    AriaError,
    AriaStreamInactiveError,
    AriaTransportError,
    ThreadIdentityConflictError,
)
from .history import HistoryStore, greeting_turn, load_history
from .models import SendResult, SendStatus, StreamResult, Turn
from .prompts import FALLBACK_REPLY, GREETING
from .stream import StreamClient
from .thread import BoundListener, ThreadLifecycle
from .transcript import TranscriptStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Exchange:
    generation: int
    user_turn_id: str
    assistant_turn_id: str
    task: asyncio.Future[StreamResult] | None = None
    last_activity: float = field(default_factory=time.monotonic)


class ConversationController:
    """Drives one conversation: user input in, streamed assistant reply out.

    At most one exchange runs at a time. Every stream call is tagged with a
    generation number and its fragments are applied only while it is still
    the active call, so a closed conversation or an abandoned call can never
    write into the transcript.
    """

    def __init__(
        self,
        stream_client: StreamClient,
        *,
        thread_id: str | None = None,
        turns: Iterable[Turn] = (),
        greeting: str | None = None,
        fallback_reply: str = FALLBACK_REPLY,
        inactivity_timeout: float | None = 120.0,
    ) -> None:
        """Create a controller.

        Args:
            stream_client: Completion service client.
            thread_id: Known server thread id; the conversation starts Bound.
            turns: Prior turns, e.g. loaded history.
            greeting: Seed assistant turn for a conversation with no turns.
            fallback_reply: Text shown in place of a failed reply.
            inactivity_timeout: Seconds of stream silence before the call is
                abandoned. None waits indefinitely.
        """
        initial = list(turns)
        if not initial and greeting:
            initial.append(greeting_turn(greeting))

        self._stream_client = stream_client
        self._transcript = TranscriptStore(initial)
        self._thread = ThreadLifecycle(thread_id)
        self._fallback_reply = fallback_reply
        self._inactivity_timeout = inactivity_timeout

        self._draft = ""
        self._generation = 0
        self._active: _Exchange | None = None
        self._closed = False

    @classmethod
    async def hydrate(
        cls,
        stream_client: StreamClient,
        store: HistoryStore,
        thread_id: str,
        *,
        greeting: str = GREETING,
        fallback_reply: str = FALLBACK_REPLY,
        inactivity_timeout: float | None = 120.0,
    ) -> ConversationController:
        """Create a controller for a known thread, seeded with its prior turns.

        History failures never propagate; the conversation then starts with a
        greeting turn.
        """
        turns = await load_history(store, thread_id, greeting=greeting)
        return cls(
            stream_client,
            thread_id=thread_id,
            turns=turns,
            fallback_reply=fallback_reply,
            inactivity_timeout=inactivity_timeout,
        )

    async def __aenter__(self) -> ConversationController:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    @property
    def turns(self) -> tuple[Turn, ...]:
        """Current transcript snapshot."""
        return self._transcript.snapshot()

    def snapshot(self) -> tuple[Turn, ...]:
        return self._transcript.snapshot()

    @property
    def thread(self) -> ThreadLifecycle:
        return self._thread

    @property
    def thread_id(self) -> str | None:
        return self._thread.thread_id

    @property
    def pending(self) -> bool:
        """True between send initiation and stream termination."""
        return self._active is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def draft(self) -> str:
        return self._draft

    @draft.setter
    def draft(self, value: str) -> None:
        self._draft = value

    def on_bound(self, listener: BoundListener) -> Callable[[], None]:
        """Subscribe to the one-time Ephemeral to Bound transition."""
        return self._thread.subscribe(listener)

    async def close(self) -> None:
        """Tear down the conversation and supersede any in-flight call."""
        if self._closed:
            return
        self._closed = True
        exchange = self._active
        if exchange is not None:
            logger.debug("closing conversation, superseding call %d", exchange.generation)
            self._supersede(exchange)

    async def send_message(self, text: str | None = None) -> SendResult:
        """Send explicit `text`, or the current draft, and stream the reply.

        Never raises for empty input, a concurrent send, or a stream failure;
        the outcome is reported in the returned `SendResult`.
        """
        if self._closed:
            return SendResult(status="superseded", error="conversation is closed")

        from_draft = not text
        resolved = (self._draft if from_draft else text or "").strip()
        if not resolved:
            logger.debug("send rejected: empty input")
            return SendResult(status="empty_input", thread_id=self.thread_id)
        if self._active is not None:
            logger.debug("send rejected: call %d still pending", self._active.generation)
            return SendResult(status="already_pending", thread_id=self.thread_id)

        user_turn = self._transcript.append(Turn(role="user", text=resolved))
        if from_draft:
            self._draft = ""
        history = [turn.to_message() for turn in self._transcript]

        placeholder = self._transcript.append(
            Turn(role="assistant", text="", is_streaming=True)
        )
        self._generation += 1
        exchange = _Exchange(
            generation=self._generation,
            user_turn_id=user_turn.id,
            assistant_turn_id=placeholder.id,
        )
        self._active = exchange

        exchange.task = asyncio.ensure_future(
            self._stream_client.stream(
                history,
                thread_id=self.thread_id,
                on_fragment=functools.partial(self._on_fragment, exchange),
            )
        )
        exchange.task.add_done_callback(_retrieve_outcome)

        try:
            await self._wait_for_stream(exchange)
        except asyncio.CancelledError:
            if self._is_active(exchange):
                self._finish(exchange, "failed", error="send cancelled", fallback=True)
            if not exchange.task.done():
                exchange.task.cancel()
            raise
        except AriaStreamInactiveError as exc:
            return self._resolve_failure(exchange, "timeout", exc)

        if not self._is_active(exchange):
            return self._superseded_result(exchange)

        task = exchange.task
        if task.cancelled():
            return self._resolve_failure(
                exchange,
                "failed",
                AriaTransportError("stream call was cancelled"),
            )
        error = task.exception()
        if error is not None:
            return self._resolve_failure(exchange, "failed", error)
        return self._resolve_success(exchange, task.result())

    def _is_active(self, exchange: _Exchange) -> bool:
        active = self._active
        return active is not None and active.generation == exchange.generation

    def _supersede(self, exchange: _Exchange) -> None:
        if self._is_active(exchange):
            self._active = None
        task = exchange.task
        if task is not None and not task.done():
            task.cancel()

    def _on_fragment(self, exchange: _Exchange, delta: str) -> None:
        if not self._is_active(exchange):
            logger.debug("dropping fragment from superseded call %d", exchange.generation)
            return
        exchange.last_activity = time.monotonic()
        if not delta:
            return
        turn = self._transcript.get(exchange.assistant_turn_id)
        if turn is None:
            return
        self._transcript.update_by_id(turn.id, text=turn.text + delta)

    async def _wait_for_stream(self, exchange: _Exchange) -> None:
        """Wait until the stream task ends or the exchange stops being active.

        Raises:
            AriaStreamInactiveError: No fragment arrived within the inactivity
                timeout. The stream task is cancelled first.
        """
        task = exchange.task
        assert task is not None
        timeout = self._inactivity_timeout

        while not task.done():
            if timeout is None:
                await asyncio.wait({task})
                return

            remaining = exchange.last_activity + timeout - time.monotonic()
            if remaining <= 0:
                task.cancel()
                raise AriaStreamInactiveError(
                    f"stream became inactive for {timeout:.1f}s",
                    idle_seconds=timeout,
                )
            await asyncio.wait({task}, timeout=remaining)

    def _resolve_success(self, exchange: _Exchange, result: StreamResult) -> SendResult:
        if result.thread_id is not None:
            try:
                self._thread.bind(result.thread_id)
            except ThreadIdentityConflictError as exc:
                logger.error(
                    "discarding reply of call %d: %s",
                    exchange.generation,
                    exc,
                )
                return self._finish(exchange, "conflict", error=str(exc), fallback=True)

        logger.info(
            "call %d completed (%d fragments, thread=%s)",
            exchange.generation,
            result.fragment_count,
            self.thread_id,
        )
        return self._finish(exchange, "completed")

    def _resolve_failure(
        self,
        exchange: _Exchange,
        status: SendStatus,
        error: BaseException,
    ) -> SendResult:
        if not self._is_active(exchange):
            return self._superseded_result(exchange)

        if isinstance(error, AriaError):
            logger.warning("call %d %s: %s", exchange.generation, status, error)
        else:
            logger.error(
                "call %d failed with unexpected error",
                exchange.generation,
                exc_info=error,
            )
        task = exchange.task
        if task is not None and not task.done():
            task.cancel()
        message = str(error) or error.__class__.__name__
        return self._finish(exchange, status, error=message, fallback=True)

    def _finish(
        self,
        exchange: _Exchange,
        status: SendStatus,
        *,
        error: str | None = None,
        fallback: bool = False,
    ) -> SendResult:
        patch: dict[str, Any] = {"is_streaming": False}
        if fallback:
            patch["text"] = self._fallback_reply
        self._transcript.update_by_id(exchange.assistant_turn_id, **patch)
        self._active = None
        return SendResult(
            status=status,
            user_turn_id=exchange.user_turn_id,
            assistant_turn_id=exchange.assistant_turn_id,
            thread_id=self.thread_id,
            error=error,
        )

    def _superseded_result(self, exchange: _Exchange) -> SendResult:
        logger.debug("call %d superseded before completion", exchange.generation)
        return SendResult(
            status="superseded",
            user_turn_id=exchange.user_turn_id,
            assistant_turn_id=exchange.assistant_turn_id,
            thread_id=self.thread_id,
        )


def _retrieve_outcome(task: asyncio.Future[StreamResult]) -> None:
    # Abandoned calls may end with an exception nobody awaits.
    if not task.cancelled():
        task.exception()
