from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

import pytest

from aria_chat.controller import ConversationController
from aria_chat.errors import AriaProtocolError, HistoryLoadError
from aria_chat.history import HistoryStore
from aria_chat.models import Bound, ChatMessage, Ephemeral, StreamResult
from aria_chat.prompts import FALLBACK_REPLY, GREETING
from aria_chat.stream import FragmentCallback, StreamClient


class ScriptedStreamClient(StreamClient):
    def __init__(
        self,
        fragments: Sequence[str] = (),
        *,
        thread_id: str | None = None,
        error: BaseException | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.fragments = list(fragments)
        self.thread_id = thread_id
        self.error = error
        self.gate = gate
        self.calls: list[tuple[list[ChatMessage], str | None]] = []

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        thread_id: str | None,
        on_fragment: FragmentCallback,
    ) -> StreamResult:
        self.calls.append((list(messages), thread_id))
        for fragment in self.fragments:
            on_fragment(fragment)
            await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return StreamResult(
            thread_id=self.thread_id,
            text="".join(self.fragments),
            fragment_count=len(self.fragments),
        )


class StaticHistoryStore(HistoryStore):
    def __init__(
        self,
        messages: Sequence[ChatMessage] = (),
        *,
        error: Exception | None = None,
    ) -> None:
        self.messages = list(messages)
        self.error = error
        self.fetched: list[str] = []

    async def fetch(self, thread_id: str) -> list[ChatMessage]:
        self.fetched.append(thread_id)
        if self.error is not None:
            raise self.error
        return list(self.messages)


def test_send_message_streams_fragments_into_placeholder() -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(["H", "ello", "!"])
        controller = ConversationController(client)

        result = await controller.send_message("hi")

        assert result.status == "completed"
        turns = controller.turns
        assert [(t.role, t.text, t.is_streaming) for t in turns] == [
            ("user", "hi", False),
            ("assistant", "Hello!", False),
        ]
        assert result.user_turn_id == turns[0].id
        assert result.assistant_turn_id == turns[1].id
        assert controller.thread_id is None
        assert controller.thread.state == Ephemeral()
        assert controller.pending is False

    asyncio.run(_run())


def test_terminal_thread_id_binds_conversation() -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(["H", "ello", "!"], thread_id="t-42")
        controller = ConversationController(client)
        bound: list[str] = []
        controller.on_bound(bound.append)

        result = await controller.send_message("hi")

        assert result.status == "completed"
        assert result.thread_id == "t-42"
        assert controller.thread.state == Bound("t-42")
        assert bound == ["t-42"]
        assert controller.turns[-1].text == "Hello!"

    asyncio.run(_run())


def test_stream_failure_replaces_placeholder_with_fallback(
    caplog: pytest.LogCaptureFixture,
) -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(["partial"], error=AriaProtocolError("boom"))
        controller = ConversationController(client)

        result = await controller.send_message("hi")

        assert result.status == "failed"
        assert result.error is not None and "boom" in result.error
        reply = controller.turns[-1]
        assert reply.text == FALLBACK_REPLY
        assert reply.is_streaming is False
        assert controller.pending is False

    with caplog.at_level(logging.WARNING, logger="aria_chat"):
        asyncio.run(_run())
    assert any("boom" in record.getMessage() for record in caplog.records)


def test_unexpected_stream_exception_is_contained() -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(error=RuntimeError("kaput"))
        controller = ConversationController(client)

        result = await controller.send_message("hi")

        assert result.status == "failed"
        assert controller.turns[-1].text == FALLBACK_REPLY
        assert controller.pending is False

    asyncio.run(_run())


def test_empty_input_appends_nothing_and_issues_no_call() -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(["x"])
        controller = ConversationController(client)

        assert (await controller.send_message("")).status == "empty_input"
        controller.draft = "   "
        assert (await controller.send_message()).status == "empty_input"

        assert controller.turns == ()
        assert client.calls == []
        assert controller.draft == "   "

    asyncio.run(_run())


def test_send_while_pending_is_rejected() -> None:
    async def _run() -> None:
        gate = asyncio.Event()
        client = ScriptedStreamClient(["ok"], gate=gate)
        controller = ConversationController(client)

        first = asyncio.create_task(controller.send_message("first"))
        for _ in range(5):
            await asyncio.sleep(0)
        assert controller.pending is True

        second = await controller.send_message("second")
        assert second.status == "already_pending"
        assert second.sent is False
        assert len(controller.turns) == 2
        assert len(client.calls) == 1

        gate.set()
        result = await first
        assert result.status == "completed"
        assert controller.pending is False

    asyncio.run(_run())


def test_draft_is_cleared_only_when_it_was_sent() -> None:
    async def _run() -> None:
        controller = ConversationController(ScriptedStreamClient(["ok"]))

        controller.draft = "  from the input box  "
        await controller.send_message()
        assert controller.draft == ""
        assert controller.turns[0].text == "from the input box"

        controller.draft = "still typing"
        await controller.send_message("suggested prompt")
        assert controller.draft == "still typing"
        assert controller.turns[2].text == "suggested prompt"

    asyncio.run(_run())


def test_outbound_history_excludes_placeholder_and_carries_thread_id() -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(["Hello!"], thread_id="t-1")
        controller = ConversationController(client)

        await controller.send_message("hi")
        await controller.send_message("next")

        first_messages, first_thread = client.calls[0]
        assert first_messages == [ChatMessage(role="user", content="hi")]
        assert first_thread is None

        second_messages, second_thread = client.calls[1]
        assert second_messages == [
            ChatMessage(role="user", content="hi"),
            ChatMessage(role="assistant", content="Hello!"),
            ChatMessage(role="user", content="next"),
        ]
        assert second_thread == "t-1"

    asyncio.run(_run())


def test_greeting_turn_is_part_of_outbound_history() -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(["ok"])
        controller = ConversationController(client, greeting=GREETING)

        await controller.send_message("hi")

        messages, _ = client.calls[0]
        assert messages[0] == ChatMessage(role="assistant", content=GREETING)
        assert len(controller.turns) == 3

    asyncio.run(_run())


@pytest.mark.parametrize(
    "fragments",
    [
        list("Recover with an easy run."),
        ["Recover ", "with ", "an ", "easy ", "run."],
        ["Recover with an easy run."],
        ["", "Recover with", "", " an easy run.", ""],
    ],
)
def test_final_text_is_concatenation_of_fragments(fragments: list[str]) -> None:
    async def _run() -> None:
        controller = ConversationController(ScriptedStreamClient(fragments))
        await controller.send_message("what now?")
        assert controller.turns[-1].text == "Recover with an easy run."

    asyncio.run(_run())


def test_fragments_only_replace_the_placeholder_turn() -> None:
    async def _run() -> None:
        controller = ConversationController(ScriptedStreamClient(["a", "b"]), greeting=GREETING)
        greeting = controller.turns[0]

        await controller.send_message("hi")

        assert controller.turns[0] is greeting

    asyncio.run(_run())


def test_conflicting_thread_id_is_rejected_and_logged(
    caplog: pytest.LogCaptureFixture,
) -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(["reply"], thread_id="t-2")
        controller = ConversationController(client, thread_id="t-1")
        bound: list[str] = []
        controller.on_bound(bound.append)

        result = await controller.send_message("hi")

        assert result.status == "conflict"
        assert controller.thread_id == "t-1"
        assert controller.turns[-1].text == FALLBACK_REPLY
        assert controller.turns[-1].is_streaming is False
        assert controller.pending is False
        assert bound == []

        follow_up = await controller.send_message("still there?")
        assert follow_up.status == "conflict"
        assert client.calls[1][1] == "t-1"

    with caplog.at_level(logging.ERROR, logger="aria_chat"):
        asyncio.run(_run())
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert errors
    assert "t-2" in errors[0].getMessage()


def test_matching_thread_id_keeps_binding() -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(["reply"], thread_id="t-1")
        controller = ConversationController(client, thread_id="t-1")

        result = await controller.send_message("hi")

        assert result.status == "completed"
        assert controller.thread.state == Bound("t-1")
        assert controller.turns[-1].text == "reply"

    asyncio.run(_run())


def test_thread_binds_only_once_per_conversation() -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(["ok"], thread_id="t-42")
        controller = ConversationController(client)
        bound: list[str] = []
        controller.on_bound(bound.append)

        await controller.send_message("one")
        await controller.send_message("two")
        client.thread_id = "t-43"
        result = await controller.send_message("three")

        assert bound == ["t-42"]
        assert controller.thread_id == "t-42"
        assert result.status == "conflict"

    asyncio.run(_run())


def test_hydrate_then_send_extends_loaded_history() -> None:
    async def _run() -> None:
        store = StaticHistoryStore(
            [
                ChatMessage(role="system", content="You are ARIA."),
                ChatMessage(role="user", content="How was my sleep?"),
                ChatMessage(role="assistant", content="7.5h, efficiency 91%."),
            ]
        )
        client = ScriptedStreamClient(["Rest ", "today."])
        controller = await ConversationController.hydrate(client, store, "t-9")

        assert store.fetched == ["t-9"]
        assert controller.thread.state == Bound("t-9")
        loaded = controller.turns
        assert [(t.role, t.text) for t in loaded] == [
            ("user", "How was my sleep?"),
            ("assistant", "7.5h, efficiency 91%."),
        ]

        await controller.send_message("Should I train?")

        turns = controller.turns
        assert turns[:2] == loaded
        assert [(t.role, t.text, t.is_streaming) for t in turns[2:]] == [
            ("user", "Should I train?", False),
            ("assistant", "Rest today.", False),
        ]
        messages, thread_id = client.calls[0]
        assert thread_id == "t-9"
        assert all(m.role != "system" for m in messages)

    asyncio.run(_run())


def test_hydrate_falls_back_to_greeting_when_history_fails() -> None:
    async def _run() -> None:
        store = StaticHistoryStore(error=HistoryLoadError("offline"))
        controller = await ConversationController.hydrate(
            ScriptedStreamClient(["ok"]),
            store,
            "t-9",
        )

        assert [(t.role, t.text) for t in controller.turns] == [("assistant", GREETING)]
        result = await controller.send_message("hello?")
        assert result.status == "completed"

    asyncio.run(_run())


def test_closed_conversation_rejects_sends() -> None:
    async def _run() -> None:
        client = ScriptedStreamClient(["ok"])
        async with ConversationController(client) as controller:
            pass

        result = await controller.send_message("hi")
        assert result.status == "superseded"
        assert controller.turns == ()
        assert client.calls == []

    asyncio.run(_run())
