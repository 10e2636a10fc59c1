from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Any

from .errors import TranscriptError
from .models import Turn


class TranscriptStore:
    """Ordered, append-only sequence of turns.

    Every mutation produces a new tuple. Snapshots taken earlier never change,
    and `update_by_id` keeps every untouched element as the same object so a
    presentation layer can diff by identity.
    """

    def __init__(self, turns: Iterable[Turn] = ()) -> None:
        self._turns: tuple[Turn, ...] = ()
        self._index: dict[str, int] = {}
        self._streaming_id: str | None = None
        for turn in turns:
            self.append(turn)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self._turns)

    def __contains__(self, turn_id: object) -> bool:
        return turn_id in self._index

    def snapshot(self) -> tuple[Turn, ...]:
        """Return the current immutable turn sequence."""
        return self._turns

    def get(self, turn_id: str) -> Turn | None:
        idx = self._index.get(turn_id)
        if idx is None:
            return None
        return self._turns[idx]

    def streaming_turn(self) -> Turn | None:
        """Return the single in-flight turn, if any."""
        if self._streaming_id is None:
            return None
        return self.get(self._streaming_id)

    def append(self, turn: Turn) -> Turn:
        """Append one turn at the end of the transcript."""
        if turn.id in self._index:
            raise TranscriptError(f"duplicate turn id: {turn.id!r}")
        if turn.is_streaming and self._streaming_id is not None:
            raise TranscriptError("another turn is already streaming")
        self._index[turn.id] = len(self._turns)
        if turn.is_streaming:
            self._streaming_id = turn.id
        self._turns = self._turns + (turn,)
        return turn

    def update_by_id(self, turn_id: str, **patch: Any) -> Turn:
        """Replace the matching turn with a patched copy and return it.

        Raises:
            TranscriptError: Unknown id, or a text change on a finalized turn.
        """
        idx = self._index.get(turn_id)
        if idx is None:
            raise TranscriptError(f"unknown turn id: {turn_id!r}")

        current = self._turns[idx]
        if "id" in patch and patch["id"] != turn_id:
            raise TranscriptError("turn id cannot be changed")
        if (
            not current.is_streaming
            and "text" in patch
            and patch["text"] != current.text
        ):
            raise TranscriptError(f"turn {turn_id!r} is finalized")
        if patch.get("is_streaming") and not current.is_streaming:
            raise TranscriptError(f"turn {turn_id!r} cannot resume streaming")

        updated = current.model_copy(update=patch)
        self._turns = self._turns[:idx] + (updated,) + self._turns[idx + 1 :]
        if not updated.is_streaming and self._streaming_id == turn_id:
            self._streaming_id = None
        return updated
