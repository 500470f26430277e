"""In-memory state of live proposal messages keyed by chat and message id."""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .domain.entities import CategoryCandidate


def proposal_key(chat_id: int | str, message_id: int | str) -> str:
    return f"{chat_id}_{message_id}"


@dataclass(slots=True)
class _Entry:
    tags: list[CategoryCandidate]
    expires_at: float
    text: str | None = None
    closed: bool = False


class ProposalCache:
    """Bounded LRU with per-entry expiry.

    An entry holds the ranked tags of a live proposal and the text the bot
    last rendered for it. Telegram reports the message text as it was when a
    button was pressed, so the stored text is the one edits must build on.
    An entry can be marked closed once the proposal reached Applied or
    Cancelled; closed entries keep answering :meth:`is_closed` until they
    expire or are evicted.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 48 * 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self._lookup(key) is not None

    def set(self, key: str, tags: Sequence[CategoryCandidate], text: str | None = None) -> None:
        self._entries[key] = _Entry(tags=list(tags), expires_at=self._clock() + self._ttl, text=text)
        self._entries.move_to_end(key)
        self._evict()

    def get(self, key: str) -> list[CategoryCandidate]:
        entry = self._lookup(key)
        if entry is None or entry.closed:
            return []
        return list(entry.tags)

    def get_text(self, key: str) -> str | None:
        entry = self._lookup(key)
        if entry is None or entry.closed:
            return None
        return entry.text

    def set_text(self, key: str, text: str) -> None:
        entry = self._lookup(key)
        if entry is None:
            self.set(key, [], text)
        elif not entry.closed:
            entry.text = text

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    def close(self, key: str) -> None:
        entry = self._lookup(key)
        if entry is None:
            self._entries[key] = _Entry(tags=[], expires_at=self._clock() + self._ttl, closed=True)
            self._evict()
            return
        entry.tags = []
        entry.text = None
        entry.closed = True

    def is_closed(self, key: str) -> bool:
        entry = self._lookup(key)
        return entry is not None and entry.closed

    def _lookup(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry

    def _evict(self) -> None:
        self._purge_expired()
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
