"""Per-conversation serialization: at most one turn in flight per conversation."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refs: int = 0


class ConversationLocks:
    """
    A lazily created ``asyncio.Lock`` per conversation id.

    Entries are reference-counted and dropped once no turn holds or waits on
    them, so the table does not grow with the number of conversations ever
    seen.
    """

    def __init__(self):
        self._entries: dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        entry = self._entries.get(conversation_id)
        if entry is None:
            entry = _LockEntry()
            self._entries[conversation_id] = entry
        entry.refs += 1
        if entry.lock.locked():
            logger.debug("conversation_lock.waiting", conversation_id=conversation_id)
        try:
            async with entry.lock:
                yield
        finally:
            entry.refs -= 1
            if entry.refs == 0:
                self._entries.pop(conversation_id, None)

    def is_locked(self, conversation_id: str) -> bool:
        entry = self._entries.get(conversation_id)
        return bool(entry and entry.lock.locked())

    def __len__(self) -> int:
        return len(self._entries)
