"""
Hot cache for working memory.

An in-process map from conversation id to ``(WorkingMemory, expires_at)``.
Entries past their expiry are dropped on read. The cache is never the
write-of-record; the memory manager writes the durable store first and only
then refreshes the cache.
"""

from __future__ import annotations

import time
from typing import Optional

from careflow.types import WorkingMemory


class WorkingMemoryCache:
    def __init__(self, max_entries: int = 4096):
        self._entries: dict[str, tuple[WorkingMemory, float]] = {}
        self._max_entries = max(1, int(max_entries))

    def get(self, conversation_id: str, now: Optional[float] = None) -> Optional[WorkingMemory]:
        entry = self._entries.get(conversation_id)
        if entry is None:
            return None
        memory, expires_at = entry
        if expires_at <= (time.time() if now is None else now):
            del self._entries[conversation_id]
            return None
        return memory.model_copy(deep=True)

    def set(self, memory: WorkingMemory, ttl: float, now: Optional[float] = None) -> None:
        expires_at = (time.time() if now is None else now) + ttl
        if len(self._entries) >= self._max_entries and memory.conversation_id not in self._entries:
            # Evict the entry closest to expiry.
            victim = min(self._entries, key=lambda k: self._entries[k][1])
            del self._entries[victim]
        self._entries[memory.conversation_id] = (memory.model_copy(deep=True), expires_at)

    def invalidate(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def purge_expired(self, now: Optional[float] = None) -> int:
        cutoff = time.time() if now is None else now
        expired = [k for k, (_, exp) in self._entries.items() if exp <= cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
