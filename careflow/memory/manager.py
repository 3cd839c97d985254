"""
Memory Manager: one facade over both memory tiers.

Working memory is the scratch space of the task currently in flight for a
conversation: what it is doing, what it has observed, which tools it called
and how it judged its own result. It lives for ``working_memory_ttl`` seconds
after its last write and is then logically gone, even if a stale row is still
on disk or in the cache.

The conversation log is the durable record of the dialogue itself: an
append-only list of messages plus a rolling summary regenerated every
``summary_interval`` messages.

Write order for working memory is fixed: invalidate the cache entry, write
the durable store, then refresh the cache. If the durable write fails the
cache is left empty, so no reader can observe state that was never
persisted.
"""

from __future__ import annotations

import secrets
import time
from typing import Any, Callable, Optional, Union

import structlog

from careflow import prompts
from careflow.api.inference import InferenceMode, InferenceService
from careflow.config import MemoryConfig
from careflow.errors import StoreError
from careflow.memory.cache import WorkingMemoryCache
from careflow.memory.store import DurableStore
from careflow.types import (
    AgentType,
    Conversation,
    ConversationFilters,
    Message,
    Observation,
    ReasoningStep,
    Reflection,
    TaskState,
    ToolCall,
    WorkingMemory,
)

logger = structlog.get_logger(__name__)

DEFAULT_TITLE = "New Conversation"
CONTEXT_MESSAGE_LIMIT = 10
MAX_TITLE_WORDS = 6

WorkingMemoryPatch = Union[dict[str, Any], Callable[[WorkingMemory], None]]


def new_conversation_id(now: Optional[float] = None) -> str:
    millis = int((time.time() if now is None else now) * 1000)
    return f"conv_{millis}_{secrets.token_hex(4)}"


def clean_title(raw: str) -> str:
    """Normalize a generated title; empty input yields the default title."""
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    if title.lower().startswith("title:"):
        title = title[len("title:"):]
    words = title.strip().strip("\"'").split()
    if not words:
        return DEFAULT_TITLE
    return " ".join(words[:MAX_TITLE_WORDS])


class MemoryManager:
    """
    Owns working memory (cache + durable store) and the conversation log.

    The clock is injectable so that expiry can be tested without sleeping.
    """

    def __init__(
        self,
        store: DurableStore,
        cache: WorkingMemoryCache,
        inference: Optional[InferenceService],
        config: MemoryConfig,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._cache = cache
        self._inference = inference
        self._config = config
        self._clock = clock

        self._cache_hits = 0
        self._cache_misses = 0
        self._summaries_generated = 0

    @property
    def config(self) -> MemoryConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Working memory
    # -------------------------------------------------------------------------

    async def get_working_memory(self, conversation_id: str) -> Optional[WorkingMemory]:
        """Live working memory for a conversation, or None when absent or expired."""
        now = self._clock()
        cached = self._cache.get(conversation_id, now=now)
        if cached is not None:
            self._cache_hits += 1
            return cached

        self._cache_misses += 1
        memory = await self._store.get_working_memory(conversation_id)
        if memory is None:
            return None
        if memory.is_expired(now):
            logger.debug("memory_manager.expired_on_read", conversation_id=conversation_id)
            return None
        self._cache.set(memory, ttl=memory.expires_at - now, now=now)
        return memory

    async def upsert_working_memory(
        self,
        conversation_id: str,
        patch: WorkingMemoryPatch,
        agent_type: Optional[AgentType] = None,
    ) -> WorkingMemory:
        """
        Read-modify-write one conversation's working memory.

        ``patch`` is either a field mapping applied with ``model_copy`` or a
        callable that mutates the loaded record in place. Absent or expired
        records start over in the ``planning`` state. Every write slides the
        expiry forward by the configured TTL.

        Raises:
            StoreError: the durable write failed; the cache holds no entry
                for this conversation afterwards.
        """
        now = self._clock()
        current = await self.get_working_memory(conversation_id)
        if current is None:
            current = WorkingMemory(
                conversation_id=conversation_id,
                task_state=TaskState.PLANNING,
                created_at=now,
            )

        if callable(patch):
            updated = current.model_copy(deep=True)
            patch(updated)
        else:
            updated = current.model_copy(update=dict(patch), deep=True)
            updated = WorkingMemory.model_validate(updated.model_dump())
        if agent_type is not None:
            updated.agent_type = agent_type
        updated.conversation_id = conversation_id
        updated.expires_at = now + self._config.working_memory_ttl

        self._cache.invalidate(conversation_id)
        try:
            await self._store.put_working_memory(updated)
        except StoreError as e:
            logger.error(
                "memory_manager.store_failed",
                operation="upsert_working_memory",
                conversation_id=conversation_id,
                error=str(e),
            )
            raise
        self._cache.set(updated, ttl=self._config.working_memory_ttl, now=now)
        return updated

    async def append_observation(self, conversation_id: str, observation: str, source: str) -> WorkingMemory:
        entry = Observation(observation=observation, source=source, timestamp=self._clock())
        return await self.upsert_working_memory(
            conversation_id, lambda wm: wm.observations.append(entry)
        )

    async def append_reasoning_step(self, conversation_id: str, thought: str, decision: str) -> WorkingMemory:
        entry = ReasoningStep(thought=thought, decision=decision, timestamp=self._clock())
        return await self.upsert_working_memory(
            conversation_id, lambda wm: wm.reasoning.append(entry)
        )

    async def append_tool_call(self, conversation_id: str, tool_call: ToolCall) -> WorkingMemory:
        return await self.upsert_working_memory(
            conversation_id, lambda wm: wm.tool_call_history.append(tool_call)
        )

    async def append_reflection(
        self,
        conversation_id: str,
        reflection: str,
        correction_needed: bool = False,
        correction_plan: Optional[str] = None,
    ) -> WorkingMemory:
        entry = Reflection(
            reflection=reflection,
            correction_needed=correction_needed,
            correction_plan=correction_plan,
            timestamp=self._clock(),
        )
        return await self.upsert_working_memory(
            conversation_id, lambda wm: wm.reflections.append(entry)
        )

    async def clear(self, conversation_id: str) -> None:
        """Remove working memory from both tiers."""
        self._cache.invalidate(conversation_id)
        await self._store.delete_working_memory(conversation_id)
        logger.debug("memory_manager.cleared", conversation_id=conversation_id)

    async def cleanup_expired_memory(self) -> int:
        """Purge expired working memory; returns the number of durable rows removed."""
        now = self._clock()
        purged = await self._store.purge_expired_working_memory(now)
        evicted = self._cache.purge_expired(now)
        if purged or evicted:
            logger.info("memory_manager.expired_purged", durable=purged, cached=evicted)
        return purged

    # -------------------------------------------------------------------------
    # Conversation log
    # -------------------------------------------------------------------------

    async def create_conversation(
        self,
        user_id: str,
        subject_id: Optional[str] = None,
        first_message: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        now = self._clock()
        title = DEFAULT_TITLE
        if first_message and self._config.generate_titles:
            title = await self._generate_title(first_message)
        conversation = Conversation(
            conversation_id=conversation_id or new_conversation_id(now),
            user_id=user_id,
            subject_id=subject_id,
            title=title,
            created_at=now,
            last_activity=now,
        )
        await self._store.create_conversation(conversation)
        logger.info(
            "memory_manager.conversation_created",
            conversation_id=conversation.conversation_id,
            has_subject=subject_id is not None,
        )
        return conversation

    async def get_or_create_conversation(
        self,
        conversation_id: Optional[str],
        user_id: str,
        subject_id: Optional[str] = None,
        first_message: Optional[str] = None,
    ) -> Conversation:
        if conversation_id:
            existing = await self._store.get_conversation(conversation_id)
            if existing is not None:
                return existing
        return await self.create_conversation(
            user_id=user_id,
            subject_id=subject_id,
            first_message=first_message,
            conversation_id=conversation_id,
        )

    async def get_conversation(
        self, conversation_id: str, include_messages: bool = True
    ) -> Optional[Conversation]:
        return await self._store.get_conversation(conversation_id, include_messages=include_messages)

    async def append_message(self, conversation_id: str, message: Message) -> int:
        """Append a message; returns the conversation's new message count."""
        return await self._store.append_message(conversation_id, message)

    async def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        return await self._store.recent_messages(conversation_id, limit)

    def should_summarize(self, message_count: int, since: Optional[int] = None) -> bool:
        """
        True when the count crossed a multiple of the summary interval.

        ``since`` is the count the caller last checked, defaulting to the
        previous message. Passing it keeps the refresh on schedule when an
        append in between failed.
        """
        interval = self._config.summary_interval
        since = message_count - 1 if since is None else since
        return message_count > 0 and message_count // interval > max(since, 0) // interval

    async def update_summary(self, conversation_id: str) -> Optional[str]:
        """
        Regenerate the rolling summary from the last K messages.

        Returns the new summary, or None when there was nothing to summarize
        or no inference service is configured.

        Raises:
            InferenceUnavailableError: the summarizer could not be reached
        """
        if self._inference is None:
            return None
        messages = await self._store.recent_messages(conversation_id, self._config.summary_window)
        if not messages:
            return None
        summary = await self._inference.generate_text(
            prompts.SUMMARY_SYSTEM,
            prompts.summary_request(messages),
            mode=InferenceMode.DETERMINISTIC,
            max_tokens=300,
        )
        summary = summary.strip()
        if not summary:
            return None
        await self._store.update_summary(conversation_id, summary)
        self._summaries_generated += 1
        logger.info(
            "memory_manager.summary_updated",
            conversation_id=conversation_id,
            window=len(messages),
        )
        return summary

    async def list_conversations(
        self, user_id: str, filters: Optional[ConversationFilters] = None
    ) -> list[Conversation]:
        return await self._store.list_conversations(user_id, filters)

    async def archive_conversation(self, conversation_id: str, archived: bool = True) -> bool:
        return await self._store.set_archived(conversation_id, archived)

    async def delete_conversation(self, conversation_id: str) -> bool:
        self._cache.invalidate(conversation_id)
        deleted = await self._store.delete_conversation(conversation_id)
        if deleted:
            logger.info("memory_manager.conversation_deleted", conversation_id=conversation_id)
        return deleted

    async def get_conversation_context(self, conversation_id: str) -> dict[str, Any]:
        """Recent messages, live working memory and summary for one conversation."""
        conversation = await self._store.get_conversation(conversation_id, include_messages=False)
        messages = await self._store.recent_messages(conversation_id, CONTEXT_MESSAGE_LIMIT)
        working_memory = await self.get_working_memory(conversation_id)
        return {
            "messages": messages,
            "working_memory": working_memory,
            "summary": conversation.summary if conversation else "",
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _generate_title(self, first_message: str) -> str:
        if self._inference is None:
            return DEFAULT_TITLE
        try:
            raw = await self._inference.generate_text(
                prompts.TITLE_SYSTEM,
                prompts.title_request(first_message),
                mode=InferenceMode.DETERMINISTIC,
                max_tokens=30,
            )
        except Exception as e:
            logger.warning("memory_manager.title_failed", error_type=type(e).__name__, error=str(e))
            return DEFAULT_TITLE
        return clean_title(raw)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "cache_entries": len(self._cache),
            "cache_hits": self._cache_hits,
            "cache_misses": self._cache_misses,
            "summaries_generated": self._summaries_generated,
        }
