"""
Document Store collaborator.

The orchestration core only needs create/get/update/delete by resource id and
a per-subject listing. ``InMemoryDocumentStore`` is the reference
implementation used by the CLI and the tests; a deployment plugs in its own
object with the same methods.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional, Protocol, runtime_checkable

import structlog

from careflow.records.models import Resource, apply_changes

logger = structlog.get_logger(__name__)


@runtime_checkable
class DocumentStore(Protocol):
    async def create(self, resource: Resource) -> Resource: ...

    async def get(self, resource_id: str) -> Optional[Resource]: ...

    async def update(self, resource_id: str, changes: dict[str, Any]) -> Optional[Resource]: ...

    async def delete(self, resource_id: str) -> Optional[Resource]: ...

    async def list_for_subject(self, subject_id: str) -> list[Resource]: ...


class InMemoryDocumentStore:
    """
    Dict-backed store. Each mutation bumps ``version`` and ``updated_at``.

    ``mutation_count`` exists so callers can assert that nothing was written.
    """

    def __init__(self, resources: Optional[list[Resource]] = None):
        self._resources: dict[str, Resource] = {}
        self._lock = asyncio.Lock()
        self.mutation_count = 0
        for resource in resources or []:
            self._resources[resource.resource_id] = resource

    async def create(self, resource: Resource) -> Resource:
        async with self._lock:
            if resource.resource_id in self._resources:
                raise ValueError(f"Resource already exists: {resource.resource_id}")
            self._resources[resource.resource_id] = resource
            self.mutation_count += 1
        logger.info("document_store.created", resource_id=resource.resource_id, kind=resource.kind)
        return resource.model_copy(deep=True)

    async def get(self, resource_id: str) -> Optional[Resource]:
        resource = self._resources.get(resource_id)
        return resource.model_copy(deep=True) if resource else None

    async def update(self, resource_id: str, changes: dict[str, Any]) -> Optional[Resource]:
        async with self._lock:
            current = self._resources.get(resource_id)
            if current is None:
                return None
            updated = apply_changes(current, changes)
            updated.version += 1
            updated.updated_at = time.time()
            self._resources[resource_id] = updated
            self.mutation_count += 1
        logger.info("document_store.updated", resource_id=resource_id, version=updated.version)
        return updated.model_copy(deep=True)

    async def delete(self, resource_id: str) -> Optional[Resource]:
        async with self._lock:
            removed = self._resources.pop(resource_id, None)
            if removed is not None:
                self.mutation_count += 1
        if removed is not None:
            logger.info("document_store.deleted", resource_id=resource_id)
        return removed

    async def list_for_subject(self, subject_id: str) -> list[Resource]:
        return [
            r.model_copy(deep=True)
            for r in sorted(self._resources.values(), key=lambda r: r.created_at)
            if r.subject_id == subject_id
        ]
