"""Record-side data shapes exchanged with the collaborator services."""

from __future__ import annotations

import time
import uuid
from typing import Any, Optional

from pydantic import BaseModel, Field

# Unstructured uploads. Every other kind is a structured clinical resource.
DOCUMENT_KIND = "document"


def new_resource_id() -> str:
    return f"res_{uuid.uuid4().hex[:16]}"


class Resource(BaseModel):
    resource_id: str = Field(default_factory=new_resource_id)
    subject_id: str
    kind: str = DOCUMENT_KIND
    title: str = ""
    content: str = ""
    fields: dict[str, Any] = Field(default_factory=dict)
    status: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    version: int = 1

    @property
    def structured(self) -> bool:
        return self.kind != DOCUMENT_KIND

    @property
    def critical(self) -> bool:
        return bool(self.fields.get("critical")) or self.fields.get("interpretation") == "critical"

    def summary(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind,
            "title": self.title,
            "status": self.status,
            "created_at": self.created_at,
        }


TOP_LEVEL_ATTRIBUTES = frozenset({"title", "content", "status", "kind"})


def apply_changes(resource: Resource, changes: dict[str, Any]) -> Resource:
    """
    Return a copy of ``resource`` with ``changes`` applied.

    Keys naming a top-level attribute replace it; every other key is merged
    into ``fields``, where a ``None`` value removes the field.
    """
    updated = resource.model_copy(deep=True)
    for key, value in changes.items():
        if key in TOP_LEVEL_ATTRIBUTES:
            setattr(updated, key, value)
        elif value is None:
            updated.fields.pop(key, None)
        else:
            updated.fields[key] = value
    return updated


class SearchFilters(BaseModel):
    subject_id: Optional[str] = None
    kinds: list[str] = Field(default_factory=list)
    limit: int = 10


class RankedResult(BaseModel):
    resource: Resource
    score: float


class Entity(BaseModel):
    text: str
    label: str
    resource_id: Optional[str] = None


class GraphNode(BaseModel):
    id: str
    label: str
    kind: str


class GraphEdge(BaseModel):
    source: str
    target: str
    relation: str


class Graph(BaseModel):
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
