"""
Graph/Entity collaborator.

The reference ``RecordEntityGraph`` recognizes entities by matching a text
against the titles of a subject's known resources plus a small vocabulary of
resource kinds, and builds a star graph around the subject with extra edges
for resources that reference each other through ``fields``.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from careflow.records.models import Entity, Graph, GraphEdge, GraphNode
from careflow.records.search import tokenize
from careflow.records.store import DocumentStore

_KIND_VOCABULARY = {
    "medication": "medication",
    "medications": "medication",
    "condition": "condition",
    "conditions": "condition",
    "diagnosis": "condition",
    "observation": "observation",
    "observations": "observation",
    "lab": "observation",
    "labs": "observation",
    "test": "observation",
    "tests": "observation",
    "document": "document",
    "documents": "document",
}


@runtime_checkable
class EntityGraph(Protocol):
    async def extract_entities(self, text: str, subject_id: Optional[str] = None) -> list[Entity]: ...

    async def build_graph(self, subject_id: str) -> Graph: ...


class RecordEntityGraph:
    def __init__(self, store: DocumentStore):
        self._store = store

    async def extract_entities(self, text: str, subject_id: Optional[str] = None) -> list[Entity]:
        terms = tokenize(text)
        entities: list[Entity] = []
        seen: set[str] = set()

        for term in sorted(terms):
            label = _KIND_VOCABULARY.get(term)
            if label and term not in seen:
                seen.add(term)
                entities.append(Entity(text=term, label=label))

        if subject_id:
            lowered = text.lower()
            for resource in await self._store.list_for_subject(subject_id):
                title = resource.title.strip()
                if title and title.lower() in lowered and title.lower() not in seen:
                    seen.add(title.lower())
                    entities.append(
                        Entity(text=title, label=resource.kind, resource_id=resource.resource_id)
                    )
        return entities

    async def build_graph(self, subject_id: str) -> Graph:
        resources = await self._store.list_for_subject(subject_id)
        subject_node = f"subject:{subject_id}"
        graph = Graph(nodes=[GraphNode(id=subject_node, label=subject_id, kind="subject")])
        known = {r.resource_id for r in resources}

        for resource in resources:
            graph.nodes.append(
                GraphNode(id=resource.resource_id, label=resource.title or resource.kind, kind=resource.kind)
            )
            graph.edges.append(
                GraphEdge(source=subject_node, target=resource.resource_id, relation=f"has_{resource.kind}")
            )
            for key, value in resource.fields.items():
                if isinstance(value, str) and value in known and value != resource.resource_id:
                    graph.edges.append(
                        GraphEdge(source=resource.resource_id, target=value, relation=key)
                    )
        return graph
