"""Record collaborators: document store, search, entity/graph."""
from careflow.records.graph import EntityGraph, RecordEntityGraph
from careflow.records.models import (
    DOCUMENT_KIND,
    Entity,
    Graph,
    GraphEdge,
    GraphNode,
    RankedResult,
    Resource,
    SearchFilters,
)
from careflow.records.search import KeywordSearchIndex, SearchIndex
from careflow.records.store import DocumentStore, InMemoryDocumentStore

__all__ = [
    "DOCUMENT_KIND",
    "DocumentStore",
    "Entity",
    "EntityGraph",
    "Graph",
    "GraphEdge",
    "GraphNode",
    "InMemoryDocumentStore",
    "KeywordSearchIndex",
    "RankedResult",
    "RecordEntityGraph",
    "Resource",
    "SearchFilters",
    "SearchIndex",
]
