"""
Search collaborator.

``KeywordSearchIndex`` ranks a subject's resources by term overlap with the
query, weighting title hits above body hits. It reads straight from the
document store, so there is no separate index to keep in sync.
"""

from __future__ import annotations

import re
from typing import Protocol, runtime_checkable

from careflow.records.models import RankedResult, SearchFilters
from careflow.records.store import DocumentStore

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset({
    "a", "an", "and", "any", "are", "for", "from", "i", "in", "is", "me", "my",
    "of", "on", "show", "the", "to", "what", "with",
})


def tokenize(text: str) -> set[str]:
    return {t for t in _TOKEN_RE.findall(text.lower()) if t not in _STOPWORDS}


@runtime_checkable
class SearchIndex(Protocol):
    async def search(self, query: str, filters: SearchFilters) -> list[RankedResult]: ...


class KeywordSearchIndex:
    def __init__(self, store: DocumentStore, title_weight: float = 2.0):
        self._store = store
        self._title_weight = title_weight

    async def search(self, query: str, filters: SearchFilters) -> list[RankedResult]:
        if not filters.subject_id:
            return []
        terms = tokenize(query)
        resources = await self._store.list_for_subject(filters.subject_id)
        if filters.kinds:
            wanted = {k.lower() for k in filters.kinds}
            resources = [r for r in resources if r.kind.lower() in wanted]

        ranked: list[RankedResult] = []
        for resource in resources:
            if not terms:
                # Empty query lists everything, newest first.
                ranked.append(RankedResult(resource=resource, score=resource.created_at))
                continue
            title_hits = len(terms & tokenize(f"{resource.title} {resource.kind}"))
            body_text = " ".join([resource.content, *map(str, resource.fields.values())])
            body_hits = len(terms & tokenize(body_text))
            score = title_hits * self._title_weight + body_hits
            if score > 0:
                ranked.append(RankedResult(resource=resource, score=score))

        ranked.sort(key=lambda r: r.score, reverse=True)
        return ranked[: max(1, filters.limit)]
