"""
Record tools: what a task executor can actually do.

Each tool is an async handler over the record collaborators. The subject id
and turn id always come from the active ``ToolContext``, never from model
arguments, so a model cannot reach another subject's records by naming them.
Mutations only happen through ``stage_change`` followed by ``commit_change``,
both of which go through the confirmation gate.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog

from careflow.errors import InvalidArguments, ResourceNotFound
from careflow.records.graph import EntityGraph
from careflow.records.models import DOCUMENT_KIND, SearchFilters
from careflow.records.search import SearchIndex
from careflow.records.store import DocumentStore
from careflow.safety.gate import ConfirmationGate, ProposedChange
from careflow.tools.context import current_tool_context, require_subject_id
from careflow.tools.registry import ToolDefinition, ToolRegistry

logger = structlog.get_logger(__name__)

SEARCH_RECORDS = "search_records"
GET_RECORD = "get_record"
STAGE_CHANGE = "stage_change"
COMMIT_CHANGE = "commit_change"
EXTRACT_ENTITIES = "extract_entities"
BUILD_GRAPH = "build_graph"
REQUEST_CLARIFICATION = "request_clarification"

_SNIPPET_LENGTH = 200


class RecordTools:
    def __init__(
        self,
        store: DocumentStore,
        search: SearchIndex,
        graph: EntityGraph,
        gate: ConfirmationGate,
    ):
        self._store = store
        self._search = search
        self._graph = graph
        self._gate = gate

    async def search_records(
        self,
        query: str,
        kinds: Optional[list[str]] = None,
        limit: int = 10,
    ) -> dict[str, Any]:
        subject_id = require_subject_id()
        results = await self._search.search(
            query,
            SearchFilters(subject_id=subject_id, kinds=kinds or [], limit=max(1, min(50, limit))),
        )
        return {
            "count": len(results),
            "results": [
                {
                    **r.resource.summary(),
                    "score": round(r.score, 3),
                    "snippet": r.resource.content[:_SNIPPET_LENGTH],
                }
                for r in results
            ],
        }

    async def get_record(self, resource_id: str) -> dict[str, Any]:
        subject_id = require_subject_id()
        resource = await self._store.get(resource_id)
        if resource is None or resource.subject_id != subject_id:
            raise ResourceNotFound(resource_id)
        return resource.model_dump(mode="json")

    async def stage_change(
        self,
        action: str,
        resource_kind: str = DOCUMENT_KIND,
        resource_ids: Optional[list[str]] = None,
        changes: Optional[dict[str, Any]] = None,
        title: str = "",
        content: str = "",
        description: str = "",
    ) -> dict[str, Any]:
        ctx = current_tool_context()
        subject_id = require_subject_id()
        change = ProposedChange(
            action=action,
            subject_id=subject_id,
            resource_kind=resource_kind,
            resource_ids=resource_ids or [],
            changes=changes or {},
            title=title,
            content=content,
            description=description,
        )
        preview = await self._gate.propose(
            change, conversation_id=ctx.conversation_id, turn_id=ctx.turn_id
        )
        return {
            "proposal_id": preview.proposal_id,
            "requires_confirmation": preview.requires_confirmation,
            "risk_level": preview.assessment.level.value,
            "reasons": preview.assessment.reasons,
            "before": preview.before,
            "after": preview.after,
        }

    async def commit_change(
        self,
        proposal_id: str,
        confirmed: bool = False,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        ctx = current_tool_context()
        proposal = self._gate.get_proposal(proposal_id)
        if proposal is not None and proposal.conversation_id not in (None, ctx.conversation_id):
            raise ResourceNotFound(proposal_id, f"Unknown or expired proposal: {proposal_id}")
        result = await self._gate.commit_proposal(
            proposal_id,
            confirmed=confirmed,
            idempotency_key=idempotency_key,
            turn_id=ctx.turn_id,
        )
        return result.model_dump(mode="json")

    async def extract_entities(self, text: str) -> dict[str, Any]:
        ctx = current_tool_context()
        entities = await self._graph.extract_entities(text, subject_id=ctx.subject_id)
        return {"entities": [e.model_dump(mode="json") for e in entities]}

    async def build_graph(self) -> dict[str, Any]:
        subject_id = require_subject_id()
        graph = await self._graph.build_graph(subject_id)
        return graph.model_dump(mode="json")

    async def request_clarification(self, question: str) -> dict[str, Any]:
        if not question.strip():
            raise InvalidArguments("A clarification question must not be empty.")
        return {"question": question.strip(), "awaiting_user": True}

    def definitions(self) -> list[ToolDefinition]:
        return [
            ToolDefinition(
                name=SEARCH_RECORDS,
                description=(
                    "Search the current subject's records by keywords. Use this first "
                    "to find resource ids before reading, changing, or deleting anything."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "description": "Keywords to search for."},
                        "kinds": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Restrict to these resource kinds, e.g. medication, observation.",
                        },
                        "limit": {"type": "integer", "description": "Maximum results (1-50)."},
                    },
                    "required": ["query"],
                    "additionalProperties": False,
                },
                handler=self.search_records,
            ),
            ToolDefinition(
                name=GET_RECORD,
                description="Read one record in full by its resource id.",
                input_schema={
                    "type": "object",
                    "properties": {"resource_id": {"type": "string"}},
                    "required": ["resource_id"],
                    "additionalProperties": False,
                },
                handler=self.get_record,
            ),
            ToolDefinition(
                name=STAGE_CHANGE,
                description=(
                    "Preview a create, update, or delete. Returns a proposal id, the "
                    "before/after state and a risk assessment. Nothing is written."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "action": {"type": "string", "enum": ["create", "update", "delete"]},
                        "resource_kind": {"type": "string"},
                        "resource_ids": {"type": "array", "items": {"type": "string"}},
                        "changes": {
                            "type": "object",
                            "description": "Field values to set; null removes a field.",
                        },
                        "title": {"type": "string"},
                        "content": {"type": "string"},
                        "description": {"type": "string", "description": "Short human summary of the change."},
                    },
                    "required": ["action"],
                    "additionalProperties": False,
                },
                handler=self.stage_change,
                mutating=True,
            ),
            ToolDefinition(
                name=COMMIT_CHANGE,
                description=(
                    "Apply a staged proposal. Set confirmed=true only when the user has "
                    "explicitly confirmed this proposal in their latest message."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "proposal_id": {"type": "string"},
                        "confirmed": {"type": "boolean"},
                        "idempotency_key": {"type": "string"},
                    },
                    "required": ["proposal_id"],
                    "additionalProperties": False,
                },
                handler=self.commit_change,
                mutating=True,
            ),
            ToolDefinition(
                name=EXTRACT_ENTITIES,
                description="Identify record kinds and known record titles mentioned in a text.",
                input_schema={
                    "type": "object",
                    "properties": {"text": {"type": "string"}},
                    "required": ["text"],
                    "additionalProperties": False,
                },
                handler=self.extract_entities,
            ),
            ToolDefinition(
                name=BUILD_GRAPH,
                description="Build the relationship graph of the current subject's records.",
                input_schema={"type": "object", "properties": {}, "additionalProperties": False},
                handler=self.build_graph,
            ),
            ToolDefinition(
                name=REQUEST_CLARIFICATION,
                description=(
                    "Ask the user a question when the request is ambiguous. Ends the "
                    "task; the question is shown to the user."
                ),
                input_schema={
                    "type": "object",
                    "properties": {"question": {"type": "string"}},
                    "required": ["question"],
                    "additionalProperties": False,
                },
                handler=self.request_clarification,
                category="dialogue",
            ),
        ]

    def register(self, registry: ToolRegistry) -> None:
        for definition in self.definitions():
            registry.register(definition)
