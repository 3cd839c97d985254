"""
Wiring: build every component from one ``CareflowConfig``.

Layers are created bottom-up, mirroring the import graph:

    records (document store, search, graph)
      -> safety (risk assessor, confirmation gate)
      -> tools (registry, executor)
      -> harness (reasoning loop)
      -> memory (durable store, cache, manager)
      -> cognition (intent, reflection)
      -> agents (task executor, supervisor)

Collaborators can be injected, which is how tests replace the inference
backend and how a deployment would plug in a real document store.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import TypeAdapter

from careflow.agents.executor import TaskExecutor
from careflow.agents.supervisor import Supervisor
from careflow.api.inference import AnthropicInferenceService, InferenceService
from careflow.cognition.intent import IntentClassifier
from careflow.cognition.reflection import ReflectionEngine
from careflow.config import CareflowConfig
from careflow.harness.locks import ConversationLocks
from careflow.harness.loop import ReasoningLoop
from careflow.memory.cache import WorkingMemoryCache
from careflow.memory.manager import MemoryManager
from careflow.memory.store import DurableStore
from careflow.records.graph import EntityGraph, RecordEntityGraph
from careflow.records.models import Resource
from careflow.records.search import KeywordSearchIndex, SearchIndex
from careflow.records.store import DocumentStore, InMemoryDocumentStore
from careflow.safety.gate import ConfirmationGate
from careflow.safety.risk import RiskAssessor
from careflow.tools.executor import ToolExecutor
from careflow.tools.records import RecordTools
from careflow.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)

_RESOURCE_LIST = TypeAdapter(list[Resource])


def load_resources(path: Path) -> list[Resource]:
    """Read a JSON array of records (the shape of ``Resource``) from disk."""
    return _RESOURCE_LIST.validate_json(Path(path).read_bytes())


@dataclass
class CareflowApp:
    config: CareflowConfig
    inference: InferenceService
    store: DurableStore
    memory: MemoryManager
    supervisor: Supervisor
    documents: DocumentStore
    gate: ConfirmationGate
    registry: ToolRegistry

    async def start(self) -> "CareflowApp":
        await self.store.initialize()
        purged = await self.memory.cleanup_expired_memory()
        logger.info("careflow.started", tools=self.registry.count, purged_working_memory=purged)
        return self

    async def close(self) -> None:
        await self.store.close()
        close_inference = getattr(self.inference, "close", None)
        if close_inference is not None:
            await close_inference()

    async def __aenter__(self) -> "CareflowApp":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def build_app(
    config: Optional[CareflowConfig] = None,
    inference: Optional[InferenceService] = None,
    documents: Optional[DocumentStore] = None,
    search: Optional[SearchIndex] = None,
    graph: Optional[EntityGraph] = None,
) -> CareflowApp:
    """
    Assemble a ready-to-start application.

    Raises:
        ValueError: no inference service was injected and no API key is configured
    """
    config = config or CareflowConfig()
    inference = inference or AnthropicInferenceService(config.inference)

    if documents is None:
        documents = InMemoryDocumentStore()
    search = search if search is not None else KeywordSearchIndex(documents)
    graph = graph if graph is not None else RecordEntityGraph(documents)

    assessor = RiskAssessor(config.risk)
    gate = ConfirmationGate(documents, assessor, ledger_size=config.risk.idempotency_ledger_size)

    registry = ToolRegistry()
    RecordTools(documents, search, graph, gate).register(registry)
    tool_executor = ToolExecutor(
        registry,
        default_timeout=config.loop.tool_timeout,
        max_output_length=config.loop.tool_max_output_length,
    )
    loop = ReasoningLoop(inference, tool_executor, max_iterations=config.loop.max_iterations)

    store = DurableStore(config.memory.db_path)
    memory = MemoryManager(store, WorkingMemoryCache(), inference, config.memory)

    task_executor = TaskExecutor(loop, registry, memory, gate)
    supervisor = Supervisor(
        memory=memory,
        classifier=IntentClassifier(inference),
        executor=task_executor,
        reflection=ReflectionEngine(),
        inference=inference,
        locks=ConversationLocks(),
        turn_timeout=config.loop.turn_timeout_seconds,
        context_window=config.memory.context_window,
    )
    return CareflowApp(
        config=config,
        inference=inference,
        store=store,
        memory=memory,
        supervisor=supervisor,
        documents=documents,
        gate=gate,
        registry=registry,
    )
