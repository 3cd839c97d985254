"""
Executor profiles: the only things that differ between task executors.

Every task executor runs the same reasoning loop. A profile supplies the
system instructions, the subset of tools the model may see, the sampling
mode, and which tool results are lifted into the ``TaskResult.data`` payload
after the loop ends.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from careflow import prompts
from careflow.api.inference import InferenceMode
from careflow.tools.records import (
    BUILD_GRAPH,
    COMMIT_CHANGE,
    EXTRACT_ENTITIES,
    GET_RECORD,
    REQUEST_CLARIFICATION,
    SEARCH_RECORDS,
    STAGE_CHANGE,
)
from careflow.tools.registry import ToolRegistry
from careflow.types import Intent


@dataclass(frozen=True)
class ExecutorProfile:
    intent: Intent
    system_prompt: str
    tool_names: tuple[str, ...]
    mode: InferenceMode = InferenceMode.CONVERSATIONAL
    # tool name -> key in TaskResult.data that collects its successful results
    extract: dict[str, str] = field(default_factory=dict)
    max_iterations: Optional[int] = None

    @property
    def name(self) -> str:
        return self.intent.value

    @property
    def mutating(self) -> bool:
        return COMMIT_CHANGE in self.tool_names


_READ_TOOLS = (SEARCH_RECORDS, GET_RECORD)
_WRITE_TOOLS = (STAGE_CHANGE, COMMIT_CHANGE)


def default_profiles() -> dict[Intent, ExecutorProfile]:
    # Mutating executors sample deterministically; their choices are risk-relevant.
    return {
        Intent.CREATE: ExecutorProfile(
            intent=Intent.CREATE,
            system_prompt=prompts.executor_system_prompt(Intent.CREATE),
            tool_names=(*_READ_TOOLS, EXTRACT_ENTITIES, *_WRITE_TOOLS, REQUEST_CLARIFICATION),
            mode=InferenceMode.DETERMINISTIC,
            extract={COMMIT_CHANGE: "committed", STAGE_CHANGE: "proposals", EXTRACT_ENTITIES: "entities"},
        ),
        Intent.RETRIEVE: ExecutorProfile(
            intent=Intent.RETRIEVE,
            system_prompt=prompts.executor_system_prompt(Intent.RETRIEVE),
            tool_names=(*_READ_TOOLS, EXTRACT_ENTITIES, REQUEST_CLARIFICATION),
            extract={SEARCH_RECORDS: "matches", GET_RECORD: "records"},
        ),
        Intent.MODIFY: ExecutorProfile(
            intent=Intent.MODIFY,
            system_prompt=prompts.executor_system_prompt(Intent.MODIFY),
            tool_names=(*_READ_TOOLS, *_WRITE_TOOLS, REQUEST_CLARIFICATION),
            mode=InferenceMode.DETERMINISTIC,
            extract={COMMIT_CHANGE: "committed", STAGE_CHANGE: "proposals"},
        ),
        Intent.REMOVE: ExecutorProfile(
            intent=Intent.REMOVE,
            system_prompt=prompts.executor_system_prompt(Intent.REMOVE),
            tool_names=(*_READ_TOOLS, *_WRITE_TOOLS, REQUEST_CLARIFICATION),
            mode=InferenceMode.DETERMINISTIC,
            extract={COMMIT_CHANGE: "committed", STAGE_CHANGE: "proposals"},
        ),
        Intent.VISUALIZE: ExecutorProfile(
            intent=Intent.VISUALIZE,
            system_prompt=prompts.executor_system_prompt(Intent.VISUALIZE),
            tool_names=(SEARCH_RECORDS, BUILD_GRAPH, EXTRACT_ENTITIES, REQUEST_CLARIFICATION),
            extract={BUILD_GRAPH: "graph"},
        ),
    }


def validate_profiles(profiles: dict[Intent, ExecutorProfile], registry: ToolRegistry) -> None:
    """
    Fail fast when a profile names a tool the registry does not have.

    Raises:
        ValueError: listing the missing tool names
    """
    for profile in profiles.values():
        registry.require(profile.tool_names)
