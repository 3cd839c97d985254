"""
Core data types shared across Careflow subsystems.

These models cross subsystem boundaries (memory, executors, supervisor, the
durable store) and are serialized to JSON for persistence, so they are
Pydantic models rather than plain dataclasses. They live here rather than in
a specific subsystem to avoid circular imports.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class Intent(str, Enum):
    """Closed set of purposes a user turn can have."""

    CREATE = "create"
    RETRIEVE = "retrieve"
    MODIFY = "modify"
    REMOVE = "remove"
    VISUALIZE = "visualize"
    GENERAL = "general"
    CLARIFICATION = "clarification"

    @property
    def requires_subject(self) -> bool:
        return self in _SUBJECT_BOUND_INTENTS


_SUBJECT_BOUND_INTENTS = frozenset({
    Intent.CREATE,
    Intent.RETRIEVE,
    Intent.MODIFY,
    Intent.REMOVE,
    Intent.VISUALIZE,
})


class TaskState(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskOutcome(str, Enum):
    """
    How a task executor invocation ended.

    The Reflection Engine derives its verdict from this field instead of
    searching the result message for keywords.
    """

    COMPLETED = "completed"
    NEEDS_INPUT = "needs_input"                     # model asked a clarification question
    PENDING_CONFIRMATION = "pending_confirmation"   # preview returned, nothing applied
    PRECONDITION_FAILED = "precondition_failed"     # required subject id missing
    NOT_FOUND = "not_found"
    TOOL_ERROR = "tool_error"
    BUDGET_EXHAUSTED = "budget_exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"                               # infrastructure / internal failure


Role = Literal["user", "assistant", "system"]


# ---------------------------------------------------------------------------
# Conversation log
# ---------------------------------------------------------------------------

class ToolCall(BaseModel):
    """A single tool invocation made by a reasoning loop."""

    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    evaluation: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class Message(BaseModel):
    """One entry in a conversation log. Immutable once appended."""

    model_config = {"frozen": True}

    role: Role
    content: str
    timestamp: float = Field(default_factory=time.time)
    reasoning: Optional[str] = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Conversation(BaseModel):
    conversation_id: str
    user_id: str
    subject_id: Optional[str] = None
    title: str = "New Conversation"
    messages: list[Message] = Field(default_factory=list)
    summary: str = ""
    created_at: float = Field(default_factory=time.time)
    last_activity: float = Field(default_factory=time.time)
    archived: bool = False

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def recent(self, count: int) -> list[Message]:
        if count <= 0:
            return []
        return self.messages[-count:]


class ConversationFilters(BaseModel):
    archived: Optional[bool] = None
    subject_id: Optional[str] = None
    active_since: Optional[float] = None
    active_until: Optional[float] = None
    limit: int = 50
    offset: int = 0


# ---------------------------------------------------------------------------
# Working memory
# ---------------------------------------------------------------------------

AgentType = Literal["supervisor", "create", "retrieve", "modify", "remove", "visualize"]


class Observation(BaseModel):
    observation: str
    source: str
    timestamp: float = Field(default_factory=time.time)


class ReasoningStep(BaseModel):
    thought: str
    decision: str
    timestamp: float = Field(default_factory=time.time)


class Reflection(BaseModel):
    reflection: str
    correction_needed: bool = False
    correction_plan: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class WorkingMemory(BaseModel):
    """
    Ephemeral, TTL-bound task state for one conversation.

    At most one live record exists per conversation id; a record whose
    ``expires_at`` has passed is treated as absent by every reader.
    """

    conversation_id: str
    agent_type: AgentType = "supervisor"
    current_task: str = ""
    task_state: TaskState = TaskState.PLANNING
    observations: list[Observation] = Field(default_factory=list)
    reasoning: list[ReasoningStep] = Field(default_factory=list)
    tool_call_history: list[ToolCall] = Field(default_factory=list)
    reflections: list[Reflection] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)
    expires_at: float = 0.0

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.expires_at <= (time.time() if now is None else now)


# ---------------------------------------------------------------------------
# Task results
# ---------------------------------------------------------------------------

class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def at_least(self, other: "RiskLevel") -> "RiskLevel":
        return self if self.rank >= other.rank else other


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class RiskAssessment(BaseModel):
    level: RiskLevel = RiskLevel.LOW
    reasons: list[str] = Field(default_factory=list)
    requires_confirmation: bool = False


class ConfirmationRequest(BaseModel):
    """Risk/confirmation metadata attached to a TaskResult awaiting confirmation."""

    proposal_id: str
    assessment: RiskAssessment
    preview: dict[str, Any] = Field(default_factory=dict)


class TaskResult(BaseModel):
    """
    Produced once per executor invocation; consumed by the Supervisor.

    Only the derived message and trace are persisted, never this object.
    """

    success: bool
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    requires_follow_up: bool = False
    outcome: TaskOutcome = TaskOutcome.COMPLETED
    confirmation: Optional[ConfirmationRequest] = None
    reasoning: Optional[str] = None
    tool_calls: list[ToolCall] = Field(default_factory=list)

    @property
    def requires_confirmation(self) -> bool:
        return self.confirmation is not None


class ReflectionResult(BaseModel):
    was_successful: bool
    lessons_learned: list[str] = Field(default_factory=list)
    correction_needed: bool = False
    correction_plan: Optional[str] = None


class AgentReply(BaseModel):
    """Caller-facing reply handed to the (external) transport layer."""

    success: bool
    message: str
    intent: Optional[Intent] = None
    requires_follow_up: bool = False
    data: dict[str, Any] = Field(default_factory=dict)
    conversation_id: str
    action: Optional[str] = None
    reasoning: Optional[str] = None
    executor: Optional[str] = None
    requires_confirmation: bool = False

    def to_payload(self) -> dict[str, Any]:
        """camelCase mapping for the transport layer."""
        return {
            "success": self.success,
            "message": self.message,
            "intent": self.intent.value if self.intent else None,
            "requiresFollowUp": self.requires_follow_up,
            "data": self.data,
            "conversationId": self.conversation_id,
            "action": self.action,
            "reasoning": self.reasoning,
            "subAgentUsed": self.executor,
            "requiresConfirmation": self.requires_confirmation,
        }
