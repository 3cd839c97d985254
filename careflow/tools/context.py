"""
Per-dispatch tool context.

Tool handlers are plain async functions that only receive the arguments the
model supplied. Who is asking, about which subject, in which turn, is carried
by a ``ContextVar`` that the task executor sets for the duration of one
dispatch. Handlers never trust a subject id coming from the model over the
one in this context.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator, Optional

from careflow.errors import ToolExecutionError


@dataclass(frozen=True)
class ToolContext:
    conversation_id: str
    user_id: str
    subject_id: Optional[str]
    turn_id: str


CURRENT_TOOL_CONTEXT: ContextVar[ToolContext | None] = ContextVar(
    "CURRENT_TOOL_CONTEXT", default=None
)


def current_tool_context() -> ToolContext:
    ctx = CURRENT_TOOL_CONTEXT.get()
    if ctx is None:
        raise ToolExecutionError("No active tool context; tools run only inside a dispatch.")
    return ctx


def require_subject_id() -> str:
    ctx = current_tool_context()
    if not ctx.subject_id:
        raise ToolExecutionError(
            "A subject id is required for this operation.",
            payload={"missing": "subject_id"},
        )
    return ctx.subject_id


@contextmanager
def tool_context(ctx: ToolContext) -> Iterator[ToolContext]:
    token = CURRENT_TOOL_CONTEXT.set(ctx)
    try:
        yield ctx
    finally:
        CURRENT_TOOL_CONTEXT.reset(token)
