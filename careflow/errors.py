"""
Error taxonomy.

Two families live here. Tool-level failures (``ToolExecutionError`` and its
subclasses) are raised by tool handlers and converted into structured tool
results at the executor boundary so the reasoning loop can self-correct.
Turn-level failures (``StoreError``, ``InferenceUnavailableError``,
``TurnCancelledError``) propagate up to the Supervisor, which is the only
place they become a user-visible failure.
"""

from __future__ import annotations

from typing import Any, Optional


class CareflowError(Exception):
    """Base class for all Careflow errors."""


class PreconditionError(CareflowError):
    """A required input (the subject id) is missing for the requested intent."""

    def __init__(self, message: str, missing: str = "subject_id"):
        super().__init__(message)
        self.missing = missing


class ToolExecutionError(CareflowError):
    """
    A tool could not do what it was asked.

    ``kind`` is a short machine-readable tag that ends up in the tool result
    payload; ``payload`` carries any structured detail the model may need to
    correct itself on the next iteration.
    """

    kind = "tool_error"

    def __init__(self, message: str, payload: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.payload = payload or {}


class InvalidArguments(ToolExecutionError):
    kind = "invalid_arguments"


class IdempotencyConflict(InvalidArguments):
    """An idempotency key was reused for a different change."""

    kind = "idempotency_conflict"

    def __init__(self, idempotency_key: str):
        super().__init__(
            "This idempotency key was already used for a different change.",
            payload={"idempotency_key": idempotency_key},
        )
        self.idempotency_key = idempotency_key


class ResourceNotFound(ToolExecutionError):
    kind = "not_found"

    def __init__(self, resource_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Resource not found: {resource_id}",
            payload={"resource_id": resource_id},
        )
        self.resource_id = resource_id


class PendingConfirmation(ToolExecutionError):
    """
    Not a failure: the change was previewed and is waiting for an explicit
    confirmation. No mutation happened.
    """

    kind = "pending_confirmation"

    def __init__(self, preview: Any):
        super().__init__(
            "This change requires explicit confirmation before it can be applied.",
            payload={"preview": preview.model_dump(mode="json")},
        )
        self.preview = preview


class IterationBudgetExceeded(CareflowError):
    """The reasoning loop ran out of iterations. Informational only."""

    def __init__(self, iterations: int):
        super().__init__(f"Iteration budget of {iterations} exhausted")
        self.iterations = iterations


class StoreError(CareflowError):
    """Durable persistence failed; fatal for the current turn."""


class InferenceUnavailableError(CareflowError):
    """The inference backend could not be reached after retries."""


class TurnCancelledError(CareflowError):
    """The turn was cancelled explicitly or its deadline passed."""
