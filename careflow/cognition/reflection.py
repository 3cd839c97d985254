"""
Reflection Engine: a verdict on one finished task.

The verdict is derived from the structured ``TaskOutcome`` carried by the
``TaskResult``, never from the wording of the result message. Each outcome
maps to a fixed rule in ``_RULES``; the rule decides whether the task counts
as successful, what was learned, and what (if anything) the user should be
told to do next.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from careflow.types import ReflectionResult, TaskOutcome, TaskResult

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _Rule:
    lesson: str
    correction_plan: Optional[str]


_RULES: dict[TaskOutcome, _Rule] = {
    TaskOutcome.PENDING_CONFIRMATION: _Rule(
        lesson="A risky change was previewed and is waiting for the user's decision.",
        correction_plan="Please review the proposed change above and reply to confirm or cancel it.",
    ),
    TaskOutcome.PRECONDITION_FAILED: _Rule(
        lesson="The request needed input that was not supplied.",
        correction_plan="Please provide the missing information so I can continue.",
    ),
    TaskOutcome.NEEDS_INPUT: _Rule(
        lesson="The request was ambiguous and a clarifying question was asked.",
        correction_plan=None,
    ),
    TaskOutcome.NOT_FOUND: _Rule(
        lesson="The referenced records could not be found.",
        correction_plan="I could not find a matching record. Could you describe it differently, "
                        "for example by its title, date or type, so I can search again?",
    ),
    TaskOutcome.TOOL_ERROR: _Rule(
        lesson="A record operation failed and was not resolved.",
        correction_plan="Something went wrong while working on your records. Could you rephrase "
                        "or narrow the request so I can try again?",
    ),
    TaskOutcome.BUDGET_EXHAUSTED: _Rule(
        lesson="The task ran out of reasoning steps before finishing.",
        correction_plan="This took more steps than I can take in one turn. Tell me to continue, "
                        "or break the request into smaller parts.",
    ),
    TaskOutcome.CANCELLED: _Rule(
        lesson="The task was cancelled before it finished.",
        correction_plan="The request was cancelled. Send it again whenever you are ready.",
    ),
    TaskOutcome.FAILED: _Rule(
        lesson="The task failed for an internal reason.",
        correction_plan="Please try again in a moment.",
    ),
}

# Waiting on the user is not a failure.
_WAITING_OUTCOMES = frozenset({
    TaskOutcome.PENDING_CONFIRMATION,
    TaskOutcome.NEEDS_INPUT,
    TaskOutcome.BUDGET_EXHAUSTED,
})

FOLLOW_UP_PLAN = "Let me know if there is anything else you would like to do with these records."


class ReflectionEngine:
    """Rule-based evaluation of task outcomes."""

    def __init__(self):
        self._reflections = 0
        self._corrections = 0

    def reflect(self, result: TaskResult) -> ReflectionResult:
        self._reflections += 1

        if result.success and result.outcome == TaskOutcome.COMPLETED:
            if result.requires_follow_up:
                verdict = ReflectionResult(
                    was_successful=True,
                    lessons_learned=["Task completed with an open follow-up."],
                    correction_needed=True,
                    correction_plan=FOLLOW_UP_PLAN,
                )
            else:
                verdict = ReflectionResult(
                    was_successful=True,
                    lessons_learned=["Task completed."],
                )
        else:
            rule = _RULES.get(result.outcome, _RULES[TaskOutcome.FAILED])
            verdict = ReflectionResult(
                was_successful=result.outcome in _WAITING_OUTCOMES,
                lessons_learned=[rule.lesson],
                correction_needed=rule.correction_plan is not None,
                correction_plan=rule.correction_plan,
            )

        if verdict.correction_needed:
            self._corrections += 1
        logger.debug(
            "reflection.evaluated",
            outcome=result.outcome.value,
            was_successful=verdict.was_successful,
            correction_needed=verdict.correction_needed,
        )
        return verdict

    @property
    def stats(self) -> dict[str, int]:
        return {"reflections": self._reflections, "corrections": self._corrections}
