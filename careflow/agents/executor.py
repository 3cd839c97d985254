"""
Task Executor: one dispatch of one intent through the reasoning loop.

The executor is generic. A profile picks the instructions, tools and
extraction rules; the executor seeds the transcript, binds the tool context
(conversation, subject, turn) for the handlers, records every tool call in
working memory as it happens, and turns the finished loop into a
``TaskResult`` whose ``outcome`` says how the task ended.

Outcome precedence, first match wins:
    clarification requested    -> NEEDS_INPUT
    proposal awaiting confirm  -> PENDING_CONFIRMATION
    iteration budget exhausted -> BUDGET_EXHAUSTED
    last tool call failed      -> NOT_FOUND or TOOL_ERROR
    retrieve found nothing     -> NOT_FOUND
    otherwise                  -> COMPLETED
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog

from careflow import prompts
from careflow.agents.profiles import ExecutorProfile, default_profiles, validate_profiles
from careflow.api.inference import ToolInvocation
from careflow.errors import IterationBudgetExceeded, InferenceUnavailableError, StoreError, TurnCancelledError
from careflow.harness.cancellation import CancellationToken
from careflow.harness.loop import LoopResult, ReasoningLoop
from careflow.memory.manager import MemoryManager
from careflow.safety.gate import ConfirmationGate, Preview
from careflow.tools.context import ToolContext, tool_context
from careflow.tools.executor import ToolExecutionResult
from careflow.tools.records import COMMIT_CHANGE, GET_RECORD, SEARCH_RECORDS, STAGE_CHANGE
from careflow.tools.registry import ToolRegistry
from careflow.types import (
    ConfirmationRequest,
    Conversation,
    Intent,
    TaskOutcome,
    TaskResult,
    TaskState,
    ToolCall,
)

logger = structlog.get_logger(__name__)

HISTORY_MESSAGES = 6

BUDGET_EXHAUSTED_MESSAGE = (
    "I made progress on this but could not finish within the steps available for one turn."
)
UNAVAILABLE_MESSAGE = (
    "I could not reach the reasoning service just now, so nothing was changed. Please try again shortly."
)


class TaskExecutor:
    def __init__(
        self,
        loop: ReasoningLoop,
        registry: ToolRegistry,
        memory: MemoryManager,
        gate: ConfirmationGate,
        profiles: Optional[dict[Intent, ExecutorProfile]] = None,
    ):
        self._loop = loop
        self._registry = registry
        self._memory = memory
        self._gate = gate
        self._profiles = profiles or default_profiles()
        validate_profiles(self._profiles, registry)

        self._dispatches = 0
        self._outcomes: dict[str, int] = {}

    def handles(self, intent: Intent) -> bool:
        return intent in self._profiles

    def profile_for(self, intent: Intent) -> ExecutorProfile:
        try:
            return self._profiles[intent]
        except KeyError:
            raise ValueError(f"No executor profile for intent '{intent.value}'") from None

    async def execute(
        self,
        intent: Intent,
        text: str,
        conversation: Conversation,
        subject_id: str,
        user_id: str,
        token: Optional[CancellationToken] = None,
        turn_id: Optional[str] = None,
        clarification_question: Optional[str] = None,
    ) -> TaskResult:
        """
        Run one task to a TaskResult.

        Raises:
            StoreError: working memory could not be persisted; it is cleared first
            TurnCancelledError: the turn was cancelled; working memory is cleared first
        """
        profile = self.profile_for(intent)
        token = token or CancellationToken()
        turn_id = turn_id or uuid.uuid4().hex
        conversation_id = conversation.conversation_id
        self._dispatches += 1

        try:
            return await self._run_profile(
                profile, text, conversation, subject_id, user_id, token, turn_id, clarification_question
            )
        except StoreError as e:
            logger.error(
                "task_executor.store_failed",
                executor=profile.name,
                conversation_id=conversation_id,
                error=str(e),
            )
            await self._discard_working_memory(conversation_id)
            raise

    async def _discard_working_memory(self, conversation_id: str) -> None:
        try:
            await self._memory.clear(conversation_id)
        except StoreError as e:
            logger.error("task_executor.clear_failed", conversation_id=conversation_id, error=str(e))

    async def _run_profile(
        self,
        profile: ExecutorProfile,
        text: str,
        conversation: Conversation,
        subject_id: str,
        user_id: str,
        token: CancellationToken,
        turn_id: str,
        clarification_question: Optional[str],
    ) -> TaskResult:
        conversation_id = conversation.conversation_id
        await self._memory.upsert_working_memory(
            conversation_id,
            {"current_task": text, "task_state": TaskState.EXECUTING},
            agent_type=profile.name,
        )
        await self._memory.append_reasoning_step(
            conversation_id,
            thought=f"Routing request to the {profile.name} executor",
            decision=f"tools: {', '.join(profile.tool_names)}",
        )

        recorded: list[ToolCall] = []

        async def _record(call: ToolInvocation, result: ToolExecutionResult) -> None:
            tool_call = ToolCall(
                tool_name=call.name,
                arguments=call.input,
                result=result.as_structured(),
                evaluation=result.evaluation,
            )
            recorded.append(tool_call)
            await self._memory.append_tool_call(conversation_id, tool_call)

        transcript = [{
            "role": "user",
            "content": prompts.executor_request(
                text, self._context_lines(conversation, clarification_question)
            ),
        }]
        ctx = ToolContext(
            conversation_id=conversation_id,
            user_id=user_id,
            subject_id=subject_id,
            turn_id=turn_id,
        )

        try:
            with tool_context(ctx):
                loop_result = await self._loop.run(
                    system_prompt=profile.system_prompt,
                    messages=transcript,
                    tools=self._registry.get_api_tools(profile.tool_names),
                    mode=profile.mode,
                    token=token,
                    on_tool_result=_record,
                    max_iterations=profile.max_iterations,
                )
        except TurnCancelledError:
            logger.info("task_executor.cancelled", executor=profile.name, conversation_id=conversation_id)
            await self._memory.clear(conversation_id)
            raise
        except InferenceUnavailableError as e:
            logger.error("task_executor.inference_unavailable", executor=profile.name, error=str(e))
            await self._memory.upsert_working_memory(conversation_id, {"task_state": TaskState.FAILED})
            return self._tally(TaskResult(
                success=False,
                message=UNAVAILABLE_MESSAGE,
                outcome=TaskOutcome.FAILED,
                reasoning=f"{profile.name}: inference unavailable",
                tool_calls=recorded,
            ))

        await self._memory.upsert_working_memory(conversation_id, {"task_state": TaskState.EVALUATING})
        result = self._build_result(profile, loop_result, recorded)
        logger.info(
            "task_executor.finished",
            executor=profile.name,
            outcome=result.outcome.value,
            iterations=loop_result.iterations,
            tool_calls=len(recorded),
        )
        return self._tally(result)

    # -------------------------------------------------------------------------
    # Transcript seeding
    # -------------------------------------------------------------------------

    def _context_lines(
        self,
        conversation: Conversation,
        clarification_question: Optional[str],
    ) -> list[str]:
        lines: list[str] = []
        if conversation.summary:
            lines.append(f"Conversation summary: {conversation.summary}")
        history = conversation.recent(HISTORY_MESSAGES)
        if history:
            lines.append("Earlier messages:")
            lines.extend(f"  {m.role}: {m.content}" for m in history)
        pending = self._gate.pending_for(conversation.conversation_id)
        if pending:
            lines.append("Proposals staged earlier and not yet applied:")
            lines.extend(f"  {self._describe_proposal(p)}" for p in pending)
        if clarification_question:
            lines.append(f"You previously asked the user: {clarification_question}")
            lines.append("The request below is their answer.")
        return lines

    @staticmethod
    def _describe_proposal(preview: Preview) -> str:
        change = preview.change
        target = ", ".join(change.resource_ids) or change.title or "(new record)"
        summary = change.description or f"{change.action} {change.resource_kind}"
        return (
            f"{preview.proposal_id}: {summary} [{target}] "
            f"risk={preview.assessment.level.value} "
            f"requires_confirmation={str(preview.requires_confirmation).lower()}"
        )

    # -------------------------------------------------------------------------
    # Result extraction
    # -------------------------------------------------------------------------

    def _build_result(
        self,
        profile: ExecutorProfile,
        loop_result: LoopResult,
        recorded: list[ToolCall],
    ) -> TaskResult:
        data = self._extract_data(profile, loop_result)
        reasoning = (
            f"{profile.name}: {loop_result.iterations} iteration(s), "
            f"tools: {', '.join(loop_result.tool_names_used) or 'none'}"
        )
        base: dict[str, Any] = {"data": data, "reasoning": reasoning, "tool_calls": recorded}

        if loop_result.clarification:
            return TaskResult(
                success=True,
                message=loop_result.clarification,
                requires_follow_up=True,
                outcome=TaskOutcome.NEEDS_INPUT,
                **base,
            )

        pending = self._pending_preview(loop_result)
        if pending is not None:
            data["preview"] = pending.model_dump(mode="json")
            return TaskResult(
                success=True,
                message=loop_result.text or self._confirmation_message(pending),
                requires_follow_up=True,
                outcome=TaskOutcome.PENDING_CONFIRMATION,
                confirmation=ConfirmationRequest(
                    proposal_id=pending.proposal_id,
                    assessment=pending.assessment,
                    preview=data["preview"],
                ),
                **base,
            )

        if loop_result.was_truncated:
            note = str(IterationBudgetExceeded(loop_result.iterations))
            base["reasoning"] = f"{reasoning}; {note}"
            return TaskResult(
                success=True,
                message=loop_result.text or BUDGET_EXHAUSTED_MESSAGE,
                requires_follow_up=True,
                outcome=TaskOutcome.BUDGET_EXHAUSTED,
                **base,
            )

        if loop_result.tool_results:
            _, last = loop_result.tool_results[-1]
            if not last.success:
                outcome = TaskOutcome.NOT_FOUND if last.error_kind == "not_found" else TaskOutcome.TOOL_ERROR
                data["error"] = {"tool": last.tool_name, "kind": last.error_kind, "message": last.error}
                return TaskResult(
                    success=False,
                    message=loop_result.text or f"The {last.tool_name} step failed: {last.error}",
                    outcome=outcome,
                    **base,
                )

        if profile.intent == Intent.RETRIEVE and self._found_nothing(loop_result):
            return TaskResult(
                success=False,
                message=loop_result.text or "I could not find any matching records.",
                outcome=TaskOutcome.NOT_FOUND,
                **base,
            )

        return TaskResult(
            success=True,
            message=loop_result.text or "Done.",
            outcome=TaskOutcome.COMPLETED,
            **base,
        )

    @staticmethod
    def _extract_data(profile: ExecutorProfile, loop_result: LoopResult) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for tool_name, key in profile.extract.items():
            values = [r.result for r in loop_result.results_for(tool_name) if r.success]
            if values:
                data[key] = values if len(values) > 1 else values[0]
        return data

    def _pending_preview(self, loop_result: LoopResult) -> Optional[Preview]:
        """The latest proposal this run left waiting for confirmation, if any."""
        pending: dict[str, None] = {}
        for call, result in loop_result.tool_results:
            if call.name == STAGE_CHANGE and result.success and isinstance(result.result, dict):
                if result.result.get("requires_confirmation"):
                    pending[result.result["proposal_id"]] = None
            elif call.name == COMMIT_CHANGE:
                proposal_id = str(call.input.get("proposal_id", ""))
                if result.success:
                    pending.pop(proposal_id, None)
                elif result.error_kind == "pending_confirmation":
                    pending.pop(proposal_id, None)
                    pending[proposal_id] = None
        for proposal_id in reversed(list(pending)):
            preview = self._gate.get_proposal(proposal_id)
            if preview is not None:
                return preview
        return None

    @staticmethod
    def _found_nothing(loop_result: LoopResult) -> bool:
        searches = [r for r in loop_result.results_for(SEARCH_RECORDS) if r.success]
        reads = [r for r in loop_result.results_for(GET_RECORD) if r.success]
        if not searches or reads:
            return False
        return all(isinstance(r.result, dict) and r.result.get("count") == 0 for r in searches)

    @staticmethod
    def _confirmation_message(preview: Preview) -> str:
        reasons = "; ".join(preview.assessment.reasons) or "this change needs review"
        return (
            f"This {preview.change.action} is {preview.assessment.level.value} risk ({reasons}). "
            f"Nothing has been changed yet. Reply to confirm proposal {preview.proposal_id}."
        )

    def _tally(self, result: TaskResult) -> TaskResult:
        key = result.outcome.value
        self._outcomes[key] = self._outcomes.get(key, 0) + 1
        return result

    @property
    def stats(self) -> dict[str, Any]:
        return {"dispatches": self._dispatches, "outcomes": dict(self._outcomes)}
