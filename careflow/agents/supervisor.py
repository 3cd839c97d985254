"""
Supervisor: routes one user turn and speaks for the whole system.

A turn runs under the conversation's lock, so at most one turn per
conversation is ever in flight, and under a cancellation token that carries
the turn deadline. The steps are:

    1. load or create the conversation and append the user's message
    2. classify intent (forced to ``clarification`` when the previous
       assistant message asked the user a question)
    3. check preconditions; subject-bound intents need a subject id
    4. dispatch: a task executor, the direct-answer path for ``general``,
       or the clarification path
    5. reflect on the result
    6. synthesize one message: executor message plus any correction plan
    7. persist the assistant message and refresh the summary on schedule

Nothing raised inside steps 2 to 7 escapes; every failure becomes a
``TaskResult`` with ``success=False`` and a plain apology. The user's
message, once appended, is never rolled back.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from careflow import prompts
from careflow.agents.executor import TaskExecutor
from careflow.api.inference import InferenceMode, InferenceService
from careflow.cognition.intent import IntentClassifier
from careflow.cognition.reflection import ReflectionEngine
from careflow.errors import (
    InferenceUnavailableError,
    PreconditionError,
    StoreError,
    TurnCancelledError,
)
from careflow.harness.cancellation import CancellationToken
from careflow.harness.locks import ConversationLocks
from careflow.memory.manager import MemoryManager, new_conversation_id
from careflow.types import (
    AgentReply,
    Conversation,
    Intent,
    Message,
    ReflectionResult,
    TaskOutcome,
    TaskResult,
)

logger = structlog.get_logger(__name__)

APOLOGY_MESSAGE = "I'm sorry, something went wrong while handling your request. Please try again."
STORE_FAILURE_MESSAGE = (
    "I'm sorry, I could not save this conversation just now. "
    "Nothing can be assumed to have completed; please try again."
)
CANCELLED_MESSAGE = "The request was stopped before it finished. Nothing further will be done for it."
CLARIFICATION_ACK = "Thank you for the clarification. How can I help you with your medical documents?"
UNAVAILABLE_MESSAGE = "I could not reach the reasoning service just now. Please try again shortly."


@dataclass
class TurnOutcome:
    result: TaskResult
    conversation_id: str
    intent: Optional[Intent] = None
    executor: Optional[str] = None
    reflection: Optional[ReflectionResult] = None


class Supervisor:
    """
    Intent router and response synthesizer.

    Every collaborator is injected; the supervisor holds no global state
    beyond the per-conversation locks and the tokens of turns in flight.
    """

    def __init__(
        self,
        memory: MemoryManager,
        classifier: IntentClassifier,
        executor: TaskExecutor,
        reflection: ReflectionEngine,
        inference: InferenceService,
        locks: Optional[ConversationLocks] = None,
        turn_timeout: Optional[float] = 180.0,
        context_window: int = 5,
    ):
        self._memory = memory
        self._classifier = classifier
        self._executor = executor
        self._reflection = reflection
        self._inference = inference
        self._locks = locks or ConversationLocks()
        self._turn_timeout = turn_timeout
        self._context_window = max(1, int(context_window))
        self._active: dict[str, CancellationToken] = {}

        self._turns = 0
        self._failures = 0

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def process_user_input(
        self,
        text: str,
        conversation_id: Optional[str] = None,
        user_id: str = "anonymous",
        subject_id: Optional[str] = None,
    ) -> AgentReply:
        """Caller-facing entry point; returns the reply for the transport layer."""
        turn = await self._run_turn(text, conversation_id, user_id, subject_id)
        result = turn.result
        data = dict(result.data)
        if result.confirmation is not None:
            data["confirmation"] = result.confirmation.model_dump(mode="json")
        return AgentReply(
            success=result.success,
            message=result.message,
            intent=turn.intent,
            requires_follow_up=result.requires_follow_up,
            data=data,
            conversation_id=turn.conversation_id,
            action=result.outcome.value,
            reasoning=result.reasoning,
            executor=turn.executor,
            requires_confirmation=result.requires_confirmation,
        )

    async def handle(
        self,
        text: str,
        conversation_id: Optional[str] = None,
        user_id: str = "anonymous",
        subject_id: Optional[str] = None,
    ) -> TaskResult:
        turn = await self._run_turn(text, conversation_id, user_id, subject_id)
        return turn.result

    def cancel_turn(self, conversation_id: str, reason: str = "cancelled by caller") -> bool:
        """Cancel the turn in flight for ``conversation_id``; False when none is running."""
        token = self._active.get(conversation_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info("supervisor.turn_cancel_requested", conversation_id=conversation_id)
        return True

    def is_busy(self, conversation_id: str) -> bool:
        return self._locks.is_locked(conversation_id)

    # -------------------------------------------------------------------------
    # Turn
    # -------------------------------------------------------------------------

    async def _run_turn(
        self,
        text: str,
        conversation_id: Optional[str],
        user_id: str,
        subject_id: Optional[str],
    ) -> TurnOutcome:
        conversation_id = conversation_id or new_conversation_id()
        self._turns += 1
        async with self._locks.hold(conversation_id):
            # The deadline starts once the turn owns the conversation.
            token = CancellationToken(timeout=self._turn_timeout)
            self._active[conversation_id] = token
            try:
                turn = await self._turn(text, conversation_id, user_id, subject_id, token)
            finally:
                self._active.pop(conversation_id, None)
        if not turn.result.success:
            self._failures += 1
        return turn

    async def _turn(
        self,
        text: str,
        conversation_id: str,
        user_id: str,
        subject_id: Optional[str],
        token: CancellationToken,
    ) -> TurnOutcome:
        turn_id = uuid.uuid4().hex
        try:
            conversation = await self._memory.get_or_create_conversation(
                conversation_id, user_id=user_id, subject_id=subject_id, first_message=text
            )
            user_count = await self._memory.append_message(conversation_id, Message(role="user", content=text))
        except StoreError as e:
            logger.error("supervisor.turn_not_recorded", conversation_id=conversation_id, error=str(e))
            return TurnOutcome(
                result=TaskResult(success=False, message=STORE_FAILURE_MESSAGE, outcome=TaskOutcome.FAILED),
                conversation_id=conversation_id,
            )
        except Exception:
            logger.exception("supervisor.turn_not_recorded", conversation_id=conversation_id)
            return TurnOutcome(
                result=TaskResult(success=False, message=APOLOGY_MESSAGE, outcome=TaskOutcome.FAILED),
                conversation_id=conversation_id,
            )

        subject_id = subject_id or conversation.subject_id
        turn = TurnOutcome(
            result=TaskResult(success=False, message=APOLOGY_MESSAGE, outcome=TaskOutcome.FAILED),
            conversation_id=conversation_id,
        )
        try:
            await self._dispatch(turn, text, conversation, subject_id, user_id, token, turn_id)
            await self._persist(turn, conversation_id, since=user_count - 1)
        except TurnCancelledError as e:
            logger.info("supervisor.turn_cancelled", conversation_id=conversation_id, reason=str(e))
            turn.result = TaskResult(success=False, message=CANCELLED_MESSAGE, outcome=TaskOutcome.CANCELLED)
            await self._record_failure(conversation_id, turn)
        except StoreError as e:
            logger.error("supervisor.store_failed", conversation_id=conversation_id, error=str(e))
            turn.result = TaskResult(success=False, message=STORE_FAILURE_MESSAGE, outcome=TaskOutcome.FAILED)
            await self._discard_working_memory(conversation_id)
            await self._record_failure(conversation_id, turn)
        except InferenceUnavailableError as e:
            logger.error("supervisor.inference_unavailable", conversation_id=conversation_id, error=str(e))
            turn.result = TaskResult(success=False, message=UNAVAILABLE_MESSAGE, outcome=TaskOutcome.FAILED)
            await self._record_failure(conversation_id, turn)
        except Exception:
            logger.exception("supervisor.turn_failed", conversation_id=conversation_id)
            turn.result = TaskResult(success=False, message=APOLOGY_MESSAGE, outcome=TaskOutcome.FAILED)
            await self._record_failure(conversation_id, turn)
        return turn

    async def _dispatch(
        self,
        turn: TurnOutcome,
        text: str,
        conversation: Conversation,
        subject_id: Optional[str],
        user_id: str,
        token: CancellationToken,
        turn_id: str,
    ) -> None:
        previous = self._last_assistant_message(conversation)
        if previous is not None and previous.metadata.get("awaiting_clarification"):
            turn.intent = Intent.CLARIFICATION
            logger.info("supervisor.clarification_forced", conversation_id=conversation.conversation_id)
        else:
            decision = await token.run(
                self._classifier.classify(text, conversation.recent(self._context_window))
            )
            turn.intent = decision.intent

        intent = turn.intent
        try:
            self._check_preconditions(intent, subject_id)
        except PreconditionError as e:
            logger.info("supervisor.precondition_failed", intent=intent.value, missing=e.missing)
            turn.result = TaskResult(
                success=False,
                message=str(e),
                requires_follow_up=True,
                outcome=TaskOutcome.PRECONDITION_FAILED,
                data={"missing": e.missing},
            )
            return

        if intent == Intent.GENERAL:
            turn.result = await self._answer_directly(text, conversation, token)
        elif intent == Intent.CLARIFICATION:
            turn.result = await self._handle_clarification(
                turn, text, conversation, previous, subject_id, user_id, token, turn_id
            )
        else:
            turn.executor = intent.value
            turn.result = await self._executor.execute(
                intent, text, conversation, subject_id, user_id, token=token, turn_id=turn_id
            )

        turn.reflection = self._reflection.reflect(turn.result)
        if turn.executor is not None:
            await self._settle_working_memory(conversation.conversation_id, turn)

        if turn.reflection.correction_needed and turn.reflection.correction_plan:
            turn.result.message = f"{turn.result.message}\n\n{turn.reflection.correction_plan}"

    @staticmethod
    def _check_preconditions(intent: Intent, subject_id: Optional[str]) -> None:
        if intent.requires_subject and not subject_id:
            raise PreconditionError(
                f"A patient ID is required to {intent.value} records. "
                "Please select a patient and send your request again."
            )

    async def _answer_directly(
        self, text: str, conversation: Conversation, token: CancellationToken
    ) -> TaskResult:
        history = prompts.format_transcript(conversation.recent(self._context_window))
        prompt = f"{history}\nuser: {text}" if history else text
        answer = await token.run(
            self._inference.generate_text(prompts.GENERAL_SYSTEM, prompt, mode=InferenceMode.CONVERSATIONAL)
        )
        return TaskResult(
            success=True,
            message=answer.strip() or "How can I help you with your medical records?",
            reasoning="general: answered directly",
        )

    async def _handle_clarification(
        self,
        turn: TurnOutcome,
        text: str,
        conversation: Conversation,
        previous: Optional[Message],
        subject_id: Optional[str],
        user_id: str,
        token: CancellationToken,
        turn_id: str,
    ) -> TaskResult:
        """Resume the executor that asked the question, or acknowledge."""
        asked_by = previous.metadata.get("executor") if previous is not None else None
        if asked_by and subject_id and asked_by in {i.value for i in Intent}:
            resumed = Intent(asked_by)
            if self._executor.handles(resumed):
                turn.executor = resumed.value
                return await self._executor.execute(
                    resumed,
                    text,
                    conversation,
                    subject_id,
                    user_id,
                    token=token,
                    turn_id=turn_id,
                    clarification_question=previous.content,
                )
        return TaskResult(success=True, message=CLARIFICATION_ACK, reasoning="clarification acknowledged")

    async def _settle_working_memory(self, conversation_id: str, turn: TurnOutcome) -> None:
        reflection = turn.reflection
        result = turn.result
        if result.outcome == TaskOutcome.COMPLETED and result.success and not result.requires_follow_up:
            await self._memory.clear(conversation_id)
            return
        await self._memory.append_reflection(
            conversation_id,
            reflection="; ".join(reflection.lessons_learned),
            correction_needed=reflection.correction_needed,
            correction_plan=reflection.correction_plan,
        )

    async def _discard_working_memory(self, conversation_id: str) -> None:
        try:
            await self._memory.clear(conversation_id)
        except StoreError as e:
            logger.error("supervisor.working_memory_not_cleared", conversation_id=conversation_id, error=str(e))

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def _persist(self, turn: TurnOutcome, conversation_id: str, since: Optional[int] = None) -> None:
        result = turn.result
        metadata: dict[str, Any] = {
            "intent": turn.intent.value if turn.intent else None,
            "executor": turn.executor,
            "outcome": result.outcome.value,
            "awaiting_clarification": result.outcome == TaskOutcome.NEEDS_INPUT,
        }
        if result.confirmation is not None:
            metadata["awaiting_confirmation"] = result.confirmation.proposal_id
        count = await self._memory.append_message(
            conversation_id,
            Message(
                role="assistant",
                content=result.message,
                reasoning=result.reasoning,
                tool_calls=result.tool_calls,
                metadata=metadata,
            ),
        )
        if self._memory.should_summarize(count, since=since):
            try:
                await self._memory.update_summary(conversation_id)
            except (InferenceUnavailableError, StoreError) as e:
                logger.warning("supervisor.summary_failed", conversation_id=conversation_id, error=str(e))

    async def _record_failure(self, conversation_id: str, turn: TurnOutcome) -> None:
        """Best-effort explanatory assistant message after a failed turn."""
        try:
            await self._memory.append_message(
                conversation_id,
                Message(
                    role="assistant",
                    content=turn.result.message,
                    metadata={
                        "intent": turn.intent.value if turn.intent else None,
                        "executor": turn.executor,
                        "outcome": turn.result.outcome.value,
                        "error": True,
                    },
                ),
            )
        except StoreError as e:
            logger.error("supervisor.failure_not_recorded", conversation_id=conversation_id, error=str(e))

    @staticmethod
    def _last_assistant_message(conversation: Conversation) -> Optional[Message]:
        for message in reversed(conversation.messages):
            if message.role == "assistant":
                return message
        return None

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "turns": self._turns,
            "failures": self._failures,
            "active_turns": len(self._active),
            "executor": self._executor.stats,
            "classifier": self._classifier.stats,
            "reflection": self._reflection.stats,
            "memory": self._memory.stats,
        }
