"""
Tests for careflow.agents.executor and careflow.agents.profiles.

Each test drives one dispatch through the real tool registry, gate and
reasoning loop with a scripted inference backend, then checks the
TaskResult outcome and what was written to working memory.
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from careflow.agents.executor import TaskExecutor
from careflow.agents.profiles import default_profiles
from careflow.errors import InferenceUnavailableError, StoreError, TurnCancelledError
from careflow.harness.cancellation import CancellationToken
from careflow.harness.loop import ReasoningLoop
from careflow.memory.cache import WorkingMemoryCache
from careflow.memory.manager import MemoryManager
from careflow.records.graph import RecordEntityGraph
from careflow.records.search import KeywordSearchIndex
from careflow.safety.gate import ConfirmationGate
from careflow.safety.risk import RiskAssessor
from careflow.tools.executor import ToolExecutor
from careflow.tools.records import RecordTools
from careflow.tools.registry import ToolRegistry
from careflow.types import Conversation, Intent, Message, RiskLevel, TaskOutcome, TaskState

from fakes import MEDICATION_ID, OTHER_ID, PATIENT, FakeInference, final, tool_use


@pytest.fixture()
def gate(documents, risk_config) -> ConfirmationGate:
    return ConfirmationGate(documents, RiskAssessor(risk_config))


@pytest.fixture()
def registry(documents, gate) -> ToolRegistry:
    registry = ToolRegistry()
    RecordTools(documents, KeywordSearchIndex(documents), RecordEntityGraph(documents), gate).register(registry)
    return registry


@pytest_asyncio.fixture()
async def memory(durable_store, memory_config) -> MemoryManager:
    return MemoryManager(durable_store, WorkingMemoryCache(), None, memory_config)


def _executor(inference, registry, memory, gate, max_iterations: int = 10) -> TaskExecutor:
    loop = ReasoningLoop(inference, ToolExecutor(registry), max_iterations=max_iterations)
    return TaskExecutor(loop, registry, memory, gate)


def _conversation(messages=None, summary: str = "") -> Conversation:
    return Conversation(
        conversation_id="conv-1",
        user_id="user-1",
        subject_id=PATIENT,
        messages=messages or [],
        summary=summary,
    )


async def _run(executor: TaskExecutor, intent: Intent, text: str, **kwargs):
    kwargs.setdefault("turn_id", "turn-1")
    return await executor.execute(intent, text, kwargs.pop("conversation", _conversation()), PATIENT, "user-1", **kwargs)


class TestProfiles:
    def test_every_record_intent_has_a_profile(self):
        profiles = default_profiles()
        assert set(profiles) == {Intent.CREATE, Intent.RETRIEVE, Intent.MODIFY, Intent.REMOVE, Intent.VISUALIZE}
        assert profiles[Intent.MODIFY].mutating is True
        assert profiles[Intent.RETRIEVE].mutating is False
        assert profiles[Intent.VISUALIZE].name == "visualize"

    @pytest.mark.asyncio
    async def test_missing_tools_fail_at_construction(self, memory, gate):
        loop = ReasoningLoop(FakeInference(), ToolExecutor(ToolRegistry()))
        with pytest.raises(ValueError, match="Unknown tool name"):
            TaskExecutor(loop, ToolRegistry(), memory, gate)

    @pytest.mark.asyncio
    async def test_no_profile_for_general(self, registry, memory, gate):
        executor = _executor(FakeInference(), registry, memory, gate)
        assert executor.handles(Intent.GENERAL) is False
        with pytest.raises(ValueError, match="general"):
            executor.profile_for(Intent.GENERAL)


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_completed_with_matches(self, registry, memory, gate):
        inference = FakeInference(completions=[
            tool_use("search_records", {"query": "blood test results"}),
            final("You have two matching records."),
        ])
        executor = _executor(inference, registry, memory, gate)

        result = await _run(executor, Intent.RETRIEVE, "Show me my test results")

        assert result.success is True
        assert result.outcome == TaskOutcome.COMPLETED
        assert result.message == "You have two matching records."
        assert result.data["matches"]["count"] == 2
        assert [tc.evaluation for tc in result.tool_calls] == ["ok"]
        assert result.reasoning.startswith("retrieve: 2 iteration(s), tools: search_records")

        offered = {t["name"] for t in inference.calls_to("complete")[0]["tools"]}
        assert offered == set(default_profiles()[Intent.RETRIEVE].tool_names)

    @pytest.mark.asyncio
    async def test_working_memory_tracks_the_dispatch(self, registry, memory, gate):
        inference = FakeInference(completions=[
            tool_use("search_records", {"query": "lisinopril"}),
            final("Found it."),
        ])
        await _run(_executor(inference, registry, memory, gate), Intent.RETRIEVE, "Find lisinopril")

        wm = await memory.get_working_memory("conv-1")
        assert wm.agent_type == "retrieve"
        assert wm.current_task == "Find lisinopril"
        assert wm.task_state == TaskState.EVALUATING
        assert wm.reasoning[0].thought == "Routing request to the retrieve executor"
        assert [tc.tool_name for tc in wm.tool_call_history] == ["search_records"]
        assert wm.tool_call_history[0].result["ok"] is True

    @pytest.mark.asyncio
    async def test_empty_search_is_not_found(self, registry, memory, gate):
        inference = FakeInference(completions=[
            tool_use("search_records", {"query": "vaccination"}),
            final(""),
        ])
        result = await _run(_executor(inference, registry, memory, gate), Intent.RETRIEVE, "Show vaccinations")

        assert result.success is False
        assert result.outcome == TaskOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_failed_last_tool_is_reported(self, registry, memory, gate):
        inference = FakeInference(completions=[
            tool_use("get_record", {"resource_id": OTHER_ID}),
            final(""),
        ])
        result = await _run(_executor(inference, registry, memory, gate), Intent.RETRIEVE, "Open that record")

        assert result.outcome == TaskOutcome.NOT_FOUND
        assert result.data["error"]["kind"] == "not_found"
        assert result.data["error"]["tool"] == "get_record"

    @pytest.mark.asyncio
    async def test_history_and_summary_seed_the_transcript(self, registry, memory, gate):
        inference = FakeInference(completions=[final("ok")])
        conversation = _conversation(
            messages=[Message(role="user", content="I started lisinopril last month")],
            summary="Discussed blood pressure.",
        )
        await _run(_executor(inference, registry, memory, gate), Intent.RETRIEVE, "Show it", conversation=conversation)

        seed = inference.calls_to("complete")[0]["transcript"][0]["content"]
        assert "Conversation summary: Discussed blood pressure." in seed
        assert "user: I started lisinopril last month" in seed
        assert seed.endswith("Request:\nShow it")


class TestModify:
    @pytest.mark.asyncio
    async def test_high_risk_change_waits_for_confirmation(self, registry, memory, gate, documents):
        inference = FakeInference(completions=[
            tool_use("stage_change", {
                "action": "update",
                "resource_kind": "medication",
                "resource_ids": [MEDICATION_ID],
                "changes": {"dosage": "20mg"},
            }),
            final("Please confirm the new dosage."),
        ])
        result = await _run(_executor(inference, registry, memory, gate), Intent.MODIFY, "Change my dosage to 20mg")

        assert result.success is True
        assert result.requires_follow_up is True
        assert result.outcome == TaskOutcome.PENDING_CONFIRMATION
        assert result.requires_confirmation is True
        assert result.confirmation.assessment.level == RiskLevel.HIGH
        assert result.data["preview"]["after"][0]["fields"]["dosage"] == "20mg"
        assert documents.mutation_count == 0

    @pytest.mark.asyncio
    async def test_self_confirmation_in_same_turn_is_refused(self, registry, memory, gate, documents):
        inference = FakeInference(completions=[
            tool_use("stage_change", {
                "action": "update", "resource_ids": [MEDICATION_ID], "changes": {"dosage": "20mg"},
            }),
            final(""),
        ])
        executor = _executor(inference, registry, memory, gate)

        first = await _run(executor, Intent.MODIFY, "Change my dosage to 20mg")
        proposal_id = first.confirmation.proposal_id
        assert "Nothing has been changed yet" in first.message
        assert proposal_id in first.message

        inference.completions.extend([
            tool_use("commit_change", {"proposal_id": proposal_id, "confirmed": True}),
            final(""),
        ])
        second = await _run(executor, Intent.MODIFY, "yes, do it", turn_id="turn-1")

        assert second.outcome == TaskOutcome.PENDING_CONFIRMATION
        assert documents.mutation_count == 0

    @pytest.mark.asyncio
    async def test_confirmation_on_a_later_turn_applies(self, registry, memory, gate, documents):
        inference = FakeInference(completions=[
            tool_use("stage_change", {
                "action": "update", "resource_ids": [MEDICATION_ID], "changes": {"dosage": "20mg"},
            }),
            final("Please confirm."),
        ])
        executor = _executor(inference, registry, memory, gate)
        first = await _run(executor, Intent.MODIFY, "Change my dosage to 20mg", turn_id="turn-1")
        proposal_id = first.confirmation.proposal_id

        inference.completions.extend([
            tool_use("commit_change", {"proposal_id": proposal_id, "confirmed": True}),
            final("Your dosage is now 20mg."),
        ])
        second = await _run(executor, Intent.MODIFY, "Yes, confirm", turn_id="turn-2")

        assert second.outcome == TaskOutcome.COMPLETED
        assert second.data["committed"]["resource_ids"] == [MEDICATION_ID]
        assert (await documents.get(MEDICATION_ID)).fields["dosage"] == "20mg"
        assert documents.mutation_count == 1

        # The pending proposal was offered to the model as context.
        seed = inference.calls_to("complete")[2]["transcript"][0]["content"]
        assert proposal_id in seed
        assert "requires_confirmation=true" in seed


class TestEndings:
    @pytest.mark.asyncio
    async def test_clarification_needs_input(self, registry, memory, gate):
        inference = FakeInference(completions=[
            tool_use("request_clarification", {"question": "Which medication do you mean?"}),
        ])
        result = await _run(_executor(inference, registry, memory, gate), Intent.MODIFY, "Change it")

        assert result.outcome == TaskOutcome.NEEDS_INPUT
        assert result.message == "Which medication do you mean?"
        assert result.requires_follow_up is True

    @pytest.mark.asyncio
    async def test_clarification_answer_is_framed(self, registry, memory, gate):
        inference = FakeInference(completions=[final("ok")])
        await _run(
            _executor(inference, registry, memory, gate),
            Intent.MODIFY,
            "The lisinopril",
            clarification_question="Which medication do you mean?",
        )

        seed = inference.calls_to("complete")[0]["transcript"][0]["content"]
        assert "You previously asked the user: Which medication do you mean?" in seed

    @pytest.mark.asyncio
    async def test_budget_exhaustion(self, registry, memory, gate):
        inference = FakeInference(completions=[
            tool_use("search_records", {"query": "blood"}) for _ in range(3)
        ])
        result = await _run(
            _executor(inference, registry, memory, gate, max_iterations=2), Intent.RETRIEVE, "Find everything"
        )

        assert result.success is True
        assert result.requires_follow_up is True
        assert result.outcome == TaskOutcome.BUDGET_EXHAUSTED
        assert "Iteration budget of 2 exhausted" in result.reasoning
        assert len(inference.completions) == 1

    @pytest.mark.asyncio
    async def test_visualize_returns_graph(self, registry, memory, gate):
        inference = FakeInference(completions=[tool_use("build_graph"), final("Here is your graph.")])
        result = await _run(_executor(inference, registry, memory, gate), Intent.VISUALIZE, "Graph my records")

        assert result.outcome == TaskOutcome.COMPLETED
        assert len(result.data["graph"]["nodes"]) == 4

    @pytest.mark.asyncio
    async def test_inference_unavailable(self, registry, memory, gate):
        inference = FakeInference(completions=[InferenceUnavailableError("down")])
        result = await _run(_executor(inference, registry, memory, gate), Intent.RETRIEVE, "Show labs")

        assert result.success is False
        assert result.outcome == TaskOutcome.FAILED
        assert (await memory.get_working_memory("conv-1")).task_state == TaskState.FAILED

    @pytest.mark.asyncio
    async def test_cancellation_clears_working_memory(self, registry, memory, gate):
        token = CancellationToken()
        token.cancel("stop")
        executor = _executor(FakeInference(), registry, memory, gate)

        with pytest.raises(TurnCancelledError):
            await _run(executor, Intent.RETRIEVE, "Show labs", token=token)
        assert await memory.get_working_memory("conv-1") is None

    @pytest.mark.asyncio
    async def test_store_failure_clears_working_memory(self, registry, memory, gate, durable_store, monkeypatch):
        put = durable_store.put_working_memory
        writes = []

        async def _failing_put(working_memory):
            writes.append(working_memory)
            if len(writes) == 3:
                raise StoreError("disk full")
            await put(working_memory)

        monkeypatch.setattr(durable_store, "put_working_memory", _failing_put)
        inference = FakeInference(completions=[
            tool_use("search_records", {"query": "blood test"}),
            final("Here it is."),
        ])

        with pytest.raises(StoreError):
            await _run(_executor(inference, registry, memory, gate), Intent.RETRIEVE, "Show me my blood test")

        assert writes[-1].tool_call_history[0].tool_name == "search_records"
        assert await memory.get_working_memory("conv-1") is None
        assert await durable_store.get_working_memory("conv-1") is None

    @pytest.mark.asyncio
    async def test_stats_count_outcomes(self, registry, memory, gate):
        inference = FakeInference(completions=[final("hello")])
        executor = _executor(inference, registry, memory, gate)
        await _run(executor, Intent.RETRIEVE, "hi")

        assert executor.stats == {"dispatches": 1, "outcomes": {"completed": 1}}
