"""
Tests for careflow.cognition.intent: constrained classification with a safe
fallback to ``general``.
"""

from __future__ import annotations

import pytest

from careflow import prompts
from careflow.cognition.intent import IntentClassifier
from careflow.errors import InferenceUnavailableError
from careflow.types import Intent, Message

from fakes import FakeInference


class TestClassification:
    @pytest.mark.asyncio
    async def test_valid_structured_output(self):
        inference = FakeInference(classifications=[
            {"intent": "Retrieve", "reason": "asks to see records", "confidence": 0.9},
        ])
        decision = await IntentClassifier(inference).classify("Show me my test results")

        assert decision.intent == Intent.RETRIEVE
        assert decision.reason == "asks to see records"
        assert decision.confidence == 0.9
        assert decision.fallback is False

    @pytest.mark.asyncio
    async def test_request_carries_schema_and_recent_context(self):
        inference = FakeInference(classifications=[{"intent": "modify"}])
        recent = [
            Message(role="user", content="Show my medications"),
            Message(role="assistant", content="You take Lisinopril 10mg."),
        ]
        await IntentClassifier(inference).classify("Change it to 20mg", recent)

        call = inference.calls_to("classify")[0]
        assert call["schema_name"] == prompts.INTENT_SCHEMA_NAME
        assert "Lisinopril 10mg" in call["content"]
        assert "Change it to 20mg" in call["content"]

    @pytest.mark.asyncio
    async def test_confidence_is_clamped_and_reason_truncated(self):
        inference = FakeInference(classifications=[
            {"intent": "create", "reason": "r" * 500, "confidence": 7},
        ])
        decision = await IntentClassifier(inference).classify("Add a record")

        assert decision.confidence == 1.0
        assert len(decision.reason) == 200


class TestFallback:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "scripted",
        [None, {}, {"intent": "delete_everything"}, InferenceUnavailableError("down")],
    )
    async def test_falls_back_to_general(self, scripted):
        inference = FakeInference(classifications=[scripted])
        classifier = IntentClassifier(inference)
        decision = await classifier.classify("hello")

        assert decision.intent == Intent.GENERAL
        assert decision.fallback is True
        assert classifier.stats == {"classified": 1, "fallbacks": 1}

    @pytest.mark.asyncio
    async def test_non_numeric_confidence_is_zero(self):
        inference = FakeInference(classifications=[{"intent": "general", "confidence": "high"}])
        decision = await IntentClassifier(inference).classify("hi")
        assert decision.confidence == 0.0
        assert decision.fallback is False


def test_subject_bound_intents():
    assert {i for i in Intent if i.requires_subject} == {
        Intent.CREATE, Intent.RETRIEVE, Intent.MODIFY, Intent.REMOVE, Intent.VISUALIZE,
    }
