"""
Intent classification for one user turn.

The classifier asks the inference service for a constrained structured
object (an enum value plus a short reason) instead of parsing free text.
Anything that does not yield a valid enum value falls back to ``general``,
which is always safe to answer: it touches no records and calls no tools.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from careflow import prompts
from careflow.api.inference import InferenceService
from careflow.errors import InferenceUnavailableError
from careflow.types import Intent, Message

logger = structlog.get_logger(__name__)


@dataclass
class IntentDecision:
    intent: Intent
    reason: str = ""
    confidence: float = 0.0
    fallback: bool = False


class IntentClassifier:
    def __init__(self, inference: InferenceService):
        self._inference = inference
        self._fallbacks = 0
        self._classified = 0

    async def classify(self, text: str, recent_messages: Optional[list[Message]] = None) -> IntentDecision:
        """
        Classify ``text`` in the light of the recent conversation window.

        Never raises for backend failures; an unreachable backend or an
        invalid answer produces a ``general`` decision flagged as fallback.
        """
        self._classified += 1
        try:
            raw = await self._inference.classify(
                prompts.CLASSIFIER_SYSTEM,
                prompts.classification_request(text, list(recent_messages or [])),
                prompts.INTENT_SCHEMA_NAME,
                prompts.INTENT_SCHEMA,
            )
        except InferenceUnavailableError as e:
            logger.warning("intent_classifier.unavailable", error=str(e))
            return self._fallback("inference unavailable")

        if not raw:
            return self._fallback("no structured output")

        try:
            intent = Intent(str(raw.get("intent", "")).strip().lower())
        except ValueError:
            logger.warning("intent_classifier.invalid_intent", value=raw.get("intent"))
            return self._fallback("invalid intent value")

        try:
            confidence = float(raw.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0

        decision = IntentDecision(
            intent=intent,
            reason=str(raw.get("reason", ""))[:200],
            confidence=max(0.0, min(1.0, confidence)),
        )
        logger.info(
            "intent_classifier.classified",
            intent=decision.intent.value,
            confidence=decision.confidence,
        )
        return decision

    def _fallback(self, reason: str) -> IntentDecision:
        self._fallbacks += 1
        return IntentDecision(intent=Intent.GENERAL, reason=reason, fallback=True)

    @property
    def stats(self) -> dict[str, int]:
        return {"classified": self._classified, "fallbacks": self._fallbacks}
