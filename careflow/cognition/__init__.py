"""
Cognition layer: judgements about a turn that are not tool use.

Modules:
  - intent: structured intent classification with a safe fallback
  - reflection: rule-based verdicts and correction plans for finished tasks
"""
from careflow.cognition.intent import IntentClassifier, IntentDecision
from careflow.cognition.reflection import ReflectionEngine

__all__ = ["IntentClassifier", "IntentDecision", "ReflectionEngine"]
