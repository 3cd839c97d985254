"""Inference backend interface."""
from careflow.api.inference import (
    AnthropicInferenceService,
    Completion,
    InferenceMode,
    InferenceService,
    ToolInvocation,
)

__all__ = [
    "AnthropicInferenceService",
    "Completion",
    "InferenceMode",
    "InferenceService",
    "ToolInvocation",
]
