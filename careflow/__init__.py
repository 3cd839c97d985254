"""
Careflow: an orchestration engine for requests about a person's records.

A user's free-text request is classified into an intent, routed to a task
executor that runs a bounded tool-calling loop against an inference backend,
checked by a risk gate before any record is mutated, reviewed by a reflection
step, and persisted through a two-tier memory (ephemeral working memory plus a
durable conversation log).

Layers (bottom to top):
    1. Inference service (anthropic client) + retry
    2. Tool registry + executor (the never-throwing tool boundary)
    3. Risk assessor + confirmation gate
    4. Reasoning loop (per-task executor)
    5. Memory manager (working memory + conversation log)
    6. Reflection + intent classification
    7. Supervisor (routing, synthesis, persistence)
"""

__version__ = "0.1.0"
