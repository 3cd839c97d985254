"""
Runtime harness: the reasoning loop, retry, cancellation, and per-conversation locks.

``careflow.harness.loop`` is imported directly by its users; it depends on the
inference module, which itself depends on ``careflow.harness.retry``.
"""
from careflow.harness.cancellation import CancellationToken
from careflow.harness.locks import ConversationLocks
from careflow.harness.retry import RetryConfig, with_retries

__all__ = ["CancellationToken", "ConversationLocks", "RetryConfig", "with_retries"]
