"""Risk assessment and the propose/confirm/commit gate for record mutations."""
from careflow.safety.gate import CommitResult, ConfirmationGate, Preview, ProposedChange
from careflow.safety.risk import ChangeDescriptor, RiskAssessor, RiskRule

__all__ = [
    "ChangeDescriptor",
    "CommitResult",
    "ConfirmationGate",
    "Preview",
    "ProposedChange",
    "RiskAssessor",
    "RiskRule",
]
