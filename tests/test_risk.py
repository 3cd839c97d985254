"""
Tests for careflow.safety.risk: table-driven risk assessment.
"""

from __future__ import annotations

import time

import pytest

from careflow.config import RiskConfig
from careflow.safety.risk import ChangeDescriptor, RiskAssessor, RiskRule
from careflow.types import RiskLevel

DAY = 86400.0


@pytest.fixture()
def assessor(risk_config) -> RiskAssessor:
    return RiskAssessor(risk_config)


class TestRules:
    def test_plain_document_update_is_low_and_unconfirmed(self, assessor):
        assessment = assessor.assess(
            "update", "document", ChangeDescriptor(changed_fields=frozenset({"title"}), target_kinds=frozenset({"document"}))
        )
        assert assessment.level == RiskLevel.LOW
        assert assessment.reasons == []
        assert assessment.requires_confirmation is False

    def test_medication_change_is_high(self, assessor):
        assessment = assessor.assess(
            "update",
            "medication",
            ChangeDescriptor(changed_fields=frozenset({"dosage"}), target_kinds=frozenset({"medication"})),
        )
        assert assessment.level == RiskLevel.HIGH
        assert assessment.requires_confirmation is True
        assert "Medication changes can affect treatment" in assessment.reasons

    def test_medication_detected_from_target_kind(self, assessor):
        assessment = assessor.assess("update", "document", ChangeDescriptor(target_kinds=frozenset({"Medication"})))
        assert assessment.level == RiskLevel.HIGH

    def test_medication_create_requires_confirmation(self, assessor):
        assessment = assessor.assess("create", "medication", ChangeDescriptor())
        assert assessment.requires_confirmation is True

    def test_critical_observation(self, assessor):
        assessment = assessor.assess(
            "update", "observation", ChangeDescriptor(touches_critical=True, structured=True)
        )
        assert assessment.level == RiskLevel.HIGH
        assert "Change touches a critical observation value" in assessment.reasons

    def test_critical_flag_ignored_on_create(self, assessor):
        assessment = assessor.assess("create", "observation", ChangeDescriptor(touches_critical=True))
        assert "Change touches a critical observation value" not in assessment.reasons

    def test_bulk_operation_is_medium_and_forced(self, assessor):
        assessment = assessor.assess("update", "document", ChangeDescriptor(target_count=3))
        assert assessment.level == RiskLevel.MEDIUM
        assert assessment.requires_confirmation is True
        assert assessment.reasons == ["Bulk operation affecting multiple records"]

    def test_large_bulk_is_high(self, assessor):
        assessment = assessor.assess("delete", "document", ChangeDescriptor(target_count=11))
        assert assessment.level == RiskLevel.HIGH
        assert "Large bulk operation" in assessment.reasons

    def test_status_change_is_medium_but_not_forced(self, assessor):
        assessment = assessor.assess("update", "document", ChangeDescriptor(changed_fields=frozenset({"status"})))
        assert assessment.level == RiskLevel.MEDIUM
        assert assessment.requires_confirmation is False

    def test_field_removal(self, assessor):
        assessment = assessor.assess("update", "document", ChangeDescriptor(removed_fields=frozenset({"note"})))
        assert assessment.reasons == ["Removing fields may lose data"]

    def test_structured_delete_forced(self, assessor):
        now = time.time()
        assessment = assessor.assess(
            "delete",
            "observation",
            ChangeDescriptor(structured=True, target_created_at=(now - 30 * DAY,), now=now),
        )
        assert assessment.level == RiskLevel.MEDIUM
        assert assessment.requires_confirmation is True
        assert assessment.reasons == ["Deleting structured clinical data"]

    def test_recent_document_delete_is_low_but_forced(self, assessor):
        now = time.time()
        assessment = assessor.assess(
            "delete", "document", ChangeDescriptor(target_created_at=(now - DAY,), now=now)
        )
        assert assessment.level == RiskLevel.LOW
        assert assessment.requires_confirmation is True
        assert assessment.reasons == ["Deleting a recently added record"]

    def test_old_document_delete_needs_nothing(self, assessor):
        now = time.time()
        assessment = assessor.assess(
            "delete", "document", ChangeDescriptor(target_created_at=(now - 60 * DAY,), now=now)
        )
        assert assessment.requires_confirmation is False

    def test_reasons_accumulate_and_level_is_maximum(self, assessor):
        assessment = assessor.assess(
            "update",
            "medication",
            ChangeDescriptor(target_count=2, changed_fields=frozenset({"status"})),
        )
        assert assessment.level == RiskLevel.HIGH
        assert len(assessment.reasons) == 3


class TestConfiguration:
    def test_lower_threshold_confirms_medium(self):
        assessor = RiskAssessor(RiskConfig(CAREFLOW_CONFIRM_AT_LEVEL="medium"))
        assessment = assessor.assess("update", "document", ChangeDescriptor(changed_fields=frozenset({"status"})))
        assert assessment.requires_confirmation is True

    def test_custom_rules_replace_defaults(self, risk_config):
        rule = RiskRule("everything", RiskLevel.MEDIUM, "Always", lambda ctx: True)
        assessor = RiskAssessor(risk_config, rules=(rule,))
        assessment = assessor.assess("create", "medication", ChangeDescriptor())
        assert assessment.reasons == ["Always"]
        assert assessment.requires_confirmation is False

    def test_high_risk_kinds_are_configurable(self):
        assessor = RiskAssessor(RiskConfig(CAREFLOW_HIGH_RISK_KINDS=["allergy"]))
        assert assessor.assess("update", "allergy", ChangeDescriptor()).level == RiskLevel.HIGH
        assert assessor.assess("update", "medication", ChangeDescriptor()).level == RiskLevel.LOW
