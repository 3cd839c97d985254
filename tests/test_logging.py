"""Tests for careflow.logging_setup redaction."""

from __future__ import annotations

from careflow.logging_setup import redact_sensitive_fields, redact_text


class TestRedactText:
    def test_email(self):
        assert redact_text("write to jane.doe@example.com today") == "write to [REDACTED_EMAIL] today"

    def test_ssn_before_phone(self):
        assert redact_text("ssn 123-45-6789") == "ssn [REDACTED_SSN]"

    def test_phone(self):
        assert redact_text("call 555.123.4567") == "call [REDACTED_PHONE]"

    def test_plain_text_untouched(self):
        assert redact_text("Lisinopril 10mg daily") == "Lisinopril 10mg daily"


class TestProcessor:
    def test_sensitive_fields_are_masked_and_truncated(self):
        event = {
            "event": "search.started",
            "query": "records for jane@example.com",
            "content": "x" * 200,
            "conversation_id": "jane@example.com",
        }
        out = redact_sensitive_fields(None, "info", event)

        assert out["query"] == "records for [REDACTED_EMAIL]"
        assert out["content"] == "x" * 80 + "... [truncated]"
        # Only free-text keys are touched.
        assert out["conversation_id"] == "jane@example.com"

    def test_non_string_values_pass_through(self):
        out = redact_sensitive_fields(None, "info", {"event": "x", "text": None, "thought": 3})
        assert out["text"] is None
        assert out["thought"] == 3
