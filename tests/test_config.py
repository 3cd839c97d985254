"""
Tests for careflow.config: env aliases, clamping and path derivation.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from careflow.config import CareflowConfig, InferenceConfig, LoopConfig, MemoryConfig, RiskConfig
from careflow.types import RiskLevel


class TestInferenceConfig:
    def test_require_api_key_raises_without_key(self):
        config = InferenceConfig(ANTHROPIC_API_KEY=None)
        with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
            config.require_api_key()

    def test_require_api_key_returns_key(self):
        assert InferenceConfig(ANTHROPIC_API_KEY="sk-test").require_api_key() == "sk-test"

    def test_temperatures_are_clamped(self):
        config = InferenceConfig(
            CAREFLOW_DETERMINISTIC_TEMPERATURE=-1.0,
            CAREFLOW_CONVERSATIONAL_TEMPERATURE=4.0,
        )
        assert config.deterministic_temperature == 0.0
        assert config.conversational_temperature == 1.0

    def test_retry_max_delay_never_below_base_delay(self):
        config = InferenceConfig(CAREFLOW_RETRY_BASE_DELAY=5.0, CAREFLOW_RETRY_MAX_DELAY=1.0)
        assert config.retry_max_delay == 5.0


class TestMemoryConfig:
    def test_db_path_follows_data_dir(self, tmp_path):
        config = MemoryConfig(CAREFLOW_DATA_DIR=tmp_path / "data")
        assert config.db_path == tmp_path / "data" / "careflow.db"

    def test_explicit_db_path_wins(self, tmp_path):
        config = MemoryConfig(CAREFLOW_DATA_DIR=tmp_path, CAREFLOW_DB_PATH=tmp_path / "other.db")
        assert config.db_path == tmp_path / "other.db"

    def test_context_window_is_clamped_to_three_to_five(self):
        assert MemoryConfig(CAREFLOW_CONTEXT_WINDOW=1).context_window == 3
        assert MemoryConfig(CAREFLOW_CONTEXT_WINDOW=50).context_window == 5

    def test_summary_interval_at_least_one(self):
        assert MemoryConfig(CAREFLOW_SUMMARY_INTERVAL=0).summary_interval == 1


class TestLoopAndRiskConfig:
    def test_max_iterations_at_least_one(self):
        assert LoopConfig(CAREFLOW_MAX_ITERATIONS=0).max_iterations == 1

    def test_high_risk_kinds_from_comma_separated_string(self):
        config = RiskConfig(CAREFLOW_HIGH_RISK_KINDS="Medication, allergy ,")
        assert config.high_risk_kinds == ["medication", "allergy"]

    def test_high_risk_kinds_from_json_env(self, monkeypatch):
        monkeypatch.setenv("CAREFLOW_HIGH_RISK_KINDS", '["Medication", " allergy "]')
        assert RiskConfig().high_risk_kinds == ["medication", "allergy"]

    def test_confirm_at_level_parses_enum(self, monkeypatch):
        monkeypatch.setenv("CAREFLOW_CONFIRM_AT_LEVEL", "medium")
        assert RiskConfig().confirm_at_level == RiskLevel.MEDIUM

    def test_recent_delete_seconds(self):
        assert RiskConfig(CAREFLOW_RECENT_DELETE_DAYS=2).recent_delete_seconds == 2 * 86400.0


class TestCareflowConfig:
    def test_composes_sections_and_creates_data_dir(self, tmp_path, monkeypatch):
        data_dir = tmp_path / "nested" / "data"
        monkeypatch.setenv("CAREFLOW_DATA_DIR", str(data_dir))
        monkeypatch.delenv("CAREFLOW_DB_PATH", raising=False)

        config = CareflowConfig()

        assert data_dir.is_dir()
        assert config.memory.db_path == data_dir / "careflow.db"
        assert isinstance(config.loop, LoopConfig)
        assert "max_iterations=" in repr(config)

    def test_relative_paths_are_resolved(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CAREFLOW_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("CAREFLOW_DB_PATH", "relative/careflow.db")

        config = CareflowConfig()

        assert Path(config.memory.db_path).is_absolute()
