"""
Configuration for Careflow.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. Out-of-range numbers are
clamped rather than rejected; only structurally invalid values raise.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings

from careflow.types import RiskLevel

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above careflow/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - Comma-separated str  -> ["a", "b"]
      - JSON array str       -> (parsed by pydantic-settings before this runs)
      - An existing list     -> passthrough with str coercion
    """
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(item).strip().lower() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        return [part.strip().lower() for part in stripped.split(",") if part.strip()]
    return []


StrList = Annotated[list[str], BeforeValidator(_coerce_str_list)]


class InferenceConfig(BaseSettings):
    """Connection and sampling settings for the inference backend."""

    api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    model: str = Field("claude-sonnet-4-5-20250929", alias="CAREFLOW_MODEL")
    max_tokens: int = Field(4096, alias="CAREFLOW_MAX_TOKENS")
    deterministic_temperature: float = Field(0.0, alias="CAREFLOW_DETERMINISTIC_TEMPERATURE")
    conversational_temperature: float = Field(0.3, alias="CAREFLOW_CONVERSATIONAL_TEMPERATURE")
    request_timeout_seconds: float = Field(60.0, alias="CAREFLOW_REQUEST_TIMEOUT_SECONDS")
    retry_max_retries: int = Field(3, alias="CAREFLOW_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="CAREFLOW_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="CAREFLOW_RETRY_MAX_DELAY")
    retry_exponential_base: float = Field(2.0, alias="CAREFLOW_RETRY_EXPONENTIAL_BASE")
    retry_jitter_range: float = Field(0.25, alias="CAREFLOW_RETRY_JITTER_RANGE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_runtime_limits(self) -> "InferenceConfig":
        self.max_tokens = max(1, int(self.max_tokens))
        self.deterministic_temperature = max(0.0, min(1.0, float(self.deterministic_temperature)))
        self.conversational_temperature = max(0.0, min(1.0, float(self.conversational_temperature)))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.05, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.retry_exponential_base = max(1.0, float(self.retry_exponential_base))
        self.retry_jitter_range = max(0.0, min(1.0, float(self.retry_jitter_range)))
        return self

    def require_api_key(self) -> str:
        """Return the API key, raising when the real backend cannot authenticate."""
        if not self.api_key:
            raise ValueError("No authentication configured. Set ANTHROPIC_API_KEY.")
        return self.api_key


class MemoryConfig(BaseSettings):
    """Configuration for the two memory tiers."""

    data_dir: Path = Field(Path("./careflow_data"), alias="CAREFLOW_DATA_DIR")
    db_path: Path = Field(Path("./careflow_data/careflow.db"), alias="CAREFLOW_DB_PATH")

    # Working memory lifetime; every write slides expires_at forward by this much.
    working_memory_ttl: float = Field(3600.0, alias="CAREFLOW_WORKING_MEMORY_TTL")

    # Conversation log summarization
    summary_interval: int = Field(10, alias="CAREFLOW_SUMMARY_INTERVAL")
    summary_window: int = Field(10, alias="CAREFLOW_SUMMARY_WINDOW")

    # Recent messages fed to intent classification
    context_window: int = Field(5, alias="CAREFLOW_CONTEXT_WINDOW")

    generate_titles: bool = Field(True, alias="CAREFLOW_GENERATE_TITLES")

    _DEFAULT_DB: Path = Path("./careflow_data/careflow.db")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def derive_paths_from_data_dir(self) -> "MemoryConfig":
        """Derive the database path from data_dir when the user hasn't overridden it."""
        if self.db_path == self._DEFAULT_DB:
            self.db_path = self.data_dir / "careflow.db"
        return self

    @model_validator(mode="after")
    def normalize_limits(self) -> "MemoryConfig":
        self.working_memory_ttl = max(1.0, float(self.working_memory_ttl))
        self.summary_interval = max(1, int(self.summary_interval))
        self.summary_window = max(1, int(self.summary_window))
        self.context_window = max(3, min(5, int(self.context_window)))
        return self


class LoopConfig(BaseSettings):
    """Bounds for one reasoning loop and one whole turn."""

    max_iterations: int = Field(10, alias="CAREFLOW_MAX_ITERATIONS")
    tool_timeout: float = Field(30.0, alias="CAREFLOW_TOOL_TIMEOUT")
    tool_max_output_length: int = Field(25000, alias="CAREFLOW_TOOL_MAX_OUTPUT_LENGTH")
    turn_timeout_seconds: float = Field(180.0, alias="CAREFLOW_TURN_TIMEOUT_SECONDS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "LoopConfig":
        self.max_iterations = max(1, int(self.max_iterations))
        self.tool_timeout = max(1.0, float(self.tool_timeout))
        self.tool_max_output_length = max(100, int(self.tool_max_output_length))
        self.turn_timeout_seconds = max(1.0, float(self.turn_timeout_seconds))
        return self


class RiskConfig(BaseSettings):
    """Thresholds for the risk assessor and the confirmation gate."""

    high_risk_kinds: StrList = Field(
        default_factory=lambda: ["medication", "medication_statement"],
        alias="CAREFLOW_HIGH_RISK_KINDS",
    )
    recent_delete_days: float = Field(7.0, alias="CAREFLOW_RECENT_DELETE_DAYS")
    bulk_high_threshold: int = Field(10, alias="CAREFLOW_BULK_HIGH_THRESHOLD")
    confirm_at_level: RiskLevel = Field(RiskLevel.HIGH, alias="CAREFLOW_CONFIRM_AT_LEVEL")
    idempotency_ledger_size: int = Field(1024, alias="CAREFLOW_IDEMPOTENCY_LEDGER_SIZE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "RiskConfig":
        self.recent_delete_days = max(0.0, float(self.recent_delete_days))
        self.bulk_high_threshold = max(2, int(self.bulk_high_threshold))
        self.idempotency_ledger_size = max(1, int(self.idempotency_ledger_size))
        return self

    @property
    def recent_delete_seconds(self) -> float:
        return self.recent_delete_days * 86400.0


class CareflowConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its config from here. The inference section is
    loaded but its API key is only demanded when the real backend is built,
    so tests and offline CLI commands work without credentials.
    """

    def __init__(self):
        self.inference = InferenceConfig()
        self.memory = MemoryConfig()
        self.loop = LoopConfig()
        self.risk = RiskConfig()

        # Resolve all Path fields to absolute so CWD changes don't break them.
        self._resolve_paths()

        self.memory.data_dir.mkdir(parents=True, exist_ok=True)

    def _resolve_paths(self) -> None:
        """Resolve relative Path fields against the project root (where .env lives)."""
        def _resolve(p: Path) -> Path:
            if p.is_absolute():
                return p
            return (_PROJECT_ROOT / p).resolve()

        self.memory.data_dir = _resolve(self.memory.data_dir)
        self.memory.db_path = _resolve(self.memory.db_path)

    def __repr__(self) -> str:
        return (
            f"CareflowConfig(model={self.inference.model}, "
            f"max_iterations={self.loop.max_iterations}, "
            f"wm_ttl={self.memory.working_memory_ttl}s, "
            f"confirm_at={self.risk.confirm_at_level.value})"
        )
