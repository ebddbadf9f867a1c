"""Orchestrator configuration."""

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_KNOWN_TOPICS = [
    "tz-feb",
    "tz-jul",
    "tz-nov",
    "ke-aug",
    "bw-jun",
    "tz-vs-ke",
    "short-safari",
    "kids-safari",
    "budget-tz",
    "green-season",
]


class GuardrailConfig(BaseModel):
    """Thresholds for the guardrail tracker."""

    generation_consecutive_failures: int = 3
    assurance_consecutive_failures: int = 3
    schema_violation_threshold: int = 1
    refusal_spike_rate: float = 0.6
    refusal_spike_min_samples: int = 5
    review_queue_capacity: int = 30
    topic_window_size: int = 50
    max_tracked_topics: int = 500


class ReviewTriggerConfig(BaseModel):
    """Thresholds for automatic review creation."""

    repeated_visit_count: int = 3
    refusal_rate_threshold: float = 0.3
    refusal_rate_min_samples: int = 10
    confidence_drift_threshold: float = 0.15
    outcome_change_window_hours: int = 24


class OrchestratorConfig(BaseSettings):
    """
    Configuration for the decision orchestrator and its stores.

    Loaded from keyword arguments, then environment variables or a .env
    file, then the defaults below. Env names match the field names except
    BEDROCK_MODEL_ID and ORCHESTRATOR_DB_PATH.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        protected_namespaces=(),
    )

    logic_version: str = "rules_v1.0"
    prompt_version: str = "prompt_v1.0"
    model_id: str = Field(
        default="anthropic.claude-3-haiku-20240307-v1:0",
        validation_alias=AliasChoices("model_id", "BEDROCK_MODEL_ID"),
    )
    bedrock_region: str = "us-west-2"
    db_path: str = Field(default=":memory:", validation_alias=AliasChoices("db_path", "ORCHESTRATOR_DB_PATH"))

    generation_timeout_seconds: float = Field(default=30.0, gt=0)
    max_generation_attempts: int = Field(default=3, ge=1)
    snapshot_ttl_hours: int = 24
    snapshot_stale_grace_hours: int = 24
    lock_ttl_seconds: int = 30
    circuit_open_retry_after_seconds: int = 300
    assurance_paused_retry_after_seconds: int = 600

    topic_breakdown_max_items: int = 5000
    topic_breakdown_window_days: int = 7
    known_topic_ids: List[str] = Field(default_factory=lambda: list(DEFAULT_KNOWN_TOPICS))

    assurance_price_cents: int = 2900
    assurance_currency: str = "USD"
    assurance_min_confidence: float = 0.5

    ops_api_key: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "json"

    guardrails: GuardrailConfig = Field(default_factory=GuardrailConfig)
    review_triggers: ReviewTriggerConfig = Field(default_factory=ReviewTriggerConfig)

