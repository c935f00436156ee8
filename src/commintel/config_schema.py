"""Pydantic configuration schema for the communication intelligence engine.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from commintel.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class DatabaseConfig(BaseModel):
    """SQLite database location."""

    path: str = Field(default="data/commintel.db", description="Path to the SQLite database file")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class ModelsConfig(BaseModel):
    """Claude model selection per task type."""

    extraction: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Model for deadline/commitment/action item extraction",
    )


class ExtractionConfig(BaseModel):
    """Extraction orchestrator settings."""

    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Timeout for one extraction capability call",
    )
    max_tokens: int = Field(
        default=2048,
        ge=256,
        le=16384,
        description="Max output tokens for the extraction call",
    )
    fingerprint_prefix_length: int = Field(
        default=64,
        ge=8,
        le=1024,
        description="Characters of normalized text included in item fingerprints",
    )
    context_messages: int = Field(
        default=5,
        ge=0,
        le=50,
        description="Earlier messages sent as context alongside the new ones",
    )
    body_max_length: int = Field(
        default=4000,
        ge=200,
        le=50000,
        description="Per-message body character cap in the prompt",
    )


class RankingConfig(BaseModel):
    """Confidence policy weights."""

    variant_weights: dict[Literal["deadline", "commitment", "action_item"], float] = Field(
        default_factory=lambda: {"deadline": 3.0, "commitment": 2.0, "action_item": 1.0},
        description="Score weight per item variant",
    )
    age_cap_days: float = Field(
        default=14.0,
        gt=0,
        description="Age beyond which an item's age stops raising its score",
    )
    age_weight: float = Field(
        default=1.0,
        ge=0,
        description="Maximum score contribution of item age",
    )
    confidence_factor: float = Field(
        default=1.0,
        gt=0,
        description="Multiplier on the confidence weight (High=3, Medium=2, Low=1)",
    )

    @field_validator("variant_weights")
    @classmethod
    def validate_variant_weights(cls, v: dict[str, float]) -> dict[str, float]:
        """Ensure every weight is positive."""
        for variant, weight in v.items():
            if weight <= 0:
                raise ValueError(f"Variant weight for '{variant}' must be positive, got {weight}")
        return v


class TaskBridgeConfig(BaseModel):
    """External task service settings."""

    base_url: str = Field(
        default="http://localhost:8080/api",
        description="Task service base URL (tasks are POSTed to {base_url}/tasks)",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Timeout for one task creation call",
    )
    token_env: str = Field(
        default="COMMINTEL_TASK_TOKEN",
        description="Environment variable holding the task service bearer token",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Task service URL must start with http:// or https://, got '{v}'")
        return v


class SchedulerConfig(BaseModel):
    """Scheduled reprocessing of pending threads."""

    interval_minutes: int = Field(
        default=15,
        ge=1,
        le=1440,
        description="Minutes between reprocess_pending cycles",
    )
    batch_size: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Max threads reprocessed per cycle",
    )


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days to retain LLM request logs",
    )
    log_prompts: bool = Field(
        default=True,
        description="Store full prompts (disable to save disk space)",
    )
    log_responses: bool = Field(
        default=True,
        description="Store full responses",
    )


class AppConfig(BaseModel):
    """Root configuration schema for the communication intelligence engine.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    task_bridge: TaskBridgeConfig = Field(default_factory=TaskBridgeConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)
