"""Configuration models for Steward."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, NonNegativeInt
from pydantic_settings import BaseSettings, SettingsConfigDict


class BudgetConfig(BaseModel):
    """Per-owner daily spending ceilings."""

    default_daily_ceiling: float = Field(default=100.0, ge=0.0)
    owner_ceilings: dict[str, float] = Field(default_factory=dict)


class ApprovalConfig(BaseModel):
    """Approval gate deadlines and reaper schedule."""

    timeout_seconds: int = Field(default=3600, ge=1)
    escalation_timeout_seconds: int = Field(default=900, ge=1)
    max_escalation_tier: int = Field(default=2, ge=0, le=10)
    reaper_interval_seconds: float = Field(default=30.0, gt=0.0)


class ClassifierConfig(BaseModel):
    """Classifier inputs derived from recent history."""

    denial_window: int = Field(default=20, ge=1, le=1000)


class RetryConfig(BaseModel):
    """Bounded backoff for transient persistence conflicts."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=0.05, ge=0.0)


class AuditConfig(BaseModel):
    """Audit log configuration."""

    system_owner: str = Field(default="system", min_length=1)


class APIConfig(BaseModel):
    """HTTP API configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)
    tokens: dict[str, str] = Field(default_factory=dict, description="Bearer token -> owner identity.")
    reviewers: list[str] = Field(default_factory=list)
    reviewer_tiers: dict[str, NonNegativeInt] = Field(
        default_factory=dict,
        description="Reviewer -> highest escalation tier they may decide; unlisted reviewers are tier 0.",
    )
    admins: list[str] = Field(default_factory=list)
    cors_origins: list[str] = Field(default_factory=list)
    max_body_bytes: int = Field(default=1024 * 1024, ge=1)


class DatabaseConfig(BaseModel):
    """Database configuration; empty URL selects the in-memory stores."""

    url: str = Field(default="")
    echo: bool = Field(default=False)
    pool_size: int = Field(default=20, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    sqlite_timeout_seconds: float = Field(default=15.0, gt=0.0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO")


class RuleSeedConfig(BaseModel):
    """One adaptive rule declared in configuration."""

    id: str | None = None
    action: str = Field(default="require_approval")
    threshold: float | None = Field(default=None, ge=0.0)
    condition: dict[str, Any] = Field(default_factory=dict)


class StewardConfig(BaseSettings):
    """Root configuration model for Steward."""

    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    rules: list[RuleSeedConfig] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="STEWARD_",
        env_nested_delimiter="__",
        extra="ignore",
    )
