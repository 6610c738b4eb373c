"""Unified configuration system for Steward."""

from steward.config.listeners import register_engine_reload_listener
from steward.config.loader import ConfigLoadError, YAMLConfigLoader
from steward.config.manager import ConfigManager, ReloadResult
from steward.config.models import (
    APIConfig,
    ApprovalConfig,
    AuditConfig,
    BudgetConfig,
    ClassifierConfig,
    DatabaseConfig,
    LoggingConfig,
    RetryConfig,
    RuleSeedConfig,
    StewardConfig,
)

__all__ = [
    "APIConfig",
    "ApprovalConfig",
    "AuditConfig",
    "BudgetConfig",
    "ClassifierConfig",
    "ConfigLoadError",
    "ConfigManager",
    "DatabaseConfig",
    "LoggingConfig",
    "ReloadResult",
    "RetryConfig",
    "RuleSeedConfig",
    "StewardConfig",
    "YAMLConfigLoader",
    "register_engine_reload_listener",
]
