"""Steward: automation governance engine."""

from steward.engine import CostSnapshot, GovernanceEngine
from steward.providers import ExecutionResult, ProviderAdapter, ProviderRegistry, TaskRunner

__all__ = [
    "CostSnapshot",
    "ExecutionResult",
    "GovernanceEngine",
    "ProviderAdapter",
    "ProviderRegistry",
    "TaskRunner",
]
