"""Provider adapter interface, registry and task runner.

Providers perform the physical work (a headless browser, a scraping
backend). The engine only needs the actual cost they report, or the reason
they failed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from steward.governance.errors import InvalidRequest, NotApproved
from steward.governance.models import Session, Task, TaskStatus

if TYPE_CHECKING:
    from steward.engine import GovernanceEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    """What a provider reports back after running one task."""

    actual_cost: Decimal = Decimal("0")
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class ProviderAdapter(ABC):
    """Interface every automation provider integration implements."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name sessions refer to."""

    @abstractmethod
    async def execute(self, session: Session, task: Task) -> ExecutionResult:
        """Run ``task`` and report its actual cost."""


class ProviderRegistry:
    """Name-based adapter registry."""

    def __init__(self) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            supported = ", ".join(sorted(self._adapters.keys())) or "<none>"
            raise InvalidRequest(f"Unknown provider '{name}'. Available providers: {supported}")
        return adapter

    def list_names(self) -> list[str]:
        return sorted(self._adapters.keys())


class TaskRunner:
    """Drives one approved task through its provider."""

    def __init__(self, engine: GovernanceEngine, registry: ProviderRegistry) -> None:
        self._engine = engine
        self._registry = registry

    async def run(self, task_id: str, owner: str) -> Task:
        task = await self._engine.get_task(owner, task_id)
        if task.status != TaskStatus.APPROVED:
            raise NotApproved(task_id, task.status.value)
        session = await self._engine.get_session(owner, task.session_id)
        adapter = self._registry.get(session.provider)

        task = await self._engine.start_task(owner, task_id)
        try:
            result = await adapter.execute(session, task)
        except Exception as e:
            logger.exception("provider %s raised on task %s", adapter.name, task_id)
            return await self._engine.fail_task(owner, task_id, f"{type(e).__name__}: {e}")
        if not result.succeeded:
            return await self._engine.fail_task(owner, task_id, result.error or "provider error")
        return await self._engine.complete_task(owner, task_id, result.actual_cost)
