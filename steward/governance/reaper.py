"""Background expiry of overdue approval requests."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from steward.governance.approval_queue import ApprovalGate

logger = logging.getLogger(__name__)


class ApprovalReaper:
    """Calls :meth:`ApprovalGate.expire_due` on a fixed interval."""

    def __init__(self, gate: ApprovalGate, *, interval_seconds: float = 30.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._gate = gate
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background reaper task."""
        if self.running:
            logger.warning("Approval reaper already running")
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background reaper task."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def sweep(self) -> int:
        return await self._gate.expire_due()

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Approval reaper error: %s", e)
            await asyncio.sleep(self.interval_seconds)
