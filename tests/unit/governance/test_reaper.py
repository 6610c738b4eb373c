"""Unit tests for the approval expiry reaper."""

from __future__ import annotations

import asyncio

import pytest

from steward.governance.reaper import ApprovalReaper


class _Gate:
    def __init__(self, fail_first: bool = False) -> None:
        self.calls = 0
        self._fail_first = fail_first

    async def expire_due(self) -> int:
        self.calls += 1
        if self._fail_first and self.calls == 1:
            raise RuntimeError("store unavailable")
        return 0


def test_reaper_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        ApprovalReaper(_Gate(), interval_seconds=0)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_reaper_sweeps_until_stopped() -> None:
    gate = _Gate()
    reaper = ApprovalReaper(gate, interval_seconds=0.01)  # type: ignore[arg-type]
    await reaper.start()
    assert reaper.running is True
    await asyncio.sleep(0.05)
    await reaper.stop()

    assert reaper.running is False
    assert gate.calls >= 2


@pytest.mark.asyncio
async def test_reaper_survives_sweep_errors() -> None:
    gate = _Gate(fail_first=True)
    reaper = ApprovalReaper(gate, interval_seconds=0.01)  # type: ignore[arg-type]
    await reaper.start()
    await asyncio.sleep(0.05)
    await reaper.stop()
    assert gate.calls >= 2


@pytest.mark.asyncio
async def test_start_twice_keeps_one_task() -> None:
    reaper = ApprovalReaper(_Gate(), interval_seconds=10)  # type: ignore[arg-type]
    await reaper.start()
    first = reaper._task
    await reaper.start()
    assert reaper._task is first
    await reaper.stop()
