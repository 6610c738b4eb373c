"""Configuration change listener helpers for the governance engine."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from steward.config.manager import ConfigManager

if TYPE_CHECKING:
    from steward.engine import GovernanceEngine

logger = logging.getLogger(__name__)


def register_engine_reload_listener(engine: GovernanceEngine, manager: ConfigManager | None = None) -> None:
    """Push hot-reloaded ceilings, approval deadlines, seed rules and roles into a running engine."""
    cfg_manager = manager or ConfigManager.instance()

    def _on_change(_old_cfg, new_cfg) -> None:  # type: ignore[no-untyped-def]
        engine.apply_config(new_cfg)
        logger.info("governance engine settings reloaded")

    cfg_manager.on_change(_on_change)
