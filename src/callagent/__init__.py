"""
Call agent package.

Keep imports lightweight so leaf modules (memory, boundary, annotations) can be
used without pulling in the provider clients at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.callagent.config import Config
    from src.callagent.orchestrator import SessionOrchestrator

__all__ = ["Config", "get_config", "SessionOrchestrator"]


def __getattr__(name: str) -> Any:
    if name in ("Config", "get_config"):
        from src.callagent import config

        return getattr(config, name)
    if name == "SessionOrchestrator":
        from src.callagent.orchestrator import SessionOrchestrator

        return SessionOrchestrator
    raise AttributeError(name)
