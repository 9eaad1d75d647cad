"""Configuration package for the Extraction Orchestrator.

Re-exports the settings symbols so that callers can write::

    from extraction_orchestrator.config import get_settings
"""

from __future__ import annotations

from extraction_orchestrator.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
