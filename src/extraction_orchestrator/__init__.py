"""Extraction Orchestrator: durable batch URL extraction campaigns."""

__version__ = "0.1.0"
