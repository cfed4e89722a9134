"""Ingestion pipeline for Claude Code usage logs."""

from .service import FileUsageSource, SimulatedUsageSource, UsageSource

__all__ = ["FileUsageSource", "SimulatedUsageSource", "UsageSource"]
