"""Passive token usage monitor for Claude Code JSONL logs."""

__version__ = "0.3.0"
