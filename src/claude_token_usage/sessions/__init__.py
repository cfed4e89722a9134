"""Observed session derivation, metrics, and history."""
