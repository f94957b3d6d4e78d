"""Charging session orchestration and device-state reconciliation."""

__version__ = "0.3.0"
