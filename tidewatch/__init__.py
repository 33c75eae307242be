"""Tidewatch: tsunami alert escalation and delivery reconciliation."""

__version__ = "0.1.0"
