"""Conversation sync and read-state reconciliation for the dorm marketplace chat."""

__version__ = "0.1.0"
