"""Relay Apps Script execution metrics to user-registered webhooks."""

__version__ = "0.1.0"
