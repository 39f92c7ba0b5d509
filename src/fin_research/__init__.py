"""Budgeted, resumable financial research loop."""

__version__ = "0.3.0"
