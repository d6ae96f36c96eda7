"""Durable continuation engine for resumable task bodies."""

__version__ = "0.1.0"
