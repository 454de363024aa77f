"""Asynchronous media generation job engine."""

__version__ = "1.0.0"
