"""Fanverse Studio: credit-metered generation service."""

__version__ = "0.1.0"
