"""Timerboard - Discord guild mirror and fleet notification service."""

__version__ = "0.1.0"
