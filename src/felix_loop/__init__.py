"""Autonomous PRD task loop."""

__version__ = "0.4.0"
