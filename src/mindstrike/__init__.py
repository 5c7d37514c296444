"""MindStrike desktop knowledge assistant: local model services."""

__version__ = "0.3.0"
