"""Tool-calling pipeline for a streaming coding assistant."""

__version__ = "0.1.0"
