"""Pincer: sandboxed agent execution with per-group trust boundaries."""

__version__ = "0.1.0"
