"""Resumable work sessions for an iterative multi-agent execution pipeline."""

__version__ = "0.1.0"
