"""Lesson generation and resource governance service."""

__version__ = "0.1.0"
