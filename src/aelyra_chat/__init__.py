"""Conversational chat service with AI replies, searchable history and sharing."""

__version__ = "0.1.0"
