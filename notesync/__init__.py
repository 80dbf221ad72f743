"""Notesync: local-first sync engine for notes, folders and settings."""

__version__ = "0.1.0"
