"""Offline-first business records with multi-device workspace sync."""

__version__ = "0.1.0"
