"""Utility helpers shared by the sync engine and the reference backend."""
__all__: list[str] = []
