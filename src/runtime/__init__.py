"""Startup wiring for the client core."""

__all__ = ["handler"]
