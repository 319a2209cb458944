"""
Common utilities for the otrta client core.

Modules:
- config: environment-driven client configuration
- backend: async client for the backend search endpoints
"""

__all__ = [
    "backend",
    "config",
]
