"""
Search task tracking.

Modules:
- models: task, status and search payload models
- registry: observable in-memory task registry
- encryption: self-encryption of search data under the active identity
- manager: submit, poll, cancel, restore and persist search tasks
"""

__all__ = ["encryption", "manager", "models", "registry"]
