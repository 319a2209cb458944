"""
Session persistence and restoration.

Modules:
- models: persisted session record
- storage: local file and S3 backends (Fernet-sealed at rest when keyed)
- store: login, logout and one-shot restore of the active signer
"""

__all__ = ["models", "storage", "store"]
