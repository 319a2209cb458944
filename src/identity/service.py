from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .signers import Identity, Signer, SignerUnavailable


logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional[Identity]], None]


class SignerService:
    """
    Holder of the single active (Identity, Signer) pair.

    Non-UI code (encryption service, API client) reaches the active signer
    through `signer`; only login/logout/restoration call `activate` or
    `deactivate`.
    """

    def __init__(self) -> None:
        self._identity: Optional[Identity] = None
        self._signer: Optional[Signer] = None
        self._listeners: List[AuthListener] = []

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def is_authenticated(self) -> bool:
        return self._identity is not None and self._signer is not None

    @property
    def signer(self) -> Signer:
        if self._signer is None:
            raise SignerUnavailable("Not authenticated")
        return self._signer

    def require_identity(self) -> Identity:
        if self._identity is None:
            raise SignerUnavailable("Not authenticated")
        return self._identity

    def activate(self, identity: Identity, signer: Signer) -> Optional[Signer]:
        """Install a new pair; returns the previously active signer (caller closes it)."""
        previous = self._signer if self._signer is not signer else None
        self._identity = identity
        self._signer = signer
        logger.info("Activated %s signer for %s", signer.kind.value, identity.pubkey[:12])
        self._notify(identity)
        return previous

    def deactivate(self) -> Optional[Signer]:
        previous = self._signer
        was_active = self._identity is not None
        self._identity = None
        self._signer = None
        if was_active:
            self._notify(None)
        return previous

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, identity: Optional[Identity]) -> None:
        for listener in list(self._listeners):
            try:
                listener(identity)
            except Exception:
                logger.exception("Auth listener failed")


_service: Optional[SignerService] = None


def get_signer_service() -> SignerService:
    """Process-wide accessor; creates the instance on first use."""
    global _service
    if _service is None:
        _service = SignerService()
    return _service


def set_signer_service(service: Optional[SignerService]) -> None:
    """Install (or with None, reset) the process-wide instance."""
    global _service
    _service = service


__all__ = [
    "SignerService",
    "get_signer_service",
    "set_signer_service",
]
