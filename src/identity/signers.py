from __future__ import annotations

import abc
import enum
import inspect
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError, field_validator

from .ciphers import nip04_decrypt, nip04_encrypt, nip44_decrypt, nip44_encrypt
from .events import NostrEvent, UnsignedEvent, finalize_event, verify_event
from .keys import KeyPair, is_hex_pubkey, npub_encode


class SignerError(RuntimeError):
    """Base error for signer backends."""


class SignerUnavailable(SignerError):
    """No provider is present, or the backing provider/session is disconnected."""


class IdentityMismatch(SignerError):
    """A signer reports a different public key than the one on record."""


class SignerKind(str, enum.Enum):
    EXTENSION = "extension"
    LOCAL_KEY = "private_key"
    REMOTE = "bunker"


class Identity(BaseModel):
    pubkey: str
    profile: Optional[Dict[str, Any]] = None

    @field_validator("pubkey")
    @classmethod
    def _check_pubkey(cls, v: str) -> str:
        if not is_hex_pubkey(v):
            raise ValueError("pubkey must be 64 hex characters")
        return v.lower()

    @property
    def npub(self) -> str:
        return npub_encode(self.pubkey)


async def _maybe_await(x: Any) -> Any:
    return await x if inspect.isawaitable(x) else x


class Signer(abc.ABC):
    """
    Uniform signing capability over one identity.

    All operations are coroutines because a backend may need user approval
    (browser-style provider) or a network round trip (remote signer).
    `encrypt`/`decrypt` use NIP-44; `nip04_*` are the legacy scheme.
    """

    kind: SignerKind

    @abc.abstractmethod
    async def get_public_key(self) -> Identity:
        ...

    @abc.abstractmethod
    async def sign_event(self, draft: UnsignedEvent) -> NostrEvent:
        ...

    @abc.abstractmethod
    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        ...

    @abc.abstractmethod
    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        ...

    @abc.abstractmethod
    async def nip04_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        ...

    @abc.abstractmethod
    async def nip04_decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        ...

    async def close(self) -> None:
        return


class LocalKeySigner(Signer):
    """Signer holding the secret key in process memory."""

    kind = SignerKind.LOCAL_KEY

    def __init__(self, secret: str) -> None:
        self._keys = KeyPair.from_secret(secret)

    @property
    def pubkey(self) -> str:
        return self._keys.pubkey_hex

    @property
    def nsec(self) -> str:
        return self._keys.nsec

    async def get_public_key(self) -> Identity:
        return Identity(pubkey=self._keys.pubkey_hex)

    async def sign_event(self, draft: UnsignedEvent) -> NostrEvent:
        return finalize_event(draft, self._keys.secret_hex)

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return nip44_encrypt(self._keys.secret_hex, peer_pubkey, plaintext)

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return nip44_decrypt(self._keys.secret_hex, peer_pubkey, ciphertext)

    async def nip04_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return nip04_encrypt(self._keys.secret_hex, peer_pubkey, plaintext)

    async def nip04_decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return nip04_decrypt(self._keys.secret_hex, peer_pubkey, ciphertext)

    def __repr__(self) -> str:
        return f"LocalKeySigner(pubkey={self._keys.pubkey_hex!r})"


class ExtensionSigner(Signer):
    """
    Signer delegating to an injected provider object (the `window.nostr`
    shape): `get_public_key()`, `sign_event(dict)`, and optional `nip44` /
    `nip04` attributes exposing `encrypt(pubkey, text)` / `decrypt(pubkey, text)`.
    Provider methods may be plain functions or coroutines.
    """

    kind = SignerKind.EXTENSION

    def __init__(self, provider: Any) -> None:
        self._provider = provider

    @property
    def provider(self) -> Any:
        return self._provider

    def _method(self, name: str, owner: Any = None) -> Any:
        target = self._provider if owner is None else owner
        if target is None:
            raise SignerUnavailable("No signer extension found")
        fn = getattr(target, name, None)
        if not callable(fn):
            raise SignerUnavailable(f"Extension does not support {name}")
        return fn

    def _cipher(self, scheme: str, name: str) -> Any:
        if self._provider is None:
            raise SignerUnavailable("No signer extension found")
        sub = getattr(self._provider, scheme, None)
        if sub is None:
            raise SignerUnavailable(f"Extension does not support {scheme.upper()}")
        return self._method(name, sub)

    async def _call(self, fn: Any, *args: Any) -> Any:
        try:
            return await _maybe_await(fn(*args))
        except SignerError:
            raise
        except Exception as exc:
            raise SignerError(f"Extension call failed: {exc}") from exc

    async def get_public_key(self) -> Identity:
        raw = await self._call(self._method("get_public_key"))
        try:
            return Identity(pubkey=raw)
        except ValidationError as exc:
            raise SignerError("Extension returned an invalid public key") from exc

    async def sign_event(self, draft: UnsignedEvent) -> NostrEvent:
        identity = await self.get_public_key()
        payload = draft.model_dump()
        if payload.get("created_at") is None:
            payload["created_at"] = int(time.time())
        payload["pubkey"] = identity.pubkey
        raw = await self._call(self._method("sign_event"), payload)
        try:
            event = NostrEvent.model_validate(raw)
        except ValidationError as exc:
            raise SignerError("Extension returned a malformed event") from exc
        if not verify_event(event):
            raise SignerError("Extension returned an event that fails verification")
        return event

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self._call(self._cipher("nip44", "encrypt"), peer_pubkey, plaintext)

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return await self._call(self._cipher("nip44", "decrypt"), peer_pubkey, ciphertext)

    async def nip04_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self._call(self._cipher("nip04", "encrypt"), peer_pubkey, plaintext)

    async def nip04_decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return await self._call(self._cipher("nip04", "decrypt"), peer_pubkey, ciphertext)


__all__ = [
    "ExtensionSigner",
    "Identity",
    "IdentityMismatch",
    "LocalKeySigner",
    "Signer",
    "SignerError",
    "SignerKind",
    "SignerUnavailable",
]
