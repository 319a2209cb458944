"""
Nostr event model, id computation and BIP-340 signatures (NIP-01).

An event id is the sha256 of the compact JSON array
`[0, pubkey, created_at, kind, tags, content]`; the signature is a Schnorr
signature over the 32-byte id by the x-only key in `pubkey`.
"""

from __future__ import annotations

import hashlib
import json
import time
from typing import List, Optional

from coincurve import PrivateKey, PublicKeyXOnly
from pydantic import BaseModel, Field


# Kinds used by this client
KIND_HTTP_AUTH = 27235  # NIP-98
KIND_NOSTR_CONNECT = 24133  # NIP-46


class UnsignedEvent(BaseModel):
    """Event draft handed to a signer; the signer fills pubkey, id and sig."""

    kind: int
    content: str = ""
    tags: List[List[str]] = Field(default_factory=list)
    created_at: Optional[int] = None


class NostrEvent(BaseModel):
    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: List[List[str]] = Field(default_factory=list)
    content: str = ""
    sig: str

    def tag_values(self, name: str) -> List[str]:
        return [t[1] for t in self.tags if len(t) >= 2 and t[0] == name]


def _now() -> int:
    return int(time.time())


def serialize_for_id(pubkey: str, created_at: int, kind: int, tags: List[List[str]], content: str) -> bytes:
    return json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def compute_event_id(pubkey: str, created_at: int, kind: int, tags: List[List[str]], content: str) -> str:
    return hashlib.sha256(serialize_for_id(pubkey, created_at, kind, tags, content)).hexdigest()


def finalize_event(draft: UnsignedEvent, secret_hex: str) -> NostrEvent:
    """Sign `draft` with the given secret key."""
    sk = PrivateKey(bytes.fromhex(secret_hex))
    pubkey = PublicKeyXOnly.from_secret(sk.secret).format().hex()
    created_at = draft.created_at if draft.created_at is not None else _now()
    tags = [list(t) for t in draft.tags]
    event_id = compute_event_id(pubkey, created_at, draft.kind, tags, draft.content)
    sig = sk.sign_schnorr(bytes.fromhex(event_id))
    return NostrEvent(
        id=event_id,
        pubkey=pubkey,
        created_at=created_at,
        kind=draft.kind,
        tags=tags,
        content=draft.content,
        sig=sig.hex(),
    )


def verify_event(event: NostrEvent) -> bool:
    """Check both the id hash and the Schnorr signature. Never raises."""
    try:
        expected = compute_event_id(event.pubkey, event.created_at, event.kind, event.tags, event.content)
        if expected != event.id:
            return False
        pub = PublicKeyXOnly(bytes.fromhex(event.pubkey))
        return bool(pub.verify(bytes.fromhex(event.sig), bytes.fromhex(event.id)))
    except (ValueError, TypeError):
        return False


__all__ = [
    "KIND_HTTP_AUTH",
    "KIND_NOSTR_CONNECT",
    "NostrEvent",
    "UnsignedEvent",
    "compute_event_id",
    "finalize_event",
    "verify_event",
]
