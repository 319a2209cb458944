"""HTTP authentication headers signed by the active identity (NIP-98)."""

from __future__ import annotations

import base64
import json

from .events import KIND_HTTP_AUTH, UnsignedEvent
from .signers import Signer


AUTH_SCHEME = "Nostr"


async def build_auth_header(signer: Signer, url: str, method: str) -> str:
    draft = UnsignedEvent(
        kind=KIND_HTTP_AUTH,
        content="application/json",
        tags=[["u", url], ["method", method.upper()]],
    )
    event = await signer.sign_event(draft)
    token = base64.b64encode(json.dumps(event.model_dump(), separators=(",", ":")).encode("utf-8"))
    return f"{AUTH_SCHEME} {token.decode('ascii')}"


__all__ = ["AUTH_SCHEME", "build_auth_header"]
