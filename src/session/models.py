from __future__ import annotations

import enum
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from identity.signers import Identity, SignerKind


class AuthMethod(str, enum.Enum):
    EXTENSION = "extension"
    PRIVATE_KEY = "private_key"
    BUNKER = "bunker"

    @property
    def signer_kind(self) -> SignerKind:
        return SignerKind(self.value)


class BunkerRecord(BaseModel):
    """
    Persisted remote-signer connection.

    Fields
    - uri: the `bunker://` URI the user pasted (includes the optional secret).
    - user_pubkey / remote_pubkey: 64-hex keys of the user and the remote signer.
    - relays: relay URLs parsed from the URI.
    - connected_at: when the handshake completed.
    - client_secret: ephemeral client key the remote signer authorised; reused
      on restore so the signer recognises the reconnecting client.
    """

    uri: str
    user_pubkey: str
    remote_pubkey: str
    relays: List[str] = Field(default_factory=list)
    connected_at: datetime
    client_secret: Optional[str] = None


class SessionRecord(BaseModel):
    """
    What survives a restart: the auth method, the user identity and whatever
    the method needs to rebuild its signer (`nsec` for a local key, `bunker`
    for a remote signer; nothing for the extension).
    """

    auth_method: AuthMethod
    user: Identity
    nsec: Optional[str] = None
    bunker: Optional[BunkerRecord] = None

    @property
    def holds_key_material(self) -> bool:
        return bool(self.nsec) or bool(self.bunker and self.bunker.client_secret)



class ExtensionPermissions(BaseModel):
    """Outcome of asking a signer extension for the permissions login relies on."""

    has_get_public_key: bool = False
    has_sign_event: bool = False
    error: Optional[str] = None


__all__ = ["AuthMethod", "BunkerRecord", "ExtensionPermissions", "SessionRecord"]
