from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple
from urllib.parse import parse_qs, quote, urlsplit

from .keys import KeyFormatError, KeyPair, is_hex_pubkey
from .relay import RelayError, RelayTransport, WebSocketRelayPool
from .remote import RemoteSignerSession
from .signers import Identity, SignerError


logger = logging.getLogger(__name__)

BUNKER_SCHEME = "bunker"

TransportFactory = Callable[[List[str]], RelayTransport]


class HandshakeFailed(RuntimeError):
    """The remote-signer handshake could not be completed."""


class InvalidBunkerURI(HandshakeFailed, ValueError):
    """The connection URI does not match `bunker://<hex>?relay=...`."""


@dataclass(frozen=True)
class BunkerPointer:
    remote_pubkey: str
    relays: List[str] = field(default_factory=list)
    secret: Optional[str] = None

    def to_uri(self) -> str:
        query = "&".join(f"relay={quote(r, safe=':/')}" for r in self.relays)
        if self.secret:
            query += f"&secret={quote(self.secret, safe='')}"
        return f"{BUNKER_SCHEME}://{self.remote_pubkey}?{query}"

    def __repr__(self) -> str:
        return f"BunkerPointer(remote_pubkey={self.remote_pubkey!r}, relays={self.relays!r})"


def _is_relay_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("ws", "wss") and bool(parts.netloc)


def parse_bunker_uri(uri: str) -> BunkerPointer:
    """
    Parse `bunker://<64-hex-remote-pubkey>?relay=<url>[&relay=<url>...][&secret=<opaque>]`.

    Pure function: rejects anything malformed before a caller opens sockets.
    """
    if not isinstance(uri, str) or not uri.strip():
        raise InvalidBunkerURI("Connection URI is required")
    try:
        parts = urlsplit(uri.strip())
    except ValueError as exc:
        raise InvalidBunkerURI("Connection URI is not a valid URL") from exc
    if parts.scheme.lower() != BUNKER_SCHEME:
        raise InvalidBunkerURI(f"Connection URI must start with {BUNKER_SCHEME}://")

    remote = parts.netloc or parts.path.strip("/")
    if not is_hex_pubkey(remote):
        raise InvalidBunkerURI("Remote signer public key must be 64 hex characters")

    params = parse_qs(parts.query, keep_blank_values=False)
    relays: List[str] = []
    for relay in params.get("relay", []):
        relay = relay.strip()
        if not _is_relay_url(relay):
            raise InvalidBunkerURI(f"Invalid relay URL: {relay!r}")
        if relay not in relays:
            relays.append(relay)
    if not relays:
        raise InvalidBunkerURI("Connection URI must include at least one relay")

    secrets = params.get("secret") or [None]
    return BunkerPointer(remote_pubkey=remote.lower(), relays=relays, secret=secrets[0])


def _default_transport(relays: List[str]) -> RelayTransport:
    return WebSocketRelayPool(relays)


async def connect_bunker(
    uri: str,
    *,
    transport_factory: Optional[TransportFactory] = None,
    client_secret: Optional[str] = None,
    request_timeout: Optional[float] = None,
) -> Tuple[RemoteSignerSession, Identity]:
    """
    Run the handshake: parse, open the session on the URI's relays, await the
    `connect` acknowledgement, then confirm the user's identity with
    `get_public_key`. Returns a READY session and the user identity.

    Any failure closes the half-open session and raises `HandshakeFailed`.
    """
    pointer = parse_bunker_uri(uri)
    try:
        client_keys = KeyPair.from_secret(client_secret) if client_secret else None
    except KeyFormatError as exc:
        raise HandshakeFailed("Stored client key is invalid") from exc

    factory = transport_factory or _default_transport
    session = RemoteSignerSession(
        pointer.remote_pubkey,
        pointer.relays,
        factory(pointer.relays),
        secret=pointer.secret,
        client_keys=client_keys,
        request_timeout=request_timeout,
    )
    try:
        await session.open()
        await session.connect()
        pubkey = await session.get_public_key()
    except (RelayError, SignerError, OSError) as exc:
        await session.close()
        logger.warning("Bunker handshake with %s failed: %s", pointer.remote_pubkey[:12], exc)
        raise HandshakeFailed(f"Remote signer handshake failed: {exc}") from exc
    except BaseException:
        await session.close()
        raise
    logger.info("Bunker handshake complete for user %s", pubkey[:12])
    return session, Identity(pubkey=pubkey)


__all__ = [
    "BUNKER_SCHEME",
    "BunkerPointer",
    "HandshakeFailed",
    "InvalidBunkerURI",
    "connect_bunker",
    "parse_bunker_uri",
]
