from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Optional

import bech32
from coincurve import PrivateKey, PublicKeyXOnly


_HEX64_RE = re.compile(r"^[0-9a-fA-F]{64}$")

HRP_NPUB = "npub"
HRP_NSEC = "nsec"


class KeyFormatError(ValueError):
    """Raised when a key string is not valid hex or bech32 of the expected kind."""


def is_hex_pubkey(value: object) -> bool:
    return isinstance(value, str) and bool(_HEX64_RE.match(value))


def _encode(hrp: str, raw: bytes) -> str:
    data = bech32.convertbits(raw, 8, 5, True)
    if data is None:
        raise KeyFormatError("failed to convert key bits")
    return bech32.bech32_encode(hrp, data)


def _decode(expected_hrp: str, value: str) -> bytes:
    hrp, data = bech32.bech32_decode(value.strip().lower())
    if hrp is None or data is None:
        raise KeyFormatError(f"invalid bech32 string for {expected_hrp}")
    if hrp != expected_hrp:
        raise KeyFormatError(f"expected {expected_hrp} but got {hrp}")
    raw = bech32.convertbits(data, 5, 8, False)
    if raw is None or len(raw) != 32:
        raise KeyFormatError(f"{expected_hrp} payload must be 32 bytes")
    return bytes(raw)


def npub_encode(pubkey_hex: str) -> str:
    if not is_hex_pubkey(pubkey_hex):
        raise KeyFormatError("public key must be 64 hex characters")
    return _encode(HRP_NPUB, bytes.fromhex(pubkey_hex))


def npub_decode(npub: str) -> str:
    return _decode(HRP_NPUB, npub).hex()


def nsec_encode(secret_hex: str) -> str:
    if not is_hex_pubkey(secret_hex):
        raise KeyFormatError("secret key must be 64 hex characters")
    return _encode(HRP_NSEC, bytes.fromhex(secret_hex))


def nsec_decode(nsec: str) -> str:
    return _decode(HRP_NSEC, nsec).hex()


def parse_secret_key(value: str) -> str:
    """Accept an `nsec1...` string or 64 hex characters; return lowercase hex."""
    if not isinstance(value, str) or not value.strip():
        raise KeyFormatError("secret key is required")
    s = value.strip()
    if s.lower().startswith(HRP_NSEC + "1"):
        secret = nsec_decode(s)
    elif _HEX64_RE.match(s):
        secret = s.lower()
    else:
        raise KeyFormatError("secret key must be nsec1... or 64 hex characters")
    # Reject zero / out-of-range scalars early
    try:
        PrivateKey(bytes.fromhex(secret))
    except ValueError as exc:
        raise KeyFormatError("secret key is not a valid secp256k1 scalar") from exc
    return secret


def parse_public_key(value: str) -> str:
    """Accept an `npub1...` string or 64 hex characters; return lowercase hex."""
    if not isinstance(value, str) or not value.strip():
        raise KeyFormatError("public key is required")
    s = value.strip()
    if s.lower().startswith(HRP_NPUB + "1"):
        return npub_decode(s)
    if _HEX64_RE.match(s):
        return s.lower()
    raise KeyFormatError("public key must be npub1... or 64 hex characters")


def public_key_from_secret(secret_hex: str) -> str:
    return PublicKeyXOnly.from_secret(bytes.fromhex(secret_hex)).format().hex()


@dataclass(frozen=True)
class KeyPair:
    secret_hex: str
    pubkey_hex: str

    @property
    def nsec(self) -> str:
        return nsec_encode(self.secret_hex)

    @property
    def npub(self) -> str:
        return npub_encode(self.pubkey_hex)

    def __repr__(self) -> str:  # keep secrets out of logs and tracebacks
        return f"KeyPair(pubkey_hex={self.pubkey_hex!r})"

    @classmethod
    def from_secret(cls, value: str) -> "KeyPair":
        secret = parse_secret_key(value)
        return cls(secret_hex=secret, pubkey_hex=public_key_from_secret(secret))


def generate_keypair(*, entropy: Optional[bytes] = None) -> KeyPair:
    """Create a fresh secp256k1 key pair (optionally from caller-supplied 32 bytes)."""
    while True:
        raw = entropy if entropy is not None else os.urandom(32)
        try:
            PrivateKey(raw)
        except ValueError:
            if entropy is not None:
                raise KeyFormatError("entropy is not a valid secp256k1 scalar")
            continue
        secret = raw.hex()
        return KeyPair(secret_hex=secret, pubkey_hex=public_key_from_secret(secret))


__all__ = [
    "KeyFormatError",
    "KeyPair",
    "generate_keypair",
    "is_hex_pubkey",
    "npub_decode",
    "npub_encode",
    "nsec_decode",
    "nsec_encode",
    "parse_public_key",
    "parse_secret_key",
    "public_key_from_secret",
]
