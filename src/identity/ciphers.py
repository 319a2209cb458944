"""
Payload ciphers between two Nostr keys.

- NIP-44 v2: secp256k1 ECDH -> HKDF -> ChaCha20 + HMAC-SHA256, length-hiding
  padding. Authenticated: a wrong key or a modified payload fails with
  `CipherError` before any plaintext is produced.
- NIP-04: ECDH x-coordinate as AES-256-CBC key, `base64(ct)?iv=base64(iv)`.
  Not authenticated; kept for legacy providers and remote signers.
"""

from __future__ import annotations

import base64
import binascii
import os
import struct
from typing import Optional, Tuple

from coincurve import PublicKey
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand


NIP44_VERSION = 2
_NIP44_SALT = b"nip44-v2"
_MIN_PLAINTEXT = 1
_MAX_PLAINTEXT = 65535


class CipherError(ValueError):
    """Malformed, unsupported or unauthenticated ciphertext (or bad key input)."""


def _shared_x(secret_hex: str, pubkey_hex: str) -> bytes:
    try:
        point = PublicKey(b"\x02" + bytes.fromhex(pubkey_hex))
        return point.multiply(bytes.fromhex(secret_hex)).format(compressed=True)[1:]
    except ValueError as exc:
        raise CipherError("invalid key for shared secret") from exc


# --------------- NIP-44 v2 ---------------
def get_conversation_key(secret_hex: str, pubkey_hex: str) -> bytes:
    h = hmac.HMAC(_NIP44_SALT, hashes.SHA256())
    h.update(_shared_x(secret_hex, pubkey_hex))
    return h.finalize()


def _message_keys(conversation_key: bytes, nonce: bytes) -> Tuple[bytes, bytes, bytes]:
    okm = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conversation_key)
    return okm[0:32], okm[32:44], okm[44:76]


def _calc_padded_len(unpadded_len: int) -> int:
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (unpadded_len - 1).bit_length()
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def _pad(plaintext: bytes) -> bytes:
    n = len(plaintext)
    if n < _MIN_PLAINTEXT or n > _MAX_PLAINTEXT:
        raise CipherError("plaintext length must be between 1 and 65535 bytes")
    return struct.pack(">H", n) + plaintext + b"\x00" * (_calc_padded_len(n) - n)


def _unpad(padded: bytes) -> bytes:
    if len(padded) < 2:
        raise CipherError("invalid padding")
    (n,) = struct.unpack(">H", padded[:2])
    unpadded = padded[2 : 2 + n]
    if n == 0 or len(unpadded) != n or len(padded) != 2 + _calc_padded_len(n):
        raise CipherError("invalid padding")
    return unpadded


def _chacha20(key: bytes, nonce12: bytes, data: bytes) -> bytes:
    # cryptography expects a 16-byte nonce: 4-byte LE counter (0) + 12-byte nonce
    c = Cipher(algorithms.ChaCha20(key, b"\x00\x00\x00\x00" + nonce12), mode=None)
    enc = c.encryptor()
    return enc.update(data) + enc.finalize()


def _hmac_aad(key: bytes, nonce: bytes, ciphertext: bytes) -> hmac.HMAC:
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(nonce + ciphertext)
    return h


def nip44_encrypt_with_key(conversation_key: bytes, plaintext: str, *, nonce: Optional[bytes] = None) -> str:
    nonce = nonce if nonce is not None else os.urandom(32)
    if len(nonce) != 32:
        raise CipherError("nonce must be 32 bytes")
    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, _pad(plaintext.encode("utf-8")))
    mac = _hmac_aad(hmac_key, nonce, ciphertext).finalize()
    return base64.b64encode(bytes([NIP44_VERSION]) + nonce + ciphertext + mac).decode("ascii")


def nip44_decrypt_with_key(conversation_key: bytes, payload: str) -> str:
    if not isinstance(payload, str) or not payload:
        raise CipherError("empty payload")
    if payload[0] == "#":
        raise CipherError("unsupported encryption version")
    if len(payload) < 132 or len(payload) > 87472:
        raise CipherError("invalid payload length")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CipherError("invalid base64 payload") from exc
    if len(data) < 99 or len(data) > 65603:
        raise CipherError("invalid data length")
    if data[0] != NIP44_VERSION:
        raise CipherError(f"unknown encryption version {data[0]}")
    nonce, ciphertext, mac = data[1:33], data[33:-32], data[-32:]
    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
    try:
        _hmac_aad(hmac_key, nonce, ciphertext).verify(mac)
    except InvalidSignature as exc:
        raise CipherError("invalid MAC") from exc
    plaintext = _unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CipherError("plaintext is not valid UTF-8") from exc


def nip44_encrypt(secret_hex: str, peer_pubkey_hex: str, plaintext: str, *, nonce: Optional[bytes] = None) -> str:
    return nip44_encrypt_with_key(get_conversation_key(secret_hex, peer_pubkey_hex), plaintext, nonce=nonce)


def nip44_decrypt(secret_hex: str, peer_pubkey_hex: str, payload: str) -> str:
    return nip44_decrypt_with_key(get_conversation_key(secret_hex, peer_pubkey_hex), payload)


# --------------- NIP-04 (legacy) ---------------
def is_nip04_payload(payload: str) -> bool:
    return isinstance(payload, str) and "?iv=" in payload


def nip04_encrypt(secret_hex: str, peer_pubkey_hex: str, plaintext: str, *, iv: Optional[bytes] = None) -> str:
    key = _shared_x(secret_hex, peer_pubkey_hex)
    iv = iv if iv is not None else os.urandom(16)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    enc = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ct = enc.update(padded) + enc.finalize()
    return f"{base64.b64encode(ct).decode('ascii')}?iv={base64.b64encode(iv).decode('ascii')}"


def nip04_decrypt(secret_hex: str, peer_pubkey_hex: str, payload: str) -> str:
    if not is_nip04_payload(payload):
        raise CipherError("not a NIP-04 payload")
    ct_b64, iv_b64 = payload.split("?iv=", 1)
    try:
        ct = base64.b64decode(ct_b64, validate=True)
        iv = base64.b64decode(iv_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CipherError("invalid base64 payload") from exc
    if len(iv) != 16 or not ct or len(ct) % 16:
        raise CipherError("invalid NIP-04 payload shape")
    key = _shared_x(secret_hex, peer_pubkey_hex)
    dec = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = dec.update(ct) + dec.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    try:
        raw = unpadder.update(padded) + unpadder.finalize()
        return raw.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as exc:
        raise CipherError("NIP-04 decryption failed") from exc


__all__ = [
    "CipherError",
    "get_conversation_key",
    "is_nip04_payload",
    "nip04_decrypt",
    "nip04_encrypt",
    "nip44_decrypt",
    "nip44_decrypt_with_key",
    "nip44_encrypt",
    "nip44_encrypt_with_key",
]
