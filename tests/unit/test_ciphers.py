from __future__ import annotations

import base64

import pytest

from identity.ciphers import (
    CipherError,
    _calc_padded_len,
    get_conversation_key,
    is_nip04_payload,
    nip04_decrypt,
    nip04_encrypt,
    nip44_decrypt,
    nip44_encrypt,
)
from identity.keys import generate_keypair


def test_conversation_key_is_symmetric():
    a, b = generate_keypair(), generate_keypair()
    assert get_conversation_key(a.secret_hex, b.pubkey_hex) == get_conversation_key(b.secret_hex, a.pubkey_hex)


def test_nip44_between_two_parties():
    a, b = generate_keypair(), generate_keypair()
    payload = nip44_encrypt(a.secret_hex, b.pubkey_hex, "hello bob ✓")
    assert nip44_decrypt(b.secret_hex, a.pubkey_hex, payload) == "hello bob ✓"


def test_nip44_self_encryption_and_wrong_identity():
    a, b = generate_keypair(), generate_keypair()
    payload = nip44_encrypt(a.secret_hex, a.pubkey_hex, '{"q":"weather"}')
    assert nip44_decrypt(a.secret_hex, a.pubkey_hex, payload) == '{"q":"weather"}'
    with pytest.raises(CipherError):
        nip44_decrypt(b.secret_hex, b.pubkey_hex, payload)


def test_nip44_rejects_tampered_ciphertext():
    a = generate_keypair()
    payload = nip44_encrypt(a.secret_hex, a.pubkey_hex, "some secret text")
    raw = bytearray(base64.b64decode(payload))
    raw[40] ^= 0x01
    tampered = base64.b64encode(bytes(raw)).decode("ascii")
    with pytest.raises(CipherError):
        nip44_decrypt(a.secret_hex, a.pubkey_hex, tampered)


def test_nip44_rejects_bad_shapes():
    a = generate_keypair()
    with pytest.raises(CipherError):
        nip44_decrypt(a.secret_hex, a.pubkey_hex, "#future-version")
    with pytest.raises(CipherError):
        nip44_decrypt(a.secret_hex, a.pubkey_hex, "short")
    with pytest.raises(CipherError):
        nip44_encrypt(a.secret_hex, a.pubkey_hex, "")


def test_padding_buckets():
    assert _calc_padded_len(1) == 32
    assert _calc_padded_len(32) == 32
    assert _calc_padded_len(33) == 64
    assert _calc_padded_len(257) == 320
    assert _calc_padded_len(65535) == 65536


def test_nonce_changes_every_time():
    a = generate_keypair()
    assert nip44_encrypt(a.secret_hex, a.pubkey_hex, "x") != nip44_encrypt(a.secret_hex, a.pubkey_hex, "x")


def test_nip04_round_trip():
    a, b = generate_keypair(), generate_keypair()
    payload = nip04_encrypt(a.secret_hex, b.pubkey_hex, "legacy message")
    assert is_nip04_payload(payload)
    assert nip04_decrypt(b.secret_hex, a.pubkey_hex, payload) == "legacy message"
    with pytest.raises(CipherError):
        nip04_decrypt(b.secret_hex, a.pubkey_hex, "no-iv-here")
