from __future__ import annotations

import hashlib
import json

import pytest

from identity.events import UnsignedEvent, compute_event_id, finalize_event, verify_event
from identity.keys import (
    KeyFormatError,
    KeyPair,
    generate_keypair,
    npub_decode,
    npub_encode,
    nsec_decode,
    nsec_encode,
    parse_public_key,
    parse_secret_key,
)


NPUB_HEX = "3bf0c63fcb93463407af97a5e5ee64fa883d107ef9e558472c4eb9aaaefa459d"
NPUB = "npub180cvv07tjdrrgpa0j7j7tmnyl2yr6yr7l8j4s3evf6u64th6gkwsyjh6w6"
NSEC_HEX = "67dea2ed018072d675f5415ecfaed7d2597555e202d85b3d65ea4e58d2d92ffa"
NSEC = "nsec1vl029mgpspedva04g90vltkh6fvh240zqtv9k0t9af8935ke9laqsnlfe5"


def test_bech32_known_values():
    assert npub_encode(NPUB_HEX) == NPUB
    assert npub_decode(NPUB) == NPUB_HEX
    assert nsec_encode(NSEC_HEX) == NSEC
    assert nsec_decode(NSEC) == NSEC_HEX


def test_decode_rejects_wrong_prefix():
    with pytest.raises(KeyFormatError):
        nsec_decode(NPUB)
    with pytest.raises(KeyFormatError):
        npub_decode("npub1notbech32")


def test_parse_secret_key_accepts_nsec_and_hex():
    assert parse_secret_key(NSEC) == NSEC_HEX
    assert parse_secret_key(NSEC_HEX.upper()) == NSEC_HEX
    with pytest.raises(KeyFormatError):
        parse_secret_key(NPUB)
    with pytest.raises(KeyFormatError):
        parse_secret_key("not-a-key")


def test_parse_public_key_accepts_npub_and_hex():
    assert parse_public_key(NPUB) == NPUB_HEX
    assert parse_public_key(NPUB_HEX) == NPUB_HEX


def test_generated_keys_round_trip_through_bech32():
    keys = generate_keypair()
    again = KeyPair.from_secret(keys.nsec)
    assert again == keys
    assert npub_decode(keys.npub) == keys.pubkey_hex
    assert keys.secret_hex not in repr(keys)


def test_generate_keypair_from_entropy_is_deterministic():
    entropy = bytes.fromhex(NSEC_HEX)
    assert generate_keypair(entropy=entropy).secret_hex == NSEC_HEX
    with pytest.raises(KeyFormatError):
        generate_keypair(entropy=b"\x00" * 32)


def test_event_id_is_sha256_of_compact_serialization():
    pubkey = NPUB_HEX
    tags = [["p", "ab" * 32]]
    expected = hashlib.sha256(
        json.dumps([0, pubkey, 1700000000, 1, tags, "hi"], separators=(",", ":")).encode()
    ).hexdigest()
    assert compute_event_id(pubkey, 1700000000, 1, tags, "hi") == expected


def test_finalize_and_verify():
    keys = generate_keypair()
    event = finalize_event(UnsignedEvent(kind=1, content="hello", created_at=1700000000), keys.secret_hex)

    assert event.pubkey == keys.pubkey_hex
    assert event.created_at == 1700000000
    assert verify_event(event)

    assert not verify_event(event.model_copy(update={"content": "hellO"}))
    other = finalize_event(UnsignedEvent(kind=1, content="other"), keys.secret_hex)
    assert not verify_event(event.model_copy(update={"sig": other.sig}))
    assert not verify_event(event.model_copy(update={"sig": "zz"}))
