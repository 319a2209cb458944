from __future__ import annotations

import asyncio

import pytest

from identity.bunker import BunkerPointer, HandshakeFailed, InvalidBunkerURI, connect_bunker, parse_bunker_uri
from identity.events import UnsignedEvent, verify_event
from identity.remote import ConnectionState, RemoteSigner, RemoteSignerSession
from identity.signers import SignerUnavailable

from fakes import FakeBunker, FakeRelayNetwork


REMOTE = "ab" * 32


# --------------- URI grammar ---------------
def test_parse_uri_with_relay_and_secret():
    ptr = parse_bunker_uri(f"bunker://{REMOTE}?relay=wss://r1&secret=s1")
    assert ptr == BunkerPointer(remote_pubkey=REMOTE, relays=["wss://r1"], secret="s1")


def test_parse_uri_multiple_relays_deduplicated_and_lowercased():
    ptr = parse_bunker_uri(
        f"bunker://{REMOTE.upper()}?relay=wss://r1&relay=wss%3A%2F%2Fr2&relay=wss://r1"
    )
    assert ptr.remote_pubkey == REMOTE
    assert ptr.relays == ["wss://r1", "wss://r2"]
    assert ptr.secret is None


@pytest.mark.parametrize(
    "uri",
    [
        "",
        f"nostrconnect://{REMOTE}?relay=wss://r1",
        f"https://{REMOTE}?relay=wss://r1",
        "bunker://abc?relay=wss://r1",
        f"bunker://{REMOTE}",
        f"bunker://{REMOTE}?relay=https://r1",
    ],
)
def test_parse_uri_rejects_malformed(uri):
    with pytest.raises(InvalidBunkerURI):
        parse_bunker_uri(uri)


def test_pointer_round_trips_and_hides_secret():
    ptr = parse_bunker_uri(f"bunker://{REMOTE}?relay=wss://r1&secret=s1")
    assert parse_bunker_uri(ptr.to_uri()) == ptr
    assert "s1" not in repr(ptr)


def test_wrong_scheme_fails_before_any_network_call():
    calls = []

    def factory(relays):
        calls.append(relays)
        raise AssertionError("transport must not be created")

    with pytest.raises(HandshakeFailed):
        asyncio.run(connect_bunker(f"nostr://{REMOTE}?relay=wss://r1", transport_factory=factory))
    assert calls == []


# --------------- Handshake ---------------
def test_handshake_against_fake_bunker():
    async def go():
        net = FakeRelayNetwork()
        bunker = FakeBunker(net, secret="s3cret")
        session, identity = await connect_bunker(bunker.uri(), transport_factory=net.factory)
        signer = RemoteSigner(session)
        event = await signer.sign_event(UnsignedEvent(kind=1, content="via bunker"))
        ct = await signer.encrypt(identity.pubkey, "self note")
        pt = await signer.decrypt(identity.pubkey, ct)
        pong = await session.ping()
        await signer.close()
        return bunker, session, identity, event, pt, pong, net

    bunker, session, identity, event, pt, pong, net = asyncio.run(go())
    assert identity.pubkey == bunker.user.pubkey_hex
    assert session.state is ConnectionState.READY
    assert session.established_at is not None
    assert bunker.calls[:2] == ["connect", "get_public_key"]
    assert event.pubkey == bunker.user.pubkey_hex and verify_event(event)
    assert pt == "self note"
    assert pong is True
    assert net.transports[0].closed


def test_handshake_accepts_nip04_replies():
    async def go():
        net = FakeRelayNetwork()
        bunker = FakeBunker(net, reply_nip04=True)
        session, identity = await connect_bunker(bunker.uri(), transport_factory=net.factory)
        await session.close()
        return bunker, identity

    bunker, identity = asyncio.run(go())
    assert identity.pubkey == bunker.user.pubkey_hex


def test_rejected_connect_raises_and_closes_transport():
    async def go():
        net = FakeRelayNetwork()
        bunker = FakeBunker(net, reject_connect=True)
        with pytest.raises(HandshakeFailed):
            await connect_bunker(bunker.uri(), transport_factory=net.factory)
        return net

    net = asyncio.run(go())
    assert net.transports[0].closed


def test_wrong_secret_is_rejected():
    async def go():
        net = FakeRelayNetwork()
        bunker = FakeBunker(net, secret="right")
        uri = f"bunker://{bunker.pubkey}?relay=wss://r1&secret=wrong"
        with pytest.raises(HandshakeFailed):
            await connect_bunker(uri, transport_factory=net.factory)

    asyncio.run(go())


def test_unreachable_relays_fail_the_handshake():
    async def go():
        net = FakeRelayNetwork()
        bunker = FakeBunker(net)
        net.down = True
        with pytest.raises(HandshakeFailed):
            await connect_bunker(bunker.uri(), transport_factory=net.factory)

    asyncio.run(go())


def test_transport_loss_fails_a_waiting_request():
    async def go():
        net = FakeRelayNetwork()
        bunker = FakeBunker(net, silent=True)
        transport = net.factory(["wss://r1"])
        session = RemoteSignerSession(bunker.pubkey, ["wss://r1"], transport)
        await session.open()
        waiting = asyncio.create_task(session.connect())
        await asyncio.sleep(0.01)
        assert not waiting.done()
        transport.drop()
        with pytest.raises(SignerUnavailable):
            await waiting
        assert session.state is ConnectionState.FAILED
        await session.close()

    asyncio.run(go())


def test_silent_bunker_with_timeout_fails_the_handshake():
    async def go():
        net = FakeRelayNetwork()
        bunker = FakeBunker(net, silent=True)
        with pytest.raises(HandshakeFailed):
            await connect_bunker(bunker.uri(), transport_factory=net.factory, request_timeout=0.05)
        return net

    net = asyncio.run(go())
    assert net.transports[0].closed
