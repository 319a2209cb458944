"""
Remote-signer session (NIP-46, "Nostr Connect").

Requests travel as kind-24133 events from an ephemeral client key to the
remote signer's key, NIP-44 encrypted JSON `{id, method, params}`; replies
come back the same way as `{id, result, error}`. The user's private key never
leaves the remote signer.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from datetime import UTC, datetime
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError

from .ciphers import CipherError, is_nip04_payload, nip04_decrypt, nip44_decrypt, nip44_encrypt
from .events import KIND_NOSTR_CONNECT, NostrEvent, UnsignedEvent, finalize_event, verify_event
from .keys import KeyPair, generate_keypair
from .relay import RelayTransport
from .signers import Identity, Signer, SignerError, SignerKind, SignerUnavailable


logger = logging.getLogger(__name__)


class RemoteSignerError(SignerError):
    """The remote signer answered a request with an error."""


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


class RemoteSignerSession:
    """
    One client <-> remote-signer conversation over a relay transport.

    `request_timeout=None` (the default) waits indefinitely for a reply,
    because the remote side may be waiting on a human; a dropped transport
    fails every pending request instead.
    """

    def __init__(
        self,
        remote_pubkey: str,
        relays: List[str],
        transport: RelayTransport,
        *,
        secret: Optional[str] = None,
        client_keys: Optional[KeyPair] = None,
        request_timeout: Optional[float] = None,
        on_auth_url: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.remote_pubkey = remote_pubkey
        self.relays = list(relays)
        self.secret = secret
        self.state = ConnectionState.CONNECTING
        self.established_at: Optional[datetime] = None
        self.user_pubkey: Optional[str] = None
        self._transport = transport
        self._client = client_keys or generate_keypair()
        self._timeout = request_timeout
        self._on_auth_url = on_auth_url
        self._pending: Dict[str, asyncio.Future] = {}
        self._sub_id = uuid4().hex[:16]
        self._opened = False
        self._closed = False

    @property
    def client_pubkey(self) -> str:
        return self._client.pubkey_hex

    @property
    def client_secret(self) -> str:
        return self._client.secret_hex

    # --------------- Lifecycle ---------------
    async def open(self) -> None:
        if self._opened:
            return
        self._transport.on_close(self._on_transport_closed)
        await self._transport.connect()
        await self._transport.subscribe(
            self._sub_id,
            [{"kinds": [KIND_NOSTR_CONNECT], "#p": [self.client_pubkey], "since": int(time.time()) - 10}],
            self._on_event,
        )
        self._opened = True

    async def connect(self) -> None:
        """Send `connect` and wait for the remote signer to acknowledge it."""
        params = [self.remote_pubkey]
        if self.secret:
            params.append(self.secret)
        result = await self.request("connect", params)
        if result != "ack" and not (self.secret and result == self.secret):
            self.state = ConnectionState.FAILED
            raise RemoteSignerError(f"Unexpected connect reply: {result!r}")
        self.state = ConnectionState.READY
        self.established_at = datetime.now(UTC)
        logger.info("Remote signer %s ready via %d relay(s)", self.remote_pubkey[:12], len(self.relays))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._fail_pending(SignerUnavailable("Remote signer session closed"))
        await self._transport.close()

    # --------------- RPC ---------------
    async def request(self, method: str, params: List[str], *, timeout: Optional[float] = None) -> str:
        if self._closed or self.state == ConnectionState.FAILED:
            raise SignerUnavailable("Remote signer session is not connected")
        if not self._opened:
            await self.open()
        req_id = uuid4().hex
        body = json.dumps({"id": req_id, "method": method, "params": params})
        content = nip44_encrypt(self.client_secret, self.remote_pubkey, body)
        event = finalize_event(
            UnsignedEvent(kind=KIND_NOSTR_CONNECT, content=content, tags=[["p", self.remote_pubkey]]),
            self.client_secret,
        )
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        try:
            await self._transport.publish(event)
            wait = timeout if timeout is not None else self._timeout
            if wait is None:
                return await fut
            return await asyncio.wait_for(fut, timeout=wait)
        finally:
            self._pending.pop(req_id, None)

    async def get_public_key(self) -> str:
        pubkey = await self.request("get_public_key", [])
        try:
            self.user_pubkey = Identity(pubkey=pubkey).pubkey
        except ValidationError as exc:
            raise RemoteSignerError("Remote signer returned an invalid public key") from exc
        return self.user_pubkey

    async def sign_event(self, draft: UnsignedEvent) -> NostrEvent:
        payload = draft.model_dump()
        if payload.get("created_at") is None:
            payload["created_at"] = int(time.time())
        raw = await self.request("sign_event", [json.dumps(payload)])
        try:
            event = NostrEvent.model_validate_json(raw)
        except ValidationError as exc:
            raise RemoteSignerError("Remote signer returned a malformed event") from exc
        if not verify_event(event):
            raise RemoteSignerError("Remote signer returned an event that fails verification")
        return event

    async def ping(self) -> bool:
        return (await self.request("ping", [])) == "pong"

    # --------------- Incoming ---------------
    def _on_event(self, event: NostrEvent) -> None:
        if event.pubkey != self.remote_pubkey:
            return
        try:
            if is_nip04_payload(event.content):
                plaintext = nip04_decrypt(self.client_secret, self.remote_pubkey, event.content)
            else:
                plaintext = nip44_decrypt(self.client_secret, self.remote_pubkey, event.content)
            message = json.loads(plaintext)
        except (CipherError, json.JSONDecodeError) as exc:
            logger.warning("Undecryptable remote signer reply: %s", exc)
            return
        if not isinstance(message, dict):
            return
        fut = self._pending.get(str(message.get("id")))
        if fut is None or fut.done():
            return
        result = message.get("result")
        error = message.get("error")
        if result == "auth_url":
            # Remote side wants the user to approve out of band; keep waiting.
            logger.warning("Remote signer requests approval at %s", error)
            if self._on_auth_url is not None and error:
                self._on_auth_url(str(error))
            return
        if error:
            fut.set_exception(RemoteSignerError(str(error)))
        else:
            fut.set_result("" if result is None else str(result))

    def _on_transport_closed(self, exc: Optional[BaseException]) -> None:
        if self._closed:
            return
        self.state = ConnectionState.FAILED
        logger.warning("Remote signer transport lost: %s", exc)
        self._fail_pending(SignerUnavailable(f"Relay connection lost: {exc}"))

    def _fail_pending(self, exc: BaseException) -> None:
        for fut in list(self._pending.values()):
            if not fut.done():
                fut.set_exception(exc)


class RemoteSigner(Signer):
    """Signer capability backed by a ready `RemoteSignerSession`."""

    kind = SignerKind.REMOTE

    def __init__(self, session: RemoteSignerSession) -> None:
        self._session = session

    @property
    def session(self) -> RemoteSignerSession:
        return self._session

    async def get_public_key(self) -> Identity:
        pubkey = self._session.user_pubkey or await self._session.get_public_key()
        return Identity(pubkey=pubkey)

    async def sign_event(self, draft: UnsignedEvent) -> NostrEvent:
        event = await self._session.sign_event(draft)
        if self._session.user_pubkey and event.pubkey != self._session.user_pubkey:
            raise RemoteSignerError("Remote signer signed with an unexpected key")
        return event

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self._session.request("nip44_encrypt", [peer_pubkey, plaintext])

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return await self._session.request("nip44_decrypt", [peer_pubkey, ciphertext])

    async def nip04_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self._session.request("nip04_encrypt", [peer_pubkey, plaintext])

    async def nip04_decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return await self._session.request("nip04_decrypt", [peer_pubkey, ciphertext])

    async def close(self) -> None:
        await self._session.close()


__all__ = [
    "ConnectionState",
    "RemoteSigner",
    "RemoteSignerError",
    "RemoteSignerSession",
]
