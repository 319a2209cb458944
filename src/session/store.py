from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Optional, assert_never

from identity.bunker import HandshakeFailed, TransportFactory, connect_bunker
from identity.events import KIND_HTTP_AUTH, UnsignedEvent
from identity.keys import KeyFormatError, KeyPair, generate_keypair, parse_secret_key
from identity.remote import RemoteSigner
from identity.service import SignerService, get_signer_service
from identity.signers import (
    ExtensionSigner,
    Identity,
    IdentityMismatch,
    LocalKeySigner,
    Signer,
    SignerError,
)

from .models import AuthMethod, BunkerRecord, ExtensionPermissions, SessionRecord
from .storage import SessionStorage, SessionStorageError, SessionStorageUnavailable


logger = logging.getLogger(__name__)


def _check_identity(expected: Identity, actual: Identity) -> None:
    if expected.pubkey != actual.pubkey:
        raise IdentityMismatch(
            f"Signer reports {actual.pubkey[:12]}..., session belongs to {expected.pubkey[:12]}..."
        )


class SessionStore:
    """
    Login, logout and one-shot restoration of the active signer.

    A record is only written once its signer has proven the identity (the
    extension answered `get_public_key`, the bunker finished its handshake).
    `restore()` runs at most once per store and never raises for missing or
    invalid stored data: every such case ends logged out.
    """

    def __init__(
        self,
        storage: SessionStorage,
        *,
        service: Optional[SignerService] = None,
        transport_factory: Optional[TransportFactory] = None,
        request_timeout: Optional[float] = None,
    ) -> None:
        self._storage = storage
        self._service = service or get_signer_service()
        self._transport_factory = transport_factory
        self._request_timeout = request_timeout
        self._auth_method: Optional[AuthMethod] = None
        self._restored = False
        self._validating = False

    @property
    def service(self) -> SignerService:
        return self._service

    @property
    def identity(self) -> Optional[Identity]:
        return self._service.identity

    @property
    def auth_method(self) -> Optional[AuthMethod]:
        return self._auth_method if self._service.is_authenticated else None

    @property
    def restored(self) -> bool:
        return self._restored

    # --------------- Login ---------------
    async def login_with_extension(self, provider: Any) -> Identity:
        signer = ExtensionSigner(provider)
        identity = await signer.get_public_key()
        await self._activate(SessionRecord(auth_method=AuthMethod.EXTENSION, user=identity), signer)
        return identity

    async def login_with_private_key(self, secret: str) -> Identity:
        """Log in with an `nsec1…` or 64-hex secret key (raises KeyFormatError when invalid)."""
        signer = LocalKeySigner(parse_secret_key(secret))
        identity = await signer.get_public_key()
        record = SessionRecord(auth_method=AuthMethod.PRIVATE_KEY, user=identity, nsec=signer.nsec)
        await self._activate(record, signer)
        return identity

    async def generate_key(self) -> KeyPair:
        """Create a fresh key pair and log in with it."""
        keys = generate_keypair()
        await self.login_with_private_key(keys.secret_hex)
        return keys

    async def login_with_bunker(self, uri: str) -> Identity:
        """Connect to a remote signer; a failed handshake (`HandshakeFailed`) leaves storage untouched."""
        session, identity = await connect_bunker(
            uri,
            transport_factory=self._transport_factory,
            request_timeout=self._request_timeout,
        )
        record = SessionRecord(
            auth_method=AuthMethod.BUNKER,
            user=identity,
            bunker=BunkerRecord(
                uri=uri.strip(),
                user_pubkey=identity.pubkey,
                remote_pubkey=session.remote_pubkey,
                relays=session.relays,
                connected_at=session.established_at or datetime.now(UTC),
                client_secret=session.client_secret,
            ),
        )
        await self._activate(record, RemoteSigner(session))
        return identity

    async def _activate(self, record: SessionRecord, signer: Signer) -> None:
        try:
            self._storage.save(record)
        except SessionStorageError:
            await signer.close()
            raise
        await self._install(record, signer)
        logger.info("Logged in with %s as %s", record.auth_method.value, record.user.pubkey[:12])

    async def _install(self, record: SessionRecord, signer: Signer) -> None:
        previous = self._service.activate(record.user, signer)
        self._auth_method = record.auth_method
        if previous is not None:
            await previous.close()

    # --------------- Logout ---------------
    async def logout(self) -> None:
        signer = self._service.deactivate()
        self._auth_method = None
        if signer is not None:
            await signer.close()
        self._storage.clear()
        logger.info("Logged out")

    def _discard(self) -> None:
        try:
            self._storage.clear()
        except SessionStorageError as exc:
            logger.warning("Could not clear stored session: %s", exc)

    # --------------- Extension checks ---------------
    async def check_extension_permissions(self, provider: Any = None) -> ExtensionPermissions:
        """
        Ask the extension for the two permissions NIP-98 auth needs.

        Calls `get_public_key`, then signs a throwaway kind-27235 event (which
        may prompt the user). Uses `provider` when given, otherwise the one
        behind the active extension session. Never raises for a refusal.
        """
        if provider is None and self.auth_method is AuthMethod.EXTENSION:
            active = self._service.signer
            if isinstance(active, ExtensionSigner):
                provider = active.provider
        if provider is None:
            return ExtensionPermissions(error="No signer extension found")
        signer = ExtensionSigner(provider)
        try:
            await signer.get_public_key()
        except SignerError as exc:
            return ExtensionPermissions(error=str(exc))
        draft = UnsignedEvent(kind=KIND_HTTP_AUTH, content="Permission check for OTRTA", tags=[])
        try:
            await signer.sign_event(draft)
        except SignerError as exc:
            return ExtensionPermissions(has_get_public_key=True, error=str(exc))
        return ExtensionPermissions(has_get_public_key=True, has_sign_event=True)

    async def validate_current_auth(self) -> bool:
        """
        Re-check an extension session; log out when the extension stopped
        answering or now reports another key.

        Local-key and bunker sessions are taken as valid. A check already in
        progress reports True without starting another one.
        """
        if self._validating:
            return True
        identity = self._service.identity
        if identity is None:
            return False
        if self.auth_method is not AuthMethod.EXTENSION:
            return True
        self._validating = True
        try:
            try:
                current = await self._service.signer.get_public_key()
                valid = current.pubkey == identity.pubkey
            except SignerError as exc:
                logger.info("Extension validation failed: %s", exc)
                valid = False
            if not valid:
                logger.warning("Extension permissions no longer valid, logging out")
                await self.logout()
                return False
        finally:
            self._validating = False
        return True

    # --------------- Restore ---------------
    async def restore(self, provider: Any = None) -> Optional[Identity]:
        """
        Rebuild the signer from the stored record, once.

        Returns the restored identity, or None when staying logged out.
        """
        if self._restored or self._service.is_authenticated:
            return self._service.identity
        self._restored = True

        try:
            record = self._storage.load()
        except SessionStorageUnavailable as exc:
            logger.warning("Session storage unavailable; staying logged out: %s", exc)
            return None
        except SessionStorageError as exc:
            logger.warning("Discarding unreadable session record: %s", exc)
            self._discard()
            return None
        if record is None:
            return None

        method = record.auth_method
        try:
            if method is AuthMethod.EXTENSION:
                signer = await self._restore_extension(record, provider)
            elif method is AuthMethod.PRIVATE_KEY:
                signer = await self._restore_private_key(record)
            elif method is AuthMethod.BUNKER:
                signer = await self._restore_bunker(record)
            else:
                assert_never(method)
        except IdentityMismatch as exc:
            logger.warning("Session restore rejected: %s", exc)
            try:
                await self.logout()
            except SessionStorageError as storage_exc:
                logger.warning("Could not clear rejected session: %s", storage_exc)
            return None

        if signer is None:
            return None
        await self._install(record, signer)
        logger.info("Restored %s session for %s", method.value, record.user.pubkey[:12])
        return record.user

    async def _restore_extension(self, record: SessionRecord, provider: Any) -> Optional[Signer]:
        if provider is None:
            logger.info("No signer extension present; staying logged out")
            return None
        signer = ExtensionSigner(provider)
        try:
            identity = await signer.get_public_key()
        except SignerError as exc:
            logger.warning("Signer extension unavailable during restore: %s", exc)
            return None
        _check_identity(record.user, identity)
        return signer

    async def _restore_private_key(self, record: SessionRecord) -> Optional[Signer]:
        if not record.nsec:
            logger.warning("Local-key session has no key material; clearing it")
            self._discard()
            return None
        try:
            signer = LocalKeySigner(record.nsec)
        except KeyFormatError:
            logger.warning("Stored local key is invalid; clearing session")
            self._discard()
            return None
        _check_identity(record.user, await signer.get_public_key())
        return signer

    async def _restore_bunker(self, record: SessionRecord) -> Optional[Signer]:
        if record.bunker is None:
            logger.warning("Bunker session has no connection record; clearing it")
            self._discard()
            return None
        try:
            session, identity = await connect_bunker(
                record.bunker.uri,
                transport_factory=self._transport_factory,
                client_secret=record.bunker.client_secret,
                request_timeout=self._request_timeout,
            )
        except HandshakeFailed as exc:
            logger.warning("Bunker reconnect failed; clearing session: %s", exc)
            self._discard()
            return None
        signer = RemoteSigner(session)
        try:
            _check_identity(record.user, identity)
        except IdentityMismatch:
            await signer.close()
            raise
        return signer


__all__ = ["SessionStore"]
