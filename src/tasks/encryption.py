"""
Self-encryption of search data under the active identity.

Each field is serialised to JSON, then encrypted by the active signer to the
identity's own public key, so only that identity can read it back. The
authenticated cipher makes a wrong identity fail loudly instead of yielding
garbage plaintext.

A NIP-44 payload holds at most 65535 bytes, so a longer field is cut into
segments on character boundaries and stored as a JSON list of ciphertexts.
Fields written by older clients as NIP-04 (`...?iv=...`) are still readable,
and a signer that only offers NIP-04 encrypts with it.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Iterable, List, Optional

from pydantic import ValidationError

from identity.ciphers import is_nip04_payload
from identity.service import SignerService, get_signer_service
from identity.signers import Signer, SignerError, SignerUnavailable

from .models import EncryptedPayload, SearchData, SearchResponse


logger = logging.getLogger(__name__)

SEGMENT_BYTES = 65535


class DecryptionFailed(RuntimeError):
    """A payload could not be decrypted or deserialised as a whole."""


class EncryptionFailed(RuntimeError):
    """The active signer could not encrypt a payload."""


def _serialize(value: object) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def split_utf8(text: str, limit: int = SEGMENT_BYTES) -> List[str]:
    """Cut `text` into pieces of at most `limit` UTF-8 bytes without splitting a character."""
    raw = text.encode("utf-8")
    if len(raw) <= limit:
        return [text]
    parts: List[str] = []
    start = 0
    while start < len(raw):
        end = min(start + limit, len(raw))
        # back off continuation bytes (0b10xxxxxx)
        while end < len(raw) and (raw[end] & 0xC0) == 0x80:
            end -= 1
        parts.append(raw[start:end].decode("utf-8"))
        start = end
    return parts


async def _seal(signer: Signer, pubkey: str, plaintext: str) -> str:
    try:
        parts = [await signer.encrypt(pubkey, segment) for segment in split_utf8(plaintext)]
    except SignerUnavailable as exc:
        logger.info("Signer has no NIP-44 support (%s); encrypting with NIP-04", exc)
        return await signer.nip04_encrypt(pubkey, plaintext)
    if len(parts) == 1:
        return parts[0]
    return _serialize(parts)


async def _open(signer: Signer, pubkey: str, ciphertext: str) -> str:
    if ciphertext.startswith("["):
        parts = json.loads(ciphertext)
        if not parts or not all(isinstance(p, str) for p in parts):
            raise DecryptionFailed("Segmented ciphertext is malformed")
        return "".join([await signer.decrypt(pubkey, p) for p in parts])
    if is_nip04_payload(ciphertext):
        return await signer.nip04_decrypt(pubkey, ciphertext)
    return await signer.decrypt(pubkey, ciphertext)


class EncryptionService:
    def __init__(self, service: Optional[SignerService] = None) -> None:
        self._service = service

    @property
    def service(self) -> SignerService:
        return self._service or get_signer_service()

    async def encrypt_search_data(self, data: SearchData) -> EncryptedPayload:
        service = self.service
        identity = service.require_identity()
        signer = service.signer
        query_plain = _serialize(data.query)
        response_plain = _serialize(data.response.model_dump(mode="json"))
        try:
            encrypted_query = await _seal(signer, identity.pubkey, query_plain)
            encrypted_response = await _seal(signer, identity.pubkey, response_plain)
        except SignerUnavailable:
            raise
        except (SignerError, ValueError) as exc:
            raise EncryptionFailed(f"Failed to encrypt search data: {exc}") from exc
        return EncryptedPayload(
            encrypted_query=encrypted_query,
            encrypted_response=encrypted_response,
            timestamp=int(time.time() * 1000),
        )

    async def decrypt_search_data(self, payload: EncryptedPayload) -> SearchData:
        """
        Decrypt both fields or nothing.

        Cipher, JSON and schema errors all raise `DecryptionFailed`;
        `SignerUnavailable` passes through when nobody is logged in.
        """
        service = self.service
        identity = service.require_identity()
        signer = service.signer
        try:
            query_plain = await _open(signer, identity.pubkey, payload.encrypted_query)
            response_plain = await _open(signer, identity.pubkey, payload.encrypted_response)
            query = json.loads(query_plain)
            if not isinstance(query, str):
                raise DecryptionFailed("Decrypted query is not a string")
            response = SearchResponse.model_validate(json.loads(response_plain))
        except (SignerUnavailable, DecryptionFailed):
            raise
        except (SignerError, ValueError, ValidationError) as exc:
            raise DecryptionFailed(f"Failed to decrypt search data: {exc}") from exc
        return SearchData(query=query, response=response)

    async def decrypt_many(self, payloads: Iterable[EncryptedPayload]) -> List[SearchData]:
        """Decrypt saved history in order; the first bad payload fails the whole batch."""
        out: List[SearchData] = []
        for index, payload in enumerate(payloads):
            try:
                out.append(await self.decrypt_search_data(payload))
            except DecryptionFailed as exc:
                logger.warning("Saved search #%d could not be decrypted", index)
                raise DecryptionFailed(f"Saved search #{index} could not be decrypted") from exc
        return out


__all__ = ["DecryptionFailed", "EncryptionFailed", "EncryptionService", "split_utf8"]
