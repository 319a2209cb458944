from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional, Protocol
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from .models import SessionRecord


logger = logging.getLogger(__name__)


class SessionStorageError(RuntimeError):
    """The stored session record could not be read, decrypted or parsed."""


class SessionStorageUnavailable(SessionStorageError):
    """The storage backend itself failed; the record may still be intact."""


class SessionStorage(Protocol):
    def load(self) -> Optional[SessionRecord]: ...

    def save(self, record: SessionRecord) -> None: ...

    def clear(self) -> None: ...


def _to_fernet(key: str | bytes) -> Fernet:
    """Fernet sealing the session record; `key` comes from `Fernet.generate_key()`."""
    return Fernet(key.encode("utf-8") if isinstance(key, str) else key)


def _dump_record_json(record: SessionRecord) -> bytes:
    # same record, same bytes
    body = record.model_dump(mode="json")
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _load_record_json(data: bytes) -> SessionRecord:
    try:
        return SessionRecord.model_validate_json(data)
    except ValidationError as ex:
        raise SessionStorageError("Stored session record is invalid") from ex


def _open(fernet: Optional[Fernet], data: bytes) -> bytes:
    if fernet is None:
        return data
    try:
        return fernet.decrypt(data)
    except InvalidToken as ex:
        raise SessionStorageError("Failed to decrypt session: invalid Fernet token") from ex


class FileSessionStorage:
    """
    Session record kept in a single local JSON file.

    - With `fernet_key` the file holds a Fernet token instead of plain JSON.
    - Writes go to a sibling temp file first and are renamed into place, so a
      crash never leaves a half-written record.
    - Without a key, persisting a local secret key or a bunker client key logs
      a warning: the file is then the only protection for that material.
    """

    def __init__(self, path: os.PathLike[str] | str, *, fernet_key: Optional[str | bytes] = None) -> None:
        self._path = Path(path)
        self._fernet = _to_fernet(fernet_key) if fernet_key else None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def load(self) -> Optional[SessionRecord]:
        try:
            data = self._path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as ex:
            raise SessionStorageUnavailable(f"Failed to read session file {self._path}") from ex
        if not data.strip():
            return None
        return _load_record_json(_open(self._fernet, data))

    def save(self, record: SessionRecord) -> None:
        payload = _dump_record_json(record)
        if self._fernet is not None:
            payload = self._fernet.encrypt(payload)
        elif record.holds_key_material:
            logger.warning(
                "Persisting %s session key material unencrypted at %s; set a Fernet key to seal it",
                record.auth_method.value,
                self._path,
            )
        tmp = self._path.with_name(f"{self._path.name}.tmp-{uuid4().hex}")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("wb") as f:
                f.write(payload)
            if self._fernet is None:
                os.chmod(tmp, 0o600)
            os.replace(tmp, self._path)
        except OSError as ex:
            tmp.unlink(missing_ok=True)
            raise SessionStorageUnavailable(f"Failed to write session file {self._path}") from ex

    def clear(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as ex:
            raise SessionStorageUnavailable(f"Failed to remove session file {self._path}") from ex


class S3SessionStorage:
    """
    S3-backed session record, always encrypted at rest using Fernet.

    - `load()` returns None if the object does not exist.
    - `save(record)` overwrites the object with the sealed record.
    - `clear()` deletes the object.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        key: str,
        fernet_key: str | bytes,
        region_name: Optional[str] = None,
    ) -> None:
        if not fernet_key:
            raise ValueError("fernet_key is required for S3 session storage")
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._key = key
        self._uri = f"s3://{bucket}/{key}"
        self._fernet = _to_fernet(fernet_key)

    def load(self) -> Optional[SessionRecord]:
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=self._key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return None
            raise SessionStorageUnavailable(f"S3 read of {self._uri} failed: {code}") from e
        except BotoCoreError as e:
            raise SessionStorageUnavailable(f"S3 read of {self._uri} failed: {e}") from e
        body = resp["Body"].read()
        return _load_record_json(_open(self._fernet, body))

    def save(self, record: SessionRecord) -> None:
        ciphertext = self._fernet.encrypt(_dump_record_json(record))
        try:
            self._s3.put_object(
                Bucket=self._bucket,
                Key=self._key,
                Body=ciphertext,
                ContentType="application/octet-stream",
            )
        except (ClientError, BotoCoreError) as e:
            raise SessionStorageUnavailable(f"S3 write of {self._uri} failed") from e

    def clear(self) -> None:
        try:
            self._s3.delete_object(Bucket=self._bucket, Key=self._key)
        except (ClientError, BotoCoreError) as e:
            raise SessionStorageUnavailable(f"S3 delete of {self._uri} failed") from e


__all__ = [
    "FileSessionStorage",
    "S3SessionStorage",
    "SessionStorage",
    "SessionStorageError",
    "SessionStorageUnavailable",
]
