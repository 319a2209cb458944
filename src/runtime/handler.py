from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from common.backend import BackendClient
from common.config import ENV_SESSION_FERNET_KEY, ClientConfig, _require
from identity.bunker import TransportFactory
from identity.service import SignerService, get_signer_service
from session.storage import FileSessionStorage, S3SessionStorage, SessionStorage
from session.store import SessionStore
from tasks.encryption import EncryptionService
from tasks.manager import TaskManager
from tasks.registry import TaskRegistry


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything `start()` wired together, plus orderly shutdown."""

    config: ClientConfig
    service: SignerService
    session: SessionStore
    backend: BackendClient
    registry: TaskRegistry
    encryption: EncryptionService
    manager: TaskManager

    async def aclose(self) -> None:
        """Stop polling and release connections; the stored session is kept for the next start."""
        await self.manager.shutdown()
        await self.backend.aclose()
        signer = self.service.deactivate()
        if signer is not None:
            await signer.close()


def build_storage(config: ClientConfig) -> SessionStorage:
    if config.session_bucket:
        fernet_key = _require(config.session_fernet_key, ENV_SESSION_FERNET_KEY)
        return S3SessionStorage(
            bucket=config.session_bucket,
            key=_require(config.session_key, "session key"),
            fernet_key=fernet_key,
        )
    return FileSessionStorage(config.session_path, fernet_key=config.session_fernet_key)


async def start(
    config: Optional[ClientConfig] = None,
    *,
    provider: Any = None,
    storage: Optional[SessionStorage] = None,
    service: Optional[SignerService] = None,
    transport_factory: Optional[TransportFactory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Runtime:
    """
    Build the client core and bring it up once.

    - Resolves configuration from env when `config` is None.
    - Restores the stored session (extension sessions need `provider`).
    - Re-attaches polling for the backend's pending tasks when a user is
      logged in, or when the backend does not require authentication.
    """
    cfg = config or ClientConfig.from_env()
    svc = service or get_signer_service()
    session = SessionStore(
        storage or build_storage(cfg),
        service=svc,
        transport_factory=transport_factory,
    )
    backend = BackendClient(
        cfg.api_url,
        enable_authentication=cfg.enable_authentication,
        api_key=cfg.api_key,
        timeout=cfg.http_timeout,
        service=svc,
        on_unauthorized=session.logout,
        client=http_client,
    )
    registry = TaskRegistry()
    encryption = EncryptionService(svc)
    manager = TaskManager(
        backend,
        registry,
        encryption,
        poll_interval=cfg.poll_interval,
        grace_delay=cfg.grace_delay,
    )
    runtime = Runtime(
        config=cfg,
        service=svc,
        session=session,
        backend=backend,
        registry=registry,
        encryption=encryption,
        manager=manager,
    )

    identity = await session.restore(provider)
    if identity is not None or not cfg.enable_authentication:
        try:
            await manager.restore_pending()
        except Exception:
            await runtime.aclose()
            raise
    logger.info(
        "Client core started (api=%s, authenticated=%s)",
        cfg.api_url,
        svc.is_authenticated,
    )
    return runtime


__all__ = ["Runtime", "build_storage", "start"]
