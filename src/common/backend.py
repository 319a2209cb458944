from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from identity.nip98 import build_auth_header
from identity.service import SignerService, get_signer_service
from identity.signers import SignerError
from tasks.models import EncryptedPayload, SearchResult, TaskStatusResponse

from .config import DEFAULT_API_URL


logger = logging.getLogger(__name__)

_RETRY_STATUSES = (429, 500, 502, 503, 504)


class BackendError(RuntimeError):
    """Base error for backend client."""


class TaskTransportError(BackendError):
    """Network failure or unexpected HTTP status talking to the backend."""


class TaskNotFound(BackendError):
    """The backend no longer knows the task (404); a normal terminal condition."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class AuthenticationRequired(BackendError):
    """The backend rejected the request with 401."""


class BackendClient:
    """
    Async client for the search endpoints of the dashboard backend.

    Notes
    - Authorization is a NIP-98 `Nostr <base64 event>` header signed by the
      active signer when `enable_authentication` is on, else `Bearer <api_key>`
      when a key is configured.
    - Submit, save and pending-list requests retry transport errors, 429 and
      5xx with backoff. Status polls are never retried: the caller decides.
    - A 401 raises `AuthenticationRequired` after calling `on_unauthorized`.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        *,
        enable_authentication: bool = False,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        max_attempts: int = 4,
        backoff: float = 0.5,
        service: Optional[SignerService] = None,
        on_unauthorized: Optional[Callable[[], Any]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._enable_auth = enable_authentication
        self._api_key = api_key
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff
        self._service = service
        self._on_unauthorized = on_unauthorized
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def base_url(self) -> str:
        return self._base_url

    # --------------- Public API ---------------
    async def submit_search(self, message: str, group_id: str, **extra: Any) -> str:
        """
        POST /api/search. Returns the new task id.

        `extra` carries optional request fields (`conversation`, `urls`, `model_id`).
        """
        body = {"message": message, "group_id": group_id, **_drop_none(extra)}
        data = await self._request("POST", "/api/search", json_body=body, retry=True)
        task_id = data.get("id") if isinstance(data, dict) else None
        if not task_id:
            raise TaskTransportError("Backend did not return a task id")
        return str(task_id)

    async def search_status(self, task_id: str) -> TaskStatusResponse:
        """GET /api/search/{id}/status; raises TaskNotFound on 404."""
        data = await self._request("GET", f"/api/search/{task_id}/status", task_id=task_id)
        return _validate(TaskStatusResponse, data)

    async def pending_searches(self) -> List[TaskStatusResponse]:
        data = await self._request("GET", "/api/search/pending", retry=True)
        if isinstance(data, dict):
            data = data.get("searches", [])
        return _validate(_STATUS_LIST, data)

    async def save_search(self, payload: EncryptedPayload, group_id: str = "") -> Optional[SearchResult]:
        """POST /api/search/save with ciphertext only."""
        body = {**payload.model_dump(), "group_id": group_id}
        data = await self._request("POST", "/api/search/save", json_body=body, retry=True)
        if isinstance(data, dict) and "id" in data and "response" in data:
            return _validate(SearchResult, data)
        return None

    async def temporary_search(self, message: str, group_id: str, **extra: Any) -> SearchResult:
        """POST /api/search/temporary: run a search without storing it server-side."""
        body = {"message": message, "group_id": group_id, **_drop_none(extra)}
        data = await self._request("POST", "/api/search/temporary", json_body=body)
        return _validate(SearchResult, data)

    # --------------- Internal ---------------
    async def _headers(self, method: str, path: str) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._enable_auth:
            service = self._service or get_signer_service()
            if service.is_authenticated:
                try:
                    headers["Authorization"] = await build_auth_header(
                        service.signer, f"{self._base_url}{path}", method
                    )
                except SignerError as exc:
                    logger.warning("Failed to create NIP-98 authentication: %s", exc)
        elif self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        retry: bool = False,
        task_id: Optional[str] = None,
    ) -> Any:
        attempts = self._max_attempts if retry else 1
        attempt = 0
        backoff = self._backoff
        last_exc: Optional[Exception] = None
        while attempt < attempts:
            headers = await self._headers(method, path)
            try:
                resp = await self._client.request(method, path, json=json_body, headers=headers)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if 200 <= resp.status_code < 300:
                    if not resp.content:
                        return None
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise TaskTransportError(f"Invalid JSON from {method} {path}") from exc
                if resp.status_code == 404 and task_id is not None:
                    raise TaskNotFound(task_id)
                if resp.status_code == 401:
                    await self._unauthorized()
                    raise AuthenticationRequired(f"401 from {method} {path}")
                if resp.status_code in _RETRY_STATUSES:
                    last_exc = TaskTransportError(f"HTTP {resp.status_code} from {method} {path}")
                else:
                    raise TaskTransportError(
                        f"HTTP {resp.status_code} from {method} {path}: {resp.text[:200]}"
                    )

            # Retry path
            attempt += 1
            if attempt < attempts:
                logger.debug("Retrying %s %s (attempt %d): %s", method, path, attempt + 1, last_exc)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        if isinstance(last_exc, TaskTransportError):
            raise last_exc
        raise TaskTransportError(f"{method} {path} failed: {last_exc}") from last_exc

    async def _unauthorized(self) -> None:
        if self._on_unauthorized is None or not self._enable_auth:
            return
        try:
            result = self._on_unauthorized()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Unauthorized handler failed")


_STATUS_LIST = TypeAdapter(List[TaskStatusResponse])


def _drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


def _validate(model: Any, data: Any) -> Any:
    try:
        if isinstance(model, TypeAdapter):
            return model.validate_python(data)
        return model.model_validate(data)
    except ValidationError as exc:
        raise TaskTransportError(f"Unexpected response shape: {exc}") from exc


__all__ = [
    "AuthenticationRequired",
    "BackendClient",
    "BackendError",
    "TaskNotFound",
    "TaskTransportError",
]
