from __future__ import annotations

import asyncio
import base64
import json

import httpx
import pytest

from common.backend import AuthenticationRequired, BackendClient, TaskNotFound, TaskTransportError
from identity.events import NostrEvent, verify_event
from identity.keys import generate_keypair
from identity.service import SignerService
from identity.signers import LocalKeySigner
from tasks.models import EncryptedPayload, TaskStatus

BASE = "http://backend.test"


def _client(handler, **kwargs) -> BackendClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE, timeout=5.0)
    return BackendClient(BASE, client=http, backoff=0.0, **kwargs)


def _run(coro_fn):
    async def go():
        return await coro_fn()

    return asyncio.run(go())


def test_submit_posts_message_and_group():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"id": "t-1", "query": "q", "response": {"message": ""}, "created_at": "x"})

    client = _client(handler, api_key="k-123")
    task_id = _run(lambda: client.submit_search("q", "g-1", urls=["https://x"], model_id=None))

    assert task_id == "t-1"
    assert seen["method"] == "POST" and seen["path"] == "/api/search"
    assert seen["body"] == {"message": "q", "group_id": "g-1", "urls": ["https://x"]}
    assert seen["auth"] == "Bearer k-123"


def test_submit_retries_transient_errors():
    state = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        state["n"] += 1
        if state["n"] == 1:
            raise httpx.ConnectError("boom")
        if state["n"] == 2:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"id": "t-2"})

    assert _run(lambda: _client(handler).submit_search("q", "g")) == "t-2"
    assert state["n"] == 3


def test_submit_gives_up_after_max_attempts():
    state = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        state["n"] += 1
        return httpx.Response(500, text="down")

    with pytest.raises(TaskTransportError):
        _run(lambda: _client(handler, max_attempts=3).submit_search("q", "g"))
    assert state["n"] == 3


def test_status_parses_and_is_not_retried():
    state = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        state["n"] += 1
        assert request.url.path == "/api/search/t-1/status"
        return httpx.Response(
            200,
            json={
                "id": "t-1",
                "status": "completed",
                "query": "q",
                "completed_at": "2025-01-01T00:00:00Z",
                "response": {"message": "done", "sources": None},
            },
        )

    status = _run(lambda: _client(handler).search_status("t-1"))
    assert status.status is TaskStatus.COMPLETED
    assert status.response.message == "done"
    assert state["n"] == 1


def test_status_404_is_task_not_found():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "not found"})

    with pytest.raises(TaskNotFound) as ei:
        _run(lambda: _client(handler).search_status("gone"))
    assert ei.value.task_id == "gone"


def test_status_transport_error_is_single_attempt():
    state = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        state["n"] += 1
        raise httpx.ReadTimeout("slow")

    with pytest.raises(TaskTransportError):
        _run(lambda: _client(handler).search_status("t-1"))
    assert state["n"] == 1


def test_status_with_unknown_shape_is_transport_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "t-1", "status": "exploded"})

    with pytest.raises(TaskTransportError):
        _run(lambda: _client(handler).search_status("t-1"))


def test_pending_accepts_list_or_envelope():
    def as_list(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": "a", "status": "pending", "query": "q1", "group_id": "g"}])

    def as_envelope(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"searches": [{"id": "b", "status": "processing", "query": "q2"}]})

    assert [s.id for s in _run(lambda: _client(as_list).pending_searches())] == ["a"]
    assert [s.status for s in _run(lambda: _client(as_envelope).pending_searches())] == [TaskStatus.PROCESSING]


def test_save_sends_ciphertext_only():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "s-1", "query": "", "response": {"message": ""}, "group_id": "g"})

    payload = EncryptedPayload(encrypted_query="eq", encrypted_response="er", timestamp=1700000000000)
    result = _run(lambda: _client(handler).save_search(payload, "g"))

    assert seen["body"] == {
        "encrypted_query": "eq",
        "encrypted_response": "er",
        "timestamp": 1700000000000,
        "group_id": "g",
    }
    assert result.id == "s-1"


def test_nip98_header_when_authentication_enabled():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json=[])

    signer = LocalKeySigner(generate_keypair().secret_hex)
    service = SignerService()
    service.activate(asyncio.run(signer.get_public_key()), signer)
    _run(lambda: _client(handler, enable_authentication=True, api_key="ignored", service=service).pending_searches())

    scheme, token = seen["auth"].split(" ", 1)
    event = NostrEvent.model_validate(json.loads(base64.b64decode(token)))
    assert scheme == "Nostr"
    assert verify_event(event)
    assert event.tag_values("u") == [f"{BASE}/api/search/pending"]
    assert event.tag_values("method") == ["GET"]


def test_no_header_when_authentication_enabled_but_logged_out():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json=[])

    _run(lambda: _client(handler, enable_authentication=True, service=SignerService()).pending_searches())
    assert seen["auth"] is None


def test_401_calls_handler_and_raises():
    calls = []

    async def on_unauthorized():
        calls.append("logout")

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(401)

    client = _client(handler, enable_authentication=True, service=SignerService(), on_unauthorized=on_unauthorized)
    with pytest.raises(AuthenticationRequired):
        _run(lambda: client.submit_search("q", "g"))
    assert calls == ["logout"]
