from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Set, Tuple

import aiohttp
from pydantic import ValidationError

from .events import NostrEvent, verify_event


logger = logging.getLogger(__name__)

EventHandler = Callable[[NostrEvent], None]
CloseListener = Callable[[Optional[BaseException]], None]


class RelayError(RuntimeError):
    """Relay transport failure (no relay reachable, or every relay dropped)."""


class RelayTransport(Protocol):
    """Minimal relay pool contract used by the remote-signer session."""

    relays: List[str]

    async def connect(self) -> None: ...

    async def subscribe(self, sub_id: str, filters: List[Dict[str, Any]], on_event: EventHandler) -> None: ...

    async def publish(self, event: NostrEvent) -> None: ...

    def on_close(self, listener: CloseListener) -> None: ...

    async def close(self) -> None: ...


class WebSocketRelayPool:
    """
    Relay pool over aiohttp websockets.

    - Connects to every relay; succeeds when at least one is reachable.
    - Fans out REQ/EVENT frames to every open relay.
    - Verifies and de-duplicates incoming events before dispatching.
    - Notifies close listeners once, when the last relay drops.
    """

    def __init__(
        self,
        relays: List[str],
        *,
        session: Optional[aiohttp.ClientSession] = None,
        heartbeat: float = 30.0,
        connect_timeout: float = 10.0,
    ) -> None:
        if not relays:
            raise ValueError("at least one relay is required")
        self.relays = list(relays)
        self._owns_session = session is None
        self._session = session
        self._heartbeat = heartbeat
        self._connect_timeout = connect_timeout
        self._sockets: Dict[str, aiohttp.ClientWebSocketResponse] = {}
        self._readers: Dict[str, asyncio.Task] = {}
        self._subs: Dict[str, Tuple[List[Dict[str, Any]], EventHandler]] = {}
        self._listeners: List[CloseListener] = []
        self._seen: Set[str] = set()
        self._seen_order: Deque[str] = deque()
        self._closing = False
        self._notified = False

    # --------------- Public API ---------------
    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        results = await asyncio.gather(*(self._open(url) for url in self.relays), return_exceptions=True)
        failures = [(url, r) for url, r in zip(self.relays, results) if isinstance(r, BaseException)]
        for url, exc in failures:
            logger.warning("Relay %s unreachable: %s", url, exc)
        if not self._sockets:
            await self.close()
            raise RelayError("Could not connect to any relay")

    async def subscribe(self, sub_id: str, filters: List[Dict[str, Any]], on_event: EventHandler) -> None:
        self._subs[sub_id] = (filters, on_event)
        await self._broadcast(["REQ", sub_id, *filters])

    async def publish(self, event: NostrEvent) -> None:
        await self._broadcast(["EVENT", event.model_dump()])

    def on_close(self, listener: CloseListener) -> None:
        self._listeners.append(listener)

    async def close(self) -> None:
        self._closing = True
        for sub_id in list(self._subs):
            for ws in list(self._sockets.values()):
                try:
                    await ws.send_str(json.dumps(["CLOSE", sub_id]))
                except (aiohttp.ClientError, ConnectionError, RuntimeError):
                    pass
        self._subs.clear()
        for ws in list(self._sockets.values()):
            await ws.close()
        self._sockets.clear()
        for task in list(self._readers.values()):
            task.cancel()
        self._readers.clear()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # --------------- Internal ---------------
    async def _open(self, url: str) -> None:
        assert self._session is not None
        ws = await asyncio.wait_for(
            self._session.ws_connect(url, heartbeat=self._heartbeat),
            timeout=self._connect_timeout,
        )
        self._sockets[url] = ws
        self._readers[url] = asyncio.create_task(self._read(url, ws))
        logger.debug("Connected to relay %s", url)

    async def _broadcast(self, frame: List[Any]) -> None:
        if not self._sockets:
            raise RelayError("No open relay connection")
        data = json.dumps(frame)
        sent = 0
        for url, ws in list(self._sockets.items()):
            try:
                await ws.send_str(data)
                sent += 1
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                logger.warning("Send to relay %s failed: %s", url, exc)
        if sent == 0:
            raise RelayError("Failed to send to any relay")

    async def _read(self, url: str, ws: aiohttp.ClientWebSocketResponse) -> None:
        error: Optional[BaseException] = None
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_frame(url, msg.data)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    error = ws.exception()
                    break
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, ConnectionError) as exc:
            error = exc
        self._sockets.pop(url, None)
        self._readers.pop(url, None)
        if self._closing:
            return
        logger.warning("Relay %s disconnected%s", url, f": {error}" if error else "")
        if not self._sockets:
            self._notify_closed(RelayError(f"All relays disconnected (last: {url})"))

    def _handle_frame(self, url: str, data: str) -> None:
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON frame from %s", url)
            return
        if not isinstance(frame, list) or not frame:
            return
        kind = frame[0]
        if kind == "EVENT" and len(frame) >= 3:
            sub = self._subs.get(frame[1])
            if sub is None:
                return
            try:
                event = NostrEvent.model_validate(frame[2])
            except ValidationError:
                logger.debug("Malformed event from %s", url)
                return
            if event.id in self._seen or not verify_event(event):
                return
            self._remember(event.id)
            try:
                sub[1](event)
            except Exception:
                logger.exception("Event handler failed for subscription %s", frame[1])
        elif kind in ("NOTICE", "CLOSED"):
            logger.info("Relay %s says %s: %s", url, kind, frame[1:])
        else:
            logger.debug("Relay %s frame %s", url, kind)

    def _remember(self, event_id: str) -> None:
        self._seen.add(event_id)
        self._seen_order.append(event_id)
        if len(self._seen_order) > 2048:
            self._seen.discard(self._seen_order.popleft())

    def _notify_closed(self, exc: Optional[BaseException]) -> None:
        if self._notified:
            return
        self._notified = True
        for listener in list(self._listeners):
            try:
                listener(exc)
            except Exception:
                logger.exception("Relay close listener failed")


__all__ = [
    "RelayError",
    "RelayTransport",
    "WebSocketRelayPool",
]
