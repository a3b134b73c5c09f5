# service/signaling.py
import asyncio
import logging
from collections import deque
from typing import Any, Callable, Dict, Optional, Set

import httpx

from models.errors import SignalingDecodeError, TransportError
from models.signaling import SignalingMessage, decode_message
from service.signal_store import SignalStore

logger = logging.getLogger("signaling")

DEFAULT_HISTORY_CAP = 50
DEFAULT_POLL_INTERVAL = 1.0

Handler = Callable[[SignalingMessage], None]
CancelFunc = Callable[[], None]


class RecentIds:
    """Rolling window of the most recently observed message ids."""

    def __init__(self, cap: int = DEFAULT_HISTORY_CAP):
        self.cap = cap
        self._order: deque = deque()
        self._ids: Set[str] = set()

    def add(self, message_id: str) -> bool:
        """Records an id. Returns False if it was already in the window."""
        if message_id in self._ids:
            return False
        self._order.append(message_id)
        self._ids.add(message_id)
        while len(self._order) > self.cap:
            self._ids.discard(self._order.popleft())
        return True

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._order)

    def clear(self):
        self._order.clear()
        self._ids.clear()


class MessageBus:
    """Session-scoped publish/subscribe channel for signaling messages.

    Delivery is at-least-once with no ordering guarantee beyond best-effort
    publish order; subscribers see each message id once per subscription.
    """

    def __init__(self, sender_id: Optional[str] = None, history_cap: int = DEFAULT_HISTORY_CAP):
        self.sender_id = sender_id
        self.history_cap = history_cap
        self._published = RecentIds(history_cap)

    def publish(self, message: SignalingMessage) -> None:
        raise NotImplementedError

    def subscribe(self, session_id: str, handler: Handler) -> CancelFunc:
        raise NotImplementedError

    async def purge_session(self, session_id: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    def _make_delivery(self, session_id: str, handler: Handler) -> Handler:
        seen = RecentIds(self.history_cap)

        def deliver(message: SignalingMessage):
            if message.session_id != session_id:
                return
            if message.message_id in self._published:
                return
            if self.sender_id is not None and message.sender_id == self.sender_id:
                return
            if not seen.add(message.message_id):
                logger.debug(f"Skipping already delivered message {message.message_id}")
                return
            logger.debug(f"Received signal: {message.kind.value} for session {session_id}")
            try:
                handler(message)
            except Exception as e:
                logger.error(f"Signal handler failed for session {session_id}: {e}", exc_info=True)

        return deliver


def _once(func: Callable[[], None]) -> CancelFunc:
    called = False

    def cancel():
        nonlocal called
        if called:
            return
        called = True
        func()

    return cancel


class LocalMessageBus(MessageBus):
    """In-process bus that pushes messages synchronously through a shared store."""

    def __init__(self, store: SignalStore, sender_id: Optional[str] = None,
                 history_cap: int = DEFAULT_HISTORY_CAP):
        super().__init__(sender_id, history_cap)
        self.store = store

    def publish(self, message: SignalingMessage) -> None:
        self._published.add(message.message_id)
        try:
            self.store.put(message)
            logger.info(f"Signal sent: {message.kind.value} for session {message.session_id}")
        except Exception as e:
            logger.error(f"Publishing {message.kind.value} for session {message.session_id} failed: {e}",
                         exc_info=True)

    def subscribe(self, session_id: str, handler: Handler) -> CancelFunc:
        self.store.purge_expired(session_id)
        deliver = self._make_delivery(session_id, handler)
        remove = self.store.add_listener(session_id, deliver)
        backlog, _ = self.store.list(session_id)
        for message in backlog:
            deliver(message)
        return _once(remove)

    async def purge_session(self, session_id: str) -> None:
        self.store.purge_session(session_id)
        self._published.clear()


class HttpMessageBus(MessageBus):
    """Bus backed by the signaling server's shared store, polled over HTTP."""

    def __init__(self, base_url: str, sender_id: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 history_cap: int = DEFAULT_HISTORY_CAP,
                 flush_timeout: float = 2.0):
        super().__init__(sender_id, history_cap)
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.flush_timeout = flush_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._pending: Dict[str, Set[asyncio.Task]] = {}
        self._polls: Set[asyncio.Task] = set()

    def _url(self, session_id: str) -> str:
        return f"{self.base_url}/signaling/{session_id}/messages"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

    def publish(self, message: SignalingMessage) -> None:
        self._published.add(message.message_id)
        task = asyncio.ensure_future(self._post(message))
        pending = self._pending.setdefault(message.session_id, set())
        pending.add(task)
        task.add_done_callback(pending.discard)

    async def _post(self, message: SignalingMessage):
        try:
            await self._request("POST", self._url(message.session_id), json=message.to_wire())
            logger.info(f"Signal sent: {message.kind.value} for session {message.session_id}")
        except TransportError as e:
            logger.warning(f"Signal {message.kind.value} not delivered: {e}")

    def subscribe(self, session_id: str, handler: Handler) -> CancelFunc:
        deliver = self._make_delivery(session_id, handler)
        task = asyncio.ensure_future(self._poll(session_id, deliver))
        self._polls.add(task)
        task.add_done_callback(self._polls.discard)
        return _once(task.cancel)

    async def fetch(self, session_id: str, after: int = 0) -> Dict[str, Any]:
        url = self._url(session_id)
        resp = await self._request("GET", url, params={"after": after})
        try:
            page = resp.json()
        except ValueError as e:
            raise TransportError(f"GET {url} returned a non-JSON body: {e}") from e
        if not isinstance(page, dict) or not isinstance(page.get("messages", []), list):
            raise TransportError(f"GET {url} returned an unexpected page: {str(page)[:100]}")
        return page

    async def _poll_once(self, session_id: str, cursor: int, deliver: Handler) -> int:
        page = await self.fetch(session_id, cursor)
        for raw in page.get("messages", []):
            try:
                message = decode_message(raw)
            except SignalingDecodeError as e:
                logger.warning(f"Dropping signal for session {session_id}: {e}")
                continue
            deliver(message)
        return int(page.get("cursor", cursor))

    async def _poll(self, session_id: str, deliver: Handler):
        cursor = 0
        while True:
            try:
                cursor = await self._poll_once(session_id, cursor, deliver)
            except TransportError as e:
                logger.warning(f"Polling session {session_id} failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected error polling session {session_id}: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def _flush(self, session_id: str):
        pending = list(self._pending.get(session_id, ()))
        if pending:
            await asyncio.wait(pending, timeout=self.flush_timeout)

    async def purge_session(self, session_id: str) -> None:
        await self._flush(session_id)
        try:
            await self._request("DELETE", self._url(session_id))
        except TransportError as e:
            logger.warning(f"Purging session {session_id} failed: {e}")
        self._published.clear()

    async def close(self) -> None:
        for task in list(self._polls):
            task.cancel()
        for session_id in list(self._pending):
            await self._flush(session_id)
        if self._owns_client:
            await self._client.aclose()
