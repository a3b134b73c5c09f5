# service/signal_store.py
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from models.signaling import SignalingMessage, now_ms

logger = logging.getLogger("signal_store")

DEFAULT_RETENTION_SECONDS = 30 * 60
DEFAULT_SWEEP_INTERVAL = 60

Listener = Callable[[SignalingMessage], None]


@dataclass
class StoredSignal:
    seq: int
    stored_at: int
    message: SignalingMessage


class SignalStore:
    """Shared message store scoped by session id.

    Entries are kept in publish order with a store-wide monotonic sequence
    number. Readers receive snapshots, so a slow reader never holds the lock
    while a writer waits. Listeners registered per session are pushed every new
    entry synchronously after the lock is released.

    Retention is measured from the store's own clock at the time an entry was
    stored; the sender's ``time`` field is advisory. Every ``sweep_interval``
    seconds a write also sweeps expired entries of all sessions, so sessions
    nobody polls any more are dropped too.
    """

    def __init__(self, retention_seconds: float = DEFAULT_RETENTION_SECONDS,
                 sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
                 clock: Callable[[], int] = now_ms):
        self.retention_seconds = retention_seconds
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, "OrderedDict[str, StoredSignal]"] = {}
        self._listeners: Dict[str, List[Listener]] = {}
        self._seq = 0
        self._last_sweep = clock()

    def put(self, message: SignalingMessage) -> int:
        now = self.clock()
        with self._lock:
            self._seq += 1
            entries = self._sessions.setdefault(message.session_id, OrderedDict())
            # Re-publishing an id moves it to the end so later readers see it again.
            entries.pop(message.message_id, None)
            entries[message.message_id] = StoredSignal(self._seq, now, message)
            seq = self._seq
            listeners = list(self._listeners.get(message.session_id, ()))
            sweep_due = now - self._last_sweep >= self.sweep_interval * 1000

        logger.debug(f"Stored {message.kind.value} {message.message_id} for session {message.session_id} (seq={seq})")
        if sweep_due:
            self.purge_all_expired(now)
        for listener in listeners:
            try:
                listener(message)
            except Exception as e:
                logger.error(f"Signal listener failed for session {message.session_id}: {e}", exc_info=True)
        return seq

    def list(self, session_id: str, after: int = 0) -> Tuple[List[SignalingMessage], int]:
        """Returns messages stored after ``after`` and the cursor to use next time."""
        with self._lock:
            entries = list(self._sessions.get(session_id, {}).values())
        messages = [e.message for e in entries if e.seq > after]
        cursor = max([after] + [e.seq for e in entries])
        return messages, cursor

    def _threshold(self, now: Optional[int]) -> int:
        return (now if now is not None else self.clock()) - int(self.retention_seconds * 1000)

    def _drop_expired(self, session_id: str, threshold: int) -> int:
        entries = self._sessions.get(session_id)
        if not entries:
            return 0
        expired = [k for k, e in entries.items() if e.stored_at < threshold]
        for message_id in expired:
            del entries[message_id]
        if not entries:
            del self._sessions[session_id]
        return len(expired)

    def purge_expired(self, session_id: str, now: Optional[int] = None) -> int:
        """Drops entries older than the retention window. Safe to skip."""
        threshold = self._threshold(now)
        with self._lock:
            removed = self._drop_expired(session_id, threshold)
        if removed:
            logger.info(f"Removed {removed} expired signal messages for session {session_id}")
        return removed

    def purge_all_expired(self, now: Optional[int] = None) -> int:
        """Sweeps every session, dropping sessions left with no entries."""
        now = now if now is not None else self.clock()
        threshold = self._threshold(now)
        with self._lock:
            self._last_sweep = now
            removed = sum(self._drop_expired(session_id, threshold) for session_id in list(self._sessions))
        if removed:
            logger.info(f"Swept {removed} expired signal messages")
        return removed

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def purge_session(self, session_id: str) -> int:
        with self._lock:
            entries = self._sessions.pop(session_id, None)
        removed = len(entries) if entries else 0
        logger.info(f"Purged {removed} signal messages for session {session_id}")
        return removed

    def add_listener(self, session_id: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(session_id, []).append(listener)

        def remove():
            with self._lock:
                listeners = self._listeners.get(session_id)
                if listeners and listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(session_id, None)

        return remove

    def status(self, session_id: str) -> Dict[str, object]:
        with self._lock:
            entries = list(self._sessions.get(session_id, {}).values())
        kinds: Dict[str, int] = {}
        for entry in entries:
            kinds[entry.message.kind.value] = kinds.get(entry.message.kind.value, 0) + 1
        return {
            "session_id": session_id,
            "message_count": len(entries),
            "kinds": kinds,
            "last_activity": max((e.stored_at for e in entries), default=None),
        }
