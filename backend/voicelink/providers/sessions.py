import threading
import time


class ChatSessionStore:
    """Thread-safe in-memory map of widget session -> vendor chat id.

    Entries expire after ``ttl_seconds``. Expired entries are dropped lazily
    on read and by ``purge_expired``.
    """

    def __init__(self, ttl_seconds: float = 86400, clock=time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._store: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, chat_id: str) -> None:
        with self._lock:
            self._store[key] = (chat_id, self._clock() + self._ttl)

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            chat_id, expires_at = entry
            if expires_at <= self._clock():
                del self._store[key]
                return None
            return chat_id

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._store.items() if expires_at <= now]
            for key in expired:
                del self._store[key]
            return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._store)
