import threading
from typing import Any

from compliance_vault.utils.clock import Clock


class KeyValueCache:
    """In-process key/value store with per-entry expiry."""

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or Clock()
        self._entries: dict[str, tuple[Any, float]] = {}  # key -> (value, expires_at)
        self._lock = threading.Lock()

    def _cleanup_expired(self):
        now = self._clock.now().timestamp()
        self._entries = {k: v for k, v in self._entries.items() if v[1] > now}

    def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._cleanup_expired()
            self._entries[key] = (value, self._clock.now().timestamp() + ttl_seconds)

    def get(self, key: str) -> Any | None:
        with self._lock:
            self._cleanup_expired()
            entry = self._entries.get(key)
            return entry[0] if entry else None

    def forget(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
