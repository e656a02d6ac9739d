import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TtlCache:
    """Key/value store with per-entry expiry, checked lazily on access.

    There is no background sweep and no size bound: an expired entry stays in
    memory until the next ``get``/``has`` on its key. Meant to be used from a
    single event loop; it does no locking.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[Hashable, _Entry] = {}

    def set(self, key: Hashable, value: Any, ttl: float) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl)

    def get(self, key: Hashable, default: Any = MISS) -> Any:
        entry = self._live_entry(key)
        return default if entry is None else entry.value

    def has(self, key: Hashable) -> bool:
        return self._live_entry(key) is not None

    def remove(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def _live_entry(self, key: Hashable):
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def __len__(self) -> int:
        return len(self._entries)
