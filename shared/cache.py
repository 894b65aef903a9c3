import time
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    inserted_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return (now - self.inserted_at) < self.ttl


class TTLCache:
    """
    Process-wide pull-through cache for slow upstream reads.

    Entries keep their value after expiry so a failed refresh can still
    serve the last good response.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock()):
            return False, None
        return True, entry.value

    def get_stale(self, key: Hashable) -> Tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        return True, entry.value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None):
        self._entries[key] = CacheEntry(value=value, inserted_at=self._clock(), ttl=ttl if ttl is not None else self.ttl)

    def clear(self):
        self._entries.clear()

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        hit, value = self.get(key)
        if hit:
            logger.info("Cache hit", extra={"target": str(key)})
            return value

        try:
            value = await loader()
        except Exception:
            stale_hit, stale_value = self.get_stale(key)
            if stale_hit:
                logger.warning("Serving stale cache entry after load failure", extra={"target": str(key)}, exc_info=True)
                return stale_value
            raise

        self.set(key, value)
        return value
