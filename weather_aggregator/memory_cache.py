"""
In-process cache with per-key TTL.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from weather_aggregator.config import CacheConfig

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class MemoryCache:
    """
    Dictionary-backed cache with one expiry timer per key.

    Timers are scheduled on the running event loop. Each entry also keeps its
    deadline, so an entry whose timer never fired is still treated as expired.
    """

    def __init__(self):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def set(self, key: str, value: Any, ttl_ms: int = CacheConfig.DEFAULT_TTL_MS):
        """Store a value, replacing any existing entry and timer."""
        self._cancel_timer(key)

        now = _now_ms()
        self._entries[key] = {
            "value": value,
            "timestamp": now,
            "expires_at": now + ttl_ms,
        }

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timers[key] = loop.call_later(ttl_ms / 1000, self.delete, key)

    def get(self, key: str) -> Optional[Any]:
        entry = self._live_entry(key)
        return entry["value"] if entry else None

    def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        self._cancel_timer(key)
        return self._entries.pop(key, None) is not None

    def clear(self):
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._entries.clear()

    def size(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        self._evict_expired()
        now = _now_ms()
        return {
            "size": len(self._entries),
            "keys": list(self._entries),
            "timestamps": [
                {"timestamp": entry["timestamp"], "age": now - entry["timestamp"]}
                for entry in self._entries.values()
            ],
        }

    def _live_entry(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry["expires_at"] <= _now_ms():
            logger.debug("Cache entry expired for %s", key)
            self.delete(key)
            return None
        return entry

    def _evict_expired(self):
        now = _now_ms()
        for key in [k for k, e in self._entries.items() if e["expires_at"] <= now]:
            self.delete(key)

    def _cancel_timer(self, key: str):
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
