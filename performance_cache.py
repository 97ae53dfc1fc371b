"""
Key/value caching with TTL support
Used for subscription lookups and crypto price quotes
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Callable

logger = logging.getLogger(__name__)

class KeyValueStore(ABC):
    """Key/value store with per-entry expiry"""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class SimpleCache(KeyValueStore):
    """Simple in-memory cache with TTL support"""

    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.monotonic):
        self.cache: Dict[str, Dict[str, Any]] = {}
        self.default_ttl = default_ttl
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        """Get cached value"""
        entry = self.cache.get(key)
        if entry is None:
            return None
        if entry['expires'] > self._clock():
            return entry['value']
        # Expired, remove it
        self.cache.pop(key, None)
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set cached value"""
        ttl = ttl or self.default_ttl
        now = self._clock()
        self.cache[key] = {
            'value': value,
            'expires': now + ttl,
            'created': now
        }

    def delete(self, key: str) -> None:
        """Delete cached value"""
        self.cache.pop(key, None)

    def clear(self) -> None:
        """Clear all cached values"""
        self.cache.clear()

    def cleanup_expired(self) -> int:
        """Remove expired entries"""
        current_time = self._clock()
        expired_keys = [
            key for key, entry in self.cache.items()
            if entry['expires'] <= current_time
        ]
        for key in expired_keys:
            del self.cache[key]
        if expired_keys:
            logger.debug(f"🧹 Cache cleanup removed {len(expired_keys)} expired entries")
        return len(expired_keys)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        return {
            'total_entries': len(self.cache),
            'cleanup_count': self.cleanup_expired()
        }
