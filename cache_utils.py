import copy
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

# Mutator return markers for update()
KEEP = object()
DELETE = object()

Mutator = Callable[[Optional[Any]], Tuple[Any, Any]]


class KeyValueStoreError(Exception):
    """Raised when the shared key-value backend cannot serve a request"""


class LocalKeyValueStore:
    """Thread-safe TTL store for a single instance"""

    backend = 'local'

    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.time):
        self._cache: Dict[str, tuple] = {}
        self._lock = threading.RLock()
        self.default_ttl = default_ttl
        self.clock = clock
        self.stats = {'hits': 0, 'misses': 0}

    def _live(self, key: str) -> Optional[tuple]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self.clock() >= entry[1]:
            del self._cache[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[float]) -> float:
        return self.clock() + (ttl or self.default_ttl)

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired"""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self.stats['misses'] += 1
                return None
            self.stats['hits'] += 1
            return copy.deepcopy(entry[0])

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._cache[key] = (copy.deepcopy(value), self._expiry(ttl))

    def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def update(self, key: str, mutator: Mutator, ttl: Optional[float] = None) -> Any:
        """Read, mutate and write one key as a single step under the lock."""
        with self._lock:
            entry = self._live(key)
            current = copy.deepcopy(entry[0]) if entry else None
            new_value, result = mutator(current)
            if new_value is DELETE:
                self._cache.pop(key, None)
            elif new_value is not KEEP:
                self._cache[key] = (copy.deepcopy(new_value), self._expiry(ttl))
            return result

    def rpush(self, key: str, values: List[Any], ttl: Optional[float] = None) -> int:
        with self._lock:
            entry = self._live(key)
            items = entry[0] if entry else []
            items.extend(copy.deepcopy(values))
            self._cache[key] = (items, self._expiry(ttl))
            return len(items)

    def lpush(self, key: str, values: List[Any], ttl: Optional[float] = None) -> int:
        """Put values back at the head, first value first"""
        with self._lock:
            entry = self._live(key)
            items = entry[0] if entry else []
            items[:0] = copy.deepcopy(values)
            self._cache[key] = (items, self._expiry(ttl))
            return len(items)

    def lpop(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
            if not entry or not entry[0]:
                return None
            items = entry[0]
            value = items.pop(0)
            if not items:
                del self._cache[key]
            return value

    def llen(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            return len(entry[0]) if entry else 0

    def cleanup(self) -> int:
        """Remove expired entries, return count removed"""
        removed = 0
        with self._lock:
            now = self.clock()
            expired_keys = [k for k, (_, exp) in self._cache.items() if now >= exp]
            for key in expired_keys:
                del self._cache[key]
                removed += 1
        return removed

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.stats['hits'] + self.stats['misses']
            hit_rate = (self.stats['hits'] / total * 100) if total > 0 else 0
            return {
                'backend': self.backend,
                'hits': self.stats['hits'],
                'misses': self.stats['misses'],
                'hit_rate': f"{hit_rate:.1f}%",
                'size': len(self._cache)
            }


class RedisKeyValueStore:
    """Shared store for multi-instance deployments. Values are JSON encoded."""

    backend = 'redis'

    def __init__(self, client: redis.Redis, default_ttl: int = 300, namespace: str = 'quiz'):
        self.redis = client
        self.default_ttl = default_ttl
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _ttl_ms(self, ttl: Optional[float]) -> int:
        return max(1, int((ttl or self.default_ttl) * 1000))

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError as e:
            raise KeyValueStoreError(str(e)) from e

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.redis.get(self._key(key))
        except redis.RedisError as e:
            raise KeyValueStoreError(str(e)) from e
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        try:
            self.redis.set(self._key(key), json.dumps(value), px=self._ttl_ms(ttl))
        except redis.RedisError as e:
            raise KeyValueStoreError(str(e)) from e

    def delete(self, key: str) -> None:
        try:
            self.redis.delete(self._key(key))
        except redis.RedisError as e:
            raise KeyValueStoreError(str(e)) from e

    def update(self, key: str, mutator: Mutator, ttl: Optional[float] = None) -> Any:
        """WATCH/MULTI transaction; redis-py retries the callable on conflicting writes."""
        full_key = self._key(key)

        def _transaction(pipe):
            raw = pipe.get(full_key)
            current = json.loads(raw) if raw is not None else None
            new_value, result = mutator(current)
            pipe.multi()
            if new_value is DELETE:
                pipe.delete(full_key)
            elif new_value is not KEEP:
                pipe.set(full_key, json.dumps(new_value), px=self._ttl_ms(ttl))
            return result

        try:
            return self.redis.transaction(_transaction, full_key, value_from_callable=True)
        except redis.RedisError as e:
            raise KeyValueStoreError(str(e)) from e

    def rpush(self, key: str, values: List[Any], ttl: Optional[float] = None) -> int:
        full_key = self._key(key)
        try:
            pipe = self.redis.pipeline()
            pipe.rpush(full_key, *[json.dumps(v) for v in values])
            pipe.pexpire(full_key, self._ttl_ms(ttl))
            results = pipe.execute()
        except redis.RedisError as e:
            raise KeyValueStoreError(str(e)) from e
        return int(results[0])

    def lpush(self, key: str, values: List[Any], ttl: Optional[float] = None) -> int:
        full_key = self._key(key)
        try:
            pipe = self.redis.pipeline()
            # LPUSH inserts one by one, so reverse to keep the given order at the head
            pipe.lpush(full_key, *[json.dumps(v) for v in reversed(values)])
            pipe.pexpire(full_key, self._ttl_ms(ttl))
            results = pipe.execute()
        except redis.RedisError as e:
            raise KeyValueStoreError(str(e)) from e
        return int(results[0])

    def lpop(self, key: str) -> Optional[Any]:
        try:
            raw = self.redis.lpop(self._key(key))
        except redis.RedisError as e:
            raise KeyValueStoreError(str(e)) from e
        return json.loads(raw) if raw is not None else None

    def llen(self, key: str) -> int:
        try:
            return int(self.redis.llen(self._key(key)))
        except redis.RedisError as e:
            raise KeyValueStoreError(str(e)) from e

    def cleanup(self) -> int:
        # Redis expires keys on its own
        return 0

    def get_stats(self) -> Dict[str, Any]:
        return {'backend': self.backend, 'namespace': self.namespace}


def get_kv_store(redis_url: Optional[str] = None, default_ttl: int = 300):
    """Shared Redis store when reachable, otherwise single-instance local memory."""
    if not redis_url:
        logger.info("📦 REDIS_URL not set - using local memory key-value store")
        return LocalKeyValueStore(default_ttl=default_ttl)

    try:
        client = redis.Redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=3)
        client.ping()
        logger.info("✅ Connected to Redis key-value store")
        return RedisKeyValueStore(client, default_ttl=default_ttl)
    except (redis.RedisError, OSError) as e:
        logger.warning(f"⚠️ Redis unavailable ({e}) - falling back to local memory (single instance)")
        return LocalKeyValueStore(default_ttl=default_ttl)


class ExpirySweeper(threading.Thread):
    """Background cleanup of expired entries. Callers still check expiry on read."""

    def __init__(self, store, interval: float = 60):
        super().__init__(name='kv-expiry-sweeper', daemon=True)
        self.store = store
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            self.sweep()

    def sweep(self) -> int:
        try:
            removed = self.store.cleanup()
        except KeyValueStoreError as e:
            logger.warning(f"⚠️ Expiry sweep failed: {e}")
            return 0
        if removed:
            logger.debug(f"Expiry sweep removed {removed} entries")
        return removed

    def stop(self):
        self._stop_event.set()
