import json
from typing import Any, Dict, Iterable, List, Optional, Set

import fakeredis
import redis
from redis.exceptions import RedisError

from constants import (
    REDIS_CONNECT_TIMEOUT,
    REDIS_ENABLED,
    REDIS_HOST,
    REDIS_PASSWORD,
    REDIS_PORT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)
from logging_config import get_logger
from services.errors import StoreUnavailable

logger = get_logger(__name__)


def encode_mapping(data: dict) -> Dict[str, str]:
    """Convert dict values to strings for a Redis hash, skipping None values."""
    encoded = {}
    for k, v in data.items():
        if v is None:
            continue
        if isinstance(v, (dict, list)):
            encoded[k] = json.dumps(v)
        else:
            encoded[k] = str(v)
    return encoded


class Store:
    """Key-value store capability used by the room coordination core.

    Hash, set and list primitives plus per-key expiry. Values are strings.
    """

    name = "store"

    def ping(self) -> bool:
        raise NotImplementedError

    def hset(self, key: str, mapping: Dict[str, str]) -> int:
        raise NotImplementedError

    def hget(self, key: str, field: str) -> Optional[str]:
        raise NotImplementedError

    def hgetall(self, key: str) -> Dict[str, str]:
        raise NotImplementedError

    def hdel(self, key: str, *fields: str) -> int:
        raise NotImplementedError

    def sadd(self, key: str, *members: str) -> int:
        raise NotImplementedError

    def srem(self, key: str, *members: str) -> int:
        raise NotImplementedError

    def smembers(self, key: str) -> Set[str]:
        raise NotImplementedError

    def scard(self, key: str) -> int:
        raise NotImplementedError

    def sismember(self, key: str, member: str) -> bool:
        raise NotImplementedError

    def rpush(self, key: str, *values: str) -> int:
        raise NotImplementedError

    def ltrim(self, key: str, start: int, end: int) -> bool:
        raise NotImplementedError

    def lrange(self, key: str, start: int, end: int) -> List[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        raise NotImplementedError

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, *keys: str) -> int:
        raise NotImplementedError

    def expire(self, key: str, ttl: int) -> bool:
        raise NotImplementedError


class RedisStore(Store):
    """Store backed by redis-py. Every client error becomes StoreUnavailable."""

    def __init__(self, client: redis.Redis, name: str = "redis"):
        self.redis_client = client
        self.name = name

    @classmethod
    def in_memory(cls) -> "RedisStore":
        """Volatile process-local store, an in-process fakeredis server."""
        client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
        return cls(client, name="memory")

    @classmethod
    def from_settings(cls) -> "RedisStore":
        if REDIS_URL:
            client = redis.Redis.from_url(
                REDIS_URL,
                decode_responses=True,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_CONNECT_TIMEOUT,
            )
            logger.info("Initializing RedisStore from REDIS_URL")
        else:
            client = redis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                password=REDIS_PASSWORD,
                decode_responses=True,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_CONNECT_TIMEOUT,
            )
            logger.info(f"Initializing RedisStore with connection to {REDIS_HOST}:{REDIS_PORT}")
        return cls(client)

    def _run(self, method: str, *args, **kwargs) -> Any:
        try:
            return getattr(self.redis_client, method)(*args, **kwargs)
        except RedisError as e:
            raise StoreUnavailable(f"redis {method} failed: {e}") from e

    def ping(self) -> bool:
        return bool(self._run("ping"))

    def hset(self, key, mapping):
        if not mapping:
            return 0
        return self._run("hset", key, mapping=mapping)

    def hget(self, key, field):
        return self._run("hget", key, field)

    def hgetall(self, key):
        return self._run("hgetall", key) or {}

    def hdel(self, key, *fields):
        if not fields:
            return 0
        return self._run("hdel", key, *fields)

    def sadd(self, key, *members):
        return self._run("sadd", key, *members)

    def srem(self, key, *members):
        return self._run("srem", key, *members)

    def smembers(self, key):
        return set(self._run("smembers", key) or ())

    def scard(self, key):
        return int(self._run("scard", key))

    def sismember(self, key, member):
        return bool(self._run("sismember", key, member))

    def rpush(self, key, *values):
        return self._run("rpush", key, *values)

    def ltrim(self, key, start, end):
        return bool(self._run("ltrim", key, start, end))

    def lrange(self, key, start, end):
        return list(self._run("lrange", key, start, end))

    def set(self, key, value, ttl=None):
        return bool(self._run("set", key, value, ex=ttl))

    def get(self, key):
        return self._run("get", key)

    def exists(self, key):
        return bool(self._run("exists", key))

    def delete(self, *keys):
        if not keys:
            return 0
        return self._run("delete", *keys)

    def expire(self, key, ttl):
        return bool(self._run("expire", key, ttl))
class FallbackStore(Store):
    """Routes calls to the durable store and falls back to memory when it is unreachable.

    Every successful write is mirrored into the volatile store, so the fallback
    holds the same live state when the durable store drops out. Once degraded
    the store stays on the fallback for the rest of the process; switching back
    would resurrect state the fallback has since changed.
    """

    def __init__(self, primary: Store, fallback: Optional[Store] = None):
        self.primary = primary
        self.fallback = fallback or RedisStore.in_memory()
        self.degraded = False

    @property
    def name(self) -> str:
        return self.fallback.name if self.degraded else self.primary.name

    def mark_degraded(self, reason: Exception) -> None:
        if not self.degraded:
            logger.warning(f"Durable store unavailable, using in-memory fallback until restart: {reason}")
        self.degraded = True

    def _read(self, method: str, *args):
        if not self.degraded:
            try:
                return getattr(self.primary, method)(*args)
            except StoreUnavailable as e:
                self.mark_degraded(e)
        return getattr(self.fallback, method)(*args)

    def _write(self, method: str, *args):
        if not self.degraded:
            try:
                result = getattr(self.primary, method)(*args)
            except StoreUnavailable as e:
                self.mark_degraded(e)
            else:
                getattr(self.fallback, method)(*args)
                return result
        return getattr(self.fallback, method)(*args)

    def ping(self):
        return self._read("ping")

    def hset(self, key, mapping):
        return self._write("hset", key, mapping)

    def hget(self, key, field):
        return self._read("hget", key, field)

    def hgetall(self, key):
        return self._read("hgetall", key)

    def hdel(self, key, *fields):
        return self._write("hdel", key, *fields)

    def sadd(self, key, *members):
        return self._write("sadd", key, *members)

    def srem(self, key, *members):
        return self._write("srem", key, *members)

    def smembers(self, key):
        return self._read("smembers", key)

    def scard(self, key):
        return self._read("scard", key)

    def sismember(self, key, member):
        return self._read("sismember", key, member)

    def rpush(self, key, *values):
        return self._write("rpush", key, *values)

    def ltrim(self, key, start, end):
        return self._write("ltrim", key, start, end)

    def lrange(self, key, start, end):
        return self._read("lrange", key, start, end)

    def set(self, key, value, ttl=None):
        return self._write("set", key, value, ttl)

    def get(self, key):
        return self._read("get", key)

    def exists(self, key):
        return self._read("exists", key)

    def delete(self, *keys):
        return self._write("delete", *keys)

    def expire(self, key, ttl):
        return self._write("expire", key, ttl)


def create_store() -> Store:
    """Build the process store from configuration."""
    if not REDIS_ENABLED:
        logger.info("Redis disabled, using in-memory store")
        return RedisStore.in_memory()

    store = FallbackStore(RedisStore.from_settings())
    try:
        store.primary.ping()
        logger.info("Redis client connected successfully")
    except StoreUnavailable as e:
        logger.error(f"Failed to connect to Redis at startup: {e}")
        store.mark_degraded(e)
    return store


def iter_json(values: Iterable[str]):
    """Yield decoded JSON documents, skipping malformed entries."""
    for raw in values:
        try:
            yield json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.debug(f"Skipping malformed JSON entry: {raw!r}")
