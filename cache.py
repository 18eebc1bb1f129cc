from __future__ import annotations

import json
import logging
import threading
import time
from functools import lru_cache
from typing import Callable, Optional, Protocol

from pydantic import ValidationError

from config import get_settings
from schemas import ENTITY_BALANCES_ADAPTER, EntityBalances
from tag_tree import TagNode

logger = logging.getLogger(__name__)

BALANCE_TTL_SECS = 180


class CacheBackendError(RuntimeError):
    pass


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ex: int) -> None: ...


class MemoryCacheBackend:
    """Process-local key/value store with per-key expiry.

    ``clock`` returns seconds; entries are dropped lazily on read once their
    deadline has passed.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ex: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ex, value)


class RedisCacheBackend:
    def __init__(self, url: str, timeout_secs: float = 0.5) -> None:
        import redis

        self._errors = (redis.RedisError,)
        self._client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_secs,
            socket_connect_timeout=timeout_secs,
        )

    def get(self, key: str) -> Optional[str]:
        try:
            return self._client.get(key)
        except self._errors as exc:
            raise CacheBackendError(f"Cache GET failed for {key}") from exc

    def set(self, key: str, value: str, ex: int) -> None:
        try:
            self._client.set(key, value, ex=ex)
        except self._errors as exc:
            raise CacheBackendError(f"Cache SET failed for {key}") from exc


def create_cache_backend(url: str) -> CacheBackend:
    if url.startswith("memory://"):
        return MemoryCacheBackend()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisCacheBackend(url)
    raise ValueError(f"Unsupported cache URL: {url}")


@lru_cache(maxsize=1)
def get_cache_backend() -> CacheBackend:
    return create_cache_backend(get_settings().cache_url)


class _FailOpenCache:
    # An unreachable backend behaves like an empty one: reads miss and
    # writes are dropped.

    def __init__(self, backend: CacheBackend) -> None:
        self.backend = backend

    def _read(self, key: str) -> Optional[str]:
        try:
            return self.backend.get(key)
        except CacheBackendError as exc:
            logger.warning(f"cache_unavailable: op=get key={key} error={exc}")
            return None

    def _write(self, key: str, payload: str, ttl: int) -> None:
        try:
            self.backend.set(key, payload, ex=ttl)
        except CacheBackendError as exc:
            logger.warning(f"cache_unavailable: op=set key={key} error={exc}")


class BalanceCache(_FailOpenCache):
    def __init__(
        self, backend: CacheBackend, ttl_secs: int = BALANCE_TTL_SECS
    ) -> None:
        super().__init__(backend)
        self.ttl_secs = ttl_secs

    def get(self, scope_key: str) -> Optional[list[EntityBalances]]:
        payload = self._read(scope_key)
        if payload is None:
            logger.debug(f"balance_cache: miss key={scope_key}")
            return None
        try:
            value = ENTITY_BALANCES_ADAPTER.validate_json(payload)
        except ValidationError:
            logger.warning(f"balance_cache: undecodable entry key={scope_key}")
            return None
        logger.debug(f"balance_cache: hit key={scope_key}")
        return value

    def put(
        self,
        scope_key: str,
        value: list[EntityBalances],
        ttl: Optional[int] = None,
    ) -> None:
        payload = ENTITY_BALANCES_ADAPTER.dump_json(value).decode("utf-8")
        ttl = self.ttl_secs if ttl is None else ttl
        if ttl <= 0:
            return
        self._write(scope_key, payload, ttl)


class TagSnapshotCache(_FailOpenCache):
    key = "tags"

    def __init__(self, backend: CacheBackend, ttl_secs: int) -> None:
        super().__init__(backend)
        self.ttl_secs = ttl_secs

    def get(self) -> Optional[tuple[TagNode, ...]]:
        payload = self._read(self.key)
        if payload is None:
            return None
        try:
            rows = json.loads(payload)
            return tuple(TagNode(name, parent) for name, parent in rows)
        except (ValueError, TypeError):
            logger.warning("tag_cache: undecodable entry")
            return None

    def put(self, tags: tuple[TagNode, ...]) -> None:
        payload = json.dumps([[tag.name, tag.parent_name] for tag in tags])
        self._write(self.key, payload, self.ttl_secs)
