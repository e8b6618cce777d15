"""
Shared state store for circuit breakers, provider health and budgets.

Routing state is shared by every request handled by every instance, so it
is never mutated in place. All writes go through one of two atomic
primitives:

- compare_and_set: optimistic versioned write of a JSON document
- increment: atomic float counter

Higher-level helpers (update, set_if_open_elapsed) are CAS loops built on
those primitives, so the circuit breaker and budget logic behave the same
against the in-memory store used in tests and single-instance deployments
and the Redis store used when several instances share state.

Every document carries an integer "version" field. A write succeeds only
when the stored version equals the version the writer read; the store then
writes the new document with version + 1.

Redis implementation:
- Documents are JSON strings under "{prefix}:{key}"
- The version check-and-set runs as a Lua script (script_load + evalsha)
- Counters use INCRBYFLOAT
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import NoScriptError

log = structlog.get_logger(__name__)

MAX_CAS_RETRIES = 10

# KEYS[1] = document key
# ARGV[1] = expected version, ARGV[2] = new JSON document
_LUA_COMPARE_AND_SET = """
local current = redis.call('GET', KEYS[1])
local version = 0
if current then
    local doc = cjson.decode(current)
    version = tonumber(doc['version']) or 0
end
if version ~= tonumber(ARGV[1]) then
    return 0
end
redis.call('SET', KEYS[1], ARGV[2])
return 1
"""


class StateConflictError(Exception):
    """Raised when a CAS loop cannot commit after MAX_CAS_RETRIES attempts."""

    def __init__(self, key: str, retries: int) -> None:
        super().__init__(f"Could not update state key {key!r} after {retries} attempts")
        self.key = key
        self.retries = retries


def _encode(value: dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class StateStore(ABC):
    """Abstract interface all shared state backends implement."""

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the stored document (including its version), or None."""

    @abstractmethod
    async def compare_and_set(
        self, key: str, expected_version: int, value: dict[str, Any]
    ) -> bool:
        """Write value with version expected_version + 1 if the stored version matches.

        A missing document has version 0.
        """

    @abstractmethod
    async def increment(self, key: str, amount: float = 1.0) -> float:
        """Atomically add amount to a counter and return the new value."""

    @abstractmethod
    async def get_counter(self, key: str) -> float:
        """Return the current counter value (0.0 when unset)."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a document or counter (no-op if missing)."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the backend is reachable."""

    async def close(self) -> None:
        """Release backend resources."""

    async def update(
        self,
        key: str,
        mutate: Callable[[dict[str, Any] | None], dict[str, Any] | None],
        *,
        max_retries: int = MAX_CAS_RETRIES,
    ) -> dict[str, Any] | None:
        """Read-modify-write a document with optimistic concurrency.

        mutate receives a private copy of the current document (or None) and
        returns the new document, or None to leave the stored value untouched.
        It may be called several times when writers race, so it must be pure
        apart from the returned value.

        Returns:
            The committed document, or the current one if mutate returned None

        Raises:
            StateConflictError: if every retry lost the race
        """
        for _ in range(max_retries):
            current = await self.get(key)
            version = int(current.get("version", 0)) if current else 0
            updated = mutate(dict(current) if current else None)
            if updated is None:
                return current
            if await self.compare_and_set(key, version, updated):
                committed = dict(updated)
                committed["version"] = version + 1
                return committed
            log.debug("state_store.cas_conflict", key=key, version=version)
        log.error("state_store.cas_exhausted", key=key, retries=max_retries)
        raise StateConflictError(key, max_retries)

    async def set_if_open_elapsed(
        self, key: str, *, now: float, open_duration: float
    ) -> bool:
        """Move an open circuit document to half_open once open_duration has passed.

        Exactly one concurrent caller observes True for a given opening. The
        trial slot itself is claimed separately by the circuit breaker.
        """
        transitioned = False

        def _mutate(doc: dict[str, Any] | None) -> dict[str, Any] | None:
            nonlocal transitioned
            transitioned = False
            if doc is None or doc.get("state") != "open":
                return None
            if now - float(doc.get("opened_at") or 0.0) < open_duration:
                return None
            doc["state"] = "half_open"
            doc["trial_in_flight"] = False
            doc["state_changed_at"] = now
            transitioned = True
            return doc

        await self.update(key, _mutate)
        return transitioned


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryStateStore(StateStore):
    """Process-local backend for single-instance deployments and tests.

    Documents are kept JSON-encoded so callers never share mutable objects
    with the store.
    """

    def __init__(self) -> None:
        self._docs: dict[str, str] = {}
        self._counters: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = self._docs.get(key)
        return json.loads(raw) if raw is not None else None

    async def compare_and_set(
        self, key: str, expected_version: int, value: dict[str, Any]
    ) -> bool:
        async with self._lock:
            raw = self._docs.get(key)
            version = int(json.loads(raw).get("version", 0)) if raw is not None else 0
            if version != expected_version:
                return False
            doc = dict(value)
            doc["version"] = expected_version + 1
            self._docs[key] = _encode(doc)
            return True

    async def increment(self, key: str, amount: float = 1.0) -> float:
        async with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + amount
            return self._counters[key]

    async def get_counter(self, key: str) -> float:
        return self._counters.get(key, 0.0)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._docs.pop(key, None)
            self._counters.pop(key, None)

    async def ping(self) -> bool:
        return True

    def keys(self) -> list[str]:
        """Return every stored key (documents and counters)."""
        return sorted(set(self._docs) | set(self._counters))


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisStateStore(StateStore):
    """Shared backend for multi-instance deployments.

    Call connect() once at startup; it loads the CAS Lua script and verifies
    connectivity. A client may be injected for tests.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "llmrouter",
        client: Any = None,
    ) -> None:
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._client: Any = client
        self._cas_sha: str | None = None

    async def connect(self) -> None:
        """Open the connection pool and load Lua scripts.

        Raises:
            redis.exceptions.RedisError: if Redis is unreachable
        """
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        self._cas_sha = await self._client.script_load(_LUA_COMPARE_AND_SET)
        await self._client.ping()
        log.info(
            "state_store.redis_connected",
            redis_url=self._redis_url.split("@")[-1],
            key_prefix=self._key_prefix,
        )

    def _make_key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._client.get(self._make_key(key))
        return json.loads(raw) if raw is not None else None

    async def compare_and_set(
        self, key: str, expected_version: int, value: dict[str, Any]
    ) -> bool:
        doc = dict(value)
        doc["version"] = expected_version + 1
        args = (self._make_key(key), str(expected_version), _encode(doc))
        if self._cas_sha is None:
            self._cas_sha = await self._client.script_load(_LUA_COMPARE_AND_SET)
        try:
            result = await self._client.evalsha(self._cas_sha, 1, *args)
        except NoScriptError:
            # Script cache flushed on the server (restart or SCRIPT FLUSH)
            self._cas_sha = await self._client.script_load(_LUA_COMPARE_AND_SET)
            result = await self._client.evalsha(self._cas_sha, 1, *args)
        return int(result) == 1

    async def increment(self, key: str, amount: float = 1.0) -> float:
        result = await self._client.incrbyfloat(self._make_key(key), amount)
        return float(result)

    async def get_counter(self, key: str) -> float:
        raw = await self._client.get(self._make_key(key))
        return float(raw) if raw is not None else 0.0

    async def delete(self, key: str) -> None:
        await self._client.delete(self._make_key(key))

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception as exc:
            log.warning("state_store.redis_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            log.info("state_store.redis_closed")
