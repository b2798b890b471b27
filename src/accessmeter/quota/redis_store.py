"""
Redis usage store.

Each counter is a hash ``{prefix}:{principal_id}`` with ``used`` and
``period_start`` fields. Every conditional write is a Lua script, which Redis
runs atomically.
"""

from datetime import datetime
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from accessmeter.exceptions import StorageUnavailableError
from accessmeter.logging import get_logger
from accessmeter.quota.models import CounterState
from accessmeter.quota.periods import as_utc

logger = get_logger(__name__)

# KEYS[1] counter; ARGV[1] period_start
_CREATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  redis.call('HSET', KEYS[1], 'used', 0, 'period_start', ARGV[1])
end
return redis.call('HMGET', KEYS[1], 'used', 'period_start')
"""

# KEYS[1] counter; ARGV[1] expected period_start, ARGV[2] new period_start
_ADVANCE_SCRIPT = """
if redis.call('HGET', KEYS[1], 'period_start') == ARGV[1] then
  redis.call('HSET', KEYS[1], 'used', 0, 'period_start', ARGV[2])
  return 1
end
return 0
"""

# KEYS[1] counter; ARGV[1] period_start, ARGV[2] amount, ARGV[3] ceiling or ''
_INCREMENT_SCRIPT = """
local state = redis.call('HMGET', KEYS[1], 'used', 'period_start')
if not state[1] or state[2] ~= ARGV[1] then
  return false
end
local used = tonumber(state[1]) + tonumber(ARGV[2])
if ARGV[3] ~= '' and used > tonumber(ARGV[3]) then
  return false
end
redis.call('HSET', KEYS[1], 'used', used)
return used
"""

# KEYS[1] counter; ARGV[1] used
_SET_USED_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return false
end
redis.call('HSET', KEYS[1], 'used', ARGV[1])
return redis.call('HGET', KEYS[1], 'period_start')
"""


def _encode(value: datetime) -> str:
    return as_utc(value).isoformat()


def _decode(value: Any) -> datetime:
    if isinstance(value, bytes):
        value = value.decode()
    return as_utc(datetime.fromisoformat(value))


class RedisUsageStore:
    """Usage counters held in Redis hashes."""

    def __init__(self, client: Redis, key_prefix: str = "quota") -> None:
        self._redis = client
        self._prefix = key_prefix
        self._create = client.register_script(_CREATE_SCRIPT)
        self._advance = client.register_script(_ADVANCE_SCRIPT)
        self._increment = client.register_script(_INCREMENT_SCRIPT)
        self._set_used = client.register_script(_SET_USED_SCRIPT)

    def _key(self, principal_id: str) -> str:
        return f"{self._prefix}:{principal_id}"

    def _principal(self, key: Any) -> str:
        if isinstance(key, bytes):
            key = key.decode()
        return key[len(self._prefix) + 1 :]

    async def _call(self, operation: str, coro: Any) -> Any:
        try:
            return await coro
        except (RedisError, OSError) as exc:
            logger.warning("quota.store.redis_error", operation=operation, error=str(exc))
            raise StorageUnavailableError(operation=operation) from exc

    async def read(self, principal_id: str) -> CounterState | None:
        used, period_start = await self._call(
            "read", self._redis.hmget(self._key(principal_id), ["used", "period_start"])
        )
        if used is None or period_start is None:
            return None
        return CounterState(principal_id, int(used), _decode(period_start))

    async def create(self, principal_id: str, period_start: datetime) -> CounterState:
        used, stored_start = await self._call(
            "create",
            self._create(keys=[self._key(principal_id)], args=[_encode(period_start)]),
        )
        return CounterState(principal_id, int(used), _decode(stored_start))

    async def advance_period(
        self, principal_id: str, expected_start: datetime, new_start: datetime
    ) -> bool:
        result = await self._call(
            "advance_period",
            self._advance(
                keys=[self._key(principal_id)],
                args=[_encode(expected_start), _encode(new_start)],
            ),
        )
        return int(result) == 1

    async def increment_if_below(
        self,
        principal_id: str,
        period_start: datetime,
        amount: int,
        ceiling: int | None,
    ) -> CounterState | None:
        result = await self._call(
            "increment_if_below",
            self._increment(
                keys=[self._key(principal_id)],
                args=[_encode(period_start), amount, "" if ceiling is None else ceiling],
            ),
        )
        if result is None:
            return None
        return CounterState(principal_id, int(result), as_utc(period_start))

    async def set_used(self, principal_id: str, used: int) -> CounterState | None:
        period_start = await self._call(
            "set_used", self._set_used(keys=[self._key(principal_id)], args=[used])
        )
        if period_start is None:
            return None
        return CounterState(principal_id, used, _decode(period_start))

    async def list_counters(self) -> list[CounterState]:
        states: list[CounterState] = []
        keys = await self._call(
            "list_counters",
            self._collect_keys(),
        )
        for key in keys:
            state = await self.read(self._principal(key))
            if state is not None:
                states.append(state)
        return states

    async def _collect_keys(self) -> list[Any]:
        return [key async for key in self._redis.scan_iter(match=f"{self._prefix}:*")]


__all__ = ["RedisUsageStore"]
