"""Redis-backed distributed admission controller.

Suitable for multi-instance deployments where the per-domain limit must
hold globally. Check-and-increment runs as a server-side Lua script so
concurrent workers cannot both take the last slot. Each slot counter has
a TTL so a worker that crashes without releasing only leaks its slot
until the key expires.

Waiters poll; there is no ordering guarantee among them.
"""

import logging
import time
from typing import Any

import redis

from crawler.admission import AdmissionController, is_unlimited
from crawler.errors import AdmissionTimeout
from crawler.redis_keys import admission_key_prefix, admission_slot_key

logger = logging.getLogger(__name__)

# Returns the new count on success, -1 when the limit is reached.
ACQUIRE_SLOT_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
local current = tonumber(redis.call('GET', key) or '0')
if current < limit then
    local new_value = redis.call('INCR', key)
    redis.call('PEXPIRE', key, ttl)
    return new_value
end
return -1
"""

# Decrements and clamps at zero in one step; returns the remaining count.
# A missing key (never acquired, or reclaimed by the TTL) is left absent.
RELEASE_SLOT_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
    return 0
end
local value = redis.call('DECR', key)
if value < 0 then
    redis.call('SET', key, '0')
    value = 0
end
return value
"""


def check_redis_available(redis_url: str) -> bool:
    """Check if Redis is available at the given URL.

    Args:
        redis_url: Redis connection URL.

    Returns:
        True if Redis is reachable, False otherwise.
    """
    try:
        client = redis.from_url(redis_url, socket_connect_timeout=2)  # type: ignore[no-untyped-call]
        client.ping()
        return True
    except redis.RedisError as e:
        logger.error(f"Redis not available at {redis_url}: {e}")
        return False


class DistributedAdmissionController(AdmissionController):
    """Admission controller sharing per-domain counters through Redis.

    Attributes:
        redis: Redis client instance.
        key_prefix: Prefix prepended to the domain to form the counter key.
        slot_ttl: Seconds after which an unreleased slot expires.
        poll_interval: Seconds to sleep between acquire attempts.
        max_wait: Seconds an acquire may wait before AdmissionTimeout.
    """

    def __init__(
        self,
        redis_client: Any,
        slot_ttl: float = 1200.0,
        poll_interval: float = 0.5,
        max_wait: float = 3600.0,
        key_prefix: str | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            redis_client: Redis client instance.
            slot_ttl: Slot TTL in seconds.
            poll_interval: Poll interval in seconds.
            max_wait: Maximum acquire wait in seconds.
            key_prefix: Counter key prefix (defaults to the namespaced admission prefix).
        """
        self.redis = redis_client
        self.key_prefix = key_prefix if key_prefix is not None else admission_key_prefix()
        self.slot_ttl = slot_ttl
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self._acquire_script = redis_client.register_script(ACQUIRE_SLOT_SCRIPT)
        self._release_script = redis_client.register_script(RELEASE_SLOT_SCRIPT)

    def _key(self, domain: str) -> str:
        return admission_slot_key(domain, self.key_prefix)

    def try_acquire(self, domain: str, limit: int) -> int | None:
        """Make a single atomic acquire attempt.

        Args:
            domain: Domain to acquire a slot for.
            limit: Positive concurrency limit.

        Returns:
            The new outstanding count, or None if the limit is reached.
        """
        result = self._acquire_script(
            keys=[self._key(domain)],
            args=[str(limit), str(int(self.slot_ttl * 1000))],
        )
        count = int(result)
        return None if count == -1 else count

    def acquire(self, domain: str, limit: int | None = None) -> None:
        if is_unlimited(limit):
            return

        started = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            try:
                count = self.try_acquire(domain, limit)
            except redis.RedisError as e:
                logger.error(f"Error acquiring slot for domain {domain}: {e}")
                raise

            if count is not None:
                logger.debug(
                    f"Acquired slot for domain {domain} (current: {count}/{limit}, "
                    f"attempts: {attempts})"
                )
                return

            waited = time.monotonic() - started
            if waited > self.max_wait:
                logger.warning(
                    f"Gave up waiting for slot for domain {domain} after {waited:.1f}s "
                    f"({attempts} attempts)"
                )
                raise AdmissionTimeout(domain, limit, waited)

            time.sleep(self.poll_interval)

    def release(self, domain: str) -> None:
        try:
            remaining = int(self._release_script(keys=[self._key(domain)]))
            logger.debug(f"Released slot for domain {domain} (remaining: {remaining})")
        except Exception as e:
            # Releasing is best-effort; the TTL reclaims the slot eventually.
            logger.error(f"Error releasing slot for domain {domain}: {e}")

    def clear_domain(self, domain: str) -> None:
        """Delete the slot counter for a domain (manual intervention)."""
        self.redis.delete(self._key(domain))
        logger.info(f"Cleared concurrency counter for domain {domain}")

    def get_current_count(self, domain: str) -> int:
        """Return the outstanding slot count for a domain."""
        value = self.redis.get(self._key(domain))
        if value is None:
            return 0
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return int(value)
