"""Per-domain admission control.

An admission controller bounds how many scrape sessions may run against
the same domain at once. Two interchangeable backends exist:

- LocalAdmissionController: in-process counters with FIFO wait queues.
  Suitable for single-instance deployments; limits are per process.
- DistributedAdmissionController (crawler.redis_admission): Redis-backed
  counters shared by every worker process.

Use build_admission_controller() to pick one from configuration.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque

from env_config import (
    get_admission_backend,
    get_admission_max_wait,
    get_admission_poll_interval,
    get_admission_slot_ttl,
    get_redis_url,
)

logger = logging.getLogger(__name__)


def is_unlimited(limit: int | None) -> bool:
    """Return True when a limit means "no concurrency bound"."""
    return limit is None or limit <= 0


class AdmissionController(ABC):
    """Grants and reclaims per-domain concurrency slots."""

    @abstractmethod
    def acquire(self, domain: str, limit: int | None = None) -> None:
        """Block until a slot for `domain` is available, then take it.

        Args:
            domain: Hostname the slot is scoped to.
            limit: Maximum concurrent holders. None, 0 or negative means unlimited.

        Raises:
            AdmissionTimeout: If the backend gives up waiting.
        """

    @abstractmethod
    def release(self, domain: str) -> None:
        """Give back a slot for `domain`. Never raises."""


class _Waiter:
    """A suspended acquire call waiting for a slot handoff."""

    __slots__ = ("event",)

    def __init__(self) -> None:
        self.event = threading.Event()


class LocalAdmissionController(AdmissionController):
    """In-memory admission controller with strict per-domain FIFO.

    A single lock guards both the counters and the wait queues, so the
    check-capacity / enqueue / wake-on-release sequence is atomic. On
    release the freed slot is handed to the head waiter while the lock is
    held; the counter never drops in between, so a newcomer cannot steal
    the slot from a queued waiter.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._queues: dict[str, deque[_Waiter]] = {}

    def acquire(self, domain: str, limit: int | None = None) -> None:
        if is_unlimited(limit):
            return

        with self._lock:
            current = self._counters.get(domain, 0)
            queue = self._queues.get(domain)
            if current < limit and not queue:
                self._counters[domain] = current + 1
                logger.debug(f"Acquired slot for domain {domain} ({current + 1}/{limit})")
                return

            waiter = _Waiter()
            self._queues.setdefault(domain, deque()).append(waiter)
            logger.debug(
                f"Slot limit reached for domain {domain} ({current}/{limit}), "
                f"queued at position {len(self._queues[domain])}"
            )

        waiter.event.wait()
        logger.debug(f"Acquired slot for domain {domain} after waiting")

    def release(self, domain: str) -> None:
        with self._lock:
            current = max(0, self._counters.get(domain, 0) - 1)
            queue = self._queues.get(domain)
            if queue:
                waiter = queue.popleft()
                if not queue:
                    del self._queues[domain]
                self._counters[domain] = current + 1
                waiter.event.set()
                logger.debug(f"Handed released slot for domain {domain} to next waiter")
                return
            self._counters[domain] = current
            logger.debug(f"Released slot for domain {domain} (remaining: {current})")

    def get_current_count(self, domain: str) -> int:
        """Return the number of slots currently held for a domain."""
        with self._lock:
            return self._counters.get(domain, 0)

    def get_waiting_count(self, domain: str) -> int:
        """Return the number of acquire calls queued for a domain."""
        with self._lock:
            return len(self._queues.get(domain, ()))

    def clear_domain(self, domain: str) -> None:
        """Reset a domain's counter. Queued waiters are left in place."""
        with self._lock:
            self._counters.pop(domain, None)


def build_admission_controller(
    backend: str | None = None,
    redis_url: str | None = None,
) -> AdmissionController:
    """Create the admission controller selected by configuration.

    Args:
        backend: "local" or "redis". Defaults to ADMISSION_BACKEND.
        redis_url: Redis URL for the distributed backend. Defaults to REDIS_URL.

    Returns:
        Configured AdmissionController.
    """
    backend = backend or get_admission_backend()

    if backend == "local":
        logger.info("Using in-memory admission controller")
        return LocalAdmissionController()

    if backend == "redis":
        import redis

        from crawler.redis_admission import DistributedAdmissionController

        client = redis.from_url(redis_url or get_redis_url())  # type: ignore[no-untyped-call]
        logger.info("Using Redis admission controller")
        return DistributedAdmissionController(
            client,
            slot_ttl=get_admission_slot_ttl(),
            poll_interval=get_admission_poll_interval(),
            max_wait=get_admission_max_wait(),
        )

    raise ValueError(f"Unknown admission backend: {backend}")
