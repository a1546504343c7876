"""Redis key helpers with optional namespace support.

Centralizes key naming so the admission controller and CLI stay aligned
across environments and deploys.
"""

from env_config import get_queue_namespace

ADMISSION_KEY_PREFIX = "scraping:concurrency:"


def _with_namespace(key: str) -> str:
    """Prefix a key with QUEUE_NAMESPACE when configured."""
    namespace = get_queue_namespace()
    if not namespace:
        return key
    return f"{namespace}:{key}"


def admission_key_prefix() -> str:
    """Return the prefix under which per-domain slot counters live."""
    return _with_namespace(ADMISSION_KEY_PREFIX)


def admission_slot_key(domain: str, prefix: str | None = None) -> str:
    """Return key holding the outstanding slot count for a domain."""
    return f"{prefix if prefix is not None else admission_key_prefix()}{domain}"
