"""Bounded cache of image responses observed by a browser session."""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_CACHE_BYTES = 100 * 1024 * 1024


@dataclass
class CachedImage:
    """Image bytes captured from a network response."""

    content: bytes
    content_type: str | None = None


class ImageResponseCache:
    """LRU byte cache keyed by response URL.

    Entries larger than the whole budget are not cached. Adding an entry
    evicts least recently used ones until the total fits.
    """

    def __init__(self, max_bytes: int = DEFAULT_MAX_CACHE_BYTES) -> None:
        self.max_bytes = max_bytes
        self.total_bytes = 0
        self._entries: OrderedDict[str, CachedImage] = OrderedDict()
        self._lock = threading.Lock()

    def put(self, url: str, content: bytes, content_type: str | None = None) -> bool:
        """Store a response body. Returns False if it was too large to cache."""
        size = len(content)
        if size > self.max_bytes:
            logger.debug(f"Response too large to cache ({size} bytes): {url}")
            return False

        with self._lock:
            previous = self._entries.pop(url, None)
            if previous is not None:
                self.total_bytes -= len(previous.content)

            while self._entries and self.total_bytes + size > self.max_bytes:
                evicted_url, evicted = self._entries.popitem(last=False)
                self.total_bytes -= len(evicted.content)
                logger.debug(f"Evicted cached response: {evicted_url}")

            self._entries[url] = CachedImage(content=content, content_type=content_type)
            self.total_bytes += size
        return True

    def get(self, url: str) -> CachedImage | None:
        with self._lock:
            entry = self._entries.get(url)
            if entry is not None:
                self._entries.move_to_end(url)
            return entry

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.total_bytes = 0
