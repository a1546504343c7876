"""Image download chain bound to a live browser session.

Sources are tried in order:

1. the session's network response cache (if interception is active); on a
   miss the image is first loaded through a hidden <img> so the response
   lands in the cache,
2. an in-page fetch() that carries the page's cookies and origin,
3. an HTTP request replaying the session's cookies, user agent and Referer.

Each source's bytes go through validate_image_payload(); the first valid
payload wins.
"""

import base64
import binascii
import logging
import time
from collections.abc import Callable
from typing import Any

from browser import page_scripts
from crawler.errors import ScriptError
from processor.fetcher import ImageFetcher, ImageFetchResult, validate_image_payload
from processor.media_policy import (
    REJECTION_REASON_HTTP_ERROR,
    REJECTION_REASON_NO_CONTENT,
    format_rejection_reason,
)

logger = logging.getLogger(__name__)

DEFAULT_FORCE_LOAD_WAIT_SECONDS = 1.0


class SessionImageDownloader:
    """Downloads images through a BrowserSession with an HTTP fallback.

    Args:
        session: BrowserSession the images were discovered in.
        http_fetcher: Fallback fetcher; also provides the validation thresholds.
        sleep: Blocking sleep function.
        force_load_wait: Seconds to let a force-loaded image reach the cache.
    """

    def __init__(
        self,
        session: Any,
        http_fetcher: ImageFetcher,
        sleep: Callable[[float], None] = time.sleep,
        force_load_wait: float = DEFAULT_FORCE_LOAD_WAIT_SECONDS,
    ) -> None:
        self.session = session
        self.http_fetcher = http_fetcher
        self.sleep = sleep
        self.force_load_wait = force_load_wait
        self._cookies: dict[str, str] | None = None

    def download(self, url: str) -> ImageFetchResult:
        """Fetch and validate one image, trying every source in turn.

        Returns:
            The first successful result, otherwise the last failure.
        """
        result = self.from_cache(url)
        if result is None and self.session.intercepting:
            logger.debug(f"Image not in cache, forcing load via DOM: {url}")
            if self.force_load(url):
                result = self.from_cache(url)
                if result is None:
                    logger.debug(f"Image not cached even after force load: {url}")
        if result is not None and result.success:
            logger.debug(f"Cache hit for {url}")
            return result

        result = self.from_page(url)
        if result.success:
            return result
        logger.debug(f"In-page fetch failed for {url}: {result.error_message}")

        if not url.lower().startswith(("http://", "https://")):
            return result

        fallback = self.http_fetcher.fetch(url, cookies=self._session_cookies(), referer=self._referer())
        if not fallback.success:
            logger.debug(f"HTTP fallback failed for {url}: {fallback.error_message}")
        return fallback

    def from_cache(self, url: str) -> ImageFetchResult | None:
        cached = self.session.cached_image(url)
        if cached is None:
            return None
        return self._validate(url, cached.content, cached.content_type, "cache")

    def force_load(self, url: str) -> bool:
        """Load an image through a hidden <img> so interception records it.

        Returns:
            False if the page script failed, otherwise True once the settle
            wait has passed.
        """
        try:
            self.session.evaluate(page_scripts.FORCE_LOAD_IMAGE, url)
        except ScriptError as e:
            logger.warning(f"Failed to force load image via DOM: {e}")
            return False
        self.sleep(self.force_load_wait)
        return True

    def from_page(self, url: str) -> ImageFetchResult:
        try:
            payload = self.session.evaluate(page_scripts.FETCH_AS_BASE64, url) or {}
        except ScriptError as e:
            return ImageFetchResult(success=False, url=url, source="page", error_message=str(e))

        data = payload.get("data")
        if not data:
            status = payload.get("status")
            if status:
                reason = format_rejection_reason(REJECTION_REASON_HTTP_ERROR, f"status_{status}")
            else:
                reason = format_rejection_reason(REJECTION_REASON_NO_CONTENT, payload.get("error") or "")
            return ImageFetchResult(success=False, url=url, source="page", error_message=reason)

        try:
            content = base64.b64decode(data)
        except (binascii.Error, ValueError) as e:
            return ImageFetchResult(
                success=False,
                url=url,
                source="page",
                error_message=format_rejection_reason(REJECTION_REASON_NO_CONTENT, f"bad base64: {e}"),
            )
        return self._validate(url, content, payload.get("contentType"), "page")

    def _validate(self, url: str, content: bytes, content_type: str | None, source: str) -> ImageFetchResult:
        fetcher = self.http_fetcher
        return validate_image_payload(
            url,
            content,
            content_type=content_type,
            source=source,
            min_file_size=fetcher.min_file_size,
            max_file_size=fetcher.max_file_size,
            min_width=fetcher.min_dimensions[0],
            min_height=fetcher.min_dimensions[1],
        )

    def _session_cookies(self) -> dict[str, str]:
        if self._cookies is None:
            try:
                self._cookies = self.session.get_cookies()
            except Exception as e:
                logger.warning(f"Could not read session cookies: {e}")
                self._cookies = {}
        return self._cookies

    def _referer(self) -> str | None:
        try:
            return self.session.current_url
        except Exception as e:
            logger.debug(f"Could not read current URL for Referer: {e}")
            return None
