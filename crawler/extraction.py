"""Stabilization protocol for lazy-loading pages.

The page is scrolled until its height stops changing, while every matched
image is followed by its own load tracker:

    PENDING -> LOADED
    PENDING -> RETRYING(n) -> LOADED | FAILED

Images are registered by an in-page mutation observer installed before the
first scroll, so nodes inserted while scrolling are tracked too. Extraction
finishes once scrolling has settled and every tracker has settled, or
raises ExtractionTimeout at the deadline.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import env_config
from browser import page_scripts
from crawler.errors import ExtractionTimeout, ScriptError

logger = logging.getLogger(__name__)


class ImageState(str, Enum):
    PENDING = "pending"
    LOADED = "loaded"
    RETRYING = "retrying"
    FAILED = "failed"
    # No source yet; settled until a lazy loader assigns one
    EMPTY = "empty"


@dataclass
class ExtractionResult:
    """Outcome of one stabilization run.

    Attributes:
        processed_count: Number of image elements tracked.
        failed_count: Number of elements that exhausted their retries.
        failed_urls: Original sources of the failed elements.
    """

    processed_count: int = 0
    failed_count: int = 0
    failed_urls: list[str] = field(default_factory=list)


class ImageLoadTracker:
    """Load state machine for a single image element.

    Args:
        image_id: Registry id assigned in the page.
        src: Original source URL (retry parameter stripped).
        max_retries: Reloads allowed before the image is marked failed.
        retry_delay: Base delay in seconds; attempt n waits retry_delay * n.
    """

    def __init__(self, image_id: int, src: str, max_retries: int, retry_delay: float) -> None:
        self.image_id = image_id
        self.src = src
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.state = ImageState.EMPTY if not src else ImageState.PENDING
        self.attempts = 0
        self.next_retry_at: float | None = None
        self.revealed = False

    @property
    def settled(self) -> bool:
        return self.state in (ImageState.LOADED, ImageState.FAILED, ImageState.EMPTY)

    def observe(self, src: str, dom_state: str, now: float) -> None:
        """Advance the state machine from a page snapshot entry."""
        if self.state is ImageState.FAILED:
            return

        if src != self.src:
            # Lazy loaders swap placeholders for the real source
            self.src = src
            self.attempts = 0
            self.next_retry_at = None
            self.revealed = False
            self.state = ImageState.EMPTY if not src else ImageState.PENDING

        if dom_state == "loaded":
            self.state = ImageState.LOADED
            self.next_retry_at = None
        elif dom_state == "empty":
            if self.state is not ImageState.RETRYING:
                self.state = ImageState.EMPTY
        elif dom_state == "pending":
            if self.state is not ImageState.RETRYING:
                self.state = ImageState.PENDING
        elif dom_state == "error":
            if self.state is ImageState.RETRYING and self.next_retry_at is not None:
                return
            self._schedule_retry(now)

    def _schedule_retry(self, now: float) -> None:
        if self.attempts >= self.max_retries:
            self.state = ImageState.FAILED
            self.next_retry_at = None
            logger.debug(f"Image {self.image_id} failed after {self.attempts} retries: {self.src}")
            return
        self.state = ImageState.RETRYING
        self.next_retry_at = now + self.retry_delay * (self.attempts + 1)

    def due(self, now: float) -> bool:
        return (
            self.state is ImageState.RETRYING
            and self.next_retry_at is not None
            and now >= self.next_retry_at
        )

    def mark_reloaded(self, reloaded: bool) -> None:
        """Record a reload attempt; a reload the page refused fails the image."""
        self.attempts += 1
        self.next_retry_at = None
        if not reloaded:
            self.state = ImageState.FAILED
            logger.debug(f"Image {self.image_id} could not be reloaded: {self.src}")


class PageInspector:
    """Typed access to the in-page image registry and scroll scripts."""

    def __init__(self, session: Any) -> None:
        self.session = session

    def install_registry(self, selector: str) -> int:
        return int(self.session.evaluate(page_scripts.INSTALL_IMAGE_REGISTRY, selector) or 0)

    def snapshot(self) -> list[dict[str, Any]]:
        return list(self.session.evaluate(page_scripts.SNAPSHOT_IMAGES) or [])

    def reload(self, image_id: int) -> bool:
        return bool(self.session.evaluate(page_scripts.RELOAD_IMAGE, image_id))

    def reveal(self, image_id: int) -> bool:
        return bool(self.session.evaluate(page_scripts.REVEAL_IMAGE, image_id))

    def disconnect(self) -> None:
        self.session.evaluate(page_scripts.DISCONNECT_IMAGE_REGISTRY)

    def scroll_to_bottom(self) -> int:
        return int(self.session.evaluate(page_scripts.SCROLL_TO_BOTTOM) or 0)

    def document_height(self) -> int:
        return int(self.session.evaluate(page_scripts.DOCUMENT_HEIGHT) or 0)


@dataclass
class StabilizationSettings:
    """Tunables for one stabilization run.

    Attributes:
        scroll_pause: Seconds to wait after each scroll.
        stability_checks: Consecutive unchanged heights required to stop scrolling.
        max_retries: Reloads per failed image.
        retry_delay: Base retry delay in seconds.
        timeout: Overall bound on scrolling plus image settling, in seconds.
        poll_interval: Seconds between snapshots while waiting for images.
        reveal_after: Seconds an image may stay pending before it is scrolled into view.
    """

    scroll_pause: float = env_config.DEFAULT_SCROLL_PAUSE_SECONDS
    stability_checks: int = env_config.DEFAULT_SCROLL_STABILITY_CHECKS
    max_retries: int = env_config.DEFAULT_IMAGE_MAX_RETRIES
    retry_delay: float = env_config.DEFAULT_IMAGE_RETRY_DELAY_SECONDS
    timeout: float = env_config.DEFAULT_EXTRACTION_TIMEOUT_SECONDS
    poll_interval: float = 0.25
    reveal_after: float = 5.0


class StabilizationProtocol:
    """Drives scrolling and image tracking until the page is stable.

    Args:
        inspector: PageInspector (or compatible) for the session being scraped.
        settings: Timing configuration.
        clock: Monotonic time source.
        sleep: Blocking sleep function.
    """

    def __init__(
        self,
        inspector: PageInspector,
        settings: StabilizationSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.inspector = inspector
        self.settings = settings or StabilizationSettings()
        self.clock = clock
        self.sleep = sleep
        self.trackers: dict[int, ImageLoadTracker] = {}
        self._pending_since: dict[int, float] = {}

    def run(self, selector: str) -> ExtractionResult:
        """Scroll and wait until every matched image has settled.

        Args:
            selector: CSS selector of the images to track.

        Returns:
            ExtractionResult for the tracked images.

        Raises:
            ExtractionTimeout: If the deadline passes first; carries the partial result.
            ScriptError: If the page scripts themselves cannot run.
        """
        started = self.clock()
        deadline = started + self.settings.timeout
        initial = self.inspector.install_registry(selector)
        logger.debug(f"Image registry installed with {initial} initial images")

        try:
            self._scroll_until_stable(deadline)
            self._wait_for_images(deadline)
        finally:
            try:
                self.inspector.disconnect()
            except ScriptError as e:
                logger.warning(f"Could not disconnect image observer: {e}")

        result = self.result()
        logger.info(
            f"Extraction settled in {self.clock() - started:.1f}s: "
            f"{result.processed_count} images, {result.failed_count} failed"
        )
        return result

    def result(self) -> ExtractionResult:
        failed = [t.src for t in self.trackers.values() if t.state is ImageState.FAILED]
        return ExtractionResult(
            processed_count=len(self.trackers),
            failed_count=len(failed),
            failed_urls=failed,
        )

    def _scroll_until_stable(self, deadline: float) -> None:
        stable_checks = 0
        last_height = self.inspector.document_height()
        scrolls = 0

        while stable_checks < self.settings.stability_checks:
            self._check_deadline(deadline, "Scrolling never settled")
            self.inspector.scroll_to_bottom()
            scrolls += 1
            self.sleep(self.settings.scroll_pause)

            height = self.inspector.document_height()
            if height == last_height:
                stable_checks += 1
            else:
                stable_checks = 0
                last_height = height
            self._refresh()

        logger.debug(f"Scrolling settled after {scrolls} scrolls at height {last_height}")

    def _wait_for_images(self, deadline: float) -> None:
        while True:
            self._refresh()
            unsettled = [t for t in self.trackers.values() if not t.settled]
            if not unsettled:
                return
            self._check_deadline(deadline, f"{len(unsettled)} images never finished loading")
            self.sleep(self.settings.poll_interval)

    def _refresh(self) -> None:
        now = self.clock()
        for entry in self.inspector.snapshot():
            image_id = int(entry["id"])
            src = entry.get("src") or ""
            tracker = self.trackers.get(image_id)
            if tracker is None:
                tracker = ImageLoadTracker(
                    image_id, src, self.settings.max_retries, self.settings.retry_delay
                )
                self.trackers[image_id] = tracker
            tracker.observe(src, entry.get("state", "pending"), now)

        for tracker in self.trackers.values():
            if tracker.due(now):
                logger.debug(
                    f"Reloading image {tracker.image_id} "
                    f"(attempt {tracker.attempts + 1}/{tracker.max_retries}): {tracker.src}"
                )
                tracker.mark_reloaded(self.inspector.reload(tracker.image_id))
            self._reveal_if_stalled(tracker, now)

    def _reveal_if_stalled(self, tracker: ImageLoadTracker, now: float) -> None:
        if tracker.state is not ImageState.PENDING:
            self._pending_since.pop(tracker.image_id, None)
            return
        since = self._pending_since.setdefault(tracker.image_id, now)
        if not tracker.revealed and now - since >= self.settings.reveal_after:
            tracker.revealed = True
            self.inspector.reveal(tracker.image_id)

    def _check_deadline(self, deadline: float, message: str) -> None:
        if self.clock() >= deadline:
            partial = self.result()
            logger.warning(f"{message} before the extraction deadline")
            raise ExtractionTimeout(
                f"{message} within {self.settings.timeout:.0f}s", partial=partial
            )
