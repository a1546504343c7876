"""Scrape orchestration: admission, browser lifecycle, extraction, downloads.

One call to scrape_pages() walks this state machine:

    IDLE -> ADMISSION_PENDING -> SESSION_STARTING -> NAVIGATING -> PRE_SCRIPT
         -> EXTRACTING -> POST_SCRIPT -> DOWNLOADING -> RELEASING -> DONE

Any state after ADMISSION_PENDING may move to FAILED. The admission slot is
taken before the try block and the session is created inside it, so the
finally clause releases exactly what was acquired: the session (if any) is
quit and the slot released once, whichever state raised.
"""

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import env_config
from browser import page_scripts
from browser.factory import BrowserSessionFactory
from browser.session import BrowserSession
from crawler.admission import AdmissionController
from crawler.complexity import (
    PageComplexity,
    detect_page_complexity,
    get_complexity_multiplier,
    scale_settings,
)
from crawler.errors import DownloadFailure, ScriptError
from crawler.extraction import (
    ExtractionResult,
    PageInspector,
    StabilizationProtocol,
    StabilizationSettings,
)
from crawler.logging_config import ScrapeStatistics
from crawler.site_config import DEFAULT_SELECTOR, SiteConfig, SiteConfigProvider
from processor.domain_canonicalization import resolve_domain
from processor.fetcher import ImageFetcher, ImageFetchResult
from processor.media_policy import (
    DEFAULT_EXTENSION,
    REJECTION_REASON_FAILED_TO_LOAD,
    REJECTION_REASON_FILTERED,
    REJECTION_REASON_STORAGE_ERROR,
    filter_image_urls,
    format_rejection_reason,
)
from processor.page_fetcher import SessionImageDownloader
from storage.resource_sink import ResourceSink

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SELECTOR_TIMEOUT_SECONDS = 15.0
DEFAULT_MIN_ELEMENT_SIZE = 50


class ScrapeState(str, Enum):
    IDLE = "idle"
    ADMISSION_PENDING = "admission_pending"
    SESSION_STARTING = "session_starting"
    NAVIGATING = "navigating"
    PRE_SCRIPT = "pre_script"
    EXTRACTING = "extracting"
    POST_SCRIPT = "post_script"
    DOWNLOADING = "downloading"
    RELEASING = "releasing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class OrchestratorSettings:
    """Timings and thresholds for scrape runs.

    Attributes:
        navigation_timeout: Seconds allowed for the page to load.
        title_timeout: Seconds to wait for a non-empty document title.
        script_settle_delay: Seconds to wait after a site script ran.
        selector_timeout: Seconds to wait for a non-generic selector to appear.
        min_element_size: Minimum element size in px for capture mode.
        image_min_width: Minimum accepted width of downloaded images.
        image_min_height: Minimum accepted height of downloaded images.
        extraction: Base stabilization settings, before adaptive scaling.
    """

    navigation_timeout: float = env_config.DEFAULT_NAVIGATION_TIMEOUT_SECONDS
    title_timeout: float = env_config.DEFAULT_TITLE_TIMEOUT_SECONDS
    script_settle_delay: float = env_config.DEFAULT_SCRIPT_SETTLE_SECONDS
    selector_timeout: float = DEFAULT_SELECTOR_TIMEOUT_SECONDS
    min_element_size: int = DEFAULT_MIN_ELEMENT_SIZE
    image_min_width: int = env_config.DEFAULT_IMAGE_MIN_WIDTH
    image_min_height: int = env_config.DEFAULT_IMAGE_MIN_HEIGHT
    extraction: StabilizationSettings = field(default_factory=StabilizationSettings)

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        return cls(
            navigation_timeout=env_config.get_navigation_timeout(),
            title_timeout=env_config.get_title_timeout(),
            script_settle_delay=env_config.get_script_settle_delay(),
            image_min_width=env_config.get_image_min_width(),
            image_min_height=env_config.get_image_min_height(),
            extraction=StabilizationSettings(
                scroll_pause=env_config.get_scroll_pause(),
                stability_checks=env_config.get_scroll_stability_checks(),
                max_retries=env_config.get_image_max_retries(),
                retry_delay=env_config.get_image_retry_delay(),
                timeout=env_config.get_extraction_timeout(),
            ),
        )


@dataclass
class DownloadOutcome:
    """What happened to one discovered resource.

    Attributes:
        url: Resource URL (or a page fragment for screenshots).
        reference: Public reference returned by the sink; None if not stored.
        source: Download path that produced the bytes.
        error: Rejection or failure reason.
        skipped: True when the URL was intentionally not downloaded.
    """

    url: str
    reference: str | None = None
    source: str | None = None
    error: str | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.reference is not None


@dataclass
class ScrapeResult:
    url: str
    domain: str
    outcomes: list[DownloadOutcome] = field(default_factory=list)
    extraction: ExtractionResult | None = None
    complexity: PageComplexity | None = None
    screenshot_mode: bool = False

    @property
    def references(self) -> list[str]:
        """Stored references in page order."""
        return [o.reference for o in self.outcomes if o.reference is not None]

    @property
    def failed(self) -> list[DownloadOutcome]:
        return [o for o in self.outcomes if not o.ok and not o.skipped]

    @property
    def skipped(self) -> list[DownloadOutcome]:
        return [o for o in self.outcomes if o.skipped]


@dataclass
class _ScrapeRun:
    url: str
    domain: str
    config: SiteConfig
    stats: ScrapeStatistics
    state: ScrapeState = ScrapeState.IDLE


class ScrapeOrchestrator:
    """Runs scrape jobs against external sites under per-domain admission control.

    The orchestrator holds no per-run state, so one instance may serve
    concurrent runs from several threads.

    Args:
        admission: Admission controller shared by every run.
        session_factory: Produces one browser session per run.
        site_configs: Source of per-domain rules.
        sink: Destination of downloaded bytes.
        settings: Timings; read from the environment when omitted.
        fetcher: HTTP fallback fetcher; a per-run one is created when omitted.
        on_transition: Called with (domain, state) on every state change.
        sleep: Blocking sleep used for settle delays and scroll pauses.
        clock: Monotonic clock used by the extraction deadline.
    """

    def __init__(
        self,
        admission: AdmissionController,
        session_factory: BrowserSessionFactory,
        site_configs: SiteConfigProvider,
        sink: ResourceSink,
        settings: OrchestratorSettings | None = None,
        fetcher: ImageFetcher | None = None,
        on_transition: Callable[[str, ScrapeState], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.admission = admission
        self.session_factory = session_factory
        self.site_configs = site_configs
        self.sink = sink
        self.settings = settings or OrchestratorSettings.from_env()
        self.fetcher = fetcher
        self.on_transition = on_transition
        self.sleep = sleep
        self.clock = clock

    def scrape_pages(self, url: str, min_pages: int = 0) -> ScrapeResult:
        """Scrape every matching image of a page.

        Args:
            url: Page to scrape.
            min_pages: The result is empty unless more than this many
                images (or elements in capture mode) are found.

        Returns:
            ScrapeResult with one outcome per discovered resource.

        Raises:
            AdmissionTimeout: No slot could be obtained for the domain.
            LaunchError: The browser session could not be created.
            NavigationError: The page failed to load.
            ExtractionTimeout: The page never stabilized.
        """
        return self._run(url, lambda run, session: self._scrape_pages_task(run, session, min_pages))

    def scrape_single_image(self, page_url: str, image_url: str) -> str:
        """Download one image in the context of the page that shows it.

        Args:
            page_url: Page providing cookies, origin and Referer.
            image_url: Image to download.

        Returns:
            Public reference of the stored image.

        Raises:
            DownloadFailure: If no valid bytes could be obtained or stored.
        """
        return self._run(page_url, lambda run, session: self._single_image_task(run, session, image_url))

    def scrape_multiple_images(self, page_url: str, image_urls: Sequence[str]) -> list[str | None]:
        """Download several images through one session of the page that shows them.

        Args:
            page_url: Page providing cookies, origin and Referer.
            image_urls: Images to download, in order.

        Returns:
            One entry per image URL: the stored reference, or None if that
            image could not be downloaded or stored.
        """
        urls = list(image_urls)
        return self._run(page_url, lambda run, session: self._multiple_images_task(run, session, urls))

    def fetch_image(self, page_url: str, image_url: str) -> ImageFetchResult:
        """Fetch one image in the context of its page without storing it.

        Raises:
            DownloadFailure: If no valid bytes could be obtained.
        """
        return self._run(page_url, lambda run, session: self._fetch_image_task(run, session, image_url))

    def _run(self, url: str, task: Callable[[_ScrapeRun, BrowserSession], T]) -> T:
        domain = resolve_domain(url)
        run = _ScrapeRun(url=url, domain=domain, config=SiteConfig(), stats=ScrapeStatistics(domain))
        self._transition(run, ScrapeState.ADMISSION_PENDING)
        run.config = self.site_configs.get_config(domain)
        self.admission.acquire(domain, run.config.concurrency_limit)

        session: BrowserSession | None = None
        completed = False
        try:
            self._transition(run, ScrapeState.SESSION_STARTING)
            session = self.session_factory.create()

            if run.config.use_network_interception and not run.config.use_screenshot_mode:
                if not session.enable_interception():
                    logger.debug(f"{session.engine} sessions cannot intercept responses, continuing without cache")
            if run.config.cookies:
                self._inject_cookies(run, session)

            self._transition(run, ScrapeState.NAVIGATING)
            session.navigate(url, self.settings.navigation_timeout)
            if run.config.has_storage_items:
                self._inject_storage(run, session)
            if not session.wait_for_title(self.settings.title_timeout):
                logger.warning(f"Page title did not appear within {self.settings.title_timeout}s: {url}")

            outcome = task(run, session)
            completed = True
            return outcome
        except Exception as e:
            logger.error(f"Scrape of {url} failed in state {run.state.value}: {e}")
            raise
        finally:
            self._transition(run, ScrapeState.RELEASING)
            self._destroy_session(session)
            self._release(domain)
            self._transition(run, ScrapeState.DONE if completed else ScrapeState.FAILED)

    def _scrape_pages_task(self, run: _ScrapeRun, session: BrowserSession, min_pages: int) -> ScrapeResult:
        config = run.config
        selector = config.selector or DEFAULT_SELECTOR
        result = ScrapeResult(url=run.url, domain=run.domain, screenshot_mode=config.use_screenshot_mode)

        if selector != DEFAULT_SELECTOR:
            logger.debug(f"Waiting for selector: {selector}")
            if not session.wait_for_selector(selector, self.settings.selector_timeout):
                logger.debug(f'Selector "{selector}" not found within timeout, proceeding anyway')

        self._transition(run, ScrapeState.PRE_SCRIPT)
        self._run_site_script(run, session, config.pre_script, "pre")

        result.complexity = self._measure(session, selector)
        extraction_settings = self.settings.extraction
        if config.enable_adaptive_timeouts and result.complexity is not None:
            multiplier = get_complexity_multiplier(result.complexity, config.timeout_multipliers)
            extraction_settings = scale_settings(extraction_settings, multiplier)
            logger.info(
                f"Page: {result.complexity.scroll_height}px "
                f"({result.complexity.scroll_ratio:.1f}x viewport), "
                f"{result.complexity.element_count} elements, "
                f"size: {result.complexity.page_size.value}, multiplier {multiplier}"
            )

        if not config.use_screenshot_mode:
            self._transition(run, ScrapeState.EXTRACTING)
            protocol = StabilizationProtocol(
                PageInspector(session), extraction_settings, clock=self.clock, sleep=self.sleep
            )
            result.extraction = protocol.run(selector)

        self._transition(run, ScrapeState.POST_SCRIPT)
        self._run_site_script(run, session, config.post_script, "post")

        self._transition(run, ScrapeState.DOWNLOADING)
        if config.use_screenshot_mode:
            self._capture_screenshots(run, session, selector, min_pages, result)
        else:
            self._download_images(run, session, selector, min_pages, result)

        run.stats.log_summary(logger)
        return result

    def _capture_screenshots(
        self,
        run: _ScrapeRun,
        session: BrowserSession,
        selector: str,
        min_pages: int,
        result: ScrapeResult,
    ) -> None:
        if result.complexity is not None and result.complexity.element_count <= min_pages:
            logger.info(f"Found {result.complexity.element_count} elements, not more than {min_pages}")
            return

        logger.info("Using screenshot mode for image capture (PNG, lossless)")
        screenshots = session.capture_elements(selector, self.settings.min_element_size)
        if len(screenshots) <= min_pages:
            logger.info(f"Captured {len(screenshots)} elements, not more than {min_pages}")
            return

        for index, png in enumerate(screenshots):
            label = f"{run.url}#screenshot-{index}"
            try:
                reference = self.sink.store(png, ".png")
            except Exception as e:
                logger.warning(f"Failed to save screenshot {index}: {e}")
                run.stats.record_failed(label, str(e))
                result.outcomes.append(
                    DownloadOutcome(
                        url=label,
                        source="screenshot",
                        error=format_rejection_reason(REJECTION_REASON_STORAGE_ERROR, str(e)),
                    )
                )
                continue
            run.stats.record_stored(len(png), screenshot=True)
            result.outcomes.append(DownloadOutcome(url=label, reference=reference, source="screenshot"))

        logger.info(f"Captured {len(result.references)}/{len(screenshots)} screenshots")

    def _download_images(
        self,
        run: _ScrapeRun,
        session: BrowserSession,
        selector: str,
        min_pages: int,
        result: ScrapeResult,
    ) -> None:
        config = run.config
        urls = list(session.evaluate(page_scripts.COLLECT_IMAGE_URLS, selector) or [])
        run.stats.record_discovered(len(urls))
        accepted = filter_image_urls(urls, config.blacklist_terms, config.whitelist_terms)

        if len(accepted) <= min_pages:
            logger.info(f"Found {len(accepted)} valid image URLs, not more than {min_pages}")
            return

        logger.info(f"Found {len(accepted)} valid image URLs. Starting downloads.")
        accepted_set = set(accepted)
        failed_set = set(result.extraction.failed_urls) if result.extraction else set()

        downloader, owned_fetcher = self._downloader_for(session)
        try:
            for image_url in urls:
                result.outcomes.append(
                    self._download_one(run, downloader, image_url, accepted_set, failed_set)
                )
        finally:
            if owned_fetcher is not None:
                owned_fetcher.close()

    def _download_one(
        self,
        run: _ScrapeRun,
        downloader: SessionImageDownloader,
        image_url: str,
        accepted: set[str],
        failed: set[str],
    ) -> DownloadOutcome:
        if image_url in failed:
            logger.warning(f"Image failed to load: {image_url}")
            run.stats.record_skipped()
            return DownloadOutcome(url=image_url, skipped=True, error=REJECTION_REASON_FAILED_TO_LOAD)
        if image_url not in accepted:
            run.stats.record_skipped()
            return DownloadOutcome(url=image_url, skipped=True, error=REJECTION_REASON_FILTERED)

        try:
            reference, source = self._fetch_and_store(run, downloader, image_url)
            return DownloadOutcome(url=image_url, reference=reference, source=source)
        except DownloadFailure as e:
            logger.warning(str(e))
            run.stats.record_failed(image_url, e.reason)
            return DownloadOutcome(url=image_url, error=e.reason)

    def _fetch_and_store(
        self, run: _ScrapeRun, downloader: SessionImageDownloader, image_url: str
    ) -> tuple[str, str | None]:
        fetched = downloader.download(image_url)
        if not fetched.success or fetched.content is None:
            raise DownloadFailure(image_url, fetched.error_message or "no content")

        try:
            reference = self.sink.store(fetched.content, fetched.extension or DEFAULT_EXTENSION)
        except Exception as e:
            raise DownloadFailure(
                image_url, format_rejection_reason(REJECTION_REASON_STORAGE_ERROR, str(e))
            ) from e

        run.stats.record_stored(fetched.file_size)
        logger.debug(f"Stored {image_url} from {fetched.source} as {reference}")
        return reference, fetched.source

    def _single_image_task(self, run: _ScrapeRun, session: BrowserSession, image_url: str) -> str:
        self._transition(run, ScrapeState.DOWNLOADING)
        downloader, owned_fetcher = self._downloader_for(session)
        try:
            reference, _ = self._fetch_and_store(run, downloader, image_url)
            return reference
        finally:
            if owned_fetcher is not None:
                owned_fetcher.close()

    def _multiple_images_task(
        self, run: _ScrapeRun, session: BrowserSession, image_urls: list[str]
    ) -> list[str | None]:
        self._transition(run, ScrapeState.DOWNLOADING)
        run.stats.record_discovered(len(image_urls))
        references: list[str | None] = []
        downloader, owned_fetcher = self._downloader_for(session)
        try:
            for image_url in image_urls:
                try:
                    reference, _ = self._fetch_and_store(run, downloader, image_url)
                except DownloadFailure as e:
                    logger.warning(str(e))
                    run.stats.record_failed(image_url, e.reason)
                    references.append(None)
                    continue
                references.append(reference)
        finally:
            if owned_fetcher is not None:
                owned_fetcher.close()
        stored = sum(reference is not None for reference in references)
        logger.info(f"Stored {stored}/{len(image_urls)} images from {run.url}")
        return references

    def _fetch_image_task(self, run: _ScrapeRun, session: BrowserSession, image_url: str) -> ImageFetchResult:
        self._transition(run, ScrapeState.DOWNLOADING)
        downloader, owned_fetcher = self._downloader_for(session)
        try:
            fetched = downloader.download(image_url)
        finally:
            if owned_fetcher is not None:
                owned_fetcher.close()
        if not fetched.success or fetched.content is None:
            raise DownloadFailure(image_url, fetched.error_message or "no content")
        return fetched

    def _downloader_for(self, session: BrowserSession) -> tuple[SessionImageDownloader, ImageFetcher | None]:
        if self.fetcher is not None:
            return SessionImageDownloader(session, self.fetcher, sleep=self.sleep), None
        fetcher = ImageFetcher(
            user_agent=session.user_agent,
            min_width=self.settings.image_min_width,
            min_height=self.settings.image_min_height,
        )
        return SessionImageDownloader(session, fetcher, sleep=self.sleep), fetcher

    def _inject_cookies(self, run: _ScrapeRun, session: BrowserSession) -> None:
        try:
            session.add_cookies(run.config.cookies, run.url, self.settings.navigation_timeout)
        except ScriptError as e:
            logger.warning(f"Could not inject cookies for {run.domain}: {e}")
            run.stats.errors.append(f"cookies: {e}")

    def _inject_storage(self, run: _ScrapeRun, session: BrowserSession) -> None:
        config = run.config
        try:
            count = session.set_storage(config.local_storage, config.session_storage)
        except ScriptError as e:
            logger.warning(f"Could not inject storage for {run.domain}: {e}")
            run.stats.errors.append(f"storage: {e}")
            return
        logger.debug(f"Injected {count} storage items for {run.domain}")

        if config.reload_after_storage_injection:
            logger.debug("Reloading page after storage injection")
            session.reload(self.settings.navigation_timeout)

    def _measure(self, session: BrowserSession, selector: str) -> PageComplexity | None:
        try:
            return detect_page_complexity(session, selector)
        except ScriptError as e:
            logger.warning(f"Could not measure page complexity: {e}")
            return None

    def _run_site_script(self, run: _ScrapeRun, session: BrowserSession, script: str, label: str) -> None:
        if not script or not script.strip():
            return
        try:
            session.run_script(script)
        except ScriptError as e:
            logger.warning(f"Error executing {label}-script on {run.domain}: {e}")
            run.stats.errors.append(f"{label}-script: {e}")
            return
        self.sleep(self.settings.script_settle_delay)

    def _destroy_session(self, session: BrowserSession | None) -> None:
        if session is None:
            return
        try:
            session.quit()
        except Exception as e:
            logger.error(f"Error closing browser session: {e}")

    def _release(self, domain: str) -> None:
        try:
            self.admission.release(domain)
        except Exception as e:
            logger.error(f"Error releasing admission slot for {domain}: {e}")

    def _transition(self, run: _ScrapeRun, state: ScrapeState) -> None:
        logger.debug(f"[{run.domain}] {run.state.value} -> {state.value}")
        run.state = state
        if self.on_transition is not None:
            self.on_transition(run.domain, state)
