"""Engine-neutral browser session handles.

A BrowserSession wraps one browser process or context owned by a single
scrape run. Engine exceptions are translated to the crawler error taxonomy
at this boundary so the orchestrator never branches on engine type.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any
from urllib.parse import urlparse

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from browser import page_scripts
from browser.interception import CachedImage, ImageResponseCache
from crawler.errors import NavigationError, ScrapeError, ScriptError

logger = logging.getLogger(__name__)

DEFAULT_MIN_ELEMENT_SIZE = 50
DEFAULT_COOKIE_LIFETIME_SECONDS = 365 * 24 * 60 * 60


def build_async_wrapper(function_source: str) -> str:
    """Wrap a JS function expression for Selenium's execute_async_script.

    The wrapped function receives the first script argument and may return
    a value or a promise. The callback always receives an envelope
    ``{ok, value}`` or ``{ok, error}`` so page errors can be re-raised.
    """
    return (
        "const done = arguments[arguments.length - 1];\n"
        "const fn = (" + function_source.strip() + ");\n"
        "Promise.resolve()\n"
        "  .then(() => fn(arguments[0]))\n"
        "  .then(\n"
        "    (value) => done({ ok: true, value: value === undefined ? null : value }),\n"
        "    (error) => done({ ok: false, error: String(error) })\n"
        "  );\n"
    )


def normalize_cookie(
    cookie: Mapping[str, Any], default_domain: str, now: float | None = None
) -> dict[str, Any]:
    """Fill in the optional cookie fields.

    Missing values default to the target host, path "/", not secure, not
    httpOnly, SameSite=Lax and an expiry one year out.
    """
    issued = time.time() if now is None else now
    return {
        "name": str(cookie["name"]),
        "value": str(cookie.get("value", "")),
        "domain": cookie.get("domain") or default_domain,
        "path": cookie.get("path") or "/",
        "secure": bool(cookie.get("secure", False)),
        "httpOnly": bool(cookie.get("httpOnly", False)),
        "sameSite": cookie.get("sameSite") or "Lax",
        "expires": int(cookie.get("expires") or issued + DEFAULT_COOKIE_LIFETIME_SECONDS),
    }

class BrowserSession(ABC):
    """A ready-to-drive browser page.

    Attributes:
        engine: Engine label ("chrome", "firefox", "playwright").
        user_agent: User agent the session presents, if known.
        closed: True once quit() has been called.
    """

    def __init__(self, engine: str, user_agent: str | None = None) -> None:
        self.engine = engine
        self.user_agent = user_agent
        self.closed = False

    @property
    @abstractmethod
    def current_url(self) -> str:
        """URL of the page currently loaded."""

    @abstractmethod
    def navigate(self, url: str, timeout: float) -> None:
        """Load a URL.

        Raises:
            NavigationError: If the page fails to load within the timeout.
        """

    @abstractmethod
    def reload(self, timeout: float) -> None:
        """Reload the current page.

        Raises:
            NavigationError: If the page fails to load within the timeout.
        """

    @abstractmethod
    def wait_for_title(self, timeout: float) -> bool:
        """Wait for the document to report a non-empty title."""

    @abstractmethod
    def wait_for_selector(self, selector: str, timeout: float) -> bool:
        """Wait for at least one element matching a CSS selector."""

    @abstractmethod
    def run_script(self, source: str) -> None:
        """Run a site-supplied statement block.

        Raises:
            ScriptError: If the script throws.
        """

    @abstractmethod
    def evaluate(self, function_source: str, arg: Any = None) -> Any:
        """Call a JS function expression with one argument and return its result.

        Promises are awaited. Raises ScriptError if the function throws.
        """

    @abstractmethod
    def capture_elements(self, selector: str, min_size: int = DEFAULT_MIN_ELEMENT_SIZE) -> list[bytes]:
        """Return PNG screenshots of every matching element at least min_size px each way."""

    @abstractmethod
    def get_cookies(self) -> dict[str, str]:
        """Return cookies of the current browsing context as a name/value map."""

    @abstractmethod
    def add_cookies(self, cookies: Sequence[Mapping[str, Any]], url: str, timeout: float) -> None:
        """Add cookies so they are sent with the first request for url.

        Cookies without a domain are scoped to the host of url.

        Raises:
            NavigationError: If the origin has to be loaded first and fails.
            ScriptError: If the browser rejects a cookie.
        """

    def set_storage(self, local: Mapping[str, str], session: Mapping[str, str]) -> int:
        """Set localStorage and sessionStorage items on the current page.

        Returns:
            Number of items written.
        """
        items = {"local": dict(local), "session": dict(session)}
        return int(self.evaluate(page_scripts.SET_STORAGE, items) or 0)

    def enable_interception(self) -> bool:
        """Start recording image responses. Returns False if unsupported."""
        return False

    @property
    def intercepting(self) -> bool:
        """True while image responses are being recorded."""
        return False

    def cached_image(self, url: str) -> CachedImage | None:
        return None

    def stop_interception(self) -> None:
        pass

    def quit(self) -> None:
        """Destroy the session. Calling it more than once is a no-op."""
        if self.closed:
            return
        self.closed = True
        logger.debug(f"Closing {self.engine} session")
        self._shutdown()

    @abstractmethod
    def _shutdown(self) -> None:
        """Release the underlying browser resources."""

    def _ensure_open(self) -> None:
        if self.closed:
            raise ScrapeError(f"{self.engine} session used after quit")


class SeleniumBrowserSession(BrowserSession):
    """Session backed by a Selenium WebDriver (Chrome or Firefox)."""

    def __init__(
        self,
        driver: Any,
        engine: str,
        user_agent: str | None = None,
        stealth_script: str | None = None,
    ) -> None:
        super().__init__(engine, user_agent)
        self.driver = driver
        self.stealth_script = stealth_script

    @property
    def current_url(self) -> str:
        return self.driver.current_url

    def navigate(self, url: str, timeout: float) -> None:
        self._ensure_open()
        try:
            self.driver.set_page_load_timeout(timeout)
            self.driver.get(url)
        except TimeoutException as e:
            raise NavigationError(f"Timed out loading {url} after {timeout}s") from e
        except WebDriverException as e:
            raise NavigationError(f"Failed to load {url}: {e.msg or e}") from e

        self._apply_stealth()

    def reload(self, timeout: float) -> None:
        self._ensure_open()
        try:
            self.driver.set_page_load_timeout(timeout)
            self.driver.refresh()
        except TimeoutException as e:
            raise NavigationError(f"Timed out reloading after {timeout}s") from e
        except WebDriverException as e:
            raise NavigationError(f"Failed to reload: {e.msg or e}") from e
        self._apply_stealth()

    def _apply_stealth(self) -> None:
        # Overrides set before navigation do not survive a new document
        if not self.stealth_script:
            return
        try:
            self.driver.execute_script(self.stealth_script)
        except WebDriverException as e:
            logger.warning(f"Stealth injection failed after navigation: {e.msg or e}")

    def wait_for_title(self, timeout: float) -> bool:
        self._ensure_open()
        try:
            WebDriverWait(self.driver, timeout).until(lambda d: bool(d.title))
            return True
        except TimeoutException:
            return False

    def wait_for_selector(self, selector: str, timeout: float) -> bool:
        self._ensure_open()
        try:
            WebDriverWait(self.driver, timeout).until(
                EC.presence_of_element_located((By.CSS_SELECTOR, selector))
            )
            return True
        except TimeoutException:
            return False

    def run_script(self, source: str) -> None:
        self._ensure_open()
        try:
            self.driver.execute_script(source)
        except WebDriverException as e:
            raise ScriptError(f"Site script failed: {e.msg or e}") from e

    def evaluate(self, function_source: str, arg: Any = None) -> Any:
        self._ensure_open()
        try:
            envelope = self.driver.execute_async_script(build_async_wrapper(function_source), arg)
        except WebDriverException as e:
            raise ScriptError(f"Page script failed: {e.msg or e}") from e

        if not isinstance(envelope, dict):
            raise ScriptError(f"Unexpected script result: {envelope!r}")
        if not envelope.get("ok"):
            raise ScriptError(f"Page script raised: {envelope.get('error')}")
        return envelope.get("value")

    def capture_elements(self, selector: str, min_size: int = DEFAULT_MIN_ELEMENT_SIZE) -> list[bytes]:
        self._ensure_open()
        screenshots = []
        elements = self.driver.find_elements(By.CSS_SELECTOR, selector)
        for index, element in enumerate(elements):
            try:
                size = element.size
                if size["width"] < min_size or size["height"] < min_size:
                    logger.debug(f"Skipping element {index}: {size['width']}x{size['height']}")
                    continue
                self.driver.execute_script("arguments[0].scrollIntoView({block: 'center'});", element)
                screenshots.append(element.screenshot_as_png)
            except WebDriverException as e:
                logger.warning(f"Screenshot of element {index} failed: {e.msg or e}")
        return screenshots

    def get_cookies(self) -> dict[str, str]:
        self._ensure_open()
        return {cookie["name"]: cookie["value"] for cookie in self.driver.get_cookies()}

    def add_cookies(self, cookies: Sequence[Mapping[str, Any]], url: str, timeout: float) -> None:
        self._ensure_open()
        target = urlparse(url)
        host = target.hostname or ""
        records = [normalize_cookie(cookie, host) for cookie in cookies]
        if not records:
            return

        # WebDriver only accepts cookies for the domain of the loaded document
        if urlparse(self.current_url).hostname != host:
            origin = f"{target.scheme}://{target.netloc}/"
            try:
                self.driver.set_page_load_timeout(timeout)
                self.driver.get(origin)
            except TimeoutException as e:
                raise NavigationError(f"Timed out loading {origin} after {timeout}s") from e
            except WebDriverException as e:
                raise NavigationError(f"Failed to load {origin}: {e.msg or e}") from e

        for record in records:
            cookie = {key: value for key, value in record.items() if key != "expires"}
            cookie["expiry"] = record["expires"]
            try:
                self.driver.add_cookie(cookie)
            except WebDriverException as e:
                raise ScriptError(f"Could not add cookie {record['name']!r}: {e.msg or e}") from e
        logger.debug(f"Injected {len(records)} cookies for domain: {host}")

    def _shutdown(self) -> None:
        self.driver.quit()


class PlaywrightBrowserSession(BrowserSession):
    """Session backed by a Playwright Chromium page."""

    def __init__(
        self,
        playwright: Any,
        browser: Any,
        context: Any,
        page: Any,
        user_agent: str | None = None,
    ) -> None:
        super().__init__("playwright", user_agent)
        self.playwright = playwright
        self.browser = browser
        self.context = context
        self.page = page
        self._cache: ImageResponseCache | None = None

    @property
    def current_url(self) -> str:
        return self.page.url

    def navigate(self, url: str, timeout: float) -> None:
        self._ensure_open()
        try:
            self.page.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Timed out loading {url} after {timeout}s") from e
        except PlaywrightError as e:
            raise NavigationError(f"Failed to load {url}: {e.message}") from e

    def reload(self, timeout: float) -> None:
        self._ensure_open()
        try:
            self.page.reload(wait_until="domcontentloaded", timeout=timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Timed out reloading after {timeout}s") from e
        except PlaywrightError as e:
            raise NavigationError(f"Failed to reload: {e.message}") from e

    def wait_for_title(self, timeout: float) -> bool:
        self._ensure_open()
        try:
            self.page.wait_for_function(
                "() => document.title && document.title.length > 0", timeout=timeout * 1000
            )
            return True
        except PlaywrightTimeoutError:
            return False

    def wait_for_selector(self, selector: str, timeout: float) -> bool:
        self._ensure_open()
        try:
            self.page.wait_for_selector(selector, state="attached", timeout=timeout * 1000)
            return True
        except PlaywrightTimeoutError:
            return False

    def run_script(self, source: str) -> None:
        self._ensure_open()
        try:
            self.page.evaluate("async () => {\n" + source + "\n}")
        except PlaywrightError as e:
            raise ScriptError(f"Site script failed: {e.message}") from e

    def evaluate(self, function_source: str, arg: Any = None) -> Any:
        self._ensure_open()
        try:
            return self.page.evaluate(function_source, arg)
        except PlaywrightError as e:
            raise ScriptError(f"Page script raised: {e.message}") from e

    def capture_elements(self, selector: str, min_size: int = DEFAULT_MIN_ELEMENT_SIZE) -> list[bytes]:
        self._ensure_open()
        screenshots = []
        for index, element in enumerate(self.page.query_selector_all(selector)):
            try:
                box = element.bounding_box()
                if box is None or box["width"] < min_size or box["height"] < min_size:
                    logger.debug(f"Skipping element {index}: {box}")
                    continue
                element.scroll_into_view_if_needed()
                screenshots.append(element.screenshot(type="png"))
            except PlaywrightError as e:
                logger.warning(f"Screenshot of element {index} failed: {e.message}")
        return screenshots

    def get_cookies(self) -> dict[str, str]:
        self._ensure_open()
        return {cookie["name"]: cookie["value"] for cookie in self.context.cookies()}

    def add_cookies(self, cookies: Sequence[Mapping[str, Any]], url: str, timeout: float) -> None:
        self._ensure_open()
        host = urlparse(url).hostname or ""
        records = [normalize_cookie(cookie, host) for cookie in cookies]
        if not records:
            return
        try:
            self.context.add_cookies(records)
        except PlaywrightError as e:
            raise ScriptError(f"Could not add cookies: {e.message}") from e
        logger.debug(f"Injected {len(records)} cookies for domain: {host}")

    def enable_interception(self) -> bool:
        self._ensure_open()
        if self._cache is None:
            self._cache = ImageResponseCache()
            self.page.on("response", self._on_response)
            logger.debug("Network interception enabled")
        return True

    @property
    def intercepting(self) -> bool:
        return self._cache is not None

    def _on_response(self, response: Any) -> None:
        if self._cache is None or not response.ok:
            return
        if response.request.resource_type != "image":
            return
        try:
            body = response.body()
        except PlaywrightError as e:
            logger.debug(f"Could not read response body for {response.url}: {e.message}")
            return
        self._cache.put(response.url, body, response.headers.get("content-type"))

    def cached_image(self, url: str) -> CachedImage | None:
        if self._cache is None:
            return None
        return self._cache.get(url)

    def stop_interception(self) -> None:
        if self._cache is None:
            return
        try:
            self.page.remove_listener("response", self._on_response)
        except PlaywrightError as e:
            logger.debug(f"Could not detach response listener: {e.message}")
        self._cache.clear()
        self._cache = None

    def _shutdown(self) -> None:
        self.stop_interception()
        for label, close in (
            ("context", self.context.close),
            ("browser", self.browser.close),
            ("playwright", self.playwright.stop),
        ):
            try:
                close()
            except Exception as e:
                logger.warning(f"Error closing Playwright {label}: {e}")
