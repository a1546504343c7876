"""Browser session factories, one per engine.

Each factory builds engine-specific capabilities, launches or attaches to
a browser, injects stealth scripts (best-effort) and sets timeouts. All of
them return a BrowserSession so callers never branch on engine type.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright
from selenium import webdriver
from selenium.common.exceptions import WebDriverException

import env_config
from browser.options import (
    CHROME_ARGS,
    CHROME_PREFS,
    FIREFOX_ARGS,
    FIREFOX_PREFS,
    FIREFOX_USER_AGENT,
    PLAYWRIGHT_CHROMIUM_ARGS,
)
from browser.session import BrowserSession, PlaywrightBrowserSession, SeleniumBrowserSession
from browser.stealth import get_stealth_script
from crawler.errors import LaunchError

logger = logging.getLogger(__name__)

CDP_CONNECT_TIMEOUT_MS = 15000


@dataclass
class BrowserConfig:
    """Launch settings shared by every session factory.

    Attributes:
        engine: "chrome", "firefox" or "playwright".
        headless: Run without a visible window.
        user_agent: User agent override; empty keeps the engine default.
        download_dir: Directory the browser saves downloads to.
        selenium_url: Remote WebDriver URL; empty launches a local driver.
        ws_endpoint: Remote Chromium CDP endpoint for Playwright.
        stealth: Inject anti-automation-detection scripts.
        script_timeout: Driver script timeout in seconds.
        page_load_timeout: Driver page load timeout in seconds.
        action_timeout: Default Playwright action timeout in seconds.
        viewport: Playwright viewport (width, height).
        locale: Playwright context locale.
        timezone_id: Playwright context timezone.
        binary_location: Browser executable for local Selenium drivers.
    """

    engine: str = env_config.DEFAULT_BROWSER_ENGINE
    headless: bool = env_config.DEFAULT_BROWSER_HEADLESS
    user_agent: str = env_config.DEFAULT_BROWSER_USER_AGENT
    download_dir: str = env_config.DEFAULT_BROWSER_DOWNLOAD_DIR
    selenium_url: str = ""
    ws_endpoint: str = ""
    stealth: bool = env_config.DEFAULT_BROWSER_STEALTH
    script_timeout: float = env_config.DEFAULT_BROWSER_SCRIPT_TIMEOUT_SECONDS
    page_load_timeout: float = env_config.DEFAULT_BROWSER_PAGE_LOAD_TIMEOUT_SECONDS
    action_timeout: float = 30.0
    viewport: tuple[int, int] = (1920, 1080)
    locale: str = "en-US"
    timezone_id: str = "America/Sao_Paulo"
    binary_location: str = ""

    @classmethod
    def from_env(cls) -> "BrowserConfig":
        return cls(
            engine=env_config.get_browser_engine(),
            headless=env_config.get_browser_headless(),
            user_agent=env_config.get_browser_user_agent(),
            download_dir=env_config.get_browser_download_dir(),
            selenium_url=env_config.get_selenium_url(),
            ws_endpoint=env_config.get_playwright_ws_endpoint(),
            stealth=env_config.get_browser_stealth(),
            script_timeout=env_config.get_browser_script_timeout(),
            page_load_timeout=env_config.get_browser_page_load_timeout(),
            binary_location=env_config.get_browser_binary(),
        )


class BrowserSessionFactory(ABC):
    """Produces ready-to-drive browser sessions."""

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self.config = config or BrowserConfig()

    @abstractmethod
    def create(self) -> BrowserSession:
        """Launch a new session.

        Raises:
            LaunchError: If the browser cannot be started or attached to.
        """


class SeleniumSessionFactory(BrowserSessionFactory):
    """Shared Selenium launch sequence; subclasses supply engine options."""

    engine = ""

    def create(self) -> BrowserSession:
        logger.debug(f"Creating {self.engine} WebDriver")
        options = self.build_options()
        try:
            driver = self._start_driver(options)
        except WebDriverException as e:
            raise LaunchError(f"Could not start {self.engine} WebDriver: {e.msg or e}") from e

        stealth_script = get_stealth_script() if self.config.stealth else None
        if stealth_script:
            self._apply_stealth(driver, stealth_script)

        try:
            driver.set_script_timeout(self.config.script_timeout)
            driver.set_page_load_timeout(self.config.page_load_timeout)
        except WebDriverException as e:
            self._quit_quietly(driver)
            raise LaunchError(f"Could not configure {self.engine} timeouts: {e.msg or e}") from e

        logger.debug(f"{self.engine} WebDriver ready")
        return SeleniumBrowserSession(
            driver,
            engine=self.engine,
            user_agent=self.effective_user_agent(),
            stealth_script=stealth_script,
        )

    def effective_user_agent(self) -> str | None:
        return self.config.user_agent or None

    @abstractmethod
    def build_options(self) -> Any:
        """Return engine-specific Selenium options."""

    @abstractmethod
    def _start_local(self, options: Any) -> Any:
        """Start a local driver process."""

    def _start_driver(self, options: Any) -> Any:
        if self.config.selenium_url:
            logger.debug(f"Using remote Selenium at {self.config.selenium_url}")
            return webdriver.Remote(command_executor=self.config.selenium_url, options=options)
        return self._start_local(options)

    def _apply_stealth(self, driver: Any, script: str) -> None:
        try:
            driver.execute_script(script)
            logger.debug("Stealth scripts applied")
        except WebDriverException as e:
            logger.warning(f"Failed to apply stealth scripts: {e.msg or e}")

    def _quit_quietly(self, driver: Any) -> None:
        try:
            driver.quit()
        except WebDriverException as e:
            logger.warning(f"Error quitting {self.engine} WebDriver: {e.msg or e}")


class ChromeSessionFactory(SeleniumSessionFactory):
    engine = "chrome"

    def build_options(self) -> webdriver.ChromeOptions:
        options = webdriver.ChromeOptions()
        for arg in CHROME_ARGS:
            options.add_argument(arg)
        if self.config.headless:
            options.add_argument("--headless=new")
        if self.config.user_agent:
            options.add_argument(f"--user-agent={self.config.user_agent}")
        if self.config.binary_location:
            options.binary_location = self.config.binary_location

        prefs = dict(CHROME_PREFS)
        prefs["download.default_directory"] = os.path.abspath(self.config.download_dir)
        options.add_experimental_option("prefs", prefs)
        options.add_experimental_option("excludeSwitches", ["enable-automation", "enable-logging"])
        options.add_experimental_option("useAutomationExtension", False)
        return options

    def _start_local(self, options: Any) -> Any:
        return webdriver.Chrome(options=options)

    def _apply_stealth(self, driver: Any, script: str) -> None:
        # Local Chrome can run the overrides on every new document
        try:
            driver.execute_cdp_cmd("Page.addScriptToEvaluateOnNewDocument", {"source": script})
        except (WebDriverException, AttributeError) as e:
            logger.debug(f"CDP stealth registration unavailable: {e}")
        super()._apply_stealth(driver, script)


class FirefoxSessionFactory(SeleniumSessionFactory):
    engine = "firefox"

    def build_options(self) -> webdriver.FirefoxOptions:
        options = webdriver.FirefoxOptions()
        for arg in FIREFOX_ARGS:
            options.add_argument(arg)
        if self.config.headless:
            options.add_argument("-headless")
        if self.config.binary_location:
            options.binary_location = self.config.binary_location

        for name, value in FIREFOX_PREFS.items():
            options.set_preference(name, value)
        options.set_preference("browser.download.dir", os.path.abspath(self.config.download_dir))
        options.set_preference("general.useragent.override", self.effective_user_agent())
        return options

    def effective_user_agent(self) -> str:
        # A Chrome UA on Gecko is an easy detection signal
        user_agent = self.config.user_agent
        if not user_agent or user_agent == env_config.DEFAULT_BROWSER_USER_AGENT:
            return FIREFOX_USER_AGENT
        return user_agent

    def _start_local(self, options: Any) -> Any:
        return webdriver.Firefox(options=options)


class PlaywrightSessionFactory(BrowserSessionFactory):
    """Chromium through Playwright, attached over CDP or launched locally."""

    def create(self) -> BrowserSession:
        logger.debug("Creating Playwright Chromium session")
        try:
            playwright = sync_playwright().start()
        except PlaywrightError as e:
            raise LaunchError(f"Could not start Playwright: {e.message}") from e

        try:
            browser = self._launch(playwright)
            context = browser.new_context(
                user_agent=self.config.user_agent or None,
                viewport={"width": self.config.viewport[0], "height": self.config.viewport[1]},
                locale=self.config.locale,
                timezone_id=self.config.timezone_id,
                accept_downloads=True,
                ignore_https_errors=True,
                java_script_enabled=True,
                bypass_csp=True,
            )
            context.set_default_navigation_timeout(self.config.page_load_timeout * 1000)
            context.set_default_timeout(self.config.action_timeout * 1000)
            if self.config.stealth:
                try:
                    context.add_init_script(get_stealth_script())
                except PlaywrightError as e:
                    logger.warning(f"Failed to apply stealth scripts: {e.message}")
            page = context.new_page()
        except PlaywrightError as e:
            try:
                playwright.stop()
            except Exception as stop_error:
                logger.warning(f"Error stopping Playwright after failed launch: {stop_error}")
            raise LaunchError(f"Could not launch Chromium: {e.message}") from e

        logger.debug("Playwright session ready")
        return PlaywrightBrowserSession(
            playwright, browser, context, page, user_agent=self.config.user_agent or None
        )

    def _launch(self, playwright: Any) -> Any:
        if self.config.ws_endpoint:
            try:
                logger.info(f"Connecting to remote browser at {self.config.ws_endpoint}")
                return playwright.chromium.connect_over_cdp(
                    self.config.ws_endpoint, timeout=CDP_CONNECT_TIMEOUT_MS
                )
            except PlaywrightError as e:
                logger.error(f"Failed to connect to remote browser: {e.message}")

        logger.info("Launching local Chromium instance")
        return playwright.chromium.launch(
            headless=self.config.headless,
            args=list(PLAYWRIGHT_CHROMIUM_ARGS),
            downloads_path=os.path.abspath(self.config.download_dir),
        )


_FACTORIES: dict[str, type[BrowserSessionFactory]] = {
    "chrome": ChromeSessionFactory,
    "firefox": FirefoxSessionFactory,
    "playwright": PlaywrightSessionFactory,
}


def build_session_factory(config: BrowserConfig | None = None) -> BrowserSessionFactory:
    """Select the session factory for the configured engine.

    Args:
        config: Launch settings; read from the environment when omitted.

    Returns:
        Factory instance for config.engine.

    Raises:
        ValueError: If the engine is unknown.
    """
    config = config or BrowserConfig.from_env()
    try:
        factory_cls = _FACTORIES[config.engine]
    except KeyError:
        raise ValueError(f"Unknown browser engine: {config.engine}") from None
    return factory_cls(config)
