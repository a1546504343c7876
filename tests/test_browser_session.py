"""Tests for the Selenium and Playwright session wrappers."""

from unittest.mock import MagicMock, PropertyMock, patch

import pytest
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from selenium.common.exceptions import TimeoutException, WebDriverException

from browser import page_scripts
from browser.session import (
    PlaywrightBrowserSession,
    SeleniumBrowserSession,
    build_async_wrapper,
    normalize_cookie,
)
from crawler.errors import NavigationError, ScrapeError, ScriptError

STEALTH = "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"


def _element(width: int, height: int, png: bytes = b"png") -> MagicMock:
    element = MagicMock()
    element.size = {"width": width, "height": height}
    element.screenshot_as_png = png
    return element


@pytest.fixture
def driver() -> MagicMock:
    return MagicMock()


@pytest.fixture
def selenium_session(driver: MagicMock) -> SeleniumBrowserSession:
    return SeleniumBrowserSession(driver, engine="chrome", user_agent="UA/1", stealth_script=STEALTH)


class TestAsyncWrapper:
    def test_wraps_function_and_passes_argument(self) -> None:
        wrapped = build_async_wrapper("  (x) => x + 1  ")

        assert "const fn = ((x) => x + 1);" in wrapped
        assert "fn(arguments[0])" in wrapped
        assert "arguments[arguments.length - 1]" in wrapped


class TestSeleniumSession:
    """SeleniumBrowserSession against a mocked WebDriver."""

    def test_navigate_sets_timeout_and_reapplies_stealth(
        self, selenium_session: SeleniumBrowserSession, driver: MagicMock
    ) -> None:
        selenium_session.navigate("https://site.com/", timeout=30.0)

        driver.set_page_load_timeout.assert_called_once_with(30.0)
        driver.get.assert_called_once_with("https://site.com/")
        driver.execute_script.assert_called_once_with(STEALTH)

    def test_navigate_timeout_raises_navigation_error(
        self, selenium_session: SeleniumBrowserSession, driver: MagicMock
    ) -> None:
        driver.get.side_effect = TimeoutException("page load")

        with pytest.raises(NavigationError, match="Timed out"):
            selenium_session.navigate("https://site.com/", timeout=5.0)

    def test_navigate_driver_error_raises_navigation_error(
        self, selenium_session: SeleniumBrowserSession, driver: MagicMock
    ) -> None:
        driver.get.side_effect = WebDriverException("net::ERR_CONNECTION_REFUSED")

        with pytest.raises(NavigationError, match="ERR_CONNECTION_REFUSED"):
            selenium_session.navigate("https://site.com/", timeout=5.0)

    def test_stealth_failure_after_navigation_is_not_fatal(
        self, selenium_session: SeleniumBrowserSession, driver: MagicMock
    ) -> None:
        driver.execute_script.side_effect = WebDriverException("csp")

        selenium_session.navigate("https://site.com/", timeout=5.0)

        driver.get.assert_called_once()

    def test_wait_for_title(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.title = "Chapter 1"
        assert selenium_session.wait_for_title(1.0) is True

    def test_wait_for_title_timeout(self, selenium_session: SeleniumBrowserSession) -> None:
        with patch("browser.session.WebDriverWait") as wait_cls:
            wait_cls.return_value.until.side_effect = TimeoutException("no title")
            assert selenium_session.wait_for_title(1.0) is False

    def test_wait_for_selector_timeout(self, selenium_session: SeleniumBrowserSession) -> None:
        with patch("browser.session.WebDriverWait") as wait_cls:
            wait_cls.return_value.until.side_effect = TimeoutException("missing")
            assert selenium_session.wait_for_selector(".page img", 15.0) is False

    def test_evaluate_unwraps_envelope(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.execute_async_script.return_value = {"ok": True, "value": [1, 2]}

        assert selenium_session.evaluate("(sel) => sel", "img") == [1, 2]
        script, arg = driver.execute_async_script.call_args.args
        assert script == build_async_wrapper("(sel) => sel")
        assert arg == "img"

    def test_evaluate_always_passes_argument(
        self, selenium_session: SeleniumBrowserSession, driver: MagicMock
    ) -> None:
        driver.execute_async_script.return_value = {"ok": True, "value": None}

        selenium_session.evaluate("() => 1")

        assert driver.execute_async_script.call_args.args[1] is None

    def test_evaluate_page_error(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.execute_async_script.return_value = {"ok": False, "error": "TypeError: x is null"}

        with pytest.raises(ScriptError, match="TypeError"):
            selenium_session.evaluate("() => x.y")

    def test_evaluate_unexpected_result(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.execute_async_script.return_value = "nope"

        with pytest.raises(ScriptError, match="Unexpected"):
            selenium_session.evaluate("() => 1")

    def test_evaluate_driver_error(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.execute_async_script.side_effect = TimeoutException("script timeout")

        with pytest.raises(ScriptError):
            selenium_session.evaluate("() => new Promise(() => {})")

    def test_run_script_error(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.execute_script.side_effect = WebDriverException("ReferenceError")

        with pytest.raises(ScriptError, match="Site script failed"):
            selenium_session.run_script("openReader()")

    def test_capture_elements_skips_small(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.find_elements.return_value = [
            _element(800, 1200, b"page-1"),
            _element(20, 20, b"icon"),
            _element(800, 1200, b"page-2"),
        ]

        assert selenium_session.capture_elements(".page img") == [b"page-1", b"page-2"]

    def test_capture_elements_survives_element_errors(
        self, selenium_session: SeleniumBrowserSession, driver: MagicMock
    ) -> None:
        broken = MagicMock()
        broken.size = {"width": 800, "height": 800}
        type(broken).screenshot_as_png = PropertyMock(side_effect=WebDriverException("stale element"))
        driver.find_elements.return_value = [broken, _element(800, 800, b"ok")]

        assert selenium_session.capture_elements("img") == [b"ok"]

    def test_get_cookies(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.get_cookies.return_value = [
            {"name": "session", "value": "abc", "domain": "site.com"},
            {"name": "age_ok", "value": "1", "domain": "site.com"},
        ]

        assert selenium_session.get_cookies() == {"session": "abc", "age_ok": "1"}

    def test_no_interception_support(self, selenium_session: SeleniumBrowserSession) -> None:
        assert selenium_session.enable_interception() is False
        assert selenium_session.intercepting is False
        assert selenium_session.cached_image("https://cdn.site.com/1.jpg") is None

    def test_add_cookies_loads_origin_first(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.current_url = "data:,"

        selenium_session.add_cookies([{"name": "age_verified", "value": "1"}], "https://site.com/chapter/1", 30.0)

        driver.get.assert_called_once_with("https://site.com/")
        cookie = driver.add_cookie.call_args.args[0]
        assert cookie["name"] == "age_verified"
        assert cookie["domain"] == "site.com"
        assert cookie["path"] == "/"
        assert cookie["sameSite"] == "Lax"
        assert isinstance(cookie["expiry"], int)
        assert "expires" not in cookie

    def test_add_cookies_on_loaded_host(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.current_url = "https://site.com/"

        selenium_session.add_cookies(
            [{"name": "a", "value": "1"}, {"name": "b", "value": "2", "path": "/reader"}],
            "https://site.com/chapter/1",
            30.0,
        )

        driver.get.assert_not_called()
        assert [c.args[0]["path"] for c in driver.add_cookie.call_args_list] == ["/", "/reader"]

    def test_add_cookies_origin_load_fails(
        self, selenium_session: SeleniumBrowserSession, driver: MagicMock
    ) -> None:
        driver.current_url = "about:blank"
        driver.get.side_effect = TimeoutException("page load")

        with pytest.raises(NavigationError, match="Timed out"):
            selenium_session.add_cookies([{"name": "a", "value": "1"}], "https://site.com/", 5.0)

    def test_rejected_cookie_raises_script_error(
        self, selenium_session: SeleniumBrowserSession, driver: MagicMock
    ) -> None:
        driver.current_url = "https://site.com/"
        driver.add_cookie.side_effect = WebDriverException("invalid cookie domain")

        with pytest.raises(ScriptError, match="invalid cookie domain"):
            selenium_session.add_cookies([{"name": "a", "value": "1", "domain": "other.com"}], "https://site.com/", 5.0)

    def test_set_storage_runs_page_script(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.execute_async_script.return_value = {"ok": True, "value": 2}

        assert selenium_session.set_storage({"mode": "vertical"}, {"visited": "1"}) == 2
        script, arg = driver.execute_async_script.call_args.args
        assert script == build_async_wrapper(page_scripts.SET_STORAGE)
        assert arg == {"local": {"mode": "vertical"}, "session": {"visited": "1"}}

    def test_reload_reapplies_stealth(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        selenium_session.reload(30.0)

        driver.set_page_load_timeout.assert_called_once_with(30.0)
        driver.refresh.assert_called_once()
        driver.execute_script.assert_called_once_with(STEALTH)

    def test_reload_error(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        driver.refresh.side_effect = WebDriverException("net::ERR_CONNECTION_RESET")

        with pytest.raises(NavigationError, match="ERR_CONNECTION_RESET"):
            selenium_session.reload(30.0)

    def test_quit_is_idempotent(self, selenium_session: SeleniumBrowserSession, driver: MagicMock) -> None:
        selenium_session.quit()
        selenium_session.quit()

        driver.quit.assert_called_once()
        assert selenium_session.closed is True

    def test_use_after_quit_raises(self, selenium_session: SeleniumBrowserSession) -> None:
        selenium_session.quit()

        with pytest.raises(ScrapeError, match="after quit"):
            selenium_session.evaluate("() => 1")


@pytest.fixture
def pw_parts() -> dict[str, MagicMock]:
    return {
        "playwright": MagicMock(),
        "browser": MagicMock(),
        "context": MagicMock(),
        "page": MagicMock(),
    }


@pytest.fixture
def pw_session(pw_parts: dict[str, MagicMock]) -> PlaywrightBrowserSession:
    return PlaywrightBrowserSession(
        pw_parts["playwright"],
        pw_parts["browser"],
        pw_parts["context"],
        pw_parts["page"],
        user_agent="UA/1",
    )


def _image_response(url: str, body: bytes, ok: bool = True, resource_type: str = "image") -> MagicMock:
    response = MagicMock()
    response.url = url
    response.ok = ok
    response.request.resource_type = resource_type
    response.body.return_value = body
    response.headers = {"content-type": "image/jpeg"}
    return response


class TestPlaywrightSession:
    """PlaywrightBrowserSession against mocked Playwright objects."""

    def test_navigate(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_session.navigate("https://site.com/", timeout=30.0)

        pw_parts["page"].goto.assert_called_once_with(
            "https://site.com/", wait_until="domcontentloaded", timeout=30000.0
        )

    def test_navigate_timeout(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_parts["page"].goto.side_effect = PlaywrightTimeoutError("Timeout 30000ms exceeded")

        with pytest.raises(NavigationError, match="Timed out"):
            pw_session.navigate("https://site.com/", timeout=30.0)

    def test_navigate_error(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_parts["page"].goto.side_effect = PlaywrightError("net::ERR_NAME_NOT_RESOLVED")

        with pytest.raises(NavigationError, match="ERR_NAME_NOT_RESOLVED"):
            pw_session.navigate("https://site.com/", timeout=30.0)

    def test_wait_for_title_timeout(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_parts["page"].wait_for_function.side_effect = PlaywrightTimeoutError("timeout")

        assert pw_session.wait_for_title(10.0) is False

    def test_run_script_wraps_statements(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_session.run_script("document.querySelector('.all').click();")

        source = pw_parts["page"].evaluate.call_args.args[0]
        assert source.startswith("async () => {")
        assert "document.querySelector('.all').click();" in source

    def test_evaluate_passes_argument(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_parts["page"].evaluate.return_value = 3

        assert pw_session.evaluate("(sel) => 3", "img") == 3
        pw_parts["page"].evaluate.assert_called_once_with("(sel) => 3", "img")

    def test_evaluate_error(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_parts["page"].evaluate.side_effect = PlaywrightError("boom")

        with pytest.raises(ScriptError, match="boom"):
            pw_session.evaluate("() => { throw new Error('boom') }")

    def test_capture_elements(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        big = MagicMock()
        big.bounding_box.return_value = {"width": 700, "height": 1000}
        big.screenshot.return_value = b"page"
        hidden = MagicMock()
        hidden.bounding_box.return_value = None
        pw_parts["page"].query_selector_all.return_value = [big, hidden]

        assert pw_session.capture_elements("img") == [b"page"]
        big.screenshot.assert_called_once_with(type="png")

    def test_get_cookies(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_parts["context"].cookies.return_value = [{"name": "session", "value": "abc"}]

        assert pw_session.get_cookies() == {"session": "abc"}

    def test_add_cookies_fills_defaults(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        with patch("browser.session.time") as fake_time:
            fake_time.time.return_value = 1000.0
            pw_session.add_cookies([{"name": "lang", "value": "en"}], "https://site.com/chapter/1", 30.0)

        pw_parts["context"].add_cookies.assert_called_once_with(
            [
                {
                    "name": "lang",
                    "value": "en",
                    "domain": "site.com",
                    "path": "/",
                    "secure": False,
                    "httpOnly": False,
                    "sameSite": "Lax",
                    "expires": 1000 + 365 * 24 * 60 * 60,
                }
            ]
        )

    def test_add_cookies_keeps_explicit_fields(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_session.add_cookies(
            [
                {
                    "name": "token",
                    "value": "t",
                    "domain": ".site.com",
                    "secure": True,
                    "sameSite": "None",
                    "expires": 2000000000,
                }
            ],
            "https://reader.site.com/",
            30.0,
        )

        cookie = pw_parts["context"].add_cookies.call_args.args[0][0]
        assert cookie["domain"] == ".site.com"
        assert cookie["secure"] is True
        assert cookie["sameSite"] == "None"
        assert cookie["expires"] == 2000000000

    def test_add_cookies_error(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_parts["context"].add_cookies.side_effect = PlaywrightError("Cookie should have a valid expires")

        with pytest.raises(ScriptError, match="valid expires"):
            pw_session.add_cookies([{"name": "a", "value": "1"}], "https://site.com/", 30.0)

    def test_no_cookies_is_a_no_op(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_session.add_cookies([], "https://site.com/", 30.0)

        pw_parts["context"].add_cookies.assert_not_called()

    def test_reload(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_session.reload(30.0)

        pw_parts["page"].reload.assert_called_once_with(wait_until="domcontentloaded", timeout=30000.0)

    def test_reload_timeout(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_parts["page"].reload.side_effect = PlaywrightTimeoutError("Timeout 30000ms exceeded")

        with pytest.raises(NavigationError, match="Timed out reloading"):
            pw_session.reload(30.0)

    def test_intercepting_follows_interception(self, pw_session: PlaywrightBrowserSession) -> None:
        assert pw_session.intercepting is False
        pw_session.enable_interception()
        assert pw_session.intercepting is True
        pw_session.stop_interception()
        assert pw_session.intercepting is False

    def test_interception_caches_image_responses(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        assert pw_session.enable_interception() is True
        event, handler = pw_parts["page"].on.call_args.args
        assert event == "response"

        handler(_image_response("https://cdn.site.com/1.jpg", b"jpeg-bytes"))
        handler(_image_response("https://cdn.site.com/app.js", b"js", resource_type="script"))
        handler(_image_response("https://cdn.site.com/2.jpg", b"", ok=False))

        cached = pw_session.cached_image("https://cdn.site.com/1.jpg")
        assert cached.content == b"jpeg-bytes"
        assert cached.content_type == "image/jpeg"
        assert pw_session.cached_image("https://cdn.site.com/app.js") is None
        assert pw_session.cached_image("https://cdn.site.com/2.jpg") is None

    def test_interception_enabled_once(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_session.enable_interception()
        pw_session.enable_interception()

        assert pw_parts["page"].on.call_count == 1

    def test_unreadable_body_is_ignored(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_session.enable_interception()
        handler = pw_parts["page"].on.call_args.args[1]
        response = _image_response("https://cdn.site.com/1.jpg", b"")
        response.body.side_effect = PlaywrightError("Response body is unavailable for redirect responses")

        handler(response)

        assert pw_session.cached_image("https://cdn.site.com/1.jpg") is None

    def test_stop_interception_clears_cache(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_session.enable_interception()
        handler = pw_parts["page"].on.call_args.args[1]
        handler(_image_response("https://cdn.site.com/1.jpg", b"jpeg-bytes"))

        pw_session.stop_interception()

        pw_parts["page"].remove_listener.assert_called_once_with("response", handler)
        assert pw_session.cached_image("https://cdn.site.com/1.jpg") is None

    def test_shutdown_closes_everything_despite_errors(self, pw_session: PlaywrightBrowserSession, pw_parts) -> None:
        pw_parts["context"].close.side_effect = PlaywrightError("Target closed")

        pw_session.quit()

        pw_parts["browser"].close.assert_called_once()
        pw_parts["playwright"].stop.assert_called_once()
        assert pw_session.closed is True


class TestNormalizeCookie:
    def test_defaults(self) -> None:
        cookie = normalize_cookie({"name": "lang", "value": 5}, "site.com", now=100.0)

        assert cookie == {
            "name": "lang",
            "value": "5",
            "domain": "site.com",
            "path": "/",
            "secure": False,
            "httpOnly": False,
            "sameSite": "Lax",
            "expires": 100 + 365 * 24 * 60 * 60,
        }

    def test_explicit_values_win(self) -> None:
        cookie = normalize_cookie(
            {"name": "sid", "value": "x", "path": "/reader", "httpOnly": True, "expires": 5000},
            "site.com",
            now=100.0,
        )

        assert cookie["path"] == "/reader"
        assert cookie["httpOnly"] is True
        assert cookie["expires"] == 5000
