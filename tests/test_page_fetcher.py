"""Tests for the session-bound download chain."""

import base64
from unittest.mock import MagicMock

import pytest

from browser import page_scripts
from crawler.errors import ScriptError
from processor.fetcher import ImageFetcher, ImageFetchResult
from processor.page_fetcher import SessionImageDownloader
from tests.fixtures import FakeBrowserSession, FakeClock, make_image_bytes

IMG = "https://cdn.site.com/pages/001.png"


@pytest.fixture
def http_fetcher() -> ImageFetcher:
    fetcher = ImageFetcher(min_width=64, min_height=64)
    fetcher.fetch = MagicMock(
        return_value=ImageFetchResult(
            success=False, url=IMG, source="http", error_message="http_error: status_403"
        )
    )
    return fetcher


class TestSessionImageDownloader:
    """Source order and validation."""

    def test_cache_first(self, http_fetcher: ImageFetcher, png_bytes: bytes) -> None:
        session = FakeBrowserSession(cache={IMG: png_bytes}, page_payloads={IMG: png_bytes}, intercepts=True)
        session.enable_interception()

        result = SessionImageDownloader(session, http_fetcher).download(IMG)

        assert result.success is True
        assert result.source == "cache"
        assert session.fetched_in_page == []
        http_fetcher.fetch.assert_not_called()

    def test_invalid_cache_entry_falls_through(self, http_fetcher: ImageFetcher, png_bytes: bytes) -> None:
        session = FakeBrowserSession(cache={IMG: b"tiny"}, page_payloads={IMG: png_bytes}, intercepts=True)
        session.enable_interception()

        result = SessionImageDownloader(session, http_fetcher).download(IMG)

        assert result.source == "page"
        assert result.success is True

    def test_page_fetch(self, http_fetcher: ImageFetcher, png_bytes: bytes) -> None:
        session = FakeBrowserSession(page_payloads={IMG: png_bytes})

        result = SessionImageDownloader(session, http_fetcher).download(IMG)

        assert result.success is True
        assert result.source == "page"
        assert result.content == png_bytes
        assert session.fetched_in_page == [IMG]

    def test_http_fallback_with_session_context(self, http_fetcher: ImageFetcher, png_bytes: bytes) -> None:
        http_fetcher.fetch.return_value = ImageFetchResult(
            success=True, url=IMG, content=png_bytes, source="http"
        )
        session = FakeBrowserSession()
        session.url = "https://site.com/chapter/1"
        downloader = SessionImageDownloader(session, http_fetcher)

        result = downloader.download(IMG)

        assert result.source == "http"
        http_fetcher.fetch.assert_called_once_with(
            IMG, cookies={"session": "abc"}, referer="https://site.com/chapter/1"
        )

    def test_blob_url_has_no_http_fallback(self, http_fetcher: ImageFetcher) -> None:
        session = FakeBrowserSession()

        result = SessionImageDownloader(session, http_fetcher).download("blob:https://site.com/abc")

        assert result.success is False
        assert result.error_message == "http_error: status_404"
        http_fetcher.fetch.assert_not_called()

    def test_all_sources_fail(self, http_fetcher: ImageFetcher) -> None:
        result = SessionImageDownloader(FakeBrowserSession(), http_fetcher).download(IMG)

        assert result.success is False
        assert result.error_message == "http_error: status_403"

    def test_cookies_read_once(self, http_fetcher: ImageFetcher) -> None:
        session = MagicMock()
        session.intercepting = False
        session.cached_image.return_value = None
        session.evaluate.return_value = {"data": None, "status": 403}
        session.get_cookies.return_value = {"a": "1"}
        downloader = SessionImageDownloader(session, http_fetcher)

        downloader.download(IMG)
        downloader.download(IMG)

        session.get_cookies.assert_called_once()

    def test_cookie_error_falls_back_to_empty(self, http_fetcher: ImageFetcher) -> None:
        session = MagicMock()
        session.intercepting = False
        session.cached_image.return_value = None
        session.evaluate.return_value = {}
        session.get_cookies.side_effect = RuntimeError("no such window")
        session.current_url = "https://site.com/"

        SessionImageDownloader(session, http_fetcher).download(IMG)

        assert http_fetcher.fetch.call_args.kwargs["cookies"] == {}


class TestForceLoad:
    """Cache misses while interception is active."""

    def test_force_load_fills_cache(
        self, http_fetcher: ImageFetcher, fake_clock: FakeClock, png_bytes: bytes
    ) -> None:
        session = FakeBrowserSession(intercepts=True, force_loadable={IMG: png_bytes})
        session.enable_interception()
        downloader = SessionImageDownloader(session, http_fetcher, sleep=fake_clock.sleep)

        result = downloader.download(IMG)

        assert result.success is True
        assert result.source == "cache"
        assert session.force_loaded == [IMG]
        assert fake_clock.sleeps == [1.0]
        assert session.fetched_in_page == []
        http_fetcher.fetch.assert_not_called()

    def test_still_missing_falls_through_to_page(
        self, http_fetcher: ImageFetcher, fake_clock: FakeClock, png_bytes: bytes
    ) -> None:
        session = FakeBrowserSession(intercepts=True, page_payloads={IMG: png_bytes})
        session.enable_interception()
        downloader = SessionImageDownloader(session, http_fetcher, sleep=fake_clock.sleep, force_load_wait=0.5)

        result = downloader.download(IMG)

        assert result.source == "page"
        assert session.force_loaded == [IMG]
        assert fake_clock.sleeps == [0.5]

    def test_no_force_load_without_interception(
        self, http_fetcher: ImageFetcher, fake_clock: FakeClock, png_bytes: bytes
    ) -> None:
        session = FakeBrowserSession(page_payloads={IMG: png_bytes}, force_loadable={IMG: png_bytes})
        downloader = SessionImageDownloader(session, http_fetcher, sleep=fake_clock.sleep)

        result = downloader.download(IMG)

        assert result.source == "page"
        assert session.force_loaded == []
        assert fake_clock.sleeps == []

    def test_script_error_skips_wait(self, http_fetcher: ImageFetcher, fake_clock: FakeClock) -> None:
        session = MagicMock()
        session.intercepting = True
        session.cached_image.return_value = None
        session.evaluate.side_effect = ScriptError("page gone")
        downloader = SessionImageDownloader(session, http_fetcher, sleep=fake_clock.sleep)

        result = downloader.download(IMG)

        assert result.error_message == "http_error: status_403"
        assert session.evaluate.call_args_list[0].args == (page_scripts.FORCE_LOAD_IMAGE, IMG)
        assert fake_clock.sleeps == []
        session.cached_image.assert_called_once_with(IMG)


class TestFromPage:
    """In-page fetch payload handling."""

    def _downloader(self, payload, http_fetcher) -> SessionImageDownloader:
        session = MagicMock()
        session.evaluate.return_value = payload
        return SessionImageDownloader(session, http_fetcher)

    def test_script_called_with_url(self, http_fetcher: ImageFetcher, png_bytes: bytes) -> None:
        session = MagicMock()
        session.evaluate.return_value = {
            "data": base64.b64encode(png_bytes).decode("ascii"),
            "contentType": "image/png",
        }

        result = SessionImageDownloader(session, http_fetcher).from_page(IMG)

        session.evaluate.assert_called_once_with(page_scripts.FETCH_AS_BASE64, IMG)
        assert result.success is True

    def test_script_error(self, http_fetcher: ImageFetcher) -> None:
        session = MagicMock()
        session.evaluate.side_effect = ScriptError("page gone")

        result = SessionImageDownloader(session, http_fetcher).from_page(IMG)

        assert result.success is False
        assert result.error_message == "page gone"

    def test_error_without_status(self, http_fetcher: ImageFetcher) -> None:
        payload = {"data": None, "error": "TypeError: Failed to fetch"}
        result = self._downloader(payload, http_fetcher).from_page(IMG)

        assert result.error_message == "no_content: TypeError: Failed to fetch"

    def test_bad_base64(self, http_fetcher: ImageFetcher) -> None:
        payload = {"data": "!!!not base64", "contentType": "image/png"}
        result = self._downloader(payload, http_fetcher).from_page(IMG)

        assert result.success is False
        assert result.error_message.startswith("no_content: bad base64")

    def test_dimension_thresholds_come_from_fetcher(self, http_fetcher: ImageFetcher) -> None:
        small = make_image_bytes((40, 40), "PNG")
        payload = {"data": base64.b64encode(small).decode("ascii"), "contentType": "image/png"}

        result = self._downloader(payload, http_fetcher).from_page(IMG)

        assert result.error_message == "image_dimensions_too_small: 40x40"
