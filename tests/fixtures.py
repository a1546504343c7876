"""Test doubles for the image harvester tests.

Fakes for Redis, browser sessions, session factories and resource sinks,
plus a controllable clock. None of them touch the network.
"""

import base64
import io
import threading
from typing import Any
from urllib.parse import urlparse

from PIL import Image

from browser import page_scripts
from browser.factory import BrowserSessionFactory
from browser.interception import CachedImage
from browser.session import BrowserSession, normalize_cookie
from crawler.errors import LaunchError, NavigationError, ScriptError
from crawler.redis_admission import ACQUIRE_SLOT_SCRIPT, RELEASE_SLOT_SCRIPT
from storage.resource_sink import ResourceSink


def make_image_bytes(size: tuple[int, int] = (128, 128), fmt: str = "PNG") -> bytes:
    """Render a patterned image with Pillow.

    The pattern keeps compressed output well above the minimum file size.
    """
    width, height = size
    img = Image.new("RGB", size)
    img.putdata(
        [((x * 7) % 256, (y * 13) % 256, (x * y) % 256) for y in range(height) for x in range(width)]
    )
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRedis:
    """Just enough of redis-py for DistributedAdmissionController.

    register_script() returns callables emulating the two Lua scripts.
    """

    def __init__(self) -> None:
        self.values: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.acquire_calls = 0
        self.release_calls = 0
        self._lock = threading.Lock()

    def register_script(self, source: str) -> Any:
        if source == ACQUIRE_SLOT_SCRIPT:
            return self._acquire
        if source == RELEASE_SLOT_SCRIPT:
            return self._release
        raise AssertionError("unexpected script")

    def _acquire(self, keys: list[str], args: list[str]) -> int:
        with self._lock:
            self.acquire_calls += 1
            key = keys[0]
            limit, ttl = int(args[0]), int(args[1])
            current = self.values.get(key, 0)
            if current < limit:
                self.values[key] = current + 1
                self.ttls[key] = ttl
                return current + 1
            return -1

    def _release(self, keys: list[str]) -> int:
        with self._lock:
            self.release_calls += 1
            key = keys[0]
            if key not in self.values:
                return 0
            value = self.values[key] - 1
            if value < 0:
                value = 0
            self.values[key] = value
            return value

    def expire(self, key: str) -> None:
        """Simulate the slot TTL running out."""
        with self._lock:
            self.values.pop(key, None)
            self.ttls.pop(key, None)

    def get(self, key: str) -> bytes | None:
        value = self.values.get(key)
        return None if value is None else str(value).encode()

    def delete(self, key: str) -> int:
        return 1 if self.values.pop(key, None) is not None else 0


class FakeBrowserSession(BrowserSession):
    """Scriptable in-memory page.

    Args:
        images: Tracked image entries ({"src": ..., "state": ...}) keyed by position.
        image_urls: URLs returned when the page is asked for image sources.
        page_payloads: Bytes served by the in-page fetch, keyed by URL.
        cache: Bytes served from the interception cache, keyed by URL.
        screenshots: PNG payloads returned by capture_elements().
        force_loadable: Bytes that reach the interception cache once the
            image is force loaded, keyed by URL.
    """

    def __init__(
        self,
        images: list[dict[str, str]] | None = None,
        image_urls: list[str] | None = None,
        page_payloads: dict[str, bytes] | None = None,
        cache: dict[str, bytes] | None = None,
        screenshots: list[bytes] | None = None,
        page_height: int = 2000,
        viewport_height: int = 1000,
        intercepts: bool = False,
        force_loadable: dict[str, bytes] | None = None,
    ) -> None:
        super().__init__("fake", user_agent="FakeAgent/1.0")
        self.images = images or []
        self.image_urls = image_urls or []
        self.page_payloads = page_payloads or {}
        self.cache = cache or {}
        self.screenshots = screenshots or []
        self.page_height = page_height
        self.viewport_height = viewport_height
        self.intercepts = intercepts
        self.force_loadable = force_loadable or {}

        self.url = ""
        self.navigate_error: Exception | None = None
        self.title_ready = True
        self.script_error: str | None = None
        self.reload_result = True
        self.scripts_run: list[str] = []
        self.evaluated: list[str] = []
        self.fetched_in_page: list[str] = []
        self.reloaded: list[int] = []
        self.interception_enabled = False
        self.quit_calls = 0
        self.added_cookies: list[dict[str, Any]] = []
        self.cookie_error: str | None = None
        self.local_storage: dict[str, str] = {}
        self.session_storage: dict[str, str] = {}
        self.storage_error: str | None = None
        self.page_reloads = 0
        self.force_loaded: list[str] = []
        self.events: list[str] = []

    @property
    def current_url(self) -> str:
        return self.url

    def navigate(self, url: str, timeout: float) -> None:
        if self.navigate_error is not None:
            raise self.navigate_error
        self.url = url
        self.events.append("navigate")

    def reload(self, timeout: float) -> None:
        self.page_reloads += 1
        self.events.append("reload")

    def wait_for_title(self, timeout: float) -> bool:
        return self.title_ready

    def wait_for_selector(self, selector: str, timeout: float) -> bool:
        return True

    def run_script(self, source: str) -> None:
        self.scripts_run.append(source)
        if self.script_error:
            raise ScriptError(self.script_error)

    def evaluate(self, function_source: str, arg: Any = None) -> Any:
        self._ensure_open()
        if function_source == page_scripts.INSTALL_IMAGE_REGISTRY:
            self.evaluated.append("install")
            return len(self.images)
        if function_source == page_scripts.SNAPSHOT_IMAGES:
            return [
                {"id": index, "src": image["src"], "state": image["state"]}
                for index, image in enumerate(self.images)
            ]
        if function_source == page_scripts.RELOAD_IMAGE:
            self.reloaded.append(arg)
            return self.reload_result
        if function_source in (page_scripts.REVEAL_IMAGE, page_scripts.DISCONNECT_IMAGE_REGISTRY):
            return True
        if function_source in (page_scripts.SCROLL_TO_BOTTOM, page_scripts.DOCUMENT_HEIGHT):
            return self.page_height
        if function_source == page_scripts.PAGE_METRICS:
            return {
                "scrollHeight": self.page_height,
                "viewportHeight": self.viewport_height,
                "elementCount": len(self.images) or len(self.screenshots),
            }
        if function_source == page_scripts.COLLECT_IMAGE_URLS:
            return list(self.image_urls)
        if function_source == page_scripts.SET_STORAGE:
            if self.storage_error:
                raise ScriptError(self.storage_error)
            self.local_storage.update(arg["local"])
            self.session_storage.update(arg["session"])
            self.events.append("storage")
            return len(arg["local"]) + len(arg["session"])
        if function_source == page_scripts.FORCE_LOAD_IMAGE:
            self.force_loaded.append(arg)
            if arg not in self.force_loadable:
                return False
            self.cache[arg] = self.force_loadable[arg]
            return True
        if function_source == page_scripts.FETCH_AS_BASE64:
            self.fetched_in_page.append(arg)
            payload = self.page_payloads.get(arg)
            if payload is None:
                return {"data": None, "contentType": None, "status": 404}
            return {
                "data": base64.b64encode(payload).decode("ascii"),
                "contentType": "image/png",
                "status": 200,
            }
        raise AssertionError(f"unexpected script: {function_source[:40]!r}")

    def capture_elements(self, selector: str, min_size: int = 50) -> list[bytes]:
        return list(self.screenshots)

    def get_cookies(self) -> dict[str, str]:
        return {"session": "abc"}

    def add_cookies(self, cookies, url: str, timeout: float) -> None:
        if self.cookie_error:
            raise ScriptError(self.cookie_error)
        host = urlparse(url).hostname or ""
        self.added_cookies.extend(normalize_cookie(cookie, host) for cookie in cookies)
        self.events.append("cookies")

    def enable_interception(self) -> bool:
        self.interception_enabled = self.intercepts
        return self.intercepts

    @property
    def intercepting(self) -> bool:
        return self.interception_enabled

    def cached_image(self, url: str) -> CachedImage | None:
        if not self.interception_enabled or url not in self.cache:
            return None
        return CachedImage(content=self.cache[url], content_type="image/png")

    def quit(self) -> None:
        self.quit_calls += 1
        super().quit()

    def _shutdown(self) -> None:
        pass


class FakeSessionFactory(BrowserSessionFactory):
    """Hands out a prepared session, or fails to launch."""

    def __init__(self, session: FakeBrowserSession | None = None, launch_error: bool = False) -> None:
        super().__init__()
        self.session = session or FakeBrowserSession()
        self.launch_error = launch_error
        self.created = 0

    def create(self) -> BrowserSession:
        if self.launch_error:
            raise LaunchError("browser did not start")
        self.created += 1
        return self.session


class MemorySink(ResourceSink):
    """Keeps stored payloads in a list."""

    def __init__(self, fail: bool = False) -> None:
        self.stored: list[tuple[bytes, str]] = []
        self.fail = fail

    def store(self, content: bytes, suggested_extension: str) -> str:
        if self.fail:
            raise OSError("disk full")
        self.stored.append((content, suggested_extension))
        return f"/images/{len(self.stored)}{suggested_extension}"


def navigation_failure() -> NavigationError:
    return NavigationError("net::ERR_NAME_NOT_RESOLVED")
