"""Centralized environment configuration for the image harvester.

Loads `.env` once at import time and exposes typed getters used across
admission control, browser sessions, storage, and the CLI.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env", override=False)
logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "postgresql://localhost/harvester"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_QUEUE_NAMESPACE = ""

# Admission control
DEFAULT_ADMISSION_BACKEND = "local"
ALLOWED_ADMISSION_BACKENDS = {"local", "redis"}
DEFAULT_ADMISSION_SLOT_TTL_SECONDS = 1200.0  # long enough for a full chapter scrape
DEFAULT_ADMISSION_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_ADMISSION_MAX_WAIT_SECONDS = 3600.0

# Browser sessions
DEFAULT_BROWSER_ENGINE = "chrome"
ALLOWED_BROWSER_ENGINES = {"chrome", "firefox", "playwright"}
DEFAULT_BROWSER_HEADLESS = True
DEFAULT_BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_BROWSER_DOWNLOAD_DIR = "data/downloads"
DEFAULT_BROWSER_STEALTH = True
DEFAULT_BROWSER_SCRIPT_TIMEOUT_SECONDS = 1200.0
DEFAULT_BROWSER_PAGE_LOAD_TIMEOUT_SECONDS = 1200.0

# Orchestration timings
DEFAULT_NAVIGATION_TIMEOUT_SECONDS = 60.0
DEFAULT_TITLE_TIMEOUT_SECONDS = 10.0
DEFAULT_SCRIPT_SETTLE_SECONDS = 3.0
DEFAULT_EXTRACTION_TIMEOUT_SECONDS = 600.0
DEFAULT_SCROLL_PAUSE_SECONDS = 1.5
DEFAULT_SCROLL_STABILITY_CHECKS = 3
DEFAULT_IMAGE_MAX_RETRIES = 3
DEFAULT_IMAGE_RETRY_DELAY_SECONDS = 1.0

# Downloaded payload validation
DEFAULT_IMAGE_MIN_WIDTH = 64
DEFAULT_IMAGE_MIN_HEIGHT = 64

# Filesystem resource sink
DEFAULT_STORAGE_DIR = "data/images"
DEFAULT_STORAGE_PUBLIC_PREFIX = "/images"


def get_database_url() -> str:
    """Return database URL from environment with a safe local default."""
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_redis_url() -> str:
    """Return Redis URL from environment with a safe local default."""
    return os.getenv("REDIS_URL", DEFAULT_REDIS_URL)


def get_log_level() -> str:
    """Return process log level."""
    return os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL)


def get_queue_namespace() -> str:
    """Return optional Redis key namespace prefix."""
    return os.getenv("QUEUE_NAMESPACE", DEFAULT_QUEUE_NAMESPACE).strip().strip(":")


def get_admission_backend() -> str:
    """Return the admission controller backend name (local or redis)."""
    return get_choice_env("ADMISSION_BACKEND", DEFAULT_ADMISSION_BACKEND, ALLOWED_ADMISSION_BACKENDS)


def get_admission_slot_ttl() -> float:
    """Return distributed slot TTL in seconds."""
    return get_float_env("ADMISSION_SLOT_TTL_SECONDS", DEFAULT_ADMISSION_SLOT_TTL_SECONDS)


def get_admission_poll_interval() -> float:
    """Return distributed acquire poll interval in seconds."""
    return get_float_env("ADMISSION_POLL_INTERVAL_SECONDS", DEFAULT_ADMISSION_POLL_INTERVAL_SECONDS)


def get_admission_max_wait() -> float:
    """Return maximum time a distributed acquire may wait, in seconds."""
    return get_float_env("ADMISSION_MAX_WAIT_SECONDS", DEFAULT_ADMISSION_MAX_WAIT_SECONDS)


def get_browser_engine() -> str:
    """Return browser engine used by the session factory."""
    return get_choice_env("BROWSER_ENGINE", DEFAULT_BROWSER_ENGINE, ALLOWED_BROWSER_ENGINES)


def get_browser_headless() -> bool:
    """Return whether browsers run headless."""
    return get_bool_env("BROWSER_HEADLESS", DEFAULT_BROWSER_HEADLESS)


def get_browser_user_agent() -> str:
    """Return browser User-Agent override."""
    return os.getenv("BROWSER_USER_AGENT", DEFAULT_BROWSER_USER_AGENT)


def get_browser_download_dir() -> str:
    """Return browser download directory."""
    return os.getenv("BROWSER_DOWNLOAD_DIR", DEFAULT_BROWSER_DOWNLOAD_DIR)


def get_selenium_url() -> str:
    """Return remote Selenium server URL; empty means a local driver."""
    return os.getenv("SELENIUM_URL", "").strip()


def get_playwright_ws_endpoint() -> str:
    """Return remote Chromium CDP endpoint; empty means a local launch."""
    return os.getenv("PLAYWRIGHT_WS_ENDPOINT", "").strip()


def get_browser_binary() -> str:
    """Return browser binary location; empty means the driver default."""
    return os.getenv("BROWSER_BINARY", "").strip()


def get_browser_stealth() -> bool:
    """Return whether stealth scripts are injected into sessions."""
    return get_bool_env("BROWSER_STEALTH", DEFAULT_BROWSER_STEALTH)


def get_browser_script_timeout() -> float:
    """Return driver script timeout in seconds."""
    return get_float_env("BROWSER_SCRIPT_TIMEOUT_SECONDS", DEFAULT_BROWSER_SCRIPT_TIMEOUT_SECONDS)


def get_browser_page_load_timeout() -> float:
    """Return driver page load timeout in seconds."""
    return get_float_env(
        "BROWSER_PAGE_LOAD_TIMEOUT_SECONDS", DEFAULT_BROWSER_PAGE_LOAD_TIMEOUT_SECONDS
    )


def get_navigation_timeout() -> float:
    """Return navigation timeout in seconds."""
    return get_float_env("NAVIGATION_TIMEOUT_SECONDS", DEFAULT_NAVIGATION_TIMEOUT_SECONDS)


def get_title_timeout() -> float:
    """Return how long to wait for a non-empty document title, in seconds."""
    return get_float_env("TITLE_TIMEOUT_SECONDS", DEFAULT_TITLE_TIMEOUT_SECONDS)


def get_script_settle_delay() -> float:
    """Return settle delay after site pre/post scripts, in seconds."""
    return get_float_env("SCRIPT_SETTLE_SECONDS", DEFAULT_SCRIPT_SETTLE_SECONDS)


def get_extraction_timeout() -> float:
    """Return base extraction timeout in seconds (before adaptive multipliers)."""
    return get_float_env("EXTRACTION_TIMEOUT_SECONDS", DEFAULT_EXTRACTION_TIMEOUT_SECONDS)


def get_scroll_pause() -> float:
    """Return pause between scrolls in seconds."""
    return get_float_env("SCROLL_PAUSE_SECONDS", DEFAULT_SCROLL_PAUSE_SECONDS)


def get_scroll_stability_checks() -> int:
    """Return consecutive unchanged-height checks required to settle scrolling."""
    return get_int_env("SCROLL_STABILITY_CHECKS", DEFAULT_SCROLL_STABILITY_CHECKS)


def get_image_max_retries() -> int:
    """Return in-page reload attempts per failed image."""
    return get_int_env("IMAGE_MAX_RETRIES", DEFAULT_IMAGE_MAX_RETRIES)


def get_image_retry_delay() -> float:
    """Return base delay between image reload attempts, in seconds."""
    return get_float_env("IMAGE_RETRY_DELAY_SECONDS", DEFAULT_IMAGE_RETRY_DELAY_SECONDS)


def get_image_min_width() -> int:
    """Return minimum accepted image width in pixels."""
    return get_int_env("IMAGE_MIN_WIDTH", DEFAULT_IMAGE_MIN_WIDTH)


def get_image_min_height() -> int:
    """Return minimum accepted image height in pixels."""
    return get_int_env("IMAGE_MIN_HEIGHT", DEFAULT_IMAGE_MIN_HEIGHT)


def get_storage_dir() -> str:
    """Return root directory for stored images."""
    return os.getenv("STORAGE_DIR", DEFAULT_STORAGE_DIR)


def get_storage_public_prefix() -> str:
    """Return public URL prefix for stored images."""
    return os.getenv("STORAGE_PUBLIC_PREFIX", DEFAULT_STORAGE_PUBLIC_PREFIX).rstrip("/")


def get_int_env(name: str, default: int) -> int:
    """Parse integer environment variable with fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_float_env(name: str, default: float) -> float:
    """Parse float environment variable with fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_bool_env(name: str, default: bool) -> bool:
    """Parse bool environment variable with fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


def get_choice_env(name: str, default: str, allowed: set[str]) -> str:
    """Parse enum-like env values with fallback to default on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        return default

    value = raw.strip().lower()
    if value in allowed:
        return value

    logger.warning(
        "Invalid %s value '%s'. Allowed values: %s. Falling back to '%s'.",
        name,
        raw,
        ", ".join(sorted(allowed)),
        default,
    )
    return default
