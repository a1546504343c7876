"""Logging configuration for the image harvester.

Provides JSON formatting for production, a human-readable format for
development, and per-run scrape statistics.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED_RECORD_FIELDS = frozenset(
    (
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
    )
)

HUMAN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

NOISY_LOGGERS = ("urllib3", "selenium", "PIL", "asyncio")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StructuredLogFormatter(logging.Formatter):
    """Structured JSON formatter for production logging.

    Outputs log records as JSON objects with consistent fields:
    - timestamp: ISO format timestamp
    - level: Log level name
    - logger: Logger name
    - message: Log message
    plus any fields passed through `extra=`.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: LogRecord to format.

        Returns:
            JSON formatted log string.
        """
        log_data: dict[str, Any] = {
            "timestamp": _utcnow().isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ScrapeStatistics:
    """Collects and reports statistics for one scrape run.

    Attributes:
        start_time: When statistics collection started.
        domain: Domain being scraped.
        images_discovered: Image URLs collected from the page.
        images_stored: Images handed to the resource sink.
        images_skipped: URLs skipped (failed to load in page, or filtered).
        images_failed: Downloads or stores that failed.
        screenshots_stored: Element screenshots stored in capture mode.
        total_bytes: Bytes handed to the resource sink.
        errors: Error messages encountered.
    """

    def __init__(self, domain: str = "") -> None:
        self.start_time: datetime = _utcnow()
        self.domain = domain
        self.images_discovered: int = 0
        self.images_stored: int = 0
        self.images_skipped: int = 0
        self.images_failed: int = 0
        self.screenshots_stored: int = 0
        self.total_bytes: int = 0
        self.errors: list[str] = []

    def record_discovered(self, count: int) -> None:
        self.images_discovered += count

    def record_stored(self, bytes_stored: int, screenshot: bool = False) -> None:
        """Record an object handed to the resource sink.

        Args:
            bytes_stored: Size of the stored payload.
            screenshot: True for capture-mode screenshots.
        """
        if screenshot:
            self.screenshots_stored += 1
        else:
            self.images_stored += 1
        self.total_bytes += bytes_stored

    def record_skipped(self) -> None:
        self.images_skipped += 1

    def record_failed(self, url: str, error: str) -> None:
        self.images_failed += 1
        self.errors.append(f"{url}: {error}")

    def get_summary(self) -> dict[str, Any]:
        """Get statistics summary as dictionary.

        Returns:
            Dictionary with statistics summary.
        """
        duration = (_utcnow() - self.start_time).total_seconds()

        return {
            "domain": self.domain,
            "duration_seconds": round(duration, 2),
            "images_discovered": self.images_discovered,
            "images_stored": self.images_stored,
            "images_skipped": self.images_skipped,
            "images_failed": self.images_failed,
            "screenshots_stored": self.screenshots_stored,
            "total_bytes": self.total_bytes,
            "error_count": len(self.errors),
        }

    def log_summary(self, logger: logging.Logger) -> None:
        """Log statistics summary.

        Args:
            logger: Logger instance to use.
        """
        summary = self.get_summary()

        logger.info("=" * 60)
        logger.info(f"SCRAPE SUMMARY: {summary['domain']}")
        logger.info("=" * 60)
        logger.info(f"Duration: {summary['duration_seconds']:.2f} seconds")
        logger.info(f"Images discovered: {summary['images_discovered']}")
        logger.info(f"Images stored: {summary['images_stored']}")
        logger.info(f"Images skipped: {summary['images_skipped']}")
        logger.info(f"Images failed: {summary['images_failed']}")
        if summary["screenshots_stored"]:
            logger.info(f"Screenshots stored: {summary['screenshots_stored']}")
        logger.info(f"Total bytes: {summary['total_bytes']:,}")
        logger.info(f"Errors: {summary['error_count']}")
        logger.info("=" * 60)


def setup_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    log_file: str | None = None,
) -> None:
    """Set up logging configuration.

    Args:
        level: Logging level or level name (default: INFO).
        json_format: Use JSON formatting for structured logs.
        log_file: Optional file path to write logs to.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        if json_format:
            handler.setFormatter(StructuredLogFormatter())
        else:
            handler.setFormatter(logging.Formatter(HUMAN_FORMAT))

    logging.basicConfig(
        level=level,
        handlers=handlers,
        force=True,
    )

    # Set third-party loggers to WARNING to reduce noise
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
