"""Error taxonomy for scrape runs.

Resource-acquisition errors (admission, launch) propagate to the caller.
Navigation and extraction errors abort the run after cleanup. Script and
download errors are usually logged and aggregated by the orchestrator.
"""

from typing import Any


class ScrapeError(Exception):
    """Base class for all scrape-run failures."""


class AdmissionTimeout(ScrapeError):
    """No admission slot could be obtained within the configured wait.

    Attributes:
        domain: Domain the slot was requested for.
        limit: Configured concurrency limit for the domain.
        waited: Seconds spent waiting before giving up.
    """

    def __init__(self, domain: str, limit: int, waited: float) -> None:
        self.domain = domain
        self.limit = limit
        self.waited = waited
        super().__init__(
            f"Timeout waiting for concurrency slot for domain {domain} "
            f"(limit: {limit}, waited: {waited:.1f}s)"
        )


class LaunchError(ScrapeError):
    """A browser session could not be created."""


class NavigationError(ScrapeError):
    """The target page failed to load."""


class ScriptError(ScrapeError):
    """A script evaluated inside the page raised or timed out."""


class ExtractionTimeout(ScrapeError):
    """Scrolling never settled or tracked images never finished loading.

    Attributes:
        partial: ExtractionResult with whatever was gathered before the deadline.
    """

    def __init__(self, message: str, partial: Any = None) -> None:
        self.partial = partial
        super().__init__(message)


class DownloadFailure(ScrapeError):
    """A single resource could not be fetched or stored."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to download {url}: {reason}")
