"""Media policy configuration for the image harvester.

Centralizes allowed image types, stored file extensions, and per-site
blacklist/whitelist URL filtering.
"""

import logging
import os
from collections.abc import Iterable, Sequence
from typing import Final
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Supported content types for harvested pages and covers
ALLOWED_CONTENT_TYPES: Final[set[str]] = {
    "image/jpeg",
    "image/jpg",  # Non-standard but sometimes used
    "image/png",
    "image/webp",
    "image/gif",
}

# Content types that say nothing about the payload; the decoded format decides
GENERIC_CONTENT_TYPES: Final[set[str]] = {
    "application/octet-stream",
    "binary/octet-stream",
}

# Supported file extensions for stored files
ALLOWED_EXTENSIONS: Final[tuple[str, ...]] = (
    ".jpg",
    ".jpeg",
    ".png",
    ".webp",
    ".gif",
)

# Pillow format name -> stored extension
FORMAT_EXTENSIONS: Final[dict[str, str]] = {
    "JPEG": ".jpg",
    "PNG": ".png",
    "WEBP": ".webp",
    "GIF": ".gif",
}

DEFAULT_EXTENSION: Final[str] = ".jpg"

# URL schemes a collected image source may use
DOWNLOADABLE_SCHEMES: Final[tuple[str, ...]] = ("http", "https", "blob")

# Rejection reason constants for structured logging
REJECTION_REASON_UNSUPPORTED_CONTENT_TYPE = "unsupported_content_type"
REJECTION_REASON_FILE_TOO_SMALL = "file_too_small"
REJECTION_REASON_FILE_TOO_LARGE = "file_too_large"
REJECTION_REASON_IMAGE_DIMENSIONS_TOO_SMALL = "image_dimensions_too_small"
REJECTION_REASON_INVALID_IMAGE_PAYLOAD = "invalid_image_payload"
REJECTION_REASON_HTTP_ERROR = "http_error"
REJECTION_REASON_FAILED_TO_LOAD = "failed_to_load"
REJECTION_REASON_NO_CONTENT = "no_content"
REJECTION_REASON_FILTERED = "filtered_by_site_terms"
REJECTION_REASON_STORAGE_ERROR = "storage_error"


def normalize_content_type(content_type: str | None) -> str:
    """Lowercase a Content-Type value and strip its parameters."""
    if not content_type:
        return ""
    return content_type.lower().split(";")[0].strip()


def is_allowed_content_type(content_type: str) -> bool:
    """Check if content type is allowed.

    Args:
        content_type: MIME type string (e.g., "image/jpeg").

    Returns:
        True if content type is allowed, False otherwise.
    """
    return normalize_content_type(content_type) in ALLOWED_CONTENT_TYPES


def is_generic_content_type(content_type: str | None) -> bool:
    """Return True when the content type is missing or uninformative."""
    normalized = normalize_content_type(content_type)
    return not normalized or normalized in GENERIC_CONTENT_TYPES


def format_rejection_reason(reason_key: str, details: str = "") -> str:
    """Format a canonical rejection reason with optional details.

    Args:
        reason_key: One of the REJECTION_REASON_* constants.
        details: Optional additional context (e.g., actual content-type, size).

    Returns:
        Formatted rejection message.
    """
    if details:
        return f"{reason_key}: {details}"
    return reason_key


def validate_content_type(content_type: str | None) -> tuple[bool, str | None]:
    """Validate a content type for image acceptance.

    Missing and generic binary types pass; the decoded payload is checked
    later instead.

    Args:
        content_type: Content-Type value (may be None or empty).

    Returns:
        Tuple of (is_valid, error_reason). error_reason is None if valid.
    """
    if is_generic_content_type(content_type):
        return True, None

    normalized = normalize_content_type(content_type)
    if not is_allowed_content_type(normalized):
        return False, format_rejection_reason(REJECTION_REASON_UNSUPPORTED_CONTENT_TYPE, normalized)

    return True, None


def extension_for(image_format: str | None, url: str | None = None) -> str:
    """Pick the stored file extension for an image.

    The decoded format wins; otherwise the URL path extension is used when
    it is an allowed one; otherwise DEFAULT_EXTENSION.

    Args:
        image_format: Pillow format name (e.g. "JPEG"), if known.
        url: Source URL, if known.

    Returns:
        Extension including the leading dot.
    """
    if image_format and image_format.upper() in FORMAT_EXTENSIONS:
        return FORMAT_EXTENSIONS[image_format.upper()]

    if url:
        ext = os.path.splitext(urlparse(url).path)[1].lower()
        if ext in ALLOWED_EXTENSIONS:
            return ".jpg" if ext == ".jpeg" else ext

    return DEFAULT_EXTENSION


def is_downloadable_url(url: str | None) -> bool:
    """Return True for http(s) and blob: image sources."""
    if not url:
        return False
    return urlparse(url).scheme.lower() in DOWNLOADABLE_SCHEMES


def should_accept_url(
    url: str,
    blacklist_terms: Sequence[str] = (),
    whitelist_terms: Sequence[str] = (),
) -> bool:
    """Apply a site's blacklist/whitelist terms to an image URL.

    Matching is a case-insensitive substring test. The blacklist is checked
    first; a non-empty whitelist then rejects URLs matching none of its terms.

    Args:
        url: Image URL.
        blacklist_terms: Terms that reject a URL.
        whitelist_terms: Terms of which at least one must match, if any are set.

    Returns:
        True if the URL should be downloaded.
    """
    lowered = url.lower()

    for term in blacklist_terms:
        if term and term.lower() in lowered:
            return False

    active_whitelist = [term for term in whitelist_terms if term]
    if active_whitelist:
        return any(term.lower() in lowered for term in active_whitelist)

    return True


def filter_image_urls(
    urls: Iterable[str],
    blacklist_terms: Sequence[str] = (),
    whitelist_terms: Sequence[str] = (),
) -> list[str]:
    """Keep downloadable URLs accepted by the site's term lists, in page order.

    Args:
        urls: Candidate image URLs as collected from the page.
        blacklist_terms: Terms that reject a URL.
        whitelist_terms: Terms of which at least one must match, if any are set.

    Returns:
        Accepted URLs.
    """
    candidates = [url for url in urls if is_downloadable_url(url)]
    accepted = [
        url for url in candidates if should_accept_url(url, blacklist_terms, whitelist_terms)
    ]

    rejected = len(candidates) - len(accepted)
    logger.info(
        f"URL filter: {len(accepted)} accepted, {rejected} rejected (total: {len(candidates)})"
    )
    if rejected == 0 and blacklist_terms:
        logger.warning(
            f"Blacklist rejected no URLs; check the configured terms: {list(blacklist_terms)}"
        )

    return accepted
