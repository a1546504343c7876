"""Image fetching and payload validation for the image harvester.

validate_image_payload() is shared by every download path (network cache,
in-page fetch, HTTP fallback). ImageFetcher is the HTTP fallback used when
the in-page fetch fails; it replays the browser session's cookies, user
agent and Referer so hotlink-protected hosts still answer.
"""

import hashlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from io import BytesIO

import requests
from PIL import Image

from processor.media_policy import (
    REJECTION_REASON_FILE_TOO_LARGE,
    REJECTION_REASON_FILE_TOO_SMALL,
    REJECTION_REASON_HTTP_ERROR,
    REJECTION_REASON_IMAGE_DIMENSIONS_TOO_SMALL,
    REJECTION_REASON_INVALID_IMAGE_PAYLOAD,
    extension_for,
    format_rejection_reason,
    is_generic_content_type,
    normalize_content_type,
    validate_content_type,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_FILE_SIZE = 100
DEFAULT_MAX_FILE_SIZE = 50 * 1024 * 1024


@dataclass
class ImageFetchResult:
    """Result of fetching an image.

    Attributes:
        success: Whether the fetch was successful.
        url: The URL that was fetched.
        content: Raw binary content (if successful).
        content_type: MIME type reported by the source.
        file_size: Size in bytes.
        width: Image width in pixels (if parseable).
        height: Image height in pixels (if parseable).
        format: Image format (e.g., 'JPEG', 'PNG').
        extension: Extension to store the content under.
        sha256_hash: SHA-256 hash of the content.
        source: Which download path produced the bytes.
        error_message: Description of failure (if unsuccessful).
    """

    success: bool
    url: str
    content: bytes | None = None
    content_type: str | None = None
    file_size: int = 0
    width: int | None = None
    height: int | None = None
    format: str | None = None
    extension: str | None = None
    sha256_hash: str | None = None
    source: str | None = None
    error_message: str | None = None


def parse_image_dimensions(content: bytes) -> tuple[int | None, int | None, str | None]:
    """Parse image dimensions from binary content.

    Args:
        content: Raw image bytes.

    Returns:
        Tuple of (width, height, format) or (None, None, None) on failure.
    """
    try:
        img = Image.open(BytesIO(content))
        return img.width, img.height, img.format
    except Exception as e:
        logger.debug(f"Could not parse image dimensions: {e}")
        return None, None, None


def validate_image_payload(
    url: str,
    content: bytes | None,
    content_type: str | None = None,
    source: str | None = None,
    min_file_size: int = DEFAULT_MIN_FILE_SIZE,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    min_width: int = 0,
    min_height: int = 0,
) -> ImageFetchResult:
    """Validate downloaded bytes and describe them as an ImageFetchResult.

    Args:
        url: Source URL of the bytes.
        content: Downloaded bytes.
        content_type: Reported MIME type, if any.
        source: Download path label ("cache", "page", "http").
        min_file_size: Minimum accepted size in bytes.
        max_file_size: Maximum accepted size in bytes.
        min_width: Minimum accepted width in pixels.
        min_height: Minimum accepted height in pixels.

    Returns:
        ImageFetchResult with success status and metadata.
    """
    is_valid, error_reason = validate_content_type(content_type)
    if not is_valid:
        return ImageFetchResult(success=False, url=url, source=source, error_message=error_reason)

    content = content or b""
    file_size = len(content)
    if file_size < min_file_size:
        return ImageFetchResult(
            success=False,
            url=url,
            source=source,
            error_message=format_rejection_reason(REJECTION_REASON_FILE_TOO_SMALL, f"{file_size} bytes"),
        )
    if file_size > max_file_size:
        return ImageFetchResult(
            success=False,
            url=url,
            source=source,
            error_message=format_rejection_reason(REJECTION_REASON_FILE_TOO_LARGE, f"{file_size} bytes"),
        )

    width, height, img_format = parse_image_dimensions(content)
    if width is None or height is None:
        return ImageFetchResult(
            success=False,
            url=url,
            source=source,
            error_message=format_rejection_reason(
                REJECTION_REASON_INVALID_IMAGE_PAYLOAD, "cannot parse dimensions"
            ),
        )

    if width < min_width or height < min_height:
        return ImageFetchResult(
            success=False,
            url=url,
            source=source,
            error_message=format_rejection_reason(
                REJECTION_REASON_IMAGE_DIMENSIONS_TOO_SMALL, f"{width}x{height}"
            ),
        )

    normalized_type = normalize_content_type(content_type)
    if is_generic_content_type(normalized_type):
        normalized_type = Image.MIME.get(img_format or "", normalized_type) or None

    return ImageFetchResult(
        success=True,
        url=url,
        content=content,
        content_type=normalized_type,
        file_size=file_size,
        width=width,
        height=height,
        format=img_format,
        extension=extension_for(img_format, url),
        sha256_hash=hashlib.sha256(content).hexdigest(),
        source=source,
    )


class ImageFetcher:
    """Fetches images over HTTP on behalf of a browser session.

    Attributes:
        min_file_size: Minimum file size in bytes.
        max_file_size: Maximum file size in bytes.
        min_dimensions: Minimum width/height in pixels.
        timeout: Request timeout in seconds.
        session: Reusable requests Session for connection pooling.
    """

    def __init__(
        self,
        user_agent: str | None = None,
        min_file_size: int = DEFAULT_MIN_FILE_SIZE,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        min_width: int = 0,
        min_height: int = 0,
        timeout: int = 30,
    ) -> None:
        """Initialize the fetcher with validation thresholds.

        Args:
            user_agent: User-Agent header; should match the browser session's.
            min_file_size: Minimum file size in bytes.
            max_file_size: Maximum file size in bytes.
            min_width: Minimum image width in pixels.
            min_height: Minimum image height in pixels.
            timeout: HTTP request timeout in seconds.
        """
        self.min_file_size = min_file_size
        self.max_file_size = max_file_size
        self.min_dimensions = (min_width, min_height)
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Accept": "image/avif,image/webp,image/*,*/*;q=0.8"})
        if user_agent:
            self.session.headers["User-Agent"] = user_agent

    def fetch(
        self,
        url: str,
        cookies: Mapping[str, str] | None = None,
        referer: str | None = None,
    ) -> ImageFetchResult:
        """Fetch and validate an image from a URL.

        Args:
            url: The image URL to fetch.
            cookies: Cookies copied from the browser session.
            referer: Page URL to send as Referer.

        Returns:
            ImageFetchResult with success status and metadata.
        """
        logger.debug(f"Fetching image over HTTP: {url}")
        headers = {"Referer": referer} if referer else None

        try:
            response = self.session.get(
                url,
                cookies=dict(cookies or {}),
                headers=headers,
                timeout=self.timeout,
                stream=True,
                allow_redirects=True,
            )
            response.raise_for_status()
        except requests.exceptions.Timeout:
            return self._failure(url, format_rejection_reason(REJECTION_REASON_HTTP_ERROR, "timeout"))
        except requests.exceptions.HTTPError as e:
            status = getattr(e.response, "status_code", "unknown")
            return self._failure(
                url, format_rejection_reason(REJECTION_REASON_HTTP_ERROR, f"status_{status}")
            )
        except requests.exceptions.RequestException as e:
            return self._failure(
                url,
                format_rejection_reason(
                    REJECTION_REASON_HTTP_ERROR, f"request_exception: {type(e).__name__}"
                ),
            )

        try:
            content = self._read_content_with_limit(response)
        except ValueError as e:
            return self._failure(url, str(e))
        finally:
            response.close()

        return validate_image_payload(
            url,
            content,
            content_type=response.headers.get("Content-Type"),
            source="http",
            min_file_size=self.min_file_size,
            max_file_size=self.max_file_size,
            min_width=self.min_dimensions[0],
            min_height=self.min_dimensions[1],
        )

    def _failure(self, url: str, message: str) -> ImageFetchResult:
        return ImageFetchResult(success=False, url=url, source="http", error_message=message)

    def _read_content_with_limit(self, response: requests.Response) -> bytes:
        """Read response content with size limit.

        Args:
            response: Requests Response object.

        Returns:
            Content as bytes.

        Raises:
            ValueError: If content exceeds max_file_size.
        """
        chunks = []
        total_size = 0

        for chunk in response.iter_content(chunk_size=8192):
            chunks.append(chunk)
            total_size += len(chunk)

            if total_size > self.max_file_size:
                raise ValueError(
                    format_rejection_reason(
                        REJECTION_REASON_FILE_TOO_LARGE, f"exceeds {self.max_file_size} bytes"
                    )
                )

        return b"".join(chunks)

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()
