"""Domain resolution utilities for admission control.

The admission key for a scrape target is its hostname. Normalization rules:
- Strip scheme, credentials, port, path
- Lowercase all characters
- Strip trailing dot
- Convert IDN to punycode

Unlike registrable-domain reduction, subdomains are kept: cdn.site.com and
site.com are throttled independently, and so are www.site.com and site.com.
"""

import ipaddress
import logging
import re
from urllib.parse import urlparse

import idna

logger = logging.getLogger(__name__)

_HOST_PATTERN = re.compile(r"^[a-z0-9_-]+(\.[a-z0-9_-]+)*$")


def resolve_domain(url: str | None) -> str:
    """Resolve the admission domain (hostname) for a URL.

    Args:
        url: Full URL (https://example.com/path) or bare host (example.com).

    Returns:
        Normalized hostname.

    Raises:
        ValueError: If no hostname can be extracted, or it holds characters
            that cannot appear in a host name.

    Examples:
        >>> resolve_domain("https://Example.COM:8443/chapter/1")
        'example.com'
        >>> resolve_domain("www.example.com")
        'www.example.com'
        >>> resolve_domain("https://münchen.de/")
        'xn--mnchen-3ya.de'
    """
    if not url or not isinstance(url, str):
        raise ValueError(f"Invalid URL: {url!r}")

    candidate = url.strip()
    if "://" not in candidate:
        candidate = f"https://{candidate}"

    try:
        hostname = urlparse(candidate).hostname
    except ValueError as e:
        logger.warning(f"Failed to parse URL {url!r}: {e}")
        raise ValueError(f"Invalid URL: {url!r}") from e

    if not hostname:
        raise ValueError(f"URL has no hostname: {url!r}")

    hostname = hostname.rstrip(".")

    try:
        hostname = idna.encode(hostname, uts46=True).decode("ascii")
    except (idna.IDNAError, UnicodeError) as e:
        # Keep the lowercase form for hosts idna refuses (e.g. underscores).
        logger.debug(f"IDN encoding failed for {hostname!r}: {e}")

    if not _HOST_PATTERN.fullmatch(hostname) and not _is_ip_literal(hostname):
        raise ValueError(f"Invalid hostname in URL: {url!r}")

    return hostname


def _is_ip_literal(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True

