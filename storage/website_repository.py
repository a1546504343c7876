"""Read access to per-site scraping rules stored in PostgreSQL.

The `websites` table is owned by the administration service; this module
only reads it. Rows are keyed by hostname in the `url` column.
"""

import logging
from typing import Any

import psycopg2

from crawler.site_config import SiteConfig, SiteConfigProvider
from storage.db import read_cursor

logger = logging.getLogger(__name__)

WEBSITE_COLUMNS: tuple[str, ...] = (
    "selector",
    "pre_script",
    "post_script",
    "concurrency_limit",
    "blacklist_terms",
    "whitelist_terms",
    "ignore_files",
    "use_network_interception",
    "use_screenshot_mode",
    "enable_adaptive_timeouts",
    "timeout_multipliers",
    "cookies",
    "local_storage",
    "session_storage",
    "reload_after_storage_injection",
)

SELECT_WEBSITE_SQL = f"""
    SELECT {", ".join(WEBSITE_COLUMNS)}
    FROM websites
    WHERE lower(url) = lower(%s)
    LIMIT 1
"""


def get_website_row(domain: str) -> dict[str, Any] | None:
    """Fetch the raw website row for a domain.

    Args:
        domain: Hostname as used for admission control.

    Returns:
        Column name to value mapping, or None if no row exists.

    Raises:
        psycopg2.Error: If the query fails.
    """
    with read_cursor() as cur:
        cur.execute(SELECT_WEBSITE_SQL, (domain,))
        row = cur.fetchone()
    return dict(row) if row is not None else None


class PostgresSiteConfigProvider(SiteConfigProvider):
    """SiteConfigProvider backed by the `websites` table.

    Query failures are logged and propagate to the caller.
    """

    def get_config(self, domain: str) -> SiteConfig:
        try:
            row = get_website_row(domain)
        except psycopg2.Error as e:
            logger.error(f"Failed to load site config for {domain!r}: {e}")
            raise

        if row is None:
            logger.debug(f"No site config for {domain}, using defaults")
            return SiteConfig()
        return SiteConfig.from_mapping(row)
