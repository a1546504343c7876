"""Per-domain scraping rules and the providers that supply them."""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SELECTOR = "img"


def _terms(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = [value]
    return tuple(str(term).strip() for term in value if str(term).strip())


@dataclass(frozen=True)
class SiteConfig:
    """Read-only scraping rules for one domain.

    Attributes:
        selector: CSS selector of the content images.
        pre_script: Statements run after navigation, before extraction.
        post_script: Statements run after extraction, before downloads.
        concurrency_limit: Max concurrent sessions; None or <= 0 is unlimited.
        blacklist_terms: URL substrings that reject an image.
        whitelist_terms: If non-empty, URLs must contain one of these.
        use_network_interception: Record image responses for download reuse.
        use_screenshot_mode: Store element screenshots instead of image bytes.
        enable_adaptive_timeouts: Scale timings by measured page size.
        timeout_multipliers: Per page size overrides ("small" ... "huge").
        cookies: Cookies added to the browser before navigation. Each has
            `name` and `value`; `domain`, `path`, `secure`, `httpOnly`,
            `sameSite` and `expires` are optional.
        local_storage: localStorage items set after navigation.
        session_storage: sessionStorage items set after navigation.
        reload_after_storage_injection: Reload the page once storage items
            are set, so site scripts see them on load.
    """

    selector: str = DEFAULT_SELECTOR
    pre_script: str = ""
    post_script: str = ""
    concurrency_limit: int | None = None
    blacklist_terms: tuple[str, ...] = ()
    whitelist_terms: tuple[str, ...] = ()
    use_network_interception: bool = True
    use_screenshot_mode: bool = False
    enable_adaptive_timeouts: bool = True
    timeout_multipliers: Mapping[str, float] = field(default_factory=dict)
    cookies: tuple[Mapping[str, Any], ...] = ()
    local_storage: Mapping[str, str] = field(default_factory=dict)
    session_storage: Mapping[str, str] = field(default_factory=dict)
    reload_after_storage_injection: bool = False

    @property
    def has_storage_items(self) -> bool:
        return bool(self.local_storage or self.session_storage)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SiteConfig":
        """Build a config from a loosely-typed mapping (JSON object or DB row).

        Missing or null values fall back to the defaults. `ignore_files` terms
        are merged into the blacklist.
        """
        limit = data.get("concurrency_limit")
        multipliers = data.get("timeout_multipliers") or {}
        blacklist = _terms(data.get("blacklist_terms")) + _terms(data.get("ignore_files"))
        return cls(
            selector=data.get("selector") or DEFAULT_SELECTOR,
            pre_script=data.get("pre_script") or "",
            post_script=data.get("post_script") or "",
            concurrency_limit=int(limit) if limit is not None else None,
            blacklist_terms=blacklist,
            whitelist_terms=_terms(data.get("whitelist_terms")),
            use_network_interception=_flag(data.get("use_network_interception"), True),
            use_screenshot_mode=_flag(data.get("use_screenshot_mode"), False),
            enable_adaptive_timeouts=_flag(data.get("enable_adaptive_timeouts"), True),
            timeout_multipliers={str(k): float(v) for k, v in dict(multipliers).items()},
            cookies=_cookies(data.get("cookies")),
            local_storage=_storage_items(data.get("local_storage")),
            session_storage=_storage_items(data.get("session_storage")),
            reload_after_storage_injection=_flag(data.get("reload_after_storage_injection"), False),
        )


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "y", "on"}:
            return True
        if text in {"0", "false", "no", "n", "off"}:
            return False
        return default
    return bool(value)


def _storage_items(value: Any) -> dict[str, str]:
    """Coerce a storage mapping to string values; non-strings are JSON encoded."""
    if not value:
        return {}
    if isinstance(value, str):
        value = json.loads(value)
    return {
        str(key): item if isinstance(item, str) else json.dumps(item)
        for key, item in dict(value).items()
    }


def _cookies(value: Any) -> tuple[Mapping[str, Any], ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = json.loads(value)
    if isinstance(value, Mapping):
        value = [{"name": name, "value": item} for name, item in value.items()]
    cookies = []
    for cookie in value:
        if not cookie.get("name"):
            raise ValueError(f"Cookie without a name: {cookie!r}")
        cookies.append(dict(cookie, name=str(cookie["name"]), value=str(cookie.get("value", ""))))
    return tuple(cookies)


class SiteConfigProvider(ABC):
    """Read-only lookup of scraping rules by domain."""

    @abstractmethod
    def get_config(self, domain: str) -> SiteConfig:
        """Return rules for a domain, or SiteConfig() when none are stored."""


class StaticSiteConfigProvider(SiteConfigProvider):
    """In-memory provider, mostly for tests and single-site runs."""

    def __init__(self, configs: Mapping[str, SiteConfig] | None = None) -> None:
        self._configs = {domain.lower(): config for domain, config in (configs or {}).items()}

    def get_config(self, domain: str) -> SiteConfig:
        return self._configs.get(domain.lower(), SiteConfig())


class JsonFileSiteConfigProvider(SiteConfigProvider):
    """Provider backed by a JSON object keyed by domain.

    The file is read once at construction.

    Example:
        {"example.com": {"selector": ".page img", "concurrency_limit": 2}}
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        with self.path.open(encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"Site config file must hold a JSON object: {self.path}")
        self._configs = {
            str(domain).lower(): SiteConfig.from_mapping(values or {})
            for domain, values in raw.items()
        }
        logger.info(f"Loaded site configs for {len(self._configs)} domains from {self.path}")

    @property
    def domains(self) -> Iterable[str]:
        return self._configs.keys()

    def get_config(self, domain: str) -> SiteConfig:
        return self._configs.get(domain.lower(), SiteConfig())
