"""Page size classification used to scale extraction timings."""

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from browser import page_scripts
from crawler.extraction import StabilizationSettings

logger = logging.getLogger(__name__)


class PageSize(str, Enum):
    SMALL = "small"  # < 3 viewports
    MEDIUM = "medium"  # 3-10 viewports
    LARGE = "large"  # 10-30 viewports
    HUGE = "huge"  # > 30 viewports


DEFAULT_MULTIPLIERS: dict[PageSize, float] = {
    PageSize.SMALL: 1.0,
    PageSize.MEDIUM: 1.5,
    PageSize.LARGE: 2.0,
    PageSize.HUGE: 3.0,
}


@dataclass(frozen=True)
class PageComplexity:
    scroll_height: int
    viewport_height: int
    element_count: int
    scroll_ratio: float
    estimated_scrolls: int
    page_size: PageSize


def classify_scroll_ratio(scroll_ratio: float) -> PageSize:
    if scroll_ratio < 3:
        return PageSize.SMALL
    if scroll_ratio < 10:
        return PageSize.MEDIUM
    if scroll_ratio < 30:
        return PageSize.LARGE
    return PageSize.HUGE


def build_page_complexity(scroll_height: int, viewport_height: int, element_count: int) -> PageComplexity:
    """Derive complexity metrics from raw page measurements.

    A zero viewport height (detached or minimized window) is treated as one
    pixel so the ratio stays finite.
    """
    scroll_ratio = scroll_height / max(viewport_height, 1)
    return PageComplexity(
        scroll_height=scroll_height,
        viewport_height=viewport_height,
        element_count=element_count,
        scroll_ratio=scroll_ratio,
        estimated_scrolls=math.ceil(scroll_ratio),
        page_size=classify_scroll_ratio(scroll_ratio),
    )


def detect_page_complexity(session: Any, selector: str = "img") -> PageComplexity:
    """Measure the current page of a browser session.

    Args:
        session: BrowserSession to measure.
        selector: CSS selector counted as content elements.

    Returns:
        PageComplexity for the page as currently rendered.
    """
    metrics = session.evaluate(page_scripts.PAGE_METRICS, selector) or {}
    complexity = build_page_complexity(
        int(metrics.get("scrollHeight") or 0),
        int(metrics.get("viewportHeight") or 0),
        int(metrics.get("elementCount") or 0),
    )
    logger.debug(
        f"Page complexity: {complexity.page_size.value} "
        f"(ratio {complexity.scroll_ratio:.1f}, {complexity.element_count} elements)"
    )
    return complexity


def get_complexity_multiplier(
    complexity: PageComplexity,
    custom_multipliers: Mapping[str, float] | None = None,
) -> float:
    """Return the timing multiplier for a page.

    Args:
        complexity: Measured page complexity.
        custom_multipliers: Per-site overrides keyed by page size name
            ("small", "medium", "large", "huge"). Missing sizes use the defaults.

    Returns:
        Multiplier applied to delays, stability checks and timeouts.
    """
    if custom_multipliers:
        value = custom_multipliers.get(complexity.page_size.value)
        if value is not None and value > 0:
            return float(value)
    return DEFAULT_MULTIPLIERS[complexity.page_size]


def scale_settings(settings: StabilizationSettings, multiplier: float) -> StabilizationSettings:
    """Return a copy of settings with scroll pause, stability checks and timeout scaled."""
    if multiplier == 1.0:
        return settings
    return replace(
        settings,
        scroll_pause=settings.scroll_pause * multiplier,
        stability_checks=max(1, math.ceil(settings.stability_checks * multiplier)),
        timeout=settings.timeout * multiplier,
    )
