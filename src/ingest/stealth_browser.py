"""Baseline stealth settings for Playwright browser contexts.

Hides the most common automation tells (navigator.webdriver, missing plugins
and languages, absent chrome runtime) and gives contexts a desktop-like
viewport, locale and headers. Nothing here rotates fingerprints.
"""

import logging
from typing import Any

from playwright.async_api import BrowserContext

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--disable-extensions",
    "--disable-gpu",
    "--window-size=1920,1080",
]

STEALTH_SCRIPTS = [
    # Hide webdriver property
    """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => false
    });
    """,
    # Mock plugins
    """
    Object.defineProperty(navigator, 'plugins', {
        get: () => [1, 2, 3, 4, 5]
    });
    """,
    # Mock languages
    """
    Object.defineProperty(navigator, 'languages', {
        get: () => ['en-US', 'en']
    });
    """,
    # Chrome runtime
    """
    window.chrome = {
        runtime: {}
    };
    """,
    # Override permissions
    """
    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => (
        parameters.name === 'notifications' ?
            Promise.resolve({ state: Notification.permission }) :
            originalQuery(parameters)
    );
    """,
]


def context_options(proxy: dict | None = None) -> dict[str, Any]:
    """
    Keyword arguments for ``browser.new_context``.

    Args:
        proxy: Playwright proxy config (server/username/password); credentials
               set here authenticate every request made by the context
    """
    options: dict[str, Any] = {
        "user_agent": USER_AGENT,
        "viewport": {"width": 1920, "height": 1080},
        "locale": "en-US",
        "timezone_id": "America/New_York",
        "extra_http_headers": {
            "Accept-Language": "en-US,en;q=0.9",
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        },
    }
    if proxy:
        options["proxy"] = proxy
    return options


async def apply_stealth(context: BrowserContext) -> None:
    """Register the stealth init scripts on a context."""
    for script in STEALTH_SCRIPTS:
        await context.add_init_script(script)
    logger.debug("Stealth scripts registered on browser context")
