"""Best-effort opening of the certificate review link."""

import webbrowser
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)


def open_viewer(url: str, browser_opener: Callable[[str], bool] = webbrowser.open) -> bool:
    """
    Open ``url`` in the user's browser.

    When no browser is available the link is printed instead, so the review
    can still be completed by hand.
    """
    try:
        opened = bool(browser_opener(url))
    except webbrowser.Error as e:
        logger.warning("certificate_viewer_failed", error=str(e))
        opened = False

    if not opened:
        print_link(url)
    return opened


def print_link(url: str) -> bool:
    logger.info("certificate_review_link", url=url)
    print(f"Open this link to review your certificate: {url}")
    return False
