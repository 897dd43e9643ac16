"""Optional browser verification of finished work items.

An item opts in by putting a target in its body::

    verify-url: http://localhost:3000/settings
    verify-selectors: #save-button, .profile-form

The page is opened in headless Chromium and every selector must be visible.
Items without a URL pass without a check.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .models import WorkItem

logger = logging.getLogger(__name__)

try:
    from playwright.sync_api import Error as PlaywrightError
    from playwright.sync_api import sync_playwright

    PLAYWRIGHT_AVAILABLE = True
except ImportError:
    PLAYWRIGHT_AVAILABLE = False

_URL_RE = re.compile(r"verify[- ]?url:\s*(\S+)", re.IGNORECASE)
_SELECTORS_RE = re.compile(r"verify[- ]?selectors?:[ \t]*(.+)", re.IGNORECASE)


def extract_verification_target(body: str) -> Tuple[str, List[str]]:
    """Return (url, selectors) from an item body; ("", []) when absent.

    Example:
        >>> extract_verification_target("verify-url: http://x\\nverify-selectors: a, b")
        ('http://x', ['a', 'b'])
    """
    if not body:
        return "", []
    url_match = _URL_RE.search(body)
    url = url_match.group(1).strip() if url_match else ""
    sel_match = _SELECTORS_RE.search(body)
    selectors: List[str] = []
    if sel_match:
        selectors = [s.strip() for s in sel_match.group(1).split(",") if s.strip()]
    return url, selectors


@dataclass
class VerificationResult:
    passed: bool
    skipped: bool = False
    detail: str = ""
    screenshot: Optional[Path] = None


class BrowserVerifier:
    """Checks selector visibility with Playwright's sync API."""

    def __init__(
        self,
        timeout_seconds: int = 30,
        headless: bool = True,
        snapshot_dir: Optional[Path] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.headless = headless
        self.snapshot_dir = snapshot_dir

    def verify(self, item: WorkItem) -> VerificationResult:
        url, selectors = extract_verification_target(item.body)
        if not url:
            logger.info("No verification URL for %s; skipping verification", item.display_id)
            return VerificationResult(passed=True, skipped=True, detail="no verification url")

        if not PLAYWRIGHT_AVAILABLE:
            logger.warning(
                "Verification requested for %s but Playwright is not installed. "
                "Install with: pip install 'ralph-taheri[verify]' && playwright install chromium",
                item.display_id,
            )
            return VerificationResult(passed=True, skipped=True, detail="playwright not installed")

        return self._check(item, url, selectors)

    def _screenshot_path(self, item: WorkItem) -> Optional[Path]:
        if self.snapshot_dir is None:
            return None
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)
        safe = re.sub(r"[^a-zA-Z0-9_.-]+", "_", item.display_id) or "item"
        return self.snapshot_dir / f"{safe}-final.png"

    def _check(self, item: WorkItem, url: str, selectors: List[str]) -> VerificationResult:
        timeout_ms = self.timeout_seconds * 1000
        logger.info("Verifying %s at %s", item.display_id, url)

        with sync_playwright() as p:
            try:
                browser = p.chromium.launch(headless=self.headless)
            except PlaywrightError as e:
                logger.warning(
                    "Could not launch Chromium for %s (%s). "
                    "Install it with: playwright install chromium",
                    item.display_id,
                    e,
                )
                return VerificationResult(
                    passed=True, skipped=True, detail="browser could not be launched"
                )
            try:
                page = browser.new_page()
                try:
                    page.goto(url, timeout=timeout_ms, wait_until="load")
                except PlaywrightError as e:
                    # Unreachable page: treated as skipped.
                    logger.warning("Could not open %s (%s); skipping verification", url, e)
                    return VerificationResult(
                        passed=True, skipped=True, detail=f"could not open {url}"
                    )

                for selector in selectors:
                    try:
                        page.locator(selector).first.wait_for(
                            state="visible", timeout=timeout_ms
                        )
                    except PlaywrightError:
                        logger.warning("Selector %r is not visible on %s", selector, url)
                        return VerificationResult(
                            passed=False, detail=f"selector {selector!r} not visible"
                        )
                    logger.debug("Selector %r is visible", selector)

                shot = self._screenshot_path(item)
                if shot is not None:
                    try:
                        page.screenshot(path=str(shot), full_page=True)
                    except PlaywrightError as e:
                        logger.debug("Failed to take screenshot: %s", e)
                        shot = None
            finally:
                browser.close()

        return VerificationResult(passed=True, detail="all selectors visible", screenshot=shot)
