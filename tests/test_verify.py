"""Tests for browser verification (Playwright itself is mocked)."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

import ralph_taheri.verify as verify
from conftest import make_item
from ralph_taheri.verify import BrowserVerifier, extract_verification_target


def test_extract_url_and_selectors():
    body = "Do things.\n\nverify-url: http://localhost:3000/settings\nverify-selectors: #save, .form\n"
    assert extract_verification_target(body) == ("http://localhost:3000/settings", ["#save", ".form"])


def test_extract_url_only():
    assert extract_verification_target("Verify URL: http://x/y") == ("http://x/y", [])


def test_extract_nothing():
    assert extract_verification_target("no target here") == ("", [])
    assert extract_verification_target("") == ("", [])


def test_item_without_url_is_skipped():
    result = BrowserVerifier().verify(make_item(1, body="plain"))
    assert result.passed is True
    assert result.skipped is True


def test_missing_playwright_is_skipped(monkeypatch):
    monkeypatch.setattr(verify, "PLAYWRIGHT_AVAILABLE", False)
    result = BrowserVerifier().verify(make_item(1, body="verify-url: http://localhost"))

    assert result.passed is True
    assert result.skipped is True
    assert "playwright" in result.detail


@pytest.mark.skipif(not verify.PLAYWRIGHT_AVAILABLE, reason="playwright not installed")
class TestWithPlaywright:
    def _page(self, browser_cm):
        playwright = browser_cm.return_value.__enter__.return_value
        browser = playwright.chromium.launch.return_value
        return browser, browser.new_page.return_value

    def test_visible_selectors_pass(self, tmp_path):
        item = make_item(4, body="verify-url: http://localhost\nverify-selectors: #ok")
        with patch.object(verify, "sync_playwright", MagicMock()) as cm:
            browser, page = self._page(cm)
            result = BrowserVerifier(snapshot_dir=tmp_path).verify(item)

        assert result.passed is True
        assert result.skipped is False
        assert result.screenshot == tmp_path / "_4-final.png"
        page.locator.assert_called_once_with("#ok")
        browser.close.assert_called_once()

    def test_invisible_selector_fails(self):
        item = make_item(4, body="verify-url: http://localhost\nverify-selectors: #missing")
        with patch.object(verify, "sync_playwright", MagicMock()) as cm:
            _, page = self._page(cm)
            page.locator.return_value.first.wait_for.side_effect = verify.PlaywrightError("timeout")
            result = BrowserVerifier().verify(item)

        assert result.passed is False
        assert "#missing" in result.detail

    def test_unreachable_page_is_skipped(self):
        item = make_item(4, body="verify-url: http://localhost:9\nverify-selectors: #x")
        with patch.object(verify, "sync_playwright", MagicMock()) as cm:
            _, page = self._page(cm)
            page.goto.side_effect = verify.PlaywrightError("net::ERR_CONNECTION_REFUSED")
            result = BrowserVerifier().verify(item)

        assert result.passed is True
        assert result.skipped is True

    def test_browser_launch_failure_is_skipped(self):
        item = make_item(4, body="verify-url: http://localhost\nverify-selectors: #x")
        with patch.object(verify, "sync_playwright", MagicMock()) as cm:
            playwright = cm.return_value.__enter__.return_value
            playwright.chromium.launch.side_effect = verify.PlaywrightError(
                "BrowserType.launch: Executable doesn't exist"
            )
            result = BrowserVerifier().verify(item)

        assert result.passed is True
        assert result.skipped is True
        assert "launch" in result.detail
