from __future__ import annotations

import pytest

from eventlens.services.enrichment import (
    build_client_context,
    parse_signature,
    resolve_address,
)


EDGE_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0"
)
CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.1 Safari/605.1.15"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
CHROME_ANDROID = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Mobile Safari/537.36"
)
IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)
FIREFOX_TABLET = "Mozilla/5.0 (Tablet; rv:26.0) Gecko/26.0 Firefox/26.0"
OPERA_PRESTO = "Opera/9.80 (Windows NT 6.1) Presto/2.12.388 Version/12.16"
OPERA_BLINK = CHROME_WINDOWS + " OPR/106.0.0.0"


@pytest.mark.parametrize(
    ("signature", "browser", "os_name", "device"),
    [
        (EDGE_WINDOWS, "Edge", "Windows", "desktop"),
        (CHROME_WINDOWS, "Chrome", "Windows", "desktop"),
        (SAFARI_MAC, "Safari", "macOS", "desktop"),
        (FIREFOX_LINUX, "Firefox", "Linux", "desktop"),
        (CHROME_ANDROID, "Chrome", "Linux", "mobile"),
        (IPHONE_SAFARI, "Safari", "macOS", "mobile"),
        (FIREFOX_TABLET, "Firefox", "Unknown", "tablet"),
        (OPERA_PRESTO, "Opera", "Windows", "desktop"),
        # Blink-based Opera still advertises Chrome without an Edge token.
        (OPERA_BLINK, "Chrome", "Windows", "desktop"),
    ],
)
def test_parse_signature_rule_order(signature: str, browser: str, os_name: str, device: str) -> None:
    parsed = parse_signature(signature)
    assert (parsed.browser, parsed.os, parsed.device) == (browser, os_name, device)


def test_edge_wins_whenever_edg_and_chrome_tokens_coexist() -> None:
    for signature in (EDGE_WINDOWS, "chrome edg", "EdgA/120 Chrome/120 Mobile", "xx CHROME yy EDG zz"):
        assert parse_signature(signature).browser == "Edge"


@pytest.mark.parametrize("signature", [None, "", "curl/8.4.0", "python-httpx/0.27.0", "unknown"])
def test_unmatched_signatures_fall_back_to_unknown_desktop(signature: str | None) -> None:
    parsed = parse_signature(signature)
    assert parsed.browser == "Unknown"
    assert parsed.os == "Unknown"
    assert parsed.device == "desktop"


def test_resolve_address_prefers_first_forwarded_hop() -> None:
    headers = {"x-forwarded-for": " 203.0.113.7 , 10.0.0.2", "x-real-ip": "198.51.100.4"}
    assert resolve_address(headers, "127.0.0.1") == "203.0.113.7"


def test_resolve_address_falls_back_through_layers() -> None:
    assert resolve_address({"x-real-ip": "198.51.100.4"}, "127.0.0.1") == "198.51.100.4"
    assert resolve_address({"x-forwarded-for": ""}, "127.0.0.1") == "127.0.0.1"
    assert resolve_address({}, None) == "unknown"


def test_build_client_context_defaults_missing_user_agent() -> None:
    context = build_client_context({}, "192.0.2.10")
    assert context.user_agent == "unknown"
    assert context.ip_address == "192.0.2.10"
    assert (context.browser, context.os, context.device) == ("Unknown", "Unknown", "desktop")
