"""Client context derivation for ingested events.

Both helpers are pure and total: any input, including an empty or missing
signature, produces a classification instead of an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping


UNKNOWN = "Unknown"
DEFAULT_DEVICE = "desktop"
UNKNOWN_ADDRESS = "unknown"
UNKNOWN_USER_AGENT = "unknown"

FORWARDED_FOR_HEADER = "x-forwarded-for"
REAL_IP_HEADER = "x-real-ip"

_Rule = tuple[Callable[[str], bool], str]


def _has(*tokens: str) -> Callable[[str], bool]:
    return lambda ua: any(token in ua for token in tokens)


def _has_without(token: str, excluded: str) -> Callable[[str], bool]:
    return lambda ua: token in ua and excluded not in ua


# Rule order is client-visible behavior: the first match per dimension wins.
# Edge signatures also contain "chrome", so the Chrome rule excludes "edg".
BROWSER_RULES: tuple[_Rule, ...] = (
    (_has_without("chrome", "edg"), "Chrome"),
    (_has_without("safari", "chrome"), "Safari"),
    (_has("firefox"), "Firefox"),
    (_has("edg"), "Edge"),
    (_has("opera", "opr"), "Opera"),
)

# "mac" is matched before the iOS tokens, so iPhone/iPad signatures that
# advertise "like Mac OS X" classify as macOS.
OS_RULES: tuple[_Rule, ...] = (
    (_has("windows"), "Windows"),
    (_has("mac"), "macOS"),
    (_has("linux"), "Linux"),
    (_has("android"), "Android"),
    (_has("ios", "iphone", "ipad"), "iOS"),
)

DEVICE_RULES: tuple[_Rule, ...] = (
    (_has("mobile", "android"), "mobile"),
    (_has("tablet", "ipad"), "tablet"),
)


@dataclass(frozen=True)
class ParsedSignature:
    browser: str
    os: str
    device: str


@dataclass(frozen=True)
class ClientContext:
    # Everything ingestion derives from the transport rather than the payload.
    user_agent: str
    ip_address: str
    browser: str
    os: str
    device: str


def _first_match(rules: tuple[_Rule, ...], ua: str, default: str) -> str:
    for matches, label in rules:
        if matches(ua):
            return label
    return default


def parse_signature(raw: str | None) -> ParsedSignature:
    ua = (raw or "").lower()
    return ParsedSignature(
        browser=_first_match(BROWSER_RULES, ua, UNKNOWN),
        os=_first_match(OS_RULES, ua, UNKNOWN),
        device=_first_match(DEVICE_RULES, ua, DEFAULT_DEVICE),
    )


def resolve_address(headers: Mapping[str, str], connection_address: str | None) -> str:
    # Prefer the left-most forwarded hop, then the real-ip header, then the peer address.
    forwarded = headers.get(FORWARDED_FOR_HEADER)
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get(REAL_IP_HEADER) or "").strip()
    if real_ip:
        return real_ip
    if connection_address:
        return connection_address
    return UNKNOWN_ADDRESS


def build_client_context(headers: Mapping[str, str], connection_address: str | None) -> ClientContext:
    user_agent = headers.get("user-agent") or UNKNOWN_USER_AGENT
    parsed = parse_signature(user_agent)
    return ClientContext(
        user_agent=user_agent,
        ip_address=resolve_address(headers, connection_address),
        browser=parsed.browser,
        os=parsed.os,
        device=parsed.device,
    )
