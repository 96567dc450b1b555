"""
Host address detection and wildcard-DNS domain construction.

IPv4 is preferred. IPv6 is consulted only when every IPv4 lookup fails or
returns nothing usable. IPv6 colons are turned into dashes before the
wildcard suffix is appended, e.g. ``2a01:4f8:c013:ae::1`` becomes
``2a01-4f8-c013-ae--1.sslip.io``.

Lookups go through ``CommandExecutor.fetch_text`` so each one is bounded
by the configured timeout.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from typing import Callable, Iterable, Optional

from dokkuprov.executor import CommandExecutor

logger = logging.getLogger(__name__)

Lookup = Callable[[], Optional[str]]


def ipv6_to_dashes(address: str) -> str:
    """Format an IPv6 literal for wildcard DNS: every colon becomes a dash."""
    return address.replace(":", "-")


def format_host_label(address: str) -> str:
    """IPv4 is used as-is, IPv6 is dash-formatted."""
    if ":" in address:
        return ipv6_to_dashes(address)
    return address


def wildcard_domain(address: str, suffix: str = "sslip.io") -> str:
    return f"{format_host_label(address)}.{suffix}"


def _parse_address(text: Optional[str], version: int) -> Optional[str]:
    if not text:
        return None
    candidate = text.strip().splitlines()[0].strip() if text.strip() else ""
    try:
        parsed = ipaddress.ip_address(candidate)
    except ValueError:
        logger.debug("Ignoring non-address lookup answer %r", candidate)
        return None
    if parsed.version != version:
        return None
    return str(parsed)


def first_address(urls: Iterable[str], executor: CommandExecutor, version: int) -> Optional[str]:
    """Try each URL in order, return the first valid address of ``version``."""
    for url in urls:
        address = _parse_address(executor.fetch_text(url), version)
        if address:
            return address
    return None


def resolve_host_address(lookup_v4: Lookup, lookup_v6: Lookup) -> Optional[str]:
    """IPv4 first, IPv6 only if IPv4 came back empty."""
    address = lookup_v4()
    if address:
        return address
    logger.info("No IPv4 address detected, trying IPv6")
    return lookup_v6() or None


def resolve_wildcard_domain(
    lookup_v4: Lookup,
    lookup_v6: Lookup,
    suffix: str = "sslip.io",
) -> Optional[str]:
    """
    Build the wildcard domain for the detected host address.

    >>> resolve_wildcard_domain(lambda: None, lambda: "::1")
    '--1.sslip.io'
    >>> resolve_wildcard_domain(lambda: "203.0.113.7", lambda: "::1")
    '203.0.113.7.sslip.io'
    """
    address = resolve_host_address(lookup_v4, lookup_v6)
    if address is None:
        return None
    return wildcard_domain(address, suffix)


def detect_host_address(
    executor: CommandExecutor,
    ipv4_urls: Iterable[str],
    ipv6_urls: Iterable[str],
) -> Optional[str]:
    return resolve_host_address(
        lambda: first_address(ipv4_urls, executor, 4),
        lambda: first_address(ipv6_urls, executor, 6),
    )


def latest_release_tag(executor: CommandExecutor, url: str, fallback: str) -> str:
    """
    Look up the latest platform release tag.

    Falls back to ``fallback`` when the lookup fails, times out or the
    answer has no ``tag_name``.
    """
    body = executor.fetch_text(url)
    if body:
        try:
            tag = json.loads(body).get("tag_name")
        except (ValueError, AttributeError):
            tag = None
        if isinstance(tag, str) and tag:
            return tag
    logger.warning("Could not detect latest release, falling back to %s", fallback)
    return fallback
