"""
SSRF host checks for outbound gateway traffic.

Literal addresses are classified in every notation the system resolver
accepts (``127.1``, ``2130706433``, ``0x7f000001``, ``0177.0.0.1``), and
names are resolved before a request so a public-looking name that points
at an internal address is still refused.
"""

import asyncio
import ipaddress
import socket
from typing import Optional, Union
from urllib.parse import urlsplit

import structlog

logger = structlog.get_logger()

BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "metadata.google.internal"}

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_address(host: str) -> Optional[IPAddress]:
    """The IP a literal host stands for, including shorthand, integer, hex and octal IPv4 forms."""
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    # inet_aton accepts the legacy forms getaddrinfo would connect to
    if not host or not all(c.isalnum() or c == "." for c in host) or not host[0].isdigit():
        return None
    try:
        return ipaddress.IPv4Address(socket.inet_aton(host))
    except OSError:
        return None


def is_internal_address(address: IPAddress) -> bool:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def is_private_host(hostname: str) -> bool:
    """True for loopback, private, link-local and otherwise non-public hosts."""
    host = hostname.strip().strip("[]").rstrip(".").lower()
    if not host:
        return True
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return True

    address = parse_address(host)
    if address is None:
        return False
    return is_internal_address(address)


def host_matches(hostname: str, pattern: str) -> bool:
    """
    Match a hostname against one allow-list entry.

    ``*.example.com`` matches ``example.com`` and any subdomain of it, but
    never ``evil-example.com``.
    """
    host = hostname.lower().rstrip(".")
    pattern = pattern.strip().lower().rstrip(".")
    if pattern.startswith("*."):
        base = pattern[2:]
        return host == base or host.endswith("." + base)
    return host == pattern


def validate_host(hostname: str, allowed_hosts: Optional[list[str]]) -> bool:
    """
    Decide whether outbound traffic to ``hostname`` is permitted.

    Private hosts are always rejected. An empty allow-list permits any
    public host.
    """
    if is_private_host(hostname):
        return False
    if not allowed_hosts:
        return True
    return any(host_matches(hostname, pattern) for pattern in allowed_hosts)


def hostname_of(url: str) -> Optional[str]:
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None


async def resolve_host(hostname: str) -> list[str]:
    """Addresses the system resolver returns for ``hostname``; empty when it cannot resolve."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        logger.info("Host did not resolve", hostname=hostname, error=str(e))
        return []
    return [info[4][0] for info in infos]


async def is_public_destination(hostname: str, allowed_hosts: Optional[list[str]] = None) -> bool:
    """
    validate_host plus a DNS check: every address the name resolves to
    must be public. A name that does not resolve cannot be connected to,
    so it is left to fail at request time.
    """
    if not validate_host(hostname, allowed_hosts):
        return False
    host = hostname.strip().strip("[]").rstrip(".").lower()
    if parse_address(host) is not None:
        return True

    for value in await resolve_host(host):
        address = parse_address(value.split("%", 1)[0])
        if address is None or is_internal_address(address):
            logger.warning("Host resolves to an internal address", hostname=hostname, address=value)
            return False
    return True
