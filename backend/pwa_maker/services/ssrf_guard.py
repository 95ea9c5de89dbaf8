"""SSRF guard for user-driven outbound requests.

`is_private_hostname` is a pure classifier (no DNS). Every fetch made on
behalf of a user passes its target through `ensure_public_destination`
before the request is sent, including each redirect hop: the hostname is
classified, then resolved, and every address it resolves to is classified
as well.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from urllib.parse import urlsplit

import httpx

from .errors import HostResolutionError, SSRFBlockedError

BLOCKED_HOSTNAMES = frozenset({
    "localhost",
    "metadata.google.internal",
    "metadata",
})

BLOCKED_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",        # "this" network
        "10.0.0.0/8",       # RFC1918
        "127.0.0.0/8",      # loopback
        "169.254.0.0/16",   # link-local, cloud metadata
        "172.16.0.0/12",    # RFC1918
        "192.168.0.0/16",   # RFC1918
        "::1/128",          # IPv6 loopback
        "::/128",           # IPv6 unspecified
        "fc00::/7",         # IPv6 unique-local
        "fe80::/10",        # IPv6 link-local
    )
)

DEFAULT_PORTS = {"http": 80, "https": 443}


def _parse_ip(hostname: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        return None


def is_private_hostname(hostname: str) -> bool:
    """Return True if the host is loopback, private, link-local or metadata.

    Accepts bare names, IPv4 literals and IPv6 literals with or without
    brackets. Case and a trailing dot are ignored.
    """
    host = hostname.strip().lower().rstrip(".")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    # Zone ids ("fe80::1%eth0") do not change the address class
    host = host.split("%", 1)[0]

    if not host:
        return False
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return True

    address = _parse_ip(host)
    if address is None:
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    return any(address in network for network in BLOCKED_NETWORKS)


def ensure_public_url(url: str) -> None:
    """Raise SSRFBlockedError if the URL's hostname is private (no DNS)."""
    try:
        hostname = urlsplit(url).hostname or ""
    except ValueError:
        hostname = ""
    if not hostname or is_private_hostname(hostname):
        raise SSRFBlockedError(hostname or url, url)


async def resolve_host(hostname: str, port: int) -> list[str]:
    """Every address a hostname resolves to, via the event loop's resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


async def ensure_public_destination(url: str) -> None:
    """Raise unless the URL's hostname and all of its addresses are public.

    Raises:
        SSRFBlockedError: The name, or any address it resolves to, is private.
        HostResolutionError: The name does not resolve.
    """
    ensure_public_url(url)

    parts = urlsplit(url)
    hostname = parts.hostname or ""
    if _parse_ip(hostname.split("%", 1)[0]) is not None:
        # Literal addresses were classified above
        return
    try:
        port = parts.port or DEFAULT_PORTS.get(parts.scheme, 443)
    except ValueError:
        port = DEFAULT_PORTS.get(parts.scheme, 443)

    try:
        addresses = await resolve_host(hostname, port)
    except (socket.gaierror, UnicodeError) as e:
        raise HostResolutionError(hostname, url) from e
    if not addresses:
        raise HostResolutionError(hostname, url)

    for address in addresses:
        if is_private_hostname(address):
            raise SSRFBlockedError(hostname, url)


async def guard_request(request: httpx.Request) -> None:
    """httpx request hook: runs before the first request and every redirect."""
    try:
        await ensure_public_destination(str(request.url))
    except HostResolutionError as e:
        raise httpx.ConnectError(str(e), request=request) from e
