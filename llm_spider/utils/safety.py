from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")


def scheme_allowed(url: str) -> bool:
    try:
        return urlparse(url).scheme.lower() in ALLOWED_SCHEMES
    except ValueError:
        return False


def is_public_address(ip: str) -> bool:
    """
    True if the address is routable on the public internet.
    """
    try:
        addr = ipaddress.ip_address(ip.strip("[]").split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return not (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_reserved
        or addr.is_unspecified
    )


async def check_target(url: str, *, allow_local: bool = False) -> Optional[str]:
    """
    Return None if the URL may be fetched, otherwise a short reason string.

    Checks the scheme, then resolves the host and rejects loopback, link-local,
    private and otherwise non-public addresses unless allow_local is set.
    Raises OSError/UnicodeError when the host cannot be resolved.
    """
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "malformed url"
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        return f"scheme not allowed: {parsed.scheme or '(none)'}"
    host = parsed.hostname
    if not host:
        return "missing host"
    if allow_local:
        return None

    if host == "localhost" or host.endswith(".localhost"):
        return "loopback host"

    try:
        ipaddress.ip_address(host)
        addresses = [host]
    except ValueError:
        # Resolution errors propagate: an unresolvable host is unreachable, not unsafe.
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(host, port or 0, type=socket.SOCK_STREAM)
        addresses = [str(info[4][0]) for info in infos]

    if not addresses:
        return "no address"
    for ip in addresses:
        if not is_public_address(ip):
            logger.debug("blocked non-public address %s for %s", ip, url)
            return f"non-public address: {ip}"
    return None
