import ipaddress
import logging
import socket
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, Sequence
from urllib.parse import urlsplit

from urllib3.exceptions import LocationParseError
from urllib3.util import parse_url

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})
DNS_TIMEOUT_SECONDS = 5.0

Resolver = Callable[[str], Sequence[str]]

_PRIVATE_IPV4_NETWORKS = tuple(
    ipaddress.IPv4Network(cidr)
    for cidr in (
        "0.0.0.0/8",  # "this" network
        "10.0.0.0/8",
        "100.64.0.0/10",  # shared address space (CGNAT)
        "127.0.0.0/8",
        "169.254.0.0/16",  # link-local, cloud metadata
        "172.16.0.0/12",
        "192.0.0.0/24",  # IETF protocol assignments
        "192.0.2.0/24",  # TEST-NET-1
        "192.88.99.0/24",  # 6to4 relay anycast
        "192.168.0.0/16",
        "198.18.0.0/15",  # benchmarking
        "198.51.100.0/24",  # TEST-NET-2
        "203.0.113.0/24",  # TEST-NET-3
        "224.0.0.0/4",  # multicast
        "240.0.0.0/4",  # reserved
        "255.255.255.255/32",
    )
)

_PRIVATE_IPV6_NETWORKS = tuple(
    ipaddress.IPv6Network(cidr)
    for cidr in (
        "::1/128",
        "::/128",
        "fc00::/7",  # unique local
        "fe80::/10",  # link-local
        "64:ff9b::/96",  # NAT64
        "2001:db8::/32",  # documentation
        "2002::/16",  # 6to4
        "ff00::/8",  # multicast
    )
)

class UrlSafetyError(ValueError):
    """Raised when a URL must not be contacted."""


class InvalidUrlError(UrlSafetyError):
    def __init__(self) -> None:
        super().__init__("Invalid URL")


class InvalidProtocolError(UrlSafetyError):
    def __init__(self) -> None:
        super().__init__("Invalid protocol: must be http or https")


class ResolutionFailedError(UrlSafetyError):
    def __init__(self, hostname: str) -> None:
        super().__init__(f"Failed to resolve hostname: {hostname}")
        self.hostname = hostname


class PrivateIpDeniedError(UrlSafetyError):
    def __init__(self, ip: str) -> None:
        super().__init__(f"Access to private IP {ip} is denied")
        self.ip = ip


def is_private_ip(ip: str) -> bool:
    """
    Return True if ``ip`` is non-routable or reserved.

    ``ip`` must already be a dotted IPv4 or colon IPv6 string; anything else
    raises ``ValueError``. IPv4-mapped IPv6 addresses are judged by the IPv4
    address they carry.
    """
    address = ipaddress.ip_address(ip)
    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return _is_private_ipv4(address.ipv4_mapped)
        return any(address in network for network in _PRIVATE_IPV6_NETWORKS)
    return _is_private_ipv4(address)


def _is_private_ipv4(address: ipaddress.IPv4Address) -> bool:
    return any(address in network for network in _PRIVATE_IPV4_NETWORKS)


def is_strict_ipv4(value: str) -> bool:
    """
    Check for a canonical dotted-quad IPv4 literal.

    Leading zeros (``0177.0.0.1``), hex and single-integer forms are rejected
    so that they get resolved as hostnames instead of being trusted as literals.
    """
    parts = value.split(".")
    if len(parts) != 4:
        return False
    for part in parts:
        if not part.isascii() or not part.isdigit():
            return False
        if len(part) > 1 and part.startswith("0"):
            return False
        if int(part) > 255:
            return False
    return True


def _lookup(hostname: str, family: int) -> list[str]:
    try:
        infos = socket.getaddrinfo(hostname, None, family=family, type=socket.SOCK_STREAM)
    except socket.gaierror:
        return []

    addresses: list[str] = []
    for info in infos:
        sockaddr = info[4]
        if not sockaddr:
            continue
        # Strip any IPv6 scope id so the address parses as a plain IP.
        address = str(sockaddr[0]).split("%", 1)[0]
        if address not in addresses:
            addresses.append(address)
    return addresses


def _lookup_a_then_aaaa(hostname: str) -> list[str]:
    return _lookup(hostname, socket.AF_INET) or _lookup(hostname, socket.AF_INET6)


def resolve_hostname(hostname: str, timeout_seconds: float = DNS_TIMEOUT_SECONDS) -> list[str]:
    """
    Resolve A records, falling back to AAAA, using the system resolver.

    ``getaddrinfo`` cannot be interrupted, so every lookup runs in its own
    daemon thread. A lookup that stalls past ``timeout_seconds`` is abandoned
    and cannot hold up lookups made by other requests.
    """
    future: Future = Future()

    def run() -> None:
        try:
            future.set_result(_lookup_a_then_aaaa(hostname))
        except Exception as exc:
            future.set_exception(exc)

    threading.Thread(target=run, name="url-safety-dns", daemon=True).start()
    try:
        addresses = future.result(timeout=timeout_seconds)
    except FutureTimeoutError as exc:
        logger.warning("DNS lookup for %s timed out after %ss", hostname, timeout_seconds)
        raise ResolutionFailedError(hostname) from exc
    except Exception as exc:
        logger.info("DNS lookup for %s failed: %s", hostname, exc)
        raise ResolutionFailedError(hostname) from exc

    if not addresses:
        raise ResolutionFailedError(hostname)
    return addresses


def _extract_hostname(url: str) -> tuple[str, bool]:
    try:
        parsed = urlsplit(url)
        # Accessing .port validates it; a bad port raises ValueError.
        parsed.port
    except ValueError as exc:
        raise InvalidUrlError() from exc

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        if not parsed.scheme:
            raise InvalidUrlError()
        raise InvalidProtocolError()

    hostname = parsed.hostname
    if not hostname:
        raise InvalidUrlError()

    # urllib3 ends the authority at a backslash, urlsplit does not.
    if "\\" in parsed.netloc:
        raise InvalidUrlError()
    if hostname.isascii() and _transport_host(url) != hostname.split("%", 1)[0].lower():
        raise InvalidUrlError()

    host_part = parsed.netloc.rpartition("@")[2]
    return hostname, host_part.startswith("[")


def _transport_host(url: str) -> str:
    """Host as requests will connect to it, parsed the way urllib3 does."""
    try:
        host = parse_url(url).host
    except LocationParseError as exc:
        raise InvalidUrlError() from exc
    return (host or "").strip("[]").split("%", 1)[0].lower()


def _deny_if_private(ip: str) -> None:
    if is_private_ip(ip):
        logger.warning("Blocked outbound request to private address %s", ip)
        raise PrivateIpDeniedError(ip)


def validate_url(url: str, resolver: Optional[Resolver] = None) -> list[str]:
    """
    Raise unless ``url`` is safe to contact right now.

    Returns the addresses that were checked: the literal itself for IP hosts,
    otherwise everything the resolver returned.
    """
    hostname, bracketed = _extract_hostname(url)

    if bracketed:
        ip = hostname.split("%", 1)[0]
        try:
            ipaddress.IPv6Address(ip)
        except ValueError as exc:
            raise InvalidUrlError() from exc
        _deny_if_private(ip)
        return [ip]

    if is_strict_ipv4(hostname):
        _deny_if_private(hostname)
        return [hostname]

    resolve = resolver or resolve_hostname
    try:
        resolved = list(resolve(hostname) or [])
    except ResolutionFailedError:
        raise
    except Exception as exc:
        logger.info("Resolver failed for %s: %s", hostname, exc)
        raise ResolutionFailedError(hostname) from exc

    if not resolved:
        raise ResolutionFailedError(hostname)

    addresses: list[str] = []
    for raw_address in resolved:
        address = str(raw_address).strip()
        try:
            ipaddress.ip_address(address)
        except ValueError as exc:
            raise ResolutionFailedError(hostname) from exc
        _deny_if_private(address)
        addresses.append(address)
    return addresses
