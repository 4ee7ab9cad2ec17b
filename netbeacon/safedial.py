"""SSRF-safe dialing for device-supplied addresses.

Every connection to an address that arrived through server-pushed
configuration goes through :func:`dial`. A compromised configuration could
otherwise point the beacon at the cloud instance-metadata service, at
services listening on the beacon host itself, at broadcast or multicast
ranges, or at a hostname whose DNS answer flips between check and connect.

The defence:

1. The host is resolved exactly once. IP literals are not resolved at all.
2. Every resolved address is checked against the block-list below. If any
   of them is blocked, the whole dial is refused, so a DNS answer mixing
   good and bad addresses cannot be used to sneak through.
3. The first resolved address is dialled as an IP literal; the hostname
   never reaches the connect step.

Blocked ranges: 127.0.0.0/8, 169.254.0.0/16, 0.0.0.0/32, 224.0.0.0/4,
255.255.255.255/32, ::1/128, fe80::/10, ff00::/8 and ::/128. IPv4-mapped
IPv6 addresses are unmapped first. Private space (RFC 1918, ULA) is
allowed, because that is where the probed devices live.
"""

from __future__ import annotations

import ipaddress
import socket
from collections.abc import Sequence
from typing import Any, Protocol, Union

_Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_FORBIDDEN_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        # IPv4
        "127.0.0.0/8",  # loopback
        "169.254.0.0/16",  # link-local, includes instance metadata
        "0.0.0.0/32",  # unspecified
        "224.0.0.0/4",  # multicast
        "255.255.255.255/32",  # limited broadcast
        # IPv6
        "::1/128",  # loopback
        "fe80::/10",  # link-local
        "ff00::/8",  # multicast
        "::/128",  # unspecified
    )
)


class SafeDialError(Exception):
    """Base class for dial attempts refused by policy."""


class ForbiddenIPError(SafeDialError):
    """The target resolves to a blocked address range."""


class DNSLookupError(SafeDialError):
    """Resolving the target hostname failed."""


class EmptyResolveError(SafeDialError):
    """Resolving the target hostname returned no addresses."""


class BadPortError(SafeDialError):
    """The port is outside 1..65535."""


class _Resolver(Protocol):
    def lookup_ip(self, network: str, host: str) -> Sequence[Any]: ...


class _Connector(Protocol):
    def connect(self, network: str, address: tuple[str, int], timeout: float | None) -> Any: ...


def _to_address(ip: Any) -> _Address | None:
    """Coerce an address given as object, text or packed bytes; None if unusable."""
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return ip
    if isinstance(ip, (bytes, bytearray)):
        if len(ip) not in (4, 16):
            return None
        return ipaddress.ip_address(bytes(ip))
    if isinstance(ip, str):
        try:
            return ipaddress.ip_address(ip)
        except ValueError:
            return None
    return None


def _unmap(addr: _Address) -> _Address:
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def is_forbidden(ip: Any) -> bool:
    """Report whether ip falls inside a blocked range.

    Unparseable input counts as forbidden. IPv4-mapped IPv6 addresses are
    checked in their IPv4 form.
    """
    addr = _to_address(ip)
    if addr is None:
        return True
    addr = _unmap(addr)
    return any(addr in net for net in _FORBIDDEN_NETWORKS if net.version == addr.version)


def _lookup_network(dial_network: str) -> str:
    """Map a dial network name to the resolver's address family name."""
    if dial_network in ("tcp4", "udp4"):
        return "ip4"
    if dial_network in ("tcp6", "udp6"):
        return "ip6"
    return "ip"


class SystemResolver:
    """Resolver backed by the operating system's getaddrinfo."""

    _FAMILIES = {"ip4": socket.AF_INET, "ip6": socket.AF_INET6}

    def lookup_ip(self, network: str, host: str) -> list[_Address]:
        """Return the distinct addresses host resolves to, in resolver order."""
        family = self._FAMILIES.get(network, socket.AF_UNSPEC)
        infos = socket.getaddrinfo(host, None, family, socket.SOCK_STREAM)
        addresses = (ipaddress.ip_address(sockaddr[0]) for *_, sockaddr in infos)
        return list(dict.fromkeys(addresses))


class SocketConnector:
    """Opens real sockets to an already-validated IP literal."""

    def connect(self, network: str, address: tuple[str, int], timeout: float | None) -> socket.socket:
        """Connect to address and return the connected socket."""
        host, port = address
        if network.startswith("udp"):
            family = socket.AF_INET6 if ":" in host else socket.AF_INET
            sock = socket.socket(family, socket.SOCK_DGRAM)
            try:
                sock.settimeout(timeout)
                sock.connect((host, port))
            except OSError:
                sock.close()
                raise
            return sock
        return socket.create_connection((host, port), timeout=timeout)


class Dialer:
    """Dial entry point with an injectable resolver and connector."""

    def __init__(self, resolver: _Resolver | None = None, connector: _Connector | None = None) -> None:
        self.resolver = resolver if resolver is not None else SystemResolver()
        self.connector = connector if connector is not None else SocketConnector()

    def dial(self, network: str, host_or_ip: str, port: int, timeout: float | None = None) -> Any:
        """Resolve once, check every address, then connect to the first as a literal.

        Raises BadPortError, DNSLookupError, EmptyResolveError or
        ForbiddenIPError when policy refuses the dial; connection failures
        surface as the connector's own OSError.
        """
        if not 1 <= port <= 65535:
            raise BadPortError(f"port must be in 1..65535: got {port}")

        addresses = self._resolve(network, host_or_ip)
        for index, addr in enumerate(addresses, start=1):
            if is_forbidden(addr):
                raise ForbiddenIPError(
                    f"{host_or_ip} resolves to {addr} (entry {index} of {len(addresses)})"
                )

        first = _unmap(_to_address(addresses[0]))
        return self.connector.connect(network, (str(first), port), timeout)

    def _resolve(self, network: str, host_or_ip: str) -> list[Any]:
        try:
            return [ipaddress.ip_address(host_or_ip)]
        except ValueError:
            pass
        try:
            addresses = list(self.resolver.lookup_ip(_lookup_network(network), host_or_ip))
        except OSError as exc:
            raise DNSLookupError(f"DNS lookup failed: {host_or_ip}: {exc}") from exc
        if not addresses:
            raise EmptyResolveError(f"DNS returned no addresses: {host_or_ip}")
        return addresses


DEFAULT_DIALER = Dialer()


def dial(network: str, host_or_ip: str, port: int, timeout: float | None = None) -> Any:
    """Dial through the default dialer with allow-list enforcement."""
    return DEFAULT_DIALER.dial(network, host_or_ip, port, timeout)