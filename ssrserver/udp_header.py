"""Address headers of relayed UDP packets: parsing, building and keying."""

from __future__ import annotations

import enum
import ipaddress
import socket
from dataclasses import dataclass

from . import logs

ADDRTYPE_IPV4 = 1
ADDRTYPE_DOMAIN = 3
ADDRTYPE_IPV6 = 4
ONETIMEAUTH_FLAG = 0x10
ADDRTYPE_MASK = 0xEF

_PORT_LEN = 2


class Stage(enum.IntEnum):
    """Stages of a relayed connection."""

    ERROR = -1
    INIT = 0
    HANDSHAKE = 1
    PARSE = 2
    RESOLVE = 4
    STREAM = 5


class HeaderError(ValueError):
    """Raised when an address header is missing, truncated or of unknown type."""


@dataclass(frozen=True)
class UdpHeader:
    """A parsed address header.

    ``length`` is the number of bytes the header takes at the start of the
    packet. ``family`` is the socket family of the destination when it is a
    literal address (also when a domain field holds an IP literal), else None.
    """

    atyp: int
    host: str
    port: int
    length: int
    family: int | None = None

    @property
    def dst_addr(self):
        """The destination as a socket address tuple, or None for a name."""
        if self.family is None:
            return None
        return (self.host, self.port)


def _ip_family(text: str) -> int | None:
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    return socket.AF_INET if ip.version == 4 else socket.AF_INET6


def parse_header(buf):
    """Parse the address header at the start of buf."""
    buf = bytes(buf)
    if not buf:
        raise HeaderError("[udp] empty header")
    atyp = buf[0]
    kind = atyp & ADDRTYPE_MASK
    offset = 1
    family = None
    host = None

    if kind == ADDRTYPE_IPV4:
        if len(buf) >= 4 + 3:
            host = str(ipaddress.IPv4Address(buf[1:5]))
            family = socket.AF_INET
            offset += 4
    elif kind == ADDRTYPE_DOMAIN:
        if len(buf) >= 2:
            name_len = buf[1]
            if name_len + 4 <= len(buf):
                host = buf[2:2 + name_len].decode("utf-8", errors="replace")
                family = _ip_family(host)
                if family is not None:
                    host = str(ipaddress.ip_address(host))
                offset += 1 + name_len
    elif kind == ADDRTYPE_IPV6:
        if len(buf) >= 16 + 3:
            host = str(ipaddress.IPv6Address(buf[1:17]))
            family = socket.AF_INET6
            offset += 16

    if host is None:
        message = f"[udp] invalid header with addr type {atyp}"
        logs.error(message)
        raise HeaderError(message)

    port = int.from_bytes(buf[offset:offset + _PORT_LEN], "big")
    return UdpHeader(atyp=atyp, host=host, port=port,
                     length=offset + _PORT_LEN, family=family)


def _split(addr):
    try:
        host, port = addr[0], addr[1]
    except (TypeError, IndexError) as exc:
        raise HeaderError(f"not a socket address: {addr!r}") from exc
    host = str(host).split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(host)
    except ValueError as exc:
        raise HeaderError(f"not an IP address: {host!r}") from exc
    return ip, int(port)


def construct_header(addr):
    """Build the header for an IPv4 or IPv6 socket address tuple."""
    ip, port = _split(addr)
    if not 0 <= port <= 0xFFFF:
        raise HeaderError(f"port out of range: {port}")
    atyp = ADDRTYPE_IPV4 if ip.version == 4 else ADDRTYPE_IPV6
    return bytes([atyp]) + ip.packed + port.to_bytes(2, "big")


def get_addr_str(addr):
    """Render a socket address as 'host:port', or 'Unknown AF'."""
    try:
        ip, port = _split(addr)
    except HeaderError:
        return "Unknown AF"
    return f"{ip}:{port}"


def hash_key(family, addr):
    """A hashable key identifying a (family, source address) pair."""
    try:
        ip, port = _split(addr)
        rest = tuple(addr[2:]) if ip.version == 6 else ()
        return (int(family), str(ip), port) + rest
    except HeaderError:
        return (int(family),) + tuple(addr)