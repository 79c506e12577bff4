"""Creation and setup of the UDP sockets used by the relay."""

from __future__ import annotations

import os
import socket

from . import logs

MAX_UDP_PACKET_SIZE = 65507
DEFAULT_PACKET_SIZE = 1397  # 1492 - 1 - 28 - 2 - 64, the default MTU for the relay
_MTU_OVERHEAD = 1 + 28 + 2 + 64
_QOS_TOS = 46


class SocketSetupError(OSError):
    """Raised when a relay socket cannot be created or bound."""


def packet_size_for_mtu(mtu):
    """Largest relayed packet for an interface MTU; a non-positive MTU means the default."""
    mtu = int(mtu)
    if mtu <= 0:
        return DEFAULT_PACKET_SIZE
    size = mtu - _MTU_OVERHEAD
    if size <= 0:
        raise ValueError(f"MTU {mtu} leaves no room for a packet")
    return size


def set_nonblocking(sock):
    """Put a socket object or a raw file descriptor into non-blocking mode."""
    if isinstance(sock, int):
        os.set_blocking(sock, False)
    else:
        sock.setblocking(False)


def _set_nosigpipe(sock: socket.socket) -> None:
    option = getattr(socket, "SO_NOSIGPIPE", None)
    if option is not None:
        try:
            sock.setsockopt(socket.SOL_SOCKET, option, 1)
        except OSError:
            pass


def _set_reuseport(sock: socket.socket) -> bool:
    option = getattr(socket, "SO_REUSEPORT", None)
    if option is None:
        return False
    try:
        sock.setsockopt(socket.SOL_SOCKET, option, 1)
    except OSError:
        return False
    return True


def _set_tos(sock: socket.socket) -> None:
    option = getattr(socket, "IP_TOS", None)
    if option is not None:
        try:
            sock.setsockopt(socket.IPPROTO_IP, option, _QOS_TOS)
        except OSError:
            pass


def create_remote_socket(ipv6):
    """A UDP socket bound to an ephemeral port on every IPv6 or IPv4 address."""
    family = socket.AF_INET6 if ipv6 else socket.AF_INET
    address = ("::", 0) if ipv6 else ("0.0.0.0", 0)
    try:
        sock = socket.socket(family, socket.SOCK_DGRAM, 0)
    except OSError as exc:
        logs.error(f"[udp] cannot create socket: {exc.strerror}")
        raise SocketSetupError(exc.errno, "[udp] cannot create socket") from exc
    try:
        sock.bind(address)
    except OSError as exc:
        sock.close()
        logs.error("[udp] cannot bind remote")
        raise SocketSetupError(exc.errno, "[udp] cannot bind remote") from exc
    return sock


def _resolve(host, port):
    flags = socket.AI_PASSIVE | getattr(socket, "AI_ADDRCONFIG", 0)
    try:
        return socket.getaddrinfo(host, port, socket.AF_UNSPEC, socket.SOCK_DGRAM,
                                  socket.IPPROTO_UDP, flags)
    except socket.gaierror as first:
        if not flags & getattr(socket, "AI_ADDRCONFIG", 0):
            raise
        # Hosts with only loopback configured reject AI_ADDRCONFIG lookups.
        try:
            return socket.getaddrinfo(host, port, socket.AF_UNSPEC, socket.SOCK_DGRAM,
                                      socket.IPPROTO_UDP, socket.AI_PASSIVE)
        except socket.gaierror:
            raise first from None


def create_server_socket(host, port):
    """Bind the relay's listening UDP socket.

    With no host, the first IPv6 wildcard address is preferred and used in
    dual-stack mode, so that both IPv4 and IPv6 clients are served.
    """
    try:
        infos = _resolve(host, port)
    except socket.gaierror as exc:
        logs.error(f"[udp] getaddrinfo: {exc.strerror}")
        raise SocketSetupError(exc.errno, f"[udp] getaddrinfo: {exc.strerror}") from exc

    if not host:
        for index, info in enumerate(infos):
            if info[0] == socket.AF_INET6:
                infos = infos[index:]
                break

    for family, socktype, proto, _canon, sockaddr in infos:
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError:
            continue

        if family == socket.AF_INET6:
            try:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1 if host else 0)
            except OSError:
                pass
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        _set_nosigpipe(sock)
        if _set_reuseport(sock):
            logs.info("udp port reuse enabled")
        _set_tos(sock)

        try:
            sock.bind(sockaddr)
        except OSError as exc:
            logs.error(f"[udp] bind: {exc.strerror}")
            sock.close()
            continue
        return sock

    logs.error("[udp] cannot bind")
    raise SocketSetupError("[udp] cannot bind")