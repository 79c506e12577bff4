"""UDP relay of the server side: decrypt client packets, forward them, relay replies back."""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from . import logs
from .udp_header import HeaderError, construct_header, get_addr_str, hash_key, parse_header
from .udp_sockets import (
    SocketSetupError,
    create_remote_socket,
    create_server_socket,
    packet_size_for_mtu,
    set_nonblocking,
)

MAX_UDP_CONN_NUM = 512
MIN_UDP_TIMEOUT = 10
DEFAULT_TIMEOUT = 60
_QOS_TOS = 46


class PlainCipher:
    """A cipher that leaves packets as they are.

    Any object with ``encrypt_all`` and ``decrypt_all`` can stand in its place;
    raising ValueError from either makes the relay drop the packet.
    """

    def encrypt_all(self, data):
        """Return the packet unchanged."""
        return bytes(data)

    def decrypt_all(self, data):
        """Return the packet unchanged."""
        return bytes(data)


class ConnectionCache:
    """A bounded least-recently-used map; evicted values go to ``on_evict``."""

    def __init__(self, maxsize=MAX_UDP_CONN_NUM, on_evict=None):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self._on_evict: Callable[[Any, Any], None] | None = on_evict
        self._items: OrderedDict[Any, Any] = OrderedDict()

    def __len__(self):
        return len(self._items)

    def __contains__(self, key):
        return key in self._items

    def _evict(self, key, value) -> None:
        if self._on_evict is not None:
            self._on_evict(key, value)

    def lookup(self, key):
        """The value stored under key, marked as recently used, or None."""
        value = self._items.get(key)
        if value is not None:
            self._items.move_to_end(key)
        return value

    def insert(self, key, value):
        """Store value under key, evicting the oldest entries beyond maxsize."""
        old = self._items.pop(key, None)
        self._items[key] = value
        if old is not None and old is not value:
            self._evict(key, old)
        while len(self._items) > self.maxsize:
            oldest_key, oldest = self._items.popitem(last=False)
            self._evict(oldest_key, oldest)

    def remove(self, key):
        """Remove and evict the value under key; return it, or None."""
        value = self._items.pop(key, None)
        if value is not None:
            self._evict(key, value)
        return value

    def clear(self):
        """Evict every entry, oldest first."""
        while self._items:
            key, value = self._items.popitem(last=False)
            self._evict(key, value)


@dataclass(eq=False)
class RemoteContext:
    """One client's association with an outgoing socket."""

    sock: socket.socket
    src_addr: tuple
    addr_header: bytes
    af: int = socket.AF_UNSPEC
    dst_addr: tuple | None = None
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


def _family_of(addr) -> int:
    try:
        ip = ipaddress.ip_address(str(addr[0]).split("%", 1)[0])
    except (ValueError, TypeError, IndexError):
        return socket.AF_UNSPEC
    return socket.AF_INET if ip.version == 4 else socket.AF_INET6


class UdpRelay:
    """Relays UDP packets between clients and their destinations on an asyncio loop."""

    def __init__(self, host=None, port=0, cipher=None, mtu=0, timeout=DEFAULT_TIMEOUT, iface=None):
        self.host = host
        self.port = port
        self.cipher = cipher if cipher is not None else PlainCipher()
        self.packet_size = packet_size_for_mtu(mtu)
        self.buf_size = self.packet_size * 2
        self.timeout = max(int(timeout), MIN_UDP_TIMEOUT)
        self.iface = iface
        self.verbose = False
        self.tx = 0
        self.rx = 0
        self.cache = ConnectionCache(MAX_UDP_CONN_NUM, self._free_remote)
        self._sock: socket.socket | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queries: set[asyncio.Task] = set()

    @property
    def address(self):
        """The address the relay listens on."""
        self._require_started()
        return self._sock.getsockname()

    def start(self):
        """Bind the listening socket and watch it on the running event loop."""
        if self._sock is not None:
            raise RuntimeError("relay is already started")
        loop = asyncio.get_running_loop()
        sock = create_server_socket(self.host, self.port)
        set_nonblocking(sock)
        self._loop = loop
        self._sock = sock
        loop.add_reader(sock.fileno(), self._on_server_readable)
        return self

    def close(self):
        """Stop relaying: cancel lookups, drop every association, close the socket."""
        for task in list(self._queries):
            task.cancel()
        self._queries.clear()
        self.cache.clear()
        if self._sock is not None:
            if self._loop is not None and self._sock.fileno() != -1:
                self._loop.remove_reader(self._sock.fileno())
            self._sock.close()
            self._sock = None
        self._loop = None

    async def __aenter__(self):
        return self.start()

    async def __aexit__(self, *exc_info):
        self.close()

    def _require_started(self) -> None:
        if self._sock is None or self._loop is None:
            raise RuntimeError("relay is not started")

    # remote contexts

    def _tune(self, sock: socket.socket) -> None:
        set_nonblocking(sock)
        for level, name, value in (
            (socket.SOL_SOCKET, "SO_BROADCAST", 1),
            (socket.SOL_SOCKET, "SO_NOSIGPIPE", 1),
            (socket.IPPROTO_IP, "IP_TOS", _QOS_TOS),
        ):
            option = getattr(socket, name, None)
            if option is not None:
                try:
                    sock.setsockopt(level, option, value)
                except OSError:
                    pass
        if self.iface:
            option = getattr(socket, "SO_BINDTODEVICE", None)
            try:
                if option is None:
                    raise OSError("binding to an interface is not supported")
                sock.setsockopt(socket.SOL_SOCKET, option, str(self.iface).encode())
            except OSError as exc:
                logs.error(f"setinterface: {exc}")

    def _new_remote(self, ipv6: bool, src_addr, addr_header: bytes) -> RemoteContext:
        sock = create_remote_socket(ipv6)
        self._tune(sock)
        return RemoteContext(sock=sock, src_addr=tuple(src_addr), addr_header=bytes(addr_header))

    def _activate(self, ctx: RemoteContext) -> None:
        self._loop.add_reader(ctx.sock.fileno(), self._on_remote_readable, ctx)
        self._reset_timer(ctx)

    def _reset_timer(self, ctx: RemoteContext) -> None:
        if ctx.timer is not None:
            ctx.timer.cancel()
        if self._loop is not None:
            ctx.timer = self._loop.call_later(self.timeout, self._on_timeout, ctx)

    def _on_timeout(self, ctx: RemoteContext) -> None:
        if self.verbose:
            logs.info("[udp] connection timeout")
        removed = self.cache.remove(hash_key(ctx.af, ctx.src_addr))
        if removed is not ctx:
            self._close_remote(ctx)

    def _close_remote(self, ctx: RemoteContext) -> None:
        if ctx.timer is not None:
            ctx.timer.cancel()
            ctx.timer = None
        if ctx.sock.fileno() != -1:
            if self._loop is not None:
                self._loop.remove_reader(ctx.sock.fileno())
            ctx.sock.close()

    def _free_remote(self, key, ctx: RemoteContext) -> None:
        if self.verbose:
            logs.info("[udp] one connection freed")
        self._close_remote(ctx)

    # client side

    def _on_server_readable(self) -> None:
        try:
            data, addr = self._sock.recvfrom(self.buf_size)
        except BlockingIOError:
            return
        except OSError as exc:
            logs.error(f"[udp] server_recv_recvfrom: {exc.strerror}")
            return
        self.handle_client_packet(data, addr)

    def handle_client_packet(self, data, addr):
        """Handle one encrypted packet received from a client at addr."""
        self._require_started()
        data = bytes(data)
        if len(data) > self.packet_size:
            logs.error("[udp] server_recv_recvfrom fragmentation")
            return
        self.tx += len(data)

        try:
            data = bytes(self.cipher.decrypt_all(data))
        except ValueError:
            return
        try:
            header = parse_header(data)
        except HeaderError:
            return

        family = header.family if header.family is not None else socket.AF_UNSPEC
        addr = tuple(addr)
        addr_header = data[:header.length]
        payload = data[header.length:]

        ctx = self.cache.lookup(hash_key(family, addr))
        if ctx is not None and ctx.src_addr != addr:
            ctx = None
        if ctx is not None:
            self._reset_timer(ctx)
        if self.verbose:
            state = "hit" if ctx is not None else "miss"
            logs.info(f"[udp] cache {state}: {header.host}:{header.port} <-> {get_addr_str(addr)}")

        if len(payload) > self.packet_size:
            logs.error("[udp] server_recv_sendto fragmentation")
            return

        cache_hit = ctx is not None
        need_query = False
        dst = header.dst_addr
        if ctx is not None:
            if ctx.addr_header != addr_header:
                if dst is None:
                    need_query = True
            else:
                dst = ctx.dst_addr
        elif dst is not None:
            try:
                ctx = self._new_remote(family == socket.AF_INET6, addr, addr_header)
            except SocketSetupError:
                logs.error("[udp] bind() error")
                return
            ctx.dst_addr = dst

        if ctx is not None and not need_query:
            self._send_to_remote(ctx, payload, dst, cache_hit, family)
            return

        task = self._loop.create_task(
            self._resolve_and_send(header, payload, addr, addr_header, ctx if need_query else None)
        )
        self._queries.add(task)
        task.add_done_callback(self._queries.discard)

    def _send_to_remote(self, ctx: RemoteContext, payload: bytes, dst, cache_hit: bool, af: int) -> None:
        try:
            ctx.sock.sendto(payload, dst)
        except OSError as exc:
            logs.error(f"[udp] sendto_remote: {exc.strerror or exc}")
            if not cache_hit:
                self._close_remote(ctx)
            return
        if not cache_hit:
            ctx.af = af
            self.cache.insert(hash_key(ctx.af, ctx.src_addr), ctx)
            self._activate(ctx)

    async def _resolve_and_send(self, header, payload: bytes, src_addr, addr_header: bytes,
                                ctx: RemoteContext | None) -> None:
        loop = self._loop
        try:
            infos = await loop.getaddrinfo(header.host, header.port,
                                           type=socket.SOCK_DGRAM, proto=socket.IPPROTO_UDP)
        except OSError:
            infos = []
        if self.verbose:
            logs.info("[udp] udns resolved")
        if not infos:
            logs.error("[udp] udns returned an error")
            return
        if self._sock is None:
            return
        family, _type, _proto, _canon, sockaddr = infos[0]

        if ctx is None:
            ctx = self.cache.lookup(hash_key(socket.AF_UNSPEC, src_addr))
        elif ctx.sock.fileno() == -1:
            return
        cache_hit = ctx is not None
        if ctx is None:
            try:
                ctx = self._new_remote(family == socket.AF_INET6, src_addr, addr_header)
            except SocketSetupError:
                logs.error("[udp] bind() error")
                return
        ctx.dst_addr = tuple(sockaddr)
        self._send_to_remote(ctx, payload, ctx.dst_addr, cache_hit, socket.AF_UNSPEC)

    # remote side

    def _on_remote_readable(self, ctx: RemoteContext) -> None:
        try:
            data, addr = ctx.sock.recvfrom(self.buf_size)
        except BlockingIOError:
            return
        except OSError as exc:
            logs.error(f"[udp] remote_recv_recvfrom: {exc.strerror}")
            return
        self.handle_remote_packet(ctx, data, addr)

    def handle_remote_packet(self, ctx, data, addr):
        """Handle one reply that ctx's socket received from addr; send it to the client."""
        if self._sock is None:
            logs.error("[udp] invalid server")
            self._close_remote(ctx)
            return
        data = bytes(data)
        if len(data) > self.packet_size:
            logs.error("[udp] remote_recv_recvfrom fragmentation")
            return
        self.rx += len(data)

        if ctx.af in (socket.AF_INET, socket.AF_INET6) or (
            ctx.af == socket.AF_UNSPEC and not ctx.addr_header
        ):
            try:
                header = construct_header(addr)
            except HeaderError:
                return
        else:
            header = ctx.addr_header

        try:
            packet = bytes(self.cipher.encrypt_all(header + data))
        except ValueError:
            return
        if len(packet) > self.packet_size:
            logs.error("[udp] remote_recv_sendto fragmentation")
            return
        try:
            self._sock.sendto(packet, ctx.src_addr)
        except OSError as exc:
            logs.error(f"[udp] remote_recv_sendto: {exc.strerror or exc}")
            return
        self._reset_timer(ctx)