import asyncio
import socket

import pytest

from ssrserver.udp_header import construct_header, hash_key
from ssrserver.udp_sockets import packet_size_for_mtu
from ssrserver.udprelay import (
    MIN_UDP_TIMEOUT,
    ConnectionCache,
    PlainCipher,
    RemoteContext,
    UdpRelay,
)


def _udp_peer():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(3)
    return sock


async def _recv(sock):
    return await asyncio.to_thread(sock.recvfrom, 65535)


class _Rejecting:
    def encrypt_all(self, data):
        raise ValueError("bad")

    def decrypt_all(self, data):
        raise ValueError("bad")


def test_plain_cipher_round_trip():
    cipher = PlainCipher()
    data = b"\x01\x02payload"
    assert cipher.decrypt_all(cipher.encrypt_all(data)) == data


def test_cache_evicts_oldest_beyond_maxsize():
    evicted = []
    cache = ConnectionCache(2, lambda k, v: evicted.append((k, v)))
    cache.insert("a", 1)
    cache.insert("b", 2)
    cache.insert("c", 3)
    assert evicted == [("a", 1)]
    assert len(cache) == 2
    assert cache.lookup("a") is None


def test_cache_lookup_refreshes_entry():
    evicted = []
    cache = ConnectionCache(2, lambda k, v: evicted.append(k))
    cache.insert("a", 1)
    cache.insert("b", 2)
    assert cache.lookup("a") == 1
    cache.insert("c", 3)
    assert evicted == ["b"]
    assert "a" in cache


def test_cache_remove_and_clear_call_evict():
    evicted = []
    cache = ConnectionCache(5, lambda k, v: evicted.append(k))
    cache.insert("a", 1)
    cache.insert("b", 2)
    cache.insert("c", 3)
    assert cache.remove("b") == 2
    assert cache.remove("missing") is None
    cache.clear()
    assert evicted == ["b", "a", "c"]
    assert len(cache) == 0


def test_cache_rejects_non_positive_size():
    with pytest.raises(ValueError):
        ConnectionCache(0)


def test_timeout_is_clamped():
    assert UdpRelay("127.0.0.1", 0, timeout=1).timeout == MIN_UDP_TIMEOUT
    assert UdpRelay("127.0.0.1", 0, timeout=30).timeout == 30


def test_packet_size_follows_mtu():
    relay = UdpRelay("127.0.0.1", 0, mtu=200)
    assert relay.packet_size == packet_size_for_mtu(200)
    assert relay.buf_size == relay.packet_size * 2


def test_handle_client_packet_requires_start():
    relay = UdpRelay("127.0.0.1", 0)
    with pytest.raises(RuntimeError):
        relay.handle_client_packet(b"\x01\x7f\x00\x00\x01\x00\x35x", ("127.0.0.1", 1))


def test_remote_packet_without_server_closes_context():
    relay = UdpRelay("127.0.0.1", 0)
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    ctx = RemoteContext(sock=sock, src_addr=("127.0.0.1", 1), addr_header=b"")
    relay.handle_remote_packet(ctx, b"data", ("127.0.0.1", 2))
    assert sock.fileno() == -1


@pytest.mark.asyncio
async def test_round_trip_through_relay():
    echo = _udp_peer()
    client = _udp_peer()
    try:
        async with UdpRelay("127.0.0.1", 0) as relay:
            header = construct_header(echo.getsockname())
            packet = header + b"hello"
            client.sendto(packet, relay.address)

            data, remote_addr = await _recv(echo)
            assert data == b"hello"

            echo.sendto(b"world", remote_addr)
            reply, from_addr = await _recv(client)
            assert reply == header + b"world"
            assert from_addr == relay.address
            assert relay.tx == len(packet)
            assert relay.rx == len(b"world")
    finally:
        echo.close()
        client.close()


@pytest.mark.asyncio
async def test_same_client_reuses_remote_socket():
    echo = _udp_peer()
    client = _udp_peer()
    try:
        async with UdpRelay("127.0.0.1", 0) as relay:
            header = construct_header(echo.getsockname())
            client.sendto(header + b"one", relay.address)
            first, addr1 = await _recv(echo)
            client.sendto(header + b"two", relay.address)
            second, addr2 = await _recv(echo)
            assert (first, second) == (b"one", b"two")
            assert addr1 == addr2
            assert len(relay.cache) == 1
    finally:
        echo.close()
        client.close()


@pytest.mark.asyncio
async def test_close_frees_contexts():
    echo = _udp_peer()
    client = _udp_peer()
    try:
        relay = UdpRelay("127.0.0.1", 0).start()
        client.sendto(construct_header(echo.getsockname()) + b"ping", relay.address)
        await _recv(echo)
        ctx = relay.cache.lookup(hash_key(socket.AF_INET, client.getsockname()))
        assert ctx.dst_addr == echo.getsockname()
        relay.close()
        assert len(relay.cache) == 0
        assert ctx.sock.fileno() == -1
        with pytest.raises(RuntimeError):
            relay.address
    finally:
        echo.close()
        client.close()


@pytest.mark.asyncio
async def test_bad_header_is_dropped():
    async with UdpRelay("127.0.0.1", 0) as relay:
        relay.handle_client_packet(b"\x09abc", ("127.0.0.1", 9))
        assert len(relay.cache) == 0
        assert relay.tx == 4


@pytest.mark.asyncio
async def test_cipher_failure_drops_packet():
    async with UdpRelay("127.0.0.1", 0, cipher=_Rejecting()) as relay:
        relay.handle_client_packet(construct_header(("127.0.0.1", 9)) + b"x", ("127.0.0.1", 9))
        assert len(relay.cache) == 0


@pytest.mark.asyncio
async def test_oversized_packet_is_dropped():
    async with UdpRelay("127.0.0.1", 0, mtu=200) as relay:
        big = construct_header(("127.0.0.1", 9)) + b"x" * (relay.packet_size + 1)
        relay.handle_client_packet(big, ("127.0.0.1", 9))
        assert len(relay.cache) == 0
        assert relay.tx == 0


@pytest.mark.asyncio
async def test_start_twice_fails():
    async with UdpRelay("127.0.0.1", 0) as relay:
        with pytest.raises(RuntimeError):
            relay.start()