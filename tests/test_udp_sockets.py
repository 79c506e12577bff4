import os
import socket

import pytest

from ssrserver import logs
from ssrserver.udp_sockets import (
    DEFAULT_PACKET_SIZE,
    SocketSetupError,
    create_remote_socket,
    create_server_socket,
    packet_size_for_mtu,
    set_nonblocking,
)


@pytest.fixture(autouse=True)
def _quiet_logs(tmp_path):
    logs.configure(logfile=tmp_path / "log.txt", use_tty=False)
    yield
    logs.configure(use_tty=False)


def test_default_mtu_gives_documented_packet_size():
    assert packet_size_for_mtu(1492) == 1397


@pytest.mark.parametrize("mtu", [0, -1])
def test_non_positive_mtu_uses_default(mtu):
    assert packet_size_for_mtu(mtu) == DEFAULT_PACKET_SIZE


def test_packet_size_grows_with_mtu():
    assert packet_size_for_mtu(1501) - packet_size_for_mtu(1500) == 1


def test_tiny_mtu_rejected():
    with pytest.raises(ValueError):
        packet_size_for_mtu(50)


def test_remote_socket_ipv4_bound_to_ephemeral_port():
    sock = create_remote_socket(False)
    try:
        assert sock.family == socket.AF_INET
        assert sock.type == socket.SOCK_DGRAM
        host, port = sock.getsockname()
        assert host == "0.0.0.0"
        assert port > 0
    finally:
        sock.close()


def test_server_socket_binds_requested_address():
    sock = create_server_socket("127.0.0.1", 0)
    try:
        assert sock.family == socket.AF_INET
        assert sock.getsockname()[0] == "127.0.0.1"
        assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR) != 0
    finally:
        sock.close()


def test_server_and_remote_sockets_exchange_datagram():
    server = create_server_socket("127.0.0.1", "0")
    remote = create_remote_socket(False)
    try:
        server.settimeout(2)
        remote.sendto(b"ping", server.getsockname())
        data, addr = server.recvfrom(64)
        assert data == b"ping"
        assert addr[1] == remote.getsockname()[1]
    finally:
        server.close()
        remote.close()


def test_server_socket_bad_port_raises():
    with pytest.raises(SocketSetupError):
        create_server_socket("127.0.0.1", "notaport")


def test_server_socket_port_in_use_raises():
    holder = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    holder.bind(("127.0.0.1", 0))
    try:
        port = holder.getsockname()[1]
        with pytest.raises(SocketSetupError):
            create_server_socket("127.0.0.1", port)
    finally:
        holder.close()


def test_set_nonblocking_socket_object():
    sock = create_remote_socket(False)
    try:
        set_nonblocking(sock)
        assert sock.getblocking() is False
        with pytest.raises(BlockingIOError):
            sock.recvfrom(16)
    finally:
        sock.close()


def test_set_nonblocking_file_descriptor():
    read_fd, write_fd = os.pipe()
    try:
        set_nonblocking(read_fd)
        assert os.get_blocking(read_fd) is False
        assert os.get_blocking(write_fd) is True
    finally:
        os.close(read_fd)
        os.close(write_fd)