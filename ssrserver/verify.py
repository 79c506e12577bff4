"""The verify_simple protocol: CRC-protected frames with random padding."""

from __future__ import annotations

import os
import random
import zlib
from collections.abc import Callable

from . import logs

PACK_UNIT_SIZE = 2000
RECV_BUFFER_LIMIT = 16384
MAX_FRAME = 8192
MIN_FRAME = 7
_CRC_OK = 0xFFFFFFFF


class VerifyError(Exception):
    """Raised when a verify_simple stream is malformed."""


def fill_crc32(data):
    """Return data with its last four bytes replaced by the frame checksum."""
    data = bytes(data)
    if len(data) < 4:
        raise ValueError("data must have room for a 4-byte checksum")
    body = data[:-4]
    crc = (~zlib.crc32(body)) & 0xFFFFFFFF
    return body + crc.to_bytes(4, "little")


def check_crc32(data):
    """True when a frame's trailing checksum matches its contents."""
    return zlib.crc32(bytes(data)) == _CRC_OK


def _default_rng() -> int:
    return random.getrandbits(64)


class VerifySimple:
    """Per-connection state of verify_simple: a bounded receive buffer."""

    def __init__(self, rng=None):
        self._rng: Callable[[], int] = rng or _default_rng
        self._recv = bytearray()

    def pack_data(self, data):
        """Frame one chunk: length, padding length, padding, data, CRC32."""
        data = bytes(data)
        rand_len = (self._rng() & 0xF) + 1
        out_size = rand_len + len(data) + 6
        frame = (
            out_size.to_bytes(2, "big")
            + bytes([rand_len])
            + os.urandom(rand_len - 1)
            + data
            + b"\x00\x00\x00\x00"
        )
        return fill_crc32(frame)

    def _encode(self, data: bytes) -> bytes:
        view = memoryview(bytes(data))
        return b"".join(
            self.pack_data(view[start:start + PACK_UNIT_SIZE])
            for start in range(0, len(view), PACK_UNIT_SIZE)
        )

    def _fail(self, message: str, log: bool) -> VerifyError:
        self._recv.clear()
        if log:
            logs.error(message)
        return VerifyError(message)

    def _decode(self, data: bytes, log: bool) -> bytes:
        data = bytes(data)
        if len(self._recv) + len(data) > RECV_BUFFER_LIMIT:
            message = f"verify_simple: wrong buf length {len(self._recv) + len(data)}"
            if log:
                logs.error(message)
            raise VerifyError(message)
        self._recv += data

        out = bytearray()
        while len(self._recv) > 2:
            length = int.from_bytes(self._recv[:2], "big")
            if length >= MAX_FRAME or length < MIN_FRAME:
                raise self._fail(f"verify_simple: wrong length {length}", log)
            if length > len(self._recv):
                break
            frame = bytes(self._recv[:length])
            if not check_crc32(frame):
                raise self._fail("verify_simple: wrong crc", log)
            pad = frame[2]
            out += frame[2 + pad:length - 4]
            del self._recv[:length]
        return bytes(out)

    def client_pre_encrypt(self, data):
        """Frame outgoing client data in chunks of at most 2000 bytes."""
        return self._encode(data)

    def client_post_decrypt(self, data):
        """Feed received bytes; return the payload of every complete frame."""
        return self._decode(data, log=False)

    def server_pre_encrypt(self, data):
        """Frame outgoing server data in chunks of at most 2000 bytes."""
        return self._encode(data)

    def server_post_decrypt(self, data):
        """Feed received bytes; return the payload of every complete frame."""
        return self._decode(data, log=True)