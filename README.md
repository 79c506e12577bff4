# ssrserver

Building blocks of a ShadowsocksR-style relay in pure Python, using only the
standard library.

## Modules

| Module | Purpose |
| --- | --- |
| `ssrserver.logs` | Timestamped `INFO` / `ERROR` lines to stderr (coloured on a terminal), a log file or syslog. |
| `ssrserver.verify` | The `verify_simple` protocol: data split into CRC32-checked frames with random padding, through `VerifySimple`. |
| `ssrserver.udp_header` | SOCKS5 / shadowsocks UDP address headers: `parse_header`, `construct_header`, `get_addr_str`, `hash_key`, plus the `Stage` enum. |
| `ssrserver.udp_sockets` | Socket setup for the relay: `packet_size_for_mtu`, `set_nonblocking`, `create_server_socket`, `create_remote_socket`. |
| `ssrserver.udprelay` | `UdpRelay`, an asyncio UDP relay, with an LRU `ConnectionCache` of `RemoteContext` entries and a pass-through `PlainCipher`. |

## Logging

`logs.configure(ident=None, use_syslog=False, logfile=None, use_tty=None)`
chooses the destination. Syslog wins over a log file, which wins over
stderr. `logfile` may be a path (opened for writing and truncated) or an open
text stream; `use_tty=None` colours the output when stderr is a terminal.
`logs.info()` and `logs.error()` write a line; `logs.format_line(level,
message, when=None, color=False)` renders one without writing it and raises
`ValueError` for a level other than `INFO` or `ERROR`.

## verify_simple

Each frame is a 2-byte big-endian length, one padding-length byte (1 to 16),
the padding, up to 2000 bytes of payload and a 4-byte CRC32.
`client_pre_encrypt` and `server_pre_encrypt` frame outgoing data;
`client_post_decrypt` and `server_post_decrypt` buffer incoming bytes and
return the payload of every complete frame. At most 16384 bytes are buffered,
and a frame must be at least 7 and less than 8192 bytes long; anything else
raises `VerifyError`. The server side also logs the error. `fill_crc32` and
`check_crc32` are available on their own.

```python
from ssrserver.verify import VerifySimple

framed = VerifySimple().client_pre_encrypt(b"hello")
assert VerifySimple().server_post_decrypt(framed) == b"hello"
```

## UDP address headers

```python
from ssrserver.udp_header import construct_header, parse_header

header = parse_header(construct_header(("127.0.0.1", 53)) + b"payload")
assert (header.host, header.port, header.length) == ("127.0.0.1", 53, 7)
```

`parse_header` understands IPv4 (type 1), domain (type 3) and IPv6 (type 4)
headers, ignoring the one-time-auth flag bit, and raises `HeaderError` for an
empty, truncated or unknown header. A domain field holding an IP literal is
reported with that address's family, so `UdpHeader.dst_addr` is usable
directly; for a real domain name it is `None`.

## UDP relay

```python
import asyncio
from ssrserver.udprelay import UdpRelay

async def main():
    async with UdpRelay("127.0.0.1", 0, timeout=60) as relay:
        print("listening on", relay.address)
        await asyncio.sleep(3600)

asyncio.run(main())
```

* `start()` must be called with an event loop running; the listening socket
  is bound with `create_server_socket`. With no host, an IPv6 wildcard socket
  in dual-stack mode is preferred.
* Each client packet is decrypted, its header parsed and its payload sent
  from a per-client socket to the destination. Domain names are resolved
  with the loop's `getaddrinfo`. Replies are prefixed with the sender's
  address header, encrypted and sent back to the client.
* The packet size defaults to 1397 bytes; with an MTU given it is
  `mtu - 1 - 28 - 2 - 64`. Larger datagrams are dropped.
* At most 512 client associations are kept; idle ones are closed after the
  timeout, which is never less than 10 seconds. `tx` and `rx` count the bytes
  received from clients and from destinations; `verbose` turns on cache and
  timeout messages.
* `handle_client_packet` and `handle_remote_packet` can be called directly
  to feed the relay packets.
* `PlainCipher` passes data through unchanged. Any object with `encrypt_all`
  and `decrypt_all` can replace it; raising `ValueError` from either drops
  the packet.

## What this package does not do

* It has no command-line program: the relay is started from your own code.
* It has no real ciphers; encryption is whatever cipher object you supply.
* It has no TCP relay and no TLS-style obfuscation layer; `verify_simple` is
  the only framing protocol it provides.

## Tests

The test suite uses pytest and pytest-asyncio, both listed in the `test`
optional dependency group.