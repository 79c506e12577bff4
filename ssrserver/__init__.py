"""Building blocks of a ShadowsocksR-style UDP relay: logging, verify_simple framing, UDP headers and sockets."""

__version__ = "0.1.0"

__all__ = [
    "logs",
    "verify",
    "udp_header",
    "udp_sockets",
    "udprelay",
]