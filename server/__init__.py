"""
SOCKS5 front end: listener, per-connection router and protocol engine.
"""

from .config import Settings, load_settings
from .listener import ProxyServer, parse_listen_address
from .proxy_protocol import ProxyHeader, ProxyProtocolError, read_proxy_header
from .router import ConnectionRouter, build_dialer, build_resolver
from .socks5 import Socks5Engine, Socks5Error

__all__ = [
    "ConnectionRouter",
    "ProxyHeader",
    "ProxyProtocolError",
    "ProxyServer",
    "Settings",
    "Socks5Engine",
    "Socks5Error",
    "build_dialer",
    "build_resolver",
    "load_settings",
    "parse_listen_address",
    "read_proxy_header",
]
