"""
Per-connection routing: who is the client, which local address do they egress
from, and how the outbound dial and name resolution are constrained.
"""

from __future__ import annotations

import asyncio
import errno
import ipaddress
import socket
from typing import Optional, Union

from helpers.unified_logger import get_service_logger
from networking.address_pool import AddressPool
from networking.models import IPAddress
from networking.selector import AddressSelector, SelectionStrategy, build_selector

from .proxy_protocol import ProxyProtocolError, read_proxy_header
from .socks5 import Dialer, Resolver, Socks5Engine, Socks5Error

logger = get_service_logger("router")


def address_family(ip: IPAddress) -> socket.AddressFamily:
    return socket.AF_INET if ip.version == 4 else socket.AF_INET6


def _normalise_ip(text: str) -> IPAddress:
    ip = ipaddress.ip_address(text.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def peer_ip(writer: asyncio.StreamWriter) -> Optional[IPAddress]:
    """
    Client IP of a stream connection, or None when the peer is not an
    IP stream endpoint (e.g. a UNIX socket).
    """
    peer = writer.get_extra_info("peername")
    if not isinstance(peer, tuple) or len(peer) < 2:
        return None
    try:
        return _normalise_ip(str(peer[0]))
    except ValueError:
        return None


def build_dialer(local_ip: Optional[IPAddress] = None) -> Dialer:
    """
    Dial function for the protocol engine.

    With ``local_ip`` set, every connection is bound to that source address
    and restricted to its address family.
    """
    if local_ip is None:
        async def dial_default(host: str, port: int):
            return await asyncio.open_connection(host, port)

        return dial_default

    family = address_family(local_ip)
    local_addr = (str(local_ip), 0)

    async def dial(host: str, port: int):
        try:
            destination = ipaddress.ip_address(host)
        except ValueError:
            destination = None
        if destination is not None and destination.version != local_ip.version:
            raise OSError(
                errno.EAFNOSUPPORT,
                f"cannot reach IPv{destination.version} {host} from IPv{local_ip.version} {local_ip}",
            )
        return await asyncio.open_connection(host, port, family=family, local_addr=local_addr)

    return dial


def build_resolver(family: socket.AddressFamily = socket.AF_UNSPEC) -> Resolver:
    """Name resolution returning only addresses of ``family`` (any when AF_UNSPEC)."""

    async def resolve(host: str) -> IPAddress:
        try:
            literal = ipaddress.ip_address(host)
        except ValueError:
            literal = None
        if literal is not None:
            if family != socket.AF_UNSPEC and address_family(literal) != family:
                raise socket.gaierror(socket.EAI_FAMILY, f"{host} does not match {family.name}")
            return literal

        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(host, None, family=family, type=socket.SOCK_STREAM)
        for info_family, _, _, _, sockaddr in infos:
            if family == socket.AF_UNSPEC or info_family == family:
                return ipaddress.ip_address(sockaddr[0].split("%", 1)[0])
        raise socket.gaierror(socket.EAI_NONAME, f"no {family.name} address for {host}")

    return resolve


class ConnectionRouter:
    """
    Decides how each accepted connection egresses and hands it to the engine.

    Without a selector the platform's default outbound address and resolver
    are used.
    """

    def __init__(
        self,
        selector: Optional[AddressSelector] = None,
        *,
        proxy_protocol: bool = False,
        engine: Optional[Socks5Engine] = None,
    ) -> None:
        self._selector = selector
        self._proxy_protocol = proxy_protocol
        self._engine = engine or Socks5Engine()

    @classmethod
    def from_pool(
        cls,
        pool: Optional[AddressPool],
        strategy: Union[str, SelectionStrategy] = SelectionStrategy.HASH,
        **kwargs,
    ) -> "ConnectionRouter":
        selector = build_selector(pool, strategy) if pool is not None else None
        return cls(selector, **kwargs)

    @property
    def selector(self) -> Optional[AddressSelector]:
        return self._selector

    async def client_address(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> Optional[IPAddress]:
        """
        Resolve the client's IP, consuming the PROXY header when enabled.

        Returns None for peers that are not IP stream endpoints.
        """
        if self._proxy_protocol:
            header = await read_proxy_header(reader)
            if not header.stream:
                return None
            if header.source is not None:
                return _normalise_ip(str(header.source))
        return peer_ip(writer)

    def select_local_address(self, client_ip: IPAddress) -> Optional[IPAddress]:
        if self._selector is None:
            return None
        return self._selector.select(client_ip)

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Serve one accepted connection; failures only drop this connection."""
        try:
            try:
                client_ip = await self.client_address(reader, writer)
            except ProxyProtocolError as exc:
                logger.warning(f"Dropping connection from {writer.get_extra_info('peername')}: {exc}")
                return

            if client_ip is None:
                logger.info(f"Non-TCP connection from {writer.get_extra_info('peername')}, skipping")
                return

            local_ip = self.select_local_address(client_ip)
            if local_ip is not None:
                logger.info(f"{client_ip} --({local_ip})-> outbound")
                dial = build_dialer(local_ip)
                resolve = build_resolver(address_family(local_ip))
            else:
                logger.info(f"{client_ip} --(default)-> outbound")
                dial = build_dialer()
                resolve = build_resolver()

            await self._engine.serve(reader, writer, dial, resolve)
        except Socks5Error as exc:
            logger.warning(f"SOCKS5 session error: {exc}")
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug(f"Connection closed: {exc}")
        except Exception as exc:
            logger.exception(f"ServeConn error: {exc}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass


__all__ = [
    "ConnectionRouter",
    "address_family",
    "build_dialer",
    "build_resolver",
    "peer_ip",
]
