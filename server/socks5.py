"""
Minimal SOCKS5 server engine (RFC 1928).

Supports the no-authentication method and the CONNECT command. The outbound
side is fully delegated to the ``dial`` and ``resolve`` callables supplied for
each connection, so the engine never decides which local address is used.
"""

from __future__ import annotations

import asyncio
import errno
import ipaddress
import socket
import struct
from typing import Awaitable, Callable, Optional, Tuple

from networking.models import IPAddress

SOCKS_VERSION = 0x05

METHOD_NO_AUTH = 0x00
METHOD_NO_ACCEPTABLE = 0xFF

CMD_CONNECT = 0x01

ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

REP_SUCCEEDED = 0x00
REP_GENERAL_FAILURE = 0x01
REP_NETWORK_UNREACHABLE = 0x03
REP_HOST_UNREACHABLE = 0x04
REP_CONNECTION_REFUSED = 0x05
REP_TTL_EXPIRED = 0x06
REP_COMMAND_NOT_SUPPORTED = 0x07
REP_ADDRESS_TYPE_NOT_SUPPORTED = 0x08

RELAY_CHUNK_SIZE = 32 * 1024

Streams = Tuple[asyncio.StreamReader, asyncio.StreamWriter]
Dialer = Callable[[str, int], Awaitable[Streams]]
Resolver = Callable[[str], Awaitable[IPAddress]]


class Socks5Error(Exception):
    """Raised when a SOCKS5 session cannot be completed."""


def reply_code_for(exc: BaseException) -> int:
    """Translate an outbound dial failure into a SOCKS5 reply code."""
    if isinstance(exc, ConnectionRefusedError):
        return REP_CONNECTION_REFUSED
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return REP_TTL_EXPIRED
    if isinstance(exc, socket.gaierror):
        return REP_HOST_UNREACHABLE
    if isinstance(exc, OSError):
        if exc.errno == errno.ENETUNREACH:
            return REP_NETWORK_UNREACHABLE
        if exc.errno == errno.EAFNOSUPPORT:
            return REP_ADDRESS_TYPE_NOT_SUPPORTED
        return REP_HOST_UNREACHABLE
    return REP_GENERAL_FAILURE


def encode_reply(code: int, bound: Optional[tuple] = None) -> bytes:
    """Build a reply carrying ``bound`` (a socket name) or the zero address."""
    address = ipaddress.IPv4Address(0)
    port = 0
    if bound:
        address = ipaddress.ip_address(bound[0].split("%", 1)[0])
        port = bound[1]

    atyp = ATYP_IPV4 if address.version == 4 else ATYP_IPV6
    return bytes([SOCKS_VERSION, code, 0x00, atyp]) + address.packed + struct.pack("!H", port)


class Socks5Engine:
    """Serve one SOCKS5 session over an accepted client stream."""

    def __init__(self, *, chunk_size: int = RELAY_CHUNK_SIZE) -> None:
        self._chunk_size = chunk_size

    async def serve(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        dial: Dialer,
        resolve: Resolver,
    ) -> None:
        """
        Run the handshake, connect onward and relay until both sides finish.

        Raises:
            Socks5Error: On protocol violations or when the outbound dial fails.
        """
        try:
            await self._negotiate_method(reader, writer)
            host, port = await self._read_request(reader, writer)
        except asyncio.IncompleteReadError as exc:
            raise Socks5Error("client closed connection during handshake") from exc

        try:
            address = await self._resolve_destination(host, resolve)
            target_reader, target_writer = await dial(str(address), port)
        except Exception as exc:
            await self._send_reply(writer, reply_code_for(exc))
            raise Socks5Error(f"connect to {host}:{port} failed: {exc}") from exc

        try:
            await self._send_reply(writer, REP_SUCCEEDED, target_writer.get_extra_info("sockname"))
            await self._relay(reader, writer, target_reader, target_writer)
        finally:
            target_writer.close()
            try:
                await target_writer.wait_closed()
            except OSError:
                pass

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def _negotiate_method(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        version, count = await reader.readexactly(2)
        if version != SOCKS_VERSION:
            raise Socks5Error(f"unsupported SOCKS version: {version}")

        methods = await reader.readexactly(count)
        if METHOD_NO_AUTH not in methods:
            writer.write(bytes([SOCKS_VERSION, METHOD_NO_ACCEPTABLE]))
            await writer.drain()
            raise Socks5Error("client offered no acceptable authentication method")

        writer.write(bytes([SOCKS_VERSION, METHOD_NO_AUTH]))
        await writer.drain()

    async def _read_request(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> Tuple[str, int]:
        version, command, _, atyp = await reader.readexactly(4)
        if version != SOCKS_VERSION:
            raise Socks5Error(f"unsupported SOCKS version in request: {version}")

        if atyp == ATYP_IPV4:
            host = str(ipaddress.IPv4Address(await reader.readexactly(4)))
        elif atyp == ATYP_IPV6:
            host = str(ipaddress.IPv6Address(await reader.readexactly(16)))
        elif atyp == ATYP_DOMAIN:
            length = (await reader.readexactly(1))[0]
            raw_host = await reader.readexactly(length)
            try:
                host = raw_host.decode("idna")
            except UnicodeError as exc:
                await self._send_reply(writer, REP_HOST_UNREACHABLE)
                raise Socks5Error(f"invalid domain name in request: {raw_host!r}") from exc
        else:
            await self._send_reply(writer, REP_ADDRESS_TYPE_NOT_SUPPORTED)
            raise Socks5Error(f"unsupported address type: {atyp}")

        (port,) = struct.unpack("!H", await reader.readexactly(2))

        if command != CMD_CONNECT:
            await self._send_reply(writer, REP_COMMAND_NOT_SUPPORTED)
            raise Socks5Error(f"unsupported command: {command}")

        return host, port

    @staticmethod
    async def _resolve_destination(host: str, resolve: Resolver) -> IPAddress:
        try:
            return ipaddress.ip_address(host)
        except ValueError:
            return await resolve(host)

    @staticmethod
    async def _send_reply(writer: asyncio.StreamWriter, code: int, bound: Optional[tuple] = None) -> None:
        writer.write(encode_reply(code, bound))
        await writer.drain()

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------

    async def _relay(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        target_reader: asyncio.StreamReader,
        target_writer: asyncio.StreamWriter,
    ) -> None:
        await asyncio.gather(
            self._pipe(client_reader, target_writer),
            self._pipe(target_reader, client_writer),
        )

    async def _pipe(self, src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
        try:
            while True:
                data = await src.read(self._chunk_size)
                if not data:
                    break
                dst.write(data)
                await dst.drain()
        except (ConnectionResetError, BrokenPipeError):
            # Tear down the peer so the opposite pipe sees EOF too
            dst.close()
            return

        if dst.can_write_eof() and not dst.is_closing():
            try:
                dst.write_eof()
            except OSError:
                pass


__all__ = [
    "Dialer",
    "Resolver",
    "Socks5Engine",
    "Socks5Error",
    "encode_reply",
    "reply_code_for",
]
