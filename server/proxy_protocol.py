"""
HAProxy PROXY protocol header parsing (v1 text and v2 binary).

A load balancer in front of the proxy prepends this header so the real client
address survives the extra hop. When the feature is enabled every connection
must start with a header; connections without one are rejected.
"""

from __future__ import annotations

import asyncio
import ipaddress
import struct
from dataclasses import dataclass
from typing import Optional

from networking.models import IPAddress

V1_PREFIX = b"PROXY "
V1_MAX_LENGTH = 107
V2_SIGNATURE = b"\r\n\r\n\x00\r\nQUIT\n"

_V2_HEADER = struct.Struct("!BBH")
_V2_COMMAND_LOCAL = 0x0
_V2_COMMAND_PROXY = 0x1
_V2_FAMILY_UNSPEC = 0x0
_V2_FAMILY_INET = 0x1
_V2_FAMILY_INET6 = 0x2
_V2_PROTO_STREAM = 0x1


class ProxyProtocolError(Exception):
    """Raised when a connection does not start with a valid PROXY header."""


@dataclass(slots=True)
class ProxyHeader:
    """
    Decoded PROXY protocol header.

    ``source`` is None when the header carries no address (``LOCAL`` or
    ``UNKNOWN``), in which case the socket's own peer address applies.
    ``stream`` is False when the proxied connection was not TCP.
    """

    version: int
    source: Optional[IPAddress] = None
    source_port: Optional[int] = None
    destination: Optional[IPAddress] = None
    destination_port: Optional[int] = None
    stream: bool = True


async def read_proxy_header(reader: asyncio.StreamReader) -> ProxyHeader:
    """Consume and decode the PROXY header at the start of ``reader``."""
    try:
        head = await reader.readexactly(len(V2_SIGNATURE))
    except asyncio.IncompleteReadError as exc:
        raise ProxyProtocolError("connection closed before PROXY header") from exc

    if head == V2_SIGNATURE:
        return await _read_v2(reader)
    if head.startswith(V1_PREFIX):
        return await _read_v1(reader, head)
    raise ProxyProtocolError("missing PROXY protocol header")


async def _read_v1(reader: asyncio.StreamReader, head: bytes) -> ProxyHeader:
    line = head
    while not line.endswith(b"\r\n"):
        if len(line) >= V1_MAX_LENGTH:
            raise ProxyProtocolError("PROXY v1 header too long")
        chunk = await reader.read(1)
        if not chunk:
            raise ProxyProtocolError("connection closed inside PROXY v1 header")
        line += chunk

    try:
        fields = line[:-2].decode("ascii").split(" ")
    except UnicodeDecodeError as exc:
        raise ProxyProtocolError("PROXY v1 header is not ASCII") from exc

    if len(fields) >= 2 and fields[1] == "UNKNOWN":
        return ProxyHeader(version=1)
    if len(fields) != 6 or fields[1] not in ("TCP4", "TCP6"):
        raise ProxyProtocolError(f"malformed PROXY v1 header: {line!r}")

    expected_version = 4 if fields[1] == "TCP4" else 6
    try:
        source = ipaddress.ip_address(fields[2])
        destination = ipaddress.ip_address(fields[3])
        source_port = int(fields[4])
        destination_port = int(fields[5])
    except ValueError as exc:
        raise ProxyProtocolError(f"malformed PROXY v1 header: {line!r}") from exc

    if source.version != expected_version or destination.version != expected_version:
        raise ProxyProtocolError(f"PROXY v1 address family mismatch: {line!r}")
    if not (0 <= source_port <= 0xFFFF and 0 <= destination_port <= 0xFFFF):
        raise ProxyProtocolError(f"PROXY v1 port out of range: {line!r}")

    return ProxyHeader(
        version=1,
        source=source,
        source_port=source_port,
        destination=destination,
        destination_port=destination_port,
    )


async def _read_v2(reader: asyncio.StreamReader) -> ProxyHeader:
    try:
        ver_cmd, fam_proto, length = _V2_HEADER.unpack(await reader.readexactly(_V2_HEADER.size))
        payload = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise ProxyProtocolError("connection closed inside PROXY v2 header") from exc

    if ver_cmd >> 4 != 2:
        raise ProxyProtocolError(f"unsupported PROXY v2 version byte: {ver_cmd:#x}")

    command = ver_cmd & 0x0F
    if command == _V2_COMMAND_LOCAL:
        return ProxyHeader(version=2)
    if command != _V2_COMMAND_PROXY:
        raise ProxyProtocolError(f"unsupported PROXY v2 command: {command:#x}")

    family = fam_proto >> 4
    protocol = fam_proto & 0x0F
    if family == _V2_FAMILY_UNSPEC:
        return ProxyHeader(version=2)
    if protocol != _V2_PROTO_STREAM or family not in (_V2_FAMILY_INET, _V2_FAMILY_INET6):
        # UDP or UNIX: there is no TCP client address to key on
        return ProxyHeader(version=2, stream=False)

    width = 4 if family == _V2_FAMILY_INET else 16
    if len(payload) < 2 * width + 4:
        raise ProxyProtocolError("PROXY v2 address block truncated")

    source = ipaddress.ip_address(payload[:width])
    destination = ipaddress.ip_address(payload[width:2 * width])
    source_port, destination_port = struct.unpack("!HH", payload[2 * width:2 * width + 4])
    return ProxyHeader(
        version=2,
        source=source,
        source_port=source_port,
        destination=destination,
        destination_port=destination_port,
    )


__all__ = ["ProxyHeader", "ProxyProtocolError", "V2_SIGNATURE", "read_proxy_header"]
