"""SOCKS5 engine tests against real loopback sockets."""

import asyncio
import ipaddress
import socket
import struct

import pytest

from server.router import build_dialer, build_resolver
from server.socks5 import (
    REP_ADDRESS_TYPE_NOT_SUPPORTED,
    REP_COMMAND_NOT_SUPPORTED,
    REP_CONNECTION_REFUSED,
    REP_HOST_UNREACHABLE,
    REP_SUCCEEDED,
    Socks5Engine,
    Socks5Error,
    encode_reply,
    reply_code_for,
)

LOOPBACK = ipaddress.ip_address("127.0.0.1")


async def start_echo_server():
    async def echo(reader, writer):
        while data := await reader.read(1024):
            writer.write(data)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(echo, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


async def start_socks_front(local_ip=LOOPBACK):
    errors = []
    engine = Socks5Engine()

    async def handle(reader, writer):
        family = socket.AF_INET if local_ip.version == 4 else socket.AF_INET6
        try:
            await engine.serve(reader, writer, build_dialer(local_ip), build_resolver(family))
        except Socks5Error as exc:
            errors.append(exc)
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1], errors


def closed_port() -> int:
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def socks_connect(port, request: bytes):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"\x05\x01\x00")
    await writer.drain()
    assert await reader.readexactly(2) == b"\x05\x00"
    writer.write(request)
    await writer.drain()
    reply = await reader.readexactly(10)
    return reader, writer, reply


def connect_ipv4(address: str, port: int) -> bytes:
    return b"\x05\x01\x00\x01" + ipaddress.ip_address(address).packed + struct.pack("!H", port)


def connect_domain(name: str, port: int) -> bytes:
    encoded = name.encode()
    return b"\x05\x01\x00\x03" + bytes([len(encoded)]) + encoded + struct.pack("!H", port)


@pytest.mark.asyncio
async def test_connect_ipv4_and_relay():
    echo, echo_port = await start_echo_server()
    front, front_port, errors = await start_socks_front()
    async with echo, front:
        reader, writer, reply = await socks_connect(front_port, connect_ipv4("127.0.0.1", echo_port))

        assert reply[:4] == bytes([0x05, REP_SUCCEEDED, 0x00, 0x01])
        assert reply[4:8] == LOOPBACK.packed

        writer.write(b"hello through the pool")
        await writer.drain()
        assert await reader.readexactly(22) == b"hello through the pool"

        writer.write_eof()
        assert await reader.read() == b""
        writer.close()

    assert errors == []


@pytest.mark.asyncio
async def test_connect_domain_resolved_in_local_family():
    echo, echo_port = await start_echo_server()
    front, front_port, errors = await start_socks_front()
    async with echo, front:
        reader, writer, reply = await socks_connect(front_port, connect_domain("localhost", echo_port))
        assert reply[1] == REP_SUCCEEDED

        writer.write(b"ping")
        await writer.drain()
        assert await reader.readexactly(4) == b"ping"
        writer.close()


@pytest.mark.asyncio
async def test_no_acceptable_auth_method():
    front, front_port, errors = await start_socks_front()
    async with front:
        reader, writer = await asyncio.open_connection("127.0.0.1", front_port)
        writer.write(b"\x05\x01\x02")  # username/password only
        await writer.drain()
        assert await reader.readexactly(2) == b"\x05\xff"
        writer.close()
        await asyncio.sleep(0.05)

    assert len(errors) == 1


@pytest.mark.asyncio
async def test_bind_command_not_supported():
    front, front_port, errors = await start_socks_front()
    async with front:
        request = b"\x05\x02\x00\x01" + LOOPBACK.packed + struct.pack("!H", 80)
        _, writer, reply = await socks_connect(front_port, request)
        assert reply[1] == REP_COMMAND_NOT_SUPPORTED
        writer.close()
        await asyncio.sleep(0.05)

    assert "unsupported command" in str(errors[0])


@pytest.mark.asyncio
async def test_refused_destination_reports_connection_refused():
    front, front_port, errors = await start_socks_front()
    async with front:
        _, writer, reply = await socks_connect(front_port, connect_ipv4("127.0.0.1", closed_port()))
        assert reply[1] == REP_CONNECTION_REFUSED
        writer.close()
        await asyncio.sleep(0.05)

    assert "failed" in str(errors[0])


@pytest.mark.asyncio
async def test_family_mismatch_is_refused_before_dialing():
    front, front_port, errors = await start_socks_front()
    async with front:
        request = b"\x05\x01\x00\x04" + ipaddress.ip_address("::1").packed + struct.pack("!H", 80)
        _, writer, reply = await socks_connect(front_port, request)
        assert reply[1] == REP_ADDRESS_TYPE_NOT_SUPPORTED
        writer.close()


@pytest.mark.asyncio
async def test_undecodable_domain_gets_host_unreachable_reply():
    front, front_port, errors = await start_socks_front()
    async with front:
        encoded = "bücher.example".encode("utf-8")
        request = b"\x05\x01\x00\x03" + bytes([len(encoded)]) + encoded + struct.pack("!H", 80)
        _, writer, reply = await socks_connect(front_port, request)
        assert reply[1] == REP_HOST_UNREACHABLE
        writer.close()
        await asyncio.sleep(0.05)

    assert len(errors) == 1
    assert "invalid domain name" in str(errors[0])


def test_encode_reply_defaults_to_zero_address():
    assert encode_reply(0x01) == b"\x05\x01\x00\x01\x00\x00\x00\x00\x00\x00"
    assert encode_reply(0x00, ("::1", 1080, 0, 0))[3] == 0x04


def test_reply_code_mapping():
    assert reply_code_for(ConnectionRefusedError()) == REP_CONNECTION_REFUSED
    assert reply_code_for(socket.gaierror()) == 0x04
    assert reply_code_for(asyncio.TimeoutError()) == 0x06
    assert reply_code_for(ValueError()) == 0x01
