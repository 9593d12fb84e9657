"""End-to-end tests: PySocks client -> ProxyServer -> loopback echo server."""

import asyncio
import ipaddress
import socket
import sys

import pytest

from networking.address_pool import AddressPool
from networking.exceptions import ProxyConfigurationError
from server.listener import ProxyServer, parse_listen_address
from server.router import ConnectionRouter

socks = pytest.importorskip("socks")


async def start_peer_reporting_server():
    """Echo server that first sends back the source address it saw."""

    async def handle(reader, writer):
        writer.write(writer.get_extra_info("peername")[0].encode() + b"\n")
        await writer.drain()
        while data := await reader.read(1024):
            writer.write(data)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


def socks_roundtrip(proxy_port: int, target_port: int, payload: bytes, host: str = "127.0.0.1"):
    sock = socks.socksocket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(5)
    sock.set_proxy(socks.SOCKS5, "127.0.0.1", proxy_port, rdns=True)
    try:
        sock.connect((host, target_port))
        stream = sock.makefile("rb")
        egress = stream.readline().strip().decode()
        sock.sendall(payload)
        echoed = stream.read(len(payload))
        stream.close()
        return egress, echoed
    finally:
        sock.close()


@pytest.mark.parametrize(
    "listen, expected",
    [
        (":1080", ("", 1080)),
        ("127.0.0.1:9050", ("127.0.0.1", 9050)),
        ("[::1]:1080", ("::1", 1080)),
        ("localhost:0", ("localhost", 0)),
    ],
)
def test_parse_listen_address(listen, expected):
    assert parse_listen_address(listen) == expected


@pytest.mark.parametrize("listen", ["1080", "host:port", "127.0.0.1:70000"])
def test_parse_listen_address_rejects_invalid(listen):
    with pytest.raises(ProxyConfigurationError):
        parse_listen_address(listen)


@pytest.mark.asyncio
async def test_default_egress_without_pool():
    target, target_port = await start_peer_reporting_server()
    router = ConnectionRouter.from_pool(None)

    async with target, ProxyServer("127.0.0.1:0", router) as proxy:
        egress, echoed = await asyncio.to_thread(
            socks_roundtrip, proxy.bound_address[1], target_port, b"payload"
        )

    assert egress == "127.0.0.1"
    assert echoed == b"payload"


@pytest.mark.asyncio
@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="needs all of 127.0.0.0/8 on loopback")
async def test_hash_strategy_egresses_from_sticky_pool_address():
    pool = AddressPool(["127.0.0.0/29"])
    expected = str(pool.select_by_key("127.0.0.1"))
    target, target_port = await start_peer_reporting_server()
    router = ConnectionRouter.from_pool(pool, "hash")

    async with target, ProxyServer("127.0.0.1:0", router) as proxy:
        port = proxy.bound_address[1]
        first = await asyncio.to_thread(socks_roundtrip, port, target_port, b"one", "localhost")
        second = await asyncio.to_thread(socks_roundtrip, port, target_port, b"two")

    assert first == (expected, b"one")
    assert second == (expected, b"two")
    assert ipaddress.ip_address(expected) in {pool.translate(i) for i in range(pool.total)}


@pytest.mark.asyncio
@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="needs all of 127.0.0.0/8 on loopback")
async def test_random_strategy_handles_concurrent_clients():
    pool = AddressPool(["127.0.0.0/29"])
    usable = {str(pool.translate(i)) for i in range(pool.total)}
    target, target_port = await start_peer_reporting_server()
    router = ConnectionRouter.from_pool(pool, "random")

    async with target, ProxyServer("127.0.0.1:0", router) as proxy:
        port = proxy.bound_address[1]
        results = await asyncio.gather(
            *(
                asyncio.to_thread(socks_roundtrip, port, target_port, f"client-{i}".encode())
                for i in range(12)
            )
        )

    assert all(egress in usable for egress, _ in results)
    assert [echoed for _, echoed in results] == [f"client-{i}".encode() for i in range(12)]


@pytest.mark.asyncio
async def test_accept_errors_do_not_stop_the_loop(monkeypatch):
    target, target_port = await start_peer_reporting_server()
    loop = asyncio.get_running_loop()
    original_accept = loop.sock_accept
    failures = []

    async def flaky_accept(sock):
        if not failures:
            failures.append(True)
            raise OSError(24, "Too many open files")
        return await original_accept(sock)

    monkeypatch.setattr(loop, "sock_accept", flaky_accept)

    async with target, ProxyServer("127.0.0.1:0", ConnectionRouter()) as proxy:
        egress, echoed = await asyncio.to_thread(
            socks_roundtrip, proxy.bound_address[1], target_port, b"still serving"
        )

    assert failures == [True]
    assert echoed == b"still serving"


@pytest.mark.asyncio
async def test_close_releases_socket():
    proxy = ProxyServer("127.0.0.1:0", ConnectionRouter())
    await proxy.start()
    proxy.start_serving()
    port = proxy.bound_address[1]

    await proxy.close()

    assert proxy.bound_address is None
    with pytest.raises(OSError):
        await asyncio.open_connection("127.0.0.1", port)
