"""
Listener and accept loop for the SOCKS5 proxy.

The accept loop runs sequentially; each accepted connection is handed to its
own task with no admission control. Accept failures are logged and never stop
the server.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
from typing import Optional, Set, Tuple

from helpers.unified_logger import get_service_logger
from networking.exceptions import ProxyConfigurationError

from .router import ConnectionRouter

logger = get_service_logger("listener")

ACCEPT_ERROR_DELAY = 0.05


def parse_listen_address(listen: str) -> Tuple[str, int]:
    """
    Split ``host:port`` into its parts.

    ``:1080`` means every interface; IPv6 hosts are written in brackets
    (``[::1]:1080``).
    """
    host, sep, port_text = listen.strip().rpartition(":")
    if not sep:
        raise ProxyConfigurationError(f"Invalid listen address (expected host:port): {listen!r}")

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError:
        raise ProxyConfigurationError(f"Invalid listen port: {listen!r}") from None
    if not 0 <= port <= 0xFFFF:
        raise ProxyConfigurationError(f"Listen port out of range: {listen!r}")
    return host, port


def create_listen_socket(host: str, port: int, *, backlog: int = 128) -> socket.socket:
    """Bind a non-blocking listening socket (dual-stack when host is empty)."""
    if not host:
        if socket.has_dualstack_ipv6():
            sock = socket.create_server(
                ("", port), family=socket.AF_INET6, backlog=backlog, dualstack_ipv6=True
            )
        else:
            sock = socket.create_server(("", port), family=socket.AF_INET, backlog=backlog)
    else:
        family, _, _, _, sockaddr = socket.getaddrinfo(
            host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )[0]
        sock = socket.create_server(sockaddr, family=family, backlog=backlog)

    sock.setblocking(False)
    return sock


class ProxyServer:
    """Accepts client connections and dispatches them to the router."""

    def __init__(self, listen: str, router: ConnectionRouter, *, backlog: int = 128) -> None:
        self.listen = listen
        self._router = router
        self._backlog = backlog
        self._sock: Optional[socket.socket] = None
        self._accept_task: Optional[asyncio.Task] = None
        self._connections: Set[asyncio.Task] = set()

    @property
    def bound_address(self) -> Optional[Tuple[str, int]]:
        if self._sock is None:
            return None
        name = self._sock.getsockname()
        return name[0], name[1]

    async def start(self) -> None:
        """Bind the listening socket."""
        if self._sock is not None:
            return
        host, port = parse_listen_address(self.listen)
        self._sock = create_listen_socket(host, port, backlog=self._backlog)
        logger.info(f"Starting socks5 server on {self.listen} (bound {self.bound_address})")

    def start_serving(self) -> asyncio.Task:
        """Run the accept loop in the background."""
        if self._accept_task is None or self._accept_task.done():
            self._accept_task = asyncio.create_task(self.serve_forever(), name="subnetproxy-accept")
        return self._accept_task

    async def serve_forever(self) -> None:
        await self.start()
        loop = asyncio.get_running_loop()

        while True:
            try:
                conn, _ = await loop.sock_accept(self._sock)
            except OSError as exc:
                logger.error(f"Accept error: {exc}")
                await asyncio.sleep(ACCEPT_ERROR_DELAY)
                continue

            task = asyncio.create_task(self._serve_connection(conn))
            self._connections.add(task)
            task.add_done_callback(self._connections.discard)

    async def _serve_connection(self, conn: socket.socket) -> None:
        try:
            reader, writer = await asyncio.open_connection(sock=conn)
        except OSError as exc:
            logger.error(f"Failed to set up stream for accepted connection: {exc}")
            conn.close()
            return
        await self._router.handle(reader, writer)

    async def close(self) -> None:
        """Stop accepting, abort in-flight connections and release the socket."""
        if self._accept_task is not None:
            self._accept_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._accept_task
            self._accept_task = None

        if self._sock is not None:
            self._sock.close()
            self._sock = None

        pending = list(self._connections)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def __aenter__(self) -> "ProxyServer":
        await self.start()
        self.start_serving()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()


__all__ = ["ProxyServer", "create_listen_socket", "parse_listen_address"]
