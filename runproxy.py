#!/usr/bin/env python3
"""
subnetproxy - SOCKS5 proxy egressing through a pool of local subnets.

Usage:
    python runproxy.py --subnet 10.0.0.0/24,2001:db8::/64 [--strategy hash|random]
    python runproxy.py --config proxy.yml [--env-file .env]
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

import dotenv

from helpers.unified_logger import configure_logging, get_service_logger
from networking import ProxyConfigurationError, build_address_pool
from networking.address_pool import AddressPool
from server.config import Settings, load_settings
from server.listener import ProxyServer
from server.router import ConnectionRouter

__version__ = "0.1.0"


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="SOCKS5 proxy that binds outbound connections to addresses from a subnet pool."
    )

    parser.add_argument(
        "--listen",
        type=str,
        default=None,
        help="Address for the socks5 server to listen on (default: :1080).",
    )
    parser.add_argument(
        "--subnet",
        type=str,
        default=None,
        help="Comma-separated subnets for IP pool (e.g., 192.168.1.0/24,10.0.0.0/8).",
    )
    parser.add_argument(
        "--proxyprotocol",
        action="store_true",
        default=None,
        help="Enable PROXY protocol support to get correct client ip.",
    )
    parser.add_argument(
        "--strategy",
        type=str,
        default=None,
        help="Strategy for selecting local IP: hash (hash client ip) or random (default: hash).",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=None,
        help="Optional YAML file with settings (listen, subnet, proxy_protocol, strategy, ...).",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=".env",
        help="Path to the environment file (default: .env).",
    )
    parser.add_argument(
        "--log-level",
        "-l",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO).",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit.",
    )

    return parser.parse_args(argv)


def build_pool(settings: Settings) -> Optional[AddressPool]:
    """Build the egress pool, or None when no subnet is configured."""
    if not settings.subnets:
        return None
    return build_address_pool(settings.subnets)


async def serve(settings: Settings, pool: Optional[AddressPool]) -> None:
    router = ConnectionRouter.from_pool(
        pool,
        settings.strategy,
        proxy_protocol=settings.proxy_protocol,
    )
    server = ProxyServer(settings.listen, router)
    try:
        await server.serve_forever()
    finally:
        await server.close()


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)

    if args.version:
        print(f"subnetproxy v{__version__}")
        return 0

    if args.env_file and Path(args.env_file).exists():
        dotenv.load_dotenv(args.env_file)

    try:
        settings = load_settings(
            Path(args.config) if args.config else None,
            env_file=args.env_file,
            listen=args.listen,
            subnet=args.subnet,
            proxy_protocol=args.proxyprotocol,
            strategy=args.strategy,
            log_level=args.log_level,
        )
    except ProxyConfigurationError as exc:
        print(f"Error: {exc}")
        return 1

    os.environ["LOG_LEVEL"] = settings.log_level
    configure_logging(settings.log_level, settings.log_dir)
    logger = get_service_logger("main")

    logger.info(f"CONFIG: listen = {settings.listen}")
    logger.info(f"CONFIG: subnet = {settings.subnet}")
    logger.info(f"CONFIG: proxyprotocol = {settings.proxy_protocol}")
    logger.info(f"CONFIG: strategy = {settings.strategy.value}")

    try:
        pool = build_pool(settings)
    except ProxyConfigurationError as exc:
        logger.critical(f"Failed to create IP pool: {exc}")
        return 1

    if pool is None:
        logger.warning("subnet is not provided, the default outbound address will be used")
    else:
        logger.info(f"IP pool: {pool.describe()}")
    if settings.proxy_protocol:
        logger.info("Proxy protocol support is enabled")

    try:
        asyncio.run(serve(settings, pool))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except ProxyConfigurationError as exc:
        logger.critical(f"Invalid listen address: {exc}")
        return 1
    except OSError as exc:
        logger.critical(f"Failed to listen on {settings.listen}: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
