"""
Usable-capacity rules for a single subnet.

Subnets with fewer than eight addresses are used whole. Larger subnets give up
three addresses: the network address, the address right after it (commonly the
gateway), and the all-ones broadcast address at the far end.
"""

from __future__ import annotations

from typing import Tuple, Union
import ipaddress

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

SMALL_SUBNET_THRESHOLD = 8
RESERVED_ADDRESSES = 3
RESERVED_PREFIX = 2  # network + gateway


def subnet_size(network: IPNetwork) -> int:
    """Number of addresses covered by ``network`` (``2 ** host_bits``)."""
    return 1 << (network.max_prefixlen - network.prefixlen)


def usable_capacity(network: IPNetwork) -> Tuple[int, int]:
    """
    Compute how many addresses of ``network`` are selectable.

    Returns:
        ``(capacity, start_offset)`` where ``start_offset`` is the position of
        the first usable address relative to the network address.
    """
    size = subnet_size(network)
    if size < SMALL_SUBNET_THRESHOLD:
        return size, 0
    return size - RESERVED_ADDRESSES, RESERVED_PREFIX


__all__ = [
    "IPNetwork",
    "RESERVED_ADDRESSES",
    "RESERVED_PREFIX",
    "SMALL_SUBNET_THRESHOLD",
    "subnet_size",
    "usable_capacity",
]
