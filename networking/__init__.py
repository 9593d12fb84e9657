"""
Egress address management for the subnet proxy.

This package models the configured subnets as one weighted address pool and
provides the strategies that turn a client connection into a local source
address for the outbound dial.
"""

from .address_pool import AddressPool, build_address_pool, parse_subnet
from .bucket import bucket_for_ip
from .capacity import usable_capacity
from .exceptions import (
    PoolConstructionError,
    ProxyConfigurationError,
    ProxyError,
    ProxyUnavailableError,
)
from .models import SubnetEntry
from .selector import (
    AddressSelector,
    DeterministicSelector,
    RandomSelector,
    SelectionStrategy,
    build_selector,
)

__all__ = [
    "AddressPool",
    "AddressSelector",
    "DeterministicSelector",
    "PoolConstructionError",
    "ProxyConfigurationError",
    "ProxyError",
    "ProxyUnavailableError",
    "RandomSelector",
    "SelectionStrategy",
    "SubnetEntry",
    "bucket_for_ip",
    "build_address_pool",
    "build_selector",
    "parse_subnet",
    "usable_capacity",
]
