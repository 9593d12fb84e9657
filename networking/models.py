from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Union

from .capacity import IPNetwork, subnet_size, usable_capacity

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True, slots=True)
class SubnetEntry:
    """
    One configured subnet together with its selectable range.

    Attributes:
        network: Parsed subnet (host bits cleared).
        before: Sum of the capacities of every entry preceding this one.
        capacity: Number of selectable addresses in this subnet.
        start_offset: Offset of the first selectable address from the network address.
    """

    network: IPNetwork
    before: int = 0
    capacity: int = field(init=False)
    start_offset: int = field(init=False)

    def __post_init__(self) -> None:
        capacity, start_offset = usable_capacity(self.network)
        object.__setattr__(self, "capacity", capacity)
        object.__setattr__(self, "start_offset", start_offset)

    @property
    def end(self) -> int:
        """Exclusive upper bound of this entry's index range."""
        return self.before + self.capacity

    @property
    def version(self) -> int:
        return self.network.version

    @property
    def width(self) -> int:
        """Encoded address width in bytes (4 or 16)."""
        return self.network.max_prefixlen // 8

    @property
    def size(self) -> int:
        return subnet_size(self.network)

    def owns_index(self, index: int) -> bool:
        return self.before <= index < self.end

    def address_at(self, offset: int) -> IPAddress:
        """
        Return the usable address ``offset`` positions into this subnet.

        The arithmetic is done on Python ints and packed back into exactly
        ``width`` unsigned big-endian bytes.
        """
        value = int(self.network.network_address) + self.start_offset + offset
        packed = value.to_bytes(self.width, "big", signed=False)
        return ipaddress.ip_address(packed)

    def to_dict(self) -> dict:
        """Serialize the entry for debugging/logging."""
        return {
            "network": str(self.network),
            "before": self.before,
            "capacity": self.capacity,
            "start_offset": self.start_offset,
        }
