"""
Weighted multi-subnet address pool.

The pool flattens every configured subnet into one index space where each
subnet owns a contiguous range as wide as its usable capacity. Selecting an
egress address is then a matter of producing an index in ``[0, total)`` and
translating it back into a concrete address.
"""

from __future__ import annotations

import hashlib
import ipaddress
import random
import secrets
import threading
from typing import Iterable, Iterator, List, Sequence, Union

from helpers.unified_logger import get_core_logger

from .capacity import IPNetwork
from .exceptions import PoolConstructionError, ProxyUnavailableError
from .models import IPAddress, SubnetEntry

logger = get_core_logger("address_pool")

KEY_NAMESPACE = "subnetproxy:"


def parse_subnet(token: str) -> IPNetwork:
    """
    Parse a bare IP literal or a ``prefix/length`` string into a network.

    Bare addresses become single-address networks (/32 or /128). Host bits of a
    prefix are masked off, so ``10.0.0.7/24`` is read as ``10.0.0.0/24``.

    Raises:
        PoolConstructionError: If the token is neither form.
    """
    text = token.strip()
    if "%" in text:
        raise PoolConstructionError(f"invalid IP or CIDR: {token}", token=token)

    try:
        address = ipaddress.ip_address(text)
    except ValueError:
        address = None

    if address is not None:
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        return ipaddress.ip_network((address, address.max_prefixlen))

    if "/" in text:
        try:
            return ipaddress.ip_network(text, strict=False)
        except ValueError:
            pass

    raise PoolConstructionError(f"invalid IP or CIDR: {token}", token=token)


class AddressPool:
    """
    Ordered collection of subnets weighted by usable capacity.

    The pool is immutable after construction. The only mutable state is the
    pseudo-random generator used by :meth:`select_randomly`, which is guarded
    by a lock so concurrent callers cannot interleave its updates.
    """

    def __init__(self, subnets: Iterable[str]) -> None:
        networks = [parse_subnet(token) for token in subnets]

        self._entries: List[SubnetEntry] = []
        total = 0
        for network in networks:
            entry = SubnetEntry(network, before=total)
            if entry.capacity <= 0:
                logger.debug(f"Skipping {network}: no usable address")
                continue
            logger.debug(f"Subnet entry: {entry.to_dict()}")
            self._entries.append(entry)
            total += entry.capacity
        self._total = total

        self._lock = threading.Lock()
        self._rng = random.Random(secrets.randbits(64))

    @property
    def total(self) -> int:
        return self._total

    @property
    def entries(self) -> Sequence[SubnetEntry]:
        return tuple(self._entries)

    @property
    def is_empty(self) -> bool:
        return self._total == 0

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[SubnetEntry]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"AddressPool(subnets={[str(e.network) for e in self._entries]}, total={self._total})"

    def describe(self) -> str:
        """Human readable summary for startup logging."""
        parts = [f"{entry.network} ({entry.capacity})" for entry in self._entries]
        return f"{len(parts)} subnet(s), {self._total} usable address(es): " + ", ".join(parts)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def translate(self, index: int) -> IPAddress:
        """
        Map ``index`` in ``[0, total)`` to its concrete address.

        An index outside every range falls back to the first usable address of
        the first subnet.
        """
        if not self._entries:
            raise ProxyUnavailableError("Address pool is empty")

        for entry in self._entries:
            if entry.owns_index(index):
                return entry.address_at(index - entry.before)

        return self._entries[0].address_at(0)

    def contains(self, address: Union[str, IPAddress]) -> bool:
        """True if ``address`` lies anywhere inside a configured subnet."""
        if isinstance(address, str):
            try:
                address = ipaddress.ip_address(address)
            except ValueError:
                return False
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        return any(address in entry.network for entry in self._entries)

    def __contains__(self, address: object) -> bool:
        if not isinstance(address, (str, ipaddress.IPv4Address, ipaddress.IPv6Address)):
            return False
        return self.contains(address)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_by_key(self, key: str) -> IPAddress:
        """Deterministically map ``key`` to an address of the pool."""
        if self._total == 0:
            raise ProxyUnavailableError("Address pool is empty")

        digest = hashlib.sha256((KEY_NAMESPACE + key).encode("utf-8")).digest()
        index = int.from_bytes(digest, "big") % self._total
        return self.translate(index)

    def select_randomly(self) -> IPAddress:
        """Pick an address uniformly over the pool's index space."""
        if self._total == 0:
            raise ProxyUnavailableError("Address pool is empty")

        with self._lock:
            index = self._rng.randrange(self._total)
        return self.translate(index)


def build_address_pool(subnets: Iterable[str]) -> AddressPool:
    """
    Build a pool for serving and reject one without any usable address.

    Raises:
        PoolConstructionError: On a malformed token or a zero-capacity pool.
    """
    subnets = list(subnets)
    pool = AddressPool(subnets)
    if pool.is_empty:
        raise PoolConstructionError(
            f"no usable address in subnet list: {','.join(subnets)}"
        )
    logger.debug(f"Address pool ready: {len(pool)} subnet(s), {pool.total} address(es)")
    return pool


__all__ = [
    "AddressPool",
    "KEY_NAMESPACE",
    "build_address_pool",
    "parse_subnet",
]
