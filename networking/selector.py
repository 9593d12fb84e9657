from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from .address_pool import AddressPool
from .exceptions import ProxyConfigurationError, ProxyUnavailableError
from .models import IPAddress


class SelectionStrategy(str, Enum):
    """How a local egress address is chosen for a client."""

    HASH = "hash"
    RANDOM = "random"

    @classmethod
    def parse(cls, value: Union[str, "SelectionStrategy"]) -> "SelectionStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ProxyConfigurationError(
                f"Invalid strategy: {value!r} (must be 'hash' or 'random')"
            ) from None


class AddressSelector:
    """
    Chooses a local egress address from a pool for one client connection.

    Subclasses decide how the client address influences the choice; index to
    address translation always stays with the pool.
    """

    strategy: SelectionStrategy

    def __init__(self, pool: AddressPool) -> None:
        if pool is None or pool.is_empty:
            raise ProxyUnavailableError("Selector requires a pool with usable addresses")
        self._pool = pool

    @property
    def pool(self) -> AddressPool:
        return self._pool

    def select(self, client_ip: Optional[IPAddress]) -> IPAddress:
        raise NotImplementedError


class DeterministicSelector(AddressSelector):
    """Sticky selection: the same client address always maps to the same egress."""

    strategy = SelectionStrategy.HASH

    def select(self, client_ip: Optional[IPAddress]) -> IPAddress:
        key = "" if client_ip is None else str(client_ip)
        return self._pool.select_by_key(key)


class RandomSelector(AddressSelector):
    """Uniform selection weighted by subnet capacity; ignores the client."""

    strategy = SelectionStrategy.RANDOM

    def select(self, client_ip: Optional[IPAddress]) -> IPAddress:
        return self._pool.select_randomly()


_SELECTORS = {
    SelectionStrategy.HASH: DeterministicSelector,
    SelectionStrategy.RANDOM: RandomSelector,
}


def build_selector(
    pool: AddressPool,
    strategy: Union[str, SelectionStrategy] = SelectionStrategy.HASH,
) -> AddressSelector:
    """Instantiate the selector implementing ``strategy`` over ``pool``."""
    return _SELECTORS[SelectionStrategy.parse(strategy)](pool)


__all__ = [
    "AddressSelector",
    "DeterministicSelector",
    "RandomSelector",
    "SelectionStrategy",
    "build_selector",
]
