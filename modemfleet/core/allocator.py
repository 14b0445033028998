"""
Proxy port allocation.

"Unused" is computed from the current assignments every time, so ports of
deleted modems come back to the pool without any release bookkeeping.

The allocator holds no state and takes no lock: callers must serialize
allocation through the state store's mutation path.
"""

import logging
from collections.abc import Iterable
from typing import NamedTuple

from ..exceptions import PoolExhausted

logger = logging.getLogger(__name__)


class PortRange(NamedTuple):
    """Inclusive port range [lo, hi]."""
    lo: int
    hi: int

    def includes(self, port: object) -> bool:
        return isinstance(port, int) and self.lo <= port <= self.hi

    @property
    def size(self) -> int:
        return max(0, self.hi - self.lo + 1)


def allocate_port(
    existing: Iterable[int],
    reserved: Iterable[int],
    port_range: tuple[int, int]
) -> int:
    """
    Return the lowest port in range that is neither assigned nor reserved.

    Args:
        existing: Ports currently assigned to modems
        reserved: Ports that must never be handed out
        port_range: Inclusive (lo, hi) pool bounds

    Returns:
        The first free port scanning upward from lo

    Raises:
        PoolExhausted: If every port in the range is taken or reserved
    """
    lo, hi = port_range
    taken = set(existing)
    taken.update(reserved)

    for port in range(lo, hi + 1):
        if port not in taken:
            logger.debug(f"Allocated port {port} from [{lo}, {hi}]")
            return port

    raise PoolExhausted(f"No available proxy ports in [{lo}, {hi}]")
