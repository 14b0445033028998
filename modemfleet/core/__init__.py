"""
Core fleet infrastructure.

Provides the building blocks the fleet manager is assembled from:
- allocator: Conflict-free proxy port allocation
- bus: Change notification fan-out and state mirror
- transport: Serial access to a modem's command port
"""

from .allocator import PortRange, allocate_port
from .bus import ChangeBus, Subscription, EventCallback
from .transport import Transport, SerialTransport, MockTransport

__all__ = [
    "PortRange",
    "allocate_port",
    "ChangeBus",
    "Subscription",
    "EventCallback",
    "Transport",
    "SerialTransport",
    "MockTransport",
]
