"""swarmbus: a local socket relay for queen, coordinator and agent processes."""

from swarmbus.client import RelayClient
from swarmbus.delivery import DeliveryClassifier, DeliveryMode, InjectionQueue, classify
from swarmbus.protocol import ProtocolError, RelayedMessage, Role
from swarmbus.router import RoleRouter, Router
from swarmbus.server import RelayServer
from swarmbus.state import AgentStatus, SwarmTracker

__version__ = "0.1.0"

__all__ = [
    "AgentStatus",
    "DeliveryClassifier",
    "DeliveryMode",
    "InjectionQueue",
    "ProtocolError",
    "RelayClient",
    "RelayServer",
    "RelayedMessage",
    "Role",
    "RoleRouter",
    "Router",
    "SwarmTracker",
    "classify",
]
