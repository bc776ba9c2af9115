"""Reachability rules for relayed messages.

The relay server asks its router which registered peers a sender may reach.
Targeting (``to``/``swarm`` on instruct) is applied by the server on top of
whatever the router allows.
"""

from typing import Iterable, List, Optional, Protocol, TypeVar

from swarmbus.protocol import Role


class Peer(Protocol):
    """Identity fields used for routing."""

    name: str
    role: Role
    swarm: Optional[str]


P = TypeVar("P", bound=Peer)


class Router:
    """Open routing: every registered peer can reach every other one."""

    def can_reach(self, sender: Peer, recipient: Peer) -> bool:
        return True

    def recipients(self, sender: Peer, candidates: Iterable[P]) -> List[P]:
        """Peers in *candidates* that *sender* may reach, never itself."""
        return [
            peer
            for peer in candidates
            if peer.name != sender.name and self.can_reach(sender, peer)
        ]


class RoleRouter(Router):
    """Role-aware routing.

    - Queen reaches anyone
    - Coordinator reaches the queen, other coordinators and its own agents
    - Agent reaches agents and the coordinator of its own swarm
    """

    def can_reach(self, sender: Peer, recipient: Peer) -> bool:
        if sender.role == Role.QUEEN:
            return True

        if sender.role == Role.COORDINATOR:
            if recipient.role in (Role.QUEEN, Role.COORDINATOR):
                return True
            return recipient.swarm == sender.swarm

        if sender.role == Role.AGENT:
            if recipient.role in (Role.AGENT, Role.COORDINATOR):
                return recipient.swarm == sender.swarm
            return False

        return False
