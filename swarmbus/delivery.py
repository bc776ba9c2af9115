"""
Delivery classifier for relayed messages.

Decides how an incoming message perturbs the receiving worker's running task:

- blocker, instruct: interrupt (injected ahead of the next step)
- nudge: deferred (injected once the current unit of work completes)
- done, progress, relay: no injection, observed by the swarm tracker only
- errors reported by the relay or the transport: deferred

Injection is a scheduling request to the worker's own task runner; nothing
here blocks or calls into a peer.
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Deque, Dict, List, Optional, Protocol, Union

from swarmbus.protocol import RelayableMessage, RelayedMessage

if TYPE_CHECKING:
    from swarmbus.client import RelayClient
    from swarmbus.state import SwarmTracker

logger = logging.getLogger(__name__)


class DeliveryMode(str, Enum):
    INTERRUPT = "interrupt"
    DEFERRED = "deferred"
    NONE = "none"


MODES: Dict[str, DeliveryMode] = {
    "blocker": DeliveryMode.INTERRUPT,
    "instruct": DeliveryMode.INTERRUPT,
    "nudge": DeliveryMode.DEFERRED,
    "done": DeliveryMode.NONE,
    "progress": DeliveryMode.NONE,
    "relay": DeliveryMode.NONE,
}

ERROR_MODE = DeliveryMode.DEFERRED


def classify(message: Union[RelayedMessage, RelayableMessage]) -> DeliveryMode:
    """Delivery mode for a relayed envelope or a bare message."""
    if isinstance(message, RelayedMessage):
        message = message.message
    return MODES[message.type]


@dataclass(frozen=True)
class Injection:
    """Text handed to the worker's task runner."""

    kind: str
    content: str
    sender: Optional[str] = None


class TaskRunner(Protocol):
    """The worker runtime's two injection primitives."""

    def inject_now(self, injection: Injection) -> None: ...

    def inject_after(self, injection: Injection) -> None: ...


class InjectionQueue:
    """A TaskRunner that queues injections for the worker loop to drain.

    The loop drains ``interrupts`` before each step and ``follow_ups`` once
    the current unit of work is finished.
    """

    def __init__(self) -> None:
        self.interrupts: Deque[Injection] = deque()
        self.follow_ups: Deque[Injection] = deque()

    def __len__(self) -> int:
        return len(self.interrupts) + len(self.follow_ups)

    def inject_now(self, injection: Injection) -> None:
        self.interrupts.append(injection)

    def inject_after(self, injection: Injection) -> None:
        self.follow_ups.append(injection)

    def drain_interrupts(self) -> List[Injection]:
        drained = list(self.interrupts)
        self.interrupts.clear()
        return drained

    def drain_follow_ups(self) -> List[Injection]:
        drained = list(self.follow_ups)
        self.follow_ups.clear()
        return drained


def render(relayed: RelayedMessage) -> str:
    """Human-readable text for an injected message."""
    message = relayed.message
    who = f"{relayed.sender} ({relayed.sender_role.value})"

    if message.type == "blocker":
        return (
            f"Blocker from {who}: {message.description}\n\n"
            "Consider whether this affects your work."
        )
    if message.type == "instruct":
        return (
            f"Instruction from {who}: {message.instruction}\n\n"
            "Adjust your approach based on this instruction."
        )
    if message.type == "nudge":
        return (
            f"Nudge from {who}: {message.reason}\n\n"
            "Another worker found something that may affect your work."
        )
    if message.type == "done":
        return f"{who} is done: {message.summary}"
    return f"Progress from {who}: {message.phase or ''} {message.detail or ''}".strip()


class DeliveryClassifier:
    """Routes relayed messages into a TaskRunner according to their kind."""

    def __init__(self, runner: TaskRunner, tracker: Optional["SwarmTracker"] = None):
        self.runner = runner
        self.tracker = tracker

    def deliver(self, relayed: RelayedMessage) -> DeliveryMode:
        """Schedule *relayed* on the runner and return the mode used."""
        if self.tracker is not None:
            self.tracker.observe(relayed)

        mode = classify(relayed)
        if mode is DeliveryMode.NONE:
            logger.debug(f"{relayed.message.type} from {relayed.sender} not injected")
            return mode

        injection = Injection(
            kind=relayed.message.type,
            content=render(relayed),
            sender=relayed.sender,
        )
        if mode is DeliveryMode.INTERRUPT:
            self.runner.inject_now(injection)
        else:
            self.runner.inject_after(injection)
        return mode

    def deliver_error(self, error: Exception) -> DeliveryMode:
        """Report a relay or transport error once the current step is done."""
        self.runner.inject_after(
            Injection(kind="error", content=f"Swarm relay error: {error}")
        )
        return ERROR_MODE

    def attach(self, client: "RelayClient") -> None:
        """Feed every message and error *client* receives through this classifier."""
        client.on_message(self.deliver)
        client.on_error(self.deliver_error)
