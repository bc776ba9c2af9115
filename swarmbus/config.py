"""Worker identity and socket locations from the environment.

The spawning process wires these variables into every worker it starts, so
a worker can find its relay and register under the right identity without
any further configuration.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from swarmbus.exceptions import ConfigurationError
from swarmbus.hierarchy import ROOT_CODE, is_valid_code
from swarmbus.protocol import Role
from swarmbus.transport.unix_socket import SOCKET_PREFIX

logger = logging.getLogger(__name__)


# Environment variable names
AGENT_NAME = "SWARMBUS_AGENT_NAME"
AGENT_ROLE = "SWARMBUS_AGENT_ROLE"
AGENT_SWARM = "SWARMBUS_AGENT_SWARM"
AGENT_CODE = "SWARMBUS_CODE"
SOCKET_PATH = "SWARMBUS_SOCKET"
PARENT_SOCKET_PATH = "SWARMBUS_PARENT_SOCKET"

DEFAULT_NAME = "queen"


@dataclass
class Identity:
    """Who this worker is and where its relays live."""

    name: str
    role: Role
    swarm: Optional[str] = None
    code: str = ROOT_CODE
    socket: Optional[Path] = None
    parent_socket: Optional[Path] = None

    @property
    def is_queen(self) -> bool:
        return self.role == Role.QUEEN

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Identity":
        """Read the identity from environment variables.

        Raises:
            ConfigurationError: If the role is unknown, the code is malformed,
                or a non-queen worker has no swarm
        """
        env = os.environ if environ is None else environ

        raw_role = env.get(AGENT_ROLE, Role.QUEEN.value)
        try:
            role = Role(raw_role)
        except ValueError:
            raise ConfigurationError(
                f"{AGENT_ROLE}={raw_role!r} is not one of "
                f"{[r.value for r in Role]}"
            )

        code = env.get(AGENT_CODE, ROOT_CODE)
        if not is_valid_code(code):
            raise ConfigurationError(f"{AGENT_CODE}={code!r} is not a hierarchy code")

        swarm = env.get(AGENT_SWARM) or None
        if role != Role.QUEEN and swarm is None:
            raise ConfigurationError(f"{AGENT_SWARM} is required for role {role.value!r}")

        socket = env.get(SOCKET_PATH)
        parent_socket = env.get(PARENT_SOCKET_PATH)

        identity = cls(
            name=env.get(AGENT_NAME, DEFAULT_NAME),
            role=role,
            swarm=swarm,
            code=code,
            socket=Path(socket) if socket else None,
            parent_socket=Path(parent_socket) if parent_socket else None,
        )
        logger.debug(f"Identity from environment: {identity}")
        return identity

    def to_env(self) -> dict[str, str]:
        """Variables to hand to a child process so it can rebuild this identity."""
        env = {
            AGENT_NAME: self.name,
            AGENT_ROLE: self.role.value,
            AGENT_CODE: self.code,
        }
        if self.swarm:
            env[AGENT_SWARM] = self.swarm
        if self.socket:
            env[SOCKET_PATH] = str(self.socket)
        if self.parent_socket:
            env[PARENT_SOCKET_PATH] = str(self.parent_socket)
        return env


def socket_directory() -> Path:
    return Path(tempfile.gettempdir())


def socket_path(group_id: str, directory: Optional[Path] = None) -> Path:
    """Conventional socket path for a process group."""
    if not group_id or "/" in group_id:
        raise ConfigurationError(f"Invalid group id {group_id!r}")
    return (directory or socket_directory()) / f"{SOCKET_PREFIX}{group_id}.sock"
