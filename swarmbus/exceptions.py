"""
Exceptions for the swarmbus relay.
"""


class SwarmBusError(Exception):
    """Base exception for relay operations."""


class TransportError(SwarmBusError):
    """Raised when a transport cannot be opened, bound or used."""


class RelayConnectionError(SwarmBusError):
    """Raised when sending through a client that is not connected."""


class RegistrationError(SwarmBusError):
    """Raised when the relay server rejects a register frame."""


class RegistrationTimeout(RegistrationError):
    """Raised when the relay server never answers a register frame."""


class ConfigurationError(SwarmBusError):
    """Raised when the environment describes an invalid identity."""


class RelayError(SwarmBusError):
    """Raised for an error frame the relay server sent after registration."""
