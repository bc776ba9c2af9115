"""
JSON-lines relay protocol for swarmbus.

This module defines the frames exchanged between workers and their local
relay server.

Message Format:
- Every frame is one JSON object terminated by a newline (JSONL)
- Frames never contain raw newlines; string values escape them
- Each frame has a "type" field, except the relayed envelope, which is
  recognised by its "from" and "message" fields

Client -> Server:
    register, nudge, blocker, done, instruct, progress, relay

Server -> Client:
    registered, error, and the relayed envelope wrapping one of the
    client kinds other than register, together with the sender's identity
"""

import json
import logging
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
    model_validator,
)

from swarmbus.hierarchy import is_valid_code

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n"


class Role(str, Enum):
    """Position of a worker in the swarm."""

    QUEEN = "queen"
    COORDINATOR = "coordinator"
    AGENT = "agent"


# =============================================================================
# Client -> Server Messages
# =============================================================================


class RegisterMessage(BaseModel):
    """First frame on every connection; names the worker."""

    type: Literal["register"] = "register"
    name: StrictStr = Field(..., min_length=1, description="Unique worker name")
    role: Role = Field(..., description="Worker role")
    swarm: Optional[StrictStr] = Field(
        None, min_length=1, description="Swarm label (required unless queen)"
    )
    code: Optional[StrictStr] = Field(
        None, description="Hierarchy code assigned at spawn time"
    )

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_valid_code(value):
            raise ValueError(f"invalid hierarchy code {value!r}")
        return value

    @model_validator(mode="after")
    def _check_swarm(self) -> "RegisterMessage":
        if self.role is not Role.QUEEN and not self.swarm:
            raise ValueError(f"swarm is required for role {self.role.value!r}")
        return self


class NudgeMessage(BaseModel):
    """Low-urgency notice that something worth reading has changed."""

    type: Literal["nudge"] = "nudge"
    reason: StrictStr


class BlockerMessage(BaseModel):
    """The sender is stuck."""

    type: Literal["blocker"] = "blocker"
    description: StrictStr


class DoneMessage(BaseModel):
    """The sender finished its task."""

    type: Literal["done"] = "done"
    summary: StrictStr


class InstructMessage(BaseModel):
    """A directive for one worker, one swarm, or everyone in the group."""

    type: Literal["instruct"] = "instruct"
    instruction: StrictStr
    to: Optional[StrictStr] = Field(None, description="Target worker name")
    swarm: Optional[StrictStr] = Field(None, description="Target swarm label")


Percent = Union[
    Annotated[StrictInt, Field(ge=0, le=100)],
    Annotated[StrictFloat, Field(ge=0, le=100)],
]


class ProgressMessage(BaseModel):
    """Fire-and-forget status update. All fields are optional."""

    type: Literal["progress"] = "progress"
    phase: Optional[StrictStr] = None
    percent: Optional[Percent] = None
    detail: Optional[StrictStr] = None


StatusEventKind = Literal["register", "done", "blocked", "nudge", "disconnected"]


class StatusEvent(BaseModel):
    """Lifecycle event of a worker in a sub-group, reported upward."""

    event: StatusEventKind
    name: StrictStr = Field(..., min_length=1)
    role: Role
    swarm: Optional[StrictStr] = None
    code: Optional[StrictStr] = None
    summary: Optional[StrictStr] = None
    description: Optional[StrictStr] = None
    reason: Optional[StrictStr] = None


class StatusRelayMessage(BaseModel):
    """Carries a sub-group worker's status to the supervising group."""

    type: Literal["relay"] = "relay"
    relay: StatusEvent


# Messages the server relays to other workers
RelayableMessage = Union[
    NudgeMessage,
    BlockerMessage,
    DoneMessage,
    InstructMessage,
    ProgressMessage,
    StatusRelayMessage,
]

ClientMessage = Union[RegisterMessage, RelayableMessage]


# =============================================================================
# Server -> Client Messages
# =============================================================================


class RegisteredMessage(BaseModel):
    """Acknowledges a successful registration."""

    type: Literal["registered"] = "registered"


class ErrorMessage(BaseModel):
    """Reports a rejected frame or an unroutable message."""

    type: Literal["error"] = "error"
    message: StrictStr


class RelayedMessage(BaseModel):
    """Envelope built by the server around a relayed message."""

    model_config = ConfigDict(populate_by_name=True)

    sender: StrictStr = Field(..., alias="from")
    sender_role: Role = Field(..., alias="fromRole")
    sender_swarm: Optional[StrictStr] = Field(None, alias="fromSwarm")
    message: Annotated[RelayableMessage, Field(discriminator="type")]


ServerMessage = Union[RegisteredMessage, ErrorMessage, RelayedMessage]

Frame = Union[ClientMessage, ServerMessage]


# =============================================================================
# Parsing and Serialization Utilities
# =============================================================================


CLIENT_MESSAGE_TYPES: Dict[str, type] = {
    "register": RegisterMessage,
    "nudge": NudgeMessage,
    "blocker": BlockerMessage,
    "done": DoneMessage,
    "instruct": InstructMessage,
    "progress": ProgressMessage,
    "relay": StatusRelayMessage,
}

SERVER_MESSAGE_TYPES: Dict[str, type] = {
    "registered": RegisteredMessage,
    "error": ErrorMessage,
}


class ProtocolError(Exception):
    """A frame that does not match the protocol."""

    def __init__(
        self, code: str, message: str, details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


def serialize(message: Union[Frame, Dict[str, Any]]) -> str:
    """
    Serialize a frame to a single newline-terminated line.

    Models are dumped by alias with unset optional fields omitted. Plain dicts
    (raw frames being forwarded) are dumped as-is.
    """
    if isinstance(message, BaseModel):
        body = message.model_dump_json(by_alias=True, exclude_none=True)
    else:
        body = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
    return body + FRAME_DELIMITER


def parse_lines(buffer: str) -> tuple[list[Any], str]:
    """
    Split a buffer into parsed frames and the unconsumed remainder.

    Every complete line is decoded as JSON; blank lines and lines that are not
    valid JSON are skipped so that one corrupt frame cannot block the ones
    after it. The final segment (empty, or a partial frame) is returned as the
    remainder to be prepended to the next read.
    """
    *lines, remainder = buffer.split(FRAME_DELIMITER)

    messages: list[Any] = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            messages.append(json.loads(line))
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed frame: {line[:100]!r}")

    return messages, remainder


class FrameDecoder:
    """Accumulates stream chunks and yields complete frames."""

    def __init__(self) -> None:
        self.buffer = ""

    def feed(self, chunk: str) -> list[Any]:
        """Add *chunk* to the buffer and return every frame it completed."""
        messages, self.buffer = parse_lines(self.buffer + chunk)
        return messages


def is_register_frame(data: Any) -> bool:
    """Whether a raw frame claims to be a register message."""
    return isinstance(data, dict) and data.get("type") == "register"


def is_relayed_frame(data: Any) -> bool:
    """Whether a raw frame looks like a relayed envelope."""
    return isinstance(data, dict) and "from" in data and "message" in data


def _describe(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        text = item["msg"]
        problems.append(f"{location}: {text}" if location else text)
    return "; ".join(problems)


def _load(data: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ProtocolError(
                code="INVALID_JSON",
                message=f"Failed to parse JSON: {e}",
                details={"raw_data": data[:100]},
            )

    if not isinstance(data, dict):
        raise ProtocolError(
            code="INVALID_MESSAGE",
            message="Message must be a JSON object",
        )
    return data


def _validate(model_class: type, msg_type: str, data: Dict[str, Any]) -> Any:
    try:
        return model_class.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(
            code="VALIDATION_ERROR",
            message=f"Invalid {msg_type} message: {_describe(e)}",
            details={"type": msg_type, "errors": e.errors(include_url=False)},
        )


def parse_client_message(data: Union[str, Dict[str, Any]]) -> ClientMessage:
    """
    Parse and validate a frame sent by a worker.

    Args:
        data: JSON string or already-parsed frame

    Returns:
        The typed client message

    Raises:
        ProtocolError: If the frame is malformed, of unknown type, or fails
            validation
    """
    data = _load(data)

    msg_type = data.get("type")
    if not msg_type:
        raise ProtocolError(
            code="MISSING_TYPE",
            message="Message must have a 'type' field",
        )

    model_class = CLIENT_MESSAGE_TYPES.get(msg_type) if isinstance(msg_type, str) else None
    if not model_class:
        raise ProtocolError(
            code="UNKNOWN_TYPE",
            message=f"Unknown message type: {msg_type}",
            details={"valid_types": list(CLIENT_MESSAGE_TYPES.keys())},
        )

    return _validate(model_class, msg_type, data)


def parse_register(data: Union[str, Dict[str, Any]]) -> RegisterMessage:
    """Parse a frame that must be a register message."""
    message = parse_client_message(data)
    if not isinstance(message, RegisterMessage):
        raise ProtocolError(
            code="NOT_REGISTERED",
            message="First message must be a valid register message",
        )
    return message


def parse_server_message(data: Union[str, Dict[str, Any]]) -> ServerMessage:
    """
    Parse a frame received from the relay server.

    Raises:
        ProtocolError: If the frame is not a known server message
    """
    data = _load(data)

    if is_relayed_frame(data):
        return _validate(RelayedMessage, "relayed", data)

    msg_type = data.get("type")
    model_class = SERVER_MESSAGE_TYPES.get(msg_type) if isinstance(msg_type, str) else None
    if not model_class:
        raise ProtocolError(
            code="UNKNOWN_TYPE",
            message=f"Unknown server message type: {msg_type}",
            details={"valid_types": list(SERVER_MESSAGE_TYPES.keys())},
        )

    return _validate(model_class, msg_type, data)


def relay(
    sender_name: str,
    sender_role: Role,
    sender_swarm: Optional[str],
    message: RelayableMessage,
) -> RelayedMessage:
    """Wrap *message* in an envelope carrying the sender's identity."""
    return RelayedMessage(
        sender=sender_name,
        sender_role=sender_role,
        sender_swarm=sender_swarm,
        message=message,
    )
