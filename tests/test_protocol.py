"""Tests for the relay wire protocol."""

import json

import pytest

from swarmbus.protocol import (
    CLIENT_MESSAGE_TYPES,
    SERVER_MESSAGE_TYPES,
    BlockerMessage,
    DoneMessage,
    ErrorMessage,
    FrameDecoder,
    InstructMessage,
    NudgeMessage,
    ProgressMessage,
    ProtocolError,
    RegisteredMessage,
    RegisterMessage,
    RelayedMessage,
    Role,
    StatusEvent,
    StatusRelayMessage,
    is_register_frame,
    parse_client_message,
    parse_lines,
    parse_register,
    parse_server_message,
    relay,
    serialize,
)


class TestMessageTypeConstants:
    """Test message type dictionaries."""

    def test_expected_client_types(self):
        expected = {
            "register",
            "nudge",
            "blocker",
            "done",
            "instruct",
            "progress",
            "relay",
        }
        assert expected == set(CLIENT_MESSAGE_TYPES.keys())

    def test_expected_server_types(self):
        assert {"registered", "error"} == set(SERVER_MESSAGE_TYPES.keys())


class TestSerialize:
    """Test frame serialization."""

    def test_single_line_with_terminator(self):
        line = serialize(NudgeMessage(reason="look at\nthis"))
        assert line.endswith("\n")
        assert line.count("\n") == 1
        assert json.loads(line) == {"type": "nudge", "reason": "look at\nthis"}

    def test_unset_optional_fields_omitted(self):
        data = json.loads(serialize(InstructMessage(instruction="stop")))
        assert data == {"type": "instruct", "instruction": "stop"}

    def test_non_ascii_preserved(self):
        line = serialize(DoneMessage(summary="fertig ✓"))
        assert "✓" in line

    def test_register_role_serialized_as_string(self):
        data = json.loads(
            serialize(RegisterMessage(name="a1", role=Role.AGENT, swarm="alpha"))
        )
        assert data == {"type": "register", "name": "a1", "role": "agent", "swarm": "alpha"}

    def test_relayed_uses_wire_aliases(self):
        relayed = relay("a1", Role.AGENT, "alpha", BlockerMessage(description="stuck"))
        data = json.loads(serialize(relayed))
        assert data == {
            "from": "a1",
            "fromRole": "agent",
            "fromSwarm": "alpha",
            "message": {"type": "blocker", "description": "stuck"},
        }

    def test_relayed_without_swarm_omits_field(self):
        relayed = relay("queen", Role.QUEEN, None, NudgeMessage(reason="x"))
        assert "fromSwarm" not in json.loads(serialize(relayed))

    def test_raw_dict_is_compact(self):
        raw = {"type": "instruct", "instruction": "go", "to": "X"}
        assert serialize(raw) == '{"type":"instruct","instruction":"go","to":"X"}\n'

    def test_round_trip_client_messages(self):
        messages = [
            RegisterMessage(name="q", role=Role.QUEEN),
            RegisterMessage(name="c", role=Role.COORDINATOR, swarm="s", code="0.1"),
            NudgeMessage(reason="r"),
            BlockerMessage(description="d"),
            DoneMessage(summary="s"),
            InstructMessage(instruction="i", to="a", swarm="s"),
            ProgressMessage(phase="build", percent=50, detail="half"),
        ]
        for message in messages:
            parsed = parse_client_message(serialize(message).strip())
            assert type(parsed) is type(message)
            assert parsed.model_dump() == message.model_dump()


class TestParseLines:
    """Test newline framing."""

    def test_multiple_frames_in_one_buffer(self):
        messages, remainder = parse_lines('{"a":1}\n{"b":2}\n')
        assert messages == [{"a": 1}, {"b": 2}]
        assert remainder == ""

    def test_partial_frame_kept_as_remainder(self):
        messages, remainder = parse_lines('{"a":1}\n{"b":')
        assert messages == [{"a": 1}]
        assert remainder == '{"b":'

    def test_malformed_frame_skipped(self):
        messages, remainder = parse_lines('{"a":1}\nnot json\n{"b":2}\n')
        assert messages == [{"a": 1}, {"b": 2}]
        assert remainder == ""

    def test_blank_lines_skipped(self):
        messages, _ = parse_lines('\n\n{"a":1}\n  \n')
        assert messages == [{"a": 1}]

    def test_empty_buffer(self):
        assert parse_lines("") == ([], "")


class TestFrameDecoder:
    """Test the incremental decoder."""

    def test_frame_split_across_reads(self):
        decoder = FrameDecoder()
        assert decoder.feed("{") == []
        messages = decoder.feed('"type":"nudge","reason":"x"}\n')
        assert messages == [{"type": "nudge", "reason": "x"}]
        assert isinstance(parse_client_message(messages[0]), NudgeMessage)

    def test_buffer_drained_after_complete_frame(self):
        decoder = FrameDecoder()
        decoder.feed('{"a":1}\n')
        assert decoder.buffer == ""


class TestParseClientMessage:
    """Test client message parsing and validation."""

    def test_parse_json_string(self):
        msg = parse_client_message('{"type":"done","summary":"ok"}')
        assert isinstance(msg, DoneMessage)
        assert msg.summary == "ok"

    def test_invalid_json(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_client_message("{nope")
        assert exc_info.value.code == "INVALID_JSON"

    def test_non_object(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_client_message([1, 2])
        assert exc_info.value.code == "INVALID_MESSAGE"

    def test_missing_type(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_client_message({"reason": "x"})
        assert exc_info.value.code == "MISSING_TYPE"

    def test_unknown_type(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_client_message({"type": "shout"})
        assert exc_info.value.code == "UNKNOWN_TYPE"

    def test_server_type_is_not_a_client_message(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_client_message({"type": "registered"})
        assert exc_info.value.code == "UNKNOWN_TYPE"

    def test_missing_field(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_client_message({"type": "nudge"})
        assert exc_info.value.code == "VALIDATION_ERROR"
        assert "reason" in exc_info.value.message

    def test_wrong_primitive_type_not_coerced(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_client_message({"type": "blocker", "description": 42})
        assert exc_info.value.code == "VALIDATION_ERROR"

    def test_instruct_target_must_be_string(self):
        with pytest.raises(ProtocolError):
            parse_client_message({"type": "instruct", "instruction": "x", "to": 3})

    def test_progress_percent_bounds(self):
        with pytest.raises(ProtocolError):
            parse_client_message({"type": "progress", "percent": 150})

    def test_progress_all_fields_optional(self):
        assert isinstance(parse_client_message({"type": "progress"}), ProgressMessage)


class TestRegisterValidation:
    """Test the register frame rules."""

    def test_missing_role_fails(self):
        with pytest.raises(ProtocolError):
            parse_client_message({"type": "register", "name": "a1", "swarm": "s"})

    def test_agent_without_swarm_fails(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_client_message({"type": "register", "name": "a1", "role": "agent"})
        assert "swarm" in exc_info.value.message

    def test_coordinator_without_swarm_fails(self):
        with pytest.raises(ProtocolError):
            parse_client_message(
                {"type": "register", "name": "c1", "role": "coordinator"}
            )

    def test_queen_without_swarm_passes(self):
        msg = parse_client_message({"type": "register", "name": "q", "role": "queen"})
        assert isinstance(msg, RegisterMessage)
        assert msg.role is Role.QUEEN
        assert msg.swarm is None

    def test_unknown_role_fails(self):
        with pytest.raises(ProtocolError):
            parse_client_message({"type": "register", "name": "x", "role": "king"})

    def test_empty_name_fails(self):
        with pytest.raises(ProtocolError):
            parse_client_message({"type": "register", "name": "", "role": "queen"})

    def test_invalid_code_fails(self):
        with pytest.raises(ProtocolError):
            parse_client_message(
                {"type": "register", "name": "q", "role": "queen", "code": "0..1"}
            )

    def test_valid_code_kept(self):
        msg = parse_client_message(
            {"type": "register", "name": "a", "role": "agent", "swarm": "s", "code": "0.1.2"}
        )
        assert msg.code == "0.1.2"

    def test_parse_register_rejects_other_kinds(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_register({"type": "nudge", "reason": "x"})
        assert exc_info.value.code == "NOT_REGISTERED"

    def test_is_register_frame(self):
        assert is_register_frame({"type": "register"})
        assert not is_register_frame({"type": "nudge"})
        assert not is_register_frame("register")


class TestParseServerMessage:
    """Test decoding of frames sent by the server."""

    def test_registered(self):
        assert isinstance(parse_server_message('{"type":"registered"}'), RegisteredMessage)

    def test_error(self):
        msg = parse_server_message({"type": "error", "message": "nope"})
        assert isinstance(msg, ErrorMessage)
        assert msg.message == "nope"

    def test_relayed(self):
        msg = parse_server_message(
            {
                "from": "c1",
                "fromRole": "coordinator",
                "fromSwarm": "alpha",
                "message": {"type": "instruct", "instruction": "go", "to": "a1"},
            }
        )
        assert isinstance(msg, RelayedMessage)
        assert msg.sender == "c1"
        assert msg.sender_role is Role.COORDINATOR
        assert isinstance(msg.message, InstructMessage)
        assert msg.message.to == "a1"

    def test_relayed_cannot_wrap_register(self):
        with pytest.raises(ProtocolError):
            parse_server_message(
                {
                    "from": "x",
                    "fromRole": "agent",
                    "message": {"type": "register", "name": "x", "role": "queen"},
                }
            )

    def test_unknown_server_frame(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_server_message({"type": "nudge", "reason": "x"})
        assert exc_info.value.code == "UNKNOWN_TYPE"


class TestStatusRelay:
    """Test the sub-group status event frame."""

    def test_parse_status_relay(self):
        msg = parse_client_message(
            {
                "type": "relay",
                "relay": {
                    "event": "done",
                    "name": "a1",
                    "role": "agent",
                    "swarm": "s1",
                    "code": "0.1.1",
                    "summary": "finished",
                },
            }
        )
        assert isinstance(msg, StatusRelayMessage)
        assert msg.relay.event == "done"
        assert msg.relay.role is Role.AGENT
        assert msg.relay.summary == "finished"

    def test_unknown_event_rejected(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_client_message(
                {
                    "type": "relay",
                    "relay": {"event": "exploded", "name": "a1", "role": "agent"},
                }
            )
        assert exc_info.value.code == "VALIDATION_ERROR"

    def test_missing_event_body_rejected(self):
        with pytest.raises(ProtocolError):
            parse_client_message({"type": "relay"})

    def test_serialized_without_unset_fields(self):
        message = StatusRelayMessage(
            relay=StatusEvent(event="register", name="a1", role=Role.AGENT, swarm="s1")
        )
        assert json.loads(serialize(message)) == {
            "type": "relay",
            "relay": {"event": "register", "name": "a1", "role": "agent", "swarm": "s1"},
        }

    def test_relayed_status_envelope(self):
        msg = parse_server_message(
            {
                "from": "coord-a",
                "fromRole": "coordinator",
                "fromSwarm": "s1",
                "message": {
                    "type": "relay",
                    "relay": {"event": "blocked", "name": "a2", "role": "agent"},
                },
            }
        )
        assert isinstance(msg.message, StatusRelayMessage)
        assert msg.message.relay.name == "a2"
