"""Tests for the wire protocol models."""
import pytest
from pydantic import ValidationError

from schemas.messages import Disconnect, JoinDm, JoinGeneral, Message, SendMessage, parse_command


class TestCommands:

    def test_parse_each_command(self):
        assert isinstance(parse_command('{"type": "join_general"}'), JoinGeneral)
        assert parse_command('{"type": "join_dm", "target": "A2"}') == JoinDm(target="A2")
        assert parse_command('{"type": "send_message", "room": "P:general", "text": "hi"}') == \
            SendMessage(room="P:general", text="hi")
        assert isinstance(parse_command('{"type": "disconnect"}'), Disconnect)

    def test_join_dm_target_defaults_to_empty(self):
        assert parse_command('{"type": "join_dm"}').target == ""

    @pytest.mark.parametrize("raw", [
        '{"type": "typing"}',
        '{"room": "P:general", "text": "hi"}',
        '{"type": "send_message", "room": "P:general"}',
        "hello",
    ])
    def test_invalid_frames_raise(self, raw):
        with pytest.raises(ValidationError):
            parse_command(raw)


class TestMessage:

    def test_server_assigns_id_and_timestamp(self):
        first = Message(tenant="P", room="P:general", sender="A1", text="hi")
        second = Message(tenant="P", room="P:general", sender="A1", text="hi")

        assert first.id != second.id
        assert first.timestamp.tzinfo is not None

    def test_message_is_immutable(self):
        message = Message(tenant="P", room="P:general", sender="A1", text="hi")
        with pytest.raises(ValidationError):
            message.text = "edited"
