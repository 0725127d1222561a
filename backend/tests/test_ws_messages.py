"""WS message schemas — inbound parsing and outbound envelopes."""
import json

import pytest

from core.exceptions import ProtocolViolation
from gateway.contracts import COMPANION_ALLOWED_MESSAGES, SUPPORTED_CLIENT_MESSAGES
from observability.redaction import redact, redact_dict
from schemas.ws_messages import (
    ButtonPressMessage,
    ConnectMessage,
    FanoutEvent,
    FanoutPayload,
    HeartbeatMessage,
    PongPayload,
    make_envelope,
    parse_client_message,
)


class TestParseClientMessage:

    def test_connect(self):
        msg = parse_client_message(json.dumps({
            "type": "connect",
            "payload": {"user_id": "u1", "device_id": "d1", "device_name": "G", "credential": "c" * 12},
        }))
        assert isinstance(msg, ConnectMessage)
        assert msg.payload.client_type.value == "device"
        assert msg.id

    def test_button_press(self):
        msg = parse_client_message('{"type": "button_press", "payload": {"type": "release"}}')
        assert isinstance(msg, ButtonPressMessage)
        assert msg.payload.type == "release"

    def test_payload_defaults(self):
        msg = parse_client_message('{"type": "heartbeat"}')
        assert isinstance(msg, HeartbeatMessage)
        assert msg.payload.battery_level is None

    @pytest.mark.parametrize("raw", [
        "not json",
        '{"payload": {}}',
        '{"type": "teleport", "payload": {}}',
        '{"type": "button_press", "payload": {"type": "hold"}}',
        '{"type": "audio_chunk", "payload": {"session_id": "s", "seq": -1}}',
        '{"type": "conversation_ended", "payload": {"conversation_id": "c"}}',
    ])
    def test_invalid_frames(self, raw):
        with pytest.raises(ProtocolViolation) as exc:
            parse_client_message(raw)
        assert exc.value.code == "INVALID_MESSAGE"

    def test_every_supported_type_parses(self):
        assert COMPANION_ALLOWED_MESSAGES <= SUPPORTED_CLIENT_MESSAGES
        for msg_type in ("heartbeat", "ping", "disconnect", "device_error"):
            assert parse_client_message(json.dumps({"type": msg_type})).type == msg_type


class TestEnvelope:

    def test_envelope_fields(self):
        data = json.loads(make_envelope("pong", PongPayload()))
        assert data["type"] == "pong"
        assert data["id"]
        assert data["timestamp"]
        assert "timestamp" in data["payload"]

    def test_fanout_payload_omits_nothing(self):
        data = json.loads(make_envelope(
            FanoutEvent.DEVICE_DISCONNECTED.value,
            FanoutPayload(device_id="d1", device_name="Glasses", reason="timeout"),
        ))
        assert data["payload"]["reason"] == "timeout"
        assert data["payload"]["session_id"] is None


class TestRedaction:

    def test_credentials_in_text(self):
        out = redact("connect credential=cred_0123456789abcdef from d1")
        assert "cred_0123456789abcdef" not in out
        assert "[REDACTED_SECRET]" in out

    def test_redis_uri_password(self):
        assert redact("redis://:hunter2@cache:6379/0") == "[REDACTED_REDIS_URI]"

    def test_signed_url(self):
        out = redact("url wss://api.elevenlabs.io/v1/convai?agent_id=a&conversation_signature=xyz")
        assert "xyz" not in out

    def test_nested_dict_keys(self):
        out = redact_dict({"payload": {"credential": "abc", "device_id": "d1"}, "signed_url": "wss://x"})
        assert out == {"payload": {"credential": "[REDACTED]", "device_id": "d1"}, "signed_url": "[REDACTED]"}
