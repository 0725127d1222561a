"""WebSocket gateway — admission, routing, error mapping, cleanup, HTTP surface."""
import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from fakes import FakeClock, FakeRedis, make_settings
from gateway.ws_server import DeviceGateway
from provider.mock import MockConversationProvider
from schemas.ws_messages import ClientType
from server import create_app
from store.session_store import SessionStore


def _connect_frame(device_id="d1", client_type="device", **overrides):
    payload = {
        "user_id": "u1",
        "device_id": device_id,
        "device_name": "Glasses",
        "credential": "cred_0123456789abcdef",
        "client_type": client_type,
        "firmware_version": "1.0.3",
    }
    payload.update(overrides)
    return json.dumps({"type": "connect", "payload": payload})


def _frame(msg_type, **payload):
    return json.dumps({"type": msg_type, "payload": payload})


def _admit(ws, **kw):
    ws.send_text(_connect_frame(**kw))
    msg = ws.receive_json()
    assert msg["type"] == "connection_confirmed"
    return msg


@pytest.fixture
def coordinator():
    redis = FakeRedis(FakeClock(time.time()))
    provider = MockConversationProvider()
    app = create_app(make_settings(), redis_client=redis, provider=provider, start_sweeper=False)
    with TestClient(app) as client:
        yield client, redis, provider


# ── Test 1: Admission ──

class TestAdmission:

    def test_valid_device_confirmed_and_recorded(self, coordinator):
        client, redis, _ = coordinator
        with client.websocket_connect("/ws/device") as ws:
            msg = _admit(ws)
            assert msg["payload"]["device_id"] == "d1"

            record = redis.decoded("device:d1")
            assert record["user_id"] == "u1"
            assert record["is_streaming"] is False
            assert record["firmware_version"] == "1.0.3"

    def test_missing_credential_rejected(self, coordinator):
        client, redis, _ = coordinator
        with client.websocket_connect("/ws/device") as ws:
            ws.send_text(_connect_frame(credential=""))
            msg = ws.receive_json()
            assert msg["type"] == "connection_rejected"
            assert "credential" in msg["payload"]["reason"]

            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 4003
        assert redis.decoded("device:d1") is None

    def test_first_message_must_be_connect(self, coordinator):
        client, _, _ = coordinator
        with client.websocket_connect("/ws/device") as ws:
            ws.send_text(_frame("ping"))
            assert ws.receive_json()["type"] == "connection_rejected"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 4003

    def test_garbage_first_frame_rejected(self, coordinator):
        client, _, _ = coordinator
        with client.websocket_connect("/ws/device") as ws:
            ws.send_text("not json")
            msg = ws.receive_json()
            assert msg["type"] == "connection_rejected"
            assert msg["payload"]["code"] == "INVALID_MESSAGE"

    def test_silent_client_times_out(self):
        app = create_app(
            make_settings(AUTH_TIMEOUT_S=0.1),
            redis_client=FakeRedis(), provider=MockConversationProvider(), start_sweeper=False,
        )
        with TestClient(app) as client:
            with client.websocket_connect("/ws/device") as ws:
                with pytest.raises(WebSocketDisconnect) as exc:
                    ws.receive_json()
                assert exc.value.code == 4008


# ── Test 2: Streaming over the wire ──

class TestStreaming:

    def test_companion_observes_full_lifecycle(self, coordinator):
        client, redis, provider = coordinator
        with client.websocket_connect("/ws/device") as phone:
            _admit(phone, device_id="phone", client_type="companion")
            with client.websocket_connect("/ws/device") as glasses:
                _admit(glasses)
                assert phone.receive_json()["type"] == "device_connected"

                glasses.send_text(_frame("button_press", type="press"))
                config = glasses.receive_json()
                assert config["type"] == "provider_config"
                session_id = config["payload"]["session_id"]
                assert glasses.receive_json()["type"] == "stream_started"
                assert phone.receive_json()["type"] == "stream_started"
                assert redis.decoded("device:d1")["current_session_id"] == session_id

                glasses.send_text(_frame("audio_chunk", session_id=session_id, seq=0))
                glasses.send_text(_frame("button_press", type="release"))
                assert glasses.receive_json()["type"] == "stream_stopped"
                assert phone.receive_json()["type"] == "stream_stopped"

                glasses.send_text(_frame("conversation_ended", conversation_id="conv_1", session_id=session_id))
                ended = phone.receive_json()
                assert ended["type"] == "conversation_ended"
                assert ended["payload"]["conversation_id"] == "conv_1"

                record = redis.decoded(f"session:{session_id}")
                assert record["status"] == "completed"
                assert record["audio_chunk_count"] == 1
                assert provider.ended == [session_id]

    def test_provider_failure_reaches_device_as_stream_error(self, coordinator):
        client, redis, provider = coordinator
        provider.fail_start = True
        with client.websocket_connect("/ws/device") as ws:
            _admit(ws)
            ws.send_text(_frame("button_press", type="press"))

            msg = ws.receive_json()
            assert msg["type"] == "stream_error"
            assert msg["payload"]["code"] == "PROVIDER_ERROR"
            assert redis.decoded("device:d1")["is_streaming"] is False

    def test_disconnect_mid_stream_cleans_up(self, coordinator):
        client, redis, _ = coordinator
        with client.websocket_connect("/ws/device") as phone:
            _admit(phone, device_id="phone", client_type="companion")
            with client.websocket_connect("/ws/device") as glasses:
                _admit(glasses)
                glasses.send_text(_frame("button_press", type="press"))
                session_id = glasses.receive_json()["payload"]["session_id"]
                glasses.receive_json()
                glasses.send_text(_frame("disconnect", reason="battery_dead"))
                with pytest.raises(WebSocketDisconnect) as exc:
                    glasses.receive_json()
                assert exc.value.code == 1000

            types = [phone.receive_json()["type"] for _ in range(4)]
            assert types == ["device_connected", "stream_started", "processing_error", "device_disconnected"]
            assert redis.decoded(f"session:{session_id}")["status"] == "failed"
            assert redis.decoded("device:d1") is None


# ── Test 3: Per-message handling ──

class TestMessages:

    def test_ping_pong_and_heartbeat_ack(self, coordinator):
        client, redis, _ = coordinator
        with client.websocket_connect("/ws/device") as ws:
            _admit(ws)
            ws.send_text(_frame("ping"))
            assert ws.receive_json()["type"] == "pong"

            ws.send_text(_frame("heartbeat", battery_level=55))
            ack = ws.receive_json()
            assert ack["type"] == "heartbeat_ack"
            assert "server_ts" in ack["payload"]
            assert redis.decoded("device:d1")["battery_level"] == 55

    def test_invalid_message_keeps_connection_open(self, coordinator):
        client, _, _ = coordinator
        with client.websocket_connect("/ws/device") as ws:
            _admit(ws)
            ws.send_text(_frame("teleport"))
            err = ws.receive_json()
            assert err["type"] == "error"
            assert err["payload"]["code"] == "INVALID_MESSAGE"
            assert err["payload"]["recoverable"] is True

            ws.send_text(_frame("ping"))
            assert ws.receive_json()["type"] == "pong"

    def test_release_without_press_is_stream_error(self, coordinator):
        client, _, _ = coordinator
        with client.websocket_connect("/ws/device") as ws:
            _admit(ws)
            ws.send_text(_frame("button_press", type="release"))
            msg = ws.receive_json()
            assert msg["type"] == "stream_error"
            assert msg["payload"]["code"] == "NO_ACTIVE_SESSION"


class TestHandleMessage:

    @pytest.fixture
    def gateway(self, registry, machine, store, settings):
        return DeviceGateway(registry, machine, store, settings)

    @pytest.mark.asyncio
    async def test_companion_cannot_press(self, gateway, connect):
        phone, phone_t = connect(device_id="phone", client_type=ClientType.COMPANION)

        assert await gateway.handle_message(phone, _frame("button_press", type="press")) is None
        assert phone_t.last("error")["payload"]["code"] == "COMPANION_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_repeat_connect_rejected(self, gateway, connect):
        device, device_t = connect()
        await gateway.handle_message(device, _connect_frame())
        assert device_t.last("error")["payload"]["code"] == "ALREADY_CONNECTED"

    @pytest.mark.asyncio
    async def test_disconnect_returns_reason(self, gateway, connect):
        device, _ = connect()
        assert await gateway.handle_message(device, _frame("disconnect", reason="user_logout")) == "user_logout"

    @pytest.mark.asyncio
    async def test_store_outage_reported_unrecoverable(self, registry, machine, clock, connect):

        redis = FakeRedis(clock)
        strict = SessionStore(make_settings(STORE_DEGRADED_MODE=False), client=redis)
        await strict.connect()
        gateway = DeviceGateway(registry, machine, strict, make_settings())
        device, device_t = connect()
        redis.fail = True

        await gateway.handle_message(device, _frame("heartbeat"))

        err = device_t.last("error")["payload"]
        assert err["code"] == "STORE_UNAVAILABLE"
        assert err["recoverable"] is False


# ── Test 4: HTTP surface ──

def _post_call_body(session_id):
    return json.dumps({
        "type": "post_call_transcription",
        "event_timestamp": int(time.time()),
        "data": {
            "conversation_id": "conv_1",
            "agent_id": "agent_1",
            "status": "done",
            "transcript": [
                {"role": "user", "message": "turn on the lights"},
                {"role": "agent", "message": "Done.", "tool_calls": [{"name": "lights.on"}]},
            ],
            "metadata": {"call_duration_secs": 7},
            "conversation_initiation_client_data": {"dynamic_variables": {"session_id": session_id}},
        },
    }).encode()


class TestHttp:

    def test_health(self, coordinator):
        client, _, _ = coordinator
        body = client.get("/api/health").json()

        assert body["status"] == "ok"
        assert body["store"]["reachable"] is True
        assert body["provider"]["type"] == "mock"
        assert body["connections"] == 0
        assert body["sessions"]["tracked_sessions"] == 0

    def test_post_call_attaches_summary(self, coordinator):
        client, redis, _ = coordinator
        with client.websocket_connect("/ws/device") as ws:
            _admit(ws)
            ws.send_text(_frame("button_press", type="press"))
            session_id = ws.receive_json()["payload"]["session_id"]

            resp = client.post("/api/provider/post-call", content=_post_call_body(session_id))

            assert resp.status_code == 200
            assert resp.json() == {
                "received": True, "processed": True,
                "session_id": session_id, "conversation_id": "conv_1",
            }
            record = redis.decoded(f"session:{session_id}")
            assert record["transcription"] == "turn on the lights"
            assert record["ai_response"] == "Done."
            assert record["tools_used"] == [{"name": "lights.on"}]
            assert record["status"] == "active"

    def test_post_call_other_event_ignored(self, coordinator):
        client, _, _ = coordinator
        resp = client.post("/api/provider/post-call", json={"type": "post_call_audio", "data": None})
        assert resp.json() == {"received": True, "processed": False}

    def test_post_call_bad_json(self, coordinator):
        client, _, _ = coordinator
        assert client.post("/api/provider/post-call", content=b"{").status_code == 400

    def test_post_call_signature_enforced(self):
        secret = "whsec_test"
        app = create_app(
            make_settings(ELEVENLABS_WEBHOOK_SECRET=secret),
            redis_client=FakeRedis(FakeClock(time.time())),
            provider=MockConversationProvider(), start_sweeper=False,
        )
        body = _post_call_body("session_gone")
        ts = int(time.time())
        digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()

        with TestClient(app) as client:
            unsigned = client.post("/api/provider/post-call", content=body)
            signed = client.post(
                "/api/provider/post-call", content=body,
                headers={"elevenlabs-signature": f"t={ts},v0={digest}"},
            )

        assert unsigned.status_code == 401
        assert signed.status_code == 200
        assert signed.json()["processed"] is False
