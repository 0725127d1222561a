"""Shared fixtures: in-memory Redis with a controllable clock, wired coordinator graph."""
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import pytest
import pytest_asyncio

from auth.authenticator import DeviceIdentity
from fakes import FakeClock, FakeRedis, FakeTransport, make_settings
from gateway.fanout import NotificationFanout
from gateway.registry import ConnectionEntry, ConnectionRegistry
from provider.mock import MockConversationProvider
from schemas.ws_messages import ClientType
from sessions.state_machine import SessionStateMachine
from store.session_store import SessionStore


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def settings():
    return make_settings()


@pytest_asyncio.fixture
async def store(settings, fake_redis):
    s = SessionStore(settings, client=fake_redis)
    await s.connect()
    return s


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def fanout(registry):
    return NotificationFanout(registry)


@pytest.fixture
def provider():
    return MockConversationProvider()


@pytest.fixture
def machine(store, provider, fanout, registry, settings, clock):
    return SessionStateMachine(store, provider, fanout, registry, settings, clock=clock.utcnow)


@pytest.fixture
def connect(registry):
    """Register a connection and return (entry, transport)."""

    def _connect(
        user_id: str = "u1",
        device_id: str = "d1",
        device_name: str = "Glasses",
        client_type: ClientType = ClientType.DEVICE,
    ):
        transport = FakeTransport()
        identity = DeviceIdentity(
            user_id=user_id,
            device_id=device_id,
            device_name=device_name,
            client_type=client_type,
            firmware_version="1.0.3",
        )
        entry: ConnectionEntry = registry.register(registry.new_connection_id(), identity, transport)
        return entry, transport

    return _connect
