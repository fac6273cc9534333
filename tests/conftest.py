"""Fixtures compartidas de los tests de FerryLink."""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from modules.ferrylink_bridge import BridgeConfig, MemoryBroker, MemoryTransport, MessageBridge


@pytest.fixture
def broker():
    """Broker en memoria para los tests."""
    return MemoryBroker("fleet")


@pytest.fixture
def make_bridge(broker):
    """Fábrica de bridges sobre el broker en memoria con delays cortos."""
    def _make(target=None, client_id="test-client", username=None, password=None, **overrides):
        target = target or broker
        settings = dict(
            endpoint=target.endpoint,
            client_id=client_id,
            base_delay=0.01,
            max_delay=0.08,
            max_reconnect_attempts=3,
        )
        settings.update(overrides)
        config = BridgeConfig(**settings)
        transport = MemoryTransport(target, client_id=client_id, username=username, password=password)
        return MessageBridge(transport, config)
    return _make


@pytest.fixture
def wait_until():
    """Espera hasta que un predicado se cumpla o venza el timeout."""
    async def _wait(predicate, timeout=1.0, interval=0.002):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condición no cumplida a tiempo")
            await asyncio.sleep(interval)
    return _wait


class FakeWebSocket:
    """WebSocket de prueba: los frames del servidor se inyectan con feed()."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._frames = asyncio.Queue()

    async def send(self, frame):
        self.sent.append(frame)

    async def close(self):
        self.closed = True

    def feed(self, frame):
        self._frames.put_nowait(frame)

    def server_close(self):
        self._frames.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._frames.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


@pytest.fixture
def fake_ws_factory():
    """Clase FakeWebSocket, para tests que necesitan varias conexiones."""
    return FakeWebSocket


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def mock_ws_connect(fake_ws):
    """Reemplaza websockets.connect por uno que devuelve fake_ws."""
    with patch("infrastructure.websocket_transport.websockets.connect", new=AsyncMock(return_value=fake_ws)) as connect:
        yield connect
