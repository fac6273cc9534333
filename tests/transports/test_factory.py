"""Tests para la fábrica de transportes."""

import pytest

from infrastructure.factory import create_bridge, create_transport
from infrastructure.mqtt_transport import MQTTTransport
from infrastructure.websocket_transport import WebSocketTransport
from modules.ferrylink_bridge import BridgeConfig, BridgeState, MemoryBroker, MemoryTransport


class TestCreateTransport:
    """Tests para create_transport."""

    @pytest.mark.parametrize("endpoint,expected", [
        ("mqtts://abc123-ats.iot.us-east-1.amazonaws.com", MQTTTransport),
        ("mqtt://localhost:1883", MQTTTransport),
        ("ws://localhost:8000/ws", WebSocketTransport),
        ("wss://dashboard.example.com/ws", WebSocketTransport),
    ])
    def test_transport_by_scheme(self, endpoint, expected):
        transport = create_transport(BridgeConfig(endpoint=endpoint))

        assert isinstance(transport, expected)
        assert transport.endpoint == endpoint
        assert not transport.is_open

    def test_memory_transport(self):
        """Test transporte en memoria con credenciales de la configuración."""
        broker = MemoryBroker("fleet")
        config = BridgeConfig(endpoint="memory://fleet", client_id="vessel-1")
        config.credentials.username = "ferry"

        transport = create_transport(config, broker=broker)

        assert isinstance(transport, MemoryTransport)
        assert transport.client_id == "vessel-1"
        assert transport.username == "ferry"

    def test_memory_requires_broker(self):
        with pytest.raises(ValueError):
            create_transport(BridgeConfig(endpoint="memory://fleet"))

    def test_memory_broker_name_mismatch(self):
        with pytest.raises(ValueError, match="no corresponde"):
            create_transport(BridgeConfig(endpoint="memory://cloud"), broker=MemoryBroker("fleet"))


class TestCreateBridge:
    """Tests para create_bridge."""

    @pytest.mark.asyncio
    async def test_create_and_connect(self):
        broker = MemoryBroker("fleet")
        bridge = create_bridge(BridgeConfig(endpoint="memory://fleet"), broker=broker, name="local")

        await bridge.connect()

        assert bridge.name == "local"
        assert bridge.state == BridgeState.CONNECTED
        assert broker.session_count == 1

        await bridge.shutdown()
