"""Tests de envío, buffer y heartbeat del MessageBridge."""

import asyncio
import json

import pytest

from modules.ferrylink_bridge import (
    BridgeEvent,
    BridgeState,
    BufferOverflowError,
    OverflowPolicy,
    SendStatus,
    TransportError,
)

TELEMETRY = "fleet/f1/v1/telemetry"


class TestSend:
    """Tests para send() y flush()."""

    @pytest.mark.asyncio
    async def test_send_while_connected(self, broker, make_bridge):
        """Test envío directo con conexión activa."""
        bridge = make_bridge()
        await bridge.connect()

        result = await bridge.send(TELEMETRY, {"speed": 18.5}, qos=1)

        assert result.status == SendStatus.SENT
        assert result.sent
        assert broker.published[-1].topic == TELEMETRY
        assert broker.published[-1].qos == 1
        assert json.loads(broker.published[-1].payload) == {"speed": 18.5}
        assert bridge.get_status()["stats"]["sent"] == 1

        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_buffered_messages_flush_in_order(self, broker, make_bridge):
        """Test que los mensajes bufferizados salen en orden al conectar."""
        bridge = make_bridge()
        seen_on_connect = []
        bridge.on(BridgeEvent.CONNECTED, lambda _: seen_on_connect.append(len(broker.published)))

        for i in range(3):
            result = await bridge.send(TELEMETRY, {"seq": i})
            assert result.buffered

        assert bridge.buffered_count == 3
        assert broker.published == []

        await bridge.connect()
        await bridge.send(TELEMETRY, {"seq": 3})

        assert [json.loads(p) for p in broker.messages_on(TELEMETRY)] == [{"seq": i} for i in range(4)]
        assert bridge.buffered_count == 0
        # El buffer se vació antes de notificar CONNECTED
        assert seen_on_connect == [3]
        assert bridge.get_status()["stats"]["flushed"] == 3

        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_outage_scenario(self, broker, make_bridge, wait_until):
        """Test dos fallas de conexión con mensajes enviados durante la caída."""
        broker.fail_next_connects(2)
        bridge = make_bridge(max_reconnect_attempts=10)
        delays = []
        bridge.on(BridgeEvent.RECONNECTING, lambda event: delays.append(event.delay))

        bridge.connect()
        first = await bridge.send(TELEMETRY, {"engine": "ok", "seq": 1})
        await wait_until(lambda: bridge.state == BridgeState.RECONNECTING)
        second = await bridge.send(TELEMETRY, {"engine": "ok", "seq": 2})

        assert first.status == SendStatus.BUFFERED
        assert second.status == SendStatus.BUFFERED

        await wait_until(lambda: bridge.is_connected)

        assert delays == pytest.approx([0.01, 0.02])
        assert [json.loads(p)["seq"] for p in broker.messages_on(TELEMETRY)] == [1, 2]
        assert bridge.buffered_count == 0
        assert bridge.retry_attempts == 0

        await bridge.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("topic,payload,qos", [
        ("fleet/+/v1/telemetry", {}, 0),
        ("", {}, 0),
        (TELEMETRY, {}, 3),
        (TELEMETRY, {"value": object()}, 0),
    ])
    async def test_invalid_send(self, make_bridge, topic, payload, qos):
        """Test que los envíos inválidos fallan sin tocar el buffer."""
        bridge = make_bridge()

        with pytest.raises(TransportError):
            await bridge.send(topic, payload, qos=qos)

        assert bridge.buffered_count == 0

    @pytest.mark.asyncio
    async def test_send_failure_while_connected(self, broker, make_bridge):
        """Test que una escritura rechazada llega al llamador."""
        bridge = make_bridge()
        await bridge.connect()
        broker.reject_writes()

        with pytest.raises(TransportError):
            await bridge.send(TELEMETRY, {"speed": 1})

        assert bridge.buffered_count == 0
        assert bridge.get_status()["stats"]["send_failures"] == 1

        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_flush_failures_are_not_rebuffered(self, broker, make_bridge, wait_until):
        """Test que las fallas del flush se cuentan y no se reencolan."""
        bridge = make_bridge()
        await bridge.send(TELEMETRY, {"seq": 1})
        await bridge.send(TELEMETRY, {"seq": 2})
        broker.reject_writes()

        await bridge.connect()
        await wait_until(lambda: bridge.get_status()["stats"]["flush_failures"] == 2)

        assert bridge.buffered_count == 0
        assert bridge.is_connected

        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_flush_noop_when_disconnected(self, make_bridge):
        """Test que flush() no hace nada sin conexión."""
        bridge = make_bridge()
        await bridge.send(TELEMETRY, {"seq": 1})

        assert bridge.flush() == 0
        assert len(bridge.pending_messages()) == 1


class TestBufferOverflow:
    """Tests para las políticas de desborde."""

    @pytest.mark.asyncio
    async def test_drop_oldest(self, make_bridge):
        """Test que DROP_OLDEST descarta el más antiguo y lo notifica."""
        bridge = make_bridge(buffer_capacity=2)
        dropped = []
        bridge.on(BridgeEvent.DROPPED, dropped.append)

        for i in range(3):
            await bridge.send(TELEMETRY, {"n": i})

        assert len(dropped) == 1
        assert json.loads(dropped[0].payload) == {"n": 0}
        assert [json.loads(m.payload)["n"] for m in bridge.pending_messages()] == [1, 2]
        assert bridge.get_status()["stats"]["dropped"] == 1

    @pytest.mark.asyncio
    async def test_reject_new(self, make_bridge):
        """Test que REJECT_NEW lanza BufferOverflowError."""
        bridge = make_bridge(buffer_capacity=2, overflow_policy=OverflowPolicy.REJECT_NEW)

        await bridge.send(TELEMETRY, {"n": 0})
        await bridge.send(TELEMETRY, {"n": 1})

        with pytest.raises(BufferOverflowError):
            await bridge.send(TELEMETRY, {"n": 2})

        assert [json.loads(m.payload)["n"] for m in bridge.pending_messages()] == [0, 1]


class TestHeartbeat:
    """Tests para el heartbeat."""

    @pytest.mark.asyncio
    async def test_heartbeat_published(self, broker, make_bridge, wait_until):
        """Test que el heartbeat se publica periódicamente."""
        topic = "fleet/f1/bridge/heartbeat"
        bridge = make_bridge(heartbeat_topic=topic, heartbeat_interval=0.01)

        await bridge.connect()
        await wait_until(lambda: len(broker.messages_on(topic)) >= 2)

        heartbeat = json.loads(broker.messages_on(topic)[0])
        assert heartbeat["status"] == "online"
        assert heartbeat["client_id"] == "test-client"
        assert "timestamp" in heartbeat
        assert bridge.get_status()["last_heartbeat"] is not None

        await bridge.shutdown()
        count = len(broker.messages_on(topic))
        await asyncio.sleep(0.05)
        assert len(broker.messages_on(topic)) == count

    @pytest.mark.asyncio
    async def test_heartbeat_stops_when_transport_closes(self, broker, make_bridge, wait_until):
        """Test que una caída del transporte libera el heartbeat."""
        topic = "fleet/f1/bridge/heartbeat"
        bridge = make_bridge(heartbeat_topic=topic, heartbeat_interval=0.01, max_reconnect_attempts=10)

        await bridge.connect()
        await wait_until(lambda: broker.messages_on(topic))
        assert bridge._heartbeat_task is not None

        broker.fail_next_connects(100)
        broker.drop_sessions()
        count = len(broker.messages_on(topic))
        await asyncio.sleep(0.05)

        assert not bridge.is_connected
        assert bridge._heartbeat_task is None
        assert len(broker.messages_on(topic)) == count
        assert bridge.buffered_count == 0

        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_heartbeat_disabled_without_topic(self, broker, make_bridge):
        """Test que sin tópico no hay heartbeat."""
        bridge = make_bridge(heartbeat_interval=0.01)

        await bridge.connect()
        await asyncio.sleep(0.05)

        assert broker.published == []

        await bridge.shutdown()


class TestStatus:
    """Tests para get_status() y shutdown()."""

    @pytest.mark.asyncio
    async def test_get_status(self, make_bridge):
        """Test contenido del estado."""
        bridge = make_bridge()
        await bridge.send(TELEMETRY, {"n": 0})

        status = bridge.get_status()

        assert status["state"] == "disconnected"
        assert status["connected"] is False
        assert status["buffered_count"] == 1
        assert status["buffer_capacity"] == 1000
        assert status["max_reconnect_attempts"] == 3
        assert status["client_id"] == "test-client"
        assert status["endpoint"] == "memory://fleet"
        assert set(status["stats"]) == {
            "connects", "sent", "send_failures", "buffered", "flushed",
            "flush_failures", "dropped", "received", "decode_errors",
        }

    @pytest.mark.asyncio
    async def test_shutdown_releases_everything(self, make_bridge):
        """Test que shutdown() descarta buffer, suscriptores y suscripciones."""
        bridge = make_bridge()
        await bridge.subscribe("fleet/#", callback=lambda message: None)
        bridge.on(BridgeEvent.ERROR, lambda error: None)
        await bridge.send(TELEMETRY, {"n": 0})
        await bridge.connect()
        await bridge.send(TELEMETRY, {"n": 1})

        await bridge.shutdown()
        status = bridge.get_status()

        assert bridge.state == BridgeState.CLOSED
        assert status["subscribers"] == 0
        assert status["subscriptions"] == []
        assert status["buffered_count"] == 0
