"""Tests para el transporte MQTT.

Las conexiones de awscrt se reemplazan por mocks cuyos métodos devuelven
concurrent.futures.Future ya resueltos, como los de CRT.
"""

import asyncio
import concurrent.futures

import pytest
from unittest.mock import Mock, patch
from awscrt import mqtt

from infrastructure.mqtt_transport import MQTTTransport
from modules.ferrylink_bridge import (
    BridgeConfig,
    BridgeState,
    ConnectError,
    Credentials,
    MessageBridge,
    TransportError,
)

AWS_ENDPOINT = "mqtts://abc123-ats.iot.us-east-1.amazonaws.com"


def _done(result=None, exception=None):
    """Future de CRT ya resuelto."""
    future = concurrent.futures.Future()
    if exception is not None:
        future.set_exception(exception)
    else:
        future.set_result(result)
    return future


def _mock_connection():
    connection = Mock()
    connection.connect.return_value = _done({"session_present": False})
    connection.disconnect.return_value = _done({})
    connection.publish.return_value = (_done({"packet_id": 1}), 1)
    connection.subscribe.return_value = (_done({"packet_id": 2, "topic": "t", "qos": mqtt.QoS.AT_LEAST_ONCE}), 2)
    connection.unsubscribe.return_value = (_done({"packet_id": 3}), 3)
    return connection


@pytest.fixture
def mtls_config():
    return BridgeConfig(
        endpoint=AWS_ENDPOINT,
        client_id="ferry-bridge-test",
        credentials=Credentials(
            cert_path="/path/to/cert.pem",
            key_path="/path/to/key.pem",
            ca_path="/path/to/ca.pem"
        )
    )


@pytest.fixture
def connection():
    return _mock_connection()


@pytest.fixture
def mock_builder(connection):
    with patch("infrastructure.mqtt_transport.mqtt_connection_builder") as builder:
        builder.mtls_from_path.return_value = connection
        yield builder


class TestMQTTTransportOpen:
    """Tests para apertura de la sesión."""

    @pytest.mark.asyncio
    async def test_open_with_mtls(self, mtls_config, mock_builder, connection):
        """Test conexión con certificado de dispositivo."""
        transport = MQTTTransport(mtls_config)

        await transport.open()

        assert transport.is_open
        connection.connect.assert_called_once()
        mock_builder.mtls_from_path.assert_called_once_with(
            endpoint="abc123-ats.iot.us-east-1.amazonaws.com",
            port=8883,
            cert_filepath="/path/to/cert.pem",
            pri_key_filepath="/path/to/key.pem",
            ca_filepath="/path/to/ca.pem",
            client_id="ferry-bridge-test",
            clean_session=True,
            keep_alive_secs=60,
            on_connection_interrupted=transport._on_connection_interrupted,
            on_connection_resumed=transport._on_connection_resumed
        )

    @pytest.mark.asyncio
    async def test_open_with_username_password(self, connection):
        """Test conexión con usuario y contraseña (HiveMQ Cloud)."""
        config = BridgeConfig(
            endpoint="mqtts://abc.s1.eu.hivemq.cloud:8883",
            client_id="hivemq-bridge",
            credentials=Credentials(username="ferry", password="secret")
        )
        transport = MQTTTransport(config)

        with patch("infrastructure.mqtt_transport.io.TlsContextOptions") as tls_options, \
                patch("infrastructure.mqtt_transport.io.ClientTlsContext") as tls_context, \
                patch("infrastructure.mqtt_transport.mqtt.Client") as client, \
                patch("infrastructure.mqtt_transport.mqtt.Connection", return_value=connection) as connection_cls:
            await transport.open()

        tls_context.assert_called_once_with(tls_options.return_value)
        client.assert_called_once_with(None, tls_context.return_value)
        kwargs = connection_cls.call_args.kwargs
        assert kwargs["host_name"] == "abc.s1.eu.hivemq.cloud"
        assert kwargs["port"] == 8883
        assert kwargs["username"] == "ferry"
        assert kwargs["password"] == "secret"
        assert transport.is_open

    @pytest.mark.asyncio
    async def test_plain_mqtt_without_tls(self, connection):
        """Test que mqtt:// no crea contexto TLS."""
        transport = MQTTTransport(BridgeConfig(endpoint="mqtt://localhost"))

        with patch("infrastructure.mqtt_transport.io.ClientTlsContext") as tls_context, \
                patch("infrastructure.mqtt_transport.mqtt.Client") as client, \
                patch("infrastructure.mqtt_transport.mqtt.Connection", return_value=connection):
            await transport.open()

        tls_context.assert_not_called()
        client.assert_called_once_with(None, None)

    @pytest.mark.asyncio
    async def test_open_refused(self, mtls_config, mock_builder, connection):
        """Test que una falla de red es un ConnectError reintentable."""
        connection.connect.return_value = _done(exception=OSError("connection refused"))
        transport = MQTTTransport(mtls_config)

        with pytest.raises(ConnectError) as exc_info:
            await transport.open()

        assert not exc_info.value.permanent
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_open_not_authorized(self, mtls_config, mock_builder, connection):
        """Test que un rechazo de autorización es permanente."""
        connection.connect.return_value = _done(
            exception=Exception("AWS_ERROR_MQTT_PROTOCOL_ERROR: NOT_AUTHORIZED")
        )
        transport = MQTTTransport(mtls_config)

        with pytest.raises(ConnectError) as exc_info:
            await transport.open()

        assert exc_info.value.permanent

    @pytest.mark.asyncio
    async def test_cancelled_open_discards_connection(self, mtls_config, mock_builder, connection):
        """Test que un CONNECT cancelado desconecta la conexión a medio abrir."""
        connection.connect.return_value = concurrent.futures.Future()
        transport = MQTTTransport(mtls_config)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(transport.open(), timeout=0.02)

        connection.disconnect.assert_called_once()
        assert transport._connection is None
        assert not transport.is_open


class TestMQTTTransportIO:
    """Tests para publicación, suscripción y callbacks."""

    @pytest.mark.asyncio
    async def test_write(self, mtls_config, mock_builder, connection):
        """Test publicación con mapeo de QoS."""
        transport = MQTTTransport(mtls_config)
        await transport.open()

        await transport.write("fleet/f1/v1/telemetry", b'{"speed": 10}', qos=1, retain=True)

        connection.publish.assert_called_once_with(
            topic="fleet/f1/v1/telemetry",
            payload=b'{"speed": 10}',
            qos=mqtt.QoS.AT_LEAST_ONCE,
            retain=True
        )

    @pytest.mark.asyncio
    async def test_write_ack_failure(self, mtls_config, mock_builder, connection):
        """Test que una confirmación fallida es TransportError."""
        connection.publish.return_value = (_done(exception=RuntimeError("timeout")), 1)
        transport = MQTTTransport(mtls_config)
        await transport.open()

        with pytest.raises(TransportError):
            await transport.write("fleet/f1/v1/telemetry", b"{}")

    def test_write_when_closed(self, mtls_config):
        """Test que escribir sin sesión falla de inmediato."""
        transport = MQTTTransport(mtls_config)

        with pytest.raises(TransportError):
            transport.write("fleet/f1/v1/telemetry", b"{}")

    @pytest.mark.asyncio
    async def test_subscribe(self, mtls_config, mock_builder, connection):
        """Test suscripción aceptada."""
        transport = MQTTTransport(mtls_config)
        await transport.open()

        await transport.subscribe("fleet/f1/+/control/#", qos=1)

        connection.subscribe.assert_called_once_with(
            topic="fleet/f1/+/control/#",
            qos=mqtt.QoS.AT_LEAST_ONCE,
            callback=transport._on_message_received
        )

    @pytest.mark.asyncio
    async def test_subscribe_rejected(self, mtls_config, mock_builder, connection):
        """Test suscripción rechazada por el broker."""
        connection.subscribe.return_value = (_done({"packet_id": 2, "topic": "t", "qos": None}), 2)
        transport = MQTTTransport(mtls_config)
        await transport.open()

        with pytest.raises(TransportError, match="rechazada"):
            await transport.subscribe("fleet/#")

    @pytest.mark.asyncio
    async def test_message_callback(self, mtls_config, mock_builder):
        """Test que los mensajes de CRT llegan al event loop."""
        transport = MQTTTransport(mtls_config)
        received = []
        transport.bind(on_message=lambda topic, payload: received.append((topic, payload)))
        await transport.open()

        transport._on_message_received(
            "fleet/f1/v1/control/engine",
            bytearray(b'{"action": "stop"}'),
            dup=False,
            qos=mqtt.QoS.AT_LEAST_ONCE,
            retain=False
        )
        await asyncio.sleep(0)

        assert received == [("fleet/f1/v1/control/engine", b'{"action": "stop"}')]

    @pytest.mark.asyncio
    async def test_interruption_closes_session(self, mtls_config, mock_builder, connection):
        """Test que una interrupción cierra la sesión y la notifica."""
        transport = MQTTTransport(mtls_config)
        closes = []
        transport.bind(on_close=closes.append)
        await transport.open()

        transport._on_connection_interrupted(connection, RuntimeError("socket closed"))
        await asyncio.sleep(0)

        assert not transport.is_open
        assert len(closes) == 1
        assert isinstance(closes[0], RuntimeError)
        connection.disconnect.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_is_not_reported(self, mtls_config, mock_builder, connection):
        """Test que un cierre manual no notifica cierre inesperado."""
        transport = MQTTTransport(mtls_config)
        closes = []
        transport.bind(on_close=closes.append)
        await transport.open()

        await transport.close()
        transport._on_connection_interrupted(connection, RuntimeError("late"))
        await asyncio.sleep(0)

        assert closes == []
        connection.disconnect.assert_called_once()


class TestMQTTBridge:
    """Tests del bridge sobre el transporte MQTT."""

    @pytest.mark.asyncio
    async def test_bridge_reconnects_after_interruption(self, mtls_config, mock_builder, connection, wait_until):
        """Test que el bridge reconecta tras una interrupción de CRT."""
        mtls_config.base_delay = 0.01
        mtls_config.max_delay = 0.02
        bridge = MessageBridge(MQTTTransport(mtls_config), mtls_config)

        await bridge.subscribe("fleet/f1/+/control/#", qos=1)
        await bridge.connect()
        await bridge.send("fleet/f1/v1/telemetry", {"speed": 12}, qos=1)

        bridge.transport._on_connection_interrupted(connection, RuntimeError("socket closed"))
        await wait_until(lambda: bridge.state == BridgeState.RECONNECTING)
        await wait_until(lambda: bridge.is_connected and connection.subscribe.call_count == 2)

        assert mock_builder.mtls_from_path.call_count == 2
        assert connection.publish.call_count == 1

        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_timed_out_attempts_leave_no_live_connection(self, mtls_config, mock_builder, wait_until):
        """Test que cada intento vencido desconecta su conexión antes del siguiente."""
        created = []

        def hanging_connection(**kwargs):
            connection = _mock_connection()
            connection.connect.return_value = concurrent.futures.Future()
            created.append(connection)
            return connection

        mock_builder.mtls_from_path.side_effect = hanging_connection
        mtls_config.connect_timeout = 0.02
        mtls_config.base_delay = 0.01
        mtls_config.max_delay = 0.02
        mtls_config.max_reconnect_attempts = 2
        bridge = MessageBridge(MQTTTransport(mtls_config), mtls_config)

        bridge.connect()
        await wait_until(lambda: bridge.state == BridgeState.FAILED)

        assert len(created) == 3
        assert all(c.disconnect.call_count == 1 for c in created)
        assert bridge.transport._connection is None

        await bridge.shutdown()
