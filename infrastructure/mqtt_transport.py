"""Transporte MQTT sobre AWS CRT.

Soporta dos modos de autenticación:
- mTLS con certificado de dispositivo (AWS IoT Core)
- usuario/contraseña sobre TLS (HiveMQ Cloud u otro broker MQTT)

Los callbacks de CRT llegan en hilos propios y se reenvían al event loop
con call_soon_threadsafe. La reconexión interna de CRT se desactiva: al
interrumpirse la conexión se cierra y el bridge decide cuándo reintentar.
"""

import asyncio
from typing import Any, Dict, Optional

from awscrt import io, mqtt
from awsiot import mqtt_connection_builder

from modules.ferrylink_bridge.config import BridgeConfig
from modules.ferrylink_bridge.errors import ConnectError, TransportError
from modules.ferrylink_bridge.transport import Transport

# Códigos de CONNACK que no se resuelven reintentando
PERMANENT_FAILURE_MARKERS = ("NOT_AUTHORIZED", "BAD_USERNAME_OR_PASSWORD")


def _describe(error: Exception) -> str:
    return getattr(error, "name", None) or str(error) or type(error).__name__


def _is_permanent(error: Exception) -> bool:
    text = f"{getattr(error, 'name', '')} {error}"
    return any(marker in text for marker in PERMANENT_FAILURE_MARKERS)


class MQTTTransport(Transport):
    """Transporte MQTT 3.1.1 basado en awscrt."""

    def __init__(self, config: BridgeConfig):
        """Inicializa el transporte.

        Args:
            config: Configuración con endpoint mqtt:// o mqtts:// y credenciales
        """
        super().__init__(config.endpoint)
        self.config = config

        self._connection: Optional[mqtt.Connection] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._open = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._open

    def _create_connection(self) -> mqtt.Connection:
        """Crea la conexión MQTT según las credenciales configuradas."""
        credentials = self.config.credentials

        if credentials.uses_mtls:
            return mqtt_connection_builder.mtls_from_path(
                endpoint=self.config.host,
                port=self.config.port,
                cert_filepath=credentials.cert_path,
                pri_key_filepath=credentials.key_path,
                ca_filepath=credentials.ca_path,
                client_id=self.config.client_id,
                clean_session=self.config.clean_session,
                keep_alive_secs=self.config.keep_alive_secs,
                on_connection_interrupted=self._on_connection_interrupted,
                on_connection_resumed=self._on_connection_resumed
            )

        tls_context = None
        if self.config.scheme == "mqtts":
            tls_options = io.TlsContextOptions()
            if credentials.ca_path:
                tls_options.override_default_trust_store_from_path(None, credentials.ca_path)
            tls_context = io.ClientTlsContext(tls_options)

        client = mqtt.Client(None, tls_context)
        return mqtt.Connection(
            client=client,
            host_name=self.config.host,
            port=self.config.port,
            client_id=self.config.client_id,
            clean_session=self.config.clean_session,
            keep_alive_secs=self.config.keep_alive_secs,
            username=credentials.username,
            password=credentials.password,
            on_connection_interrupted=self._on_connection_interrupted,
            on_connection_resumed=self._on_connection_resumed
        )

    async def open(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._closing = False

        try:
            self._connection = self._create_connection()
            result = await asyncio.wrap_future(self._connection.connect())
        except asyncio.CancelledError:
            # Timeout o disconnect() del bridge con el CONNECT aún en vuelo
            self._discard_connection()
            raise
        except Exception as e:
            self._discard_connection()
            raise ConnectError(
                self.endpoint,
                _describe(e),
                permanent=_is_permanent(e),
                original_error=e
            )

        self._open = True
        session_present = result.get("session_present") if isinstance(result, dict) else None
        self.logger.info(
            f"Sesión MQTT abierta para {self.config.client_id} (session_present={session_present})"
        )

    def write(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False):
        if not self._open or self._connection is None:
            raise TransportError(topic, "sesión MQTT cerrada")

        try:
            publish_future, _packet_id = self._connection.publish(
                topic=topic,
                payload=payload,
                qos=mqtt.QoS(qos),
                retain=retain
            )
        except Exception as e:
            raise TransportError(topic, _describe(e), e)

        return self._await_ack(topic, publish_future)

    async def _await_ack(self, topic: str, future) -> None:
        try:
            await asyncio.wrap_future(future)
        except Exception as e:
            raise TransportError(topic, _describe(e), e)

    async def subscribe(self, topic_pattern: str, qos: int = 0) -> None:
        if not self._open or self._connection is None:
            raise TransportError(topic_pattern, "sesión MQTT cerrada")

        try:
            subscribe_future, _packet_id = self._connection.subscribe(
                topic=topic_pattern,
                qos=mqtt.QoS(qos),
                callback=self._on_message_received
            )
            result: Dict[str, Any] = await asyncio.wrap_future(subscribe_future)
        except Exception as e:
            raise TransportError(topic_pattern, _describe(e), e)

        if result.get("qos") is None:
            raise TransportError(topic_pattern, "suscripción rechazada por el broker")

    async def unsubscribe(self, topic_pattern: str) -> None:
        if not self._open or self._connection is None:
            return

        try:
            unsubscribe_future, _packet_id = self._connection.unsubscribe(topic_pattern)
            await asyncio.wrap_future(unsubscribe_future)
        except Exception as e:
            raise TransportError(topic_pattern, _describe(e), e)

    def _discard_connection(self) -> None:
        """Suelta una conexión que no llegó a abrirse."""
        connection, self._connection = self._connection, None
        if connection is None:
            return

        try:
            connection.disconnect()
        except Exception as e:
            self.logger.warning(f"Error descartando conexión MQTT: {e}")

    async def close(self) -> None:
        self._closing = True
        self._open = False
        connection, self._connection = self._connection, None

        if connection is None:
            return

        try:
            await asyncio.wrap_future(connection.disconnect())
            self.logger.info(f"Sesión MQTT cerrada para {self.config.client_id}")
        except Exception as e:
            self.logger.warning(f"Error desconectando MQTT: {e}")

    # ------------------------------------------------------------------
    # Callbacks de CRT (hilos de CRT)
    # ------------------------------------------------------------------

    def _on_connection_interrupted(self, connection, error, **kwargs):
        """Callback cuando la conexión se interrumpe."""
        self.logger.warning(f"Conexión MQTT interrumpida: {error}")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._handle_interrupted, connection, error)

    def _on_connection_resumed(self, connection, return_code, session_present, **kwargs):
        """Callback cuando CRT restablece la conexión por su cuenta."""
        self.logger.info(f"Conexión MQTT restablecida por CRT: {return_code}")

    def _on_message_received(self, topic, payload, dup=False, qos=None, retain=False, **kwargs):
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._deliver, topic, bytes(payload))

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    def _handle_interrupted(self, connection, error) -> None:
        if connection is not self._connection or not self._open or self._closing:
            return

        self._open = False
        self._connection = None
        # Detiene la reconexión interna de CRT
        connection.disconnect()

        reason = error if isinstance(error, Exception) else ConnectionError(str(error))
        self._notify_close(reason)

    def _deliver(self, topic: str, payload: bytes) -> None:
        if self._open:
            self._notify_message(topic, payload)
