"""WebSocket Manager para el dashboard de flota.

Mantiene la conexión WebSocket con el servidor del dashboard sobre un
MessageBridge (reconexión con back-off, buffer de salida, heartbeat
``ping``) y vuelca cada tipo de mensaje en el FleetStateStore.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from infrastructure.websocket_transport import WebSocketTransport
from modules.ferrylink_bridge.bridge import LifecycleEvent, MessageBridge
from modules.ferrylink_bridge.config import BridgeConfig
from modules.ferrylink_bridge.dispatch import BridgeEvent
from modules.ferrylink_bridge.messages import InboundMessage, SendResult
from ui.state import ConnectionStatus, FleetStateStore

HEARTBEAT_TYPE = "ping"
HEARTBEAT_INTERVAL = 30.0


class WSManager:
    """Cliente WebSocket del dashboard con reconexión automática."""

    def __init__(
        self,
        url: str,
        store: Optional[FleetStateStore] = None,
        max_retries: int = 10,
        config: Optional[BridgeConfig] = None
    ):
        """Inicializa el WebSocket Manager.

        Args:
            url: URL del WebSocket (ej: ws://localhost:8080)
            store: Store donde se vuelcan los mensajes
            max_retries: Número máximo de reintentos de conexión
            config: Configuración completa; reemplaza url y max_retries
        """
        self.url = url
        self.store = store or FleetStateStore()
        self.config = config or BridgeConfig(
            endpoint=url,
            max_reconnect_attempts=max_retries,
            heartbeat_topic=HEARTBEAT_TYPE,
            heartbeat_interval=HEARTBEAT_INTERVAL
        )
        self.bridge = MessageBridge(WebSocketTransport(self.config), self.config, name="dashboard")
        self.logger = logging.getLogger(__name__)

        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            "initial_data": self._handle_initial_data,
            "vessel_update": self._handle_vessel_update,
            "new_alert": self.store.add_alert,
            "emergency_alert": self.store.add_emergency,
            "alert_acknowledged": self._handle_alert_acknowledged,
            "weather_update": self.store.update_weather,
            "system_status": self.store.update_system_status,
            "historical_data": self.store.update_history,
        }
        self._subscribed = False

        self.bridge.on(BridgeEvent.CONNECTED, self._on_connected)
        self.bridge.on(BridgeEvent.DISCONNECTED, self._on_disconnected)
        self.bridge.on(BridgeEvent.RECONNECTING, self._on_reconnecting)
        self.bridge.on(BridgeEvent.FAILED, self._on_failed)

    @property
    def connected(self) -> bool:
        """Retorna True si está conectado."""
        return self.bridge.is_connected

    async def connect(self, timeout: Optional[float] = None) -> bool:
        """Inicia la conexión.

        Args:
            timeout: Segundos a esperar la conexión; None espera sin límite

        Returns:
            True si quedó conectado dentro del timeout
        """
        if not self._subscribed:
            await self.bridge.subscribe("#", callback=self._handle_message)
            self._subscribed = True

        self.bridge.connect()
        return await self.bridge.wait_connected(timeout)

    async def disconnect(self):
        """Cierra la conexión sin reconectar."""
        await self.bridge.disconnect()
        await self.store.update_connection_status(ConnectionStatus.DISCONNECTED)

    async def send(self, message_type: str, data: Optional[Dict[str, Any]] = None) -> SendResult:
        """Envía un mensaje al servidor (se bufferiza si no hay conexión).

        Args:
            message_type: Tipo de mensaje (get_status, acknowledge_alert, ...)
            data: Datos del mensaje
        """
        return await self.bridge.send(message_type, data if data is not None else {})

    async def _handle_message(self, message: InboundMessage):
        handler = self._handlers.get(message.topic)
        if handler is None:
            self.logger.debug(f"Tipo de mensaje no manejado: {message.topic}")
            return
        await handler(message.payload)

    async def _handle_initial_data(self, data: Dict[str, Any]):
        await self.store.load_initial(data)

    async def _handle_vessel_update(self, data: Dict[str, Any]):
        vessel_id = data.get("vesselId")
        if not vessel_id:
            self.logger.warning("vessel_update sin vesselId")
            return
        await self.store.update_vessel(vessel_id, data.get("vessel", {}))

    async def _handle_alert_acknowledged(self, data: Dict[str, Any]):
        found = await self.store.acknowledge_alert(
            alert_id=data.get("alertId"),
            alert_type=data.get("alertType"),
            vessel_id=data.get("vesselId"),
            acknowledged_at=data.get("acknowledgedAt")
        )
        if not found:
            self.logger.warning(f"Reconocimiento de alerta desconocida: {data}")

    async def _on_connected(self, event: LifecycleEvent):
        await self.store.update_connection_status(ConnectionStatus.CONNECTED)

    async def _on_disconnected(self, event: LifecycleEvent):
        await self.store.update_connection_status(ConnectionStatus.DISCONNECTED)

    async def _on_reconnecting(self, event: LifecycleEvent):
        await self.store.update_connection_status(ConnectionStatus.CONNECTING)

    async def _on_failed(self, error: Exception):
        self.logger.error(f"Dashboard sin conexión: {error}")
        await self.store.update_connection_status(ConnectionStatus.DISCONNECTED)
