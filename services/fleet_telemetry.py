"""Cliente de telemetría de flota sobre un MessageBridge.

Publica telemetría, emergencias y estado de un buque en los tópicos
``fleet/<fleet>/<vessel>/...`` y entrega los comandos de control y los
mensajes de estado a los callbacks registrados.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from modules.ferrylink_bridge.bridge import MessageBridge
from modules.ferrylink_bridge.messages import InboundMessage, SendResult
from modules.ferrylink_bridge.topics import build_topic, parse_topic

logger = logging.getLogger(__name__)

# QoS por tipo de mensaje
TELEMETRY_QOS = 1
EMERGENCY_QOS = 2
STATUS_QOS = 1


@dataclass
class ControlCommand:
    """Comando de control recibido para un buque."""
    vessel_id: str
    system: Optional[str]
    action: Optional[str]
    payload: Any
    topic: str


@dataclass
class StatusUpdate:
    """Mensaje de estado recibido."""
    vessel_id: str
    component: Optional[str]
    payload: Any
    topic: str


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class FleetTelemetryClient:
    """Cliente de telemetría para los buques de una flota."""

    def __init__(self, bridge: MessageBridge, fleet_id: str):
        """Inicializa el cliente.

        Args:
            bridge: Bridge ya configurado (no necesita estar conectado)
            fleet_id: Identificador de la flota (segundo nivel del tópico)
        """
        self.bridge = bridge
        self.fleet_id = fleet_id
        self._control_callbacks: List[Callable[[ControlCommand], Any]] = []
        self._status_callbacks: List[Callable[[StatusUpdate], Any]] = []
        self._subscriptions = []
        self.callback_errors = 0
        logger.info(f"FleetTelemetryClient inicializado para flota {fleet_id}")

    @property
    def control_pattern(self) -> str:
        return f"fleet/{self.fleet_id}/+/control/#"

    @property
    def status_pattern(self) -> str:
        return f"fleet/{self.fleet_id}/+/status/#"

    async def start(self) -> None:
        """Suscribe los tópicos de control y estado e inicia la conexión."""
        for pattern, handler in (
            (self.control_pattern, self._handle_control),
            (self.status_pattern, self._handle_status),
        ):
            ack = await self.bridge.subscribe(pattern, qos=1, callback=handler)
            self._subscriptions.append(ack.subscription)

        self.bridge.connect()

    async def stop(self) -> None:
        """Quita los callbacks y desconecta el bridge."""
        for subscription in self._subscriptions:
            self.bridge.off(subscription)
        self._subscriptions.clear()
        await self.bridge.disconnect()

    async def publish_telemetry(self, vessel_id: str, telemetry: Dict[str, Any]) -> SendResult:
        """Publica datos de telemetría de un buque.

        Args:
            vessel_id: ID del buque
            telemetry: Datos de motor, energía, seguridad, etc.

        Returns:
            SendResult (SENT o BUFFERED)
        """
        message = {
            **telemetry,
            "vesselId": vessel_id,
            "timestamp": _timestamp(),
            "messageId": str(uuid.uuid4()),
        }
        topic = build_topic(self.fleet_id, vessel_id, "telemetry")
        return await self.bridge.send(topic, message, qos=TELEMETRY_QOS)

    async def publish_emergency(
        self,
        vessel_id: str,
        emergency_type: str,
        data: Dict[str, Any]
    ) -> SendResult:
        """Publica una emergencia con QoS 2.

        Args:
            vessel_id: ID del buque
            emergency_type: Tipo de emergencia (fire, flooding, ...)
            data: Detalles de la emergencia
        """
        message = {
            **data,
            "vesselId": vessel_id,
            "emergency": True,
            "type": emergency_type,
            "timestamp": _timestamp(),
            "messageId": str(uuid.uuid4()),
        }
        topic = build_topic(self.fleet_id, vessel_id, "emergency", emergency_type)
        logger.warning(f"Emergencia {emergency_type} publicada para {vessel_id}")
        return await self.bridge.send(topic, message, qos=EMERGENCY_QOS)

    async def publish_status(
        self,
        vessel_id: str,
        component: str,
        status: Dict[str, Any]
    ) -> SendResult:
        """Publica el estado retenido de un componente del buque."""
        message = {
            **status,
            "vesselId": vessel_id,
            "component": component,
            "timestamp": _timestamp(),
        }
        topic = build_topic(self.fleet_id, vessel_id, "status", component)
        return await self.bridge.send(topic, message, qos=STATUS_QOS, retain=True)

    def on_control(self, callback: Callable[[ControlCommand], Any]) -> None:
        """Registra un callback para comandos de control."""
        if callback not in self._control_callbacks:
            self._control_callbacks.append(callback)

    def on_status(self, callback: Callable[[StatusUpdate], Any]) -> None:
        """Registra un callback para mensajes de estado."""
        if callback not in self._status_callbacks:
            self._status_callbacks.append(callback)

    async def _handle_control(self, message: InboundMessage) -> None:
        # fleet/<fleet>/<vessel>/control/<system>/<action>
        parts = message.topic.split("/")
        command = ControlCommand(
            vessel_id=parts[2],
            system=parts[4] if len(parts) > 4 else None,
            action=parts[5] if len(parts) > 5 else None,
            payload=message.payload,
            topic=message.topic
        )
        logger.info(f"Comando de control para {command.vessel_id}: {command.system}/{command.action}")
        await self._notify(self._control_callbacks, command)

    async def _handle_status(self, message: InboundMessage) -> None:
        parts = parse_topic(message.topic)
        if parts is None:
            return
        update = StatusUpdate(
            vessel_id=parts.entity_id,
            component=parts.subtype,
            payload=message.payload,
            topic=message.topic
        )
        logger.debug(f"Actualización de estado: {message.topic}")
        await self._notify(self._status_callbacks, update)

    async def _notify(self, callbacks: List[Callable], data: Any) -> None:
        for callback in list(callbacks):
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(data)
                else:
                    callback(data)
            except Exception as e:
                self.callback_errors += 1
                logger.error(f"Error en callback {getattr(callback, '__name__', callback)}: {e}")
