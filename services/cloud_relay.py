"""Relay de mensajes de flota entre dos brokers.

Toma los mensajes de telemetría, emergencia y estado del broker de origen
(p. ej. HiveMQ Cloud), les agrega metadatos y los reenvía al broker de
destino (p. ej. AWS IoT Core). La telemetría se evalúa contra umbrales de
alerta y cada alerta se publica en ``alerts/<fleet>/<vessel>/<tipo>``.
Mientras el destino está caído los mensajes quedan en el buffer de su bridge.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from modules.ferrylink_bridge.bridge import MessageBridge
from modules.ferrylink_bridge.errors import BridgeError
from modules.ferrylink_bridge.messages import InboundMessage
from modules.ferrylink_bridge.topics import FLEET_ROOT, parse_topic

logger = logging.getLogger(__name__)

RELAY_QOS = 1
EMERGENCY_ROOT = "emergency"
ALERTS_ROOT = "alerts"

# Umbrales de alerta sobre la telemetría (warning, critical)
ALERT_THRESHOLDS: Dict[str, Dict[str, Any]] = {
    "engine_temperature": {"warning": 95, "critical": 105},
    "engine_rpm": {"warning": 1800, "critical": 2000},
    "battery_soc": {"warning": 25, "critical": 15},
    "voltage": {"warning": 11.5, "critical": 11.0},
    "bilge_level": {"warning": 40, "critical": 60},
}

# (sección, campo, umbral, tipo de alerta, descripción, unidad, sube)
_SENSOR_CHECKS = (
    ("engine", "temperature", "engine_temperature", "ENGINE_TEMPERATURE", "Temperatura de motor", "°C", True),
    ("engine", "rpm", "engine_rpm", "ENGINE_RPM", "RPM de motor", "", True),
    ("power", "batterySOC", "battery_soc", "BATTERY_SOC", "Carga de batería", "%", False),
    ("power", "voltage", "voltage", "VOLTAGE", "Tensión", "V", False),
    ("safety", "bilgeLevel", "bilge_level", "BILGE_LEVEL", "Nivel de sentina", "cm", True),
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def create_alert(vessel_id: str, alert_type: str, message: str, severity: str) -> Dict[str, Any]:
    """Crea el objeto de alerta publicado en el destino."""
    return {
        "alertId": f"alert_{vessel_id}_{alert_type}_{int(time.time() * 1000)}",
        "vesselId": vessel_id,
        "alertType": alert_type,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def check_telemetry_alerts(vessel_id: str, telemetry: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Evalúa los sensores de un mensaje de telemetría contra los umbrales.

    Los sensores se leen de ``telemetry["sensors"]`` agrupados por sección
    (engine, power, safety). Cada lectura genera a lo sumo una alerta: la
    crítica tiene prioridad sobre la de advertencia.

    Args:
        vessel_id: ID del buque
        telemetry: Payload de telemetría

    Returns:
        Lista de alertas (vacía si todo está dentro de rango)
    """
    sensors = telemetry.get("sensors")
    if not isinstance(sensors, dict):
        return []

    alerts = []
    for section, field, threshold_key, alert_type, label, unit, rising in _SENSOR_CHECKS:
        values = sensors.get(section)
        value = values.get(field) if isinstance(values, dict) else None
        if not _is_number(value):
            continue

        thresholds = ALERT_THRESHOLDS[threshold_key]
        if rising:
            critical, warning = value >= thresholds["critical"], value >= thresholds["warning"]
        else:
            critical, warning = value <= thresholds["critical"], value <= thresholds["warning"]

        if critical:
            alerts.append(create_alert(
                vessel_id, f"{alert_type}_CRITICAL", f"{label} en nivel crítico: {value}{unit}", "CRITICAL"
            ))
        elif warning:
            alerts.append(create_alert(
                vessel_id, f"{alert_type}_WARNING", f"{label} fuera de rango: {value}{unit}", "WARNING"
            ))

    safety = sensors.get("safety")
    if isinstance(safety, dict) and safety.get("fireAlarm") is True:
        alerts.append(create_alert(vessel_id, "FIRE_ALARM", "Alarma de incendio activada", "CRITICAL"))

    return alerts


class CloudRelay:
    """Relay origen -> destino con enriquecimiento de mensajes."""

    def __init__(
        self,
        source: MessageBridge,
        destination: MessageBridge,
        fleet_id: str,
        source_label: str = "hivemq-bridge"
    ):
        """Inicializa el relay.

        Args:
            source: Bridge del broker de origen
            destination: Bridge del broker de destino
            fleet_id: Flota cuyos tópicos se reenvían
            source_label: Valor del campo ``source`` agregado a cada mensaje
        """
        self.source = source
        self.destination = destination
        self.fleet_id = fleet_id
        self.source_label = source_label

        self._running = False
        self._subscriptions = []
        self._stats = {
            "messages_processed": 0,
            "messages_forwarded": 0,
            "emergencies": 0,
            "alerts_generated": 0,
            "errors": 0,
        }
        self._last_activity: Optional[float] = None

    @property
    def patterns(self) -> List[str]:
        """Patrones suscritos en el origen."""
        prefix = f"{FLEET_ROOT}/{self.fleet_id}/+"
        return [
            f"{prefix}/telemetry",
            f"{prefix}/emergency/+",
            f"{prefix}/status/#",
        ]

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Suscribe los tópicos de la flota y conecta ambos bridges."""
        if self._running:
            logger.warning("Relay ya iniciado")
            return

        for pattern in self.patterns:
            ack = await self.source.subscribe(pattern, qos=RELAY_QOS, callback=self._relay)
            self._subscriptions.append(ack.subscription)

        self.destination.connect()
        self.source.connect()
        self._running = True
        logger.info(f"Relay iniciado: {self.source.name} -> {self.destination.name}")

    async def stop(self) -> None:
        """Detiene el relay y desconecta ambos bridges."""
        if not self._running:
            return

        for subscription in self._subscriptions:
            self.source.off(subscription)
        self._subscriptions.clear()

        for pattern in self.patterns:
            await self.source.unsubscribe(pattern)

        await self.source.disconnect()
        await self.destination.disconnect()
        self._running = False
        logger.info("Relay detenido")

    async def _relay(self, message: InboundMessage) -> None:
        """Reenvía un mensaje del origen al destino."""
        self._stats["messages_processed"] += 1
        self._last_activity = time.time()

        if not isinstance(message.payload, dict):
            self._stats["errors"] += 1
            logger.error(f"Mensaje descartado en {message.topic}: se esperaba un objeto JSON")
            return

        timestamp = datetime.now(timezone.utc).isoformat()
        enriched: Dict[str, Any] = {
            **message.payload,
            "originalTopic": message.topic,
            "bridgeTimestamp": timestamp,
            "source": self.source_label,
        }

        parts = parse_topic(message.topic)
        category = parts.category if parts else None

        alerts: List[Dict[str, Any]] = []
        if category == "telemetry":
            alerts = check_telemetry_alerts(parts.entity_id, message.payload)
            enriched["processed"] = True
            enriched["processingTimestamp"] = timestamp
            enriched["alertsGenerated"] = len(alerts)

        try:
            await self.destination.send(message.topic, enriched, qos=RELAY_QOS)
            self._stats["messages_forwarded"] += 1

            if category == "emergency":
                await self._raise_emergency(message.topic, enriched)
            for alert in alerts:
                await self._publish_alert(alert)
        except BridgeError as e:
            self._stats["errors"] += 1
            logger.error(f"Error reenviando {message.topic}: {e}")

    async def _raise_emergency(self, topic: str, enriched: Dict[str, Any]) -> None:
        # fleet/<fleet>/<vessel>/emergency/<type> -> emergency/<fleet>/<vessel>/emergency/<type>
        alert_topic = f"{EMERGENCY_ROOT}/{topic[len(FLEET_ROOT) + 1:]}"
        alert = {**enriched, "priority": "CRITICAL", "alertType": "EMERGENCY"}

        logger.warning(f"EMERGENCIA reenviada a {alert_topic}")
        await self.destination.send(alert_topic, alert, qos=RELAY_QOS)
        self._stats["emergencies"] += 1

    async def _publish_alert(self, alert: Dict[str, Any]) -> None:
        topic = f"{ALERTS_ROOT}/{self.fleet_id}/{alert['vesselId']}/{alert['alertType'].lower()}"
        logger.warning(f"Alerta {alert['alertType']} para {alert['vesselId']}: {alert['message']}")
        await self.destination.send(topic, alert, qos=RELAY_QOS)
        self._stats["alerts_generated"] += 1

    def get_status(self) -> Dict[str, Any]:
        """Estado del relay y de ambos bridges."""
        return {
            "running": self._running,
            "fleet_id": self.fleet_id,
            "source": self.source.get_status(),
            "destination": self.destination.get_status(),
            "last_activity": self._last_activity,
            **self._stats,
        }
