"""Estado del dashboard de flota.

Mantiene buques, alertas, clima y estado del sistema recibidos por el
WebSocket, y notifica los cambios a los listeners registrados
(patrón Observer/Pub-Sub).
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

# Máximo de alertas retenidas (las más nuevas primero)
MAX_ALERTS = 100


class ConnectionStatus(Enum):
    """Estado de la conexión del dashboard."""
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"


@dataclass
class Alert:
    """Alerta de un buque."""
    id: str
    vessel_id: Optional[str]
    alert_type: Optional[str]
    severity: str = "info"
    message: str = ""
    timestamp: Optional[str] = None
    acknowledged: bool = False
    acknowledged_at: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        """Crea una alerta desde el JSON del servidor."""
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            vessel_id=data.get("vesselId"),
            alert_type=data.get("alertType") or data.get("type"),
            severity=data.get("severity", "info"),
            message=data.get("message", ""),
            timestamp=data.get("timestamp"),
            acknowledged=bool(data.get("acknowledged", False)),
            acknowledged_at=data.get("acknowledgedAt"),
            data=dict(data)
        )

    @property
    def is_critical(self) -> bool:
        return self.severity == "critical"

    def duplicates(self, other: "Alert") -> bool:
        """True si ``other`` repite esta alerta.

        Misma id, o mismo buque y tipo mientras esta no fue reconocida.
        """
        if self.id == other.id:
            return True
        return (
            not self.acknowledged
            and self.vessel_id == other.vessel_id
            and self.alert_type == other.alert_type
        )


@dataclass
class FleetState:
    """Estado global del dashboard."""
    vessels: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    alerts: List[Alert] = field(default_factory=list)
    emergencies: List[Alert] = field(default_factory=list)
    weather: Dict[str, Any] = field(default_factory=dict)
    system_status: Dict[str, Any] = field(default_factory=dict)
    history: Dict[str, Any] = field(default_factory=dict)
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_update: Optional[datetime] = None


class FleetStateStore:
    """Store del estado de flota con patrón Observer.

    Tipos de evento: 'vessels', 'alerts', 'emergency', 'weather',
    'system', 'history', 'connection' y 'all' (cualquier cambio).
    """

    def __init__(self):
        """Inicializa el store."""
        self.state = FleetState()
        self.listeners: Dict[str, List[Callable[[FleetState], Any]]] = {}
        self.logger = logging.getLogger(__name__)
        self._lock = asyncio.Lock()

    def add_listener(self, event_type: str, callback: Callable[[FleetState], Any]):
        """Agrega un listener para un tipo de evento.

        Args:
            event_type: Tipo de evento o 'all'
            callback: Función (o corrutina) que recibe el estado
        """
        callbacks = self.listeners.setdefault(event_type, [])
        if callback not in callbacks:
            callbacks.append(callback)
            self.logger.debug(f"Listener agregado para '{event_type}': {callback.__name__}")

    def remove_listener(self, event_type: str, callback: Callable[[FleetState], Any]):
        """Remueve un listener."""
        if event_type in self.listeners and callback in self.listeners[event_type]:
            self.listeners[event_type].remove(callback)
            self.logger.debug(f"Listener removido para '{event_type}': {callback.__name__}")

    async def notify_listeners(self, event_type: str):
        """Notifica a los listeners de un evento y a los globales."""
        callbacks = list(self.listeners.get(event_type, []))
        if event_type != "all":
            callbacks += self.listeners.get("all", [])

        for callback in callbacks:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(self.state)
                else:
                    callback(self.state)
            except Exception as e:
                self.logger.error(f"Error en listener {callback.__name__}: {e}")

    def _touch(self):
        self.state.last_update = datetime.now(timezone.utc)

    async def load_initial(self, data: Dict[str, Any]):
        """Carga el snapshot inicial enviado al conectar.

        Args:
            data: Diccionario con 'fleet', 'alerts', 'weatherData' y 'systemStatus'
        """
        changed = []
        async with self._lock:
            if "fleet" in data:
                self.state.vessels = {v["id"]: v for v in data["fleet"] if "id" in v}
                changed.append("vessels")
            if "alerts" in data:
                self.state.alerts = [Alert.from_dict(a) for a in data["alerts"]][:MAX_ALERTS]
                changed.append("alerts")
            if "weatherData" in data:
                self.state.weather = data["weatherData"]
                changed.append("weather")
            if "systemStatus" in data:
                self.state.system_status = data["systemStatus"]
                changed.append("system")
            self._touch()

        self.logger.info(
            f"Datos iniciales cargados: {len(self.state.vessels)} buques, "
            f"{len(self.state.alerts)} alertas"
        )
        for event_type in changed:
            await self.notify_listeners(event_type)

    async def update_vessel(self, vessel_id: str, vessel: Dict[str, Any]):
        """Actualiza los datos de un buque."""
        async with self._lock:
            self.state.vessels[vessel_id] = vessel
            self._touch()
        await self.notify_listeners("vessels")

    def _insert_alert(self, alert: Alert) -> bool:
        if any(existing.duplicates(alert) for existing in self.state.alerts):
            self.logger.debug(f"Alerta duplicada ignorada: {alert.id}")
            return False

        self.state.alerts.insert(0, alert)
        del self.state.alerts[MAX_ALERTS:]
        self._touch()
        return True

    async def add_alert(self, data: Dict[str, Any]) -> bool:
        """Agrega una alerta nueva.

        Returns:
            False si la alerta estaba repetida
        """
        alert = Alert.from_dict(data)
        async with self._lock:
            added = self._insert_alert(alert)

        if added:
            if alert.is_critical:
                self.logger.warning(f"Alerta crítica de {alert.vessel_id}: {alert.message}")
            await self.notify_listeners("alerts")
        return added

    async def add_emergency(self, data: Dict[str, Any]) -> bool:
        """Agrega una alerta de emergencia."""
        alert = Alert.from_dict(data)
        async with self._lock:
            added = self._insert_alert(alert)
            if added:
                self.state.emergencies.insert(0, alert)
                del self.state.emergencies[MAX_ALERTS:]

        if added:
            self.logger.warning(f"EMERGENCIA en {alert.vessel_id}: {alert.alert_type}")
            await self.notify_listeners("alerts")
            await self.notify_listeners("emergency")
        return added

    async def acknowledge_alert(
        self,
        alert_id: Optional[str] = None,
        alert_type: Optional[str] = None,
        vessel_id: Optional[str] = None,
        acknowledged_at: Optional[str] = None
    ) -> bool:
        """Marca una alerta como reconocida.

        Busca por id; si no hay coincidencia, por tipo y buque entre las
        alertas aún no reconocidas.

        Returns:
            True si se encontró la alerta
        """
        async with self._lock:
            alert = next((a for a in self.state.alerts if alert_id and a.id == alert_id), None)

            if alert is None and alert_type and vessel_id:
                alert = next(
                    (
                        a for a in self.state.alerts
                        if a.alert_type == alert_type and a.vessel_id == vessel_id and not a.acknowledged
                    ),
                    None
                )

            if alert is None:
                return False

            alert.acknowledged = True
            alert.acknowledged_at = acknowledged_at or datetime.now(timezone.utc).isoformat()
            self._touch()

        await self.notify_listeners("alerts")
        return True

    async def update_weather(self, weather: Dict[str, Any]):
        """Actualiza los datos de clima."""
        async with self._lock:
            self.state.weather = weather
            self._touch()
        await self.notify_listeners("weather")

    async def update_system_status(self, status: Dict[str, Any]):
        """Actualiza el estado del sistema."""
        async with self._lock:
            self.state.system_status = status
            self._touch()
        await self.notify_listeners("system")

    async def update_history(self, history: Dict[str, Any]):
        """Actualiza los datos históricos."""
        async with self._lock:
            self.state.history = history
            self._touch()
        await self.notify_listeners("history")

    async def update_connection_status(self, status: ConnectionStatus):
        """Actualiza el estado de conexión."""
        async with self._lock:
            if self.state.connection_status == status:
                return
            old_status = self.state.connection_status
            self.state.connection_status = status

        self.logger.info(f"Conexión del dashboard: {old_status.value} -> {status.value}")
        await self.notify_listeners("connection")

    def active_alerts(self) -> List[Alert]:
        """Alertas no reconocidas."""
        return [a for a in self.state.alerts if not a.acknowledged]

    def get_state(self) -> FleetState:
        """Retorna el estado actual."""
        return self.state

    async def reset_state(self):
        """Resetea el estado a valores por defecto."""
        async with self._lock:
            self.state = FleetState()
        await self.notify_listeners("all")
