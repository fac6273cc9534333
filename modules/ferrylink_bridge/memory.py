"""Broker y transporte en memoria.

Permiten ejecutar el bridge sin red: simulaciones de flota, demos y
pruebas. El broker enruta con la semántica de comodines de MQTT, guarda
mensajes retenidos y permite inyectar fallas (conexiones rechazadas,
caídas de sesión, escrituras fallidas).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Dict, List, Optional

from modules.ferrylink_bridge.errors import ConnectError, TransportError
from modules.ferrylink_bridge.topics import is_valid_pattern, topic_matches
from modules.ferrylink_bridge.transport import Transport


@dataclass
class PublishedMessage:
    """Registro de una publicación recibida por el broker."""
    topic: str
    payload: bytes
    qos: int = 0
    retain: bool = False
    sender: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class MemoryBroker:
    """Broker publish/subscribe en proceso."""

    def __init__(self, name: str = "local", users: Optional[Dict[str, str]] = None):
        """Inicializa el broker.

        Args:
            name: Nombre del broker (host de los endpoints memory://)
            users: Usuarios permitidos (usuario -> contraseña); None acepta a todos
        """
        self.name = name
        self.users = users
        self.logger = logging.getLogger(__name__)

        self.published: List[PublishedMessage] = []
        self.connect_attempts = 0
        self._sessions: List["MemoryTransport"] = []
        self._retained: Dict[str, bytes] = {}
        self._failing_connects = 0
        self._fail_reason = "broker no disponible"
        self._reject_writes = False

    @property
    def endpoint(self) -> str:
        return f"memory://{self.name}"

    @property
    def session_count(self) -> int:
        """Sesiones abiertas."""
        return len(self._sessions)

    def fail_next_connects(self, count: int, reason: str = "broker no disponible") -> None:
        """Rechaza los próximos ``count`` intentos de conexión."""
        self._failing_connects = count
        self._fail_reason = reason

    def reject_writes(self, reject: bool = True) -> None:
        """Hace fallar (o no) todas las escrituras."""
        self._reject_writes = reject

    def drop_sessions(self, reason: str = "conexión perdida") -> int:
        """Corta todas las sesiones abiertas como lo haría una caída de red.

        Returns:
            Número de sesiones cortadas
        """
        sessions = list(self._sessions)
        for session in sessions:
            session._drop(ConnectionError(reason))
        if sessions:
            self.logger.warning(f"Broker {self.name}: {len(sessions)} sesiones cortadas ({reason})")
        return len(sessions)

    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = 0,
        retain: bool = False,
        sender: Optional[str] = None
    ) -> int:
        """Enruta una publicación a las sesiones suscritas.

        Un payload vacío con retain borra el mensaje retenido del tópico.

        Returns:
            Número de sesiones que recibirán el mensaje
        """
        self.published.append(PublishedMessage(topic, payload, qos, retain, sender))

        if retain:
            if payload:
                self._retained[topic] = payload
            else:
                self._retained.pop(topic, None)

        routed = 0
        for session in list(self._sessions):
            if session.is_subscribed_to(topic):
                session._deliver(topic, payload)
                routed += 1
        return routed

    def retained(self, topic: str) -> Optional[bytes]:
        """Mensaje retenido de un tópico."""
        return self._retained.get(topic)

    def messages_on(self, topic_pattern: str) -> List[bytes]:
        """Payloads publicados en tópicos que coinciden con el patrón."""
        return [m.payload for m in self.published if topic_matches(topic_pattern, m.topic)]

    def _attach(self, session: "MemoryTransport") -> None:
        self.connect_attempts += 1

        if self._failing_connects > 0:
            self._failing_connects -= 1
            raise ConnectError(session.endpoint, self._fail_reason)

        if self.users is not None and (
            session.username is None or self.users.get(session.username) != session.password
        ):
            raise ConnectError(session.endpoint, "credenciales rechazadas", permanent=True)

        if session not in self._sessions:
            self._sessions.append(session)
        self.logger.debug(f"Broker {self.name}: sesión {session.client_id} abierta")

    def _detach(self, session: "MemoryTransport") -> None:
        if session in self._sessions:
            self._sessions.remove(session)
            self.logger.debug(f"Broker {self.name}: sesión {session.client_id} cerrada")

    def _retained_for(self, topic_pattern: str) -> List[tuple]:
        return [(t, p) for t, p in self._retained.items() if topic_matches(topic_pattern, t)]


class MemoryTransport(Transport):
    """Transporte conectado a un MemoryBroker.

    Cada open() empieza una sesión limpia: las suscripciones previas se
    descartan y el bridge las repone.
    """

    def __init__(
        self,
        broker: MemoryBroker,
        client_id: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None
    ):
        super().__init__(broker.endpoint)
        self.broker = broker
        self.client_id = client_id or "memory-client"
        self.username = username
        self.password = password
        self._open = False
        self._patterns: Dict[str, int] = {}

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def patterns(self) -> List[str]:
        """Patrones suscritos en la sesión actual."""
        return list(self._patterns)

    async def open(self) -> None:
        # Cede el loop como lo haría un handshake real
        await asyncio.sleep(0)
        self.broker._attach(self)
        self._patterns.clear()
        self._open = True

    def write(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False) -> Awaitable[None]:
        if not self._open:
            raise TransportError(topic, "sesión cerrada")

        ack = asyncio.get_running_loop().create_future()
        if self.broker._reject_writes:
            ack.set_exception(TransportError(topic, "publicación rechazada por el broker"))
        else:
            self.broker.publish(topic, payload, qos, retain, sender=self.client_id)
            ack.set_result(None)
        return ack

    async def subscribe(self, topic_pattern: str, qos: int = 0) -> None:
        if not self._open:
            raise TransportError(topic_pattern, "sesión cerrada")
        if not is_valid_pattern(topic_pattern):
            raise TransportError(topic_pattern, "patrón rechazado por el broker")

        self._patterns[topic_pattern] = qos
        for topic, payload in self.broker._retained_for(topic_pattern):
            self._deliver(topic, payload)

    async def unsubscribe(self, topic_pattern: str) -> None:
        self._patterns.pop(topic_pattern, None)

    async def close(self) -> None:
        self._open = False
        self._patterns.clear()
        self.broker._detach(self)

    def is_subscribed_to(self, topic: str) -> bool:
        return any(topic_matches(pattern, topic) for pattern in self._patterns)

    def _deliver(self, topic: str, payload: bytes) -> None:
        asyncio.get_running_loop().call_soon(self._deliver_now, topic, payload)

    def _deliver_now(self, topic: str, payload: bytes) -> None:
        if self._open:
            self._notify_message(topic, payload)

    def _drop(self, reason: Exception) -> None:
        if not self._open:
            return
        self._open = False
        self._patterns.clear()
        self.broker._detach(self)
        self._notify_close(reason)
