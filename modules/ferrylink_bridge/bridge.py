"""Bridge de mensajes con reconexión automática.

Mantiene una conexión persistente sobre un transporte poco fiable:
- Bufferiza mensajes salientes mientras no hay conexión
- Reconecta con back-off exponencial hasta un máximo de intentos
- Vacía el buffer al reconectar, antes de notificar a los suscriptores
- Distribuye los mensajes entrantes a los suscriptores interesados
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from modules.ferrylink_bridge.backoff import ExponentialBackoff
from modules.ferrylink_bridge.buffer import OutboundBuffer
from modules.ferrylink_bridge.config import BridgeConfig
from modules.ferrylink_bridge.dispatch import BridgeEvent, SubscriberRegistry, Subscription
from modules.ferrylink_bridge.errors import (
    BridgeError,
    ConnectError,
    DecodeError,
    RetryExhaustedError,
    TransportError,
)
from modules.ferrylink_bridge.messages import (
    InboundMessage,
    OutboundMessage,
    SendResult,
    SendStatus,
    SubscribeAck,
    SubscribeStatus,
    decode_payload,
    encode_payload,
)
from modules.ferrylink_bridge.topics import is_valid_pattern, is_valid_topic
from modules.ferrylink_bridge.transport import Transport


class BridgeState(Enum):
    """Estados de conexión del bridge."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


# Estados en los que connect() no hace nada
_ACTIVE_STATES = (BridgeState.CONNECTING, BridgeState.CONNECTED, BridgeState.RECONNECTING)


@dataclass
class LifecycleEvent:
    """Datos de los eventos connected/disconnected/reconnecting."""
    state: BridgeState
    reason: Optional[Exception] = None
    attempt: int = 0
    delay: Optional[float] = None


class MessageBridge:
    """Bridge de mensajes sobre un Transport.

    Una instancia gestiona una única conexión lógica. Todas las
    transiciones ocurren en el event loop, así que no hay escritores
    concurrentes del estado.
    """

    def __init__(self, transport: Transport, config: BridgeConfig, name: Optional[str] = None):
        """Inicializa el bridge.

        Args:
            transport: Transporte subyacente (MQTT, WebSocket, memoria)
            config: Configuración de reconexión, buffer y heartbeat
            name: Nombre para logs; por defecto el client_id
        """
        self.transport = transport
        self.config = config
        self.name = name or config.client_id
        self.logger = logging.getLogger(__name__)

        # Estado de conexión
        self._state = BridgeState.DISCONNECTED
        self._manual_close = False
        self._last_contact: Optional[float] = None
        self._last_heartbeat: Optional[float] = None
        self._last_error: Optional[Exception] = None
        self._started_at = time.monotonic()

        self._backoff = ExponentialBackoff(
            max_attempts=config.max_reconnect_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter=config.jitter
        )
        self._buffer = OutboundBuffer(config.buffer_capacity, config.overflow_policy)
        self._registry = SubscriberRegistry()

        # Patrones suscritos en el broker (se reponen al reconectar)
        self._topic_subscriptions: Dict[str, int] = {}

        # Tareas asíncronas
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._pending_acks: Set[asyncio.Future] = set()
        self._waiters: List[asyncio.Future] = []

        self._stats: Dict[str, int] = {
            "connects": 0,
            "sent": 0,
            "send_failures": 0,
            "buffered": 0,
            "flushed": 0,
            "flush_failures": 0,
            "dropped": 0,
            "received": 0,
            "decode_errors": 0,
        }

        transport.bind(
            on_close=self._on_transport_close,
            on_error=self._on_transport_error,
            on_message=self._on_transport_message
        )

    # ------------------------------------------------------------------
    # Propiedades
    # ------------------------------------------------------------------

    @property
    def state(self) -> BridgeState:
        """Estado de conexión actual."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """True si está conectado."""
        return self._state == BridgeState.CONNECTED

    @property
    def retry_attempts(self) -> int:
        """Reintentos consecutivos desde la última conexión exitosa."""
        return self._backoff.attempt

    @property
    def buffered_count(self) -> int:
        """Mensajes pendientes en el buffer."""
        return len(self._buffer)

    @property
    def last_contact(self) -> Optional[float]:
        """Timestamp del último contacto exitoso con el endpoint."""
        return self._last_contact

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def connect(self) -> Optional[asyncio.Task]:
        """Inicia la conexión sin bloquear.

        Es idempotente: si ya está conectando, conectado o esperando un
        reintento no hace nada. Desde FAILED o CLOSED reinicia el contador
        de reintentos.

        Returns:
            La tarea del intento de conexión, o None si no hizo nada
        """
        if self._state in _ACTIVE_STATES:
            self.logger.debug(f"[{self.name}] connect() ignorado: estado {self._state.value}")
            return None

        if self._state in (BridgeState.FAILED, BridgeState.CLOSED):
            self._backoff.reset()

        self._manual_close = False
        self._state = BridgeState.CONNECTING
        self._connect_task = asyncio.get_running_loop().create_task(self._attempt_connect())
        return self._connect_task

    async def disconnect(self) -> None:
        """Cierra la conexión manualmente.

        Cancela en un solo paso el reintento pendiente, el intento en curso
        y el heartbeat. No se reconecta automáticamente después.
        """
        if self._state == BridgeState.CLOSED:
            return

        previous = self._state
        self._manual_close = True
        self._state = BridgeState.CLOSED
        self.logger.info(f"[{self.name}] Desconectando de {self.transport.endpoint}...")

        tasks = [t for t in (self._reconnect_task, self._connect_task, self._heartbeat_task) if t]
        for task in tasks:
            task.cancel()
        self._reconnect_task = None
        self._connect_task = None
        self._heartbeat_task = None

        current = asyncio.current_task()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._resolve_waiters(False)

        await self._release_transport()

        if previous == BridgeState.CONNECTED:
            self._registry.dispatch(
                BridgeEvent.DISCONNECTED,
                LifecycleEvent(state=BridgeState.CLOSED)
            )

        self.logger.info(f"[{self.name}] Bridge desconectado")

    async def shutdown(self) -> None:
        """Desconecta y libera suscriptores y mensajes pendientes."""
        await self.disconnect()

        if self._buffer:
            self.logger.warning(
                f"[{self.name}] Descartando {len(self._buffer)} mensajes pendientes al cerrar"
            )
            self._buffer.clear()

        self._registry.clear()
        self._topic_subscriptions.clear()

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Espera a que el bridge quede conectado.

        Returns:
            True si conectó; False si falló, se cerró o venció el timeout
        """
        if self._state == BridgeState.CONNECTED:
            return True
        if self._state not in _ACTIVE_STATES:
            return False

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    async def _attempt_connect(self) -> None:
        """Abre el transporte y completa la transición a CONNECTED."""
        self.logger.info(f"[{self.name}] Conectando a {self.transport.endpoint}...")

        error: Optional[ConnectError] = None
        try:
            await asyncio.wait_for(self.transport.open(), timeout=self.config.connect_timeout)
        except ConnectError as e:
            error = e
        except asyncio.TimeoutError as e:
            error = ConnectError(
                self.transport.endpoint,
                f"timeout tras {self.config.connect_timeout}s",
                original_error=e
            )
        except Exception as e:
            error = ConnectError(
                self.transport.endpoint,
                str(e) or type(e).__name__,
                original_error=e
            )

        if error is not None:
            # Nunca quedan dos sesiones vivas con el mismo client_id
            await self._release_transport()
            if self._state == BridgeState.CONNECTING:
                self._handle_connection_lost(error)
            return

        if self._state != BridgeState.CONNECTING:
            return

        self._on_open()
        await self._restore_subscriptions()

    async def _release_transport(self) -> None:
        try:
            await self.transport.close()
        except Exception as e:
            self.logger.error(f"[{self.name}] Error cerrando transporte: {e}")

    def _on_open(self) -> None:
        self._state = BridgeState.CONNECTED
        self._backoff.reset()
        self._last_contact = time.time()
        self._last_error = None
        self._stats["connects"] += 1
        self.logger.info(f"[{self.name}] Conectado a {self.transport.endpoint}")

        # El buffer se vacía antes de que los suscriptores vean el evento
        self.flush()
        self._start_heartbeat()
        self._resolve_waiters(True)
        self._registry.dispatch(BridgeEvent.CONNECTED, LifecycleEvent(state=BridgeState.CONNECTED))

    async def _restore_subscriptions(self) -> None:
        for pattern, qos in list(self._topic_subscriptions.items()):
            if self._state != BridgeState.CONNECTED:
                return
            try:
                await self.transport.subscribe(pattern, qos)
                self.logger.info(f"[{self.name}] Suscrito a {pattern} (QoS {qos})")
            except Exception as e:
                error = e if isinstance(e, TransportError) else TransportError(pattern, str(e), e)
                self.logger.error(f"[{self.name}] Error reponiendo suscripción {pattern}: {error}")
                self._registry.dispatch(BridgeEvent.ERROR, error)

    def _on_transport_close(self, reason: Optional[Exception]) -> None:
        # Los cierres durante CONNECTING los reporta open(); el resto ya se procesó
        if self._state != BridgeState.CONNECTED:
            return
        self._handle_connection_lost(reason)

    def _on_transport_error(self, error: Exception) -> None:
        self.logger.error(f"[{self.name}] Error de transporte: {error}")
        self._registry.dispatch(BridgeEvent.ERROR, error)

    def _handle_connection_lost(self, reason: Optional[Exception]) -> None:
        was_connected = self._state == BridgeState.CONNECTED
        self._stop_heartbeat()
        self._state = BridgeState.DISCONNECTED
        self._last_error = reason

        if was_connected:
            self.logger.warning(f"[{self.name}] Conexión perdida: {reason}")
        else:
            self.logger.error(f"[{self.name}] Intento de conexión fallido: {reason}")

        if reason is not None:
            self._registry.dispatch(BridgeEvent.ERROR, reason)
        self._registry.dispatch(
            BridgeEvent.DISCONNECTED,
            LifecycleEvent(state=BridgeState.DISCONNECTED, reason=reason, attempt=self.retry_attempts)
        )

        # Un suscriptor pudo haber llamado connect() o disconnect()
        if self._manual_close or self._state != BridgeState.DISCONNECTED:
            return

        self._schedule_reconnect(reason)

    def _schedule_reconnect(self, reason: Optional[Exception]) -> None:
        if (
            self.config.fail_fast_on_auth
            and isinstance(reason, ConnectError)
            and reason.permanent
        ):
            self._enter_failed(reason)
            return

        delay = self._backoff.next_delay()
        if delay is None:
            self._enter_failed(RetryExhaustedError(self._backoff.attempt, original_error=reason))
            return

        attempt = self._backoff.attempt
        self._state = BridgeState.RECONNECTING
        self.logger.info(
            f"[{self.name}] Reintento {attempt}/{self._backoff.max_attempts} en {delay:.2f}s"
        )
        self._registry.dispatch(
            BridgeEvent.RECONNECTING,
            LifecycleEvent(state=BridgeState.RECONNECTING, reason=reason, attempt=attempt, delay=delay)
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)

        if self._state != BridgeState.RECONNECTING:
            return

        self._state = BridgeState.CONNECTING
        await self._attempt_connect()

    def _enter_failed(self, error: BridgeError) -> None:
        self._state = BridgeState.FAILED
        self._last_error = error
        self.logger.error(f"[{self.name}] {error}")
        self._resolve_waiters(False)
        self._registry.dispatch(BridgeEvent.FAILED, error)

    def _resolve_waiters(self, connected: bool) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(connected)

    # ------------------------------------------------------------------
    # Salida
    # ------------------------------------------------------------------

    async def send(self, topic: str, payload: Any, qos: int = 0, retain: bool = False) -> SendResult:
        """Envía un mensaje o lo bufferiza si no hay conexión.

        Args:
            topic: Tópico destino (sin comodines)
            payload: bytes, str o cualquier valor serializable a JSON
            qos: Nivel de QoS (0, 1, 2)
            retain: Flag retain de MQTT

        Returns:
            SendResult con estado SENT o BUFFERED

        Raises:
            TransportError: Tópico inválido, payload no serializable o
                falla de escritura con la conexión activa
            BufferOverflowError: Buffer lleno con política REJECT_NEW
        """
        if not is_valid_topic(topic):
            raise TransportError(topic, "tópico inválido para publicar")
        if qos not in (0, 1, 2):
            raise TransportError(topic, f"QoS inválido: {qos}")

        try:
            data = encode_payload(payload)
        except (TypeError, ValueError) as e:
            raise TransportError(topic, "payload no serializable", e)

        message = OutboundMessage(topic=topic, payload=data, qos=qos, retain=retain)

        if self._state == BridgeState.CONNECTED:
            await self._transmit(message)
            return SendResult(SendStatus.SENT, message.message_id, topic)

        self._enqueue(message)
        return SendResult(SendStatus.BUFFERED, message.message_id, topic)

    async def _transmit(self, message: OutboundMessage) -> None:
        try:
            await self.transport.write(message.topic, message.payload, message.qos, message.retain)
        except TransportError:
            self._stats["send_failures"] += 1
            raise
        except Exception as e:
            self._stats["send_failures"] += 1
            raise TransportError(message.topic, str(e) or type(e).__name__, e)

        self._stats["sent"] += 1
        self._last_contact = time.time()
        self.logger.debug(
            f"[{self.name}] Publicado en {message.topic} "
            f"(QoS {message.qos}, retain={message.retain}, {message.size} bytes)"
        )

    def _enqueue(self, message: OutboundMessage) -> None:
        evicted = self._buffer.push(message)
        self._stats["buffered"] += 1
        self.logger.info(
            f"[{self.name}] Mensaje en buffer (estado {self._state.value}): {message.topic}"
        )

        if evicted is not None:
            self._stats["dropped"] += 1
            self._registry.dispatch(BridgeEvent.DROPPED, evicted, topic=evicted.topic)

    def flush(self) -> int:
        """Transmite los mensajes del buffer en orden de inserción.

        Cada mensaje sale del buffer al emitirse, sin esperar confirmación.
        Las fallas se registran y no se reencolan.

        Returns:
            Número de mensajes emitidos
        """
        if self._state != BridgeState.CONNECTED or not self._buffer:
            return 0

        self.logger.info(f"[{self.name}] Vaciando {len(self._buffer)} mensajes del buffer")
        issued = 0

        for message in self._buffer.drain():
            try:
                ack = self.transport.write(message.topic, message.payload, message.qos, message.retain)
            except Exception as e:
                self._stats["flush_failures"] += 1
                self.logger.error(f"[{self.name}] Error enviando mensaje {message.message_id}: {e}")
                continue

            issued += 1
            self._track_flush_ack(message, ack)

        self._stats["flushed"] += issued
        return issued

    def _track_flush_ack(self, message: OutboundMessage, ack: Awaitable[None]) -> None:
        future = asyncio.ensure_future(ack)
        self._pending_acks.add(future)

        def _done(finished: asyncio.Future):
            self._pending_acks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                self._stats["flush_failures"] += 1
                self.logger.error(
                    f"[{self.name}] Falló mensaje del buffer {message.message_id} "
                    f"en {message.topic}: {error}"
                )
            else:
                self._last_contact = time.time()
                self.logger.debug(f"[{self.name}] Mensaje del buffer enviado a {message.topic}")

        future.add_done_callback(_done)

    def pending_messages(self) -> List[OutboundMessage]:
        """Copia ordenada de los mensajes en buffer."""
        return self._buffer.snapshot()

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        if not self.config.heartbeat_topic:
            return
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        """Bucle de heartbeat."""
        while self._state == BridgeState.CONNECTED:
            await asyncio.sleep(self.config.heartbeat_interval)
            if self._state != BridgeState.CONNECTED:
                break

            heartbeat = {
                "timestamp": time.time(),
                "status": "online",
                "client_id": self.config.client_id,
                "uptime": round(time.monotonic() - self._started_at, 3),
            }
            try:
                await self.send(self.config.heartbeat_topic, heartbeat)
                self._last_heartbeat = time.time()
            except BridgeError as e:
                self.logger.error(f"[{self.name}] Error en heartbeat: {e}")

    # ------------------------------------------------------------------
    # Entrada
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        topic_pattern: str,
        qos: int = 0,
        callback: Optional[Callable[[InboundMessage], Any]] = None
    ) -> SubscribeAck:
        """Suscribe un patrón de tópicos en el broker.

        Sin conexión la suscripción queda pendiente y se aplica al conectar.
        Las suscripciones se reponen tras cada reconexión.

        Args:
            topic_pattern: Patrón con comodines + y #
            qos: QoS solicitado
            callback: Si se indica, se registra para los mensajes del patrón

        Raises:
            TransportError: Patrón inválido o rechazado por el broker
        """
        if not is_valid_pattern(topic_pattern):
            raise TransportError(topic_pattern, "patrón de suscripción inválido")

        subscription = None
        if callback is not None:
            subscription = self.on(BridgeEvent.MESSAGE, callback, topic=topic_pattern)

        self._topic_subscriptions[topic_pattern] = qos

        if self._state != BridgeState.CONNECTED:
            self.logger.info(f"[{self.name}] Suscripción a {topic_pattern} pendiente de conexión")
            return SubscribeAck(topic_pattern, qos, SubscribeStatus.PENDING, subscription)

        try:
            await self.transport.subscribe(topic_pattern, qos)
        except Exception as e:
            if self._state != BridgeState.CONNECTED and topic_pattern in self._topic_subscriptions:
                # La sesión cayó durante la suscripción: se repone al reconectar
                self.logger.warning(
                    f"[{self.name}] Suscripción a {topic_pattern} pendiente tras perder la conexión: {e}"
                )
                return SubscribeAck(topic_pattern, qos, SubscribeStatus.PENDING, subscription)

            self._topic_subscriptions.pop(topic_pattern, None)
            if subscription is not None:
                self._registry.remove(subscription)
            if isinstance(e, TransportError):
                raise
            raise TransportError(topic_pattern, str(e) or type(e).__name__, e)

        self.logger.info(f"[{self.name}] Suscrito a {topic_pattern} (QoS {qos})")
        return SubscribeAck(topic_pattern, qos, SubscribeStatus.SUBSCRIBED, subscription)

    async def unsubscribe(self, topic_pattern: str) -> bool:
        """Quita una suscripción del broker.

        Returns:
            True si el patrón estaba suscrito
        """
        if topic_pattern not in self._topic_subscriptions:
            return False

        del self._topic_subscriptions[topic_pattern]

        if self._state == BridgeState.CONNECTED:
            try:
                await self.transport.unsubscribe(topic_pattern)
            except Exception as e:
                if isinstance(e, TransportError):
                    raise
                raise TransportError(topic_pattern, str(e) or type(e).__name__, e)

        self.logger.info(f"[{self.name}] Desuscrito de {topic_pattern}")
        return True

    def on(
        self,
        event: Union[BridgeEvent, str],
        callback: Callable[[Any], Any],
        topic: Optional[str] = None
    ) -> Subscription:
        """Registra un callback para un evento.

        Args:
            event: BridgeEvent o su valor ("message", "connected", ...)
            callback: Función o corrutina que recibe los datos del evento
            topic: Filtro de tópico para eventos "message"

        Returns:
            Token para off()
        """
        return self._registry.add(BridgeEvent(event), callback, topic_pattern=topic)

    def off(
        self,
        subscription: Union[Subscription, BridgeEvent, str],
        callback: Optional[Callable[[Any], Any]] = None
    ) -> bool:
        """Quita un callback por token, o por evento y callback.

        Returns:
            True si se removió alguna suscripción
        """
        if isinstance(subscription, Subscription):
            return self._registry.remove(subscription)
        if callback is None:
            raise ValueError("off() por evento requiere el callback")
        return self._registry.remove_callback(BridgeEvent(subscription), callback) > 0

    def _on_transport_message(self, topic: str, payload: bytes) -> None:
        self._last_contact = time.time()
        self._stats["received"] += 1

        try:
            decoded = decode_payload(topic, payload)
        except DecodeError as e:
            self._stats["decode_errors"] += 1
            self.logger.error(f"[{self.name}] {e}")
            return

        message = InboundMessage(topic=topic, payload=decoded, raw=payload)
        delivered = self._registry.dispatch(BridgeEvent.MESSAGE, message, topic=topic)
        if not delivered:
            self.logger.debug(f"[{self.name}] Mensaje sin suscriptores en {topic}")

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Obtiene el estado actual del bridge sin efectos secundarios.

        Returns:
            Diccionario con estado de conexión, buffer y contadores
        """
        return {
            "name": self.name,
            "state": self._state.value,
            "connected": self._state == BridgeState.CONNECTED,
            "retry_attempts": self._backoff.attempt,
            "max_reconnect_attempts": self._backoff.max_attempts,
            "buffered_count": len(self._buffer),
            "buffer_capacity": self._buffer.capacity,
            "last_contact": self._last_contact,
            "last_heartbeat": self._last_heartbeat,
            "last_error": str(self._last_error) if self._last_error else None,
            "client_id": self.config.client_id,
            "endpoint": self.transport.endpoint,
            "subscriptions": list(self._topic_subscriptions),
            "subscribers": self._registry.count(),
            "handler_errors": self._registry.handler_errors,
            "stats": dict(self._stats),
        }

    def __repr__(self) -> str:
        return f"MessageBridge(name={self.name}, state={self._state.value})"
