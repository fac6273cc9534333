"""Registro de suscriptores y distribución de eventos.

Cada suscripción es un token que se puede quitar explícitamente. La
distribución respeta el orden de registro y aísla los errores de cada
callback: un suscriptor que falla no impide la entrega a los demás.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from modules.ferrylink_bridge.topics import is_valid_pattern, topic_matches


class BridgeEvent(Enum):
    """Tipos de evento emitidos por el bridge."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    MESSAGE = "message"
    ERROR = "error"
    DROPPED = "dropped"


@dataclass(eq=False)
class Subscription:
    """Token de una suscripción registrada."""
    event: BridgeEvent
    callback: Callable[[Any], Any]
    topic_pattern: Optional[str] = None
    active: bool = True

    def matches(self, topic: Optional[str]) -> bool:
        """True si la suscripción acepta el tópico dado."""
        if self.topic_pattern is None or topic is None:
            return True
        return topic_matches(self.topic_pattern, topic)


def _callback_name(callback: Callable) -> str:
    return getattr(callback, "__name__", repr(callback))


class SubscriberRegistry:
    """Mapa evento -> suscripciones ordenadas."""

    def __init__(self):
        self._subscriptions: Dict[BridgeEvent, List[Subscription]] = {}
        self._pending: Set[asyncio.Task] = set()
        self.handler_errors = 0
        self.logger = logging.getLogger(__name__)

    def add(
        self,
        event: BridgeEvent,
        callback: Callable[[Any], Any],
        topic_pattern: Optional[str] = None
    ) -> Subscription:
        """Registra un callback.

        Args:
            event: Evento de interés
            callback: Función (o corrutina) que recibe los datos del evento
            topic_pattern: Filtro de tópico, solo para BridgeEvent.MESSAGE

        Returns:
            Token de la suscripción; registrar dos veces el mismo callback
            con el mismo filtro devuelve el token existente
        """
        if topic_pattern is not None:
            if event != BridgeEvent.MESSAGE:
                raise ValueError("topic_pattern solo aplica a BridgeEvent.MESSAGE")
            if not is_valid_pattern(topic_pattern):
                raise ValueError(f"Patrón de tópico inválido: {topic_pattern!r}")

        subscriptions = self._subscriptions.setdefault(event, [])
        for existing in subscriptions:
            if existing.callback == callback and existing.topic_pattern == topic_pattern:
                return existing

        subscription = Subscription(event=event, callback=callback, topic_pattern=topic_pattern)
        subscriptions.append(subscription)
        self.logger.debug(f"Suscriptor agregado a '{event.value}': {_callback_name(callback)}")
        return subscription

    def remove(self, subscription: Subscription) -> bool:
        """Quita una suscripción por token.

        Returns:
            True si estaba registrada
        """
        subscriptions = self._subscriptions.get(subscription.event, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
            subscription.active = False
            self.logger.debug(
                f"Suscriptor removido de '{subscription.event.value}': "
                f"{_callback_name(subscription.callback)}"
            )
            return True
        return False

    def remove_callback(self, event: BridgeEvent, callback: Callable[[Any], Any]) -> int:
        """Quita todas las suscripciones de un callback para un evento.

        Returns:
            Número de suscripciones removidas
        """
        matching = [s for s in self._subscriptions.get(event, []) if s.callback == callback]
        for subscription in matching:
            self.remove(subscription)
        return len(matching)

    def clear(self) -> None:
        """Quita todas las suscripciones."""
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                subscription.active = False
        self._subscriptions.clear()

    def count(self, event: Optional[BridgeEvent] = None) -> int:
        """Número de suscripciones, total o por evento."""
        if event is not None:
            return len(self._subscriptions.get(event, []))
        return sum(len(s) for s in self._subscriptions.values())

    def dispatch(self, event: BridgeEvent, data: Any, topic: Optional[str] = None) -> int:
        """Entrega un evento a sus suscriptores en orden de registro.

        Args:
            event: Evento a distribuir
            data: Argumento que recibe cada callback
            topic: Tópico del mensaje, para filtrar por patrón

        Returns:
            Número de callbacks invocados
        """
        delivered = 0

        # Copia: un callback puede suscribir o desuscribir durante la entrega
        for subscription in list(self._subscriptions.get(event, [])):
            if not subscription.active or not subscription.matches(topic):
                continue

            delivered += 1
            try:
                result = subscription.callback(data)
                if asyncio.iscoroutine(result):
                    self._schedule(result, subscription)
            except Exception as e:
                self.handler_errors += 1
                self.logger.error(
                    f"Error en callback {_callback_name(subscription.callback)} "
                    f"para '{event.value}': {e}"
                )

        return delivered

    def _schedule(self, coroutine, subscription: Subscription) -> None:
        task = asyncio.ensure_future(coroutine)
        self._pending.add(task)

        def _done(finished: asyncio.Task):
            self._pending.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                self.handler_errors += 1
                self.logger.error(
                    f"Error en callback asíncrono {_callback_name(subscription.callback)}: {error}"
                )

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Espera a que terminen los callbacks asíncronos en curso."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
