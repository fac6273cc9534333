"""Buffer de salida acotado.

Cola FIFO de mensajes pendientes indexada por message_id. Nunca
sobrescribe: dos envíos al mismo tópico ocupan dos entradas.
"""

import logging
from collections import OrderedDict
from enum import Enum
from typing import Dict, Iterator, List, Optional

from modules.ferrylink_bridge.errors import BufferOverflowError
from modules.ferrylink_bridge.messages import OutboundMessage


class OverflowPolicy(Enum):
    """Qué hacer cuando el buffer está lleno."""
    DROP_OLDEST = "drop_oldest"
    REJECT_NEW = "reject_new"


class OutboundBuffer:
    """Cola acotada de mensajes salientes.

    Con DROP_OLDEST el mensaje más antiguo se descarta para hacer lugar;
    con REJECT_NEW el nuevo mensaje se rechaza con BufferOverflowError.
    """

    def __init__(self, capacity: int = 1000, policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST):
        """Inicializa el buffer.

        Args:
            capacity: Número máximo de mensajes retenidos
            policy: Política de desbordamiento
        """
        if capacity <= 0:
            raise ValueError("La capacidad debe ser mayor a 0")

        self._messages: "OrderedDict[str, OutboundMessage]" = OrderedDict()
        self._capacity = capacity
        self._policy = policy
        self.dropped_count = 0
        self.logger = logging.getLogger(__name__)

    @property
    def capacity(self) -> int:
        """Capacidad total del buffer."""
        return self._capacity

    @property
    def policy(self) -> OverflowPolicy:
        return self._policy

    @property
    def is_empty(self) -> bool:
        return not self._messages

    @property
    def is_full(self) -> bool:
        return len(self._messages) >= self._capacity

    def push(self, message: OutboundMessage) -> Optional[OutboundMessage]:
        """Encola un mensaje.

        Args:
            message: Mensaje a encolar

        Returns:
            El mensaje descartado para hacer lugar, o None

        Raises:
            BufferOverflowError: Si está lleno y la política es REJECT_NEW
        """
        evicted = None

        if self.is_full:
            if self._policy == OverflowPolicy.REJECT_NEW:
                raise BufferOverflowError(self._capacity)

            _, evicted = self._messages.popitem(last=False)
            self.dropped_count += 1
            self.logger.warning(
                f"Buffer lleno ({self._capacity}), descartado mensaje {evicted.message_id} "
                f"de '{evicted.topic}'"
            )

        self._messages[message.message_id] = message
        return evicted

    def drain(self) -> Iterator[OutboundMessage]:
        """Extrae los mensajes en orden de inserción.

        Cada mensaje sale del buffer antes de entregarse al consumidor, de
        modo que una transmisión fallida no lo reencola.
        """
        while self._messages:
            _, message = self._messages.popitem(last=False)
            yield message

    def peek(self) -> Optional[OutboundMessage]:
        """Mensaje más antiguo sin extraerlo."""
        if not self._messages:
            return None
        return next(iter(self._messages.values()))

    def remove(self, message_id: str) -> Optional[OutboundMessage]:
        """Quita un mensaje por id."""
        return self._messages.pop(message_id, None)

    def snapshot(self) -> List[OutboundMessage]:
        """Copia ordenada del contenido actual."""
        return list(self._messages.values())

    def topics(self) -> Dict[str, int]:
        """Conteo de mensajes pendientes por tópico."""
        counts: Dict[str, int] = {}
        for message in self._messages.values():
            counts[message.topic] = counts.get(message.topic, 0) + 1
        return counts

    def clear(self) -> None:
        """Vacía el buffer."""
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)

    def __bool__(self) -> bool:
        return not self.is_empty

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages
