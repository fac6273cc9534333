"""Interfaz de transporte publish/subscribe.

Un transporte abre una sesión con un broker o endpoint, escribe mensajes
y notifica su ciclo de vida al bridge mediante callbacks. El bridge
registra sus callbacks con bind() antes de abrir.
"""

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

CloseCallback = Callable[[Optional[Exception]], None]
ErrorCallback = Callable[[Exception], None]
MessageCallback = Callable[[str, bytes], None]


class Transport(ABC):
    """Transporte abstracto usado por MessageBridge.

    Contrato:
    - open() completa cuando el handshake terminó; lanza ConnectError si no
    - write() emite el mensaje de inmediato y devuelve un awaitable que
      resuelve con la confirmación o lanza TransportError
    - la pérdida de la sesión se notifica con el callback de cierre, nunca
      como excepción
    """

    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        self._on_close: Optional[CloseCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._on_message: Optional[MessageCallback] = None
        self.logger = logging.getLogger(self.__class__.__module__)

    def bind(
        self,
        on_close: Optional[CloseCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_message: Optional[MessageCallback] = None
    ) -> None:
        """Registra los callbacks de ciclo de vida."""
        self._on_close = on_close
        self._on_error = on_error
        self._on_message = on_message

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True si hay una sesión activa."""

    @abstractmethod
    async def open(self) -> None:
        """Abre la sesión.

        Raises:
            ConnectError: Si no se pudo establecer la sesión
        """

    @abstractmethod
    def write(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False) -> Awaitable[None]:
        """Emite un mensaje.

        Raises:
            TransportError: Si el mensaje no se pudo emitir
        """

    @abstractmethod
    async def subscribe(self, topic_pattern: str, qos: int = 0) -> None:
        """Suscribe un patrón en el broker.

        Raises:
            TransportError: Si el broker rechaza la suscripción
        """

    @abstractmethod
    async def unsubscribe(self, topic_pattern: str) -> None:
        """Quita una suscripción del broker."""

    @abstractmethod
    async def close(self) -> None:
        """Cierra la sesión sin notificar cierre inesperado."""

    def _notify_close(self, reason: Optional[Exception] = None) -> None:
        if self._on_close:
            self._on_close(reason)

    def _notify_error(self, error: Exception) -> None:
        if self._on_error:
            self._on_error(error)

    def _notify_message(self, topic: str, payload: bytes) -> None:
        if self._on_message:
            self._on_message(topic, payload)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(endpoint={self.endpoint}, open={self.is_open})"
