"""Excepciones del FerryLink Bridge.

Todas las fallas del bridge heredan de BridgeError. Los errores de
transporte se convierten en transiciones de estado y eventos; solo
TransportError y BufferOverflowError llegan al llamador de send/subscribe.
"""

from typing import Optional


class BridgeError(Exception):
    """Excepción base del bridge."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        """Inicializa la excepción base.

        Args:
            message: Mensaje de error legible
            original_error: Excepción original que causó este error
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message} (Causa: {self.original_error})"
        return self.message


class ConnectError(BridgeError):
    """El transporte no pudo establecer la sesión.

    Se lanza cuando:
    - Falla la resolución DNS del endpoint
    - El broker rechaza la conexión o no responde a tiempo
    - Las credenciales son rechazadas (permanent=True)
    """

    def __init__(
        self,
        endpoint: str,
        reason: str = "conexión rechazada",
        permanent: bool = False,
        original_error: Optional[Exception] = None
    ):
        """Inicializa error de conexión.

        Args:
            endpoint: Endpoint al que se intentó conectar
            reason: Descripción de la falla
            permanent: True si reintentar no puede tener éxito (p. ej. auth)
            original_error: Excepción original
        """
        super().__init__(f"No se pudo conectar a {endpoint}: {reason}", original_error)
        self.endpoint = endpoint
        self.reason = reason
        self.permanent = permanent


class TransportError(BridgeError):
    """Falla de escritura o suscripción con la conexión activa.

    No se reintenta automáticamente: el mensaje se pierde salvo que el
    llamador lo reenvíe.
    """

    def __init__(self, topic: str, reason: str, original_error: Optional[Exception] = None):
        super().__init__(f"Error de transporte en '{topic}': {reason}", original_error)
        self.topic = topic
        self.reason = reason


class DecodeError(BridgeError):
    """Payload entrante que no se puede decodificar."""

    def __init__(self, topic: str, reason: str, original_error: Optional[Exception] = None):
        super().__init__(f"Payload inválido en '{topic}': {reason}", original_error)
        self.topic = topic
        self.reason = reason


class RetryExhaustedError(BridgeError):
    """Se superó el máximo de intentos de reconexión."""

    def __init__(self, attempts: int, original_error: Optional[Exception] = None):
        super().__init__(
            f"Máximo de intentos de reconexión alcanzado ({attempts}). "
            "Se requiere connect() explícito para reanudar.",
            original_error
        )
        self.attempts = attempts


class BufferOverflowError(BridgeError):
    """El buffer de salida está lleno y la política es rechazar nuevos."""

    def __init__(self, capacity: int):
        super().__init__(f"Buffer de salida lleno ({capacity} mensajes)")
        self.capacity = capacity
