"""Política de back-off para reconexión.

Calcula el delay antes de cada intento de reconexión:
``min(base_delay * 2^(intento-1), max_delay)`` con jitter opcional.
"""

import logging
import random
from typing import Optional

from tenacity import RetryCallState, wait_exponential


class ExponentialBackoff:
    """Back-off exponencial con límite de intentos.

    Características:
    - Curva exponencial de tenacity (``wait_exponential``)
    - Límite máximo de tiempo de espera
    - Límite máximo de intentos consecutivos
    - Jitter opcional del ±25% para evitar thundering herd
    """

    def __init__(
        self,
        max_attempts: int = 10,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: bool = False
    ):
        """Inicializa el back-off exponencial.

        Args:
            max_attempts: Máximo número de reintentos consecutivos
            base_delay: Delay del primer reintento en segundos
            max_delay: Delay máximo en segundos
            jitter: Si agregar jitter aleatorio

        Raises:
            ValueError: Si los parámetros están fuera de rango
        """
        if max_attempts < 0:
            raise ValueError("max_attempts no puede ser negativo")
        if base_delay <= 0:
            raise ValueError("base_delay debe ser mayor a 0")
        if max_delay < base_delay:
            raise ValueError("max_delay debe ser >= base_delay")

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.logger = logging.getLogger(__name__)

        self._wait = wait_exponential(multiplier=base_delay, max=max_delay)

        # Estado
        self.attempt = 0
        self.last_delay = 0.0

    def reset(self):
        """Reinicia el contador de intentos."""
        self.attempt = 0
        self.last_delay = 0.0

    def delay_for(self, attempt: int) -> float:
        """Delay antes del intento ``attempt`` (1-based).

        Args:
            attempt: Número de intento, empezando en 1

        Returns:
            Delay en segundos
        """
        if attempt < 1:
            raise ValueError("attempt debe ser >= 1")

        retry_state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        retry_state.attempt_number = attempt
        delay = self._wait(retry_state)

        if self.jitter:
            jitter_range = delay * 0.25
            delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))

        return delay

    def next_delay(self) -> Optional[float]:
        """Avanza al siguiente intento y calcula su delay.

        Returns:
            Delay en segundos, o None si se alcanzó el máximo
        """
        if self.attempt >= self.max_attempts:
            self.logger.warning(f"Máximo de intentos alcanzado: {self.max_attempts}")
            return None

        self.attempt += 1
        self.last_delay = self.delay_for(self.attempt)
        return self.last_delay

    @property
    def should_continue(self) -> bool:
        """True si quedan intentos disponibles."""
        return self.attempt < self.max_attempts

    def __repr__(self) -> str:
        return (
            f"ExponentialBackoff("
            f"attempt={self.attempt}/{self.max_attempts}, "
            f"last_delay={self.last_delay:.2f}s"
            f")"
        )
