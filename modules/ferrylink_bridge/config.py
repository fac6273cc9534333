"""Configuración del FerryLink Bridge."""

import os
import uuid
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

from modules.ferrylink_bridge.buffer import OverflowPolicy

SUPPORTED_SCHEMES = ("mqtt", "mqtts", "ws", "wss", "memory")

DEFAULT_PORTS = {
    "mqtt": 1883,
    "mqtts": 8883,
    "ws": 80,
    "wss": 443,
}


@dataclass
class Credentials:
    """Credenciales de conexión.

    Usuario/contraseña para brokers como HiveMQ Cloud; certificado, clave
    y CA para mTLS con AWS IoT Core.
    """
    username: Optional[str] = None
    password: Optional[str] = None
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    ca_path: Optional[str] = None

    @property
    def uses_mtls(self) -> bool:
        """True si hay certificado y clave de cliente."""
        return bool(self.cert_path and self.key_path)

    def __repr__(self) -> str:
        # La contraseña nunca aparece en logs
        return (
            f"Credentials(username={self.username!r}, "
            f"password={'***' if self.password else None}, "
            f"cert_path={self.cert_path!r}, key_path={self.key_path!r}, ca_path={self.ca_path!r})"
        )


@dataclass
class BridgeConfig:
    """Configuración de un MessageBridge y su transporte."""
    endpoint: str
    client_id: Optional[str] = None
    credentials: Credentials = field(default_factory=Credentials)

    # Reconexión
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = False
    max_reconnect_attempts: int = 10
    fail_fast_on_auth: bool = False

    # Buffer de salida
    buffer_capacity: int = 1000
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST

    # Heartbeat (deshabilitado si no hay tópico)
    heartbeat_topic: Optional[str] = None
    heartbeat_interval: float = 30.0

    # Sesión
    connect_timeout: float = 30.0
    keep_alive_secs: int = 60
    clean_session: bool = True

    def __post_init__(self):
        if self.client_id is None:
            self.client_id = f"ferrylink-{uuid.uuid4().hex[:8]}"

        if self.scheme not in SUPPORTED_SCHEMES:
            raise ValueError(
                f"Esquema de endpoint no soportado: {self.endpoint!r} "
                f"(soportados: {', '.join(SUPPORTED_SCHEMES)})"
            )
        if self.base_delay <= 0:
            raise ValueError("base_delay debe ser mayor a 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay debe ser >= base_delay")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts no puede ser negativo")
        if self.buffer_capacity <= 0:
            raise ValueError("buffer_capacity debe ser mayor a 0")
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval debe ser mayor a 0")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout debe ser mayor a 0")

    @property
    def scheme(self) -> str:
        """Esquema del endpoint (mqtts, ws, memory...)."""
        return urlparse(self.endpoint).scheme.lower()

    @property
    def host(self) -> str:
        """Host (o nombre del broker en memoria)."""
        return urlparse(self.endpoint).hostname or ""

    @property
    def port(self) -> Optional[int]:
        """Puerto explícito o el de defecto del esquema."""
        return urlparse(self.endpoint).port or DEFAULT_PORTS.get(self.scheme)

    @classmethod
    def from_env(cls, prefix: str = "FERRYLINK", **overrides) -> "BridgeConfig":
        """Crea la configuración desde variables de entorno.

        Variables esperadas (con el prefijo dado):
        - <PREFIX>_ENDPOINT
        - <PREFIX>_CLIENT_ID (opcional)
        - <PREFIX>_USERNAME / _PASSWORD (opcional)
        - <PREFIX>_CERT_PATH / _KEY_PATH / _CA_PATH (opcional)
        - <PREFIX>_MAX_RECONNECT_ATTEMPTS, _BASE_DELAY, _MAX_DELAY (opcional)
        - <PREFIX>_BUFFER_CAPACITY, _OVERFLOW_POLICY (opcional)
        - <PREFIX>_HEARTBEAT_TOPIC, _HEARTBEAT_INTERVAL (opcional)

        Args:
            prefix: Prefijo de las variables
            overrides: Valores que reemplazan a los del entorno

        Raises:
            ValueError: Si falta el endpoint o un valor numérico es inválido
        """
        def env(name: str) -> Optional[str]:
            return os.getenv(f"{prefix}_{name}") or None

        endpoint = env("ENDPOINT")
        if not endpoint and "endpoint" not in overrides:
            raise ValueError(f"Variable de entorno faltante: {prefix}_ENDPOINT")

        kwargs = {
            "endpoint": endpoint,
            "client_id": env("CLIENT_ID"),
            "credentials": Credentials(
                username=env("USERNAME"),
                password=env("PASSWORD"),
                cert_path=env("CERT_PATH"),
                key_path=env("KEY_PATH"),
                ca_path=env("CA_PATH"),
            ),
            "heartbeat_topic": env("HEARTBEAT_TOPIC"),
        }

        numeric = {
            "MAX_RECONNECT_ATTEMPTS": ("max_reconnect_attempts", int),
            "BASE_DELAY": ("base_delay", float),
            "MAX_DELAY": ("max_delay", float),
            "BUFFER_CAPACITY": ("buffer_capacity", int),
            "HEARTBEAT_INTERVAL": ("heartbeat_interval", float),
        }
        for name, (attr, cast) in numeric.items():
            raw = env(name)
            if raw is None:
                continue
            try:
                kwargs[attr] = cast(raw)
            except ValueError:
                raise ValueError(f"Valor inválido para {prefix}_{name}: {raw!r}")

        policy = env("OVERFLOW_POLICY")
        if policy is not None:
            try:
                kwargs["overflow_policy"] = OverflowPolicy(policy.lower())
            except ValueError:
                raise ValueError(f"Valor inválido para {prefix}_OVERFLOW_POLICY: {policy!r}")

        kwargs.update(overrides)
        return cls(**kwargs)
