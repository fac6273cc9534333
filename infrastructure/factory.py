"""Fábrica de transportes y bridges según el esquema del endpoint."""

import logging
from typing import Optional

from infrastructure.mqtt_transport import MQTTTransport
from infrastructure.websocket_transport import WebSocketTransport
from modules.ferrylink_bridge.bridge import MessageBridge
from modules.ferrylink_bridge.config import BridgeConfig
from modules.ferrylink_bridge.memory import MemoryBroker, MemoryTransport
from modules.ferrylink_bridge.transport import Transport

logger = logging.getLogger(__name__)


def create_transport(config: BridgeConfig, broker: Optional[MemoryBroker] = None) -> Transport:
    """Crea el transporte adecuado para el endpoint configurado.

    Args:
        config: Configuración del bridge
        broker: Broker en memoria, requerido para endpoints memory://

    Returns:
        Transporte sin abrir

    Raises:
        ValueError: Si el esquema no está soportado o falta el broker
    """
    scheme = config.scheme

    if scheme in ("mqtt", "mqtts"):
        transport = MQTTTransport(config)
    elif scheme in ("ws", "wss"):
        transport = WebSocketTransport(config)
    elif scheme == "memory":
        if broker is None:
            raise ValueError(f"El endpoint {config.endpoint} requiere un MemoryBroker")
        if config.host and config.host != broker.name:
            raise ValueError(
                f"El endpoint {config.endpoint} no corresponde al broker '{broker.name}'"
            )
        transport = MemoryTransport(
            broker,
            client_id=config.client_id,
            username=config.credentials.username,
            password=config.credentials.password
        )
    else:
        raise ValueError(f"Esquema de endpoint no soportado: {scheme}")

    logger.debug(f"Transporte creado: {transport!r}")
    return transport


def create_bridge(
    config: BridgeConfig,
    broker: Optional[MemoryBroker] = None,
    name: Optional[str] = None
) -> MessageBridge:
    """Crea un MessageBridge con el transporte que corresponde al endpoint."""
    return MessageBridge(create_transport(config, broker), config, name=name)
