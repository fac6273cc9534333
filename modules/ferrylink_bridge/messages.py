"""Tipos de mensaje del bridge y serialización de payloads."""

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from modules.ferrylink_bridge.errors import DecodeError


class SendStatus(Enum):
    """Resultado de una llamada a send."""
    SENT = "sent"
    BUFFERED = "buffered"


class SubscribeStatus(Enum):
    """Resultado de una llamada a subscribe."""
    SUBSCRIBED = "subscribed"
    PENDING = "pending"


@dataclass
class OutboundMessage:
    """Mensaje pendiente de transmisión."""
    topic: str
    payload: bytes
    qos: int = 0
    retain: bool = False
    enqueued_at: float = field(default_factory=time.time)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def size(self) -> int:
        """Tamaño del payload en bytes."""
        return len(self.payload)


@dataclass
class InboundMessage:
    """Mensaje recibido y decodificado."""
    topic: str
    payload: Any
    raw: bytes
    received_at: float = field(default_factory=time.time)


@dataclass
class SendResult:
    """Acuse devuelto por send."""
    status: SendStatus
    message_id: str
    topic: str

    @property
    def sent(self) -> bool:
        return self.status == SendStatus.SENT

    @property
    def buffered(self) -> bool:
        return self.status == SendStatus.BUFFERED


@dataclass
class SubscribeAck:
    """Acuse devuelto por subscribe."""
    topic_pattern: str
    qos: int
    status: SubscribeStatus
    subscription: Optional[Any] = None


def encode_payload(payload: Any) -> bytes:
    """Serializa un payload para el transporte.

    bytes se envían tal cual, str como UTF-8 y el resto como JSON.

    Raises:
        TypeError: Si el payload no es serializable a JSON
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def decode_payload(topic: str, raw: bytes) -> Any:
    """Decodifica un payload JSON entrante.

    Raises:
        DecodeError: Si no es UTF-8 o JSON válido
    """
    try:
        return json.loads(raw.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise DecodeError(topic, "no es UTF-8 válido", e)
    except json.JSONDecodeError as e:
        raise DecodeError(topic, "JSON inválido", e)
