"""FerryLink Bridge

Bridge de mensajes con reconexión automática: buffer de salida acotado,
back-off exponencial con límite de intentos y distribución de mensajes
entrantes a suscriptores.
"""

from modules.ferrylink_bridge.backoff import ExponentialBackoff
from modules.ferrylink_bridge.bridge import BridgeState, LifecycleEvent, MessageBridge
from modules.ferrylink_bridge.buffer import OutboundBuffer, OverflowPolicy
from modules.ferrylink_bridge.config import BridgeConfig, Credentials
from modules.ferrylink_bridge.dispatch import BridgeEvent, SubscriberRegistry, Subscription
from modules.ferrylink_bridge.errors import (
    BridgeError,
    BufferOverflowError,
    ConnectError,
    DecodeError,
    RetryExhaustedError,
    TransportError,
)
from modules.ferrylink_bridge.memory import MemoryBroker, MemoryTransport
from modules.ferrylink_bridge.messages import (
    InboundMessage,
    OutboundMessage,
    SendResult,
    SendStatus,
    SubscribeAck,
    SubscribeStatus,
)
from modules.ferrylink_bridge.transport import Transport

__version__ = "1.0.0"
__all__ = [
    "MessageBridge",
    "BridgeState",
    "LifecycleEvent",
    "BridgeConfig",
    "Credentials",
    "BridgeEvent",
    "Subscription",
    "SubscriberRegistry",
    "ExponentialBackoff",
    "OutboundBuffer",
    "OverflowPolicy",
    "Transport",
    "MemoryBroker",
    "MemoryTransport",
    "InboundMessage",
    "OutboundMessage",
    "SendResult",
    "SendStatus",
    "SubscribeAck",
    "SubscribeStatus",
    "BridgeError",
    "ConnectError",
    "TransportError",
    "DecodeError",
    "RetryExhaustedError",
    "BufferOverflowError",
]
