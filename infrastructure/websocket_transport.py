"""Transporte WebSocket.

Cada frame es un JSON ``{"type": <tópico>, "data": <payload>, "timestamp": <epoch>}``.
El servidor no conoce suscripciones: el filtrado por patrón es local.
"""

import asyncio
import json
import time
from typing import Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from modules.ferrylink_bridge.config import BridgeConfig
from modules.ferrylink_bridge.errors import ConnectError, TransportError
from modules.ferrylink_bridge.topics import topic_matches
from modules.ferrylink_bridge.transport import Transport

UNKNOWN_TOPIC = "unknown"

# Estados HTTP del handshake que no se resuelven reintentando
PERMANENT_HTTP_STATUS = (401, 403)


def _handshake_status(error: Exception) -> Optional[int]:
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(error, "status_code", None)
    return status


class WebSocketTransport(Transport):
    """Transporte sobre un WebSocket cliente."""

    def __init__(self, config: BridgeConfig, ping_interval: Optional[float] = 20.0):
        """Inicializa el transporte.

        Args:
            config: Configuración con endpoint ws:// o wss://
            ping_interval: Intervalo de ping del protocolo WebSocket (None lo desactiva)
        """
        super().__init__(config.endpoint)
        self.config = config
        self.ping_interval = ping_interval

        self.websocket = None
        self._listen_task: Optional[asyncio.Task] = None
        self._patterns: Dict[str, int] = {}
        self._open = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self._closing = False

        try:
            self.websocket = await websockets.connect(
                self.endpoint,
                ping_interval=self.ping_interval,
                ping_timeout=10,
                close_timeout=10
            )
        except Exception as e:
            status = _handshake_status(e)
            raise ConnectError(
                self.endpoint,
                f"handshake rechazado (HTTP {status})" if status else (str(e) or type(e).__name__),
                permanent=status in PERMANENT_HTTP_STATUS,
                original_error=e
            )

        self._open = True
        self._listen_task = asyncio.get_running_loop().create_task(self._listen(self.websocket))
        self.logger.info(f"Conexión WebSocket establecida con {self.endpoint}")

    @staticmethod
    def encode_frame(topic: str, payload: bytes) -> str:
        """Envuelve un payload en el frame JSON del protocolo."""
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            data = payload.decode("utf-8", errors="replace")

        return json.dumps({"type": topic, "data": data, "timestamp": time.time()}, ensure_ascii=False)

    @staticmethod
    def decode_frame(frame) -> tuple:
        """Extrae (tópico, payload) de un frame recibido.

        Los frames que no son un objeto JSON con ``type`` se entregan con
        tópico ``unknown`` y el frame original como payload.
        """
        raw = frame.encode("utf-8") if isinstance(frame, str) else bytes(frame)

        try:
            envelope = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return UNKNOWN_TOPIC, raw

        if not isinstance(envelope, dict) or not isinstance(envelope.get("type"), str):
            return UNKNOWN_TOPIC, raw

        data = envelope.get("data", {})
        return envelope["type"], json.dumps(data, ensure_ascii=False).encode("utf-8")

    def write(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False):
        if not self._open or self.websocket is None:
            raise TransportError(topic, "WebSocket cerrado")

        frame = self.encode_frame(topic, payload)
        # Las tareas arrancan en orden de creación, así se conserva el orden de envío
        return asyncio.ensure_future(self._send_frame(self.websocket, topic, frame))

    async def _send_frame(self, websocket, topic: str, frame: str) -> None:
        try:
            await websocket.send(frame)
        except (ConnectionClosed, OSError) as e:
            raise TransportError(topic, str(e) or type(e).__name__, e)
        self.logger.debug(f"Frame enviado: {topic} ({len(frame)} bytes)")

    async def subscribe(self, topic_pattern: str, qos: int = 0) -> None:
        self._patterns[topic_pattern] = qos

    async def unsubscribe(self, topic_pattern: str) -> None:
        self._patterns.pop(topic_pattern, None)

    async def close(self) -> None:
        self._closing = True
        self._open = False

        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
        self._listen_task = None

        if self.websocket:
            try:
                await self.websocket.close()
            except Exception as e:
                self.logger.warning(f"Error cerrando WebSocket: {e}")
            self.websocket = None

        self.logger.info("WebSocket desconectado")

    async def _listen(self, websocket) -> None:
        """Tarea de escucha de frames."""
        reason: Optional[Exception] = None

        try:
            async for frame in websocket:
                topic, payload = self.decode_frame(frame)
                if any(topic_matches(p, topic) for p in self._patterns):
                    self._notify_message(topic, payload)
        except ConnectionClosed as e:
            reason = e
        except Exception as e:
            self.logger.error(f"Error inesperado escuchando WebSocket: {e}")
            reason = e

        if websocket is self.websocket and not self._closing:
            self.logger.warning("Conexión WebSocket cerrada por el servidor")
            self._open = False
            self.websocket = None
            self._notify_close(reason or ConnectionError("conexión cerrada por el servidor"))
