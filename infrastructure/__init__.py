"""Capa de infraestructura de FerryLink.

Implementaciones concretas de Transport para brokers y servidores
externos (MQTT sobre AWS CRT, WebSocket) y la fábrica que las selecciona
según el esquema del endpoint.
"""

__version__ = "1.0.0"
