"""Tópicos jerárquicos de la flota.

Formato: ``fleet/<fleetId>/<entityId>/<category>[/<subtype>]``.
Las suscripciones aceptan comodines ``+`` (un nivel) y ``#`` (multinivel,
solo como último nivel), con la semántica estándar de MQTT.
"""

from dataclasses import dataclass
from typing import Optional

FLEET_ROOT = "fleet"
SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"


@dataclass(frozen=True)
class TopicParts:
    """Componentes de un tópico de flota."""
    fleet_id: str
    entity_id: str
    category: str
    subtype: Optional[str] = None


def build_topic(fleet_id: str, entity_id: str, category: str, subtype: Optional[str] = None) -> str:
    """Construye un tópico de flota.

    Raises:
        ValueError: Si algún segmento está vacío o contiene '/' o comodines
    """
    segments = [FLEET_ROOT, fleet_id, entity_id, category]
    if subtype is not None:
        segments.append(subtype)

    for segment in segments[1:]:
        if not segment or "/" in segment or SINGLE_LEVEL in segment or MULTI_LEVEL in segment:
            raise ValueError(f"Segmento de tópico inválido: {segment!r}")

    return "/".join(segments)


def parse_topic(topic: str) -> Optional[TopicParts]:
    """Descompone un tópico de flota.

    Returns:
        TopicParts, o None si el tópico no sigue el formato de flota
    """
    parts = topic.split("/")
    if len(parts) < 4 or parts[0] != FLEET_ROOT or not all(parts[1:4]):
        return None

    subtype = "/".join(parts[4:]) or None
    return TopicParts(
        fleet_id=parts[1],
        entity_id=parts[2],
        category=parts[3],
        subtype=subtype
    )


def is_valid_topic(topic: str) -> bool:
    """True si el tópico sirve para publicar (sin comodines)."""
    if not topic or "\x00" in topic:
        return False
    return SINGLE_LEVEL not in topic and MULTI_LEVEL not in topic


def is_valid_pattern(pattern: str) -> bool:
    """True si el patrón de suscripción es válido."""
    if not pattern or "\x00" in pattern:
        return False

    levels = pattern.split("/")
    for index, level in enumerate(levels):
        if MULTI_LEVEL in level:
            if level != MULTI_LEVEL or index != len(levels) - 1:
                return False
        elif SINGLE_LEVEL in level and level != SINGLE_LEVEL:
            return False
    return True


def topic_matches(pattern: str, topic: str) -> bool:
    """Comprueba si un tópico coincide con un patrón de suscripción."""
    pattern_levels = pattern.split("/")
    topic_levels = topic.split("/")

    # Los tópicos de sistema ($SYS/...) no coinciden con comodines iniciales
    if topic.startswith("$") and pattern_levels[0] in (SINGLE_LEVEL, MULTI_LEVEL):
        return False

    for index, level in enumerate(pattern_levels):
        if level == MULTI_LEVEL:
            return True
        if index >= len(topic_levels):
            return False
        if level != SINGLE_LEVEL and level != topic_levels[index]:
            return False

    return len(pattern_levels) == len(topic_levels)
