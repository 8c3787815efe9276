"""Construcción y parseo de mensajes JSON.

Los mensajes salientes comparten un sobre común
{device_id, type, timestamp, sequence, data}; el cuerpo depende del
productor. Los números se redondean según PrecisionSettings.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from modules.tracker_mqtt.config import PrecisionSettings
from modules.tracker_mqtt.errors import SerializationError
from modules.tracker_mqtt.events import ButtonEvent, EnvironmentalEvent, LocationEvent, PowerEvent


logger = logging.getLogger(__name__)


# Tipos de mensaje
MSG_LOCATION = "location"
MSG_ENVIRONMENTAL = "environmental"
MSG_POWER = "power"
MSG_BUTTON = "button"
MSG_MESSAGE = "message"
MSG_CONNECTED = "connected"
MSG_HEARTBEAT = "heartbeat"
MSG_COMMAND_ACK = "command_ack"
MSG_ACK = "ack"

COMMAND_FIELD = "command"


@dataclass
class OutboundMessage:
    """Mensaje saliente, construido por publicación y descartado al enviarse."""
    device_id: str
    type: str
    sequence: int
    data: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "type": self.type,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
            "data": self.data,
        }

    def to_json(self) -> bytes:
        """Renderiza el mensaje en JSON UTF-8.

        Raises:
            SerializationError: Si el cuerpo no es serializable
        """
        try:
            return json.dumps(
                self.to_dict(),
                ensure_ascii=False,
                allow_nan=False,
                separators=(",", ":"),
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(f"No se pudo serializar mensaje {self.type}", e) from e


def location_body(event: LocationEvent, precision: PrecisionSettings) -> Dict[str, Any]:
    return {
        "lat": round(event.latitude, precision.gps),
        "lng": round(event.longitude, precision.gps),
        "acc": round(event.accuracy, precision.accuracy),
    }


def environmental_body(event: EnvironmentalEvent, precision: PrecisionSettings) -> Dict[str, Any]:
    body = {
        "temperature": round(event.temperature, precision.temperature),
        "humidity": round(event.humidity, precision.humidity),
    }
    if event.pressure is not None:
        body["pressure"] = round(event.pressure, precision.pressure)
    return body


def power_body(event: PowerEvent, precision: PrecisionSettings) -> Dict[str, Any]:
    """Cuerpo de batería. Las lecturas por defecto llevan fallback=True."""
    body: Dict[str, Any] = {"level": round(event.percentage, precision.battery)}
    if event.voltage is not None:
        body["voltage"] = round(event.voltage, precision.voltage)
    if event.temperature is not None:
        body["temperature"] = round(event.temperature, precision.temperature)
    if event.fallback:
        body["fallback"] = True
    return body


def button_body(event: ButtonEvent) -> Dict[str, Any]:
    return {"button_number": event.button_number, "press_type": event.press_type}


def message_body(text: str) -> Dict[str, Any]:
    return {"message": text}


def parse_command(payload: str) -> Optional[str]:
    """Extrae el nombre de comando de un payload entrante.

    Args:
        payload: Texto recibido

    Returns:
        Nombre del comando, o None si no es JSON o no trae comando
    """
    try:
        document = json.loads(payload)
    except (ValueError, TypeError) as e:
        logger.debug(f"Payload entrante no es JSON: {e}")
        return None

    if not isinstance(document, dict):
        return None

    command = document.get(COMMAND_FIELD)
    if isinstance(command, str) and command.strip():
        return command.strip()
    return None


def command_ack_body(original: str, command: str) -> Dict[str, Any]:
    return {
        "status": "received",
        "command": command,
        "original_message": original,
    }


def generic_ack_body(original: str) -> Dict[str, Any]:
    return {
        "status": "message received",
        "original_message": original,
    }
