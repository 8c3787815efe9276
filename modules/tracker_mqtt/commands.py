"""Comandos de operador del cliente MQTT.

Equivalentes a los comandos de consola `mqtt status` y `mqtt send`: leen
el canal de estado del cliente y encolan envíos, sin tocar la conexión.
"""

import logging

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from modules.tracker_mqtt.errors import ChannelBusyError
from modules.tracker_mqtt.events import (
    CUSTOM_MQTT_CHAN,
    MQTT_SEND_CHAN,
    EventBus,
    MQTTEvent,
    MQTTEventType,
)


logger = logging.getLogger(__name__)

SEND_TIMEOUT = 0.1


def mqtt_status(bus: EventBus) -> str:
    """Describe el último estado de conexión publicado por el cliente.

    El canal de estado solo recibe CONNECTED, DISCONNECTED y ERROR; el
    tráfico de datos viaja por sus propios canales y no lo altera.

    Returns:
        str: Línea de estado para el operador

    Raises:
        ChannelBusyError: Si el canal está ocupado
    """
    event = bus.read(CUSTOM_MQTT_CHAN)

    if not isinstance(event, MQTTEvent):
        return f"MQTT Status: Unknown ({event!r})"
    if event.type == MQTTEventType.CONNECTED:
        return "MQTT Status: Connected"
    if event.type == MQTTEventType.DISCONNECTED:
        return "MQTT Status: Disconnected"
    if event.type == MQTTEventType.ERROR:
        return f"MQTT Status: Error (code: {event.err_code})"
    return f"MQTT Status: Unknown ({event.type.value})"


@retry(
    stop=stop_after_attempt(3),
    wait=wait_fixed(0.05),
    retry=retry_if_exception_type(ChannelBusyError),
    reraise=True
)
def _publish_send(bus: EventBus, text: str):
    bus.publish(MQTT_SEND_CHAN, MQTTEvent(MQTTEventType.DATA_SEND, data=text), timeout=SEND_TIMEOUT)


def mqtt_send(bus: EventBus, text: str) -> str:
    """Pide al cliente MQTT enviar un mensaje de texto al broker.

    Args:
        bus: Bus de eventos del proceso
        text: Mensaje a enviar

    Returns:
        str: Confirmación para el operador

    Raises:
        ValueError: Si el mensaje está vacío
        ChannelBusyError: Si el canal siguió ocupado o lleno tras los reintentos
    """
    if not text:
        raise ValueError("Uso: mqtt send <mensaje>")

    bus.queue_channel(MQTT_SEND_CHAN)
    _publish_send(bus, text)
    logger.info(f"Mensaje encolado para envío: {text}")
    return f"Message sent: {text}"
