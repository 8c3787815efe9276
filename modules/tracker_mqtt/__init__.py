"""Tracker MQTT Client

Módulo para republicar la telemetría del tracker (ubicación, ambiente,
batería, botones) en un broker MQTT sobre TLS, con reconexión por
back-off, acuses de comandos entrantes y heartbeats de diagnóstico.
"""

from modules.tracker_mqtt.client import TrackerMQTTClient
from modules.tracker_mqtt.commands import mqtt_send, mqtt_status
from modules.tracker_mqtt.config import TrackerConfig
from modules.tracker_mqtt.context import ConnectionContext, ConnectionState
from modules.tracker_mqtt.errors import (
    ChannelBusyError,
    ConfigurationError,
    NotConnectedError,
    PayloadTooLargeError,
    SerializationError,
    TrackerMQTTError,
    TransportError,
    ValidationFailedError,
)
from modules.tracker_mqtt.events import EventBus, MQTTEvent, MQTTEventType
from modules.tracker_mqtt.transport import BrokerTransport, QoS, TransportEvent, TransportEventType

__version__ = "1.0.0"
__all__ = [
    "TrackerMQTTClient",
    "TrackerConfig",
    "ConnectionContext",
    "ConnectionState",
    "EventBus",
    "MQTTEvent",
    "MQTTEventType",
    "BrokerTransport",
    "QoS",
    "TransportEvent",
    "TransportEventType",
    "mqtt_status",
    "mqtt_send",
    "TrackerMQTTError",
    "NotConnectedError",
    "TransportError",
    "ValidationFailedError",
    "PayloadTooLargeError",
    "SerializationError",
    "ChannelBusyError",
    "ConfigurationError"
]
