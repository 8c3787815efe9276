"""Interfaz del transporte hacia el broker.

El núcleo no implementa el protocolo de cable: delega conexión TLS,
resolución DNS y framing MQTT en una implementación de BrokerTransport.
Todas las operaciones retornan sin esperar al broker; los resultados
llegan como TransportEvent en poll().
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, List, Optional

from modules.tracker_mqtt.config import BrokerSettings, CredentialSettings, TLSSettings


class QoS(IntEnum):
    """Niveles de calidad de servicio MQTT."""
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


class TransportEventType(Enum):
    """Eventos reportados por el transporte."""
    CONNACK = "connack"
    PUBACK = "puback"
    PUBLISH_FAILED = "publish_failed"
    SUBACK = "suback"
    MESSAGE = "message"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class TransportEvent:
    """Evento del transporte.

    result distinto de 0 en CONNACK o SUBACK indica rechazo del broker.
    PUBLISH_FAILED indica que una publicación aceptada por el transporte
    nunca fue confirmada; packet_id identifica cuál.
    """
    type: TransportEventType
    result: int = 0
    packet_id: Optional[int] = None
    topic: Optional[str] = None
    payload: bytes = b""

    @property
    def accepted(self) -> bool:
        return self.result == 0


class BrokerTransport(ABC):
    """Interfaz para transportes MQTT.

    Las implementaciones lanzan TransportError en cualquier falla.
    """

    @abstractmethod
    def connect(self, endpoint: BrokerSettings, credentials: CredentialSettings,
                tls: TLSSettings) -> Any:
        """Inicia la conexión y retorna un handle.

        El resultado del handshake llega como CONNACK en poll().
        """
        pass

    @abstractmethod
    def disconnect(self, handle: Any) -> None:
        """Inicia la desconexión; la confirmación llega como DISCONNECT."""
        pass

    @abstractmethod
    def subscribe(self, handle: Any, topic: str, qos: QoS) -> int:
        """Solicita una suscripción y retorna el packet id."""
        pass

    @abstractmethod
    def publish(self, handle: Any, topic: str, payload: bytes, qos: QoS) -> int:
        """Entrega un mensaje al transporte y retorna el packet id."""
        pass

    @abstractmethod
    def poll(self, handle: Any) -> List[TransportEvent]:
        """Retorna los eventos pendientes sin bloquear.

        Raises:
            TransportError: Si la conexión sufrió un error de I/O
        """
        pass
