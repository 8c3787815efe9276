"""Bus de eventos en proceso.

Los productores (sensores, red, comandos) publican en canales con nombre;
cada canal conserva su último valor y notifica a sus suscriptores. El
cliente MQTT espera notificaciones con timeout y lee el valor del canal.

Las peticiones de envío del operador usan un QueueChannel: cada
publicación queda en cola hasta que el cliente la lee.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from modules.tracker_mqtt.errors import ChannelBusyError


logger = logging.getLogger(__name__)


# Nombres de canales
NETWORK_CHAN = "network"
LOCATION_CHAN = "location"
ENVIRONMENTAL_CHAN = "environmental"
POWER_CHAN = "power"
BUTTON_CHAN = "button"
# Solo eventos de ciclo de vida (CONNECTED, DISCONNECTED, ERROR)
CUSTOM_MQTT_CHAN = "custom_mqtt"
MQTT_SEND_CHAN = "custom_mqtt_send"
MQTT_RECEIVED_CHAN = "custom_mqtt_received"
MQTT_RECONNECT_CHAN = "custom_mqtt_reconnect"
MQTT_HEARTBEAT_CHAN = "custom_mqtt_heartbeat"


class NetworkStatus(Enum):
    """Estados de red notificados por el módulo de red."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class MQTTEventType(Enum):
    """Tipos de evento de los canales del cliente MQTT."""
    DATA_SEND = "data_send"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    DATA_RECEIVED = "data_received"


class TimerKind(Enum):
    """Trabajo diferido que vuelve al bucle de despacho como evento."""
    RECONNECT = "reconnect"
    HEARTBEAT = "heartbeat"


@dataclass(frozen=True)
class NetworkEvent:
    """Cambio de disponibilidad de red."""
    status: NetworkStatus

    @property
    def available(self) -> bool:
        return self.status == NetworkStatus.CONNECTED


@dataclass(frozen=True)
class LocationEvent:
    """Posición GNSS."""
    latitude: float
    longitude: float
    accuracy: float
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class EnvironmentalEvent:
    """Muestra ambiental. La presión es opcional."""
    temperature: float
    humidity: float
    pressure: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PowerEvent:
    """Muestra del medidor de batería.

    percentage en None indica que no hubo lectura disponible.
    """
    percentage: Optional[float] = None
    voltage: Optional[float] = None
    temperature: Optional[float] = None
    timestamp: float = field(default_factory=time.time)
    fallback: bool = False

    @property
    def has_reading(self) -> bool:
        return self.percentage is not None


@dataclass(frozen=True)
class ButtonEvent:
    """Pulsación de botón."""
    button_number: int
    press_type: str = "short"
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class MQTTEvent:
    """Evento de los canales propios del cliente MQTT."""
    type: MQTTEventType
    data: Optional[str] = None
    err_code: Optional[int] = None


@dataclass(frozen=True)
class TimerEvent:
    """Vencimiento de un trabajo diferido."""
    kind: TimerKind


class Channel:
    """Canal con último valor, protegido por lock.

    Las lecturas y escrituras pueden venir de otros hilos; un lock tomado
    produce ChannelBusyError en lugar de bloquear indefinidamente.
    """

    def __init__(self, name: str, initial: Any = None):
        self.name = name
        self._value = initial
        self._lock = threading.Lock()
        self._observers: List["Subscriber"] = []

    def add_observer(self, subscriber: "Subscriber"):
        with self._lock:
            if subscriber not in self._observers:
                self._observers.append(subscriber)

    def _acquire(self, timeout: float) -> bool:
        if timeout > 0:
            return self._lock.acquire(timeout=timeout)
        return self._lock.acquire(blocking=False)

    def publish(self, event: Any, timeout: float = 0.5):
        """Publica un evento y notifica a los observadores.

        Raises:
            ChannelBusyError: Si el canal sigue ocupado tras el timeout
        """
        if not self._acquire(timeout):
            raise ChannelBusyError(self.name)
        try:
            self._store(event)
            observers = list(self._observers)
        finally:
            self._lock.release()

        for observer in observers:
            observer.notify(self)

    def read(self, timeout: float = 0.0) -> Any:
        """Lee el último valor publicado.

        Raises:
            ChannelBusyError: Si el canal está ocupado
        """
        if not self._acquire(timeout):
            raise ChannelBusyError(self.name)
        try:
            return self._load()
        finally:
            self._lock.release()

    def _store(self, event: Any):
        self._value = event

    def _load(self) -> Any:
        return self._value

    def __repr__(self) -> str:
        return f"Channel({self.name})"


class QueueChannel(Channel):
    """Canal FIFO acotado.

    Cada publicación produce una notificación y cada lectura consume el
    evento más antiguo, así una publicación nueva no reemplaza a una
    pendiente. Leer la cola vacía retorna None.
    """

    def __init__(self, name: str, maxlen: int = 32):
        super().__init__(name)
        self.maxlen = maxlen
        self._events: deque = deque()

    def _store(self, event: Any):
        if len(self._events) >= self.maxlen:
            raise ChannelBusyError(self.name)
        self._events.append(event)

    def _load(self) -> Any:
        if not self._events:
            return None
        return self._events.popleft()

    @property
    def pending(self) -> int:
        return len(self._events)

    def __repr__(self) -> str:
        return f"QueueChannel({self.name}, pending={len(self._events)})"


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Subscriber:
    """Suscriptor con cola de notificaciones.

    Recibe el canal que cambió, no el mensaje: el consumidor lee el valor
    del canal al procesar la notificación.
    """

    def __init__(self, name: str, queue_size: int = 32):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.dropped = 0

    def notify(self, channel: Channel):
        loop = self._loop
        if loop is not None and _running_loop() is not loop:
            loop.call_soon_threadsafe(self._enqueue, channel)
        else:
            self._enqueue(channel)

    def _enqueue(self, channel: Channel):
        try:
            self._queue.put_nowait(channel)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Cola de {self.name} llena, notificación de {channel.name} descartada")

    async def wait(self, timeout: float) -> Optional[Channel]:
        """Espera la siguiente notificación.

        Args:
            timeout: Espera máxima en segundos

        Returns:
            Canal notificado, o None si venció el timeout
        """
        self._loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class EventBus:
    """Registro de canales del proceso."""

    def __init__(self):
        self._channels: Dict[str, Channel] = {}
        self._lock = threading.Lock()

    def channel(self, name: str, initial: Any = None) -> Channel:
        """Obtiene un canal, creándolo si no existe."""
        with self._lock:
            chan = self._channels.get(name)
            if chan is None:
                chan = Channel(name, initial)
                self._channels[name] = chan
            return chan

    def queue_channel(self, name: str, maxlen: int = 32) -> Channel:
        """Obtiene un canal FIFO, creándolo si no existe.

        Un canal ya creado con ese nombre se retorna tal cual.
        """
        with self._lock:
            chan = self._channels.get(name)
            if chan is None:
                chan = QueueChannel(name, maxlen)
                self._channels[name] = chan
            return chan

    def subscribe(self, subscriber: Subscriber, *names: str):
        for name in names:
            self.channel(name).add_observer(subscriber)

    def publish(self, name: str, event: Any, timeout: float = 0.5):
        self.channel(name).publish(event, timeout=timeout)

    def read(self, name: str, timeout: float = 0.0) -> Any:
        return self.channel(name).read(timeout=timeout)

    @property
    def channels(self) -> List[str]:
        with self._lock:
            return list(self._channels)
