"""Contexto de conexión.

Un único ConnectionContext por cliente, pasado explícitamente al bucle de
despacho, a la máquina de estados y al pipeline de publicación. El lock
serializa los campos mutables frente a productores en otros hilos.
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

from modules.tracker_mqtt.backoff import ReconnectBackoff
from modules.tracker_mqtt.config import TrackerConfig
from modules.tracker_mqtt.errors import PayloadTooLargeError
from modules.tracker_mqtt.transport import BrokerTransport


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Estados del ciclo de vida de la conexión MQTT."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    ERROR = "error"


class RxScratchBuffer:
    """Buffer acotado para payloads entrantes.

    Un payload de hasta capacity bytes se copia tal cual. Uno mayor se
    trunca a capacity - 1 bytes seguidos de un terminador nulo; el buffer
    nunca crece.
    """

    def __init__(self, capacity: int):
        if capacity < 2:
            raise ValueError("La capacidad debe ser al menos 2")

        self.capacity = capacity
        self._buffer = bytearray(capacity)
        self.length = 0
        self.truncated = False
        self.last_error: Optional[PayloadTooLargeError] = None

    def store(self, payload: bytes) -> bytes:
        """Copia un payload al buffer.

        Args:
            payload: Bytes recibidos

        Returns:
            Contenido almacenado, sin terminador
        """
        size = len(payload)

        if size <= self.capacity:
            self._buffer[:size] = payload
            self.length = size
            self.truncated = False
        else:
            keep = self.capacity - 1
            self._buffer[:keep] = payload[:keep]
            self._buffer[keep] = 0
            self.length = keep
            self.truncated = True
            self.last_error = PayloadTooLargeError(size, self.capacity)
            logger.warning(f"{self.last_error}, truncado a {keep} bytes")

        return self.data

    @property
    def data(self) -> bytes:
        return bytes(self._buffer[:self.length])

    @property
    def raw(self) -> bytes:
        """Contenido incluyendo el terminador si hubo truncamiento."""
        end = self.length + 1 if self.truncated else self.length
        return bytes(self._buffer[:end])

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


class ConnectionContext:
    """Estado mutable de la conexión, con un solo dueño."""

    def __init__(self, config: TrackerConfig, transport: BrokerTransport):
        self.config = config
        self.transport = transport

        self.state = ConnectionState.IDLE
        self.handle: Any = None
        self.rx_buffer = RxScratchBuffer(config.payload_buffer_size)
        self.network_available = False
        self.subscribed = False

        self.sequence = 0
        self.backoff = ReconnectBackoff(
            base_delay=config.retry.reconnect_base_delay,
            max_delay=config.retry.reconnect_max_delay,
            failure_threshold=config.retry.max_publish_failures,
        )
        self.lock = threading.RLock()

        self.started_at = time.time()
        self.last_publish_ts: Optional[float] = None
        self.last_error: Optional[str] = None

    def next_sequence(self) -> int:
        with self.lock:
            self.sequence += 1
            return self.sequence

    @property
    def consecutive_failures(self) -> int:
        return self.backoff.consecutive_failures

    def diagnostics(self) -> Dict[str, Any]:
        """Contadores de falla y estado para reportes de diagnóstico."""
        with self.lock:
            return {
                "state": self.state.value,
                "network_available": self.network_available,
                "subscribed": self.subscribed,
                "sequence": self.sequence,
                "consecutive_failures": self.backoff.consecutive_failures,
                "backoff_delay": self.backoff.current_delay,
                "last_publish_ts": self.last_publish_ts,
                "last_error": self.last_error,
                "uptime": round(time.time() - self.started_at, 1),
            }
