"""Pipeline de publicación.

Única operación de envío usada por todos los productores. No encola ni
reintenta: si el transporte falla, el llamador decide si reenviar.
"""

import logging
import time
from typing import Any, Dict

from modules.tracker_mqtt.context import ConnectionContext, ConnectionState
from modules.tracker_mqtt.errors import NotConnectedError, SerializationError, TransportError
from modules.tracker_mqtt.serialization import OutboundMessage
from modules.tracker_mqtt.transport import QoS


class PublishPipeline:
    """Publicación con números de secuencia y contador de fallas."""

    QOS = QoS.AT_LEAST_ONCE

    def __init__(self, ctx: ConnectionContext):
        self.ctx = ctx
        self.logger = logging.getLogger(__name__)

    def publish(self, topic: str, payload: bytes) -> int:
        """Publica bytes ya serializados.

        Args:
            topic: Tópico MQTT
            payload: Payload no vacío

        Returns:
            Número de secuencia asignado (message id)

        Raises:
            SerializationError: Si el payload está vacío
            NotConnectedError: Si el estado no es CONNECTED
            TransportError: Si el transporte rechaza el envío
        """
        if not payload:
            raise SerializationError("El payload no puede estar vacío")

        with self.ctx.lock:
            self._require_connected()
            sequence = self.ctx.next_sequence()
            return self._send(topic, payload, sequence)

    def publish_message(self, topic: str, msg_type: str, data: Dict[str, Any]) -> int:
        """Construye el sobre con la próxima secuencia y lo publica.

        Raises:
            NotConnectedError: Si el estado no es CONNECTED
            SerializationError: Si el cuerpo no es serializable
            TransportError: Si el transporte rechaza el envío
        """
        with self.ctx.lock:
            self._require_connected()
            sequence = self.ctx.next_sequence()
            message = OutboundMessage(
                device_id=self.ctx.config.device_id,
                type=msg_type,
                sequence=sequence,
                data=data,
            )
            return self._send(topic, message.to_json(), sequence)

    def on_publish_ack(self, packet_id: int):
        """Confirmación del broker: descuenta una falla."""
        with self.ctx.lock:
            remaining = self.ctx.backoff.record_success()
        self.logger.debug(f"PUBACK {packet_id}, fallas consecutivas: {remaining}")

    def on_publish_failed(self, packet_id: int):
        """El transporte no obtuvo confirmación: cuenta una falla."""
        with self.ctx.lock:
            failures = self.ctx.backoff.record_failure()
            self.ctx.last_error = f"publish {packet_id} unconfirmed"
        self.logger.error(f"Publicación {packet_id} sin confirmación (fallas: {failures})")

    def _require_connected(self):
        if self.ctx.state != ConnectionState.CONNECTED:
            raise NotConnectedError(self.ctx.state.value)

    def _send(self, topic: str, payload: bytes, sequence: int) -> int:
        try:
            packet_id = self.ctx.transport.publish(self.ctx.handle, topic, payload, self.QOS)
        except TransportError as e:
            failures = self.ctx.backoff.record_failure()
            self.ctx.last_error = str(e)
            self.logger.error(f"Error publicando en {topic} (fallas: {failures}): {e}")
            raise

        self.ctx.last_publish_ts = time.time()
        self.logger.debug(f"Publicado #{sequence} en {topic}: {len(payload)} bytes (packet {packet_id})")
        return sequence
