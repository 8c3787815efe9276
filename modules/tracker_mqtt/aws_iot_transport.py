"""Transporte AWS IoT Core

Implementación de BrokerTransport sobre awscrt (MQTT 3.1.1 + TLS mutuo).
Los callbacks del CRT corren en hilos propios; aquí solo encolan eventos
que el bucle de despacho consume con poll().
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Deque, Dict, List, Optional

from awscrt import mqtt
from awsiot import mqtt_connection_builder

from modules.tracker_mqtt.config import BrokerSettings, CredentialSettings, TLSSettings
from modules.tracker_mqtt.errors import TransportError
from modules.tracker_mqtt.transport import BrokerTransport, QoS, TransportEvent, TransportEventType


# Código de rechazo en SUBACK (MQTT 3.1.1)
SUBACK_FAILURE = 0x80


@dataclass
class AWSIoTHandle:
    """Conexión activa y eventos pendientes."""
    connection: Any
    client_id: str
    events: Deque[TransportEvent] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)
    error: Optional[Exception] = None

    def push(self, event: TransportEvent):
        with self.lock:
            self.events.append(event)

    def fail(self, error: Exception):
        with self.lock:
            self.error = error


class AWSIoTTransport(BrokerTransport):
    """Transporte MQTT para AWS IoT Core.

    Características:
    - TLS mutuo con certificado de dispositivo
    - QoS 1 (AT_LEAST_ONCE) mapeado desde QoS del núcleo
    - Sin reconexión propia: las interrupciones se reportan en poll()
    """

    def __init__(self, clean_session: bool = False):
        self.clean_session = clean_session
        self.logger = logging.getLogger(__name__)

    def connect(self, endpoint: BrokerSettings, credentials: CredentialSettings,
                tls: TLSSettings) -> AWSIoTHandle:
        if not (tls.cert_path and tls.key_path):
            raise TransportError("connect", "AWS IoT requiere certificado y clave del dispositivo")
        if not tls.peer_verify:
            self.logger.warning("AWS IoT siempre verifica el certificado del broker")

        handle = AWSIoTHandle(connection=None, client_id=endpoint.client_id)

        options: Dict[str, Any] = {}
        if credentials.username:
            options["username"] = credentials.username
        if credentials.password:
            options["password"] = credentials.password

        try:
            handle.connection = mqtt_connection_builder.mtls_from_path(
                endpoint=endpoint.host,
                port=endpoint.port,
                cert_filepath=tls.cert_path,
                pri_key_filepath=tls.key_path,
                ca_filepath=tls.ca_path,
                client_id=endpoint.client_id,
                clean_session=self.clean_session,
                keep_alive_secs=endpoint.keepalive_secs,
                on_connection_interrupted=partial(self._on_connection_interrupted, handle),
                on_connection_resumed=partial(self._on_connection_resumed, handle),
                **options
            )

            self.logger.info(f"Conectando a {endpoint.host}:{endpoint.port} como {endpoint.client_id}")
            connect_future = handle.connection.connect()
            connect_future.add_done_callback(partial(self._on_connect_done, handle))

        except Exception as e:
            self.logger.error(f"Error creando conexión MQTT: {e}")
            raise TransportError("connect", str(e), e) from e

        return handle

    def disconnect(self, handle: AWSIoTHandle) -> None:
        try:
            disconnect_future = handle.connection.disconnect()
            disconnect_future.add_done_callback(partial(self._on_disconnect_done, handle))
        except Exception as e:
            raise TransportError("disconnect", str(e), e) from e

    def subscribe(self, handle: AWSIoTHandle, topic: str, qos: QoS) -> int:
        try:
            subscribe_future, packet_id = handle.connection.subscribe(
                topic=topic,
                qos=mqtt.QoS(int(qos)),
                callback=partial(self._on_message, handle)
            )
        except Exception as e:
            raise TransportError("subscribe", str(e), e) from e

        subscribe_future.add_done_callback(partial(self._on_subscribe_done, handle, packet_id))
        return packet_id

    def publish(self, handle: AWSIoTHandle, topic: str, payload: bytes, qos: QoS) -> int:
        try:
            publish_future, packet_id = handle.connection.publish(
                topic=topic,
                payload=payload,
                qos=mqtt.QoS(int(qos))
            )
        except Exception as e:
            raise TransportError("publish", str(e), e) from e

        publish_future.add_done_callback(partial(self._on_publish_done, handle, packet_id))
        return packet_id

    def poll(self, handle: AWSIoTHandle) -> List[TransportEvent]:
        with handle.lock:
            if handle.events:
                events = list(handle.events)
                handle.events.clear()
                return events

            error = handle.error
            handle.error = None

        if error is not None:
            raise TransportError("poll", str(error), error)
        return []

    # Callbacks del CRT (hilos del CRT)

    def _on_connect_done(self, handle: AWSIoTHandle, future: Future):
        error = future.exception()
        if error is None:
            handle.push(TransportEvent(TransportEventType.CONNACK, result=0))
            return

        return_code = getattr(error, "return_code", None)
        result = int(return_code) if return_code is not None else -1
        self.logger.error(f"Conexión MQTT rechazada: {error}")
        handle.push(TransportEvent(TransportEventType.CONNACK, result=result))

    def _on_disconnect_done(self, handle: AWSIoTHandle, future: Future):
        error = future.exception()
        if error is not None:
            self.logger.warning(f"Desconexión con error: {error}")
        handle.push(TransportEvent(TransportEventType.DISCONNECT))

    def _on_subscribe_done(self, handle: AWSIoTHandle, packet_id: int, future: Future):
        error = future.exception()
        if error is not None:
            self.logger.error(f"Suscripción fallida: {error}")
            handle.push(TransportEvent(TransportEventType.SUBACK, result=SUBACK_FAILURE, packet_id=packet_id))
            return

        granted = future.result().get("qos")
        result = 0 if granted is not None else SUBACK_FAILURE
        handle.push(TransportEvent(TransportEventType.SUBACK, result=result, packet_id=packet_id))

    def _on_publish_done(self, handle: AWSIoTHandle, packet_id: int, future: Future):
        error = future.exception()
        if error is not None:
            self.logger.error(f"Publicación {packet_id} sin confirmación: {error}")
            handle.push(TransportEvent(TransportEventType.PUBLISH_FAILED, packet_id=packet_id))
            return
        handle.push(TransportEvent(TransportEventType.PUBACK, packet_id=packet_id))

    def _on_message(self, handle: AWSIoTHandle, topic, payload, dup=False, qos=None, retain=False, **kwargs):
        handle.push(TransportEvent(TransportEventType.MESSAGE, topic=topic, payload=bytes(payload)))

    def _on_connection_interrupted(self, handle: AWSIoTHandle, connection, error, **kwargs):
        self.logger.warning(f"Conexión MQTT interrumpida: {error}")
        handle.fail(error)

    def _on_connection_resumed(self, handle: AWSIoTHandle, connection, return_code, session_present, **kwargs):
        self.logger.info(f"Conexión MQTT restablecida por el CRT: {return_code}")
