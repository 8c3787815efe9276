"""Máquina de estados de la conexión MQTT.

IDLE -> CONNECTING -> CONNECTED -> DISCONNECTING -> IDLE, con ERROR
alcanzable desde CONNECTING y CONNECTED. Cada estado tiene una función de
entrada y una de ejecución; ambas retornan el próximo estado o None.

Los timers (reconexión, heartbeat) no ejecutan lógica propia: publican un
TimerEvent en el bus y el bucle de despacho lo entrega aquí.
"""

import logging
import time
from typing import Callable, Dict, Optional, Tuple

from modules.tracker_mqtt.context import ConnectionContext, ConnectionState
from modules.tracker_mqtt.errors import ChannelBusyError, TrackerMQTTError, TransportError
from modules.tracker_mqtt.events import (
    CUSTOM_MQTT_CHAN,
    MQTT_HEARTBEAT_CHAN,
    MQTT_RECONNECT_CHAN,
    EventBus,
    MQTTEvent,
    MQTTEventType,
    TimerEvent,
    TimerKind,
)
from modules.tracker_mqtt.publisher import PublishPipeline
from modules.tracker_mqtt.serialization import MSG_CONNECTED, MSG_HEARTBEAT
from modules.tracker_mqtt.timers import ScheduledWork
from modules.tracker_mqtt.transport import QoS, TransportEvent, TransportEventType


StateFn = Callable[[], Optional[ConnectionState]]


class ConnectionStateMachine:
    """Ciclo de vida de la conexión con el broker.

    Todas las transiciones ocurren en el hilo del bucle de despacho.
    """

    def __init__(self, ctx: ConnectionContext, publisher: PublishPipeline, bus: EventBus,
                 on_message: Optional[Callable[[TransportEvent], None]] = None):
        """Inicializa la máquina de estados.

        Args:
            ctx: Contexto de conexión
            publisher: Pipeline de publicación
            bus: Bus de eventos para notificaciones y timers
            on_message: Manejador de mensajes entrantes
        """
        self.ctx = ctx
        self.publisher = publisher
        self.bus = bus
        self.on_message = on_message
        self.logger = logging.getLogger(__name__)

        self.reconnect_work = ScheduledWork(
            "reconnect", lambda: self._post_timer(MQTT_RECONNECT_CHAN, TimerKind.RECONNECT)
        )
        self.heartbeat_work = ScheduledWork(
            "heartbeat", lambda: self._post_timer(MQTT_HEARTBEAT_CHAN, TimerKind.HEARTBEAT)
        )

        self._entered_at = time.monotonic()
        self._started = False

        self._states: Dict[ConnectionState, Tuple[StateFn, StateFn]] = {
            ConnectionState.IDLE: (self._idle_entry, self._idle_run),
            ConnectionState.CONNECTING: (self._connecting_entry, self._connecting_run),
            ConnectionState.CONNECTED: (self._connected_entry, self._connected_run),
            ConnectionState.DISCONNECTING: (self._disconnecting_entry, self._disconnecting_run),
            ConnectionState.ERROR: (self._error_entry, self._error_run),
        }

    @property
    def state(self) -> ConnectionState:
        return self.ctx.state

    @property
    def time_in_state(self) -> float:
        return time.monotonic() - self._entered_at

    def start(self):
        """Fija el estado inicial IDLE."""
        with self.ctx.lock:
            self.ctx.state = ConnectionState.IDLE
        self._entered_at = time.monotonic()
        self._started = True
        self.logger.info("Máquina de estados MQTT iniciada en IDLE")

    def set_state(self, new_state: ConnectionState):
        """Transición explícita.

        Salir de un estado cancela los timers que ese estado programó. Una
        transición al mismo estado repite la entrada sin pasar por la salida.
        """
        while new_state is not None:
            old_state = self.ctx.state
            if new_state != old_state:
                self._exit(old_state)

            with self.ctx.lock:
                self.ctx.state = new_state
            self._entered_at = time.monotonic()
            self.logger.info(f"Estado MQTT: {old_state.value} -> {new_state.value}")

            entry, _ = self._states[new_state]
            new_state = entry()

    def tick(self):
        """Ejecuta la función run del estado actual una vez."""
        _, run = self._states[self.ctx.state]
        next_state = run()
        if next_state is not None:
            self.set_state(next_state)

    def reconnect_due(self):
        """Vencimiento del timer de reconexión."""
        if self.ctx.state != ConnectionState.ERROR:
            self.logger.debug(f"Reconexión vencida en estado {self.ctx.state.value}, se ignora")
            return
        self.set_state(ConnectionState.IDLE)

    def heartbeat_due(self):
        """Vencimiento del timer de heartbeat."""
        if self.ctx.state != ConnectionState.CONNECTED or not self.ctx.subscribed:
            self.logger.debug(f"Heartbeat vencido en estado {self.ctx.state.value}, se ignora")
            return

        self._publish_status(MSG_HEARTBEAT)
        self.heartbeat_work.schedule(self.ctx.config.retry.heartbeat_interval)

    def shutdown(self):
        """Cancela timers y cierra la conexión si existe."""
        self.reconnect_work.cancel()
        self.heartbeat_work.cancel()
        if self.ctx.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            self._release_handle()
        with self.ctx.lock:
            self.ctx.state = ConnectionState.IDLE
            self.ctx.subscribed = False

    # Salidas

    def _exit(self, state: ConnectionState):
        if state == ConnectionState.CONNECTED:
            self.heartbeat_work.cancel()
            self.ctx.subscribed = False
        elif state == ConnectionState.ERROR:
            self.reconnect_work.cancel()

    # IDLE

    def _idle_entry(self) -> Optional[ConnectionState]:
        self.ctx.handle = None
        self.ctx.subscribed = False
        self._notify(MQTTEvent(MQTTEventType.DISCONNECTED))
        return None

    def _idle_run(self) -> Optional[ConnectionState]:
        if self.ctx.network_available:
            return ConnectionState.CONNECTING
        return None

    # CONNECTING

    def _connecting_entry(self) -> Optional[ConnectionState]:
        config = self.ctx.config
        try:
            self.ctx.handle = self.ctx.transport.connect(config.broker, config.credentials, config.tls)
        except TransportError as e:
            self.logger.error(f"Falló la conexión a {config.broker.host}:{config.broker.port}: {e}")
            self.ctx.last_error = str(e)
            return ConnectionState.ERROR
        return None

    def _connecting_run(self) -> Optional[ConnectionState]:
        if not self.ctx.network_available:
            return ConnectionState.DISCONNECTING

        events = self._poll()
        if events is None:
            return ConnectionState.ERROR

        for event in events:
            if event.type == TransportEventType.CONNACK:
                if event.accepted:
                    self.logger.info("Cliente MQTT conectado")
                    return ConnectionState.CONNECTED
                self.logger.error(f"Conexión MQTT rechazada: {event.result}")
                self.ctx.last_error = f"CONNACK {event.result}"
                return ConnectionState.ERROR
            if event.type == TransportEventType.DISCONNECT:
                self.logger.error("Conexión cerrada durante el handshake")
                return ConnectionState.ERROR

        if self.time_in_state > self.ctx.config.retry.connection_timeout:
            self.logger.error("Timeout esperando CONNACK")
            self.ctx.last_error = "connack timeout"
            return ConnectionState.ERROR
        return None

    # CONNECTED

    def _connected_entry(self) -> Optional[ConnectionState]:
        self.ctx.backoff.reset()
        self.ctx.subscribed = False
        topic = self.ctx.config.broker.subscribe_topic
        try:
            packet_id = self.ctx.transport.subscribe(self.ctx.handle, topic, QoS.AT_LEAST_ONCE)
        except TransportError as e:
            self.logger.error(f"Error suscribiéndose a {topic}: {e}")
            self.ctx.last_error = str(e)
            return ConnectionState.ERROR

        self.logger.info(f"Suscripción solicitada a {topic} (packet {packet_id})")
        self._notify(MQTTEvent(MQTTEventType.CONNECTED))
        return None

    def _connected_run(self) -> Optional[ConnectionState]:
        if not self.ctx.network_available:
            return ConnectionState.DISCONNECTING

        events = self._poll()
        if events is None:
            return ConnectionState.ERROR

        for event in events:
            if event.type == TransportEventType.PUBACK:
                self.publisher.on_publish_ack(event.packet_id)
            elif event.type == TransportEventType.PUBLISH_FAILED:
                self.publisher.on_publish_failed(event.packet_id)
            elif event.type == TransportEventType.SUBACK:
                if not event.accepted:
                    self.logger.error(f"Suscripción rechazada: {event.result}")
                    self.ctx.last_error = f"SUBACK {event.result}"
                    return ConnectionState.ERROR
                self._on_subscribed()
            elif event.type == TransportEventType.MESSAGE:
                if self.on_message is not None:
                    self.on_message(event)
            elif event.type == TransportEventType.DISCONNECT:
                self.logger.error("El broker cerró la conexión")
                self.ctx.last_error = "broker disconnect"
                return ConnectionState.ERROR

        if not self.ctx.subscribed and self.time_in_state > self.ctx.config.retry.connection_timeout:
            self.logger.error("Timeout esperando SUBACK")
            self.ctx.last_error = "suback timeout"
            return ConnectionState.ERROR
        return None

    def _on_subscribed(self):
        if self.ctx.subscribed:
            return
        self.ctx.subscribed = True
        self.logger.info("Suscripción confirmada")
        self._publish_status(MSG_CONNECTED)
        self.heartbeat_work.schedule(self.ctx.config.retry.heartbeat_interval)

    # DISCONNECTING

    def _disconnecting_entry(self) -> Optional[ConnectionState]:
        self.logger.info("Desconectando del broker MQTT")
        try:
            self.ctx.transport.disconnect(self.ctx.handle)
        except TransportError as e:
            self.logger.warning(f"Error desconectando: {e}")
            return ConnectionState.IDLE
        return None

    def _disconnecting_run(self) -> Optional[ConnectionState]:
        events = self._poll()
        if events is None:
            return ConnectionState.IDLE

        if any(event.type == TransportEventType.DISCONNECT for event in events):
            self.logger.info("Cliente MQTT desconectado")
            return ConnectionState.IDLE

        if self.time_in_state > self.ctx.config.retry.connection_timeout:
            self.logger.warning("Timeout esperando desconexión, se libera la conexión")
            return ConnectionState.IDLE
        return None

    # ERROR

    def _error_entry(self) -> Optional[ConnectionState]:
        self.heartbeat_work.cancel()
        self._release_handle()

        with self.ctx.lock:
            self.ctx.backoff.record_failure()
            delay = self.ctx.backoff.on_error()
            failures = self.ctx.backoff.consecutive_failures

        self._notify(MQTTEvent(MQTTEventType.ERROR, err_code=failures))

        if self.reconnect_work.schedule(delay):
            self.logger.warning(f"Reconexión programada en {delay:.1f}s ({failures} fallas)")
        return None

    def _error_run(self) -> Optional[ConnectionState]:
        return None

    # Auxiliares

    def _poll(self):
        """Eventos pendientes del transporte, o None ante error de I/O."""
        try:
            return self.ctx.transport.poll(self.ctx.handle)
        except TransportError as e:
            self.logger.error(f"Error de I/O en el transporte: {e}")
            self.ctx.last_error = str(e)
            return None

    def _release_handle(self):
        if self.ctx.handle is None:
            return
        try:
            self.ctx.transport.disconnect(self.ctx.handle)
        except TransportError as e:
            self.logger.debug(f"Conexión liberada con error: {e}")
        self.ctx.handle = None
        self.ctx.subscribed = False

    def _publish_status(self, msg_type: str):
        try:
            self.publisher.publish_message(
                self.ctx.config.broker.publish_topic, msg_type, self.ctx.diagnostics()
            )
        except TrackerMQTTError as e:
            self.logger.warning(f"No se pudo publicar {msg_type}: {e}")

    def _notify(self, event: MQTTEvent):
        if not self._started:
            return
        try:
            self.bus.publish(CUSTOM_MQTT_CHAN, event)
        except ChannelBusyError as e:
            self.logger.warning(f"No se pudo notificar {event.type.value}: {e}")

    def _post_timer(self, channel: str, kind: TimerKind):
        try:
            self.bus.publish(channel, TimerEvent(kind))
        except ChannelBusyError as e:
            self.logger.warning(f"Timer {kind.value} perdido: {e}")

    def __repr__(self) -> str:
        return f"ConnectionStateMachine(state={self.ctx.state.value}, backoff={self.ctx.backoff})"
