"""Cliente MQTT del tracker

Bucle de despacho único: espera eventos del bus con timeout, ejecuta el
manejador del canal correspondiente y luego avanza la máquina de estados
un tick. Las fallas de un evento se registran y el bucle continúa.
"""

import logging
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from modules.tracker_mqtt.config import TrackerConfig
from modules.tracker_mqtt.context import ConnectionContext, ConnectionState
from modules.tracker_mqtt.errors import (
    ChannelBusyError,
    NotConnectedError,
    TrackerMQTTError,
    ValidationFailedError,
)
from modules.tracker_mqtt.events import (
    BUTTON_CHAN,
    CUSTOM_MQTT_CHAN,
    ENVIRONMENTAL_CHAN,
    LOCATION_CHAN,
    MQTT_HEARTBEAT_CHAN,
    MQTT_RECEIVED_CHAN,
    MQTT_RECONNECT_CHAN,
    MQTT_SEND_CHAN,
    NETWORK_CHAN,
    POWER_CHAN,
    ButtonEvent,
    Channel,
    EnvironmentalEvent,
    EventBus,
    LocationEvent,
    MQTTEvent,
    MQTTEventType,
    NetworkEvent,
    PowerEvent,
    Subscriber,
    TimerEvent,
)
from modules.tracker_mqtt.publisher import PublishPipeline
from modules.tracker_mqtt.serialization import (
    MSG_ACK,
    MSG_BUTTON,
    MSG_COMMAND_ACK,
    MSG_ENVIRONMENTAL,
    MSG_LOCATION,
    MSG_MESSAGE,
    MSG_POWER,
    button_body,
    command_ack_body,
    environmental_body,
    generic_ack_body,
    location_body,
    message_body,
    parse_command,
    power_body,
)
from modules.tracker_mqtt.state_machine import ConnectionStateMachine
from modules.tracker_mqtt.transport import BrokerTransport, TransportEvent
from modules.tracker_mqtt.validation import (
    fallback_power_reading,
    validate_environmental,
    validate_location,
    validate_power,
)


PRODUCER_CHANNELS = (LOCATION_CHAN, ENVIRONMENTAL_CHAN, POWER_CHAN, BUTTON_CHAN)


class TrackerMQTTClient:
    """Cliente MQTT de larga duración para el tracker.

    Características:
    - Republica telemetría de varios productores del bus
    - Valida cada lectura antes de publicarla
    - Responde comandos entrantes con acuses de recibo
    - Reconexión con back-off según la inestabilidad observada
    """

    def __init__(self, config: TrackerConfig, transport: BrokerTransport,
                 bus: Optional[EventBus] = None,
                 producers: Iterable[str] = PRODUCER_CHANNELS):
        """Inicializa el cliente.

        Args:
            config: Configuración del cliente
            transport: Transporte hacia el broker
            bus: Bus de eventos compartido (se crea uno si no se indica)
            producers: Canales de productores a los que suscribirse
        """
        self.config = config
        self.bus = bus or EventBus()
        self.logger = logging.getLogger(__name__)

        self.bus.channel(CUSTOM_MQTT_CHAN, MQTTEvent(MQTTEventType.DISCONNECTED))
        self.bus.queue_channel(MQTT_SEND_CHAN)
        self.bus.channel(MQTT_RECEIVED_CHAN)

        self.ctx = ConnectionContext(config, transport)
        self.publisher = PublishPipeline(self.ctx)
        self.state_machine = ConnectionStateMachine(
            self.ctx, self.publisher, self.bus, on_message=self._handle_inbound
        )
        self.subscriber = Subscriber("custom_mqtt_subscriber")

        handlers: Dict[str, Tuple[type, Callable[[Any], None]]] = {
            NETWORK_CHAN: (NetworkEvent, self._on_network),
            LOCATION_CHAN: (LocationEvent, self._on_location),
            ENVIRONMENTAL_CHAN: (EnvironmentalEvent, self._on_environmental),
            POWER_CHAN: (PowerEvent, self._on_power),
            BUTTON_CHAN: (ButtonEvent, self._on_button),
            MQTT_SEND_CHAN: (MQTTEvent, self._on_send_request),
            MQTT_RECONNECT_CHAN: (TimerEvent, self._on_reconnect_timer),
            MQTT_HEARTBEAT_CHAN: (TimerEvent, self._on_heartbeat_timer),
        }
        channels = [NETWORK_CHAN, *producers, MQTT_SEND_CHAN, MQTT_RECONNECT_CHAN, MQTT_HEARTBEAT_CHAN]
        self._handlers = {name: handlers[name] for name in channels}

        self._last_power: Optional[PowerEvent] = None
        self._started = False
        self._running = False

    @property
    def state(self) -> ConnectionState:
        return self.ctx.state

    @property
    def is_connected(self) -> bool:
        return self.ctx.state == ConnectionState.CONNECTED

    @property
    def topic(self) -> str:
        return self.config.broker.publish_topic

    def start(self):
        """Suscribe el cliente a sus canales e inicia la máquina de estados."""
        if self._started:
            return
        self.bus.subscribe(self.subscriber, *self._handlers)
        self.state_machine.start()
        self._started = True
        self.logger.info(f"Cliente MQTT iniciado, canales: {list(self._handlers)}")

    async def run(self):
        """Bucle de despacho hasta stop()."""
        self.start()
        self._running = True
        try:
            while self._running:
                await self.run_once()
        finally:
            self.state_machine.shutdown()
            self.logger.info("Cliente MQTT detenido")

    async def run_once(self):
        """Una iteración: como máximo un evento, luego un tick."""
        channel = await self.subscriber.wait(self.config.poll_interval)
        if channel is not None:
            self._dispatch(channel)
        self.state_machine.tick()

    def stop(self):
        """Detiene el cliente.

        Con run() activo, el bucle termina al final de la iteración actual y
        cierra la conexión; sin él, la conexión se cierra aquí mismo.
        """
        if self._running:
            self._running = False
        else:
            self.state_machine.shutdown()

    def publish(self, topic: str, payload: bytes) -> int:
        """Publica bytes ya serializados. Ver PublishPipeline.publish."""
        return self.publisher.publish(topic, payload)

    def status(self) -> Dict[str, Any]:
        """Obtiene el estado actual del cliente.

        Returns:
            Diccionario con estado y contadores de diagnóstico
        """
        status = self.ctx.diagnostics()
        status.update({
            "connected": self.is_connected,
            "client_id": self.config.broker.client_id,
            "device_id": self.config.device_id,
            "endpoint": f"{self.config.broker.host}:{self.config.broker.port}",
        })
        return status

    # Despacho

    def _dispatch(self, channel: Channel):
        try:
            event = channel.read()
        except ChannelBusyError:
            self.logger.debug(f"Canal {channel.name} ocupado, se reintenta en la próxima iteración")
            self.subscriber.notify(channel)
            return
        except TrackerMQTTError as e:
            self.logger.error(f"Error leyendo canal {channel.name}: {e}")
            return

        entry = self._handlers.get(channel.name)
        if entry is None:
            self.logger.warning(f"Canal sin manejador: {channel.name}")
            return

        expected, handler = entry
        if not isinstance(event, expected):
            self.logger.warning(f"Evento inesperado en {channel.name}: {event!r}")
            return

        with self.ctx.lock:
            try:
                handler(event)
            except ValidationFailedError as e:
                self.logger.warning(f"Lectura descartada de {channel.name}: {e}")
            except NotConnectedError as e:
                self.logger.debug(f"Evento de {channel.name} no publicado: {e}")
            except TrackerMQTTError as e:
                self.logger.error(f"Error procesando evento de {channel.name}: {e}")

    # Manejadores

    def _on_network(self, event: NetworkEvent):
        self.ctx.network_available = event.available
        if event.available:
            self.logger.info("Red conectada")
        else:
            self.logger.info("Red desconectada")

    def _on_location(self, event: LocationEvent):
        validate_location(event, self.config.thresholds)
        self.publisher.publish_message(self.topic, MSG_LOCATION, location_body(event, self.config.precision))

    def _on_environmental(self, event: EnvironmentalEvent):
        validate_environmental(event, self.config.thresholds)
        self.publisher.publish_message(
            self.topic, MSG_ENVIRONMENTAL, environmental_body(event, self.config.precision)
        )

    def _on_power(self, event: PowerEvent):
        if not event.has_reading:
            event = fallback_power_reading()
            self.logger.warning(
                f"Sin lectura de batería, usando valores por defecto: "
                f"{event.percentage:.1f}%, {event.voltage:.2f}V"
            )

        validate_power(event, self.config.thresholds)
        self._last_power = event
        self.publisher.publish_message(self.topic, MSG_POWER, power_body(event, self.config.precision))

    def _on_button(self, event: ButtonEvent):
        self.publisher.publish_message(self.topic, MSG_BUTTON, button_body(event))

        if self.config.button_power_measurement:
            power = self._last_power or fallback_power_reading()
            self.publisher.publish_message(self.topic, MSG_POWER, power_body(power, self.config.precision))

    def _on_send_request(self, event: MQTTEvent):
        if event.type != MQTTEventType.DATA_SEND:
            self.logger.warning(f"Evento {event.type.value} en el canal de envío, se ignora")
            return
        if not event.data:
            self.logger.warning("DATA_SEND sin contenido, se ignora")
            return
        self.publisher.publish_message(self.topic, MSG_MESSAGE, message_body(event.data))

    def _on_reconnect_timer(self, event: TimerEvent):
        self.state_machine.reconnect_due()

    def _on_heartbeat_timer(self, event: TimerEvent):
        self.state_machine.heartbeat_due()

    # Mensajes entrantes

    def _handle_inbound(self, event: TransportEvent):
        buffer = self.ctx.rx_buffer
        buffer.store(event.payload)
        text = buffer.text
        self.logger.info(f"Mensaje MQTT recibido en {event.topic}: {buffer.length} bytes")

        command = parse_command(text)
        try:
            if command is not None:
                self.logger.info(f"Comando recibido: {command}")
                self.publisher.publish_message(self.topic, MSG_COMMAND_ACK, command_ack_body(text, command))
            else:
                self.publisher.publish_message(self.topic, MSG_ACK, generic_ack_body(text))
        except TrackerMQTTError as e:
            self.logger.warning(f"No se pudo responder al mensaje entrante: {e}")

        try:
            self.bus.publish(MQTT_RECEIVED_CHAN, MQTTEvent(MQTTEventType.DATA_RECEIVED, data=text))
        except ChannelBusyError as e:
            self.logger.warning(f"No se pudo republicar el mensaje entrante: {e}")

    def __repr__(self) -> str:
        return f"TrackerMQTTClient(client_id={self.config.broker.client_id}, state={self.ctx.state.value})"
