"""Tests para la máquina de estados de conexión.

Las transiciones que programan timers necesitan un loop en ejecución, por
eso esos tests son asíncronos.
"""

import asyncio
import json

import pytest
from unittest.mock import Mock, patch

from modules.tracker_mqtt.config import TrackerConfig
from modules.tracker_mqtt.context import ConnectionContext, ConnectionState
from modules.tracker_mqtt.errors import TransportError
from modules.tracker_mqtt.events import CUSTOM_MQTT_CHAN, EventBus, MQTTEventType
from modules.tracker_mqtt.publisher import PublishPipeline
from modules.tracker_mqtt.state_machine import ConnectionStateMachine
from modules.tracker_mqtt.transport import BrokerTransport, QoS, TransportEvent, TransportEventType


CONNACK_OK = TransportEvent(TransportEventType.CONNACK)
SUBACK_OK = TransportEvent(TransportEventType.SUBACK, packet_id=1)


@pytest.fixture
def machine():
    """Fixture para máquina de estados con transporte mockeado."""
    config = TrackerConfig(retry={"connection_timeout": 30.0, "heartbeat_interval": 30.0})
    transport = Mock(spec=BrokerTransport)
    transport.connect.return_value = "handle"
    transport.subscribe.return_value = 1
    transport.publish.return_value = 10
    transport.poll.return_value = []

    ctx = ConnectionContext(config, transport)
    bus = EventBus()
    sm = ConnectionStateMachine(ctx, PublishPipeline(ctx), bus)
    sm.start()

    yield sm, ctx, transport, bus

    sm.reconnect_work.cancel()
    sm.heartbeat_work.cancel()


def connect(sm, ctx, transport):
    """Lleva la máquina hasta CONNECTED."""
    ctx.network_available = True
    sm.tick()
    transport.poll.return_value = [CONNACK_OK]
    sm.tick()
    transport.poll.return_value = []


class TestIdleAndConnecting:
    """Tests para IDLE y CONNECTING."""

    def test_idle_waits_for_network(self, machine):
        """Test IDLE no conecta sin red."""
        sm, _, transport, _ = machine

        sm.tick()

        assert sm.state == ConnectionState.IDLE
        transport.connect.assert_not_called()

    def test_network_starts_connection(self, machine):
        """Test red disponible inicia la conexión."""
        sm, ctx, transport, _ = machine
        ctx.network_available = True

        sm.tick()

        assert sm.state == ConnectionState.CONNECTING
        transport.connect.assert_called_once_with(ctx.config.broker, ctx.config.credentials, ctx.config.tls)
        assert ctx.handle == "handle"

    def test_connack_accepted(self, machine):
        """Test CONNACK aceptado lleva a CONNECTED y suscribe."""
        sm, ctx, transport, bus = machine

        connect(sm, ctx, transport)

        assert sm.state == ConnectionState.CONNECTED
        transport.subscribe.assert_called_once_with("handle", "tracker/commands", QoS.AT_LEAST_ONCE)
        assert bus.read(CUSTOM_MQTT_CHAN).type == MQTTEventType.CONNECTED
        # Sin anuncio hasta el SUBACK
        transport.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_connack_rejected(self, machine):
        """Test CONNACK rechazado lleva a ERROR."""
        sm, ctx, transport, bus = machine
        ctx.network_available = True
        sm.tick()

        transport.poll.return_value = [TransportEvent(TransportEventType.CONNACK, result=5)]
        sm.tick()

        assert sm.state == ConnectionState.ERROR
        transport.disconnect.assert_called_once_with("handle")
        assert ctx.handle is None
        assert ctx.last_error == "CONNACK 5"

        event = bus.read(CUSTOM_MQTT_CHAN)
        assert event.type == MQTTEventType.ERROR
        assert event.err_code == 1
        assert sm.reconnect_work.pending

    @pytest.mark.asyncio
    async def test_connect_failure(self, machine):
        """Test falla del transporte en connect lleva a ERROR."""
        sm, ctx, transport, _ = machine
        transport.connect.side_effect = TransportError("connect", "dns")
        ctx.network_available = True

        sm.tick()

        assert sm.state == ConnectionState.ERROR
        transport.disconnect.assert_not_called()
        assert ctx.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_connack_timeout(self, machine):
        """Test sin CONNACK dentro del timeout lleva a ERROR."""
        sm, ctx, _, _ = machine
        ctx.network_available = True
        sm.tick()

        sm._entered_at -= 31.0
        sm.tick()

        assert sm.state == ConnectionState.ERROR
        assert ctx.last_error == "connack timeout"

    def test_network_lost_while_connecting(self, machine):
        """Test pérdida de red durante el handshake."""
        sm, ctx, transport, _ = machine
        ctx.network_available = True
        sm.tick()

        ctx.network_available = False
        sm.tick()

        assert sm.state == ConnectionState.DISCONNECTING
        transport.disconnect.assert_called_once_with("handle")


class TestConnected:
    """Tests para CONNECTED."""

    @pytest.mark.asyncio
    async def test_suback_announces(self, machine):
        """Test SUBACK publica el anuncio y programa el heartbeat."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)

        transport.poll.return_value = [SUBACK_OK]
        sm.tick()

        assert ctx.subscribed
        transport.publish.assert_called_once()
        topic, payload, qos = transport.publish.call_args[0][1:]
        assert topic == "tracker/data"
        assert qos == QoS.AT_LEAST_ONCE
        document = json.loads(payload)
        assert document["type"] == "connected"
        assert document["data"]["state"] == "connected"
        assert sm.heartbeat_work.pending
        assert sm.heartbeat_work.delay == 30.0

    @pytest.mark.asyncio
    async def test_suback_rejected(self, machine):
        """Test SUBACK rechazado lleva a ERROR."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)

        transport.poll.return_value = [TransportEvent(TransportEventType.SUBACK, result=0x80, packet_id=1)]
        sm.tick()

        assert sm.state == ConnectionState.ERROR
        transport.publish.assert_not_called()

    def test_network_lost_disconnects_once(self, machine):
        """Test pérdida de red en CONNECTED: DISCONNECTING y un solo disconnect."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)

        ctx.network_available = False
        sm.tick()

        assert sm.state == ConnectionState.DISCONNECTING
        transport.disconnect.assert_called_once_with("handle")

        sm.tick()
        transport.disconnect.assert_called_once()

        transport.poll.return_value = [TransportEvent(TransportEventType.DISCONNECT)]
        sm.tick()

        assert sm.state == ConnectionState.IDLE
        assert ctx.handle is None

    def test_disconnect_timeout_forces_idle(self, machine):
        """Test sin confirmación de desconexión se fuerza IDLE."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)
        ctx.network_available = False
        sm.tick()

        sm._entered_at -= 31.0
        sm.tick()

        assert sm.state == ConnectionState.IDLE

    def test_puback_decrements_failures(self, machine):
        """Test PUBACK descuenta fallas."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)
        ctx.backoff.consecutive_failures = 2

        transport.poll.return_value = [TransportEvent(TransportEventType.PUBACK, packet_id=10)]
        sm.tick()

        assert ctx.consecutive_failures == 1

    def test_unconfirmed_publish_counts_failure(self, machine):
        """Test PUBLISH_FAILED incrementa fallas sin salir de CONNECTED."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)

        transport.poll.return_value = [
            TransportEvent(TransportEventType.PUBLISH_FAILED, packet_id=10),
            TransportEvent(TransportEventType.PUBLISH_FAILED, packet_id=11),
        ]
        sm.tick()

        assert ctx.consecutive_failures == 2
        assert ctx.last_error == "publish 11 unconfirmed"
        assert sm.state == ConnectionState.CONNECTED

    def test_inbound_message_forwarded(self, machine):
        """Test mensajes entrantes van al manejador."""
        sm, ctx, transport, _ = machine
        on_message = Mock()
        sm.on_message = on_message
        connect(sm, ctx, transport)

        message = TransportEvent(TransportEventType.MESSAGE, topic="tracker/commands", payload=b"hi")
        transport.poll.return_value = [message]
        sm.tick()

        on_message.assert_called_once_with(message)

    @pytest.mark.asyncio
    async def test_poll_error(self, machine):
        """Test error de I/O en CONNECTED lleva a ERROR."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)

        transport.poll.side_effect = TransportError("poll", "reset by peer")
        sm.tick()

        assert sm.state == ConnectionState.ERROR
        assert not ctx.subscribed

    @pytest.mark.asyncio
    async def test_broker_disconnect(self, machine):
        """Test el broker cierra la conexión."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)

        transport.poll.return_value = [TransportEvent(TransportEventType.DISCONNECT)]
        sm.tick()

        assert sm.state == ConnectionState.ERROR

    @pytest.mark.asyncio
    async def test_leaving_connected_cancels_heartbeat(self, machine):
        """Test salir de CONNECTED cancela el heartbeat."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)
        transport.poll.return_value = [SUBACK_OK]
        sm.tick()
        assert sm.heartbeat_work.pending

        transport.poll.return_value = []
        ctx.network_available = False
        sm.tick()

        assert not sm.heartbeat_work.pending

    @pytest.mark.asyncio
    async def test_heartbeat_publishes_and_reschedules(self, machine):
        """Test heartbeat publica diagnóstico y se re-programa."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)
        transport.poll.return_value = [SUBACK_OK]
        sm.tick()
        sm.heartbeat_work.cancel()

        sm.heartbeat_due()

        document = json.loads(transport.publish.call_args[0][2])
        assert document["type"] == "heartbeat"
        assert "consecutive_failures" in document["data"]
        assert sm.heartbeat_work.pending

    def test_stale_heartbeat_ignored(self, machine):
        """Test heartbeat vencido fuera de CONNECTED se ignora."""
        sm, _, transport, _ = machine

        sm.heartbeat_due()

        transport.publish.assert_not_called()
        assert not sm.heartbeat_work.pending


class TestErrorState:
    """Tests para ERROR."""

    @pytest.mark.asyncio
    async def test_error_twice_schedules_once(self, machine):
        """Test dos entradas seguidas en ERROR programan una sola reconexión."""
        sm, ctx, _, _ = machine
        loop = asyncio.get_running_loop()

        with patch.object(loop, "call_later", wraps=loop.call_later) as call_later:
            sm.set_state(ConnectionState.ERROR)
            sm.set_state(ConnectionState.ERROR)

        assert call_later.call_count == 1
        assert sm.reconnect_work.pending
        assert ctx.consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_reconnect_returns_to_idle(self, machine):
        """Test vencimiento de reconexión: ERROR -> IDLE."""
        sm, ctx, _, bus = machine
        sm.set_state(ConnectionState.ERROR)

        sm.reconnect_due()

        assert sm.state == ConnectionState.IDLE
        assert not sm.reconnect_work.pending
        assert bus.read(CUSTOM_MQTT_CHAN).type == MQTTEventType.DISCONNECTED

    def test_stale_reconnect_ignored(self, machine):
        """Test reconexión vencida fuera de ERROR se ignora."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)

        sm.reconnect_due()

        assert sm.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_backoff_escalates_and_resets(self, machine):
        """Test back-off duplica con fallas sostenidas y vuelve a la base al conectar."""
        sm, ctx, transport, _ = machine
        ctx.backoff.failure_threshold = 0

        delays = []
        for _ in range(3):
            sm.set_state(ConnectionState.ERROR)
            delays.append(ctx.backoff.current_delay)
            sm.reconnect_due()

        assert delays == [10.0, 20.0, 40.0]

        connect(sm, ctx, transport)

        assert ctx.backoff.current_delay == 5.0

    @pytest.mark.asyncio
    async def test_shutdown(self, machine):
        """Test shutdown cancela timers y libera la conexión."""
        sm, ctx, transport, _ = machine
        connect(sm, ctx, transport)
        transport.poll.return_value = [SUBACK_OK]
        sm.tick()

        sm.shutdown()

        assert sm.state == ConnectionState.IDLE
        assert not sm.heartbeat_work.pending
        transport.disconnect.assert_called_once_with("handle")
        assert ctx.handle is None
