"""Tests para reconexión automática.

Los timers de reconexión y heartbeat vuelven al bucle de despacho como
eventos del bus; estas pruebas usan delays cortos y el loop real.
"""

import asyncio

import pytest
from unittest.mock import Mock

from modules.tracker_mqtt import TrackerMQTTClient
from modules.tracker_mqtt.config import TrackerConfig
from modules.tracker_mqtt.context import ConnectionState
from modules.tracker_mqtt.errors import TransportError
from modules.tracker_mqtt.events import (
    CUSTOM_MQTT_CHAN,
    MQTT_RECONNECT_CHAN,
    NETWORK_CHAN,
    MQTTEventType,
    NetworkEvent,
    NetworkStatus,
    TimerEvent,
    TimerKind,
)
from modules.tracker_mqtt.timers import ScheduledWork
from modules.tracker_mqtt.transport import BrokerTransport, TransportEvent, TransportEventType


@pytest.fixture
def client_and_transport():
    """Fixture para cliente con delays de reconexión cortos."""
    config = TrackerConfig(
        poll_interval=0.01,
        retry={"reconnect_base_delay": 0.02, "reconnect_max_delay": 1.0, "heartbeat_interval": 0.02},
    )
    transport = Mock(spec=BrokerTransport)
    transport.connect.return_value = "handle"
    transport.subscribe.return_value = 1
    transport.publish.return_value = 10
    transport.poll.return_value = []

    client = TrackerMQTTClient(config, transport)
    client.start()
    return client, transport


class TestScheduledWork:
    """Tests para trabajo diferido."""

    @pytest.mark.asyncio
    async def test_fires_once(self):
        """Test el callback se ejecuta una vez."""
        callback = Mock()
        work = ScheduledWork("test", callback)

        assert work.schedule(0.01)
        await asyncio.sleep(0.05)

        callback.assert_called_once()
        assert not work.pending

    @pytest.mark.asyncio
    async def test_not_rearmed_while_pending(self):
        """Test programar dos veces deja un solo vencimiento."""
        callback = Mock()
        work = ScheduledWork("test", callback)

        assert work.schedule(0.01)
        assert not work.schedule(0.01)
        await asyncio.sleep(0.05)

        callback.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test cancelación."""
        callback = Mock()
        work = ScheduledWork("test", callback)
        work.schedule(0.01)

        assert work.cancel()
        assert not work.cancel()
        await asyncio.sleep(0.05)

        callback.assert_not_called()


class TestReconnect:
    """Tests para reconexión de extremo a extremo."""

    @pytest.mark.asyncio
    async def test_reconnect_after_connect_failure(self, client_and_transport):
        """Test falla de conexión, timer de reconexión y nuevo intento."""
        client, transport = client_and_transport
        transport.connect.side_effect = [TransportError("connect", "refused"), "handle"]

        client.bus.publish(NETWORK_CHAN, NetworkEvent(NetworkStatus.CONNECTED))
        await client.run_once()

        assert client.state == ConnectionState.ERROR
        assert client.bus.read(CUSTOM_MQTT_CHAN).type == MQTTEventType.ERROR

        await asyncio.sleep(0.05)
        assert client.bus.read(MQTT_RECONNECT_CHAN) == TimerEvent(TimerKind.RECONNECT)

        # La notificación del timer llega en el canal de reconexión
        for _ in range(3):
            await client.run_once()
            if client.state == ConnectionState.CONNECTING:
                break

        assert client.state == ConnectionState.CONNECTING
        assert transport.connect.call_count == 2
        client.state_machine.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_without_network_stays_idle(self, client_and_transport):
        """Test ERROR sin red espera en IDLE tras la reconexión."""
        client, transport = client_and_transport
        transport.connect.side_effect = TransportError("connect", "refused")

        client.bus.publish(NETWORK_CHAN, NetworkEvent(NetworkStatus.CONNECTED))
        await client.run_once()
        client.bus.publish(NETWORK_CHAN, NetworkEvent(NetworkStatus.DISCONNECTED))
        await client.run_once()

        await asyncio.sleep(0.05)
        for _ in range(4):
            await client.run_once()

        assert client.state == ConnectionState.IDLE
        assert transport.connect.call_count == 1

    @pytest.mark.asyncio
    async def test_heartbeat_timer(self, client_and_transport):
        """Test el heartbeat se publica por timer mientras hay conexión."""
        client, transport = client_and_transport
        client.bus.publish(NETWORK_CHAN, NetworkEvent(NetworkStatus.CONNECTED))
        await client.run_once()
        transport.poll.return_value = [TransportEvent(TransportEventType.CONNACK)]
        await client.run_once()
        transport.poll.return_value = [TransportEvent(TransportEventType.SUBACK, packet_id=1)]
        await client.run_once()
        transport.poll.return_value = []

        await asyncio.sleep(0.05)
        for _ in range(3):
            await client.run_once()

        payloads = [c[0][2] for c in transport.publish.call_args_list]
        assert any(b'"type":"heartbeat"' in payload for payload in payloads)
        client.state_machine.shutdown()
