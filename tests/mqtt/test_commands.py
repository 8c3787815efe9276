"""Tests para los comandos de operador mqtt status / mqtt send."""

import pytest
from unittest.mock import patch

from modules.tracker_mqtt.commands import mqtt_send, mqtt_status
from modules.tracker_mqtt.errors import ChannelBusyError
from modules.tracker_mqtt.events import (
    CUSTOM_MQTT_CHAN,
    MQTT_SEND_CHAN,
    EventBus,
    MQTTEvent,
    MQTTEventType,
    QueueChannel,
)


class TestMQTTStatus:
    """Tests para mqtt status."""

    @pytest.mark.parametrize("event,expected", [
        (MQTTEvent(MQTTEventType.CONNECTED), "MQTT Status: Connected"),
        (MQTTEvent(MQTTEventType.DISCONNECTED), "MQTT Status: Disconnected"),
        (MQTTEvent(MQTTEventType.ERROR, err_code=3), "MQTT Status: Error (code: 3)"),
    ])
    def test_status_lines(self, event, expected):
        """Test línea de estado según el último evento."""
        bus = EventBus()
        bus.publish(CUSTOM_MQTT_CHAN, event)

        assert mqtt_status(bus) == expected

    def test_status_without_value(self):
        """Test canal sin valor."""
        assert mqtt_status(EventBus()) == "MQTT Status: Unknown (None)"

    def test_status_unaffected_by_send(self):
        """Test un envío no altera el estado reportado."""
        bus = EventBus()
        bus.publish(CUSTOM_MQTT_CHAN, MQTTEvent(MQTTEventType.CONNECTED))

        mqtt_send(bus, "hola")

        assert mqtt_status(bus) == "MQTT Status: Connected"

    def test_status_busy(self):
        """Test canal ocupado."""
        bus = EventBus()
        channel = bus.channel(CUSTOM_MQTT_CHAN)
        channel._lock.acquire()
        try:
            with pytest.raises(ChannelBusyError):
                mqtt_status(bus)
        finally:
            channel._lock.release()


class TestMQTTSend:
    """Tests para mqtt send."""

    def test_send(self):
        """Test encola DATA_SEND con el texto."""
        bus = EventBus()

        assert mqtt_send(bus, "hola") == "Message sent: hola"
        assert isinstance(bus.channel(MQTT_SEND_CHAN), QueueChannel)
        assert bus.read(MQTT_SEND_CHAN) == MQTTEvent(MQTTEventType.DATA_SEND, data="hola")

    def test_sends_kept_in_order(self):
        """Test envíos consecutivos no se pisan."""
        bus = EventBus()

        mqtt_send(bus, "uno")
        mqtt_send(bus, "dos")

        assert bus.read(MQTT_SEND_CHAN).data == "uno"
        assert bus.read(MQTT_SEND_CHAN).data == "dos"
        assert bus.read(MQTT_SEND_CHAN) is None

    def test_send_empty(self):
        """Test texto vacío."""
        bus = EventBus()

        with pytest.raises(ValueError):
            mqtt_send(bus, "")

        assert bus.read(MQTT_SEND_CHAN) is None

    def test_send_queue_full(self):
        """Test cola de envío llena tras los reintentos."""
        bus = EventBus()
        bus.queue_channel(MQTT_SEND_CHAN, maxlen=1)
        mqtt_send(bus, "uno")

        with pytest.raises(ChannelBusyError):
            mqtt_send(bus, "dos")

        assert bus.read(MQTT_SEND_CHAN).data == "uno"

    def test_send_retries_busy_channel(self):
        """Test reintenta si el canal está ocupado."""
        bus = EventBus()
        original = bus.publish
        calls = []

        def flaky_publish(name, event, timeout=0.5):
            calls.append(name)
            if len(calls) < 3:
                raise ChannelBusyError(name)
            original(name, event, timeout=timeout)

        with patch.object(bus, "publish", side_effect=flaky_publish):
            assert mqtt_send(bus, "hola") == "Message sent: hola"

        assert calls == [MQTT_SEND_CHAN] * 3
        assert bus.read(MQTT_SEND_CHAN).data == "hola"

    def test_send_gives_up(self):
        """Test propaga ChannelBusyError tras agotar los reintentos."""
        bus = EventBus()

        with patch.object(bus, "publish", side_effect=ChannelBusyError(MQTT_SEND_CHAN)) as publish:
            with pytest.raises(ChannelBusyError):
                mqtt_send(bus, "hola")

        assert publish.call_count == 3
