#!/usr/bin/env python3
"""Demo del Cliente MQTT del Tracker

Ejemplo de uso del módulo tracker_mqtt: productores simulados publican
ubicación, ambiente, batería y botones en el bus, y el cliente los
republica en el broker con reconexión automática.
"""

import asyncio
import logging
import os
import random

from modules.tracker_mqtt import EventBus, TrackerConfig, TrackerMQTTClient, mqtt_send, mqtt_status
from modules.tracker_mqtt.aws_iot_transport import AWSIoTTransport
from modules.tracker_mqtt.config import TLSSettings
from modules.tracker_mqtt.errors import TrackerMQTTError
from modules.tracker_mqtt.events import (
    BUTTON_CHAN,
    ENVIRONMENTAL_CHAN,
    LOCATION_CHAN,
    NETWORK_CHAN,
    POWER_CHAN,
    ButtonEvent,
    EnvironmentalEvent,
    LocationEvent,
    NetworkEvent,
    NetworkStatus,
    PowerEvent,
)

# Configurar logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


REQUIRED_ENV = ['TRACKER_MQTT_HOST', 'TRACKER_MQTT_CERT_PATH', 'TRACKER_MQTT_KEY_PATH', 'TRACKER_MQTT_CA_PATH']


class TrackerDemo:
    """Demo del cliente MQTT del tracker."""

    def __init__(self):
        """Inicializa el demo."""
        self.bus = EventBus()
        self.client = None
        self.running = False

    def create_client(self) -> TrackerMQTTClient:
        """Crea el cliente MQTT.

        Returns:
            Cliente MQTT configurado
        """
        # Opción 1: Desde variables de entorno
        if all(os.getenv(var) for var in REQUIRED_ENV):
            logger.info("Creando cliente desde variables de entorno")
            config = TrackerConfig.from_env(device_id="tracker-demo")
        else:
            # Opción 2: Configuración manual (para demo)
            logger.info("Creando cliente con configuración de demo")
            config = TrackerConfig(
                tls=TLSSettings(
                    cert_path="/path/to/device-cert.pem.crt",
                    key_path="/path/to/private.pem.key",
                    ca_path="/path/to/AmazonRootCA1.pem",
                ),
                retry={"reconnect_base_delay": 10.0},
            )

        return TrackerMQTTClient(config, AWSIoTTransport(), bus=self.bus)

    async def simulate_location(self):
        """Simula fixes GNSS alrededor de un punto."""
        lat, lng = 63.4305, 10.3951
        while self.running:
            lat += random.uniform(-0.0005, 0.0005)
            lng += random.uniform(-0.0005, 0.0005)
            self.bus.publish(LOCATION_CHAN, LocationEvent(lat, lng, accuracy=random.uniform(3.0, 25.0)))
            await asyncio.sleep(20)

    async def simulate_environment(self):
        """Simula muestras ambientales, a veces fuera de rango."""
        while self.running:
            temperature = random.uniform(18.0, 30.0)
            if random.random() < 0.1:
                temperature = 150.0
            self.bus.publish(ENVIRONMENTAL_CHAN, EnvironmentalEvent(
                temperature=temperature,
                humidity=random.uniform(30.0, 70.0),
                pressure=random.uniform(98.0, 103.0),
            ))
            await asyncio.sleep(15)

    async def simulate_power(self):
        """Simula el medidor de batería, a veces sin lectura."""
        level = 100.0
        while self.running:
            level = max(level - random.uniform(0.0, 1.5), 5.0)
            if random.random() < 0.2:
                event = PowerEvent()
            else:
                event = PowerEvent(percentage=level, voltage=3.3 + level / 100.0, temperature=24.0)
            self.bus.publish(POWER_CHAN, event)
            await asyncio.sleep(30)

    async def simulate_buttons(self):
        """Simula pulsaciones ocasionales del botón 1."""
        while self.running:
            await asyncio.sleep(random.uniform(20, 60))
            self.bus.publish(BUTTON_CHAN, ButtonEvent(button_number=1))

    async def simulate_network(self):
        """Red disponible, con cortes ocasionales."""
        self.bus.publish(NETWORK_CHAN, NetworkEvent(NetworkStatus.CONNECTED))
        while self.running:
            await asyncio.sleep(random.uniform(60, 120))
            logger.info("Simulando corte de red")
            self.bus.publish(NETWORK_CHAN, NetworkEvent(NetworkStatus.DISCONNECTED))
            await asyncio.sleep(10)
            self.bus.publish(NETWORK_CHAN, NetworkEvent(NetworkStatus.CONNECTED))

    async def monitor_status(self):
        """Monitorea el estado del cliente."""
        while self.running:
            await asyncio.sleep(30)
            try:
                logger.info(mqtt_status(self.bus))
                status = self.client.status()
                logger.info(f"Estado: {status['state']} | "
                           f"Fallas consecutivas: {status['consecutive_failures']} | "
                           f"Back-off: {status['backoff_delay']:.1f}s | "
                           f"Secuencia: {status['sequence']}")
            except TrackerMQTTError as e:
                logger.error(f"Error monitoreando estado: {e}")

    async def run_demo(self, duration: int = 300):
        """Ejecuta el demo completo.

        Args:
            duration: Duración del demo en segundos
        """
        logger.info(f"Iniciando demo MQTT por {duration} segundos...")

        self.client = self.create_client()
        logger.info(f"Cliente creado: {self.client}")

        self.running = True
        client_task = asyncio.create_task(self.client.run())
        tasks = [
            asyncio.create_task(self.simulate_network()),
            asyncio.create_task(self.simulate_location()),
            asyncio.create_task(self.simulate_environment()),
            asyncio.create_task(self.simulate_power()),
            asyncio.create_task(self.simulate_buttons()),
            asyncio.create_task(self.monitor_status()),
        ]

        try:
            await asyncio.sleep(5)
            logger.info(mqtt_send(self.bus, "demo iniciado"))
            await asyncio.sleep(duration)
        finally:
            self.running = False
            logger.info("Deteniendo simulación...")

            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            self.client.stop()
            await client_task
            logger.info("Demo completado")


async def main():
    """Función principal del demo."""
    print("🚀 Demo del Cliente MQTT del Tracker")
    print("====================================")
    print()
    print("Este demo simula un tracker que publica:")
    print("• Ubicación GNSS cada 20 segundos")
    print("• Temperatura, humedad y presión cada 15 segundos")
    print("• Nivel de batería cada 30 segundos")
    print("• Pulsaciones de botón ocasionales")
    print()

    missing_vars = [var for var in REQUIRED_ENV if not os.getenv(var)]

    if missing_vars:
        print("⚠️  Variables de entorno faltantes:")
        for var in missing_vars:
            print(f"   - {var}")
        print()
        print("🔧 Ejecutando demo con configuración simulada (la conexión fallará y reintentará)...")
    else:
        print("✅ Configuración del broker detectada")

    print()

    demo = TrackerDemo()
    await demo.run_demo(duration=120)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n👋 Demo interrumpido. ¡Hasta luego!")
