"""Configuración del cliente MQTT del tracker.

Modelos Pydantic inmutables: toda la configuración se entrega al iniciar
el proceso y no cambia después.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from modules.tracker_mqtt.errors import ConfigurationError


class BrokerSettings(BaseModel):
    """Endpoint del broker y tópicos."""

    host: str = Field("t4as.org", min_length=1, description="Hostname del broker")
    port: int = Field(8883, ge=1, le=65535, description="Puerto TLS del broker")
    client_id: str = Field("thingy91x-asset-tracker", min_length=1, max_length=128)
    device_id: Optional[str] = Field(None, description="ID del dispositivo; por defecto el client_id")
    publish_topic: str = Field("tracker/data", min_length=1)
    subscribe_topic: str = Field("tracker/commands", min_length=1)
    keepalive_secs: int = Field(60, ge=0, le=65535)

    model_config = {"frozen": True}

    @field_validator("publish_topic", "subscribe_topic")
    @classmethod
    def validate_topic(cls, v):
        """Validar tópico MQTT.

        Args:
            v: Tópico a validar

        Returns:
            str: Tópico validado

        Raises:
            ValueError: Si el tópico contiene caracteres no permitidos
        """
        if "\x00" in v:
            raise ValueError("El tópico no puede contener caracteres nulos")
        if len(v.encode("utf-8")) > 65535:
            raise ValueError("El tópico excede 65535 bytes")
        return v

    @property
    def effective_device_id(self) -> str:
        return self.device_id or self.client_id


class CredentialSettings(BaseModel):
    """Credenciales opcionales de usuario/contraseña."""

    username: Optional[str] = None
    password: Optional[str] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_pair(self):
        if self.password is not None and self.username is None:
            raise ValueError("Contraseña definida sin usuario")
        return self


class TLSSettings(BaseModel):
    """Identificadores de seguridad TLS (certificados del dispositivo)."""

    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    ca_path: Optional[str] = None
    peer_verify: bool = True

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_client_pair(self):
        if bool(self.cert_path) != bool(self.key_path):
            raise ValueError("cert_path y key_path deben definirse juntos")
        return self


class ValidationThresholds(BaseModel):
    """Rangos aceptados para cada señal publicada."""

    temp_min: float = -50.0
    temp_max: float = 100.0
    humidity_min: float = 0.0
    humidity_max: float = 100.0
    # kPa
    pressure_min: float = 80.0
    pressure_max: float = 120.0
    battery_min: float = 0.0
    battery_max: float = 100.0
    voltage_min: float = 2.5
    voltage_max: float = 4.5
    battery_temp_min: float = -20.0
    battery_temp_max: float = 60.0
    gps_accuracy_max: float = Field(10000.0, gt=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_ranges(self):
        for name in ("temp", "humidity", "pressure", "battery", "voltage", "battery_temp"):
            low = getattr(self, f"{name}_min")
            high = getattr(self, f"{name}_max")
            if low >= high:
                raise ValueError(f"Rango inválido para {name}: {low} >= {high}")
        return self


class RetrySettings(BaseModel):
    """Parámetros de reconexión, heartbeat y timeouts (segundos)."""

    reconnect_base_delay: float = Field(5.0, gt=0)
    reconnect_max_delay: float = Field(300.0, gt=0)
    max_publish_failures: int = Field(10, ge=0)
    heartbeat_interval: float = Field(30.0, gt=0)
    connection_timeout: float = Field(30.0, gt=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_delays(self):
        if self.reconnect_base_delay > self.reconnect_max_delay:
            raise ValueError("reconnect_base_delay no puede superar reconnect_max_delay")
        return self


class PrecisionSettings(BaseModel):
    """Decimales publicados por señal, para reducir tamaño y ruido."""

    temperature: int = Field(2, ge=0, le=10)
    humidity: int = Field(2, ge=0, le=10)
    pressure: int = Field(1, ge=0, le=10)
    battery: int = Field(1, ge=0, le=10)
    gps: int = Field(6, ge=0, le=10)
    accuracy: int = Field(1, ge=0, le=10)
    voltage: int = Field(2, ge=0, le=10)

    model_config = {"frozen": True}


class TrackerConfig(BaseModel):
    """Configuración completa del cliente MQTT del tracker."""

    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    credentials: CredentialSettings = Field(default_factory=CredentialSettings)
    tls: TLSSettings = Field(default_factory=TLSSettings)
    thresholds: ValidationThresholds = Field(default_factory=ValidationThresholds)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    precision: PrecisionSettings = Field(default_factory=PrecisionSettings)
    payload_buffer_size: int = Field(512, ge=2, description="Capacidad del buffer de recepción")
    poll_interval: float = Field(1.0, gt=0, description="Espera máxima del bus por iteración")
    button_power_measurement: bool = True

    model_config = {"frozen": True}

    @property
    def device_id(self) -> str:
        return self.broker.effective_device_id

    @classmethod
    def from_env(cls, device_id: Optional[str] = None) -> "TrackerConfig":
        """Crea la configuración desde variables de entorno.

        Variables esperadas:
        - TRACKER_MQTT_HOST
        - TRACKER_MQTT_CERT_PATH
        - TRACKER_MQTT_KEY_PATH
        - TRACKER_MQTT_CA_PATH
        - TRACKER_MQTT_PORT, TRACKER_MQTT_CLIENT_ID, TRACKER_MQTT_PUB_TOPIC,
          TRACKER_MQTT_SUB_TOPIC, TRACKER_MQTT_KEEPALIVE,
          TRACKER_MQTT_USERNAME, TRACKER_MQTT_PASSWORD (opcionales)

        Args:
            device_id: ID del dispositivo (opcional)

        Returns:
            Configuración validada

        Raises:
            ConfigurationError: Si faltan variables o los valores no son válidos
        """
        required_vars = [
            "TRACKER_MQTT_HOST",
            "TRACKER_MQTT_CERT_PATH",
            "TRACKER_MQTT_KEY_PATH",
            "TRACKER_MQTT_CA_PATH",
        ]

        missing_vars = [var for var in required_vars if not os.getenv(var)]
        if missing_vars:
            raise ConfigurationError(f"Variables de entorno faltantes: {missing_vars}")

        broker = {
            "host": os.getenv("TRACKER_MQTT_HOST"),
            "device_id": device_id,
        }
        optional_broker = {
            "port": "TRACKER_MQTT_PORT",
            "client_id": "TRACKER_MQTT_CLIENT_ID",
            "publish_topic": "TRACKER_MQTT_PUB_TOPIC",
            "subscribe_topic": "TRACKER_MQTT_SUB_TOPIC",
            "keepalive_secs": "TRACKER_MQTT_KEEPALIVE",
        }
        for field, var in optional_broker.items():
            if os.getenv(var):
                broker[field] = os.getenv(var)

        try:
            return cls(
                broker=broker,
                credentials={
                    "username": os.getenv("TRACKER_MQTT_USERNAME"),
                    "password": os.getenv("TRACKER_MQTT_PASSWORD"),
                },
                tls={
                    "cert_path": os.getenv("TRACKER_MQTT_CERT_PATH"),
                    "key_path": os.getenv("TRACKER_MQTT_KEY_PATH"),
                    "ca_path": os.getenv("TRACKER_MQTT_CA_PATH"),
                },
            )
        except ValidationError as e:
            raise ConfigurationError("Configuración MQTT inválida", e) from e
