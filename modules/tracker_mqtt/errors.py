"""Excepciones del cliente MQTT del tracker.

Todas las fallas del núcleo MQTT heredan de TrackerMQTTError para que el
bucle de despacho pueda registrarlas y continuar sin detener el proceso.
"""

from typing import Optional


class TrackerMQTTError(Exception):
    """Excepción base del cliente MQTT.

    Todas las excepciones específicas del módulo heredan de esta clase.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        """Inicializa la excepción base.

        Args:
            message: Mensaje de error
            original_error: Excepción original que causó este error
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message} (Causa: {self.original_error})"
        return self.message


class NotConnectedError(TrackerMQTTError):
    """Publicación intentada fuera del estado CONNECTED."""

    def __init__(self, state: str):
        super().__init__(f"No se puede publicar: estado {state}")
        self.state = state


class TransportError(TrackerMQTTError):
    """Falla reportada por el transporte (connect, publish, subscribe, poll)."""

    def __init__(self, operation: str, message: str = "", original_error: Optional[Exception] = None):
        """Inicializa error de transporte.

        Args:
            operation: Operación del transporte que falló
            message: Detalle adicional
            original_error: Excepción original
        """
        detail = f"Error de transporte en {operation}"
        if message:
            detail = f"{detail}: {message}"
        super().__init__(detail, original_error)
        self.operation = operation


class ValidationFailedError(TrackerMQTTError):
    """Lectura fuera de rango o no finita.

    La lectura se descarta completa; no se ajusta ni se encola.
    """

    def __init__(self, signal: str, value: float, reason: str = "fuera de rango"):
        super().__init__(f"Lectura inválida de {signal}: {value} ({reason})")
        self.signal = signal
        self.value = value
        self.reason = reason


class PayloadTooLargeError(TrackerMQTTError):
    """Mensaje entrante mayor que el buffer de recepción.

    No se lanza al recibir: el mensaje se trunca y esta excepción queda
    registrada en el buffer como diagnóstico.
    """

    def __init__(self, size: int, capacity: int):
        super().__init__(f"Mensaje de {size} bytes excede el buffer de {capacity} bytes")
        self.size = size
        self.capacity = capacity


class SerializationError(TrackerMQTTError):
    """Falla construyendo o renderizando un mensaje."""
    pass


class ChannelBusyError(TrackerMQTTError):
    """Canal del bus ocupado por otro lector o escritor."""

    def __init__(self, channel: str):
        super().__init__(f"Canal {channel} ocupado")
        self.channel = channel


class ConfigurationError(TrackerMQTTError):
    """Configuración incompleta o inconsistente."""
    pass
