"""Validación de lecturas antes de serializarlas.

Una lectura inválida lanza ValidationFailedError y el productor omite la
publicación completa. No se ajustan valores al rango.
"""

import math

from modules.tracker_mqtt.config import ValidationThresholds
from modules.tracker_mqtt.errors import ValidationFailedError
from modules.tracker_mqtt.events import EnvironmentalEvent, LocationEvent, PowerEvent


# Valores por defecto cuando no hay lectura de batería
FALLBACK_BATTERY_PERCENT = 50.0
FALLBACK_BATTERY_VOLTAGE = 3.7
FALLBACK_BATTERY_TEMPERATURE = 25.0


def check_finite(signal: str, value: float) -> float:
    """Rechaza NaN, infinitos y valores no numéricos.

    Args:
        signal: Nombre de la señal
        value: Valor a verificar

    Returns:
        float: Valor verificado

    Raises:
        ValidationFailedError: Si el valor no es finito
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationFailedError(signal, value, "no numérico")
    if not math.isfinite(value):
        raise ValidationFailedError(signal, value, "no finito")
    return float(value)


def check_range(signal: str, value: float, minimum: float, maximum: float) -> float:
    """Verifica que el valor sea finito y esté en [minimum, maximum]."""
    value = check_finite(signal, value)
    if value < minimum or value > maximum:
        raise ValidationFailedError(signal, value, f"fuera de rango [{minimum}, {maximum}]")
    return value


def validate_location(event: LocationEvent, thresholds: ValidationThresholds) -> LocationEvent:
    """Validar posición GNSS.

    Raises:
        ValidationFailedError: Si latitud, longitud o precisión no son válidas
    """
    check_range("latitude", event.latitude, -90.0, 90.0)
    check_range("longitude", event.longitude, -180.0, 180.0)
    accuracy = check_finite("accuracy", event.accuracy)
    if accuracy < 0 or accuracy > thresholds.gps_accuracy_max:
        raise ValidationFailedError(
            "accuracy", accuracy, f"fuera de rango [0, {thresholds.gps_accuracy_max}]"
        )
    return event


def validate_environmental(event: EnvironmentalEvent,
                           thresholds: ValidationThresholds) -> EnvironmentalEvent:
    """Validar muestra ambiental. La presión se valida solo si viene."""
    check_range("temperature", event.temperature, thresholds.temp_min, thresholds.temp_max)
    check_range("humidity", event.humidity, thresholds.humidity_min, thresholds.humidity_max)
    if event.pressure is not None:
        check_range("pressure", event.pressure, thresholds.pressure_min, thresholds.pressure_max)
    return event


def validate_power(event: PowerEvent, thresholds: ValidationThresholds) -> PowerEvent:
    """Validar muestra de batería.

    Raises:
        ValidationFailedError: Si alguna señal presente no es válida, o si
            no hay porcentaje
    """
    if event.percentage is None:
        raise ValidationFailedError("battery", float("nan"), "sin lectura")
    check_range("battery", event.percentage, thresholds.battery_min, thresholds.battery_max)
    if event.voltage is not None:
        check_range("voltage", event.voltage, thresholds.voltage_min, thresholds.voltage_max)
    if event.temperature is not None:
        check_range(
            "battery_temperature",
            event.temperature,
            thresholds.battery_temp_min,
            thresholds.battery_temp_max,
        )
    return event


def fallback_power_reading() -> PowerEvent:
    """Lectura de batería por defecto, marcada como fallback."""
    return PowerEvent(
        percentage=FALLBACK_BATTERY_PERCENT,
        voltage=FALLBACK_BATTERY_VOLTAGE,
        temperature=FALLBACK_BATTERY_TEMPERATURE,
        fallback=True,
    )
