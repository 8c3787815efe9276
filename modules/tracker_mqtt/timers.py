"""Trabajo diferido sobre el loop asyncio.

ScheduledWork no se re-arma si ya está pendiente, de modo que pedir la
misma reconexión dos veces deja un solo vencimiento.
"""

import asyncio
import logging
import time
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class ScheduledWork:
    """Callback diferido y cancelable, ejecutado en el hilo del loop."""

    def __init__(self, name: str, callback: Callable[[], None]):
        self.name = name
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self.delay: Optional[float] = None
        self.scheduled_at: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, delay: float) -> bool:
        """Programa el callback tras delay segundos.

        Returns:
            True si se programó, False si ya estaba pendiente
        """
        if self._handle is not None:
            logger.debug(f"{self.name} ya programado, se ignora")
            return False

        loop = asyncio.get_running_loop()
        self.delay = delay
        self.scheduled_at = time.monotonic()
        self._handle = loop.call_later(delay, self._fire)
        logger.debug(f"{self.name} programado en {delay:.1f}s")
        return True

    def cancel(self) -> bool:
        """Cancela el vencimiento pendiente.

        Returns:
            True si había algo que cancelar
        """
        if self._handle is None:
            return False

        self._handle.cancel()
        self._handle = None
        logger.debug(f"{self.name} cancelado")
        return True

    def _fire(self):
        self._handle = None
        self._callback()

    def __repr__(self) -> str:
        return f"ScheduledWork({self.name}, pending={self.pending})"
