"""Back-off de reconexión.

La agresividad del back-off depende de la inestabilidad observada (fallas
consecutivas) y no del tipo de error:
- Si las fallas superan el umbral, el delay se duplica hasta max_delay
- Si no, el delay vuelve a base_delay

Invariante: base_delay <= current_delay <= max_delay.
"""

import logging


class ReconnectBackoff:
    """Estado de back-off y contador de fallas consecutivas."""

    def __init__(self, base_delay: float = 5.0, max_delay: float = 300.0, failure_threshold: int = 10):
        """Inicializa el back-off.

        Args:
            base_delay: Delay base en segundos
            max_delay: Delay máximo en segundos
            failure_threshold: Fallas toleradas antes de duplicar el delay
        """
        if base_delay <= 0 or base_delay > max_delay:
            raise ValueError(f"Delays inválidos: base={base_delay}, max={max_delay}")

        self.base_delay = base_delay
        self.max_delay = max_delay
        self.failure_threshold = failure_threshold
        self.logger = logging.getLogger(__name__)

        # Estado
        self.current_delay = base_delay
        self.consecutive_failures = 0

    @property
    def threshold_exceeded(self) -> bool:
        return self.consecutive_failures > self.failure_threshold

    def record_failure(self) -> int:
        self.consecutive_failures += 1
        return self.consecutive_failures

    def record_success(self) -> int:
        """Descuenta una falla, sin bajar de cero."""
        if self.consecutive_failures > 0:
            self.consecutive_failures -= 1
        return self.consecutive_failures

    def reset(self):
        """Vuelve el delay a su valor base."""
        self.current_delay = self.base_delay

    def on_error(self) -> float:
        """Ajusta el delay al entrar en estado de error.

        Returns:
            Delay a usar para la próxima reconexión
        """
        if self.threshold_exceeded:
            self.current_delay = min(self.current_delay * 2, self.max_delay)
            self.logger.warning(
                f"{self.consecutive_failures} fallas consecutivas, back-off a {self.current_delay:.1f}s"
            )
        else:
            self.reset()

        return self.current_delay

    def __repr__(self) -> str:
        return (
            f"ReconnectBackoff("
            f"delay={self.current_delay:.1f}s, "
            f"failures={self.consecutive_failures}/{self.failure_threshold}"
            f")"
        )
