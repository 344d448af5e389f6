"""
Exception classes for MAMS power calculations.
"""

from typing import Optional, Sequence, Tuple


class MAMSPowerError(Exception):
    """Base class for errors raised by mamspower."""


class ConfigurationError(MAMSPowerError, ValueError):
    """Malformed design inputs (shapes, counts, non-positive sizes)."""


class DomainError(MAMSPowerError, ValueError):
    """Derived quantities are inconsistent, e.g. a covariance that is not PSD."""


class NumericIntegrationError(MAMSPowerError, RuntimeError):
    """
    The multivariate normal integrator did not reach the accepted tolerance.

    Attributes
    ----------
    pattern : tuple of int or None
        RejectionPattern being integrated (None outside pattern enumeration)
    indices : tuple of int
        Flat positions of the covariance block that was integrated over
    estimate : float
        Last probability estimate
    error : float
        Last estimated absolute error
    """

    def __init__(self, message: str,
                 pattern: Optional[Tuple[int, ...]] = None,
                 indices: Sequence[int] = (),
                 estimate: float = float('nan'),
                 error: float = float('nan')):
        super().__init__(message)
        self.pattern = pattern
        self.indices = tuple(indices)
        self.estimate = estimate
        self.error = error

    def with_context(self, pattern: Optional[Tuple[int, ...]] = None,
                     indices: Sequence[int] = ()) -> 'NumericIntegrationError':
        """Return a copy tagged with the pattern/block that failed."""
        parts = [str(self.args[0]) if self.args else "integration failed"]
        if pattern is not None:
            parts.append(f"pattern={pattern}")
        if indices:
            parts.append(f"indices={tuple(indices)}")
        return NumericIntegrationError(
            "; ".join(parts),
            pattern=pattern if pattern is not None else self.pattern,
            indices=indices or self.indices,
            estimate=self.estimate,
            error=self.error,
        )
