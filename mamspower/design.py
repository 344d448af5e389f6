"""
Trial design configuration and input validation.

All public operations validate their inputs eagerly through the helpers in
this module so that malformed designs fail before any numeric work is done.
"""

from dataclasses import dataclass, replace
from numbers import Integral, Real
from typing import Any, Mapping, Sequence, Tuple
import warnings

import numpy as np

from .errors import ConfigurationError


def check_counts(J: int, K: int) -> Tuple[int, int]:
    """Validate the stage count J and arm count K."""
    for name, value in (('J', J), ('K', K)):
        if isinstance(value, bool) or not isinstance(value, Integral):
            raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        if value < 1:
            raise ConfigurationError(f"{name} must be at least 1, got {value}")
    return int(J), int(K)


def as_stage_vector(values: Sequence[float], J: int, name: str,
                    positive: bool = False) -> np.ndarray:
    """
    Convert a per-stage sequence to a float array of length J.

    Parameters
    ----------
    values : sequence of float
        One value per stage
    J : int
        Number of stages
    name : str
        Argument name used in error messages
    positive : bool
        Require every value to be strictly positive

    Returns
    -------
    np.ndarray
    """
    try:
        arr = np.asarray(values, dtype=float)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a sequence of numbers") from None
    if arr.ndim != 1 or len(arr) != J:
        raise ConfigurationError(
            f"{name} must have length J={J}, got shape {arr.shape}")
    if np.isnan(arr).any():
        raise ConfigurationError(f"{name} contains NaN")
    if positive:
        if not np.all(np.isfinite(arr)) or np.any(arr <= 0):
            raise ConfigurationError(f"{name} must be finite and positive")
    return arr


def check_sig(sig: float) -> float:
    """Validate the common standard deviation."""
    if isinstance(sig, bool) or not isinstance(sig, Real) or not np.isfinite(sig) or sig <= 0:
        raise ConfigurationError(f"sig must be a finite positive number, got {sig!r}")
    return float(sig)


def check_delta(delta: float) -> float:
    """Validate the assumed effect size."""
    if isinstance(delta, bool) or not isinstance(delta, Real) or not np.isfinite(delta):
        raise ConfigurationError(f"delta must be a finite number, got {delta!r}")
    return float(delta)


def check_boundaries(f: Sequence[float], e: Sequence[float],
                     J: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Validate futility and efficacy boundaries.

    Infinite boundaries are allowed (e.g. no futility stopping at a stage is
    ``f[j] = -inf``). A stage whose futility boundary lies above its efficacy
    boundary is computable but not a sane design, so it only warns.
    """
    f = as_stage_vector(f, J, 'f')
    e = as_stage_vector(e, J, 'e')
    crossed = np.flatnonzero(f > e)
    if len(crossed) > 0:
        stages = [int(j) + 1 for j in crossed]
        warnings.warn(f"Futility boundary exceeds efficacy boundary at stage(s) {stages}")
    return f, e


@dataclass(frozen=True)
class TrialDesign:
    """
    A multi-arm multi-stage design with a shared control arm.

    Attributes
    ----------
    J : int
        Number of analysis stages
    K : int
        Number of experimental arms
    n0 : np.ndarray
        Per-stage control sample-size increments (length J)
    r : np.ndarray
        Per-stage allocation ratios active:control (length J)
    delta : float
        Assumed true effect size, common to all arms
    sig : float
        Common standard deviation
    e : np.ndarray
        Efficacy boundaries (length J)
    f : np.ndarray
        Futility boundaries (length J)
    """
    J: int
    K: int
    n0: np.ndarray
    r: np.ndarray
    delta: float
    sig: float
    e: np.ndarray
    f: np.ndarray

    def __post_init__(self):
        J, K = check_counts(self.J, self.K)
        f, e = check_boundaries(self.f, self.e, J)
        # frozen dataclass, so normalised values are written through object
        object.__setattr__(self, 'J', J)
        object.__setattr__(self, 'K', K)
        object.__setattr__(self, 'n0', as_stage_vector(self.n0, J, 'n0', positive=True))
        object.__setattr__(self, 'r', as_stage_vector(self.r, J, 'r', positive=True))
        object.__setattr__(self, 'delta', check_delta(self.delta))
        object.__setattr__(self, 'sig', check_sig(self.sig))
        object.__setattr__(self, 'e', e)
        object.__setattr__(self, 'f', f)

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> 'TrialDesign':
        """Create a TrialDesign from a plain mapping (e.g. parsed JSON)."""
        known = {'J', 'K', 'n0', 'r', 'delta', 'sig', 'e', 'f'}
        unknown = set(config) - known
        if unknown:
            raise ConfigurationError(f"Unknown design keys: {sorted(unknown)}")
        missing = known - set(config)
        if missing:
            raise ConfigurationError(f"Missing design keys: {sorted(missing)}")
        return cls(**config)

    @property
    def args(self) -> tuple:
        """Positional arguments (J, K, f, e, delta, n0, r, sig) for the power functions."""
        return (self.J, self.K, self.f, self.e, self.delta, self.n0, self.r, self.sig)

    def with_delta(self, delta: float) -> 'TrialDesign':
        """Return a copy of the design with a different effect size."""
        return replace(self, delta=delta)

    def information(self) -> np.ndarray:
        """Information vector of the design."""
        from .information import information
        return information(self.J, self.K, self.n0, self.r, self.sig)

    def covariance(self) -> np.ndarray:
        """Covariance matrix of the design."""
        from .covariance import covariance
        return covariance(self.J, self.K, self.r, self.n0)

    def marginal_power(self, **kwargs) -> np.ndarray:
        """Marginal power of each arm."""
        from .power import marginal_power
        return marginal_power(*self.args, **kwargs)

    def disjunctive_power(self, **kwargs) -> float:
        """Probability that at least one arm rejects."""
        from .power import disjunctive_power
        return disjunctive_power(*self.args, **kwargs)

    def conjunctive_power(self, **kwargs) -> float:
        """Probability that every arm rejects."""
        from .power import conjunctive_power
        return conjunctive_power(*self.args, **kwargs)
