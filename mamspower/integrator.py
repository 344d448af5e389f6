"""
Multivariate normal rectangle probabilities.

The power calculations only need one capability: the probability that a
multivariate normal vector falls inside an axis-aligned rectangle. It is
expressed as the :class:`MVNIntegrator` interface so that alternative
integrators (or closed-form stubs in tests) can be injected.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple
import warnings

import numpy as np
from scipy.stats import multivariate_normal, norm

from .errors import ConfigurationError, NumericIntegrationError


@dataclass
class MVNResult:
    """
    Estimated rectangle probability.

    Attributes
    ----------
    probability : float
        Estimated probability in [0, 1]
    error : float
        Estimated absolute error of the probability
    """
    probability: float
    error: float = 0.0


class MVNIntegrator(ABC):
    """Interface for multivariate normal rectangle probabilities."""

    @abstractmethod
    def integrate(self, lower: np.ndarray, upper: np.ndarray,
                  mean: np.ndarray, cov: np.ndarray) -> MVNResult:
        """
        Compute P(lower <= X <= upper) for X ~ N(mean, cov).

        Infinite entries in ``lower``/``upper`` leave that coordinate
        unbounded on that side.
        """


def check_rectangle(lower, upper, mean, cov) -> Tuple[np.ndarray, ...]:
    """Convert integration inputs to arrays and check their shapes agree."""
    lower = np.asarray(lower, dtype=float)
    upper = np.asarray(upper, dtype=float)
    mean = np.asarray(mean, dtype=float)
    cov = np.atleast_2d(np.asarray(cov, dtype=float))
    d = mean.shape[0] if mean.ndim == 1 else -1
    if d < 0 or lower.shape != (d,) or upper.shape != (d,):
        raise ConfigurationError(
            f"lower, upper and mean must be vectors of equal length, got "
            f"{lower.shape}, {upper.shape} and {mean.shape}")
    if cov.shape != (d, d):
        raise ConfigurationError(f"cov must have shape ({d}, {d}), got {cov.shape}")
    return lower, upper, mean, cov


def univariate_probability(lower: float, upper: float, mean: float,
                           var: float) -> float:
    """P(lower <= X <= upper) for X ~ N(mean, var), in closed form."""
    if var <= 0:
        return float(lower <= mean <= upper)
    sd = np.sqrt(var)
    a = (lower - mean) / sd
    b = (upper - mean) / sd
    if a > 0:
        # upper tail: difference of survival functions keeps precision
        return float(max(norm.sf(a) - norm.sf(b), 0.0))
    return float(max(norm.cdf(b) - norm.cdf(a), 0.0))


@dataclass
class ScipyMVNIntegrator(MVNIntegrator):
    """
    Rectangle probabilities via scipy's randomized quasi-Monte Carlo
    multivariate normal CDF.

    Coordinates that are unbounded on both sides are marginalised out
    before integrating; a single remaining coordinate is evaluated in
    closed form.

    Attributes
    ----------
    maxpts : int, optional
        Maximum number of integrand evaluations per replicate
        (scipy's default of 1000000 * dimension if None)
    abseps : float
        Absolute error tolerance passed to scipy
    releps : float
        Relative error tolerance passed to scipy
    n_replicates : int
        Number of independent randomized replicates; their spread gives
        the error estimate (three standard errors of the mean, or 0 for a
        single replicate)
    tolerance : float
        Largest accepted absolute error estimate
    max_retries : int
        Retries after a too-large error estimate, each multiplying both
        ``maxpts`` and ``tolerance`` by ``relax_factor``
    relax_factor : float
        Growth factor applied on each retry
    seed : int, optional
        Seed for the randomized integration; every call is re-seeded with it
    jitter : float
        Smallest eigenvalue enforced on the covariance matrix
    """
    maxpts: Optional[int] = None
    abseps: float = 1e-5
    releps: float = 1e-5
    n_replicates: int = 3
    tolerance: float = 1e-3
    max_retries: int = 2
    relax_factor: float = 2.0
    seed: Optional[int] = None
    jitter: float = 1e-10

    def __post_init__(self):
        if self.maxpts is not None and self.maxpts < 1:
            raise ConfigurationError("maxpts must be positive")
        if self.n_replicates < 1:
            raise ConfigurationError("n_replicates must be at least 1")
        if self.tolerance <= 0:
            raise ConfigurationError("tolerance must be positive")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be non-negative")
        if self.relax_factor < 1:
            raise ConfigurationError("relax_factor must be at least 1")
        if self.jitter < 0:
            raise ConfigurationError("jitter must be non-negative")

    def integrate(self, lower, upper, mean, cov) -> MVNResult:
        lower, upper, mean, cov = check_rectangle(lower, upper, mean, cov)

        if np.any(upper <= lower):
            return MVNResult(0.0, 0.0)

        keep = ~(np.isneginf(lower) & np.isposinf(upper))
        d = int(keep.sum())
        if d == 0:
            return MVNResult(1.0, 0.0)
        lower, upper, mean = lower[keep], upper[keep], mean[keep]
        cov = cov[np.ix_(keep, keep)]

        if d == 1:
            return MVNResult(univariate_probability(lower[0], upper[0], mean[0], cov[0, 0]))

        cov = self.regularize(cov)
        maxpts = self.maxpts if self.maxpts is not None else 1000000 * d
        tolerance = self.tolerance
        for attempt in range(self.max_retries + 1):
            result = self._estimate(lower, upper, mean, cov, maxpts)
            if result.error <= tolerance:
                if attempt > 0:
                    warnings.warn(
                        f"Integration met relaxed tolerance {tolerance:.3g} "
                        f"after {attempt} retr{'y' if attempt == 1 else 'ies'}")
                return result
            if attempt < self.max_retries:
                maxpts = int(maxpts * self.relax_factor)
                tolerance *= self.relax_factor

        raise NumericIntegrationError(
            f"Integration error {result.error:.3g} exceeds tolerance {tolerance:.3g} "
            f"in {d} dimensions",
            estimate=result.probability, error=result.error)

    def regularize(self, cov: np.ndarray) -> np.ndarray:
        """Lift the smallest eigenvalue of ``cov`` to ``jitter`` if needed."""
        min_eig = float(np.linalg.eigvalsh(cov).min())
        if min_eig >= self.jitter:
            return cov
        shift = self.jitter - min_eig
        warnings.warn(f"Covariance matrix regularized with diagonal jitter {shift:.3g}")
        return cov + shift * np.eye(len(cov))

    def _estimate(self, lower, upper, mean, cov, maxpts: int) -> MVNResult:
        """Average ``n_replicates`` randomized CDF evaluations."""
        rng = np.random.default_rng(self.seed)
        dist = multivariate_normal(mean=mean, cov=cov, allow_singular=True, seed=rng,
                                   maxpts=maxpts, abseps=self.abseps, releps=self.releps)
        values = np.array([dist.cdf(upper, lower_limit=lower)
                           for _ in range(self.n_replicates)], dtype=float)
        probability = float(np.clip(values.mean(), 0.0, 1.0))
        if self.n_replicates == 1:
            return MVNResult(probability, 0.0)
        error = 3 * values.std(ddof=1) / np.sqrt(self.n_replicates)
        return MVNResult(probability, float(error))
