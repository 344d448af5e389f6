"""
Operating characteristics of a multi-arm multi-stage design.

Three definitions of power are provided:

- marginal power: probability that a given arm rejects its null hypothesis;
- disjunctive power: probability that at least one arm rejects;
- conjunctive power: probability that every arm rejects.

Disjunctive and conjunctive power partition the outcome space by the stage
at which each arm was last observed, so they need one multivariate normal
integral of dimension J*K for each of the J**K patterns. The cost grows
exponentially in the number of arms; no approximation is made to avoid it.
"""

from concurrent.futures import ThreadPoolExecutor
from itertools import islice
from typing import Callable, Iterable, Iterator, Optional, Sequence
import warnings

import numpy as np
import pandas as pd

from .covariance import covariance
from .design import TrialDesign
from .errors import ConfigurationError, NumericIntegrationError
from .information import arm_slice, flat_index, information
from .integrator import MVNIntegrator, ScipyMVNIntegrator, univariate_probability
from .regions import check_arms, count_patterns, iter_patterns, pattern_bounds
from .results import PatternProbability, PowerResult

# Largest J*K the default integrator handles reliably
MAX_PRACTICAL_DIMENSION = 20

POWER_KINDS = ('disjunctive', 'conjunctive')


def _design(J, K, f, e, delta, n0, r, sig) -> TrialDesign:
    """Validate the positional power arguments as a TrialDesign."""
    return TrialDesign(J=J, K=K, n0=n0, r=r, delta=delta, sig=sig, e=e, f=f)


def _moments(design: TrialDesign):
    """Mean vector and covariance matrix of the flattened statistics."""
    info = information(design.J, design.K, design.n0, design.r, design.sig)
    cov = covariance(design.J, design.K, design.r, design.n0)
    return design.delta * np.sqrt(info), cov


def stagewise_marginal_power(J: int, K: int, f: Sequence[float], e: Sequence[float],
                             delta: float, n0: Sequence[float], r: Sequence[float],
                             sig: float, *,
                             integrator: Optional[MVNIntegrator] = None) -> np.ndarray:
    """
    Probability that each arm rejects at each stage.

    Entry (k, j) is the probability that arm k+1 stayed within its
    continuation band [f, e] at stages 1..j and crossed e at stage j+1.
    Only the arm's own J x J covariance block is used, so other arms do
    not affect the result.

    Parameters
    ----------
    J : int
        Number of stages
    K : int
        Number of experimental arms
    f : sequence of float
        Futility boundaries
    e : sequence of float
        Efficacy boundaries
    delta : float
        Assumed true effect size
    n0 : sequence of float
        Control sample size at each stage
    r : sequence of float
        Allocation ratio at each stage
    sig : float
        Common standard deviation
    integrator : MVNIntegrator, optional
        Integrator for stages after the first (default ScipyMVNIntegrator)

    Returns
    -------
    np.ndarray
        Array of shape (K, J)
    """
    design = _design(J, K, f, e, delta, n0, r, sig)
    integrator = integrator or ScipyMVNIntegrator()
    mean, cov = _moments(design)
    J, K, f, e = design.J, design.K, design.f, design.e

    probs = np.zeros((K, J))
    for k in range(1, K + 1):
        block = arm_slice(k, J)
        mean_k = mean[block]
        cov_k = cov[block, block]

        probs[k - 1, 0] = univariate_probability(e[0], np.inf, mean_k[0], cov_k[0, 0])
        for j in range(2, J + 1):
            lower = np.append(f[:j - 1], e[j - 1])
            upper = np.append(e[:j - 1], np.inf)
            try:
                result = integrator.integrate(lower, upper, mean_k[:j], cov_k[:j, :j])
            except NumericIntegrationError as exc:
                indices = range(flat_index(k, 1, J), flat_index(k, j, J) + 1)
                raise exc.with_context(indices=indices) from exc
            probs[k - 1, j - 1] = result.probability

    return probs


def marginal_power(J: int, K: int, f: Sequence[float], e: Sequence[float],
                   delta: float, n0: Sequence[float], r: Sequence[float],
                   sig: float, *,
                   integrator: Optional[MVNIntegrator] = None) -> np.ndarray:
    """
    Marginal power of each arm.

    An arm can only reject once, at the first stage its statistic crosses
    the efficacy boundary, so its power is the sum of its stagewise
    rejection probabilities.

    Returns
    -------
    np.ndarray
        Vector of K probabilities
    """
    probs = stagewise_marginal_power(J, K, f, e, delta, n0, r, sig, integrator=integrator)
    return np.clip(probs.sum(axis=1), 0.0, 1.0)


def marginal_power_frame(J: int, K: int, f: Sequence[float], e: Sequence[float],
                         delta: float, n0: Sequence[float], r: Sequence[float],
                         sig: float, *,
                         integrator: Optional[MVNIntegrator] = None) -> pd.DataFrame:
    """
    Stagewise marginal rejection probabilities as a long-format DataFrame.

    Columns are ``arm``, ``stage`` (both 1-based), ``probability`` and
    ``cumulative`` (probability of having rejected by that stage).
    """
    probs = stagewise_marginal_power(J, K, f, e, delta, n0, r, sig, integrator=integrator)
    cumulative = np.cumsum(probs, axis=1)
    K, J = probs.shape
    return pd.DataFrame({
        'arm': np.repeat(np.arange(1, K + 1), J),
        'stage': np.tile(np.arange(1, J + 1), K),
        'probability': probs.ravel(),
        'cumulative': cumulative.ravel(),
    })


def _map_patterns(func: Callable, patterns: Iterator, max_workers: Optional[int],
                  chunk_size: int) -> Iterable:
    """
    Apply ``func`` to each pattern, in order.

    With more than one worker the patterns are pulled from the generator in
    batches of ``chunk_size`` and dispatched to a thread pool, so at most one
    batch is materialised at a time.
    """
    if max_workers is None or max_workers <= 1:
        yield from map(func, patterns)
        return
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        while True:
            batch = list(islice(patterns, chunk_size))
            if not batch:
                break
            yield from executor.map(func, batch)


def _pattern_probabilities(design: TrialDesign, rejecting: frozenset,
                           integrator: MVNIntegrator, max_workers: Optional[int],
                           chunk_size: int, best_effort: bool):
    """
    Integrate every pattern for a given set of rejecting arms.

    Returns
    -------
    tuple
        (list of PatternProbability, list of failed patterns)
    """
    if chunk_size < 1:
        raise ConfigurationError("chunk_size must be at least 1")
    if design.J * design.K > MAX_PRACTICAL_DIMENSION:
        warnings.warn(
            f"J*K = {design.J * design.K} exceeds {MAX_PRACTICAL_DIMENSION}; "
            f"{count_patterns(design.J, design.K)} integrals of that dimension "
            f"may be slow and inaccurate")
    if len(rejecting) < design.K and design.f[-1] < design.e[-1]:
        warnings.warn(
            f"Final-stage futility boundary {design.f[-1]:.4g} is below the efficacy "
            f"boundary {design.e[-1]:.4g}; outcomes between them are counted as "
            f"neither rejection nor non-rejection")

    mean, cov = _moments(design)
    indices = tuple(range(design.J * design.K))

    def integrate(pattern):
        lower, upper = pattern_bounds(pattern, design.f, design.e, rejecting)
        try:
            result = integrator.integrate(lower, upper, mean, cov)
        except NumericIntegrationError as exc:
            return exc.with_context(pattern=pattern, indices=indices)
        return PatternProbability(pattern, result.probability, result.error)

    contributions, failed = [], []
    patterns = iter_patterns(design.J, design.K)
    for outcome in _map_patterns(integrate, patterns, max_workers, chunk_size):
        if isinstance(outcome, NumericIntegrationError):
            if not best_effort:
                raise outcome
            failed.append(outcome.pattern)
        else:
            contributions.append(outcome)
    return contributions, failed


def evaluate_power(design: TrialDesign, kind: str = 'disjunctive', *,
                   integrator: Optional[MVNIntegrator] = None,
                   max_workers: Optional[int] = None,
                   chunk_size: int = 256,
                   best_effort: bool = False) -> PowerResult:
    """
    Disjunctive or conjunctive power with per-pattern diagnostics.

    Parameters
    ----------
    design : TrialDesign
        The design to evaluate
    kind : str
        'disjunctive' (at least one arm rejects) or 'conjunctive'
        (every arm rejects)
    integrator : MVNIntegrator, optional
        Integrator used for every pattern (default ScipyMVNIntegrator)
    max_workers : int, optional
        Number of worker threads; None or 1 evaluates sequentially
    chunk_size : int
        Number of patterns dispatched to the pool at a time
    best_effort : bool
        If False, the first pattern whose integration fails raises
        NumericIntegrationError. If True, failed patterns are recorded in
        ``failed_patterns`` and the value covers the remaining patterns only.

    Returns
    -------
    PowerResult
    """
    if kind not in POWER_KINDS:
        raise ConfigurationError(f"kind must be one of {POWER_KINDS}, got {kind!r}")
    integrator = integrator or ScipyMVNIntegrator()

    if kind == 'disjunctive':
        rejecting = frozenset()
    else:
        rejecting = frozenset(range(1, design.K + 1))

    contributions, failed = _pattern_probabilities(
        design, rejecting, integrator, max_workers, chunk_size, best_effort)
    total = sum(c.probability for c in contributions)
    value = 1 - total if kind == 'disjunctive' else total

    return PowerResult(
        kind=kind,
        value=float(np.clip(value, 0.0, 1.0)),
        error=float(sum(c.error for c in contributions)),
        n_patterns=count_patterns(design.J, design.K),
        contributions=contributions,
        failed_patterns=failed,
    )


def disjunctive_power(J: int, K: int, f: Sequence[float], e: Sequence[float],
                      delta: float, n0: Sequence[float], r: Sequence[float],
                      sig: float, *,
                      integrator: Optional[MVNIntegrator] = None,
                      max_workers: Optional[int] = None,
                      chunk_size: int = 256) -> float:
    """
    Probability that at least one arm rejects its null hypothesis.

    Computed as one minus the probability that no arm ever rejects, summed
    over the stage at which each arm was last observed.
    """
    design = _design(J, K, f, e, delta, n0, r, sig)
    return evaluate_power(design, 'disjunctive', integrator=integrator,
                          max_workers=max_workers, chunk_size=chunk_size).value


def conjunctive_power(J: int, K: int, f: Sequence[float], e: Sequence[float],
                      delta: float, n0: Sequence[float], r: Sequence[float],
                      sig: float, *,
                      integrator: Optional[MVNIntegrator] = None,
                      max_workers: Optional[int] = None,
                      chunk_size: int = 256) -> float:
    """
    Probability that every arm rejects its null hypothesis.

    Summed over the stage at which each arm rejects.
    """
    design = _design(J, K, f, e, delta, n0, r, sig)
    return evaluate_power(design, 'conjunctive', integrator=integrator,
                          max_workers=max_workers, chunk_size=chunk_size).value


def rejection_set_probability(J: int, K: int, f: Sequence[float], e: Sequence[float],
                              delta: float, n0: Sequence[float], r: Sequence[float],
                              sig: float, arms: Sequence[int] = (), *,
                              integrator: Optional[MVNIntegrator] = None,
                              max_workers: Optional[int] = None,
                              chunk_size: int = 256) -> float:
    """
    Probability that exactly the given arms reject and no other arm does.

    Parameters
    ----------
    arms : sequence of int
        1-based arm numbers that reject. An empty set gives the probability
        that no arm rejects; all arms gives conjunctive power.

    Returns
    -------
    float
    """
    design = _design(J, K, f, e, delta, n0, r, sig)
    rejecting = check_arms(arms, design.K)
    contributions, _ = _pattern_probabilities(
        design, rejecting, integrator or ScipyMVNIntegrator(),
        max_workers, chunk_size, best_effort=False)
    return float(np.clip(sum(c.probability for c in contributions), 0.0, 1.0))


def familywise_error_rate(J: int, K: int, f: Sequence[float], e: Sequence[float],
                          n0: Sequence[float], r: Sequence[float], sig: float,
                          **kwargs) -> float:
    """Probability of at least one rejection when no arm has an effect."""
    return disjunctive_power(J, K, f, e, 0.0, n0, r, sig, **kwargs)
