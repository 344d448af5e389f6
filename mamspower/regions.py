"""
Enumeration of stopping patterns and the integration regions they define.

A RejectionPattern is a tuple X of length K where X[k] is the stage at which
arm k+1 was last observed. Each pattern, combined with a rule for how every
arm finished (futility or efficacy), describes a rectangle in the space of
the flattened statistic vector.
"""

from itertools import product
from typing import Collection, Iterator, Sequence, Tuple
import numpy as np

from .design import check_counts
from .errors import ConfigurationError
from .information import flat_index

Pattern = Tuple[int, ...]


def iter_patterns(J: int, K: int) -> Iterator[Pattern]:
    """
    Lazily yield every RejectionPattern for J stages and K arms.

    Patterns are generated odometer-style, the last arm changing fastest,
    so only the current tuple is held in memory. Each of the J**K patterns
    is yielded exactly once, and a new call starts again from (1, ..., 1).

    Examples
    --------
    >>> list(iter_patterns(2, 2))
    [(1, 1), (1, 2), (2, 1), (2, 2)]
    """
    J, K = check_counts(J, K)
    return product(range(1, J + 1), repeat=K)


def count_patterns(J: int, K: int) -> int:
    """Number of patterns, J**K."""
    J, K = check_counts(J, K)
    return J ** K


def pattern_bounds(pattern: Pattern, f: np.ndarray, e: np.ndarray,
                   rejecting: Collection[int] = ()) -> Tuple[np.ndarray, np.ndarray]:
    """
    Integration bounds over the flattened statistic vector for one pattern.

    For an arm last observed at stage m, stages before m are constrained to
    the continuation band [f[j], e[j]], stages after m are unconstrained,
    and stage m is ``(e[m], inf)`` if the arm is in ``rejecting`` and
    ``(-inf, f[m])`` otherwise.

    Parameters
    ----------
    pattern : tuple of int
        Last observed stage of each arm (1-based)
    f : np.ndarray
        Futility boundaries
    e : np.ndarray
        Efficacy boundaries
    rejecting : collection of int
        1-based arm numbers that finish by rejecting their null hypothesis

    Returns
    -------
    tuple of np.ndarray
        (lower, upper), each of length J*K
    """
    J = len(e)
    K = len(pattern)
    lower = np.full(J * K, -np.inf)
    upper = np.full(J * K, np.inf)

    for k, last in enumerate(pattern, start=1):
        if not 1 <= last <= J:
            raise ConfigurationError(f"Pattern entry {last} for arm {k} outside 1..{J}")
        for j in range(1, last):
            idx = flat_index(k, j, J)
            lower[idx] = f[j - 1]
            upper[idx] = e[j - 1]
        idx = flat_index(k, last, J)
        if k in rejecting:
            lower[idx] = e[last - 1]
        else:
            upper[idx] = f[last - 1]

    return lower, upper


def check_arms(arms: Sequence[int], K: int) -> frozenset:
    """Validate a set of 1-based arm numbers."""
    arms = frozenset(int(a) for a in arms)
    bad = sorted(a for a in arms if not 1 <= a <= K)
    if bad:
        raise ConfigurationError(f"Arm numbers {bad} outside 1..{K}")
    return arms
