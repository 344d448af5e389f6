"""
Fisher information of the per-arm, per-stage test statistics.
"""

from typing import Sequence
import numpy as np

from .design import as_stage_vector, check_counts, check_sig


def flat_index(arm: int, stage: int, J: int) -> int:
    """
    Position of (arm, stage) in the flattened arm x stage vector.

    Arms and stages are 1-based; the returned position is 0-based, i.e. the
    statistic for arm k at stage j lives at ``(k - 1) * J + (j - 1)``. Arm
    blocks are contiguous, so arm k occupies ``flat_index(k, 1, J)`` up to
    ``flat_index(k, J, J)`` inclusive.
    """
    return (arm - 1) * J + (stage - 1)


def arm_slice(arm: int, J: int) -> slice:
    """Slice selecting the J entries belonging to a 1-based arm."""
    start = flat_index(arm, 1, J)
    return slice(start, start + J)


def information(J: int, K: int, n0: Sequence[float], r: Sequence[float],
                sig: float) -> np.ndarray:
    """
    Information for every (arm, stage) pair.

    For stage j the information is ``1 / (sig^2/n0[j] + sig^2/(n0[j]*r[j]))``,
    which does not depend on the arm; the value is repeated for each arm.
    ``n0`` is used as given at each stage, without cumulating it.

    Parameters
    ----------
    J : int
        Number of stages
    K : int
        Number of experimental arms
    n0 : sequence of float
        Control sample size at each stage
    r : sequence of float
        Allocation ratio (active:control) at each stage
    sig : float
        Common standard deviation

    Returns
    -------
    np.ndarray
        Vector of length J*K indexed by :func:`flat_index`
    """
    J, K = check_counts(J, K)
    n0 = as_stage_vector(n0, J, 'n0', positive=True)
    r = as_stage_vector(r, J, 'r', positive=True)
    sig = check_sig(sig)

    var = sig ** 2
    stage_info = 1 / (var / n0 + var / (n0 * r))

    info = np.empty(J * K)
    for k in range(1, K + 1):
        for j in range(1, J + 1):
            info[flat_index(k, j, J)] = stage_info[j - 1]
    return info
