"""
Joint covariance of the standardized test statistics.

Every experimental arm is compared with the same control arm, and the
statistics at later stages reuse the data from earlier stages. Both effects
induce correlation: across stages within an arm through the accumulating
sample, and across arms through the shared control.
"""

from typing import Sequence
import numpy as np

from .design import as_stage_vector, check_counts
from .errors import DomainError
from .information import flat_index


def cumulative_sizes(n0: np.ndarray, r: np.ndarray):
    """
    Cumulative control size, cumulative active size and their ratio per stage.

    Returns
    -------
    tuple of np.ndarray
        (n0_tilde, nk_tilde, r_tilde)
    """
    n0_tilde = np.cumsum(n0)
    nk_tilde = np.cumsum(r * n0)
    return n0_tilde, nk_tilde, nk_tilde / n0_tilde


def covariance(J: int, K: int, r: Sequence[float],
               n0: Sequence[float]) -> np.ndarray:
    """
    Covariance matrix of the statistics for all (arm, stage) pairs.

    For stages j1 <= j2 and arms k1, k2 the entry is::

        sqrt(n0~[j1] r~[j1] r~[j2] / (n0~[j2] (r~[j1]+1) (r~[j2]+1)))
            * (1 + 1{k1 == k2} / r~[j2])

    where ``n0~`` is the cumulative control size and ``r~`` the cumulative
    allocation ratio. The stage pair is always ordered, so the earlier stage
    sits in the numerator regardless of which arm is the row.

    Parameters
    ----------
    J : int
        Number of stages
    K : int
        Number of experimental arms
    r : sequence of float
        Allocation ratio (active:control) at each stage
    n0 : sequence of float
        Control sample-size increment at each stage

    Returns
    -------
    np.ndarray
        Symmetric (J*K, J*K) matrix with unit diagonal, indexed by
        :func:`~mamspower.information.flat_index`

    Raises
    ------
    ConfigurationError
        If the inputs are malformed
    DomainError
        If the resulting matrix is not positive semi-definite
    """
    J, K = check_counts(J, K)
    r = as_stage_vector(r, J, 'r', positive=True)
    n0 = as_stage_vector(n0, J, 'n0', positive=True)
    n0_tilde, _, r_tilde = cumulative_sizes(n0, r)

    cov = np.empty((J * K, J * K))
    for k1 in range(1, K + 1):
        for k2 in range(1, K + 1):
            for ja in range(1, J + 1):
                for jb in range(1, J + 1):
                    j1, j2 = min(ja, jb) - 1, max(ja, jb) - 1
                    shared = np.sqrt(
                        n0_tilde[j1] * r_tilde[j1] * r_tilde[j2]
                        / (n0_tilde[j2] * (r_tilde[j1] + 1) * (r_tilde[j2] + 1))
                    )
                    same_arm = 1.0 if k1 == k2 else 0.0
                    cov[flat_index(k1, ja, J), flat_index(k2, jb, J)] = (
                        shared * (1 + same_arm / r_tilde[j2]))

    check_psd(cov)
    return cov


def check_psd(cov: np.ndarray, tol: float = 1e-8) -> float:
    """
    Check that a symmetric matrix is positive semi-definite.

    Parameters
    ----------
    cov : np.ndarray
        Square matrix
    tol : float
        Eigenvalues down to ``-tol`` are accepted as rounding noise

    Returns
    -------
    float
        Smallest eigenvalue

    Raises
    ------
    DomainError
        If the matrix is asymmetric or has an eigenvalue below ``-tol``
    """
    if not np.allclose(cov, cov.T):
        raise DomainError("Covariance matrix is not symmetric")
    min_eig = float(np.linalg.eigvalsh(cov).min())
    if min_eig < -tol:
        raise DomainError(
            f"Covariance matrix is not positive semi-definite "
            f"(smallest eigenvalue {min_eig:.3g}); check n0 and r")
    return min_eig
