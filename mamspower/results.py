"""
Result records for aggregate power evaluations.
"""

from dataclasses import dataclass, field
from typing import List, Tuple
import pandas as pd


@dataclass
class PatternProbability:
    """Probability contributed by a single RejectionPattern."""
    pattern: Tuple[int, ...]
    probability: float
    error: float = 0.0


@dataclass
class PowerResult:
    """
    Disjunctive or conjunctive power with its integration diagnostics.

    Attributes
    ----------
    kind : str
        'disjunctive' or 'conjunctive'
    value : float
        Power computed from the successfully integrated patterns
    error : float
        Sum of the per-pattern absolute error estimates
    n_patterns : int
        Number of patterns enumerated
    contributions : list of PatternProbability
        Per-pattern probabilities, in enumeration order
    failed_patterns : list of tuple
        Patterns whose integration failed (only filled in best-effort mode)
    """
    kind: str
    value: float
    error: float
    n_patterns: int
    contributions: List[PatternProbability] = field(default_factory=list)
    failed_patterns: List[Tuple[int, ...]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """True if every pattern was integrated."""
        return not self.failed_patterns

    def to_frame(self) -> pd.DataFrame:
        """One row per pattern with its probability, error and status."""
        rows = [
            {'pattern': c.pattern, 'probability': c.probability,
             'error': c.error, 'failed': False}
            for c in self.contributions
        ]
        rows += [
            {'pattern': p, 'probability': float('nan'),
             'error': float('nan'), 'failed': True}
            for p in self.failed_patterns
        ]
        return pd.DataFrame(rows, columns=['pattern', 'probability', 'error', 'failed'])

    def __str__(self) -> str:
        status = "" if self.complete else f" (incomplete: {len(self.failed_patterns)} failed)"
        return (f"{self.kind} power = {self.value:.4f} "
                f"(error <= {self.error:.2g}, {self.n_patterns} patterns){status}")
