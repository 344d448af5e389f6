"""
Operating characteristics of multi-arm multi-stage (MAMS) trial designs.

This package computes marginal, disjunctive and conjunctive power for
group-sequential designs in which K experimental arms are compared with a
shared control over J analysis stages, with stage-specific allocation ratios.
Multivariate normal probabilities are obtained through an injectable
integrator (scipy's quasi-Monte Carlo CDF by default).
"""

__version__ = "1.0.0"

from .errors import (
    MAMSPowerError, ConfigurationError, DomainError, NumericIntegrationError
)
from .design import TrialDesign
from .information import information, flat_index, arm_slice
from .covariance import covariance, check_psd
from .regions import iter_patterns, count_patterns, pattern_bounds
from .integrator import MVNIntegrator, MVNResult, ScipyMVNIntegrator
from .results import PowerResult, PatternProbability
from .power import (
    marginal_power, stagewise_marginal_power, marginal_power_frame,
    disjunctive_power, conjunctive_power, rejection_set_probability,
    familywise_error_rate, evaluate_power
)

__all__ = [
    # Errors
    'MAMSPowerError', 'ConfigurationError', 'DomainError', 'NumericIntegrationError',
    # Design
    'TrialDesign',
    # Models
    'information', 'flat_index', 'arm_slice', 'covariance', 'check_psd',
    # Regions
    'iter_patterns', 'count_patterns', 'pattern_bounds',
    # Integration
    'MVNIntegrator', 'MVNResult', 'ScipyMVNIntegrator',
    # Power
    'marginal_power', 'stagewise_marginal_power', 'marginal_power_frame',
    'disjunctive_power', 'conjunctive_power', 'rejection_set_probability',
    'familywise_error_rate', 'evaluate_power',
    # Results
    'PowerResult', 'PatternProbability',
]
