"""
Tests for marginal, disjunctive and conjunctive power.
"""

from itertools import combinations
import warnings

import pytest
import numpy as np
from scipy import integrate
from scipy.stats import norm

from mamspower import (
    marginal_power, stagewise_marginal_power, marginal_power_frame,
    disjunctive_power, conjunctive_power, rejection_set_probability,
    familywise_error_rate, evaluate_power, information, covariance,
    iter_patterns, pattern_bounds, TrialDesign, MVNIntegrator, MVNResult,
    ScipyMVNIntegrator, ConfigurationError, NumericIntegrationError, PowerResult
)
from mamspower.integrator import univariate_probability


F = [0, 2.086]
E = [2.782, 2.086]
DELTA = 0.545


class RecordingIntegrator(MVNIntegrator):
    """Stub that records each query and returns a fixed probability."""

    def __init__(self, probability=0.0):
        self.probability = probability
        self.calls = []

    def integrate(self, lower, upper, mean, cov):
        self.calls.append((np.array(lower), np.array(upper), np.array(mean), np.array(cov)))
        return MVNResult(self.probability, 1e-6)


class IndependentIntegrator(MVNIntegrator):
    """Closed-form stub, exact when the coordinates are independent."""

    def integrate(self, lower, upper, mean, cov):
        p = 1.0
        for a, b, m, v in zip(lower, upper, mean, np.diag(cov)):
            p *= univariate_probability(a, b, m, v)
        return MVNResult(p)


class FailingIntegrator(MVNIntegrator):
    """Stub that fails for the pattern whose bounds match ``fail_on``."""

    def __init__(self, fail_on, probability=0.1):
        self.fail_on = fail_on
        self.probability = probability

    def integrate(self, lower, upper, mean, cov):
        if np.array_equal(lower, self.fail_on[0]) and np.array_equal(upper, self.fail_on[1]):
            raise NumericIntegrationError("did not converge", estimate=0.5, error=0.2)
        return MVNResult(self.probability)


def simulate_decisions(J, K, f, e, delta, n0, r, sig, n_sim=400000, seed=11):
    """
    Monte Carlo rejection indicators from the sequential decision rules.

    At each stage an arm still in the trial rejects if its statistic exceeds
    e[j], stops for futility if it falls below f[j], and otherwise continues.
    """
    mean = delta * np.sqrt(information(J, K, n0, r, sig))
    cov = covariance(J, K, r, n0)
    z = np.random.default_rng(seed).multivariate_normal(mean, cov, size=n_sim)
    rejected = np.zeros((n_sim, K), dtype=bool)
    for k in range(K):
        active = np.ones(n_sim, dtype=bool)
        for j in range(J):
            stat = z[:, k * J + j]
            rejected[:, k] |= active & (stat > e[j])
            active &= (stat >= f[j]) & (stat <= e[j])
    return rejected


@pytest.fixture
def integrator():
    return ScipyMVNIntegrator(seed=12345)


class TestMarginalPower:
    """Tests for marginal_power() and its stagewise breakdown."""

    def test_literal_scenario_against_quadrature(self, integrator):
        """Test the two-stage scenario against a one-dimensional quadrature."""
        n0, r = [28.9, 57.8], [0.75, 0.75]
        power = marginal_power(2, 3, F, E, DELTA, n0, r, 1, integrator=integrator)

        info = information(2, 3, n0, r, 1)
        m1, m2 = DELTA * np.sqrt(info[:2])
        rho = covariance(2, 3, r, n0)[0, 1]

        def integrand(z1):
            cond_sd = np.sqrt(1 - rho ** 2)
            return norm.pdf(z1 - m1) * norm.sf((E[1] - m2 - rho * (z1 - m1)) / cond_sd)

        second, _ = integrate.quad(integrand, F[0], E[0])
        expected = norm.sf(E[0] - m1) + second

        assert power.shape == (3,)
        np.testing.assert_allclose(power, expected, atol=1e-3)

    def test_literal_scenario_reference_values(self, integrator):
        """Test the two-stage scenario against recorded reference values."""
        power = marginal_power(2, 3, F, E, DELTA, [28.9, 57.8], [0.75, 0.75], 1,
                               integrator=integrator)
        np.testing.assert_allclose(power, [0.7377, 0.7377, 0.7377], atol=1e-3)

    def test_single_stage_closed_form(self):
        """Test J=1, where marginal power is a normal tail probability."""
        power = marginal_power(1, 2, [1.96], [1.96], 0.4, [50], [1], 1)
        # information 25, so the mean is 0.4 * 5 = 2
        np.testing.assert_allclose(power, norm.sf(1.96 - 2.0))

    def test_arm_blocks_passed_to_integrator(self):
        """Test that each stage queries the arm's own leading covariance block."""
        stub = RecordingIntegrator(0.05)
        n0, r = [20, 40, 60], [1, 1, 1]
        stagewise_marginal_power(3, 2, [0, 0.5, 2], [3, 2.5, 2], 0.3, n0, r, 1,
                                 integrator=stub)
        cov = covariance(3, 2, r, n0)

        # stages 2 and 3 for each of two arms
        assert [len(call[2]) for call in stub.calls] == [2, 3, 2, 3]
        lower, upper, mean, block = stub.calls[1]
        np.testing.assert_array_equal(lower, [0, 0.5, 2])
        np.testing.assert_array_equal(upper, [3, 2.5, np.inf])
        np.testing.assert_allclose(block, cov[:3, :3])
        _, _, _, block = stub.calls[3]
        np.testing.assert_allclose(block, cov[3:, 3:])

    def test_stagewise_sums_to_marginal(self, integrator):
        args = (2, 2, F, E, DELTA, [30, 60], [1, 1], 1)
        stagewise = stagewise_marginal_power(*args, integrator=integrator)
        assert stagewise.shape == (2, 2)
        np.testing.assert_allclose(stagewise.sum(axis=1),
                                   marginal_power(*args, integrator=integrator), atol=1e-4)

    def test_monotone_in_delta(self, integrator):
        """Test that marginal power does not decrease as the effect grows."""
        deltas = [0.0, 0.2, 0.4, 0.6, 0.8]
        powers = [marginal_power(2, 2, F, E, d, [30, 60], [1, 1], 1,
                                 integrator=integrator)[0] for d in deltas]
        assert np.all(np.diff(powers) >= -1e-4)
        assert powers[-1] > powers[0]

    def test_frame(self, integrator):
        args = (2, 3, F, E, DELTA, [28.9, 57.8], [0.75, 0.75], 1)
        frame = marginal_power_frame(*args, integrator=integrator)
        assert list(frame.columns) == ['arm', 'stage', 'probability', 'cumulative']
        assert len(frame) == 6
        final = frame[frame['stage'] == 2]['cumulative'].to_numpy()
        np.testing.assert_allclose(final, marginal_power(*args, integrator=integrator), atol=1e-4)

    def test_integration_failure_tagged(self):
        stub = FailingIntegrator(([0, 2.086], [2.782, np.inf]))
        with pytest.raises(NumericIntegrationError, match="indices") as info:
            marginal_power(2, 2, F, E, DELTA, [30, 60], [1, 1], 1, integrator=stub)
        assert info.value.indices == (0, 1)
        assert info.value.pattern is None


class TestPatternPower:
    """Tests for disjunctive and conjunctive power."""

    def test_disjunctive_literal_scenario(self, integrator):
        """Test against a simulation of the decision rules."""
        args = (2, 3, F, E, DELTA, [53.7, 107.4], [0.25, 0.25], 1)
        power = disjunctive_power(*args, integrator=integrator)
        simulated = simulate_decisions(*args).any(axis=1).mean()
        assert 0 <= power <= 1
        assert power == pytest.approx(simulated, abs=5e-3)

    def test_conjunctive_literal_scenario(self, integrator):
        """Test against a simulation of the decision rules."""
        args = (2, 3, F, E, DELTA, [47, 94], [0.5, 0.5], 1)
        power = conjunctive_power(*args, integrator=integrator)
        simulated = simulate_decisions(*args).all(axis=1).mean()
        assert 0 <= power <= 1
        assert power == pytest.approx(simulated, abs=5e-3)

    def test_literal_scenarios_reference_values(self, integrator):
        """Test disjunctive and conjunctive power against recorded reference values."""
        disjunctive = disjunctive_power(2, 3, F, E, DELTA, [53.7, 107.4], [0.25, 0.25], 1,
                                        integrator=integrator)
        conjunctive = conjunctive_power(2, 3, F, E, DELTA, [47, 94], [0.5, 0.5], 1,
                                        integrator=integrator)
        assert disjunctive == pytest.approx(0.9376, abs=1e-3)
        assert conjunctive == pytest.approx(0.6356, abs=1e-3)

    def test_disjunctive_at_least_conjunctive(self, integrator):
        args = (2, 3, F, E, DELTA, [47, 94], [0.5, 0.5], 1)
        assert (disjunctive_power(*args, integrator=integrator)
                >= conjunctive_power(*args, integrator=integrator))

    def test_single_arm_single_stage_closed_form(self):
        """Test J=K=1 with the closed-form stub, where all three powers agree."""
        args = (1, 1, [1.96], [1.96], 0.4, [50], [1], 1)
        expected = norm.sf(1.96 - 2.0)
        stub = IndependentIntegrator()
        assert disjunctive_power(*args, integrator=stub) == pytest.approx(expected)
        assert conjunctive_power(*args, integrator=stub) == pytest.approx(expected)
        assert marginal_power(*args)[0] == pytest.approx(expected)

    def test_queries_follow_patterns(self):
        """Test that each pattern is queried once with its bounds and the full moments."""
        J, K, n0, r = 2, 2, [30, 60], [1, 1]
        stub = RecordingIntegrator(0.0)
        value = disjunctive_power(J, K, F, E, DELTA, n0, r, 1, integrator=stub)

        assert value == 1.0
        assert len(stub.calls) == J ** K
        mean = DELTA * np.sqrt(information(J, K, n0, r, 1))
        cov = covariance(J, K, r, n0)
        for pattern, (lower, upper, m, c) in zip(iter_patterns(J, K), stub.calls):
            exp_lower, exp_upper = pattern_bounds(pattern, np.array(F), np.array(E))
            np.testing.assert_array_equal(lower, exp_lower)
            np.testing.assert_array_equal(upper, exp_upper)
            np.testing.assert_allclose(m, mean)
            np.testing.assert_allclose(c, cov)

    def test_sums_pattern_probabilities(self):
        stub = RecordingIntegrator(0.1)
        args = (2, 2, F, E, DELTA, [30, 60], [1, 1], 1)
        assert disjunctive_power(*args, integrator=stub) == pytest.approx(0.6)
        assert conjunctive_power(*args, integrator=stub) == pytest.approx(0.4)

    def test_partition_of_outcomes(self, integrator):
        """Test that the rejection-set probabilities over all subsets sum to one."""
        K = 2
        args = (2, K, F, E, DELTA, [30, 60], [0.8, 0.8], 1)
        total = 0.0
        for size in range(K + 1):
            for arms in combinations(range(1, K + 1), size):
                total += rejection_set_probability(*args, arms=arms, integrator=integrator)
        assert total == pytest.approx(1.0, abs=2e-3)

    def test_rejection_set_extremes(self, integrator):
        args = (2, 2, F, E, DELTA, [30, 60], [0.8, 0.8], 1)
        none = rejection_set_probability(*args, arms=(), integrator=integrator)
        both = rejection_set_probability(*args, arms=(1, 2), integrator=integrator)
        assert none == pytest.approx(1 - disjunctive_power(*args, integrator=integrator),
                                     abs=1e-4)
        assert both == pytest.approx(conjunctive_power(*args, integrator=integrator),
                                     abs=1e-4)

    def test_invalid_rejection_set(self):
        with pytest.raises(ConfigurationError):
            rejection_set_probability(2, 2, F, E, DELTA, [30, 60], [1, 1], 1, arms=(3,))

    def test_familywise_error_rate(self, integrator):
        args = (2, 3, F, E)
        fwer = familywise_error_rate(*args, [47, 94], [0.5, 0.5], 1, integrator=integrator)
        null = disjunctive_power(*args, 0.0, [47, 94], [0.5, 0.5], 1, integrator=integrator)
        alt = disjunctive_power(*args, DELTA, [47, 94], [0.5, 0.5], 1, integrator=integrator)
        assert fwer == pytest.approx(null, abs=1e-4)
        assert fwer < alt

    def test_parallel_matches_sequential(self, integrator):
        design = TrialDesign(J=2, K=3, n0=[47, 94], r=[0.5, 0.5], delta=DELTA, sig=1, e=E, f=F)
        sequential = evaluate_power(design, 'conjunctive', integrator=integrator)
        parallel = evaluate_power(design, 'conjunctive', integrator=integrator,
                                  max_workers=4, chunk_size=3)
        assert parallel.value == pytest.approx(sequential.value, abs=1e-4)
        assert [c.pattern for c in parallel.contributions] == \
            [c.pattern for c in sequential.contributions]

    @pytest.mark.parametrize("bad", [
        dict(f=[0]), dict(e=[2.0, 2.0, 2.0]), dict(sig=0), dict(K=0), dict(n0=[10, -1]),
    ])
    def test_configuration_errors(self, bad):
        kwargs = dict(J=2, K=2, f=F, e=E, delta=DELTA, n0=[30, 60], r=[1, 1], sig=1)
        kwargs.update(bad)
        with pytest.raises(ConfigurationError):
            disjunctive_power(**kwargs, integrator=RecordingIntegrator())

    def test_open_final_band_warns(self):
        """Test that an open final continuation band warns for non-rejection outcomes."""
        args = (2, 2, [0, 1.5], E, DELTA, [30, 60], [1, 1], 1)
        with pytest.warns(UserWarning, match="Final-stage futility boundary"):
            disjunctive_power(*args, integrator=RecordingIntegrator())
        with pytest.warns(UserWarning, match="Final-stage futility boundary"):
            rejection_set_probability(*args, arms=(1,), integrator=RecordingIntegrator())

    def test_open_final_band_silent_for_conjunctive(self):
        """Test that conjunctive power only uses efficacy bounds at the last stage."""
        args = (2, 2, [0, 1.5], E, DELTA, [30, 60], [1, 1], 1)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            conjunctive_power(*args, integrator=RecordingIntegrator())

    def test_crossed_boundaries_warn(self):
        with pytest.warns(UserWarning, match="stage\\(s\\) \\[1\\]"):
            conjunctive_power(2, 2, [3, 2], [2, 2], DELTA, [30, 60], [1, 1], 1,
                              integrator=RecordingIntegrator())


class TestEvaluatePower:
    """Tests for evaluate_power() and best-effort reporting."""

    @pytest.fixture
    def design(self):
        return TrialDesign(J=2, K=2, n0=[30, 60], r=[1, 1], delta=DELTA, sig=1, e=E, f=F)

    @pytest.fixture
    def failing(self, design):
        return FailingIntegrator(pattern_bounds((2, 1), design.f, design.e))

    def test_result_fields(self, design):
        result = evaluate_power(design, 'disjunctive', integrator=RecordingIntegrator(0.1))
        assert isinstance(result, PowerResult)
        assert result.value == pytest.approx(0.6)
        assert result.error == pytest.approx(4e-6)
        assert result.n_patterns == 4
        assert result.complete
        assert "disjunctive power" in str(result)

    def test_failure_propagates_by_default(self, design, failing):
        with pytest.raises(NumericIntegrationError, match="pattern=\\(2, 1\\)") as info:
            evaluate_power(design, 'disjunctive', integrator=failing)
        assert info.value.pattern == (2, 1)
        assert info.value.indices == (0, 1, 2, 3)
        assert info.value.error == 0.2

    def test_best_effort_reports_failures(self, design, failing):
        result = evaluate_power(design, 'disjunctive', integrator=failing, best_effort=True)
        assert not result.complete
        assert result.failed_patterns == [(2, 1)]
        assert len(result.contributions) == 3
        assert result.value == pytest.approx(1 - 0.3)
        assert "incomplete" in str(result)

        frame = result.to_frame()
        assert len(frame) == 4
        assert frame['failed'].sum() == 1

    def test_unknown_kind(self, design):
        with pytest.raises(ConfigurationError, match="kind must be one of"):
            evaluate_power(design, 'marginal')

    def test_invalid_chunk_size(self, design):
        with pytest.raises(ConfigurationError, match="chunk_size"):
            evaluate_power(design, integrator=RecordingIntegrator(), chunk_size=0)

    def test_large_design_warns(self):
        design = TrialDesign(J=7, K=3, n0=[10] * 7, r=[1] * 7, delta=0.1, sig=1,
                             e=[2.5] * 7, f=[0] * 7)
        with pytest.warns(UserWarning, match="exceeds 20"):
            evaluate_power(design, integrator=RecordingIntegrator())
