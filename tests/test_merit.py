"""Tests for the L1 merit function and the non-monotone line search."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from sqp_jax.errors import EvaluationError
from sqp_jax.evaluator import NLPEvaluator, TrialEvaluation
from sqp_jax.merit import (
    backtracking_line_search,
    compute_merit,
    merit_directional_derivative,
    primal_infeasibility,
    push_merit,
    update_penalty_parameter,
)

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)

NO_G = jnp.zeros(0)
FREE = (jnp.array([-jnp.inf]), jnp.array([jnp.inf]), NO_G, NO_G)


def _quadratic_trial(x):
    return TrialEvaluation(success=True, f_val=jnp.sum(x**2), g_val=NO_G, error=None)


def _failing_trial(x):
    return TrialEvaluation(
        success=False, f_val=None, g_val=None, error=EvaluationError("nan")
    )


class TestMeritFunction:
    def test_primal_infeasibility_is_max_violation(self):
        x = jnp.array([0.0, 3.0])
        lbx = jnp.array([1.0, -jnp.inf])
        ubx = jnp.array([jnp.inf, 2.5])
        g_val = jnp.array([4.0])
        lbg = jnp.array([-jnp.inf])
        ubg = jnp.array([2.0])

        inf_pr = primal_infeasibility(x, lbx, ubx, g_val, lbg, ubg)

        np.testing.assert_allclose(inf_pr, 2.0)

    def test_primal_infeasibility_feasible_point(self):
        x = jnp.array([0.5])
        inf_pr = primal_infeasibility(x, jnp.zeros(1), jnp.ones(1), NO_G, NO_G, NO_G)
        assert float(inf_pr) == 0.0

    def test_merit_and_directional_derivative(self):
        f_val = jnp.array(2.0)
        theta = jnp.array(0.5)

        np.testing.assert_allclose(compute_merit(f_val, theta, 4.0), 4.0)
        np.testing.assert_allclose(
            merit_directional_derivative(
                jnp.array([1.0, -1.0]), jnp.array([3.0, 1.0]), theta, 4.0
            ),
            0.0,
        )

    def test_penalty_is_monotone(self):
        lam_x = jnp.array([0.0, -2.0])
        lam_g = jnp.array([1.0])

        sigma = update_penalty_parameter(0.0, lam_x, lam_g)
        np.testing.assert_allclose(sigma, 2.02)

        # Smaller multipliers never decrease the penalty
        sigma_next = update_penalty_parameter(float(sigma), lam_x * 0.1, lam_g * 0.1)
        np.testing.assert_allclose(sigma_next, sigma)

    def test_penalty_without_constraints(self):
        sigma = update_penalty_parameter(0.0, jnp.zeros(2), NO_G)
        assert float(sigma) == 0.0

    def test_push_merit_keeps_most_recent(self):
        history = ()
        for value in [1.0, 2.0, 3.0, 4.0, 5.0]:
            history = push_merit(history, value, 4)
        assert history == (2.0, 3.0, 4.0, 5.0)


class TestBacktrackingLineSearch:
    """Deterministic backtracking traces on f(x) = x^2 from x = 1."""

    def _search(self, evaluate_trial, direction, merit_history, **kwargs):
        x = jnp.array([1.0])
        d = jnp.array([direction])
        return backtracking_line_search(
            evaluate_trial,
            x,
            d,
            penalty=0.0,
            merit_derivative=2.0 * direction,
            merit_history=merit_history,
            lbx=FREE[0],
            ubx=FREE[1],
            lbg=FREE[2],
            ubg=FREE[3],
            **kwargs,
        )

    def test_full_step_accepted(self):
        result = self._search(_quadratic_trial, -1.0, (1.0,))

        assert result.success
        assert result.step_size == 1.0
        assert result.n_trials == 1
        np.testing.assert_allclose(result.x_cand, jnp.array([0.0]))

    def test_overshoot_backtracks(self):
        """d = -2 lands on x = -1 (no decrease); t = 0.5 lands on 0."""
        result = self._search(_quadratic_trial, -2.0, (1.0,), beta=0.5, c1=1e-4)

        assert result.success
        assert result.step_size == 0.5
        assert result.n_trials == 2
        np.testing.assert_allclose(result.x_cand, jnp.array([0.0]))

    def test_non_monotone_acceptance(self):
        """The same overshoot is accepted against a larger past merit value."""
        result = self._search(_quadratic_trial, -2.0, (5.0, 1.0), beta=0.5)

        assert result.success
        assert result.step_size == 1.0
        assert result.n_trials == 1

    def test_failed_evaluation_rejects_trial(self):
        evaluator = NLPEvaluator(
            objective_fn=lambda x, args: jnp.where(
                x[0] < -0.5, jnp.nan, jnp.sum(x**2)
            ),
        )

        result = self._search(evaluator.evaluate_trial, -2.0, (1.0,), beta=0.5)

        assert result.success
        assert result.n_trials == 2
        assert result.step_size == 0.5

    def test_max_trials_returns_last_point(self):
        def no_decrease(x):
            return TrialEvaluation(
                success=True, f_val=jnp.array(10.0), g_val=NO_G, error=None
            )

        result = self._search(no_decrease, -1.0, (1.0,), beta=0.5, max_iter=3)

        assert not result.success
        assert result.n_trials == 3
        assert result.step_size == 0.25
        np.testing.assert_allclose(result.x_cand, jnp.array([0.75]))

    def test_failed_evaluations_backtrack_past_max_trials(self):
        """Trials at x = -1, 0 and 0.5 fail; x = 0.75 is the first usable one."""
        evaluator = NLPEvaluator(
            objective_fn=lambda x, args: jnp.where(
                x[0] < 0.6, jnp.nan, jnp.sum(x**2)
            ),
        )

        result = self._search(
            evaluator.evaluate_trial, -2.0, (1.0,), beta=0.5, max_iter=3
        )

        assert result.success
        assert result.n_trials == 4
        assert result.step_size == 0.125
        np.testing.assert_allclose(result.x_cand, jnp.array([0.75]))

    def test_first_evaluated_trial_after_max_trials_is_taken(self):
        def fails_near_origin(x):
            if float(x[0]) < 0.6:
                return _failing_trial(x)
            return TrialEvaluation(
                success=True, f_val=jnp.array(10.0), g_val=NO_G, error=None
            )

        result = self._search(fails_near_origin, -2.0, (1.0,), beta=0.5, max_iter=3)

        assert not result.success
        assert result.n_trials == 4
        assert result.step_size == 0.125
        np.testing.assert_allclose(result.x_cand, jnp.array([0.75]))

    def test_all_trials_failing_keeps_current_point(self):
        """t = 1, 0.5, 0.25, 0.125 fail; 0.0625 is below the floor."""
        result = self._search(
            _failing_trial, -1.0, (1.0,), beta=0.5, max_iter=3, min_step=0.1
        )

        assert not result.success
        assert result.n_trials == 4
        assert result.step_size == 0.0
        np.testing.assert_allclose(result.x_cand, jnp.array([1.0]))

    def test_disabled_line_search_takes_full_step(self):
        result = self._search(_failing_trial, -2.0, (1.0,), max_iter=0)

        assert result.success
        assert result.n_trials == 0
        assert result.step_size == 1.0
        np.testing.assert_allclose(result.x_cand, jnp.array([-1.0]))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
