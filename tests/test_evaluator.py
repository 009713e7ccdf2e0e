"""Tests for the problem evaluators: derivatives, failures and statistics."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from sqp_jax.errors import EvaluationError
from sqp_jax.evaluator import NLPEvaluator
from sqp_jax.finite_difference import FiniteDifferenceEvaluator, central_difference
from sqp_jax.stats import SolverStats

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def objective(x, args):
    return jnp.sum(x**2) + x[0] * x[1] + jnp.sin(x[2])


def constraints(x, args):
    return jnp.array([x[0] + x[1] ** 2, x[1] * x[2]])


def objective_grad(x, args):
    return jnp.array([2 * x[0] + x[1], 2 * x[1] + x[0], 2 * x[2] + jnp.cos(x[2])])


def constraints_jac(x, args):
    return jnp.array([[1.0, 2 * x[1], 0.0], [0.0, x[2], x[1]]])


def lagrangian_hessian(x, mu, sigma, args):
    hess_f = jnp.array(
        [[2.0, 1.0, 0.0], [1.0, 2.0, 0.0], [0.0, 0.0, 2.0 - jnp.sin(x[2])]]
    )
    hess_g0 = jnp.array([[0.0, 0.0, 0.0], [0.0, 2.0, 0.0], [0.0, 0.0, 0.0]])
    hess_g1 = jnp.array([[0.0, 0.0, 0.0], [0.0, 0.0, 1.0], [0.0, 1.0, 0.0]])
    return sigma * hess_f + mu[0] * hess_g0 + mu[1] * hess_g1


X = jnp.array([0.3, -0.7, 1.2])
MU = jnp.array([0.5, -2.0])


@pytest.fixture
def ad_evaluator():
    return NLPEvaluator(
        objective_fn=objective, constraint_fn=constraints, n_constraints=2
    )


class TestAutomaticDerivatives:
    """AD derivatives must agree with hand-written ones."""

    def test_objective_gradient(self, ad_evaluator):
        f_val, grad = ad_evaluator.evaluate_objective_gradient(X)

        np.testing.assert_allclose(f_val, objective(X, None), rtol=1e-12)
        np.testing.assert_allclose(grad, objective_grad(X, None), rtol=1e-12)

    def test_constraint_jacobian(self, ad_evaluator):
        g_val, jac = ad_evaluator.evaluate_constraint_jacobian(X)

        np.testing.assert_allclose(g_val, constraints(X, None), rtol=1e-12)
        np.testing.assert_allclose(jac, constraints_jac(X, None), rtol=1e-12)

    def test_lagrangian_hessian(self, ad_evaluator):
        hess = ad_evaluator.evaluate_lagrangian_hessian(X, MU, 2.0)

        expected = lagrangian_hessian(X, MU, 2.0, None)
        np.testing.assert_allclose(hess, expected, atol=1e-12)

    def test_user_supplied_derivatives_are_used(self):
        evaluator = NLPEvaluator(
            objective_fn=objective,
            constraint_fn=constraints,
            n_constraints=2,
            obj_grad_fn=objective_grad,
            jac_fn=constraints_jac,
            hess_lag_fn=lagrangian_hessian,
        )

        _, grad = evaluator.evaluate_objective_gradient(X)
        _, jac = evaluator.evaluate_constraint_jacobian(X)
        hess = evaluator.evaluate_lagrangian_hessian(X, MU)

        np.testing.assert_allclose(grad, objective_grad(X, None))
        np.testing.assert_allclose(jac, constraints_jac(X, None))
        np.testing.assert_allclose(hess, lagrangian_hessian(X, MU, 1.0, None))

    def test_args_are_forwarded(self):
        evaluator = NLPEvaluator(
            objective_fn=lambda x, args: args["scale"] * jnp.sum(x**2),
            args={"scale": jnp.array(3.0)},
        )

        _, grad = evaluator.evaluate_objective_gradient(jnp.array([1.0, 2.0]))

        np.testing.assert_allclose(grad, jnp.array([6.0, 12.0]))

    def test_no_constraints_gives_empty_arrays(self):
        evaluator = NLPEvaluator(objective_fn=objective)

        g_val, jac = evaluator.evaluate_constraint_jacobian(X)

        assert g_val.shape == (0,)
        assert jac.shape == (0, 3)
        assert evaluator.evaluate_constraints(X).shape == (0,)

    def test_missing_constraint_function_raises(self):
        with pytest.raises(ValueError):
            NLPEvaluator(objective_fn=objective, n_constraints=2)


class TestEvaluationFailures:
    def test_non_finite_value_raises(self):
        evaluator = NLPEvaluator(objective_fn=lambda x, args: jnp.log(x[0]))

        with pytest.raises(EvaluationError):
            evaluator.evaluate_objective(jnp.array([-1.0]))

    def test_exception_is_translated(self):
        def broken(x, args):
            raise ValueError("boom")

        evaluator = NLPEvaluator(objective_fn=broken, name="broken_nlp")

        message = "Error calling \"eval_f\" for broken_nlp"
        with pytest.raises(EvaluationError, match=message) as info:
            evaluator.evaluate_objective(jnp.array([1.0]))
        assert isinstance(info.value.__cause__, ValueError)

    def test_trial_evaluation_does_not_raise(self):
        evaluator = NLPEvaluator(
            objective_fn=lambda x, args: jnp.sum(x),
            constraint_fn=lambda x, args: jnp.sqrt(x),
            n_constraints=1,
        )

        trial = evaluator.evaluate_trial(jnp.array([-1.0]))

        assert not trial.success
        assert trial.f_val is None
        assert isinstance(trial.error, EvaluationError)


class TestEvaluationStatistics:
    def test_calls_are_counted(self, ad_evaluator):
        stats = SolverStats()

        ad_evaluator.evaluate_objective(X, stats)
        ad_evaluator.evaluate_objective(X, stats)
        ad_evaluator.evaluate_constraint_jacobian(X, stats)
        ad_evaluator.evaluate_lagrangian_hessian(X, MU, stats=stats)

        assert stats.n_eval_f == 2
        assert stats.n_eval_jac_g == 1
        assert stats.n_eval_h == 1
        assert stats.n_eval_g == 0
        assert stats.t_eval_f > 0
        assert stats.average_ms("eval_g") is None

    def test_failed_calls_are_not_counted(self):
        evaluator = NLPEvaluator(objective_fn=lambda x, args: jnp.log(x[0]))
        stats = SolverStats()

        evaluator.evaluate_trial(jnp.array([-1.0]), stats)

        assert stats.n_eval_f == 0


class TestFiniteDifferences:
    """Central differences must agree with AD to within truncation error."""

    @pytest.fixture
    def fd_evaluator(self):
        return FiniteDifferenceEvaluator(
            objective_fn=objective, constraint_fn=constraints, n_constraints=2
        )

    def test_central_difference_of_linear_map(self):
        A = jnp.array([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]])

        derivative = central_difference(lambda x: A @ x, jnp.ones(2), 1e-6)

        # Directions first
        np.testing.assert_allclose(derivative, A.T, rtol=1e-6)

    def test_gradient(self, fd_evaluator):
        _, grad = fd_evaluator.evaluate_objective_gradient(X)
        np.testing.assert_allclose(grad, objective_grad(X, None), atol=1e-6)

    def test_jacobian(self, fd_evaluator):
        _, jac = fd_evaluator.evaluate_constraint_jacobian(X)
        np.testing.assert_allclose(jac, constraints_jac(X, None), atol=1e-6)

    def test_lagrangian_hessian(self, fd_evaluator):
        hess = fd_evaluator.evaluate_lagrangian_hessian(X, MU)

        np.testing.assert_allclose(hess, hess.T)
        np.testing.assert_allclose(
            hess, lagrangian_hessian(X, MU, 1.0, None), atol=1e-3
        )

    def test_invalid_stepsize_raises(self):
        with pytest.raises(ValueError):
            FiniteDifferenceEvaluator(objective_fn=objective, stepsize=0.0)

    def test_unknown_scheme_raises(self):
        with pytest.raises(ValueError):
            FiniteDifferenceEvaluator(objective_fn=objective, scheme="forward")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
