"""Evaluation of the nonlinear program and its derivatives.

The SQP iteration only talks to the problem through an :class:`NLPEvaluator`.
It evaluates the objective ``f(x)``, the constraints ``g(x)``, the objective
gradient, the constraint Jacobian and the Hessian of the Lagrangian

    L(x, mu) = sigma * f(x) + mu^T g(x)

Derivatives are user-supplied or computed by JAX automatic differentiation
(``jax.value_and_grad``, ``jax.jacrev`` and ``jax.hessian``). The kernels are
compiled with :func:`equinox.filter_jit`; the public ``evaluate_*`` methods
run on the host, record timings into a :class:`~sqp_jax.stats.SolverStats`
and turn every failure into an :class:`~sqp_jax.errors.EvaluationError`.
"""

import contextlib
import logging
from typing import Any, NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from sqp_jax.errors import EvaluationError
from sqp_jax.stats import SolverStats
from sqp_jax.types import (
    ConstraintFn,
    GradFn,
    JacobianFn,
    LagrangianHessianFn,
    Matrix,
    ObjectiveFn,
    Scalar,
    Vector,
)
from sqp_jax.utils import all_finite, args_closure

logger = logging.getLogger(__name__)


class TrialEvaluation(NamedTuple):
    """Outcome of evaluating the objective and constraints at a trial point.

    Attributes:
        success: Whether both evaluations succeeded.
        f_val: Objective value (``None`` on failure).
        g_val: Constraint values (``None`` on failure).
        error: The evaluation error on failure, else ``None``.
    """

    success: bool
    f_val: Optional[Scalar]
    g_val: Optional[Float[Array, " ng"]]
    error: Optional[EvaluationError]


class NLPEvaluator(eqx.Module):
    """Evaluator for ``min f(x) s.t. lbg <= g(x) <= ubg``.

    Attributes:
        objective_fn: Objective ``f(x, args) -> scalar``.
        constraint_fn: Constraint function ``g(x, args) -> (ng,)``, or None.
        n_constraints: Number of constraints ``ng`` (static).
        obj_grad_fn: Optional gradient of the objective.
        jac_fn: Optional Jacobian of the constraints.
        hess_lag_fn: Optional Hessian of the Lagrangian,
            ``hess_lag_fn(x, mu, sigma, args)``.
        args: Extra arguments passed to every user function.
        name: Name used in error messages.

    Example:
        >>> import jax.numpy as jnp
        >>> from sqp_jax import NLPEvaluator
        >>>
        >>> evaluator = NLPEvaluator(
        ...     objective_fn=lambda x, args: jnp.sum(x**2),
        ...     constraint_fn=lambda x, args: jnp.array([x[0] + x[1]]),
        ...     n_constraints=1,
        ... )
    """

    objective_fn: ObjectiveFn = eqx.field(static=True)
    constraint_fn: Optional[ConstraintFn] = eqx.field(static=True, default=None)
    n_constraints: int = eqx.field(static=True, default=0)

    # Optional user-supplied derivative functions
    obj_grad_fn: Optional[GradFn] = eqx.field(static=True, default=None)
    jac_fn: Optional[JacobianFn] = eqx.field(static=True, default=None)
    hess_lag_fn: Optional[LagrangianHessianFn] = eqx.field(static=True, default=None)

    args: Any = None
    name: str = eqx.field(static=True, default="nlp")

    def __check_init__(self):
        if self.n_constraints < 0:
            raise ValueError("n_constraints must be non-negative")
        if self.n_constraints > 0 and self.constraint_fn is None:
            raise ValueError("n_constraints > 0 requires a constraint_fn")

    @property
    def has_constraints(self) -> bool:
        return self.constraint_fn is not None and self.n_constraints > 0

    # ------------------------------------------------------------------
    # Compiled kernels
    # ------------------------------------------------------------------

    @eqx.filter_jit
    def _objective(self, x: Vector) -> Scalar:
        return jnp.asarray(self.objective_fn(x, self.args))

    @eqx.filter_jit
    def _constraints(self, x: Vector) -> Float[Array, " ng"]:
        if not self.has_constraints:
            return jnp.zeros((0,), dtype=x.dtype)
        return jnp.asarray(self.constraint_fn(x, self.args))  # type: ignore[misc]

    @eqx.filter_jit
    def _objective_gradient(self, x: Vector) -> tuple[Scalar, Vector]:
        if self.obj_grad_fn is not None:
            return self._objective(x), self.obj_grad_fn(x, self.args)
        return jax.value_and_grad(args_closure(self.objective_fn, self.args))(x)

    @eqx.filter_jit
    def _constraint_jacobian(
        self, x: Vector
    ) -> tuple[Float[Array, " ng"], Float[Array, "ng n"]]:
        n = x.shape[0]
        if not self.has_constraints:
            return jnp.zeros((0,), dtype=x.dtype), jnp.zeros((0, n), dtype=x.dtype)
        g_val = self._constraints(x)
        if self.jac_fn is not None:
            return g_val, self.jac_fn(x, self.args)
        return g_val, jax.jacrev(args_closure(self.constraint_fn, self.args))(x)

    @eqx.filter_jit
    def _lagrangian_hessian(
        self, x: Vector, mu: Float[Array, " ng"], sigma: Scalar
    ) -> Matrix:
        if self.hess_lag_fn is not None:
            return self.hess_lag_fn(x, mu, sigma, self.args)
        return jax.hessian(self._lagrangian)(x, mu, sigma)

    def _lagrangian(
        self, x: Vector, mu: Float[Array, " ng"], sigma: Scalar
    ) -> Scalar:
        value = sigma * self.objective_fn(x, self.args)
        if self.has_constraints:
            value = value + jnp.dot(mu, self.constraint_fn(x, self.args))  # type: ignore[misc]
        return value

    # ------------------------------------------------------------------
    # Host-side entry points
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        phase: str,
        kernel: Any,
        *operands: Any,
        stats: Optional[SolverStats],
    ) -> Any:
        """Run a kernel, timing it and translating failures."""
        timer = stats.timed(phase) if stats is not None else contextlib.nullcontext()
        try:
            with timer:
                result = kernel(*operands)
                outputs = result if isinstance(result, tuple) else (result,)
                if not all_finite(*outputs):
                    raise EvaluationError(
                        f"{phase} returned non-finite values for {self.name}"
                    )
        except EvaluationError as err:
            logger.debug("%s failed: %s", phase, err)
            raise
        except Exception as exc:
            logger.debug("%s failed: %s", phase, exc)
            raise EvaluationError(
                f'Error calling "{phase}" for {self.name}:\n{exc}'
            ) from exc
        return result

    def evaluate_objective(
        self, x: Vector, stats: Optional[SolverStats] = None
    ) -> Scalar:
        """Evaluate ``f(x)``."""
        return self._evaluate("eval_f", self._objective, x, stats=stats)

    def evaluate_constraints(
        self, x: Vector, stats: Optional[SolverStats] = None
    ) -> Float[Array, " ng"]:
        """Evaluate ``g(x)``."""
        if not self.has_constraints:
            return jnp.zeros((0,), dtype=x.dtype)
        return self._evaluate("eval_g", self._constraints, x, stats=stats)

    def evaluate_objective_gradient(
        self, x: Vector, stats: Optional[SolverStats] = None
    ) -> tuple[Scalar, Vector]:
        """Evaluate ``f(x)`` and ``∇f(x)``."""
        return self._evaluate(
            "eval_grad_f", self._objective_gradient, x, stats=stats
        )

    def evaluate_constraint_jacobian(
        self, x: Vector, stats: Optional[SolverStats] = None
    ) -> tuple[Float[Array, " ng"], Float[Array, "ng n"]]:
        """Evaluate ``g(x)`` and its Jacobian ``J(x)``, shape ``(ng, n)``."""
        if not self.has_constraints:
            n = x.shape[0]
            return jnp.zeros((0,), dtype=x.dtype), jnp.zeros((0, n), dtype=x.dtype)
        return self._evaluate(
            "eval_jac_g", self._constraint_jacobian, x, stats=stats
        )

    def evaluate_lagrangian_hessian(
        self,
        x: Vector,
        mu: Float[Array, " ng"],
        sigma: float = 1.0,
        stats: Optional[SolverStats] = None,
    ) -> Matrix:
        """Evaluate ``∇²_xx (sigma * f(x) + mu^T g(x))``."""
        return self._evaluate(
            "eval_h",
            self._lagrangian_hessian,
            x,
            mu,
            jnp.asarray(sigma, dtype=x.dtype),
            stats=stats,
        )

    def evaluate_trial(
        self, x: Vector, stats: Optional[SolverStats] = None
    ) -> TrialEvaluation:
        """Evaluate ``f`` and ``g`` at a trial point without raising.

        Used by the line search, where a failed evaluation only rejects the
        trial point.
        """
        try:
            f_val = self.evaluate_objective(x, stats)
            g_val = self.evaluate_constraints(x, stats)
        except EvaluationError as err:
            return TrialEvaluation(success=False, f_val=None, g_val=None, error=err)
        return TrialEvaluation(success=True, f_val=f_val, g_val=g_val, error=None)
