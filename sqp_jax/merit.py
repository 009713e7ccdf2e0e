"""L1 Merit Function and Line Search for SQP.

This module implements the L1-exact penalty merit function and the
non-monotone backtracking line search used to globalize the SQP method.

The merit function is:
    φ(x; σ) = f(x) + σ * θ(x)

where θ(x) is the infinity norm of the bound and constraint violation and σ
is the penalty parameter, chosen large enough to ensure descent. A trial
step of length t along the QP direction d is accepted when

    φ(x + t d; σ) <= max(φ_{k-M+1}, ..., φ_k) + c1 * t * D

with D = ∇f^T d - σ θ(x) the directional derivative of φ along d and M the
merit memory. Comparing against the maximum over a window of recent merit
values (Grippo, Lampariello & Lucidi) tolerates temporary increases of φ.
"""

import logging
from collections.abc import Callable
from typing import NamedTuple, Optional

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from sqp_jax.evaluator import TrialEvaluation
from sqp_jax.types import Scalar, Vector

logger = logging.getLogger(__name__)


class LineSearchResult(NamedTuple):
    """Result from the line search.

    Attributes:
        step_size: The step size t found.
        x_cand: The accepted point x + t * d.
        f_val: Objective value at ``x_cand`` (None if not evaluated).
        g_val: Constraint values at ``x_cand`` (None if not evaluated).
        success: Whether the sufficient decrease condition was met.
        n_trials: Number of trial points evaluated.
    """

    step_size: float
    x_cand: Vector
    f_val: Optional[Scalar]
    g_val: Optional[Float[Array, " ng"]]
    success: bool
    n_trials: int


@jaxtyped(typechecker=beartype)
def primal_infeasibility(
    x: Float[Array, " n"],
    lbx: Float[Array, " n"],
    ubx: Float[Array, " n"],
    g_val: Float[Array, " ng"],
    lbg: Float[Array, " ng"],
    ubg: Float[Array, " ng"],
) -> Scalar:
    """Infinity norm of the violation of ``lbx <= x <= ubx``, ``lbg <= g <= ubg``.

    Args:
        x: Point.
        lbx: Lower bounds on x (may be -inf).
        ubx: Upper bounds on x (may be inf).
        g_val: Constraint values g(x).
        lbg: Lower bounds on g (may be -inf).
        ubg: Upper bounds on g (may be inf).

    Returns:
        The (non-negative) primal infeasibility.
    """
    bound_violation = jnp.max(
        jnp.maximum(lbx - x, x - ubx), initial=0.0
    )
    constraint_violation = jnp.max(
        jnp.maximum(lbg - g_val, g_val - ubg), initial=0.0
    )
    return jnp.maximum(bound_violation, constraint_violation)


@jaxtyped(typechecker=beartype)
def compute_merit(
    f_val: Scalar,
    infeasibility: Scalar,
    penalty: Scalar | float,
) -> Scalar:
    """Compute the L1-exact penalty merit function value ``f + σ θ``."""
    return f_val + penalty * infeasibility


@jaxtyped(typechecker=beartype)
def merit_directional_derivative(
    direction: Vector,
    grad: Vector,
    infeasibility: Scalar,
    penalty: Scalar | float,
) -> Scalar:
    """Directional derivative ``∇f^T d - σ θ`` of the merit function along d."""
    return jnp.dot(direction, grad) - penalty * infeasibility


@jaxtyped(typechecker=beartype)
def update_penalty_parameter(
    current_penalty: Scalar | float,
    multipliers_x: Float[Array, " n"],
    multipliers_g: Float[Array, " ng"],
    margin: float = 1.01,
) -> Scalar:
    """Update the penalty parameter based on the QP multipliers.

    The penalty should be larger than the maximum absolute multiplier
    to ensure the merit function provides a descent direction, and it never
    decreases:

    ``σ = max(σ, margin * ‖λ_x‖_∞, margin * ‖λ_g‖_∞)``

    Args:
        current_penalty: Current penalty parameter.
        multipliers_x: QP multipliers of the simple bounds.
        multipliers_g: QP multipliers of the linearized constraints.
        margin: Safety margin factor (default 1.01).

    Returns:
        Updated penalty parameter.
    """
    max_mult_x = jnp.max(jnp.abs(multipliers_x), initial=0.0)
    max_mult_g = jnp.max(jnp.abs(multipliers_g), initial=0.0)
    new_penalty = jnp.maximum(jnp.asarray(current_penalty), margin * max_mult_x)
    return jnp.maximum(new_penalty, margin * max_mult_g)


def push_merit(
    history: tuple[float, ...], merit: float, memory: int
) -> tuple[float, ...]:
    """Append a merit value, keeping only the ``memory`` most recent ones."""
    return (history + (merit,))[-memory:]


def backtracking_line_search(
    evaluate_trial: Callable[[Vector], TrialEvaluation],
    x: Vector,
    direction: Vector,
    penalty: float,
    merit_derivative: float,
    merit_history: tuple[float, ...],
    lbx: Float[Array, " n"],
    ubx: Float[Array, " n"],
    lbg: Float[Array, " ng"],
    ubg: Float[Array, " ng"],
    c1: float = 1e-4,
    beta: float = 0.8,
    max_iter: int = 3,
    min_step: float = 1e-16,
) -> LineSearchResult:
    """Non-monotone backtracking line search on the L1 merit function.

    Starting from t = 1, trial points x + t * d are evaluated until

        φ(x + t d) <= max(merit_history) + t * c1 * merit_derivative

    holds, shrinking t by ``beta`` after every rejection. A trial point at
    which the problem functions cannot be evaluated counts as a trial and is
    rejected, but the search never stops on it: t keeps shrinking until a
    trial evaluates. Once ``max_iter`` trials are used up, the first trial
    that evaluates ends the search with failure and is returned as the
    candidate. If t falls below ``min_step`` without any trial evaluating,
    the step size is 0 and ``x`` itself is returned.

    ``max_iter == 0`` disables the search: the full step is taken.

    Args:
        evaluate_trial: Evaluates f and g at a point without raising.
        x: Current point.
        direction: Search direction.
        penalty: Penalty parameter σ.
        merit_derivative: Directional derivative of the merit function.
        merit_history: Recent merit values, including the current one.
        lbx: Lower bounds on x.
        ubx: Upper bounds on x.
        lbg: Lower bounds on g.
        ubg: Upper bounds on g.
        c1: Armijo condition parameter (default 1e-4).
        beta: Step reduction factor (default 0.8).
        max_iter: Maximum number of trial points.
        min_step: Smallest step size tried after evaluation failures.

    Returns:
        LineSearchResult with the step size and the accepted point.
    """
    if max_iter == 0:
        return LineSearchResult(
            step_size=1.0,
            x_cand=x + direction,
            f_val=None,
            g_val=None,
            success=True,
            n_trials=0,
        )

    merit_max = max(merit_history)
    t = 1.0
    n_trials = 0

    while True:
        x_cand = x + t * direction
        trial = evaluate_trial(x_cand)
        n_trials += 1

        if trial.success:
            infeasibility = primal_infeasibility(
                x_cand, lbx, ubx, trial.g_val, lbg, ubg
            )
            merit_cand = float(compute_merit(trial.f_val, infeasibility, penalty))
            if merit_cand <= merit_max + t * c1 * merit_derivative:
                logger.debug("Line-search completed, candidate accepted")
                return LineSearchResult(
                    step_size=t,
                    x_cand=x_cand,
                    f_val=trial.f_val,
                    g_val=trial.g_val,
                    success=True,
                    n_trials=n_trials,
                )
            if n_trials >= max_iter:
                logger.debug("Line-search completed, maximum number of iterations")
                return LineSearchResult(
                    step_size=t,
                    x_cand=x_cand,
                    f_val=trial.f_val,
                    g_val=trial.g_val,
                    success=False,
                    n_trials=n_trials,
                )
        else:
            logger.debug("Trial point rejected: %s", trial.error)

        t = beta * t
        if t < min_step:
            logger.debug("Line-search failed, no trial point could be evaluated")
            return LineSearchResult(
                step_size=0.0,
                x_cand=x,
                f_val=None,
                g_val=None,
                success=False,
                n_trials=n_trials,
            )
