"""Type definitions for SQP-JAX.

This module contains type aliases and custom types used throughout the package.
Array types use jaxtyping for runtime type checking with beartype.

The nonlinear program solved by the package has the form::

    minimize    f(x)
    subject to  lbx <= x    <= ubx
                lbg <= g(x) <= ubg
"""

from collections.abc import Callable
from typing import Any

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]
Matrix = Float[Array, "n n"]

# Objective function type: takes parameters and args, returns f(x)
ObjectiveFn = Callable[[Vector, Any], Scalar]

# Constraint function type: takes parameters and args, returns g(x)
# Feasibility is lbg <= g(x) <= ubg; use lbg == ubg for equalities.
ConstraintFn = Callable[[Vector, Any], Float[Array, " ng"]]

# Gradient function type: grad_fn(x, args) -> ∇f(x)
GradFn = Callable[[Vector, Any], Vector]

# Jacobian function type: jac_fn(x, args) -> J(x) where J[i, j] = dg_i/dx_j
JacobianFn = Callable[[Vector, Any], Float[Array, "ng n"]]

# Hessian of the Lagrangian sigma * f(x) + mu^T g(x)
# hess_lag_fn(x, mu, sigma, args) -> ∇²_xx L(x, mu)
LagrangianHessianFn = Callable[[Vector, Float[Array, " ng"], Scalar, Any], Matrix]


# Hessian modes accepted by the solver
class HessianApproximation:
    """Constants for the ``hessian_approximation`` option."""

    EXACT = "exact"
    LIMITED_MEMORY = "limited-memory"

    ALL = (EXACT, LIMITED_MEMORY)


# Items that can be passed to the ``monitor`` option
MONITOR_ITEMS = (
    "eval_f",
    "eval_g",
    "eval_jac_g",
    "eval_grad_f",
    "eval_h",
    "qp",
    "dx",
    "bfgs",
)


# Return statuses for solver termination
class SolverResult:
    """Constants for solver termination status."""

    SUCCESS = "Solve_Succeeded"
    MAX_ITERATIONS = "Maximum_Iterations_Exceeded"
    STEP_TOO_SMALL = "Search_Direction_Becomes_Too_Small"
    USER_STOP = "User_Requested_Stop"

    MESSAGES = {
        SUCCESS: "Convergence achieved after {iter} iterations.",
        MAX_ITERATIONS: "Maximum number of iterations reached.",
        STEP_TOO_SMALL: (
            "Search direction becomes too small without "
            "convergence criteria being met."
        ),
        USER_STOP: "aborted by callback...",
    }
