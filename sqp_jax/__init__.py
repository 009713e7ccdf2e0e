"""SQP-JAX: Sequential Quadratic Programming in JAX.

This package solves nonlinear programs

    minimize f(x)  subject to  lbx <= x <= ubx,  lbg <= g(x) <= ubg

with an SQP method globalized by a non-monotone line search on the L1 merit
function. The Hessian of the Lagrangian is either evaluated exactly (with
optional Gershgorin regularization) or approximated by damped BFGS updates.
Derivatives come from JAX automatic differentiation, user-supplied
functions, or central finite differences.

Output goes through the standard :mod:`logging` module under the
``sqp_jax`` logger.
"""

import logging

from sqp_jax.errors import (
    EvaluationError,
    IndefiniteHessianWarning,
    QPSolveError,
    SQPError,
)
from sqp_jax.evaluator import NLPEvaluator, TrialEvaluation
from sqp_jax.finite_difference import FiniteDifferenceEvaluator
from sqp_jax.hessian import (
    bfgs_update,
    compute_lagrangian_gradient,
    gershgorin_regularization,
)
from sqp_jax.merit import backtracking_line_search, compute_merit
from sqp_jax.qp_solver import (
    AbstractQPSolver,
    ActiveSetQPSolver,
    QPSolution,
    solve_qp,
)
from sqp_jax.solver import IterationInfo, SolveResult, SQPMethod, SQPState
from sqp_jax.stats import SolverStats
from sqp_jax.types import (
    ConstraintFn,
    GradFn,
    HessianApproximation,
    JacobianFn,
    LagrangianHessianFn,
    ObjectiveFn,
    SolverResult,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Main solver
    "SQPMethod",
    "SQPState",
    "SolveResult",
    "IterationInfo",
    "SolverResult",
    "SolverStats",
    "HessianApproximation",
    # Problem evaluation
    "NLPEvaluator",
    "FiniteDifferenceEvaluator",
    "TrialEvaluation",
    # Types
    "ObjectiveFn",
    "ConstraintFn",
    "GradFn",
    "JacobianFn",
    "LagrangianHessianFn",
    # Errors
    "SQPError",
    "EvaluationError",
    "QPSolveError",
    "IndefiniteHessianWarning",
    # QP solver
    "AbstractQPSolver",
    "ActiveSetQPSolver",
    "QPSolution",
    "solve_qp",
    # Merit function
    "compute_merit",
    "backtracking_line_search",
    # Hessian utilities
    "bfgs_update",
    "gershgorin_regularization",
    "compute_lagrangian_gradient",
]
