"""SQP method for nonlinear programs.

This module contains the main :class:`SQPMethod` class, a Sequential
Quadratic Programming solver for

    minimize    f(x)
    subject to  lbx <= x    <= ubx
                lbg <= g(x) <= ubg

The solver supports two modes for the Hessian of the Lagrangian:

1. Exact (default): the Hessian is evaluated at every iterate, optionally
   regularized with a Gershgorin diagonal shift.
2. Limited-memory: a dense Powell-damped BFGS approximation, seeded with
   the identity and reset to its diagonal every ``lbfgs_memory``
   iterations.

Each step is globalized by a non-monotone backtracking line search on the
L1 merit function.

The solver follows the ``init`` / ``terminate`` / ``step`` / ``postprocess``
protocol of the optimistix minimisers, but the loop in :meth:`SQPMethod.solve`
runs eagerly on the host: rejected trial points are recovered from with
Python exceptions and the user callback is an arbitrary Python function.
The evaluations and the QP solves themselves are JIT compiled.
"""

import logging
import time
import warnings
from collections.abc import Callable
from functools import partial
from typing import Any, NamedTuple, Optional

import equinox as eqx
import jax.numpy as jnp
import numpy as np
import optimistix as optx
from jaxtyping import Array, ArrayLike, Float

from sqp_jax.display import format_iteration, iteration_header, log_header, log_timings
from sqp_jax.errors import EvaluationError, IndefiniteHessianWarning
from sqp_jax.evaluator import NLPEvaluator, TrialEvaluation
from sqp_jax.hessian import (
    bfgs_update,
    compute_lagrangian_gradient,
    gershgorin_regularization,
    quadratic_form,
    regularize,
    reset_off_diagonal,
)
from sqp_jax.merit import (
    backtracking_line_search,
    compute_merit,
    merit_directional_derivative,
    primal_infeasibility,
    push_merit,
    update_penalty_parameter,
)
from sqp_jax.qp_solver import AbstractQPSolver, ActiveSetQPSolver, QPSolution
from sqp_jax.stats import SolverStats
from sqp_jax.types import (
    MONITOR_ITEMS,
    HessianApproximation,
    Matrix,
    Scalar,
    SolverResult,
    Vector,
)

logger = logging.getLogger(__name__)


class SQPState(eqx.Module):
    """State of the SQP iteration.

    Each :meth:`SQPMethod.step` returns a new state; nothing is mutated.

    Attributes:
        iteration: Number of SQP iterations performed.
        x: Current point x_k.
        x_old: Previous point x_{k-1}.
        x_cand: Point accepted by the last line search.
        f_val: Objective value f(x_k).
        g_val: Constraint values g(x_k).
        grad_f: Gradient of the objective at x_k.
        jac_g: Constraint Jacobian at x_k, shape (ng, n).
        mu: Multipliers of the constraints.
        mu_x: Multipliers of the simple bounds.
        grad_lagrangian: ∇f + J^T mu + mu_x at x_k.
        grad_lagrangian_old: Lagrangian gradient at x_{k-1} with the
            current multipliers (used by the BFGS update).
        hessian: Exact or approximate Hessian of the Lagrangian.
        dx: Last QP step.
        dual_x: QP multipliers of the simple bounds.
        dual_a: QP multipliers of the linearized constraints.
        merit_history: Most recent L1 merit values, oldest first.
        sigma: Penalty parameter of the merit function (non-decreasing).
        regularization: Diagonal shift applied to the last exact Hessian.
        ls_trials: Trial points evaluated by the last line search.
        ls_success: Whether the last line search met the Armijo condition.
    """

    iteration: int

    x: Float[Array, " n"]
    x_old: Float[Array, " n"]
    x_cand: Float[Array, " n"]

    f_val: Float[Array, ""]
    g_val: Float[Array, " ng"]
    grad_f: Float[Array, " n"]
    jac_g: Float[Array, "ng n"]

    mu: Float[Array, " ng"]
    mu_x: Float[Array, " n"]
    grad_lagrangian: Float[Array, " n"]
    grad_lagrangian_old: Float[Array, " n"]

    hessian: Float[Array, "n n"]

    dx: Float[Array, " n"]
    dual_x: Float[Array, " n"]
    dual_a: Float[Array, " ng"]

    merit_history: tuple[float, ...]
    sigma: float
    regularization: float

    ls_trials: int
    ls_success: bool


class NLPBounds(NamedTuple):
    """Bounds ``lbx <= x <= ubx`` and ``lbg <= g(x) <= ubg``."""

    lbx: Float[Array, " n"]
    ubx: Float[Array, " n"]
    lbg: Float[Array, " ng"]
    ubg: Float[Array, " ng"]


class IterationInfo(NamedTuple):
    """Snapshot of the current iterate handed to the user callback."""

    iter: int
    x: Float[Array, " n"]
    f: float
    g: Float[Array, " ng"]
    lam_g: Float[Array, " ng"]
    lam_x: Float[Array, " n"]
    inf_pr: float
    inf_du: float
    d_norm: float
    ls_trials: int

    @property
    def obj(self) -> float:
        return self.f


class SolveResult(NamedTuple):
    """Outcome of :meth:`SQPMethod.solve`.

    Attributes:
        x: Final point.
        f: Objective value at ``x``.
        g: Constraint values at ``x``.
        lam_g: Multipliers of the constraints.
        lam_x: Multipliers of the simple bounds.
        status: One of the :class:`~sqp_jax.types.SolverResult` statuses.
        stats: Timings, call counts and the per-iteration log.
    """

    x: Float[Array, " n"]
    f: Float[Array, ""]
    g: Float[Array, " ng"]
    lam_g: Float[Array, " ng"]
    lam_x: Float[Array, " n"]
    status: str
    stats: dict[str, Any]

    @property
    def success(self) -> bool:
        return self.status == SolverResult.SUCCESS


IterationCallback = Callable[[IterationInfo], Any]


class SQPMethod(eqx.Module):
    """SQP minimizer with an L1 merit line search.

    At each iteration, it:

    1. Stops if the iterate is primal and dual feasible within ``tol_pr``
       and ``tol_du``, if ``max_iter`` iterations were done, or if the
       previous step was shorter than ``min_step_size``.
    2. Solves the QP subproblem built from the Hessian (approximation), the
       objective gradient and the linearized constraints.
    3. Raises the merit penalty above the QP multipliers and runs the
       non-monotone backtracking line search.
    4. Moves the multipliers towards the QP multipliers by the step size.
    5. Re-evaluates the derivatives and updates the Hessian (approximation).

    Attributes:
        evaluator: Evaluator of the objective, constraints and derivatives.
        max_iter: Maximum number of SQP iterations.
        max_iter_ls: Maximum number of line-search trials (0 disables the
            line search: full steps are taken).
        tol_pr: Stopping tolerance on the primal infeasibility.
        tol_du: Stopping tolerance on the dual infeasibility.
        c1: Armijo coefficient of sufficient decrease in merit.
        beta: Step-size reduction factor of the line search.
        merit_memory: Number of merit values kept for the non-monotone
            acceptance test.
        lbfgs_memory: Iterations between diagonal resets of the BFGS
            approximation.
        min_step_size: Smallest infinity norm of the step before stopping.
        hessian_approximation: ``"exact"`` or ``"limited-memory"``.
        regularize: Regularize the exact Hessian with a Gershgorin shift.
        bfgs_min_denominator: Denominator magnitude below which the BFGS
            update is skipped.
        print_header: Log the problem summary before iterating.
        print_iteration: Log the iteration table.
        print_time: Log the timing summary after the solve.
        monitor: Quantities to log at DEBUG level, any of
            ``eval_f, eval_g, eval_jac_g, eval_grad_f, eval_h, qp, dx, bfgs``.
        qp_solver: Backend for the QP subproblems.
        norm: Norm used for the dual infeasibility and the step size.

    Example:
        >>> import jax.numpy as jnp
        >>> from sqp_jax import NLPEvaluator, SQPMethod
        >>>
        >>> evaluator = NLPEvaluator(
        ...     objective_fn=lambda x, args: (x[0] - 1) ** 2 + (x[1] - 2) ** 2,
        ...     constraint_fn=lambda x, args: jnp.array([x[0] + x[1]]),
        ...     n_constraints=1,
        ... )
        >>> solver = SQPMethod(evaluator)
        >>> result = solver.solve(jnp.zeros(2), ubg=jnp.array([2.0]))
    """

    evaluator: NLPEvaluator

    # Stopping criteria
    max_iter: int = eqx.field(static=True, default=50)
    tol_pr: float = 1e-6
    tol_du: float = 1e-6
    min_step_size: float = 1e-10

    # Line search parameters
    max_iter_ls: int = eqx.field(static=True, default=3)
    c1: float = 1e-4
    beta: float = 0.8
    merit_memory: int = eqx.field(static=True, default=4)

    # Hessian parameters
    hessian_approximation: str = eqx.field(
        static=True, default=HessianApproximation.EXACT
    )
    lbfgs_memory: int = eqx.field(static=True, default=10)
    regularize: bool = eqx.field(static=True, default=False)
    bfgs_min_denominator: float = 1e-14

    # Output
    print_header: bool = eqx.field(static=True, default=True)
    print_iteration: bool = eqx.field(static=True, default=True)
    print_time: bool = eqx.field(static=True, default=True)
    monitor: tuple[str, ...] = eqx.field(static=True, default=())

    qp_solver: AbstractQPSolver = eqx.field(default_factory=ActiveSetQPSolver)

    # Norm function for convergence checking
    norm: Callable = eqx.field(static=True, default=optx.max_norm)

    def __check_init__(self):
        if self.max_iter < 0:
            raise ValueError("max_iter must be non-negative")
        if self.max_iter_ls < 0:
            raise ValueError("max_iter_ls must be non-negative")
        if self.tol_pr <= 0 or self.tol_du <= 0:
            raise ValueError("tol_pr and tol_du must be positive")
        if not 0 < self.c1 < 1:
            raise ValueError("c1 must lie in (0, 1)")
        if not 0 < self.beta < 1:
            raise ValueError("beta must lie in (0, 1)")
        if self.merit_memory < 1:
            raise ValueError("merit_memory must be at least 1")
        if self.lbfgs_memory < 1:
            raise ValueError("lbfgs_memory must be at least 1")
        if self.hessian_approximation not in HessianApproximation.ALL:
            raise ValueError(
                f"Unknown hessian_approximation {self.hessian_approximation!r}, "
                f"expected one of {HessianApproximation.ALL}"
            )
        unknown = set(self.monitor) - set(MONITOR_ITEMS)
        if unknown:
            raise ValueError(f"Unknown monitor items {sorted(unknown)}")

    @property
    def exact_hessian(self) -> bool:
        return self.hessian_approximation == HessianApproximation.EXACT

    def _monitored(self, item: str) -> bool:
        return item in self.monitor

    # ------------------------------------------------------------------
    # Evaluations
    # ------------------------------------------------------------------

    def _eval_jac_g(
        self, x: Vector, stats: SolverStats
    ) -> tuple[Float[Array, " ng"], Float[Array, "ng n"]]:
        try:
            g_val, jac_g = self.evaluator.evaluate_constraint_jacobian(x, stats)
        except EvaluationError as err:
            logger.warning("eval_jac_g failed: %s", err)
            raise
        if self._monitored("eval_jac_g"):
            logger.debug("x = %s\ng = %s\nJ = %s", x, g_val, jac_g)
        return g_val, jac_g

    def _eval_grad_f(self, x: Vector, stats: SolverStats) -> tuple[Scalar, Vector]:
        try:
            f_val, grad_f = self.evaluator.evaluate_objective_gradient(x, stats)
        except EvaluationError as err:
            logger.warning("eval_grad_f failed: %s", err)
            raise
        if self._monitored("eval_f"):
            logger.debug("x = %s\nf = %s", x, f_val)
        if self._monitored("eval_grad_f"):
            logger.debug("x      = %s\ngrad_f = %s", x, grad_f)
        return f_val, grad_f

    def _eval_h(
        self, x: Vector, mu: Float[Array, " ng"], stats: SolverStats
    ) -> tuple[Matrix, float]:
        """Evaluate the exact Hessian, regularized if requested."""
        try:
            hessian = self.evaluator.evaluate_lagrangian_hessian(x, mu, 1.0, stats)
        except EvaluationError as err:
            logger.warning("eval_h failed: %s", err)
            raise
        if self._monitored("eval_h"):
            logger.debug("x = %s\nH = %s", x, hessian)

        reg = 0.0
        if self.regularize:
            reg_value = gershgorin_regularization(hessian)
            reg = float(reg_value)
            if reg > 0:
                hessian = regularize(hessian, reg_value)
        return hessian, reg

    def _evaluate_trial(self, x: Vector, stats: SolverStats) -> TrialEvaluation:
        trial = self.evaluator.evaluate_trial(x, stats)
        if trial.success:
            if self._monitored("eval_f"):
                logger.debug("x = %s\nf = %s", x, trial.f_val)
            if self._monitored("eval_g"):
                logger.debug("x = %s\ng = %s", x, trial.g_val)
        return trial

    def _solve_qp(self, state: SQPState, bounds: NLPBounds) -> QPSolution:
        qp_lbx = bounds.lbx - state.x
        qp_ubx = bounds.ubx - state.x
        qp_lba = bounds.lbg - state.g_val
        qp_uba = bounds.ubg - state.g_val

        if self._monitored("qp"):
            logger.debug(
                "H = %s\nA = %s\ng = %s\nlbx = %s\nubx = %s\nlbA = %s\nubA = %s",
                state.hessian,
                state.jac_g,
                state.grad_f,
                qp_lbx,
                qp_ubx,
                qp_lba,
                qp_uba,
            )

        # Warm start from the previous step
        solution = self.qp_solver.solve(
            state.hessian,
            state.grad_f,
            qp_lbx,
            qp_ubx,
            state.jac_g,
            qp_lba,
            qp_uba,
            state.dx,
        )
        if self._monitored("dx"):
            logger.debug("dx = %s", solution.x)
        return solution

    # ------------------------------------------------------------------
    # Solver protocol
    # ------------------------------------------------------------------

    def init(
        self,
        x0: Vector,
        lam_g0: Float[Array, " ng"],
        lam_x0: Float[Array, " n"],
        stats: SolverStats,
    ) -> SQPState:
        """Initialize the SQP solver state.

        Evaluates the constraints and their Jacobian, the objective and its
        gradient, and the initial Hessian (exact, or the identity in
        limited-memory mode) at ``x0``.

        Args:
            x0: Initial point.
            lam_g0: Initial multipliers of the constraints.
            lam_x0: Initial multipliers of the simple bounds.
            stats: Statistics record of this solve.

        Returns:
            Initial SQPState.

        Raises:
            EvaluationError: If the problem cannot be evaluated at ``x0``.
        """
        n = x0.shape[0]

        g_val, jac_g = self._eval_jac_g(x0, stats)
        if g_val.shape != lam_g0.shape:
            raise ValueError(
                f"Constraint function returned shape {g_val.shape}, expected "
                f"{lam_g0.shape}"
            )
        f_val, grad_f = self._eval_grad_f(x0, stats)

        if self.exact_hessian:
            hessian, reg = self._eval_h(x0, lam_g0, stats)
        else:
            hessian, reg = jnp.eye(n, dtype=x0.dtype), 0.0

        grad_lagrangian = compute_lagrangian_gradient(grad_f, jac_g, lam_g0, lam_x0)

        return SQPState(
            iteration=0,
            x=x0,
            x_old=x0,
            x_cand=x0,
            f_val=f_val,
            g_val=g_val,
            grad_f=grad_f,
            jac_g=jac_g,
            mu=lam_g0,
            mu_x=lam_x0,
            grad_lagrangian=grad_lagrangian,
            grad_lagrangian_old=grad_lagrangian,
            hessian=hessian,
            dx=jnp.zeros_like(x0),
            dual_x=jnp.zeros_like(x0),
            dual_a=jnp.zeros_like(lam_g0),
            merit_history=(),
            sigma=0.0,
            regularization=reg,
            ls_trials=0,
            ls_success=True,
        )

    def terminate(
        self,
        state: SQPState,
        bounds: NLPBounds,
        stats: SolverStats,
        callback: Optional[IterationCallback] = None,
    ) -> tuple[bool, Optional[str]]:
        """Check if the solver should terminate.

        Logs the iteration, records its statistics and calls the user
        callback before checking, in order:

        1. Convergence: primal infeasibility below ``tol_pr`` and dual
           infeasibility below ``tol_du``.
        2. Iteration limit.
        3. Step size: the previous step is no longer than
           ``min_step_size``.

        Returns:
            Tuple of (done, status) where status is None while iterating.
        """
        pr_inf = float(
            primal_infeasibility(
                state.x, bounds.lbx, bounds.ubx, state.g_val, bounds.lbg, bounds.ubg
            )
        )
        du_inf = float(self.norm(state.grad_lagrangian))
        dx_norm = float(self.norm(state.dx))
        f_val = float(state.f_val)

        if self.print_iteration:
            if state.iteration % 10 == 0:
                logger.info(iteration_header())
            logger.info(
                format_iteration(
                    state.iteration,
                    f_val,
                    pr_inf,
                    du_inf,
                    dx_norm,
                    state.regularization,
                    state.ls_trials,
                    state.ls_success,
                )
            )

        stats.record_iteration(
            inf_pr=pr_inf,
            inf_du=du_inf,
            d_norm=dx_norm,
            ls_trials=state.ls_trials,
            ls_success=state.ls_success,
            obj=f_val,
            reg=state.regularization,
        )

        if callback is not None:
            with stats.timed("callback_prepare", count=False):
                info = IterationInfo(
                    iter=state.iteration,
                    x=state.x,
                    f=f_val,
                    g=state.g_val,
                    lam_g=state.mu,
                    lam_x=state.mu_x,
                    inf_pr=pr_inf,
                    inf_du=du_inf,
                    d_norm=dx_norm,
                    ls_trials=state.ls_trials,
                )
            with stats.timed("callback_fun", count=False):
                abort = callback(info)
            if abort:
                return True, SolverResult.USER_STOP

        if pr_inf < self.tol_pr and du_inf < self.tol_du:
            return True, SolverResult.SUCCESS

        if state.iteration >= self.max_iter:
            return True, SolverResult.MAX_ITERATIONS

        if state.iteration > 0 and dx_norm <= self.min_step_size:
            return True, SolverResult.STEP_TOO_SMALL

        return False, None

    def step(
        self,
        state: SQPState,
        bounds: NLPBounds,
        stats: SolverStats,
    ) -> SQPState:
        """Perform one SQP iteration.

        This method:
        1. Solves the QP subproblem for the search direction.
        2. Updates the merit penalty and the merit history.
        3. Performs the line search with the L1 merit function.
        4. Updates the multipliers and the iterate.
        5. Re-evaluates objective, gradient, constraints and Jacobian.
        6. Updates the Hessian (exact re-evaluation or BFGS).

        Args:
            state: Current solver state.
            bounds: Problem bounds.
            stats: Statistics record of this solve.

        Returns:
            The new state.

        Raises:
            QPSolveError: If the QP subproblem cannot be solved.
            EvaluationError: If the problem cannot be evaluated at the new
                iterate.
        """
        iteration = state.iteration + 1

        # Step 1: QP subproblem
        logger.debug("Formulating QP")
        qp = self._solve_qp(state, bounds)
        dx = qp.x
        logger.debug("QP solved")

        if float(quadratic_form(state.hessian, dx)) < 0:
            logger.warning("Indefinite Hessian detected...")
            warnings.warn(
                "Indefinite Hessian detected...", IndefiniteHessianWarning, stacklevel=3
            )

        # Step 2: merit function
        sigma = float(update_penalty_parameter(state.sigma, qp.lam_x, qp.lam_a))
        l1_infeas = primal_infeasibility(
            state.x, bounds.lbx, bounds.ubx, state.g_val, bounds.lbg, bounds.ubg
        )
        l1_dir = float(
            merit_directional_derivative(dx, state.grad_f, l1_infeas, sigma)
        )
        l1_merit = float(compute_merit(state.f_val, l1_infeas, sigma))
        merit_history = push_merit(state.merit_history, l1_merit, self.merit_memory)

        # Step 3: line search
        logger.debug("Starting line-search")
        ls = backtracking_line_search(
            partial(self._evaluate_trial, stats=stats),
            x=state.x,
            direction=dx,
            penalty=sigma,
            merit_derivative=l1_dir,
            merit_history=merit_history,
            lbx=bounds.lbx,
            ubx=bounds.ubx,
            lbg=bounds.lbg,
            ubg=bounds.ubg,
            c1=self.c1,
            beta=self.beta,
            max_iter=self.max_iter_ls,
        )

        # Step 4: multipliers and primal variables
        if self.max_iter_ls > 0:
            t = ls.step_size
            mu = t * qp.lam_a + (1 - t) * state.mu
            mu_x = t * qp.lam_x + (1 - t) * state.mu_x
        else:
            mu = qp.lam_a
            mu_x = qp.lam_x
        x_old = state.x
        x = ls.x_cand

        if not self.exact_hessian:
            # Old x, new multipliers
            grad_lagrangian_old = compute_lagrangian_gradient(
                state.grad_f, state.jac_g, mu, mu_x
            )
        else:
            grad_lagrangian_old = state.grad_lagrangian

        # Step 5: derivatives at the new point
        logger.debug("Evaluating jac_g")
        g_val, jac_g = self._eval_jac_g(x, stats)
        logger.debug("Evaluating grad_f")
        f_val, grad_f = self._eval_grad_f(x, stats)
        grad_lagrangian = compute_lagrangian_gradient(grad_f, jac_g, mu, mu_x)

        # Step 6: Hessian
        if self.exact_hessian:
            logger.debug("Evaluating hessian")
            hessian, reg = self._eval_h(x, mu, stats)
        else:
            logger.debug("Updating Hessian (BFGS)")
            hessian = state.hessian
            if iteration % self.lbfgs_memory == 0:
                hessian = reset_off_diagonal(hessian)
            hessian = bfgs_update(
                hessian,
                x,
                x_old,
                grad_lagrangian,
                grad_lagrangian_old,
                min_denominator=float(self.bfgs_min_denominator),
            )
            reg = 0.0
            if self._monitored("bfgs"):
                logger.debug("x = %s\nBFGS = %s", x, hessian)

        return SQPState(
            iteration=iteration,
            x=x,
            x_old=x_old,
            x_cand=ls.x_cand,
            f_val=f_val,
            g_val=g_val,
            grad_f=grad_f,
            jac_g=jac_g,
            mu=mu,
            mu_x=mu_x,
            grad_lagrangian=grad_lagrangian,
            grad_lagrangian_old=grad_lagrangian_old,
            hessian=hessian,
            dx=dx,
            dual_x=qp.lam_x,
            dual_a=qp.lam_a,
            merit_history=merit_history,
            sigma=sigma,
            regularization=reg,
            ls_trials=ls.n_trials,
            ls_success=ls.success,
        )

    def postprocess(
        self, state: SQPState, status: str, stats: SolverStats
    ) -> SolveResult:
        """Collect the solution and the statistics of the solve."""
        stats.iter_count = state.iteration
        stats.return_status = status

        if self.print_time:
            log_timings(stats)

        return SolveResult(
            x=state.x,
            f=state.f_val,
            g=state.g_val,
            lam_g=state.mu,
            lam_x=state.mu_x,
            status=status,
            stats=stats.as_dict(),
        )

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _prepare_bounds(
        self,
        n: int,
        dtype: Any,
        lbx: Optional[ArrayLike],
        ubx: Optional[ArrayLike],
        lbg: Optional[ArrayLike],
        ubg: Optional[ArrayLike],
    ) -> NLPBounds:
        ng = self.evaluator.n_constraints if self.evaluator.has_constraints else 0

        def as_bound(value, size, fill):
            if value is None:
                return jnp.full((size,), fill, dtype=dtype)
            return jnp.broadcast_to(jnp.asarray(value, dtype=dtype), (size,))

        bounds = NLPBounds(
            lbx=as_bound(lbx, n, -jnp.inf),
            ubx=as_bound(ubx, n, jnp.inf),
            lbg=as_bound(lbg, ng, -jnp.inf),
            ubg=as_bound(ubg, ng, jnp.inf),
        )

        if np.any(np.asarray(bounds.lbx) > np.asarray(bounds.ubx)):
            raise ValueError("Inconsistent bounds: lbx > ubx for some entries")
        if np.any(np.asarray(bounds.lbg) > np.asarray(bounds.ubg)):
            raise ValueError("Inconsistent bounds: lbg > ubg for some entries")
        return bounds

    def solve(
        self,
        x0: ArrayLike,
        lbx: Optional[ArrayLike] = None,
        ubx: Optional[ArrayLike] = None,
        lbg: Optional[ArrayLike] = None,
        ubg: Optional[ArrayLike] = None,
        lam_g0: Optional[ArrayLike] = None,
        lam_x0: Optional[ArrayLike] = None,
        callback: Optional[IterationCallback] = None,
    ) -> SolveResult:
        """Solve the nonlinear program from the initial guess ``x0``.

        Missing bounds default to +/- infinity and missing multiplier
        guesses to zero. Scalar bounds are broadcast.

        Args:
            x0: Initial guess.
            lbx: Lower bounds on x.
            ubx: Upper bounds on x.
            lbg: Lower bounds on g(x).
            ubg: Upper bounds on g(x).
            lam_g0: Initial multipliers of the constraints.
            lam_x0: Initial multipliers of the simple bounds.
            callback: Called once per iteration with an
                :class:`IterationInfo`; a truthy return value stops the
                solve with status ``User_Requested_Stop``.

        Returns:
            SolveResult with the final iterate, status and statistics.

        Raises:
            EvaluationError: If the problem cannot be evaluated outside of
                the line search.
            QPSolveError: If a QP subproblem cannot be solved.
            ValueError: If the bounds or initial guesses are inconsistent.
        """
        dtype = jnp.result_type(float)
        x0 = jnp.atleast_1d(jnp.asarray(x0, dtype=dtype))
        n = x0.shape[0]
        bounds = self._prepare_bounds(n, dtype, lbx, ubx, lbg, ubg)
        ng = bounds.lbg.shape[0]

        lam_g0 = (
            jnp.zeros((ng,), dtype=dtype)
            if lam_g0 is None
            else jnp.asarray(lam_g0, dtype=dtype).reshape(ng)
        )
        lam_x0 = (
            jnp.zeros((n,), dtype=dtype)
            if lam_x0 is None
            else jnp.asarray(lam_x0, dtype=dtype).reshape(n)
        )

        if self.print_header:
            log_header(self.exact_hessian, n, ng, ng * n, n * n)

        stats = SolverStats()
        start = time.perf_counter()

        state = self.init(x0, lam_g0, lam_x0, stats)
        while True:
            done, status = self.terminate(state, bounds, stats, callback)
            if done:
                break
            state = self.step(state, bounds, stats)

        stats.t_mainloop = time.perf_counter() - start

        message = SolverResult.MESSAGES[status].format(iter=state.iteration)
        logger.info("sqp_jax.SQPMethod: %s", message)

        return self.postprocess(state, status, stats)
