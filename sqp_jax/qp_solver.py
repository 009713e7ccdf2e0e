"""QP Subproblem Solver for SQP.

At each SQP iteration the step is the solution of the quadratic program

    minimize    (1/2) d^T H d + g^T d
    subject to  lbx <= d   <= ubx
                lbA <= A d <= ubA

The SQP controller only depends on the :class:`AbstractQPSolver` interface,
so any backend can be plugged in. The default :class:`ActiveSetQPSolver`
rewrites the two-sided bounds as

    A_eq d = b_eq      (rows with equal finite bounds)
    A_ineq d >= b_ineq (one row per remaining finite bound)

and solves that problem with a primal **active-set** method whose inner
equality-constrained QPs are solved by **projected conjugate gradient**.

Multipliers are returned with the sign convention of the NLP Lagrangian:
at a KKT point ``H d + g + A^T lam_a + lam_x = 0``, a multiplier is negative
when its lower bound is active and positive when its upper bound is active.
"""

import abc
import logging
from typing import Callable, NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from sqp_jax.errors import QPSolveError
from sqp_jax.types import Matrix
from sqp_jax.utils import all_finite

logger = logging.getLogger(__name__)


class QPState(eqx.Module):
    """State for the Active Set QP solver."""

    d: Float[Array, " n"]
    active_set: Bool[Array, " m_ineq"]
    multipliers_eq: Float[Array, " m_eq"]
    multipliers_ineq: Float[Array, " m_ineq"]
    iteration: Int[Array, ""]
    converged: Bool[Array, ""]
    cg_converged: Bool[Array, ""]


class QPResult(NamedTuple):
    """Result from the active-set QP solver, in ``A d >= b`` form.

    The multipliers satisfy ``H d + g - A_eq^T lam_eq - A_ineq^T lam_ineq = 0``
    with ``lam_ineq >= 0``.
    """

    d: Float[Array, " n"]
    multipliers_eq: Float[Array, " m_eq"]
    multipliers_ineq: Float[Array, " m_ineq"]
    converged: Bool[Array, ""]
    iterations: Int[Array, ""]
    cg_converged: Bool[Array, ""]


class QPSolution(NamedTuple):
    """Solution of the QP subproblem in bound form.

    Attributes:
        x: Primal solution (the SQP step).
        lam_x: Multipliers of the simple bounds.
        lam_a: Multipliers of the linear constraints.
    """

    x: Float[Array, " n"]
    lam_x: Float[Array, " n"]
    lam_a: Float[Array, " ng"]


class _CGState(NamedTuple):
    """Internal state for the projected conjugate gradient solver."""

    d: Float[Array, " n"]
    r: Float[Array, " n"]
    p: Float[Array, " n"]
    r_norm_sq: Float[Array, ""]
    iteration: Int[Array, ""]
    converged: Bool[Array, ""]


def _projected_cg(
    hvp_fn: Callable[[Float[Array, " n"]], Float[Array, " n"]],
    project: Callable[[Float[Array, " n"]], Float[Array, " n"]],
    d0: Float[Array, " n"],
    r0: Float[Array, " n"],
    max_cg_iter: int,
    cg_tol: float,
) -> tuple[Float[Array, " n"], Bool[Array, ""]]:
    """Run CG from ``d0`` with initial projected residual ``r0``.

    Iterates stay in ``d0 + range(project)``. CG stops on convergence, on
    non-positive curvature, or when a NaN appears (keeping the last valid
    iterate). The returned flag is False only if ``max_cg_iter`` was reached
    first.
    """
    r0_norm_sq = jnp.dot(r0, r0)

    init_cg = _CGState(
        d=d0,
        r=r0,
        p=r0,
        r_norm_sq=r0_norm_sq,
        iteration=jnp.array(0),
        converged=r0_norm_sq < cg_tol**2,
    )

    def do_step(state: _CGState) -> _CGState:
        PBp = project(hvp_fn(state.p))
        pPBp = jnp.dot(state.p, PBp)

        # Non-positive curvature stops CG at the current iterate
        has_curvature = pPBp > 1e-12
        alpha = state.r_norm_sq / jnp.where(has_curvature, pPBp, 1.0)
        alpha = jnp.where(has_curvature, jnp.clip(alpha, 0.0, 1e10), 0.0)

        d_new = state.d + alpha * state.p
        r_new = state.r - alpha * PBp
        r_new_norm_sq = jnp.dot(r_new, r_new)

        beta = r_new_norm_sq / jnp.maximum(state.r_norm_sq, 1e-30)
        beta = jnp.clip(beta, 0.0, 1e10)
        p_new = r_new + beta * state.p

        has_nan = jnp.any(jnp.isnan(d_new)) | jnp.any(jnp.isnan(r_new))
        converged = (r_new_norm_sq < cg_tol**2) | ~has_curvature | has_nan

        return _CGState(
            d=jnp.where(has_nan, state.d, d_new),
            r=jnp.where(has_nan, state.r, r_new),
            p=jnp.where(has_nan, state.p, p_new),
            r_norm_sq=jnp.where(has_nan, state.r_norm_sq, r_new_norm_sq),
            iteration=state.iteration + 1,
            converged=converged,
        )

    def cg_step(i, state):
        return jax.lax.cond(state.converged, lambda s: s, do_step, state)

    final_cg = jax.lax.fori_loop(0, max_cg_iter, cg_step, init_cg)
    return final_cg.d, final_cg.converged


def _solve_equality_qp(
    hvp_fn: Callable[[Float[Array, " n"]], Float[Array, " n"]],
    g: Float[Array, " n"],
    A: Float[Array, "m n"],
    b: Float[Array, " m"],
    active_mask: Bool[Array, " m"],
    max_cg_iter: int,
    cg_tol: float,
) -> tuple[Float[Array, " n"], Float[Array, " m"], Bool[Array, ""]]:
    """Solve an equality-constrained QP using projected conjugate gradient.

    Solves:
        minimize    (1/2) d^T H d + g^T d
        subject to  A[active] d = b[active]

    The method:
    1. Computes a particular solution d_p satisfying A d_p = b for
       active constraints.
    2. Runs CG in the null space of the active rows, using the projection
       P(v) = v - A^T (A A^T)^{-1} A v.
    3. Recovers Lagrange multipliers from the KKT conditions
       ``H d + g - A^T lambda = 0``.

    Inactive rows are zeroed and their diagonal of ``A A^T`` set to one, so
    that the small m x m system stays non-singular (their multiplier is 0).

    Args:
        hvp_fn: Hessian-vector product function v -> H @ v.
        g: Linear term.
        A: Constraint matrix (m x n).
        b: Right-hand side (m,).
        active_mask: Which rows of A are imposed.
        max_cg_iter: Maximum CG iterations.
        cg_tol: CG convergence tolerance.

    Returns:
        Tuple of (d, multipliers, cg_converged), multipliers being 0 for
        inactive rows.
    """
    n = g.shape[0]
    m = A.shape[0]

    if m == 0:
        d, cg_converged = _projected_cg(
            hvp_fn, lambda v: v, jnp.zeros(n, dtype=g.dtype), -g, max_cg_iter, cg_tol
        )
        return d, jnp.zeros((0,), dtype=g.dtype), cg_converged

    A_masked = jnp.where(active_mask[:, None], A, 0.0)
    b_masked = jnp.where(active_mask, b, 0.0)

    reg_diag = jnp.where(active_mask, 0.0, 1.0)
    AAt = A_masked @ A_masked.T + jnp.diag(reg_diag) + 1e-10 * jnp.eye(m)

    def solve_AAt(rhs: Float[Array, " m"]) -> Float[Array, " m"]:
        result, _, _, _ = jnp.linalg.lstsq(AAt, rhs, rcond=1e-10)
        return jnp.where(jnp.any(jnp.isnan(result)), jnp.zeros_like(result), result)

    def project(v: Float[Array, " n"]) -> Float[Array, " n"]:
        return v - A_masked.T @ solve_AAt(A_masked @ v)

    d_p = A_masked.T @ solve_AAt(b_masked)
    r0 = project(-(g + hvp_fn(d_p)))
    d, cg_converged = _projected_cg(hvp_fn, project, d_p, r0, max_cg_iter, cg_tol)
    d = jnp.where(jnp.any(jnp.isnan(d)), d_p, d)

    # lambda = (A A^T)^{-1} A (H d + g)
    multipliers = solve_AAt(A_masked @ (hvp_fn(d) + g))
    multipliers = jnp.where(active_mask, multipliers, 0.0)

    return d, multipliers, cg_converged


@jaxtyped(typechecker=beartype)
def solve_qp(
    hessian: Float[Array, "n n"],
    g: Float[Array, " n"],
    A_eq: Float[Array, "m_eq n"],
    b_eq: Float[Array, " m_eq"],
    A_ineq: Float[Array, "m_ineq n"],
    b_ineq: Float[Array, " m_ineq"],
    initial_active: Optional[Bool[Array, " m_ineq"]] = None,
    max_iter: int = 100,
    max_cg_iter: Optional[int] = None,
    tol: float = 1e-8,
) -> QPResult:
    """Solve a QP with equality and inequality constraints.

    Solves:
        minimize    (1/2) d^T H d + g^T d
        subject to  A_eq d = b_eq
                    A_ineq d >= b_ineq

    Uses a primal active-set method: active inequality constraints are
    treated as equalities and the resulting equality-constrained QP is
    solved by projected CG. The most violated inactive constraint is added,
    or the active constraint with the most negative multiplier is dropped,
    until neither exists.

    Args:
        hessian: Symmetric matrix H.
        g: Linear term of the objective.
        A_eq: Equality constraint matrix (m_eq x n).
        b_eq: Equality constraint RHS (m_eq,).
        A_ineq: Inequality constraint matrix (m_ineq x n).
        b_ineq: Inequality constraint RHS (m_ineq,).
        initial_active: Inequality rows to start from as active, in
            addition to those violated by the equality-only solution.
        max_iter: Maximum active-set iterations.
        max_cg_iter: Maximum CG iterations per active-set step. Defaults to
            ``10 * n``; finite-precision CG needs more than ``n`` steps on
            ill-conditioned Hessians.
        tol: Feasibility and optimality tolerance, also the absolute
            tolerance on the projected CG residual.

    Returns:
        QPResult containing the solution, multipliers, and convergence info.
        ``cg_converged`` is False if the last inner solve hit
        ``max_cg_iter``, in which case ``d`` is not a KKT point.
    """

    def hvp_fn(v: Float[Array, " n"]) -> Float[Array, " n"]:
        return hessian @ v

    n = g.shape[0]
    m_eq = A_eq.shape[0]
    m_ineq = A_ineq.shape[0]
    if max_cg_iter is None:
        max_cg_iter = 10 * n

    if m_ineq == 0:
        d, mult_eq, cg_converged = _solve_equality_qp(
            hvp_fn, g, A_eq, b_eq, jnp.ones(m_eq, dtype=bool), max_cg_iter, tol
        )
        return QPResult(
            d=d,
            multipliers_eq=mult_eq,
            multipliers_ineq=jnp.zeros((0,), dtype=g.dtype),
            converged=jnp.array(True),
            iterations=jnp.array(1),
            cg_converged=cg_converged,
        )

    A_combined = jnp.concatenate([A_eq, A_ineq], axis=0)
    b_combined = jnp.concatenate([b_eq, b_ineq])
    eq_mask = jnp.ones(m_eq, dtype=bool)

    def solve_with(active: Bool[Array, " m_ineq"]):
        d, mult_all, cg_converged = _solve_equality_qp(
            hvp_fn,
            g,
            A_combined,
            b_combined,
            jnp.concatenate([eq_mask, active]),
            max_cg_iter,
            tol,
        )
        return d, mult_all[:m_eq], mult_all[m_eq:], cg_converged

    # Start from the equality-only solution, activating every violated row
    d_init, mult_eq_init, _, cg_init = solve_with(jnp.zeros(m_ineq, dtype=bool))
    init_active = (A_ineq @ d_init - b_ineq) < -tol
    if initial_active is not None:
        init_active = init_active | initial_active

    init_state = QPState(
        d=d_init,
        active_set=init_active,
        multipliers_eq=mult_eq_init,
        multipliers_ineq=jnp.zeros((m_ineq,), dtype=g.dtype),
        iteration=jnp.array(0),
        converged=~jnp.any(init_active),
        cg_converged=cg_init,
    )

    def cond_fn(state: QPState) -> Bool[Array, ""]:
        return ~state.converged & (state.iteration < max_iter)

    def body_fn(state: QPState) -> QPState:
        d_new, mult_eq_new, mult_ineq_new, cg_converged = solve_with(
            state.active_set
        )

        # Most violated inactive constraint
        residuals = A_ineq @ d_new - b_ineq
        violated = (residuals < -tol) & ~state.active_set
        any_violated = jnp.any(violated)
        most_violated_idx = jnp.argmax(jnp.where(violated, -residuals, -jnp.inf))

        # Active constraint with the most negative multiplier
        negative_mult = (mult_ineq_new < -tol) & state.active_set
        any_negative = jnp.any(negative_mult)
        most_negative_idx = jnp.argmin(
            jnp.where(state.active_set, mult_ineq_new, jnp.inf)
        )

        new_active = jnp.where(
            any_violated,
            state.active_set.at[most_violated_idx].set(True),
            jnp.where(
                any_negative,
                state.active_set.at[most_negative_idx].set(False),
                state.active_set,
            ),
        )

        return QPState(
            d=d_new,
            active_set=new_active,
            multipliers_eq=mult_eq_new,
            multipliers_ineq=mult_ineq_new,
            iteration=state.iteration + 1,
            converged=~any_violated & ~any_negative,
            cg_converged=cg_converged,
        )

    final_state = jax.lax.while_loop(cond_fn, body_fn, init_state)

    return QPResult(
        d=final_state.d,
        multipliers_eq=final_state.multipliers_eq,
        multipliers_ineq=final_state.multipliers_ineq,
        converged=final_state.converged,
        iterations=final_state.iteration,
        cg_converged=final_state.cg_converged,
    )


_solve_qp_jit = eqx.filter_jit(solve_qp)


class AbstractQPSolver(eqx.Module):
    """Interface of the QP subproblem solvers used by the SQP method."""

    @abc.abstractmethod
    def solve(
        self,
        hessian: Matrix,
        g: Float[Array, " n"],
        lbx: Float[Array, " n"],
        ubx: Float[Array, " n"],
        A: Float[Array, "ng n"],
        lbA: Float[Array, " ng"],
        ubA: Float[Array, " ng"],
        x0: Float[Array, " n"],
    ) -> QPSolution:
        """Solve the bound-form QP, warm-started at ``x0``.

        Raises:
            QPSolveError: If no solution could be computed.
        """


class _BoundRows(NamedTuple):
    """Host-side bookkeeping mapping two-sided bounds to ``A d >= b`` rows."""

    eq_idx: np.ndarray
    lower_idx: np.ndarray
    upper_idx: np.ndarray


def _classify_bounds(lower: np.ndarray, upper: np.ndarray) -> _BoundRows:
    is_eq = np.isfinite(lower) & (lower == upper)
    lower_idx = np.flatnonzero(np.isfinite(lower) & ~is_eq)
    upper_idx = np.flatnonzero(np.isfinite(upper) & ~is_eq)
    return _BoundRows(np.flatnonzero(is_eq), lower_idx, upper_idx)


class ActiveSetQPSolver(AbstractQPSolver):
    """Dense active-set QP solver with a projected CG inner solver.

    The warm start seeds the initial active set with the inequality rows
    that it satisfies with equality.

    Attributes:
        max_iter: Maximum active-set iterations.
        max_cg_iter: Maximum CG iterations per equality-constrained solve
            (``None`` for ten times the number of variables).
        tol: Feasibility and optimality tolerance.
    """

    max_iter: int = eqx.field(static=True, default=100)
    max_cg_iter: Optional[int] = eqx.field(static=True, default=None)
    tol: float = eqx.field(static=True, default=1e-8)

    def solve(
        self,
        hessian: Matrix,
        g: Float[Array, " n"],
        lbx: Float[Array, " n"],
        ubx: Float[Array, " n"],
        A: Float[Array, "ng n"],
        lbA: Float[Array, " ng"],
        ubA: Float[Array, " ng"],
        x0: Float[Array, " n"],
    ) -> QPSolution:
        n = g.shape[0]
        ng = A.shape[0]
        dtype = g.dtype

        # Stack bounds on d (identity rows) and on A d into one system
        A_all = jnp.concatenate([jnp.eye(n, dtype=dtype), A], axis=0)
        lower = np.concatenate([np.asarray(lbx), np.asarray(lbA)])
        upper = np.concatenate([np.asarray(ubx), np.asarray(ubA)])
        rows = _classify_bounds(lower, upper)

        A_eq = A_all[rows.eq_idx]
        b_eq = jnp.asarray(lower[rows.eq_idx], dtype=dtype)
        A_ineq = jnp.concatenate(
            [A_all[rows.lower_idx], -A_all[rows.upper_idx]], axis=0
        )
        b_ineq = jnp.asarray(
            np.concatenate([lower[rows.lower_idx], -upper[rows.upper_idx]]),
            dtype=dtype,
        )

        initial_active = jnp.abs(A_ineq @ x0 - b_ineq) <= self.tol

        result = _solve_qp_jit(
            hessian,
            g,
            A_eq,
            b_eq,
            A_ineq,
            b_ineq,
            initial_active,
            max_iter=self.max_iter,
            max_cg_iter=self.max_cg_iter,
            tol=self.tol,
        )

        if not bool(result.converged):
            raise QPSolveError(
                f"Active-set QP solver did not converge in {self.max_iter} "
                "iterations (inconsistent linearization?)"
            )
        if not bool(result.cg_converged):
            raise QPSolveError(
                "Projected CG did not reach the residual tolerance "
                f"{self.tol:g} within its iteration limit"
            )
        if not all_finite(result.d, result.multipliers_eq, result.multipliers_ineq):
            raise QPSolveError("QP solver returned non-finite values")

        # H d + g - A_eq^T l_eq - A_ineq^T l_ineq = 0 in terms of the rows of
        # A_all gives the NLP convention H d + g + A_all^T lam = 0.
        n_lower = rows.lower_idx.shape[0]
        lam = jnp.zeros(n + ng, dtype=dtype)
        lam = lam.at[rows.eq_idx].add(-result.multipliers_eq)
        lam = lam.at[rows.lower_idx].add(-result.multipliers_ineq[:n_lower])
        lam = lam.at[rows.upper_idx].add(result.multipliers_ineq[n_lower:])

        logger.debug(
            "QP solved in %d active-set iterations", int(result.iterations)
        )
        return QPSolution(x=result.d, lam_x=lam[:n], lam_a=lam[n:])
