"""Solver output: problem header, iteration table and timing summary.

Everything is emitted through the ``sqp_jax`` loggers at INFO level, so the
output is silent unless the application configures logging, e.g.
``logging.basicConfig(level=logging.INFO)``.
"""

import logging
import math

from sqp_jax.stats import EVAL_PHASES, SolverStats

logger = logging.getLogger(__name__)


def log_header(exact_hessian: bool, nx: int, ng: int, nnz_jac: int, nnz_hess: int):
    """Log the problem summary printed before the first iteration."""
    mode = (
        "Using exact Hessian"
        if exact_hessian
        else "Using limited memory BFGS Hessian approximation"
    )
    lines = [
        "-------------------------------------------",
        "This is sqp_jax.SQPMethod.",
        mode,
        "",
        f"Number of variables:                       {nx:9d}",
        f"Number of constraints:                     {ng:9d}",
        f"Number of nonzeros in constraint Jacobian: {nnz_jac:9d}",
        f"Number of nonzeros in Lagrangian Hessian:  {nnz_hess:9d}",
        "",
    ]
    for line in lines:
        logger.info(line)


def iteration_header() -> str:
    """Column titles of the iteration table."""
    return (
        f"{'iter':>4}{'objective':>15}{'inf_pr':>10}{'inf_du':>10}"
        f"{'||d||':>10}{'lg(rg)':>7}{'ls':>3} "
    )


def format_iteration(
    iteration: int,
    obj: float,
    pr_inf: float,
    du_inf: float,
    dx_norm: float,
    reg: float,
    ls_trials: int,
    ls_success: bool,
) -> str:
    """One row of the iteration table.

    The ``lg(rg)`` column is ``log10`` of the Hessian regularization, or
    ``-`` when none was applied. A failed line search is marked with ``F``.
    """
    lg_rg = f"{math.log10(reg):7.2f}" if reg > 0 else f"{'-':>7}"
    return (
        f"{iteration:4d}{obj:15.6e}{pr_inf:10.2e}{du_inf:10.2e}{dx_norm:10.2e}"
        f"{lg_rg}{ls_trials:3d}{' ' if ls_success else 'F'}"
    )


def log_timings(stats: SolverStats):
    """Log the time spent in every phase of the solve."""
    for phase in EVAL_PHASES:
        total = getattr(stats, f"t_{phase}")
        n_calls = getattr(stats, f"n_{phase}")
        average = stats.average_ms(phase)
        if average is None:
            logger.info("time spent in %s: %g s.", phase, total)
        else:
            logger.info(
                "time spent in %s: %g s. (%d calls, %g ms. average)",
                phase,
                total,
                n_calls,
                average,
            )
    logger.info("time spent in main loop: %g s.", stats.t_mainloop)
    logger.info("time spent in callback function: %g s.", stats.t_callback_fun)
    logger.info(
        "time spent in callback preparation: %g s.", stats.t_callback_prepare
    )
