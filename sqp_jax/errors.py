"""Exceptions and warnings raised by SQP-JAX."""


class SQPError(Exception):
    """Base class for errors raised while solving a nonlinear program."""


class EvaluationError(SQPError):
    """An objective, constraint or derivative evaluation failed at a point.

    Raised when a user function raises, or when it returns non-finite
    values. Inside the line search this only rejects the trial point; at
    any other point of the iteration it aborts the solve.
    """


class QPSolveError(SQPError):
    """The QP subproblem solver failed or returned an unusable solution."""


class IndefiniteHessianWarning(UserWarning):
    """The Hessian has negative curvature along the QP step."""
