"""Hessian of the Lagrangian: damped BFGS updates and regularization.

In limited-memory mode the solver keeps a dense approximation ``B`` of the
Hessian of the Lagrangian, seeded with the identity and refined after each
step with Powell's damped BFGS formula (Nocedal & Wright, Procedure 18.2):

    s = x - x_old,   y = ∇L(x) - ∇L(x_old),   q = B s
    omega = 0.8 s^T q / (s^T q - s^T y)   if s^T y < 0.2 s^T q,   else 1
    r = omega y + (1 - omega) q
    B+ = B + r r^T / (s^T r) - q q^T / (s^T q)

The damping keeps ``B`` positive definite even when the curvature condition
``s^T y > 0`` fails, which is common in constrained optimization. Every few
iterations the off-diagonal entries are dropped to restart the update.

In exact mode the Hessian may be indefinite. :func:`gershgorin_regularization`
computes the smallest diagonal shift for which the Gershgorin discs of the
shifted matrix lie in the closed right half-plane.
"""

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from sqp_jax.types import Matrix, Scalar, Vector


@jaxtyped(typechecker=beartype)
def bfgs_update(
    hessian: Matrix,
    x: Vector,
    x_old: Vector,
    grad_lagrangian: Vector,
    grad_lagrangian_old: Vector,
    damping_threshold: float = 0.2,
    min_denominator: float = 1e-14,
) -> Matrix:
    """Apply one Powell-damped BFGS update to a dense Hessian approximation.

    The update is skipped, returning ``hessian`` unchanged, when either
    denominator ``s^T r`` or ``s^T B s`` is at most ``min_denominator`` in
    absolute value (in particular when the step is zero) or when the update
    produces non-finite values.

    Args:
        hessian: Current approximation B.
        x: Current point.
        x_old: Previous point.
        grad_lagrangian: Lagrangian gradient at ``x``.
        grad_lagrangian_old: Lagrangian gradient at ``x_old``, evaluated with
            the current multipliers.
        damping_threshold: Powell damping threshold (default 0.2).
        min_denominator: Smallest admissible denominator magnitude.

    Returns:
        The updated approximation.
    """
    s = x - x_old
    y = grad_lagrangian - grad_lagrangian_old
    q = hessian @ s

    sBs = jnp.dot(s, q)
    sTy = jnp.dot(s, y)

    # Powell's damping: blend y with B s so that s^T r >= 0.2 s^T B s
    use_damping = sTy < damping_threshold * sBs
    omega = jnp.where(
        use_damping,
        (1.0 - damping_threshold) * sBs / (sBs - sTy),
        1.0,
    )
    r = omega * y + (1.0 - omega) * q
    sTr = jnp.dot(s, r)

    should_skip = (
        (jnp.abs(sTr) <= min_denominator)
        | (jnp.abs(sBs) <= min_denominator)
        | ~jnp.isfinite(sTr)
        | ~jnp.isfinite(sBs)
    )

    theta = 1.0 / jnp.where(should_skip, 1.0, sTr)
    phi = 1.0 / jnp.where(should_skip, 1.0, sBs)
    updated = hessian + theta * jnp.outer(r, r) - phi * jnp.outer(q, q)

    should_skip = should_skip | ~jnp.all(jnp.isfinite(updated))
    return jnp.where(should_skip, hessian, updated)


@jaxtyped(typechecker=beartype)
def reset_off_diagonal(hessian: Matrix) -> Matrix:
    """Drop all off-diagonal entries of the Hessian approximation."""
    return jnp.diag(jnp.diag(hessian))


@jaxtyped(typechecker=beartype)
def gershgorin_regularization(hessian: Matrix) -> Scalar:
    """Diagonal shift making every Gershgorin row bound non-negative.

    For each row ``i`` the Gershgorin bound on the eigenvalues is

        H_ii - sum_{j != i} |H_ij|

    and the returned shift is ``max(0, -min_i bound_i)``.

    Args:
        hessian: Symmetric matrix.

    Returns:
        The (non-negative) regularization parameter.
    """
    diag = jnp.diag(hessian)
    off_diag_sum = jnp.sum(jnp.abs(hessian), axis=1) - jnp.abs(diag)
    row_bounds = diag - off_diag_sum
    return -jnp.min(row_bounds, initial=0.0)


@jaxtyped(typechecker=beartype)
def regularize(hessian: Matrix, reg: Scalar) -> Matrix:
    """Add ``reg`` to every diagonal entry."""
    n = hessian.shape[0]
    return hessian + reg * jnp.eye(n, dtype=hessian.dtype)


@jaxtyped(typechecker=beartype)
def quadratic_form(hessian: Matrix, v: Vector) -> Scalar:
    """Compute ``v^T H v``."""
    return jnp.dot(v, hessian @ v)


@jaxtyped(typechecker=beartype)
def compute_lagrangian_gradient(
    grad_f: Float[Array, " n"],
    jac_g: Float[Array, "ng n"],
    multipliers_g: Float[Array, " ng"],
    multipliers_x: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Compute the gradient of the Lagrangian function.

    The Lagrangian is:
        L(x, mu, mu_x) = f(x) + mu^T g(x) + mu_x^T x

    Its gradient with respect to x is:
        ∇_x L = ∇f(x) + J_g^T mu + mu_x

    Args:
        grad_f: Gradient of objective function ∇f(x).
        jac_g: Jacobian of the constraints (ng x n).
        multipliers_g: Multipliers of the constraints.
        multipliers_x: Multipliers of the simple bounds.

    Returns:
        Gradient of the Lagrangian ∇_x L.
    """
    grad_L = grad_f + multipliers_x

    if jac_g.shape[0] > 0:
        grad_L = grad_L + jac_g.T @ multipliers_g

    return grad_L
