"""Central finite-difference derivatives.

:class:`FiniteDifferenceEvaluator` is a drop-in replacement for
:class:`~sqp_jax.evaluator.NLPEvaluator` for problems whose functions cannot
be differentiated by JAX (or when exact derivatives should be avoided). Only
``f`` and ``g`` are ever called; every derivative is a central difference

    dF(x)[v] ≈ (F(x + h/2 v) - F(x - h/2 v)) / h

taken along all unit directions at once with :func:`jax.vmap`.
"""

from collections.abc import Callable

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from sqp_jax.evaluator import NLPEvaluator
from sqp_jax.types import Matrix, Scalar, Vector

SCHEMES = ("central",)


def central_difference(
    fn: Callable[[Vector], Array],
    x: Vector,
    stepsize: float,
) -> Array:
    """Central differences of ``fn`` along every unit direction.

    Args:
        fn: Function of the point ``x``.
        x: Point at which to differentiate, shape ``(n,)``.
        stepsize: Perturbation size ``h``.

    Returns:
        Array of shape ``(n, *fn(x).shape)`` whose ``i``-th entry
        approximates the derivative of ``fn`` along ``e_i``.
    """
    seeds = jnp.eye(x.shape[0], dtype=x.dtype)

    def directional(v):
        return (fn(x + 0.5 * stepsize * v) - fn(x - 0.5 * stepsize * v)) / stepsize

    return jax.vmap(directional)(seeds)


class FiniteDifferenceEvaluator(NLPEvaluator):
    """NLP evaluator using central finite differences for all derivatives.

    The Hessian of the Lagrangian is the central difference, with
    ``second_order_stepsize``, of the finite-difference Lagrangian gradient,
    symmetrized.

    Attributes:
        stepsize: Perturbation size for first-order derivatives.
        second_order_stepsize: Perturbation size for the Hessian.
        scheme: Differencing scheme (only ``"central"``).
    """

    stepsize: float = eqx.field(static=True, default=1e-8)
    second_order_stepsize: float = eqx.field(static=True, default=1e-3)
    scheme: str = eqx.field(static=True, default="central")

    def __check_init__(self):
        if self.scheme not in SCHEMES:
            raise ValueError(f"Unknown differencing scheme {self.scheme!r}")
        if self.stepsize <= 0 or self.second_order_stepsize <= 0:
            raise ValueError("Finite-difference step sizes must be positive")

    @eqx.filter_jit
    def _objective_gradient(self, x: Vector) -> tuple[Scalar, Vector]:
        f_val = self._objective(x)
        grad = central_difference(
            lambda y: self.objective_fn(y, self.args), x, self.stepsize
        )
        return f_val, grad

    @eqx.filter_jit
    def _constraint_jacobian(
        self, x: Vector
    ) -> tuple[Float[Array, " ng"], Float[Array, "ng n"]]:
        n = x.shape[0]
        if not self.has_constraints:
            return jnp.zeros((0,), dtype=x.dtype), jnp.zeros((0, n), dtype=x.dtype)
        g_val = self._constraints(x)
        # central_difference stacks directions first: (n, ng)
        jac_t = central_difference(
            lambda y: self.constraint_fn(y, self.args),  # type: ignore[misc]
            x,
            self.stepsize,
        )
        return g_val, jac_t.T

    @eqx.filter_jit
    def _lagrangian_hessian(
        self, x: Vector, mu: Float[Array, " ng"], sigma: Scalar
    ) -> Matrix:
        def lagrangian_gradient(y: Vector) -> Vector:
            return central_difference(
                lambda z: self._lagrangian(z, mu, sigma), y, self.stepsize
            )

        hess = central_difference(lagrangian_gradient, x, self.second_order_stepsize)
        return 0.5 * (hess + hess.T)
