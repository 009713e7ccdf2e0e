from typing import Callable, TypeVar

import jax
import jax.numpy as jnp

T = TypeVar("T")


def args_closure(
    fn: Callable[[jax.Array, T], jax.Array], args: T
) -> Callable[[jax.Array], jax.Array]:
    def wrapped(x: jax.Array) -> jax.Array:
        return fn(x, args)

    return wrapped


def all_finite(*arrays: jax.Array) -> bool:
    """Whether every entry of every array is finite (host-side check)."""
    return all(bool(jnp.all(jnp.isfinite(a))) for a in arrays)
