"""Forward-and-pullback over differentiable values.

`jax.vjp` does the reverse-mode work. We only choose *what* it differentiates
with respect to: the tangent view of the value, not the value itself. That way
static fields never become JAX inputs, and the gradient comes back as
`Tangent(V)`, the same type the optimizers consume.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import jax
import jax.numpy as jnp

from difftree.tangent import as_tangent, with_tangent


def value_with_pullback(
    value: Any, fn: Callable[[Any], jax.Array]
) -> tuple[jax.Array, Callable[[Any], Any]]:
    """Evaluate `fn(value)` and return its pullback.

    :param Any value: Differentiable value (e.g. a model).
    :param fn: Computation producing an array from `value`.
    :return tuple: (output, pullback). ``pullback(seed)`` maps an output-shaped
        seed to a tangent of `value`. Scalars such as ``1.0`` are broadcast and
        cast to the output dtype.
    """

    def from_tangent(t: Any) -> jax.Array:
        return fn(with_tangent(value, t))

    out, vjp_fn = jax.vjp(from_tangent, as_tangent(value))

    def pullback(seed: Any) -> Any:
        seed = jnp.broadcast_to(jnp.asarray(seed, dtype=jnp.result_type(out)), jnp.shape(out))
        (grad,) = vjp_fn(seed)
        return grad

    return out, pullback


def value_and_gradient(value: Any, fn: Callable[[Any], jax.Array]) -> tuple[jax.Array, Any]:
    """Evaluate a scalar `fn(value)` and its gradient with respect to `value`.

    :raises ValueError: If `fn` does not return a scalar.
    :return tuple: (scalar output, gradient tangent).
    """
    out, pullback = value_with_pullback(value, fn)
    if jnp.ndim(out) != 0:
        raise ValueError(
            f"value_and_gradient needs a scalar output, got shape {jnp.shape(out)}; "
            "use value_with_pullback with an explicit seed instead."
        )
    return out, pullback(1.0)


def gradient(value: Any, fn: Callable[[Any], jax.Array]) -> Any:
    """Gradient of a scalar `fn(value)` with respect to `value`."""
    _, grad = value_and_gradient(value, fn)
    return grad
