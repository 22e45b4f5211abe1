"""Minimal client layers.

These are *clients* of the tangent machinery, nothing more: a layer is a
`Differentiable` with some array fields and some static configuration. They
exist so the demo trainer and the tests have something real to differentiate.
"""

from __future__ import annotations

import math
from collections.abc import Callable

import equinox as eqx
import jax
import jax.numpy as jnp

from difftree.tangent import Differentiable


class Linear(Differentiable):
    """Affine map ``x @ weight + bias``.

    Contract:
        weight: [in_features, out_features]
        bias:   [out_features]
        __call__(x: [..., in_features]) -> [..., out_features]
    """

    weight: jax.Array
    bias: jax.Array
    in_features: int = eqx.field(static=True)
    out_features: int = eqx.field(static=True)

    def __init__(self, weight: jax.Array, bias: jax.Array):
        """Initialize from explicit arrays.

        :param jax.Array weight: Weight matrix of shape [in, out].
        :param jax.Array bias: Bias vector of shape [out].
        :raises ValueError: If the shapes do not agree.
        """
        weight = jnp.asarray(weight)
        bias = jnp.asarray(bias)
        if weight.ndim != 2:
            raise ValueError(f"Linear weight must be 2D [in, out], got shape {weight.shape}")
        if bias.shape != (weight.shape[1],):
            raise ValueError(
                f"Linear bias shape {bias.shape} does not match out_features {weight.shape[1]}"
            )
        self.weight = weight
        self.bias = bias
        self.in_features = int(weight.shape[0])
        self.out_features = int(weight.shape[1])

    @classmethod
    def from_shape(
        cls,
        in_features: int,
        out_features: int,
        *,
        key: jax.Array,
        dtype: jnp.dtype = jnp.float32,
    ) -> Linear:
        """Uniform init in ``[-1/sqrt(in), 1/sqrt(in)]``, the usual fan-in bound.

        :param int in_features: Input size.
        :param int out_features: Output size.
        :param jax.Array key: PRNG key.
        :param dtype: Parameter dtype.
        :return Linear: Freshly initialized layer.
        """
        wkey, bkey = jax.random.split(key)
        lim = 1.0 / math.sqrt(in_features)
        weight = jax.random.uniform(
            wkey, (in_features, out_features), dtype=dtype, minval=-lim, maxval=lim
        )
        bias = jax.random.uniform(bkey, (out_features,), dtype=dtype, minval=-lim, maxval=lim)
        return cls(weight, bias)

    def __call__(self, x: jax.Array) -> jax.Array:
        return x @ self.weight + self.bias


class Activation(Differentiable):
    """Elementwise function with no parameters (empty tangent)."""

    fn: Callable[[jax.Array], jax.Array] = eqx.field(static=True)

    def __call__(self, x: jax.Array) -> jax.Array:
        return self.fn(x)


_ACTIVATIONS: dict[str, Callable[[jax.Array], jax.Array]] = {
    "relu": jax.nn.relu,
    "tanh": jnp.tanh,
    "gelu": jax.nn.gelu,
    "identity": lambda x: x,
}


def activation(name: str) -> Activation:
    """Look up an activation by name.

    :param str name: One of "relu", "tanh", "gelu", "identity".
    :raises ValueError: If the name is unknown.
    :return Activation: Activation layer.
    """
    if name not in _ACTIVATIONS:
        raise ValueError(f"Unknown activation {name!r}. Expected one of {sorted(_ACTIVATIONS)}")
    return Activation(_ACTIVATIONS[name])
