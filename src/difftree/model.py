"""Demo model construction.

The only place that decides what the demo trainer differentiates. The rest of
the codebase talks in terms of:
- a differentiable value (`Chain` or `Sequential` of client layers)
- `mse_loss(model, batch) -> scalar`

The MLP is `depth` `Linear` layers with the configured activation between each
neighbouring pair (none after the last layer).
"""

from __future__ import annotations

from typing import Any

import jax
import jax.numpy as jnp

from difftree.chain import Sequential, compose
from difftree.config import Config, dtype_from_str
from difftree.nn import Linear, activation
from difftree.types import Batch


def layer_sizes(cfg: Config) -> list[int]:
    """Feature sizes at every layer boundary, input first.

    :param Config cfg: Configuration.
    :return list[int]: ``depth + 1`` sizes.
    """
    m = cfg.model
    return [m.in_features] + [m.hidden_features] * (m.depth - 1) + [m.out_features]


def build_model(cfg: Config, *, key: jax.Array) -> Any:
    """Build the demo MLP.

    :param Config cfg: Configuration.
    :param jax.Array key: PRNG key for initialization.
    :return Any: `Sequential` or nested `Chain` (see model.composition).
    """
    m = cfg.model
    dtype = dtype_from_str(m.param_dtype)
    sizes = layer_sizes(cfg)
    keys = jax.random.split(key, m.depth)

    components: list[Any] = []
    for i, (n_in, n_out) in enumerate(zip(sizes[:-1], sizes[1:], strict=True)):
        if i > 0:
            components.append(activation(m.activation))
        components.append(Linear.from_shape(n_in, n_out, key=keys[i], dtype=dtype))

    if m.composition == "chain":
        return compose(*components)
    return Sequential(*components)


def mse_loss(model: Any, batch: Batch) -> jax.Array:
    """Mean squared error of ``model(batch.inputs)`` against ``batch.targets``.

    :param Any model: Callable differentiable model.
    :param Batch batch: Regression batch.
    :return jax.Array: Scalar loss.
    """
    pred = model(batch.inputs)
    return jnp.mean((pred - batch.targets) ** 2)
