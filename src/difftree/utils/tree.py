"""Pytree helper functions.

The small utilities that get rewritten in every JAX repo:
- parameter counts
- tree equality / closeness checks
- per-parameter summaries keyed by parameter path

Counts and summaries go through `named_parameters`, so static fields never
show up as parameters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import jax
import jax.numpy as jnp

from difftree.tangent import named_parameters


def param_count(value: Any) -> int:
    """Count scalar parameters of a differentiable value.

    :param Any value: Model or tangent.
    :return int: Total number of scalar parameters.
    """
    return sum(int(jnp.size(x)) for _, x in named_parameters(value))


def _leaves_match(a: Any, b: Any, compare) -> bool:
    la, ta = jax.tree_util.tree_flatten(a)
    lb, tb = jax.tree_util.tree_flatten(b)
    if ta != tb:
        return False
    for xa, xb in zip(la, lb, strict=True):
        if hasattr(xa, "shape") and hasattr(xb, "shape"):
            if xa.shape != xb.shape or xa.dtype != xb.dtype:
                return False
            if not compare(xa, xb):
                return False
        elif xa != xb:
            return False
    return True


def tree_allclose(a: Any, b: Any, *, rtol: float = 1e-6, atol: float = 1e-6) -> bool:
    """Tree-wise allclose for arrays.

    Trees must have the same structure (including tangent types).

    :param Any a: First pytree.
    :param Any b: Second pytree.
    :param float rtol: Relative tolerance.
    :param float atol: Absolute tolerance.
    :return bool: True if all arrays are element-wise close.
    """
    return _leaves_match(a, b, lambda x, y: bool(jnp.allclose(x, y, rtol=rtol, atol=atol)))


def tree_equal(a: Any, b: Any) -> bool:
    """Tree-wise exact equality for arrays."""
    return _leaves_match(a, b, lambda x, y: bool(jnp.array_equal(x, y)))


@dataclass(frozen=True)
class ParameterStats:
    """Summary of one parameter tensor."""

    path: str
    shape: tuple[int, ...]
    dtype: str
    mean: float
    std: float
    min: float
    max: float


def parameter_stats(value: Any, *, max_tensors: int | None = None) -> list[ParameterStats]:
    """Compute simple stats for each parameter, in traversal order.

    Catches obviously broken initialization (all-zeros, NaNs, infs) early.

    :param Any value: Model or tangent.
    :param max_tensors: Optional cap on the number of tensors summarized.
    :return list[ParameterStats]: One entry per parameter.
    """
    out: list[ParameterStats] = []
    for path, x in named_parameters(value):
        if max_tensors is not None and len(out) >= max_tensors:
            break
        x = jnp.asarray(x)
        xf = x.astype(jnp.float32)
        out.append(
            ParameterStats(
                path=path,
                shape=tuple(x.shape),
                dtype=str(x.dtype),
                mean=float(jnp.mean(xf)),
                std=float(jnp.std(xf)),
                min=float(jnp.min(xf)),
                max=float(jnp.max(xf)),
            )
        )
    return out
