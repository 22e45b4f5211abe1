"""difftree: differentiable parameter trees on JAX/Equinox.

This package is intentionally small.

A model is an `eqx.Module`. Its gradient is a value of its *tangent type*, a
`TangentVector` with one slot per differentiable field, in declaration order.
Everything else is built on that pairing:

- fields:    per-type field correspondence (cached, thread-safe)
- tangent:   vector view, write-back and lock-step walks
- chain:     `compose` / `Sequential`
- autodiff:  `value_and_gradient` via `jax.vjp`
- optim:     SGD / momentum / Adam / AdamW over any differentiable value
"""

from __future__ import annotations

from difftree._version import __version__
from difftree.autodiff import gradient, value_and_gradient, value_with_pullback
from difftree.chain import Chain, Sequential, compose
from difftree.fields import differentiable_fields, list_fields, tangent_type
from difftree.optim import SGD, Adam, AdamW, OptaxOptimizer, Optimizer
from difftree.tangent import (
    Differentiable,
    as_tangent,
    fill_tangent,
    move,
    parameter_paths,
    with_tangent,
    zero_tangent,
)
from difftree.types import TangentMismatchError, TangentStructureError, TangentVector

__all__ = [
    "SGD",
    "Adam",
    "AdamW",
    "Chain",
    "Differentiable",
    "OptaxOptimizer",
    "Optimizer",
    "Sequential",
    "TangentMismatchError",
    "TangentStructureError",
    "TangentVector",
    "__version__",
    "as_tangent",
    "compose",
    "differentiable_fields",
    "fill_tangent",
    "gradient",
    "list_fields",
    "move",
    "parameter_paths",
    "tangent_type",
    "value_and_gradient",
    "value_with_pullback",
    "with_tangent",
    "zero_tangent",
]
