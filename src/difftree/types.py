"""Core types shared by every subsystem.

Keep this file small: it defines the **runtime contracts** of difftree.

- `TangentVector` is the base of every aggregate tangent (gradient) type.
  It is an `eqx.Module`, so it is a JAX pytree, and it is additive.
- `FieldPair` is one row of a type's field correspondence table.
- `Batch` is what the demo data pipeline yields and the loss consumes.

Two error classes, both programming defects rather than recoverable states:

- `TangentStructureError`: a tangent type does not mirror its value type.
- `TangentMismatchError`: a tangent value does not match a model value.
"""

from __future__ import annotations

import dataclasses
import operator
from typing import Any, NamedTuple

import equinox as eqx
import jax
import jax.numpy as jnp
import optax

PyTree = Any


class TangentStructureError(TypeError):
    """A value type and its tangent type do not correspond field-for-field."""


class TangentMismatchError(ValueError):
    """A tangent value's tree shape disagrees with the value it is paired with."""


class FieldPair(NamedTuple):
    """One differentiable field: its name and its slot in value and tangent."""

    name: str
    value_field: dataclasses.Field
    tangent_field: dataclasses.Field


class TangentVector(eqx.Module):
    """Base class for tangent types.

    Subclasses only declare fields. Arithmetic is leaf-wise, so two tangents
    can only be combined when they have the same tree structure; anything else
    raises inside `jax.tree_util.tree_map`.
    """

    def __add__(self, other: TangentVector) -> TangentVector:
        return jax.tree_util.tree_map(operator.add, self, other)

    def __sub__(self, other: TangentVector) -> TangentVector:
        return jax.tree_util.tree_map(operator.sub, self, other)

    def __neg__(self) -> TangentVector:
        return jax.tree_util.tree_map(operator.neg, self)

    def __mul__(self, scalar: Any) -> TangentVector:
        return jax.tree_util.tree_map(lambda x: x * scalar, self)

    def __rmul__(self, scalar: Any) -> TangentVector:
        return jax.tree_util.tree_map(lambda x: scalar * x, self)

    def __truediv__(self, scalar: Any) -> TangentVector:
        return jax.tree_util.tree_map(lambda x: x / scalar, self)

    def zeros_like(self) -> TangentVector:
        """Return a tangent of the same shape with every leaf set to zero."""
        return jax.tree_util.tree_map(jnp.zeros_like, self)

    def norm(self) -> jax.Array:
        """Global L2 norm over all leaves.

        :return jax.Array: Scalar norm.
        """
        return optax.global_norm(self)


class Batch(eqx.Module):
    """A regression batch: inputs [B, in_features], targets [B, out_features]."""

    inputs: jax.Array
    targets: jax.Array
