"""Euclidean tangent derivation.

Reads a differentiable value as a tangent vector ("vector view"), writes a
tangent vector back into a value, and walks a value together with any number of
tangent-shaped trees in lock-step. The optimizers are built on `walk`.

What is differentiable:
- leaves: floating or complex `jax.Array` and `np.ndarray` values, and float
  and complex scalars. A leaf is its own tangent. Integer and bool arrays are
  not leaves.
- `None`: an empty subtree; its tangent is `None`.
- tuples and lists: their tangent is a tuple/list of the same length.
- any `eqx.Module`: its tangent is `tangent_type(type(value))`, filled field by
  field through `differentiable_fields`.

Anything else found in a non-static field is a `TangentStructureError`: the
author forgot `eqx.field(static=True)` on a config value such as an int.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np

from difftree.fields import differentiable_fields, list_fields, tangent_type
from difftree.types import PyTree, TangentMismatchError, TangentStructureError, TangentVector


def is_leaf(x: Any) -> bool:
    """Return True for values that are their own tangent type."""
    if isinstance(x, (jax.Array, np.ndarray, np.generic)):
        return bool(jnp.issubdtype(x.dtype, jnp.inexact))
    return isinstance(x, (float, complex))


def cast_like(x: Any, ref: Any) -> Any:
    """Cast `x` to the dtype of the parameter leaf `ref`, if it has one."""
    dtype = getattr(ref, "dtype", None)
    return x if dtype is None else jnp.asarray(x, dtype=dtype)


def _join(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


def _assemble(cls: type, values: dict[str, Any]) -> Any:
    # Same construction path equinox uses when unflattening a module.
    obj = object.__new__(cls)
    for name, v in values.items():
        object.__setattr__(obj, name, v)
    return obj


def _replace(obj: Any, updates: dict[str, Any]) -> Any:
    values = {f.name: getattr(obj, f.name) for f in list_fields(type(obj)) if hasattr(obj, f.name)}
    values.update(updates)
    return _assemble(type(obj), values)


def _rebuild_sequence(like: Sequence[Any], items: Sequence[Any]) -> Any:
    return list(items) if isinstance(like, list) else tuple(items)


def _not_differentiable(path: str, value: Any) -> TangentStructureError:
    where = path or "<root>"
    kind = type(value).__name__
    if hasattr(value, "dtype"):
        kind = f"{kind} with dtype {value.dtype}"
    return TangentStructureError(
        f"{where}: value of type {kind} is not differentiable. "
        "Declare non-differentiable fields with eqx.field(static=True)."
    )


def _view(value: Any, path: str) -> Any:
    if value is None or is_leaf(value):
        return value
    if isinstance(value, (tuple, list)):
        return _rebuild_sequence(value, [_view(v, f"{path}[{i}]") for i, v in enumerate(value)])
    if isinstance(value, eqx.Module):
        return _fill(value, _assemble(tangent_type(type(value)), {}), path)
    raise _not_differentiable(path, value)


def _fill(value: eqx.Module, out: TangentVector, path: str) -> TangentVector:
    updates = {
        pair.tangent_field.name: _view(getattr(value, pair.name), _join(path, pair.name))
        for pair in differentiable_fields(type(value))
    }
    return _replace(out, updates)


def as_tangent(value: Any) -> Any:
    """Read a differentiable value as its tangent vector.

    Leaves are returned as-is (aliasing is safe, arrays are immutable).

    :param Any value: Differentiable value.
    :raises TangentStructureError: If a non-static field is not differentiable.
    :return Any: Tangent of the value's tangent type.
    """
    return _view(value, "")


def fill_tangent(value: eqx.Module, out: TangentVector) -> TangentVector:
    """Copy the weights of `value` into the slots of `out`.

    Tangents are immutable pytrees, so the filled tangent is returned.

    :param eqx.Module value: Differentiable module.
    :param TangentVector out: Tangent of `value`'s tangent type.
    :raises TangentMismatchError: If `out` has the wrong tangent type.
    :return TangentVector: `out` with every slot overwritten from `value`.
    """
    expected = tangent_type(type(value))
    if type(out) is not expected:
        raise TangentMismatchError(
            f"Cannot fill {type(out).__qualname__} from {type(value).__qualname__}; "
            f"expected {expected.__qualname__}."
        )
    return _fill(value, out, "")


def zero_tangent(value: Any) -> Any:
    """Return a tangent shaped like `value` with all-zero leaves."""
    return jax.tree_util.tree_map(jnp.zeros_like, as_tangent(value))


def _check_leaf(path: str, value: Any, other: Any) -> None:
    if other is None or not is_leaf(other):
        raise TangentMismatchError(
            f"{path or '<root>'}: expected a leaf tangent, got {type(other).__name__}"
        )
    if jnp.shape(value) != jnp.shape(other):
        raise TangentMismatchError(
            f"{path or '<root>'}: shape {jnp.shape(other)} does not match parameter "
            f"shape {jnp.shape(value)}"
        )


def _check_sequence(path: str, value: Sequence[Any], other: Any) -> None:
    if not isinstance(other, (tuple, list)) or len(other) != len(value):
        got = len(other) if isinstance(other, (tuple, list)) else type(other).__name__
        raise TangentMismatchError(
            f"{path or '<root>'}: expected a sequence tangent of length {len(value)}, got {got}"
        )


def _check_module(path: str, value: eqx.Module, other: Any) -> None:
    expected = tangent_type(type(value))
    if type(other) is not expected:
        raise TangentMismatchError(
            f"{path or '<root>'}: expected {expected.__qualname__}, got {type(other).__qualname__}"
        )


def walk(
    fn: Callable[..., tuple[Any, ...]],
    value: Any,
    tangent: Any,
    *slots: Any,
    path: str = "",
) -> tuple[Any, tuple[Any, ...]]:
    """Walk a value, a tangent and tangent-shaped slot trees in lock-step.

    At every differentiable leaf, calls
    ``fn(param, tangent_leaf, *slot_leaves) -> (new_param, *new_slot_leaves)``.
    Traversal order is the field correspondence order, the same order in which
    `as_tangent` and the pullback produce tangents.

    :param fn: Leaf update rule.
    :param Any value: Differentiable value (model).
    :param Any tangent: Tangent of `value` (e.g. a gradient).
    :param slots: Extra tangent-shaped trees (e.g. optimizer moments).
    :param str path: Dotted path prefix used in error messages.
    :raises TangentMismatchError: If any tree disagrees with `value`'s shape.
    :return tuple: (new_value, new_slots) with `new_slots` in input order.
    """
    if value is None:
        if tangent is not None or any(s is not None for s in slots):
            raise TangentMismatchError(f"{path or '<root>'}: expected an empty (None) tangent")
        return None, tuple(None for _ in slots)

    if is_leaf(value):
        _check_leaf(path, value, tangent)
        for s in slots:
            _check_leaf(path, value, s)
        out = fn(value, tangent, *slots)
        return out[0], tuple(out[1:])

    if isinstance(value, (tuple, list)):
        _check_sequence(path, value, tangent)
        for s in slots:
            _check_sequence(path, value, s)
        results = [
            walk(fn, v, tangent[i], *(s[i] for s in slots), path=f"{path}[{i}]")
            for i, v in enumerate(value)
        ]
        new_value = _rebuild_sequence(value, [r[0] for r in results])
        new_slots = tuple(
            _rebuild_sequence(s, [r[1][k] for r in results]) for k, s in enumerate(slots)
        )
        return new_value, new_slots

    if isinstance(value, eqx.Module):
        _check_module(path, value, tangent)
        for s in slots:
            _check_module(path, value, s)
        updates: dict[str, Any] = {}
        slot_updates: list[dict[str, Any]] = [{} for _ in slots]
        for pair in differentiable_fields(type(value)):
            tname = pair.tangent_field.name
            new_sub, new_sub_slots = walk(
                fn,
                getattr(value, pair.name),
                getattr(tangent, tname),
                *(getattr(s, tname) for s in slots),
                path=_join(path, pair.name),
            )
            updates[pair.name] = new_sub
            for k, x in enumerate(new_sub_slots):
                slot_updates[k][tname] = x
        new_slots = tuple(_replace(s, su) for s, su in zip(slots, slot_updates, strict=True))
        return _replace(value, updates), new_slots

    raise _not_differentiable(path, value)


def with_tangent(value: Any, tangent: Any) -> Any:
    """Write tangent leaves back into the differentiable slots of `value`.

    Static fields are kept. Inverse of `as_tangent`.
    """
    new_value, _ = walk(lambda _p, t: (t,), value, tangent)
    return new_value


def move(value: Any, offset: Any) -> Any:
    """Return `value` moved along `offset` (leaf-wise ``p + d``, keeping dtypes)."""
    new_value, _ = walk(lambda p, d: (cast_like(p + d, p),), value, offset)
    return new_value


def check_tangent(value: Any, tangent: Any) -> None:
    """Validate that `tangent` structurally matches `value`.

    :raises TangentMismatchError: On any type, length or shape disagreement.
    """
    walk(lambda p, _t: (p,), value, tangent)


def named_parameters(value: Any, prefix: str = "") -> Iterator[tuple[str, Any]]:
    """Yield ``(path, leaf)`` for every differentiable leaf, in traversal order.

    Paths look like ``first.weight`` or ``layers[1].bias``.
    """
    if value is None:
        return
    if is_leaf(value):
        yield prefix, value
    elif isinstance(value, (tuple, list)):
        for i, v in enumerate(value):
            yield from named_parameters(v, f"{prefix}[{i}]")
    elif isinstance(value, eqx.Module):
        for pair in differentiable_fields(type(value)):
            yield from named_parameters(getattr(value, pair.name), _join(prefix, pair.name))
    else:
        raise _not_differentiable(prefix, value)


def parameter_paths(value: Any) -> list[str]:
    return [path for path, _ in named_parameters(value)]


def flattened_parameters(value: Any) -> list[Any]:
    return [leaf for _, leaf in named_parameters(value)]


class Differentiable(eqx.Module):
    """Convenience base for differentiable modules.

    Subclasses declare fields like any `eqx.Module`. Fields declared with
    ``eqx.field(static=True)`` are configuration and carry no tangent.
    A subclass may declare its tangent explicitly as a nested class named
    ``TangentVector``; otherwise one is derived on first use.
    """

    @classmethod
    def tangent_type(cls) -> type[TangentVector]:
        return tangent_type(cls)

    @classmethod
    def differentiable_fields(cls) -> tuple:
        return differentiable_fields(cls)

    def as_tangent(self) -> TangentVector:
        return as_tangent(self)

    def zero_tangent(self) -> TangentVector:
        return zero_tangent(self)

    def with_tangent(self, tangent: TangentVector) -> PyTree:
        return with_tangent(self, tangent)

    def move(self, offset: TangentVector) -> PyTree:
        return move(self, offset)

    def parameter_paths(self) -> list[str]:
        return parameter_paths(self)
