"""Field correspondence between a value type and its tangent type.

Every differentiable module type `V` has a tangent type `Tangent(V)` that holds
exactly the differentiable fields of `V`, in the same order. This module owns
the per-type tables that pair the two up:

    list_fields(V)             -> declared dataclass fields of V
    tangent_type(V)            -> Tangent(V), explicit or derived
    differentiable_fields(V)   -> ((name, field in V, field in Tangent(V)), ...)

Rules:
1) **Computed once per type.** Tables are cached for the lifetime of the
   process, keyed by the class object. Type shape is static, so there is no
   invalidation.
2) **Deterministic order.** The table order is declaration order. Gradients
   are produced and consumed in this order; if it ever drifted, leaves would be
   paired with the wrong parameters and nothing would crash.
3) **Fail the build, never the step.** A tangent field that cannot be matched
   raises `TangentStructureError` and nothing is cached.

All caches share one re-entrant lock: building a correspondence derives the
tangent type, which lists fields, each re-acquiring the lock on the same thread.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import types as pytypes
from typing import Any

from difftree.types import FieldPair, TangentStructureError, TangentVector

logger = logging.getLogger(__name__)

_reflection_lock = threading.RLock()
_list_fields_cache: dict[type, tuple[dataclasses.Field, ...]] = {}
_tangent_type_cache: dict[type, type[TangentVector]] = {}
_differentiable_fields_cache: dict[type, tuple[FieldPair, ...]] = {}


def is_static_field(f: dataclasses.Field) -> bool:
    """Return True when a field is declared non-differentiable.

    A field is non-differentiable when declared with `eqx.field(static=True)`.

    :param dataclasses.Field f: Field to check.
    :return bool: True if the field carries no tangent.
    """
    return bool(f.metadata.get("static", False))


def list_fields(cls: type) -> tuple[dataclasses.Field, ...]:
    """List the declared fields of a dataclass type, in declaration order.

    :param type cls: Dataclass (or `eqx.Module`) type.
    :raises TangentStructureError: If `cls` is not a dataclass type.
    :return tuple[dataclasses.Field, ...]: Cached field tuple.
    """
    with _reflection_lock:
        cached = _list_fields_cache.get(cls)
        if cached is not None:
            return cached
        if not (isinstance(cls, type) and dataclasses.is_dataclass(cls)):
            raise TangentStructureError(f"{cls!r} is not a dataclass type; cannot list its fields.")
        out = tuple(dataclasses.fields(cls))
        _list_fields_cache[cls] = out
        return out


def _derive_tangent_type(cls: type) -> type[TangentVector]:
    """Build a `TangentVector` subclass with the differentiable fields of `cls`.

    :param type cls: Value type.
    :return type[TangentVector]: New tangent type.
    """
    diff = [f for f in list_fields(cls) if not is_static_field(f)]
    annotations = {f.name: Any for f in diff}

    def body(ns: dict[str, Any]) -> None:
        ns["__annotations__"] = annotations
        ns["__module__"] = cls.__module__
        ns["__qualname__"] = f"{cls.__qualname__}TangentVector"
        ns["__doc__"] = f"Tangent of {cls.__qualname__}: fields {', '.join(annotations) or '(none)'}."

    return pytypes.new_class(f"{cls.__name__}TangentVector", (TangentVector,), {}, body)


def tangent_type(cls: type) -> type[TangentVector]:
    """Return the tangent type associated with a value type.

    A class may declare its own tangent as a nested ``TangentVector`` class;
    otherwise one is derived from its non-static fields. A `TangentVector`
    subclass is its own tangent type.

    :param type cls: Value type.
    :raises TangentStructureError: If an explicit tangent is not a `TangentVector`.
    :return type[TangentVector]: Cached tangent type.
    """
    with _reflection_lock:
        cached = _tangent_type_cache.get(cls)
        if cached is not None:
            return cached
        list_fields(cls)
        explicit = vars(cls).get("TangentVector")
        if issubclass(cls, TangentVector):
            out = cls
        elif explicit is not None:
            if not (isinstance(explicit, type) and issubclass(explicit, TangentVector)):
                raise TangentStructureError(
                    f"{cls.__qualname__}.TangentVector must subclass difftree.TangentVector, "
                    f"got {explicit!r}"
                )
            out = explicit
        else:
            out = _derive_tangent_type(cls)
        _tangent_type_cache[cls] = out
        return out


def differentiable_fields(cls: type) -> tuple[FieldPair, ...]:
    """Compute the ordered field correspondence for a value type.

    Two-pointer merge: walk the value's fields in declaration order; whenever
    the next unmatched tangent field has the same name, pair them and advance
    both. Value fields that are skipped are the non-differentiable ones.

    :param type cls: Value type.
    :raises TangentStructureError: If a tangent field has no counterpart, or a
        static value field would be paired with a tangent field.
    :return tuple[FieldPair, ...]: Cached correspondence; the same object is
        returned on every call for the same type.
    """
    with _reflection_lock:
        cached = _differentiable_fields_cache.get(cls)
        if cached is not None:
            return cached

        tangent_cls = tangent_type(cls)
        tangent_fields = list_fields(tangent_cls)
        i = 0
        out: list[FieldPair] = []
        for f in list_fields(cls):
            if i >= len(tangent_fields):
                break
            if tangent_fields[i].name != f.name:
                continue
            if is_static_field(f):
                raise TangentStructureError(
                    f"{cls.__qualname__}.{f.name} is static but {tangent_cls.__qualname__} "
                    "declares a tangent slot for it."
                )
            out.append(FieldPair(f.name, f, tangent_fields[i]))
            i += 1

        if i < len(tangent_fields):
            missing = [tf.name for tf in tangent_fields[i:]]
            raise TangentStructureError(
                f"{tangent_cls.__qualname__} does not mirror {cls.__qualname__}: "
                f"no value field for tangent field(s) {missing} in declaration order."
            )

        result = tuple(out)
        _differentiable_fields_cache[cls] = result
        logger.debug(
            "Built field correspondence for %s: %s",
            cls.__qualname__,
            [p.name for p in result],
        )
        return result


correspondence = differentiable_fields
