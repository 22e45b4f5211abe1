"""Composition of differentiable components.

Two representations, both differentiable values in their own right:

- `Chain(first, second)`: binary composition, ``second(first(x))``. Its
  tangent is ``ChainTangentVector(first=Tangent(A), second=Tangent(B))``.
  `compose(a, b, c)` left-folds into ``Chain(Chain(a, b), c)``, so its tangent
  nests the same way: ``grad.first.first`` is the gradient of `a`.
- `Sequential(*layers)`: flat ordered sequence. Its tangent holds a tuple
  ``layers`` of the same length, index-for-index with the components.

Both give the same forward output for the same components. Pick one shape and
read gradients with that shape; they are not interchangeable.

Input/output compatibility between neighbours is the caller's contract; a
mismatch surfaces as whatever error the first incompatible operation raises.
"""

from __future__ import annotations

from typing import Any

from difftree.tangent import Differentiable


class Chain(Differentiable):
    """Two components applied one after the other."""

    first: Any
    second: Any

    def __call__(self, x: Any) -> Any:
        return self.second(self.first(x))


class Sequential(Differentiable):
    """An ordered sequence of components applied left to right."""

    layers: tuple[Any, ...]

    def __init__(self, *layers: Any):
        """Initialize from components in application order.

        :param layers: Callable differentiable components.
        """
        self.layers = tuple(layers)

    def __call__(self, x: Any) -> Any:
        for layer in self.layers:
            x = layer(x)
        return x

    def __len__(self) -> int:
        return len(self.layers)

    def __getitem__(self, i: int) -> Any:
        return self.layers[i]


def compose(*components: Any) -> Any:
    """Compose components into one differentiable unit (left fold).

    :param components: Components in application order.
    :raises ValueError: If no component is given.
    :return Any: The single component, or a nested `Chain`.
    """
    if not components:
        raise ValueError("compose() needs at least one component")
    out = components[0]
    for nxt in components[1:]:
        out = Chain(out, nxt)
    return out
