"""Composition: forward order, associativity and tangent shapes."""

from __future__ import annotations

import jax
import jax.numpy as jnp
import pytest

from difftree.autodiff import gradient
from difftree.chain import Chain, Sequential, compose
from difftree.fields import tangent_type
from difftree.nn import Linear, activation
from difftree.tangent import as_tangent, parameter_paths


def _layers(n: int, width: int = 3) -> list[Linear]:
    keys = jax.random.split(jax.random.PRNGKey(42), n)
    return [Linear.from_shape(width, width, key=k, dtype=jnp.float64) for k in keys]


def test_chain_applies_first_then_second() -> None:
    """Chain(a, b)(x) == b(a(x)), not the other way round."""
    a = Linear(jnp.array([[2.0]]), jnp.array([0.0]))
    b = Linear(jnp.array([[1.0]]), jnp.array([1.0]))
    x = jnp.array([[3.0]])
    assert jnp.allclose(Chain(a, b)(x), 7.0)
    assert jnp.allclose(Chain(b, a)(x), 8.0)


def test_compose_is_associative_in_output() -> None:
    """Left and right nesting give the same output."""
    a, b, c = _layers(3)
    x = jax.random.normal(jax.random.PRNGKey(0), (4, 3), dtype=jnp.float64)
    left = compose(compose(a, b), c)
    right = compose(a, compose(b, c))
    assert jnp.allclose(left(x), right(x), atol=1e-12)
    assert jnp.allclose(compose(a, b, c)(x), left(x), atol=1e-12)


def test_compose_left_folds() -> None:
    """compose(a, b, c) nests as Chain(Chain(a, b), c)."""
    a, b, c = _layers(3)
    m = compose(a, b, c)
    assert isinstance(m, Chain) and isinstance(m.first, Chain)
    assert m.first.first is a and m.first.second is b and m.second is c


def test_compose_single_and_empty() -> None:
    """One component is returned as-is; zero components are an error."""
    (a,) = _layers(1)
    assert compose(a) is a
    with pytest.raises(ValueError, match="at least one"):
        compose()


def test_chain_tangent_mirrors_components() -> None:
    """Tangent(Chain<A,B>) pairs first with A and second with B."""
    a, b = _layers(2)
    t = as_tangent(Chain(a, b))
    assert type(t) is tangent_type(Chain)
    assert type(t.first) is tangent_type(Linear)
    assert jnp.array_equal(t.first.weight, a.weight)
    assert jnp.array_equal(t.second.bias, b.bias)


def test_sequential_matches_compose_forward() -> None:
    """Sequential and a left-folded Chain compute the same function."""
    a, b, c = _layers(3)
    act = activation("tanh")
    x = jax.random.normal(jax.random.PRNGKey(1), (5, 3), dtype=jnp.float64)
    seq = Sequential(a, act, b, act, c)
    chain = compose(a, act, b, act, c)
    assert len(seq) == 5 and seq[2] is b
    assert jnp.allclose(seq(x), chain(x), atol=1e-12)


def test_sequential_gradient_is_index_aligned() -> None:
    """Gradient layers line up index for index with the components."""
    a, b = _layers(2)
    act = activation("relu")
    x = jax.random.normal(jax.random.PRNGKey(2), (4, 3), dtype=jnp.float64)
    seq = Sequential(a, act, b)
    g = gradient(seq, lambda m: jnp.sum(m(x)))

    assert isinstance(g.layers, tuple) and len(g.layers) == 3
    assert type(g.layers[0]) is tangent_type(Linear)
    assert type(g.layers[1]) is tangent_type(type(act))
    assert type(g.layers[2]) is tangent_type(Linear)

    # Same gradients through the nested shape
    gc = gradient(compose(a, act, b), lambda m: jnp.sum(m(x)))
    assert jnp.allclose(g.layers[0].weight, gc.first.first.weight, atol=1e-12)
    assert jnp.allclose(g.layers[2].bias, gc.second.bias, atol=1e-12)


def test_parameter_order_for_nested_chain() -> None:
    """Nested chains enumerate depth-first, first component first."""
    a, b, c = _layers(3)
    assert parameter_paths(compose(a, b, c)) == [
        "first.first.weight",
        "first.first.bias",
        "first.second.weight",
        "first.second.bias",
        "second.weight",
        "second.bias",
    ]
