"""Optimizer update protocol, checked against Optax reference transformations."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import optax
import pytest

from difftree.chain import Sequential, compose
from difftree.config import Config, OptimConfig, TrainConfig
from difftree.fields import tangent_type
from difftree.nn import Linear, activation
from difftree.optim import (
    SGD,
    Adam,
    AdamW,
    OptaxOptimizer,
    build_optimizer,
    build_schedule,
    clip_by_global_norm,
)
from difftree.tangent import as_tangent, flattened_parameters, zero_tangent
from difftree.types import TangentMismatchError
from difftree.utils.tree import tree_allclose


def _model(seed: int = 0) -> Any:
    k1, k2 = jax.random.split(jax.random.PRNGKey(seed))
    return compose(
        Linear.from_shape(3, 4, key=k1, dtype=jnp.float64),
        activation("tanh"),
        Linear.from_shape(4, 2, key=k2, dtype=jnp.float64),
    )


def _random_grads(model: Any, n: int, seed: int = 1) -> list[Any]:
    """Gradients shaped like the model, drawn from a normal distribution."""
    t = as_tangent(model)
    leaves, treedef = jax.tree_util.tree_flatten(t)
    out = []
    key = jax.random.PRNGKey(seed)
    for _ in range(n):
        keys = jax.random.split(key, len(leaves) + 1)
        key = keys[0]
        new = [jax.random.normal(k, x.shape, dtype=x.dtype) for k, x in zip(keys[1:], leaves, strict=True)]
        out.append(jax.tree_util.tree_unflatten(treedef, new))
    return out


def _run_ours(opt: Any, model: Any, grads: list[Any]) -> Any:
    for g in grads:
        model = opt.update(model, g)
    return model


def _run_optax(tx: optax.GradientTransformation, model: Any, grads: list[Any]) -> Any:
    params = as_tangent(model)
    state = tx.init(params)
    for g in grads:
        updates, state = tx.update(g, state, params)
        params = optax.apply_updates(params, updates)
    return params


@pytest.mark.parametrize(
    "ours,reference",
    [
        (lambda: SGD(0.1), lambda: optax.sgd(0.1)),
        (lambda: SGD(0.1, momentum=0.9), lambda: optax.sgd(0.1, momentum=0.9)),
        (
            lambda: SGD(0.1, momentum=0.9, nesterov=True),
            lambda: optax.sgd(0.1, momentum=0.9, nesterov=True),
        ),
        (lambda: Adam(1e-2), lambda: optax.adam(1e-2)),
        (lambda: Adam(1e-2, b1=0.8, b2=0.99, eps=1e-6), lambda: optax.adam(1e-2, b1=0.8, b2=0.99, eps=1e-6)),
        (lambda: AdamW(1e-2, weight_decay=0.1), lambda: optax.adamw(1e-2, weight_decay=0.1)),
        (
            lambda: Adam(1e-2, weight_decay=0.1),
            lambda: optax.chain(optax.add_decayed_weights(0.1), optax.adam(1e-2)),
        ),
    ],
    ids=["sgd", "momentum", "nesterov", "adam", "adam-betas", "adamw", "adam-l2"],
)
def test_matches_optax_reference(ours, reference) -> None:
    """Five steps of each rule agree with the equivalent Optax chain."""
    model = _model()
    grads = _random_grads(model, 5)
    got = as_tangent(_run_ours(ours(), model, grads))
    want = _run_optax(reference(), model, grads)
    assert tree_allclose(got, want, rtol=1e-10, atol=1e-12)


def test_schedule_sees_zero_based_step() -> None:
    """A schedule is evaluated at the number of completed steps: 0, 1, 2, 3."""
    schedule = optax.linear_schedule(0.1, 0.0, transition_steps=4)
    model = _model()
    grads = _random_grads(model, 4)
    got = as_tangent(_run_ours(SGD(schedule), model, grads))
    want = as_tangent(model)
    for lr, g in zip([0.1, 0.075, 0.05, 0.025], grads, strict=True):
        want = jax.tree_util.tree_map(lambda p, d, lr=lr: p - lr * d, want, g)
    assert tree_allclose(got, want, rtol=1e-8, atol=1e-12)


@pytest.mark.parametrize(
    "make",
    [lambda: SGD(0.1), lambda: SGD(0.1, momentum=0.9), lambda: Adam(1e-2), lambda: AdamW(1e-2, weight_decay=0.0)],
    ids=["sgd", "momentum", "adam", "adamw"],
)
def test_zero_gradient_leaves_model_unchanged(make) -> None:
    """With no weight decay, a zero gradient is a fixed point."""
    model = _model()
    opt = make()
    updated = opt.update(model, zero_tangent(model))
    assert tree_allclose(as_tangent(updated), as_tangent(model), rtol=0, atol=0)
    assert opt.step == 1


def test_state_is_allocated_lazily() -> None:
    """No state before the first update; tangent-shaped slots afterwards."""
    model = _model()
    opt = Adam(1e-2)
    assert opt.state is None and opt.step == 0

    opt.update(model, zero_tangent(model))
    assert isinstance(opt.state, tuple) and len(opt.state) == 2
    for slot in opt.state:
        assert type(slot) is type(as_tangent(model))

    first_state = opt.state
    opt.update(model, zero_tangent(model))
    assert opt.step == 2
    assert type(opt.state[0]) is type(first_state[0])


def test_plain_sgd_keeps_no_slots() -> None:
    """Plain SGD needs no per-parameter state."""
    model = _model()
    opt = SGD(0.1)
    opt.update(model, zero_tangent(model))
    assert opt.state == ()


def test_one_step_per_update_call() -> None:
    """Each update advances the counter by exactly one."""
    model = _model()
    opt = SGD(0.1, momentum=0.5)
    for i, g in enumerate(_random_grads(model, 3), start=1):
        model = opt.update(model, g)
        assert opt.step == i


def test_mismatched_gradient_is_fatal_and_leaves_state_untouched() -> None:
    """A gradient for another model shape raises before any state is built."""
    model = _model()
    other = Sequential(Linear.from_shape(3, 4, key=jax.random.PRNGKey(3), dtype=jnp.float64))
    opt = Adam(1e-2)
    with pytest.raises(TangentMismatchError):
        opt.update(model, as_tangent(other))
    assert opt.state is None and opt.step == 0


def test_wrong_leaf_shape_is_fatal_mid_training() -> None:
    """A shape mismatch after state exists also raises and does not step."""
    model = _model()
    opt = SGD(0.1, momentum=0.9)
    model = opt.update(model, zero_tangent(model))
    g = zero_tangent(model)
    bad = eqx.tree_at(lambda x: x.second.weight, g, jnp.zeros((5, 2)))
    with pytest.raises(TangentMismatchError, match="shape"):
        opt.update(model, bad)
    assert opt.step == 1


def test_jit_and_eager_agree() -> None:
    """Compiling the step does not change the numbers."""
    model = _model()
    grads = _random_grads(model, 3)
    eager = _run_ours(Adam(1e-2), model, grads)
    jitted = _run_ours(Adam(1e-2, jit=True), model, grads)
    assert tree_allclose(as_tangent(eager), as_tangent(jitted), rtol=1e-10, atol=1e-12)
    assert jitted.first.first.in_features == 3


def test_reset_returns_to_uninitialized() -> None:
    """reset drops state and the step counter."""
    model = _model()
    opt = Adam(1e-2)
    opt.update(model, zero_tangent(model))
    opt.reset()
    assert opt.state is None and opt.step == 0


def test_optax_adapter_matches_native_adam() -> None:
    """Any Optax transformation can drive the same update protocol."""
    model = _model()
    grads = _random_grads(model, 4)
    native = _run_ours(Adam(1e-2), model, grads)
    adapted = _run_ours(OptaxOptimizer(optax.adam(1e-2)), model, grads)
    assert tree_allclose(as_tangent(native), as_tangent(adapted), rtol=1e-10, atol=1e-12)


def test_optax_adapter_jit_and_learning_rate() -> None:
    """The adapter compiles on request and reports an injected rate only."""
    model = _model()
    grads = _random_grads(model, 3)
    eager = _run_ours(OptaxOptimizer(optax.adam(1e-2)), model, grads)
    jitted = _run_ours(OptaxOptimizer(optax.adam(1e-2), jit=True), model, grads)
    assert tree_allclose(as_tangent(eager), as_tangent(jitted), rtol=1e-10, atol=1e-12)

    opaque = OptaxOptimizer(optax.adam(1e-2))
    opaque.update(model, grads[0])
    assert opaque.current_learning_rate() is None

    injected = OptaxOptimizer(optax.inject_hyperparams(optax.sgd)(learning_rate=0.05))
    assert injected.current_learning_rate() is None
    injected.update(model, grads[0])
    assert float(injected.current_learning_rate()) == pytest.approx(0.05)


@pytest.mark.parametrize(
    "make",
    [lambda: SGD(0.1, momentum=0.9), lambda: Adam(1e-2), lambda: OptaxOptimizer(optax.sgd(0.1))],
    ids=["momentum", "adam", "optax"],
)
def test_update_keeps_parameter_dtype(make) -> None:
    """A float64 gradient never promotes float32 parameters or slots."""
    k1, k2 = jax.random.split(jax.random.PRNGKey(0))
    model = compose(
        Linear.from_shape(3, 4, key=k1, dtype=jnp.float32),
        activation("tanh"),
        Linear.from_shape(4, 2, key=k2, dtype=jnp.float32),
    )
    grad = jax.tree_util.tree_map(lambda x: jnp.ones(x.shape, dtype=jnp.float64), as_tangent(model))
    opt = make()
    for _ in range(2):
        model = opt.update(model, grad)
    assert all(leaf.dtype == jnp.float32 for leaf in flattened_parameters(model))
    if not isinstance(opt, OptaxOptimizer):
        assert all(leaf.dtype == jnp.float32 for leaf in jax.tree_util.tree_leaves(opt.state))


def test_invalid_hyperparameters_raise() -> None:
    with pytest.raises(ValueError, match="momentum"):
        SGD(0.1, momentum=-0.1)
    with pytest.raises(ValueError, match="nesterov"):
        SGD(0.1, nesterov=True)
    with pytest.raises(ValueError, match="b1"):
        Adam(1e-3, b1=1.0)
    with pytest.raises(ValueError, match="eps"):
        Adam(1e-3, eps=0.0)


def test_clip_by_global_norm() -> None:
    """Clipping rescales to the threshold and reports the original norm."""
    t = tangent_type(Linear)(weight=jnp.array([[3.0]]), bias=jnp.array([4.0]))
    clipped, norm = clip_by_global_norm(t, 1.0)
    assert jnp.allclose(norm, 5.0)
    assert jnp.allclose(clipped.norm(), 1.0)
    assert jnp.allclose(clipped.weight, 0.6)

    untouched, _ = clip_by_global_norm(t, 10.0)
    assert jnp.allclose(untouched.bias, 4.0)


@pytest.mark.parametrize(
    "name,cls",
    [("sgd", SGD), ("momentum", SGD), ("adam", Adam), ("adamw", AdamW)],
)
def test_build_optimizer_from_config(name: str, cls: type) -> None:
    cfg = Config(optim=OptimConfig(name=name, lr=0.05))
    opt, schedule = build_optimizer(cfg)
    assert type(opt) is cls
    assert float(schedule(0)) == pytest.approx(0.05)
    if name == "momentum":
        assert opt.num_slots == 1


def test_warmup_cosine_schedule_endpoints() -> None:
    """Warmup starts at 0, peaks at lr and decays to lr * min_lr_ratio."""
    cfg = Config(
        train=TrainConfig(steps=100),
        optim=OptimConfig(lr=1.0, schedule="warmup_cosine", warmup_steps=10, min_lr_ratio=0.1),
    )
    schedule = build_schedule(cfg)
    assert float(schedule(0)) == pytest.approx(0.0)
    assert float(schedule(10)) == pytest.approx(1.0)
    assert float(schedule(100)) == pytest.approx(0.1)

    longer = replace(cfg, optim=replace(cfg.optim, decay_steps=190))
    assert float(build_schedule(longer)(100)) > 0.5
