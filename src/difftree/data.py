"""Synthetic regression data for the demo trainer.

Targets come from a fixed random two-layer network plus Gaussian noise:

    y = tanh(x @ A) @ B + noise_std * eps

The whole dataset lives in memory; `iterate_batches` reshuffles every epoch
and drops the ragged tail so every batch has the same shape (one compile when
the step is jitted).
"""

from __future__ import annotations

from collections.abc import Iterator

import jax
import jax.numpy as jnp

from difftree.config import Config, dtype_from_str
from difftree.types import Batch

_TARGET_HIDDEN = 8


def make_dataset(cfg: Config) -> Batch:
    """Generate the full dataset as a single `Batch`.

    :param Config cfg: Configuration (model sizes, data.num_samples/noise_std/seed).
    :return Batch: inputs [N, in_features], targets [N, out_features].
    """
    m, d = cfg.model, cfg.data
    dtype = dtype_from_str(m.param_dtype)
    kx, ka, kb, kn = jax.random.split(jax.random.PRNGKey(d.seed), 4)

    x = jax.random.normal(kx, (d.num_samples, m.in_features), dtype=dtype)
    a = jax.random.normal(ka, (m.in_features, _TARGET_HIDDEN), dtype=dtype)
    b = jax.random.normal(kb, (_TARGET_HIDDEN, m.out_features), dtype=dtype) / jnp.sqrt(
        jnp.asarray(_TARGET_HIDDEN, dtype=dtype)
    )
    y = jnp.tanh(x @ a) @ b
    if d.noise_std > 0:
        y = y + d.noise_std * jax.random.normal(kn, y.shape, dtype=dtype)
    return Batch(inputs=x, targets=y)


def iterate_batches(
    dataset: Batch, batch_size: int, *, key: jax.Array, shuffle: bool = True
) -> Iterator[Batch]:
    """Yield fixed-size batches forever.

    :param Batch dataset: Full dataset.
    :param int batch_size: Rows per batch (must not exceed the dataset size).
    :param jax.Array key: PRNG key for shuffling.
    :param bool shuffle: Reshuffle at every epoch boundary.
    :raises ValueError: If batch_size is out of range.
    :return Iterator[Batch]: Endless batch stream.
    """
    n = int(dataset.inputs.shape[0])
    if not 0 < batch_size <= n:
        raise ValueError(f"batch_size must be in [1, {n}], got {batch_size}")
    per_epoch = n // batch_size

    while True:
        if shuffle:
            key, sub = jax.random.split(key)
            order = jax.random.permutation(sub, n)
        else:
            order = jnp.arange(n)
        for i in range(per_epoch):
            idx = order[i * batch_size : (i + 1) * batch_size]
            yield Batch(inputs=dataset.inputs[idx], targets=dataset.targets[idx])
