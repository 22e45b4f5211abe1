"""Demo training loop.

Design rules:
1) **The model is the state.** Parameters live in the model value; the
   optimizer owns its own slots. There is no separate params pytree.
2) **Gradients are tangents.** `value_and_gradient` returns `Tangent(model)`,
   which is exactly what `Optimizer.update` consumes.
3) **Fail loudly.** A non-finite loss or gradient norm stops the run.
"""

from __future__ import annotations

import logging
import math
import time
from pathlib import Path
from typing import Any

import equinox as eqx
import jax
import optax
from tqdm import tqdm

from difftree.autodiff import value_and_gradient
from difftree.config import Config
from difftree.data import iterate_batches, make_dataset
from difftree.model import build_model, mse_loss
from difftree.optim import Optimizer, build_optimizer, clip_by_global_norm
from difftree.types import Batch
from difftree.utils.io import MetricsWriter, add_file_logging, create_run_dir
from difftree.utils.tree import param_count

logger = logging.getLogger(__name__)


def _check_finite_metrics(metrics: dict[str, float], *, step: int) -> None:
    """Raise if any tracked metric is NaN or infinite.

    :param dict metrics: Host-side scalar metrics.
    :param int step: Step the metrics belong to.
    :raises RuntimeError: Naming the first non-finite metric.
    """
    for name in ("loss", "grad_norm"):
        if name in metrics and not math.isfinite(float(metrics[name])):
            raise RuntimeError(f"Non-finite {name} at step {step}: {metrics[name]}")


def _loss_and_grad(model: Any, batch: Batch) -> tuple[jax.Array, Any]:
    return value_and_gradient(model, lambda m: mse_loss(m, batch))


def train_step(
    model: Any, optimizer: Optimizer, batch: Batch, *, grad_clip_norm: float = 0.0
) -> tuple[Any, dict[str, jax.Array]]:
    """One step: loss + gradient, optional clipping, one optimizer update.

    :param Any model: Differentiable model.
    :param Optimizer optimizer: Stateful optimizer (advanced by exactly one step).
    :param Batch batch: Regression batch.
    :param float grad_clip_norm: Clip threshold; 0 disables clipping.
    :return tuple: (updated model, metrics dict with loss/grad_norm/lr). ``lr``
        is left out when the optimizer does not expose its rate.
    """
    lr = optimizer.current_learning_rate()
    loss, grad = _loss_and_grad(model, batch)
    if grad_clip_norm > 0:
        grad, grad_norm = clip_by_global_norm(grad, grad_clip_norm)
    else:
        grad_norm = optax.global_norm(grad)
    model = optimizer.update(model, grad)
    if lr is None:
        # Optax transformations only expose the rate they just applied.
        lr = optimizer.current_learning_rate()
    metrics = {"loss": loss, "grad_norm": grad_norm}
    if lr is not None:
        metrics["lr"] = lr
    return model, metrics


def run(cfg: Config, *, config_path: str | Path | None = None) -> Path:
    """Train the demo model and return the run directory.

    :param Config cfg: Validated configuration.
    :param config_path: Optional YAML path, snapshotted into the run dir.
    :return Path: Run directory holding config snapshot, metrics and log.
    """
    if cfg.train.x64:
        jax.config.update("jax_enable_x64", True)

    run_dir = create_run_dir(cfg, config_path=config_path)
    file_handler = None
    if cfg.logging.log_file:
        file_handler = add_file_logging(run_dir / cfg.logging.log_file, level=cfg.logging.level)
    try:
        _train(cfg, run_dir)
    finally:
        if file_handler is not None:
            logging.getLogger().removeHandler(file_handler)
            file_handler.close()
    return run_dir


def _train(cfg: Config, run_dir: Path) -> None:
    metrics_path = run_dir / cfg.logging.metrics_file

    key = jax.random.PRNGKey(cfg.train.seed)
    k_model, k_data = jax.random.split(key)
    model = build_model(cfg, key=k_model)
    logger.info(
        "model: %s (%s), params: %s",
        type(model).__name__,
        cfg.model.composition,
        f"{param_count(model):,}",
    )

    optimizer, _ = build_optimizer(cfg)
    logger.info("optimizer: %s, schedule: %s", type(optimizer).__name__, cfg.optim.schedule)

    dataset = make_dataset(cfg)
    batches = iterate_batches(
        dataset, cfg.train.batch_size, key=k_data, shuffle=cfg.data.shuffle
    )

    t0 = time.perf_counter()
    last_row: dict[str, Any] | None = None
    with MetricsWriter(metrics_path) as mw:
        for _ in tqdm(range(cfg.train.steps), desc="train", dynamic_ncols=True):
            model, metrics = train_step(
                model, optimizer, next(batches), grad_clip_norm=cfg.optim.grad_clip_norm
            )
            step_i = optimizer.step
            metrics_host = {k: float(v) for k, v in jax.device_get(metrics).items()}

            if cfg.debug.nan_check:
                _check_finite_metrics(metrics_host, step=step_i)

            if step_i % cfg.train.log_every == 0 or step_i == cfg.train.steps:
                row = {"step": step_i, **metrics_host, "wall_time_s": time.perf_counter() - t0}
                mw.write(row)
                last_row = row

    if last_row is not None:
        logger.info("done: step %d, loss %.6g", last_row["step"], last_row["loss"])
    eqx.tree_serialise_leaves(run_dir / "model.eqx", model)
