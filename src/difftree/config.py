# SPDX-License-Identifier: Apache-2.0

"""Configuration for difftree runs.

Rule #1: **One config system.**
If a knob doesn't live in these dataclasses, it doesn't exist.

We use:
- YAML files for readability
- dot-path overrides for quick experiment changes

The loader is strict: unknown keys and invalid values fail fast with messages
that name the offending key.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import yaml

if TYPE_CHECKING:
    import jax.numpy as jnp

Composition = Literal["chain", "sequential"]
ActivationName = Literal["relu", "tanh", "gelu", "identity"]
OptimName = Literal["sgd", "momentum", "adam", "adamw"]
ScheduleName = Literal["constant", "warmup_cosine"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(frozen=True)
class ModelConfig:
    """Demo MLP: `depth` Linear layers with an activation between each pair.

    `composition` picks the model shape and therefore the gradient shape:
    - "chain": nested binary `Chain`s via `compose` (grad.first.first...)
    - "sequential": flat `Sequential` (grad.layers[i])
    """

    in_features: int = 3
    hidden_features: int = 16
    out_features: int = 1
    depth: int = 2
    activation: ActivationName = "tanh"
    composition: Composition = "sequential"
    param_dtype: Literal["float32", "float64"] = "float32"


@dataclass(frozen=True)
class DataConfig:
    """Synthetic regression data: y = tanh(x @ A) @ B + noise."""

    num_samples: int = 256
    noise_std: float = 0.01
    seed: int = 0
    shuffle: bool = True


@dataclass(frozen=True)
class TrainConfig:
    """Training loop configuration."""

    seed: int = 0
    steps: int = 200
    batch_size: int = 32
    log_every: int = 10

    jit: bool = False
    # Enable float64 before any array is created (needed for param_dtype=float64).
    x64: bool = False


@dataclass(frozen=True)
class OptimConfig:
    """Optimizer configuration."""

    name: OptimName = "adam"
    lr: float = 1e-2
    momentum: float = 0.9
    nesterov: bool = False
    b1: float = 0.9
    b2: float = 0.999
    eps: float = 1e-8
    weight_decay: float = 0.0
    grad_clip_norm: float = 0.0
    schedule: ScheduleName = "constant"
    warmup_steps: int = 0
    decay_steps: int | None = None
    min_lr_ratio: float = 0.0


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration for run directory and metrics output."""

    project: str = "difftree"
    run_dir: str | None = None
    metrics_file: str = "metrics.jsonl"
    level: LogLevel = "INFO"
    console_use_rich: bool = True
    log_file: str | None = "train.log"


@dataclass(frozen=True)
class DebugConfig:
    """Debug configuration."""

    nan_check: bool = True


@dataclass(frozen=True)
class Config:
    """Top-level configuration combining all sub-configs for a run."""

    model: ModelConfig = ModelConfig()
    data: DataConfig = DataConfig()
    train: TrainConfig = TrainConfig()
    optim: OptimConfig = OptimConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: DebugConfig = DebugConfig()

    def to_dict(self) -> dict[str, Any]:
        """Convert the entire config tree to a nested dictionary.

        :return dict[str, Any]: Nested dict representation of all config fields.
        """
        return asdict(self)


_SECTIONS: dict[str, type] = {
    "model": ModelConfig,
    "data": DataConfig,
    "train": TrainConfig,
    "optim": OptimConfig,
    "logging": LoggingConfig,
    "debug": DebugConfig,
}


# ------------------------------ Loading ---------------------------------


def _set_by_dotted_path(obj: Any, path: str, raw_value: str) -> Any:
    """Set a dataclass field by dotted path, returning a new object.

    Example: path="train.batch_size", raw_value="4"

    :param Any obj: Root dataclass to modify.
    :param str path: Dot-separated path to the field.
    :param str raw_value: String value, cast to the type of the current value.
    :raises ValueError: If the path contains unknown keys.
    :return Any: New dataclass with the field updated.
    """
    parts = path.split(".")
    cur = obj
    parents: list[tuple[Any, str]] = []
    for p in parts[:-1]:
        if not hasattr(cur, p):
            raise ValueError(f"Unknown config key: {path!r} (missing {p!r})")
        parents.append((cur, p))
        cur = getattr(cur, p)

    leaf = parts[-1]
    if not hasattr(cur, leaf):
        raise ValueError(f"Unknown config key: {path!r} (missing {leaf!r})")

    new = _cast_like(getattr(cur, leaf), raw_value)

    # Frozen dataclasses: rebuild from the bottom up
    cur_new = replace(cur, **{leaf: new})
    for parent, field in reversed(parents):
        cur_new = replace(parent, **{field: cur_new})
    return cur_new


def _cast_like(old: Any, raw: str) -> Any:
    """Cast a string override to the type of `old`.

    :param Any old: Reference value whose type determines the cast.
    :param str raw: String value to cast.
    :raises ValueError: If the cast fails.
    :return Any: Value cast to the type of `old`.
    """
    if isinstance(old, bool):
        if raw.lower() in {"true", "1", "yes", "y"}:
            return True
        if raw.lower() in {"false", "0", "no", "n"}:
            return False
        raise ValueError(f"Expected boolean, got {raw!r}")
    if isinstance(old, int):
        return int(raw)
    if isinstance(old, float):
        return float(raw)
    if old is None:
        if raw.lower() in {"null", "none"}:
            return None
        parsed = yaml.safe_load(raw)
        return raw if parsed is None else parsed
    if raw.lower() == "null":
        return None
    # str and Literal fields stay strings; validation catches bad choices
    return raw


def _from_nested_dict(data: dict[str, Any]) -> Config:
    """Convert a nested dict into Config dataclasses.

    :param dict[str, Any] data: Nested dictionary from YAML parsing.
    :raises ValueError: If a section or key is unknown.
    :return Config: Fully constructed Config.
    """
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown config section(s): {unknown}. Expected {sorted(_SECTIONS)}")

    sections: dict[str, Any] = {}
    for name, cls in _SECTIONS.items():
        raw = data.get(name) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config section {name!r} must be a mapping, got {type(raw).__name__}")
        try:
            sections[name] = cls(**raw)
        except TypeError as e:
            raise ValueError(f"Invalid keys in config section {name!r}: {e}") from e
    return Config(**sections)


def load_config(path: str | Path, overrides: Iterable[str] | None = None) -> Config:
    """Load YAML config file + apply dot-path overrides.

    Overrides format: "train.steps=2000".

    :param path: Path to the YAML config file.
    :param overrides: Optional list of dot-path overrides.
    :raises ValueError: If the file, an override or a value is invalid.
    :return Config: Validated configuration object.
    """
    path = Path(path)
    with path.open("r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")

    cfg = _from_nested_dict(data)

    for o in overrides or ():
        if "=" not in o:
            raise ValueError(f"Invalid override {o!r}. Expected format like train.steps=123")
        k, v = o.split("=", 1)
        cfg = _set_by_dotted_path(cfg, k.strip(), v.strip())

    validate_config(cfg)
    return cfg


# ------------------------------ Validation ---------------------------------


def _vfail(msg: str) -> None:
    """Raise ValueError with a standardized config validation prefix.

    :param str msg: Validation failure message.
    :raises ValueError: Always.
    """
    raise ValueError(f"Config validation failed: {msg}")


def _validate_model(cfg: Config) -> None:
    m = cfg.model
    for name in ("in_features", "hidden_features", "out_features", "depth"):
        if getattr(m, name) <= 0:
            _vfail(f"model.{name} must be positive, got {getattr(m, name)}")
    if m.activation not in ("relu", "tanh", "gelu", "identity"):
        _vfail(f"model.activation must be relu/tanh/gelu/identity, got {m.activation!r}")
    if m.composition not in ("chain", "sequential"):
        _vfail(f"model.composition must be 'chain' or 'sequential', got {m.composition!r}")
    if m.param_dtype not in ("float32", "float64"):
        _vfail(f"model.param_dtype must be 'float32' or 'float64', got {m.param_dtype!r}")
    if m.param_dtype == "float64" and not cfg.train.x64:
        _vfail("model.param_dtype='float64' requires train.x64=true")


def _validate_data(cfg: Config) -> None:
    if cfg.data.num_samples <= 0:
        _vfail(f"data.num_samples must be positive, got {cfg.data.num_samples}")
    if cfg.data.noise_std < 0:
        _vfail(f"data.noise_std must be >= 0, got {cfg.data.noise_std}")


def _validate_train(cfg: Config) -> None:
    if cfg.train.steps <= 0:
        _vfail(f"train.steps must be positive, got {cfg.train.steps}")
    if cfg.train.batch_size <= 0:
        _vfail(f"train.batch_size must be positive, got {cfg.train.batch_size}")
    if cfg.train.batch_size > cfg.data.num_samples:
        _vfail(
            f"train.batch_size ({cfg.train.batch_size}) must be <= data.num_samples "
            f"({cfg.data.num_samples})"
        )
    if cfg.train.log_every <= 0:
        _vfail(f"train.log_every must be positive, got {cfg.train.log_every}")


def _validate_optim(cfg: Config) -> None:
    o = cfg.optim
    if o.name not in ("sgd", "momentum", "adam", "adamw"):
        _vfail(f"optim.name must be one of sgd/momentum/adam/adamw, got {o.name!r}")
    if o.lr < 0:
        _vfail(f"optim.lr must be >= 0, got {o.lr}")
    if o.name == "momentum" and not 0 < o.momentum < 1:
        _vfail(f"optim.momentum must be in (0, 1), got {o.momentum}")
    if o.b1 < 0 or o.b1 >= 1:
        _vfail(f"optim.b1 must be in [0, 1), got {o.b1}")
    if o.b2 < 0 or o.b2 >= 1:
        _vfail(f"optim.b2 must be in [0, 1), got {o.b2}")
    if o.eps <= 0:
        _vfail(f"optim.eps must be positive, got {o.eps}")
    if o.weight_decay < 0:
        _vfail(f"optim.weight_decay must be >= 0, got {o.weight_decay}")
    if o.grad_clip_norm < 0:
        _vfail(f"optim.grad_clip_norm must be >= 0, got {o.grad_clip_norm}")
    if o.schedule not in ("constant", "warmup_cosine"):
        _vfail(f"optim.schedule must be 'constant' or 'warmup_cosine', got {o.schedule!r}")
    if o.warmup_steps < 0:
        _vfail(f"optim.warmup_steps must be >= 0, got {o.warmup_steps}")
    if o.schedule == "constant" and (o.warmup_steps or o.decay_steps is not None):
        _vfail("optim.warmup_steps/decay_steps require optim.schedule='warmup_cosine'")
    if o.decay_steps is not None and o.decay_steps <= 0:
        _vfail(f"optim.decay_steps must be positive when set, got {o.decay_steps}")
    if o.min_lr_ratio < 0 or o.min_lr_ratio > 1:
        _vfail(f"optim.min_lr_ratio must be in [0, 1], got {o.min_lr_ratio}")
    if o.schedule == "warmup_cosine" and o.warmup_steps >= cfg.train.steps:
        _vfail(
            f"optim.warmup_steps ({o.warmup_steps}) must be < train.steps ({cfg.train.steps})"
        )


def _validate_logging(cfg: Config) -> None:
    if cfg.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        _vfail(f"logging.level must be DEBUG/INFO/WARNING/ERROR, got {cfg.logging.level!r}")
    if cfg.logging.log_file is not None and not str(cfg.logging.log_file).strip():
        _vfail("logging.log_file must be a non-empty string or null")
    if not cfg.logging.metrics_file.strip():
        _vfail("logging.metrics_file must be non-empty")


def validate_config(cfg: Config) -> None:
    """Validate config with actionable error messages."""
    _validate_model(cfg)
    _validate_data(cfg)
    _validate_train(cfg)
    _validate_optim(cfg)
    _validate_logging(cfg)


def resolve_decay_duration(cfg: Config) -> int:
    """Resolve cosine decay duration (post-warmup) in steps.

    Defaults to `train.steps - optim.warmup_steps` so the schedule ends at
    `train.steps`.

    :param Config cfg: Configuration.
    :return int: Decay duration in steps.
    """
    if cfg.optim.decay_steps is None:
        return int(cfg.train.steps) - int(cfg.optim.warmup_steps)
    return int(cfg.optim.decay_steps)


def dtype_from_str(name: str) -> jnp.dtype:
    """Map a dtype string to a JAX dtype.

    :param str name: "float32" or "float64".
    :raises ValueError: If name is not a supported dtype.
    :return jnp.dtype: Corresponding JAX dtype.
    """
    import jax.numpy as jnp

    table = {
        "float32": jnp.float32,
        "float64": jnp.float64,
    }
    if name not in table:
        raise ValueError(f"Unsupported dtype {name!r}. Expected one of {sorted(table)}")
    return table[name]
