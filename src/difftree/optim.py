"""Generic optimizers over differentiable values.

An optimizer consumes ``(model, gradient)`` where the gradient is a
`Tangent(model)` and returns the updated model. It never looks inside a model
type: the walk over parameters, gradient and per-parameter state is
`difftree.tangent.walk`, driven by the cached field correspondence.

State machine:
- uninitialized: ``state is None``. Nothing allocated yet.
- stepping: ``state`` is a tuple of tangent-shaped slot trees (e.g. first and
  second moments), allocated on the first `update` and reused afterwards.
  ``step`` counts completed updates.

Hard rules:
1) The gradient must match the model. A mismatch is a programming defect:
   `TangentMismatchError`, no retry, no partial update.
2) Exactly one step per `update` call.
3) State belongs to the optimizer. Never share an optimizer between models.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import equinox as eqx
import jax
import jax.numpy as jnp
import optax

from difftree.tangent import as_tangent, cast_like, check_tangent, move, walk, zero_tangent

if TYPE_CHECKING:
    from difftree.config import Config

logger = logging.getLogger(__name__)

LearningRate = float | Callable[[Any], Any]


def _apply_rule(
    rule: Callable[..., tuple[Any, ...]],
    model: Any,
    gradient: Any,
    slots: tuple[Any, ...],
    lr: jax.Array,
    count: jax.Array,
) -> tuple[Any, tuple[Any, ...]]:
    """Pure optimizer step: walk model, gradient and slots once.

    New leaves keep the parameter dtype, whatever the gradient or rate dtype.
    """

    def leaf(p: Any, g: Any, *s: Any) -> tuple[Any, ...]:
        return tuple(cast_like(x, p) for x in rule(p, g, *s, lr=lr, count=count))

    return walk(leaf, model, gradient, *slots)


class Optimizer:
    """Base class for stateful optimizers.

    Subclasses set ``num_slots`` (auxiliary tensors per parameter) and
    implement `rule`.
    """

    num_slots: int = 0

    def __init__(self, learning_rate: LearningRate, *, jit: bool = False):
        """Initialize the optimizer.

        :param learning_rate: Constant rate or a schedule ``step -> rate``
            (e.g. an Optax schedule). The schedule sees the 0-based step.
        :param bool jit: If True, compile the step with `eqx.filter_jit`.
            Hyperparameters are baked in at first trace.
        """
        self.learning_rate = learning_rate
        self.step = 0
        self.state: tuple[Any, ...] | None = None
        self._apply = eqx.filter_jit(_apply_rule) if jit else _apply_rule

    def init_state(self, model: Any) -> tuple[Any, ...]:
        """Allocate per-parameter slots shaped like the model's tangent."""
        return tuple(zero_tangent(model) for _ in range(self.num_slots))

    def current_learning_rate(self) -> Any:
        """Rate for the next step; None when the optimizer cannot report it."""
        lr = self.learning_rate
        return lr(self.step) if callable(lr) else lr

    def rule(self, param: Any, grad: Any, *slots: Any, lr: Any, count: Any) -> tuple[Any, ...]:
        """Update one parameter leaf.

        :param param: Parameter leaf.
        :param grad: Gradient leaf of the same shape.
        :param slots: This leaf's auxiliary state.
        :param lr: Learning rate for this step.
        :param count: 1-based index of the step being taken.
        :return tuple: ``(new_param, *new_slots)``.
        """
        raise NotImplementedError

    def update(self, model: Any, gradient: Any) -> Any:
        """Apply one optimizer step.

        :param Any model: Differentiable value to update.
        :param Any gradient: Tangent of `model`.
        :raises TangentMismatchError: If `gradient` does not match `model`.
        :return Any: Updated model.
        """
        check_tangent(model, gradient)
        if self.state is None:
            self.state = self.init_state(model)
            logger.debug(
                "%s: allocated %d slot tree(s) for %s",
                type(self).__name__,
                len(self.state),
                type(model).__qualname__,
            )
        lr = jnp.asarray(self.current_learning_rate())
        count = jnp.asarray(self.step + 1)
        model, self.state = self._apply(self.rule, model, gradient, self.state, lr, count)
        self.step += 1
        return model

    def reset(self) -> None:
        """Drop all state and return to the uninitialized state."""
        self.state = None
        self.step = 0


class SGD(Optimizer):
    """Gradient descent with optional (Nesterov) momentum and L2 weight decay.

    plain:     p -= lr * g
    momentum:  v = momentum * v + g;  p -= lr * v
    nesterov:  v = momentum * v + g;  p -= lr * (g + momentum * v)
    """

    def __init__(
        self,
        learning_rate: LearningRate = 0.01,
        *,
        momentum: float = 0.0,
        nesterov: bool = False,
        weight_decay: float = 0.0,
        jit: bool = False,
    ):
        if momentum < 0:
            raise ValueError(f"momentum must be >= 0, got {momentum}")
        if nesterov and momentum == 0:
            raise ValueError("nesterov=True requires momentum > 0")
        super().__init__(learning_rate, jit=jit)
        self.momentum = momentum
        self.nesterov = nesterov
        self.weight_decay = weight_decay
        self.num_slots = 1 if momentum > 0 else 0

    def rule(self, param: Any, grad: Any, *slots: Any, lr: Any, count: Any) -> tuple[Any, ...]:
        if self.weight_decay:
            grad = grad + self.weight_decay * param
        if not slots:
            return (param - lr * grad,)
        (velocity,) = slots
        velocity = self.momentum * velocity + grad
        direction = grad + self.momentum * velocity if self.nesterov else velocity
        return param - lr * direction, velocity


class Adam(Optimizer):
    """Adam with bias correction.

    m = b1 * m + (1 - b1) * g
    v = b2 * v + (1 - b2) * g^2
    p -= lr * m_hat / (sqrt(v_hat) + eps)

    ``weight_decay`` is classic L2 (added to the gradient); see `AdamW` for the
    decoupled form.
    """

    num_slots = 2
    decoupled_weight_decay = False

    def __init__(
        self,
        learning_rate: LearningRate = 1e-3,
        *,
        b1: float = 0.9,
        b2: float = 0.999,
        eps: float = 1e-8,
        weight_decay: float = 0.0,
        jit: bool = False,
    ):
        for name, beta in (("b1", b1), ("b2", b2)):
            if not 0 <= beta < 1:
                raise ValueError(f"{name} must be in [0, 1), got {beta}")
        if eps <= 0:
            raise ValueError(f"eps must be positive, got {eps}")
        super().__init__(learning_rate, jit=jit)
        self.b1 = b1
        self.b2 = b2
        self.eps = eps
        self.weight_decay = weight_decay

    def rule(self, param: Any, grad: Any, *slots: Any, lr: Any, count: Any) -> tuple[Any, ...]:
        m, v = slots
        if self.weight_decay and not self.decoupled_weight_decay:
            grad = grad + self.weight_decay * param
        m = self.b1 * m + (1.0 - self.b1) * grad
        v = self.b2 * v + (1.0 - self.b2) * grad * grad
        m_hat = m / (1.0 - self.b1**count)
        v_hat = v / (1.0 - self.b2**count)
        direction = m_hat / (jnp.sqrt(v_hat) + self.eps)
        if self.weight_decay and self.decoupled_weight_decay:
            direction = direction + self.weight_decay * param
        return param - lr * direction, m, v


class AdamW(Adam):
    """Adam with decoupled weight decay: ``p -= lr * (adam_step + wd * p)``."""

    decoupled_weight_decay = True

    def __init__(self, learning_rate: LearningRate = 1e-3, *, weight_decay: float = 1e-4, **kwargs: Any):
        super().__init__(learning_rate, weight_decay=weight_decay, **kwargs)


class OptaxOptimizer(Optimizer):
    """Run any Optax gradient transformation through the same update protocol.

    The transformation sees the tangent view of the model as its params, so its
    state has the model's tangent shape. Updates are written back with `move`.
    The learning rate lives inside the transformation; it is only readable when
    the transformation is built with `optax.inject_hyperparams`.
    """

    def __init__(self, tx: optax.GradientTransformation, *, jit: bool = False):
        """Wrap a transformation.

        :param tx: Optax gradient transformation.
        :param bool jit: If True, compile ``tx.update`` with `eqx.filter_jit`.
        """
        self.tx = tx
        self.step = 0
        self.state: Any = None
        self._tx_update = eqx.filter_jit(tx.update) if jit else tx.update

    def init_state(self, model: Any) -> Any:
        return self.tx.init(as_tangent(model))

    def current_learning_rate(self) -> Any:
        """Rate used by the latest update, or None if the transformation hides it."""
        hyperparams = getattr(self.state, "hyperparams", None)
        if not isinstance(hyperparams, dict):
            return None
        return hyperparams.get("learning_rate")

    def update(self, model: Any, gradient: Any) -> Any:
        check_tangent(model, gradient)
        if self.state is None:
            self.state = self.init_state(model)
        updates, self.state = self._tx_update(gradient, self.state, as_tangent(model))
        self.step += 1
        return move(model, updates)


def clip_by_global_norm(gradient: Any, max_norm: float) -> tuple[Any, jax.Array]:
    """Rescale a gradient tangent so its global L2 norm is at most `max_norm`.

    :param Any gradient: Gradient tangent.
    :param float max_norm: Norm threshold (must be positive).
    :return tuple: (clipped gradient, norm before clipping).
    """
    norm = optax.global_norm(gradient)
    tx = optax.clip_by_global_norm(max_norm)
    clipped, _ = tx.update(gradient, tx.init(gradient))
    return clipped, norm


def build_schedule(cfg: Config) -> Callable[[Any], Any]:
    """Create the learning-rate schedule (constant, or warmup + cosine decay).

    If `optim.decay_steps` is unset, the cosine ends at `train.steps`.

    :param Config cfg: Configuration.
    :return Callable: Optax schedule ``step -> lr``.
    """
    from difftree.config import resolve_decay_duration

    o = cfg.optim
    if o.schedule == "constant":
        return optax.constant_schedule(o.lr)
    return optax.warmup_cosine_decay_schedule(
        init_value=0.0,
        peak_value=o.lr,
        warmup_steps=o.warmup_steps,
        decay_steps=o.warmup_steps + resolve_decay_duration(cfg),
        end_value=o.lr * o.min_lr_ratio,
    )


def build_optimizer(cfg: Config) -> tuple[Optimizer, Callable[[Any], Any]]:
    """Create an optimizer + schedule function (for logging).

    :param Config cfg: Configuration.
    :raises ValueError: If optim.name is unknown.
    :return tuple: (optimizer, schedule).
    """
    o = cfg.optim
    schedule = build_schedule(cfg)
    jit = cfg.train.jit
    if o.name == "sgd":
        opt: Optimizer = SGD(schedule, weight_decay=o.weight_decay, jit=jit)
    elif o.name == "momentum":
        opt = SGD(
            schedule,
            momentum=o.momentum,
            nesterov=o.nesterov,
            weight_decay=o.weight_decay,
            jit=jit,
        )
    elif o.name == "adam":
        opt = Adam(schedule, b1=o.b1, b2=o.b2, eps=o.eps, weight_decay=o.weight_decay, jit=jit)
    elif o.name == "adamw":
        opt = AdamW(schedule, b1=o.b1, b2=o.b2, eps=o.eps, weight_decay=o.weight_decay, jit=jit)
    else:
        raise ValueError(f"Unknown optim.name: {o.name!r}")
    return opt, schedule
