"""Test session configuration."""

from __future__ import annotations

import os

# Must be set before JAX initializes a backend.
os.environ.setdefault("JAX_PLATFORMS", "cpu")

from collections.abc import Callable
from pathlib import Path

import jax
import pytest

from difftree.config import Config
from tests.helpers.config_factories import make_small_run_cfg

# Analytic gradient checks compare at 1e-9; float32 cannot get there.
jax.config.update("jax_enable_x64", True)


@pytest.fixture
def small_run_cfg_factory() -> Callable[..., tuple[Config, Path]]:
    """Expose the shared small-run config factory."""
    return make_small_run_cfg


@pytest.fixture
def small_run_cfg(tmp_path: Path) -> tuple[Config, Path]:
    """Provide a smoke-sized run config tuple for tests."""
    return make_small_run_cfg(tmp_path)
