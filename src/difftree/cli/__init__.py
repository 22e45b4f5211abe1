"""CLI entrypoints for difftree.

Invoked via ``pyproject.toml`` entrypoints::

    difftree train <config.yaml> -o train.steps=50
    difftree inspect <config.yaml>

Keep these modules thin: argument parsing + calling into library code.
"""

from __future__ import annotations

__all__ = ["cli"]

from difftree.cli.main import cli
