"""Inspect subcommand: print the parameter layout of the configured model."""

from __future__ import annotations

import click
import jax

from difftree.config import load_config


@click.command()
@click.argument("config", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--override",
    "-o",
    "overrides",
    multiple=True,
    help="Dotpath override, e.g. model.depth=3 (repeatable).",
)
@click.option("--stats", is_flag=True, help="Also print mean/std/min/max per parameter.")
def inspect(config: str, overrides: tuple[str, ...], stats: bool) -> None:
    """Print parameter paths and shapes in gradient traversal order.

    CONFIG is the path to a YAML config file.
    """
    try:
        cfg = load_config(config, overrides=list(overrides))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="CONFIG/--override") from e

    if cfg.train.x64:
        jax.config.update("jax_enable_x64", True)

    from difftree.model import build_model
    from difftree.utils.tree import param_count, parameter_stats

    model = build_model(cfg, key=jax.random.PRNGKey(cfg.train.seed))
    click.echo(f"model: {type(model).__name__} ({cfg.model.composition})")
    for s in parameter_stats(model):
        line = f"  {s.path:<28} {str(s.shape):<12} {s.dtype}"
        if stats:
            line += f"  mean={s.mean:+.4f} std={s.std:.4f} min={s.min:+.4f} max={s.max:+.4f}"
        click.echo(line)
    click.echo(f"params: {param_count(model):,}")
