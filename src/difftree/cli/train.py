"""Train subcommand."""

from __future__ import annotations

from dataclasses import replace

import click

from difftree.cli.main import print_banner
from difftree.config import load_config
from difftree.utils.io import setup_python_logging


@click.command()
@click.argument("config", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--override",
    "-o",
    "overrides",
    multiple=True,
    help="Dotpath override, e.g. train.steps=1000 (repeatable).",
)
@click.option(
    "--run-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Override logging.run_dir (must not exist yet).",
)
@click.option("--no-banner", is_flag=True, help="Skip the startup banner.")
def train(
    config: str,
    overrides: tuple[str, ...],
    run_dir: str | None,
    no_banner: bool,
) -> None:
    """Train the demo regression model.

    CONFIG is the path to a YAML config file.
    """
    try:
        cfg = load_config(config, overrides=list(overrides))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="CONFIG/--override") from e

    if run_dir is not None:
        cfg = replace(cfg, logging=replace(cfg.logging, run_dir=run_dir))

    if not no_banner:
        print_banner()

    # Logging first so subsequent errors are readable
    setup_python_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)

    from difftree.train import run

    try:
        run_dir_path = run(cfg, config_path=config)
    except RuntimeError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"[difftree] run_dir: {run_dir_path}")
