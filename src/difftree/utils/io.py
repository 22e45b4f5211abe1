"""Filesystem + metrics logging utilities.

difftree uses deliberately boring IO:
- a run directory containing a config snapshot + metrics.jsonl + train.log
- JSONL is append-only and survives a crashed process
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.logging import RichHandler

from difftree.config import Config

_NOISY_CONSOLE_PREFIXES = ("jax", "jaxlib", "absl", "equinox")
_PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


class _ConsoleNoiseFilter(logging.Filter):
    """Hide INFO chatter from JAX and friends on the console."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith(_NOISY_CONSOLE_PREFIXES):
            return record.levelno >= logging.WARNING
        return True


def _console_handler(level: int, *, use_rich: bool) -> logging.Handler:
    if use_rich:
        handler: logging.Handler = RichHandler(
            show_time=True,
            show_level=True,
            show_path=False,
            markup=False,
            rich_tracebacks=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))

    handler.setLevel(level)
    handler.addFilter(_ConsoleNoiseFilter())
    return handler


def setup_python_logging(level: str, *, use_rich: bool = True) -> None:
    """Configure Python logging with a single console handler.

    Existing root handlers are replaced, so calling this twice is harmless.

    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    :param bool use_rich: If True, format console logs with Rich.
    """
    numeric_level = getattr(logging, level, logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(_console_handler(numeric_level, use_rich=use_rich))


def add_file_logging(path: Path, *, level: str) -> logging.Handler:
    """Attach a file handler that captures all logs.

    :param Path path: Log file path.
    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    :return logging.Handler: The attached (or already attached) handler.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(path):
            return handler
    file_handler = logging.FileHandler(path)
    file_handler.setLevel(getattr(logging, level, logging.INFO))
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    root.addHandler(file_handler)
    return file_handler


def create_run_dir(cfg: Config, *, config_path: str | Path | None) -> Path:
    """Create a run directory and snapshot the config into it.

    - cfg.logging.run_dir is None: create ``runs/<project>/<stamp>_<config stem>``.
    - cfg.logging.run_dir is set: create it; refuse if it already exists.

    Writes ``config_resolved.json`` and, when available, a copy of the original
    YAML as ``config_original.yaml``.

    :param Config cfg: Run configuration.
    :param config_path: Optional path to the original YAML config.
    :raises RuntimeError: If the requested run dir already exists.
    :return Path: Path to the run directory.
    """
    if cfg.logging.run_dir is not None:
        run_dir = Path(cfg.logging.run_dir)
        if run_dir.exists():
            raise RuntimeError(
                f"Run dir already exists: {run_dir}. "
                "Refusing to clobber. Set logging.run_dir to a new path."
            )
        run_dir.mkdir(parents=True)
    else:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = Path(config_path).stem if config_path is not None else "run"
        run_dir = Path("runs") / cfg.logging.project / f"{stamp}_{name}"
        run_dir.mkdir(parents=True, exist_ok=False)

    (run_dir / "config_resolved.json").write_text(
        json.dumps(cfg.to_dict(), indent=2, sort_keys=True)
    )
    if config_path is not None:
        src = Path(config_path)
        if src.exists():
            (run_dir / "config_original.yaml").write_text(src.read_text())

    return run_dir


class MetricsWriter:
    """Append-only JSONL metrics writer."""

    def __init__(self, path: str | Path):
        """Initialize the metrics writer.

        :param path: Path to the JSONL file.
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._f = self.path.open("a", buffering=1)

    def write(self, row: dict[str, Any]) -> None:
        """Write one metrics row.

        :param dict[str, Any] row: JSON-serializable metrics.
        """
        self._f.write(json.dumps(row, ensure_ascii=False) + "\n")
        self._f.flush()

    def close(self) -> None:
        if not self._f.closed:
            self._f.close()

    def __enter__(self) -> MetricsWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def read_metrics(path: str | Path) -> list[dict[str, Any]]:
    """Read every row of a metrics JSONL file.

    :param path: Path to the JSONL file.
    :return list[dict[str, Any]]: Rows in write order.
    """
    with Path(path).open("r") as f:
        return [json.loads(line) for line in f if line.strip()]
