#!/usr/bin/env python
# coding: utf-8


"""
Centralised logging utilities for the ewaskit association-study pipeline.

Every ewaskit module logs through a single package logger with the
following behaviour:

Features
--------
- Simultaneous console (stdout) and timestamped file output under \
``<output_dir>/log/`` (``output_dir`` defaults to ``$EWASKIT_OUTPUT_DIR`` \
or ``output``)
- A :class:`ProgressAwareLogger` that hosts one ``tqdm`` progress bar at a time:
    - ``logger.progress("Fitting site partitions", total=n)`` starts a bar
    - ``logger.progress_update(k)`` advances it
    - any log record, whatever its level, closes the active bar first so \
    that messages never interleave with bar redraws
- :func:`log_stage` for verbose stage narration (``verbose=False`` keeps \
the pipeline quiet apart from warnings and errors)
"""


from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from typing import Optional

from tqdm import tqdm

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ProgressAwareLogger(logging.Logger):
    """
    Logger owning at most one tqdm bar, closed by the next log record.
    """

    def __init__(self, name) -> None:
        super().__init__(name)
        self._pbar: Optional[tqdm] = None

    def _close_pbar(self) -> None:
        if self._pbar is not None:
            self._pbar.close()
            self._pbar = None

    def progress(self, msg: str, total: Optional[int] = None) -> None:
        """
        Start or replace the active progress bar.

        Parameters
        ----------
        msg : str
            Description displayed to the left of the bar.
        total : int, optional
            Expected number of steps. ``None`` gives an indeterminate bar.
        """
        self._close_pbar()
        self._pbar = tqdm(
            total=total or 0,
            desc=msg,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt}",
        )

    def progress_update(self, n: int = 1) -> None:
        """Advance the active bar by ``n`` steps (no-op without a bar)."""
        if self._pbar is None:
            return
        try:
            self._pbar.update(n)
        except Exception as e:
            self._close_pbar()
            self.warning(f"Failed to advance progress bar: {e}")

    def _log(self, level, msg, args, **kwargs) -> None:
        # every level method funnels through here
        self._close_pbar()
        super()._log(level, msg, args, **kwargs)


logging.setLoggerClass(ProgressAwareLogger)


def _file_handler(name: str, output_dir: str) -> logging.FileHandler:
    """Timestamped ``<output_dir>/log/<name>_<YYYYmmdd_HHMMSS>.log`` handler."""
    log_dir = os.path.join(output_dir, "log")
    os.makedirs(log_dir, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return logging.FileHandler(
        os.path.join(log_dir, f"{name}_{stamp}.log"), encoding="utf-8"
    )


def _configure_logger(
    name: str = "ewaskit", output_dir: Optional[str] = None
) -> logging.Logger:
    """
    Configure and return the central ewaskit logger.

    Parameters
    ----------
    name : str, default "ewaskit"
        Logger name.
    output_dir : str, optional
        Base directory for log files, written to ``<output_dir>/log/``.
        Defaults to ``$EWASKIT_OUTPUT_DIR`` or ``"output"``.

    Returns
    -------
    logging.Logger
        A :class:`ProgressAwareLogger` at ``INFO`` level with console and
        file handlers. Loggers that already own handlers are returned as is.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    output_dir = output_dir or os.environ.get("EWASKIT_OUTPUT_DIR", "output")
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in (logging.StreamHandler(sys.stdout), _file_handler(name, output_dir)):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(logging.INFO)
    return logger


logger = _configure_logger()


def get_logger(name: str = "ewaskit") -> logging.Logger:
    """Return the central ewaskit logger instance."""
    return logging.getLogger(name)


def log_stage(verbose: bool, *parts: object) -> None:
    """
    Narrate a pipeline stage boundary when ``verbose`` is set.

    Parts are joined with single spaces, e.g.
    ``log_stage(True, "Removing", 2, "missing case(s).")``.
    """
    if verbose:
        logger.info(" ".join(str(p) for p in parts))
