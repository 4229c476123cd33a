#!/usr/bin/env python
# coding: utf-8


"""
Input validation and integrity checks for site-wise association models.

- This module implements the pre-fit checks of the regression engine: sample
alignment of every per-sample input, range checks on cell-type proportions
and a projection of peak memory use before a full-matrix fit.
- It also builds the null and full model matrices used by the
surrogate-variable estimators.

Features
--------
- Conservative memory footprint estimation with an early MemoryError when a
  whole-matrix fit would not fit in RAM (use ``lmfit_safer`` instead)
- Fail-fast validation of variable, covariates, batch and cell counts
- Model-matrix construction that pads missing covariate values instead of
  dropping rows
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd
import psutil

from ewaskit.utils.logger import logger


def check_analysis_memory(
    beta: pd.DataFrame,
    warn_threshold_gb: float = 8.0,
    partitioned: bool = False,
    n_partitions: int = 8,
) -> dict:
    """
    Conservatively estimate RAM requirements for a site-wise fit.

    - Calculates the data footprint, projects peak usage (approximately 4
      times input size, divided by the partition count in memory-safety
      mode) and compares it against available system memory.

    Parameters
    ----------
    beta : pd.DataFrame
        Methylation matrix (sites × samples).
    warn_threshold_gb : float, default 8.0
        Issue a warning if the estimated peak exceeds this value.
    partitioned : bool, default False
        Whether the fit runs partition by partition.
    n_partitions : int, default 8
        Partition count in memory-safety mode.

    Returns
    -------
    dict
        Keys: ``data_gb``, ``peak_gb``, ``available_gb``.

    Raises
    ------
    MemoryError
        If the projected peak exceeds 85% of available RAM for a whole-matrix
        fit. Re-run with ``lmfit_safer=True``.
    """
    data_gb = beta.memory_usage(deep=True).sum() / (1024**3)
    estimated_peak_gb = data_gb * 4.0
    if partitioned:
        estimated_peak_gb = data_gb + data_gb * 3.0 / max(n_partitions, 1)

    available_gb = psutil.virtual_memory().available / (1024**3)

    logger.debug(
        f"Methylation matrix: {data_gb:.2f} GB → estimated peak: {estimated_peak_gb:.2f} GB"
    )

    if estimated_peak_gb > available_gb * 0.85:
        if not partitioned:
            raise MemoryError(
                f"Projected memory usage (~{estimated_peak_gb:.1f} GB) exceeds "
                f"85% of available RAM ({available_gb:.1f} GB).\n"
                "Use lmfit_safer=True to fit sites in partitions."
            )
        logger.warning(
            f"Projected memory usage (~{estimated_peak_gb:.1f} GB) is close to "
            f"available RAM ({available_gb:.1f} GB) even with {n_partitions} partitions."
        )
    elif estimated_peak_gb > warn_threshold_gb:
        logger.warning(
            f"Large analysis detected (~{estimated_peak_gb:.1f} GB peak). "
            "Consider restricting sites or lmfit_safer=True."
        )

    return {
        "data_gb": data_gb,
        "peak_gb": estimated_peak_gb,
        "available_gb": available_gb,
    }


def check_cell_counts(cell_counts, n_samples: int) -> None:
    """Require one proportion in [0, 1] per sample, without missing values."""
    cc = np.asarray(cell_counts, dtype=float)
    if cc.size != n_samples:
        raise ValueError("cell_counts must have one entry per sample")
    if np.isnan(cc).any() or (cc < 0).any() or (cc > 1).any():
        raise ValueError("cell_counts must lie in [0, 1]")


def validate_regression_inputs(
    variable: np.ndarray,
    beta: pd.DataFrame,
    covariates: Optional[pd.DataFrame] = None,
    batch: Optional[pd.Series] = None,
    cell_counts: Optional[pd.Series] = None,
) -> None:
    """
    Fail fast on inputs the regression engine cannot use.

    Raises
    ------
    ValueError
        If the variable has missing values, any per-sample input does not
        match the number of samples, or cell counts fall outside [0, 1].
    """
    n = beta.shape[1]
    variable = np.asarray(variable, dtype=float)
    if np.isnan(variable).any():
        raise ValueError("variable contains missing values")
    if variable.size != n:
        raise ValueError(f"variable has {variable.size} values for {n} samples")
    if covariates is not None and covariates.shape[0] != n:
        raise ValueError("covariates must have one row per sample")
    if batch is not None and len(batch) != n:
        raise ValueError("batch must have one entry per sample")
    if cell_counts is not None:
        check_cell_counts(cell_counts, n)


def build_model_matrix(
    covariates: Optional[pd.DataFrame],
    n_samples: int,
    variable: Optional[np.ndarray] = None,
    index: Optional[pd.Index] = None,
) -> pd.DataFrame:
    """
    Build an intercept + covariates (+ variable) model matrix.

    Covariates are expected in simplified numeric form; missing values are
    kept in place so the matrix always has ``n_samples`` rows.

    Parameters
    ----------
    covariates : pd.DataFrame or None
        Simplified covariates (may have zero columns).
    n_samples : int
        Number of rows.
    variable : np.ndarray, optional
        Appended as the final ``variable`` column (full model).
    index : pd.Index, optional
        Row labels, defaults to ``covariates.index`` or a range.

    Returns
    -------
    pd.DataFrame
        Numeric model matrix.
    """
    if index is None:
        index = covariates.index if covariates is not None else pd.RangeIndex(n_samples)
    parts = [pd.DataFrame({"intercept": np.ones(n_samples)}, index=index)]
    if covariates is not None and covariates.shape[1] > 0:
        if covariates.shape[0] != n_samples:
            raise ValueError("covariates must have one row per sample")
        cov = covariates.astype(float).copy()
        cov.index = index
        parts.append(cov)
    mod = pd.concat(parts, axis=1)
    if variable is not None:
        mod["variable"] = np.asarray(variable, dtype=float)
    return mod
