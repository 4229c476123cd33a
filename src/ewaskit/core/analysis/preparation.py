#!/usr/bin/env python
# coding: utf-8


"""
Site selection and imputation ahead of surrogate-variable estimation.

Surrogate-variable algorithms need a fully observed matrix and are usually
run on a reduced set of highly variable autosomal sites. This module
provides both steps.

Features
--------
- Most-variable site selection with a stable, deterministic ordering
- Row-wise mean imputation of the selected sites
"""


from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from ewaskit.utils.logger import logger


def select_most_variable(
    beta: pd.DataFrame,
    sites: Optional[pd.Index] = None,
    n: Optional[int] = None,
) -> pd.DataFrame:
    """
    Return the ``n`` rows of ``beta`` with the largest variance across samples.

    Parameters
    ----------
    beta : pd.DataFrame
        Methylation matrix (sites × samples).
    sites : pd.Index, optional
        Candidate sites (e.g. autosomal sites); rows outside it are ignored.
    n : int, optional
        Number of sites to keep. ``None`` keeps every candidate.

    Returns
    -------
    pd.DataFrame
        Selected rows in decreasing order of variance. Ties keep the row
        order of ``beta``.

    Raises
    ------
    ValueError
        If fewer than ``n`` candidate sites with observed variance exist.
    """
    candidates = beta if sites is None else beta.loc[beta.index.isin(sites)]
    var = candidates.var(axis=1, skipna=True)
    var = var[var.notna()]
    if n is None:
        n = len(var)
    if n > len(var):
        raise ValueError(
            f"most_variable={n} exceeds the {len(var)} candidate sites available"
        )
    if n < 2:
        raise ValueError("At least two variable sites are required")

    order = np.argsort(-var.to_numpy(), kind="stable")[:n]
    selected = candidates.loc[var.index[order]]
    logger.debug(f"Selected {n:,} most variable of {len(candidates):,} candidate sites")
    return selected


def impute_missing_values(beta: pd.DataFrame) -> pd.DataFrame:
    """
    Replace missing values by the mean of their site (row).

    Returns a copy with the same index and columns; rows without any
    observed value stay missing.
    """
    X = beta.to_numpy(dtype=float, copy=True)
    mask = np.isnan(X)
    if not mask.any():
        return beta.copy()

    fill_values = beta.mean(axis=1, skipna=True).to_numpy(dtype=float)
    row_idx, col_idx = np.where(mask)
    X[row_idx, col_idx] = fill_values[row_idx]
    return pd.DataFrame(X, index=beta.index, columns=beta.columns)
