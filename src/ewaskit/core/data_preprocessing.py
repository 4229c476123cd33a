#!/usr/bin/env python
# coding: utf-8


"""
Input preparation and outlier suppression for methylation association studies.

- This module turns the raw, loosely typed inputs of an EWAS (methylation
matrix, variable of interest, covariates, batch, weights, cell counts) into a
single aligned :class:`~ewaskit.io.data_utils.PreparedData` container.
- It also implements the two outlier-suppression steps applied to the
methylation matrix before any model is fitted.

Features
--------
- Canonical encoding of the variable of interest (numeric, two-level or
  ordered categorical) and of categorical covariates
- Shape resolution of observation weights (matrix, per-sample, per-site)
- Removal of samples with a missing variable or covariate value
- Removal of covariates without variance among the retained samples
- Per-site winsorisation at a symmetric quantile
- Per-site IQR outlier masking with recorded coordinates
"""


import warnings
from typing import Any, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ewaskit.core.analysis.validation import check_cell_counts
from ewaskit.io.data_utils import PreparedData, VariableEncoding, WeightSpec
from ewaskit.utils.logger import log_stage, logger


def _as_series(values: Any, name: str) -> pd.Series:
    if isinstance(values, pd.Series):
        return values.reset_index(drop=True)
    if isinstance(values, pd.Categorical):
        return pd.Series(values, name=name)
    if not isinstance(values, np.ndarray):
        values = list(values)
    return pd.Series(values, name=name)


def _is_numeric(s: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(s) and not pd.api.types.is_bool_dtype(s)


def simplify_variable(values: Any, name: str = "variable") -> VariableEncoding:
    """
    Resolve a sample-level variable into its canonical numeric encoding.

    - Numeric input passes through (``kind="numeric"``).
    - Boolean, string and unordered categorical input must have exactly two
      observed levels and is coded 0/1 in sorted level order (``kind="binary"``).
    - Ordered categorical input is coded by integer rank 1..k
      (``kind="ordered"``).

    Parameters
    ----------
    values : array-like, pd.Series or pd.Categorical
        One value per sample; ``None``/``NaN`` mark missing values.
    name : str
        Used in error messages.

    Returns
    -------
    VariableEncoding

    Raises
    ------
    ValueError
        If a non-ordered categorical variable does not have exactly two levels.
    """
    s = _as_series(values, name)

    if isinstance(s.dtype, pd.CategoricalDtype) and s.cat.ordered:
        codes = s.cat.codes.to_numpy().astype(float)
        codes[codes < 0] = np.nan
        return VariableEncoding("ordered", codes + 1.0, tuple(s.cat.categories))

    if _is_numeric(s):
        return VariableEncoding("numeric", s.to_numpy(dtype=float, na_value=np.nan))

    present = s.dropna()
    if isinstance(s.dtype, pd.CategoricalDtype):
        levels = [lv for lv in s.cat.categories if (present == lv).any()]
    else:
        levels = sorted(present.unique(), key=str)
    if len(levels) != 2:
        raise ValueError(
            f"Categorical '{name}' must have exactly two levels or be ordered, "
            f"found {len(levels)}: {list(levels)[:10]}"
        )
    coded = np.where(s.isna(), np.nan, (s == levels[1]).astype(float))
    return VariableEncoding("binary", coded.astype(float), tuple(levels))


def simplify_covariates(covariates: pd.DataFrame) -> pd.DataFrame:
    """
    Convert every covariate column to numeric form for modelling.

    Two-level categoricals become 0/1, ordered categoricals their rank and
    categoricals with more levels one indicator column per non-reference
    level (``<column>.<level>``). Single-level categoricals become a constant
    column that the zero-variance filter later removes. Missing values stay
    ``NaN``.
    """
    if not isinstance(covariates, pd.DataFrame):
        raise TypeError("covariates must be a pandas DataFrame")

    blocks: List[pd.DataFrame] = []
    for col in covariates.columns:
        s = covariates[col].reset_index(drop=True)
        ordered = isinstance(s.dtype, pd.CategoricalDtype) and s.cat.ordered
        if ordered or _is_numeric(s):
            enc = simplify_variable(s, name=str(col))
            blocks.append(pd.DataFrame({col: enc.values}))
            continue

        present = s.dropna()
        if isinstance(s.dtype, pd.CategoricalDtype):
            levels = [lv for lv in s.cat.categories if (present == lv).any()]
        else:
            levels = sorted(present.unique(), key=str)

        if len(levels) <= 2:
            top = levels[-1] if levels else None
            coded = np.where(s.isna(), np.nan, (s == top).astype(float))
            blocks.append(pd.DataFrame({col: coded.astype(float)}))
        else:
            indicators = {
                f"{col}.{lv}": np.where(s.isna(), np.nan, (s == lv).astype(float))
                for lv in levels[1:]
            }
            blocks.append(pd.DataFrame(indicators))

    if not blocks:
        return pd.DataFrame(index=range(len(covariates)))
    return pd.concat(blocks, axis=1)


def resolve_weights(
    weights: Any, n_sites: int, n_samples: int
) -> Optional[WeightSpec]:
    """
    Classify observation weights by shape.

    A 2-D input must be ``(n_sites, n_samples)``. A 1-D input of length
    ``n_samples`` is read as per-sample weights, otherwise a length of
    ``n_sites`` as per-site weights.

    Raises
    ------
    ValueError
        On any other shape, or on negative / non-finite weights.
    """
    if weights is None:
        return None
    arr = np.asarray(weights.values if isinstance(weights, pd.DataFrame) else weights)
    if not np.issubdtype(arr.dtype, np.number):
        raise ValueError("weights must be numeric")
    arr = arr.astype(float)
    if np.any(~np.isfinite(arr)) or np.any(arr < 0):
        raise ValueError("weights must be finite and non-negative")

    if arr.ndim == 2:
        if arr.shape != (n_sites, n_samples):
            raise ValueError(
                f"weight matrix shape {arr.shape} != beta shape {(n_sites, n_samples)}"
            )
        return WeightSpec("matrix", arr)
    if arr.ndim == 1:
        if arr.size == n_samples:
            return WeightSpec("sample", arr)
        if arr.size == n_sites:
            return WeightSpec("site", arr)
    raise ValueError(
        "weights must be a sites x samples matrix or a vector with one entry "
        "per sample or per site"
    )


def prepare_inputs(
    beta: pd.DataFrame,
    variable: Any,
    covariates: Optional[pd.DataFrame] = None,
    batch: Optional[Any] = None,
    weights: Optional[Any] = None,
    cell_counts: Optional[Any] = None,
    site_catalogue: Optional[pd.Index] = None,
    verbose: bool = False,
) -> PreparedData:
    """
    Validate and align all per-sample inputs and drop incomplete samples.

    Parameters
    ----------
    beta : pd.DataFrame
        Sites × samples methylation matrix.
    variable : array-like
        Variable of interest, one value per sample.
    covariates : pd.DataFrame, optional
        One row per sample.
    batch, cell_counts : array-like, optional
        One value per sample.
    weights : array-like, optional
        See :func:`resolve_weights`.
    site_catalogue : pd.Index, optional
        Identifiers of the feature set; every row of ``beta`` must be listed.
    verbose : bool
        Narrate removed samples and covariates.

    Returns
    -------
    PreparedData

    Raises
    ------
    ValueError
        On dimension mismatches, unknown sites, invalid categorical variables
        or when every sample is removed.
    """
    if not isinstance(beta, pd.DataFrame):
        raise TypeError("beta must be a pandas DataFrame (sites x samples)")
    n_sites, n_samples = beta.shape
    if n_sites == 0:
        raise ValueError("beta has no rows")

    site_ids = beta.index.astype(str)
    if site_catalogue is not None:
        unknown = ~site_ids.isin(site_catalogue)
        if unknown.any():
            raise ValueError(
                f"{int(unknown.sum())} site(s) not in the feature set, e.g. "
                f"{list(site_ids[unknown][:5])}"
            )

    if len(variable) != n_samples:
        raise ValueError(f"variable has {len(variable)} values for {n_samples} samples")
    if covariates is not None:
        if not isinstance(covariates, pd.DataFrame):
            raise TypeError("covariates must be a pandas DataFrame")
        if len(covariates) != n_samples:
            raise ValueError("covariates must have one row per sample")
    if batch is not None and len(batch) != n_samples:
        raise ValueError("batch must have one entry per sample")
    if cell_counts is not None:
        check_cell_counts(cell_counts, n_samples)

    weight_spec = resolve_weights(weights, n_sites, n_samples)

    log_stage(verbose, "Simplifying any categorical variables.")
    enc = simplify_variable(variable)
    simple_cov = simplify_covariates(covariates) if covariates is not None else None

    keep = ~np.isnan(enc.values)
    if simple_cov is not None and simple_cov.shape[1] > 0:
        keep &= simple_cov.notna().all(axis=1).to_numpy()
    sample_idx = np.flatnonzero(keep)
    n_removed = n_samples - sample_idx.size

    log_stage(verbose, "Removing", n_removed, "missing case(s).")
    if sample_idx.size == 0:
        raise ValueError("No samples left after removing missing values")

    enc = VariableEncoding(enc.kind, enc.values[sample_idx], enc.levels)
    beta_sub = beta.iloc[:, sample_idx].copy()
    sample_names = beta_sub.columns.astype(str)

    batch_sub = None
    if batch is not None:
        batch_sub = pd.Series(
            np.asarray(batch, dtype=object)[sample_idx],
            index=sample_names,
            name="batch",
        )
    cell_sub = None
    if cell_counts is not None:
        cell_sub = pd.Series(
            np.asarray(cell_counts, dtype=float)[sample_idx],
            index=sample_names,
            name="cell_counts",
        )
    if weight_spec is not None:
        weight_spec = weight_spec.subset_samples(sample_idx)

    removed_cov: List[str] = []
    if simple_cov is not None:
        simple_cov = simple_cov.iloc[sample_idx].copy()
        simple_cov.index = sample_names
        variances = simple_cov.var(axis=0, skipna=True)
        positive = variances.fillna(0) > 0
        removed_cov = [str(c) for c in simple_cov.columns[~positive.to_numpy()]]
        log_stage(
            verbose, "Removing", len(removed_cov), "covariates with no variance."
        )
        simple_cov = simple_cov.loc[:, positive.to_numpy()]

    return PreparedData(
        beta=beta_sub,
        variable=enc,
        covariates=simple_cov,
        batch=batch_sub,
        weights=weight_spec,
        cell_counts=cell_sub,
        sample_idx=sample_idx,
        meta={"n_samples_removed": int(n_removed), "removed_covariates": removed_cov},
    )


def _row_quantiles(values: np.ndarray, probs, method: str = "linear") -> np.ndarray:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        return np.nanquantile(values, probs, axis=1, method=method)


def winsorize_beta(
    beta: Union[pd.DataFrame, np.ndarray], pct: float = 0.05
) -> Union[pd.DataFrame, np.ndarray]:
    """
    Clamp each site's values to its ``pct`` and ``1 - pct`` quantiles.

    Quantiles are order statistics of the observed values (inverted-CDF
    definition), so winsorising twice at the same ``pct`` changes nothing.
    Missing values are preserved and ignored.

    Parameters
    ----------
    beta : pd.DataFrame or np.ndarray
        Sites × samples matrix.
    pct : float
        Tail proportion in ``(0, 0.5)``.

    Returns
    -------
    Same type as ``beta`` with the same shape.
    """
    if not 0.0 < pct < 0.5:
        raise ValueError("pct must lie in (0, 0.5)")
    values = np.asarray(beta, dtype=float)
    if values.size == 0:
        return beta.copy()

    lo, hi = _row_quantiles(values, [pct, 1.0 - pct], method="inverted_cdf")
    clipped = np.clip(values, lo[:, None], hi[:, None])
    out = np.where(np.isnan(values), values, clipped)

    if isinstance(beta, pd.DataFrame):
        return pd.DataFrame(out, index=beta.index, columns=beta.columns)
    return out


def _coordinates(mask: np.ndarray, beta: pd.DataFrame) -> pd.DataFrame:
    rows, cols = np.nonzero(mask)
    return pd.DataFrame(
        {
            "row": rows,
            "col": cols,
            "site": beta.index.to_numpy()[rows],
            "sample": beta.columns.to_numpy()[cols],
        }
    )


def mask_iqr_outliers(
    beta: pd.DataFrame, factor: float = 3.0
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Set values outside ``[Q1 - factor*IQR, Q3 + factor*IQR]`` to ``NaN``.

    Quartiles are computed per site across samples, ignoring missing values.

    Parameters
    ----------
    beta : pd.DataFrame
        Sites × samples matrix (left untouched).
    factor : float
        IQR multiplier, typically 3.

    Returns
    -------
    masked : pd.DataFrame
        Copy of ``beta`` with outliers set to ``NaN``.
    too_hi, too_lo : pd.DataFrame
        Coordinates (``row``, ``col``, ``site``, ``sample``) of values masked
        for being too high and too low.
    """
    if factor <= 0:
        raise ValueError("factor must be positive")
    values = beta.to_numpy(dtype=float, copy=True)
    q1, q3 = _row_quantiles(values, [0.25, 0.75])
    iqr = q3 - q1

    with np.errstate(invalid="ignore"):
        hi_mask = values > (q3 + factor * iqr)[:, None]
        lo_mask = values < (q1 - factor * iqr)[:, None]

    too_hi = _coordinates(hi_mask, beta)
    too_lo = _coordinates(lo_mask, beta)
    values[hi_mask | lo_mask] = np.nan

    n_masked = int(hi_mask.sum() + lo_mask.sum())
    if n_masked:
        logger.debug(
            f"IQR masking: {int(hi_mask.sum())} too high, {int(lo_mask.sum())} too low"
        )
    masked = pd.DataFrame(values, index=beta.index, columns=beta.columns)
    return masked, too_hi, too_lo
