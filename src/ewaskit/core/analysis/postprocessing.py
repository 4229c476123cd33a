#!/usr/bin/env python
# coding: utf-8


"""
Postprocessing and interpretation utilities for association-study results.

Features
--------
- Genomic inflation factor (λ) of a p-value vector
- Per covariate-set summary: sites tested, FDR and Holm significant counts,
  direction of significant effects, λ and smallest p-value
- Extraction of significant sites with effect-size and direction filters
"""


from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats

from ewaskit.utils.logger import logger

_CHI2_MEDIAN = 0.4549364231195724


def genomic_inflation(pvals: Union[pd.Series, np.ndarray]) -> float:
    """
    Genomic inflation factor λ = median(χ²₁ quantiles of p) / 0.4549.

    Missing p-values are ignored; ``NaN`` is returned when none remain.
    """
    p = np.asarray(pvals, dtype=float)
    p = p[np.isfinite(p)]
    if p.size == 0:
        return np.nan
    chisq = stats.chi2.isf(p, df=1)
    return float(np.median(chisq) / _CHI2_MEDIAN)


def summarize_ewas(
    result, pval_thresh: float = 0.05, verbose: bool = False
) -> pd.DataFrame:
    """
    Summarise every covariate set of an association-study result.

    Parameters
    ----------
    result : EwasResult
        Output of :func:`ewaskit.core.pipeline.ewas`.
    pval_thresh : float, default 0.05
        Threshold applied to FDR and Holm adjusted p-values.
    verbose : bool, default False
        Log one line per covariate set.

    Returns
    -------
    pd.DataFrame
        One row per covariate set with the columns ``tested``,
        ``significant_fdr``, ``significant_holm``, ``positive``, ``negative``
        (direction of FDR-significant effects), ``lambda`` and ``min_p``.
    """
    if not (0 < pval_thresh <= 1):
        raise ValueError("pval_thresh must be in (0, 1]")

    rows = {}
    for name, analysis in result.analyses.items():
        table = analysis.table
        sig = table[table["fdr"].fillna(1.0) < pval_thresh]
        rows[name] = {
            "tested": int(table["p_value"].notna().sum()),
            "significant_fdr": len(sig),
            "significant_holm": int((table["p_holm"].fillna(1.0) < pval_thresh).sum()),
            "positive": int((sig["coefficient"] > 0).sum()),
            "negative": int((sig["coefficient"] < 0).sum()),
            "lambda": genomic_inflation(table["p_value"]),
            "min_p": float(table["p_value"].min()) if len(table) else np.nan,
        }
        if verbose:
            logger.info(
                f"{name}: {rows[name]['significant_fdr']} of {rows[name]['tested']} "
                f"sites with FDR < {pval_thresh}, lambda = {rows[name]['lambda']:.3f}"
            )
    summary = pd.DataFrame.from_dict(rows, orient="index")
    summary.index.name = "covariate_set"
    return summary


def get_significant_sites(
    table: pd.DataFrame,
    pval_col: str = "fdr",
    pval_thresh: float = 0.05,
    coef_thresh: float = 0.0,
    direction: Optional[str] = None,
    return_summary: bool = False,
    verbose: bool = True,
) -> Union[List[str], Dict]:
    """
    Extract significant sites from one covariate-set table.

    Parameters
    ----------
    table : pd.DataFrame
        Per-site statistics (``AnalysisResult.table``).
    pval_col : str, default "fdr"
        Column holding the p-values to threshold (``p_value``, ``fdr``, ``p_holm``).
    pval_thresh : float, default 0.05
        Maximum p-value for significance.
    coef_thresh : float, default 0.0
        Minimum absolute coefficient.
    direction : {"positive", "negative", None}, optional
        Restrict to positive or negative associations.
    return_summary : bool, default False
        Return a dictionary with counts instead of the id list.
    verbose : bool, default True
        Warn on empty input.

    Returns
    -------
    list[str] or dict
        Site ids ordered by p-value, or a summary dictionary.

    Raises
    ------
    KeyError
        If ``pval_col`` or ``coefficient`` is missing.
    ValueError
        For an unknown ``direction``.
    """
    if table.empty:
        if verbose:
            logger.warning("Input DataFrame is empty; returning empty results")
        if return_summary:
            return {"n_significant": 0, "n_positive": 0, "n_negative": 0, "sites": []}
        return []

    for col in (pval_col, "coefficient"):
        if col not in table.columns:
            raise KeyError(f"Column '{col}' not in results DataFrame")
    if direction not in (None, "positive", "negative"):
        raise ValueError("direction must be 'positive', 'negative' or None")

    sig = table[table[pval_col].fillna(1.0) < pval_thresh]
    coef = sig["coefficient"].fillna(0.0)
    if direction == "positive":
        sig = sig[coef >= coef_thresh]
    elif direction == "negative":
        sig = sig[coef <= -coef_thresh]
    else:
        sig = sig[coef.abs() >= coef_thresh]

    sig = sig.sort_values(pval_col, kind="stable")
    sites = sig.index.tolist()
    if return_summary:
        return {
            "n_significant": len(sites),
            "n_positive": int((sig["coefficient"] > 0).sum()),
            "n_negative": int((sig["coefficient"] < 0).sum()),
            "sites": sites,
        }
    return sites
