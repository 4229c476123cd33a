#!/usr/bin/env python
# coding: utf-8


"""
Site-wise linear model fitting for methylation matrices.

This module fits one linear model per site (row) of a methylation matrix
against a shared design matrix, in the style of limma's ``lmFit``.

Features
--------
- Ordinary / weighted least squares with a vectorised path for completely
  observed sites and a per-site path that drops missing samples
- Generalised least squares for a random-effect block with a fixed
  intra-block correlation (Cholesky whitening)
- Iteratively reweighted robust regression (statsmodels ``RLM``, Huber norm)
- Non-estimable design columns (e.g. all-zero columns) yield ``NaN``
  coefficients without disturbing the estimable ones
- Consensus intra-block correlation across sites (``duplicate_correlation``)
- Memory-safety mode fitting sites in independent random partitions,
  optionally in parallel with joblib, reassembled in the original order
"""


from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from joblib import Parallel, delayed
from scipy import linalg

from ewaskit.utils.logger import logger

_EPS = 1e-12


@dataclass
class LinearFit:
    """
    Per-site least-squares fit.

    Attributes
    ----------
    coefficients, stdev_unscaled : pd.DataFrame
        Sites × design columns.
    sigma, df_residual, amean : pd.Series
        Residual scale, residual degrees of freedom and mean methylation per site.
    design : pd.DataFrame
        Samples × coefficients design matrix.
    method : str
        ``"ls"`` or ``"robust"``.
    block : np.ndarray or None
        Random-effect grouping used for GLS.
    correlation : float or None
        Intra-block correlation used for GLS.
    """

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    sigma: pd.Series
    df_residual: pd.Series
    amean: pd.Series
    design: pd.DataFrame
    method: str = "ls"
    block: Optional[np.ndarray] = None
    correlation: Optional[float] = None

    @property
    def n_sites(self) -> int:
        return self.coefficients.shape[0]


def _as_design(design: Union[pd.DataFrame, np.ndarray]) -> pd.DataFrame:
    if isinstance(design, pd.DataFrame):
        return design.astype(float)
    design = np.asarray(design, dtype=float)
    if design.ndim != 2:
        raise ValueError("design must be a 2-D matrix")
    return pd.DataFrame(design, columns=[f"x{j}" for j in range(design.shape[1])])


def _as_beta(beta: Union[pd.DataFrame, np.ndarray]) -> pd.DataFrame:
    if isinstance(beta, pd.DataFrame):
        return beta
    beta = np.asarray(beta, dtype=float)
    if beta.ndim != 2:
        raise ValueError("beta must be a 2-D matrix")
    return pd.DataFrame(beta)


def _estimable_columns(X: np.ndarray) -> np.ndarray:
    """Greedy left-to-right selection of linearly independent columns."""
    keep = np.zeros(X.shape[1], dtype=bool)
    rank = 0
    for j in range(X.shape[1]):
        trial = keep.copy()
        trial[j] = True
        r = np.linalg.matrix_rank(X[:, trial]) if X.shape[0] else 0
        if r > rank:
            keep[j] = True
            rank = r
    return keep


def _block_correlation_matrix(block: np.ndarray, correlation: float) -> np.ndarray:
    same = block[:, None] == block[None, :]
    R = np.where(same, float(correlation), 0.0)
    np.fill_diagonal(R, 1.0)
    return R


def _whitener(
    w: Optional[np.ndarray], R: Optional[np.ndarray]
) -> Optional[np.ndarray]:
    """
    Matrix ``A`` with ``A.T @ A`` equal to the GLS precision matrix.

    ``None`` stands for the identity.
    """
    if R is None:
        if w is None:
            return None
        return np.diag(np.sqrt(w))
    V = R
    if w is not None:
        s = 1.0 / np.sqrt(w)
        V = R * s[:, None] * s[None, :]
    L = linalg.cholesky(V, lower=True)
    return linalg.solve_triangular(L, np.eye(V.shape[0]), lower=True)


def _ols_block(
    X: np.ndarray, Y: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, int]:
    """
    Least squares of every column of ``Y`` (n × k) on ``X`` (n × p).

    Returns coefficients (k × p), unscaled standard deviations (p,),
    residual scales (k,) and residual degrees of freedom.
    """
    n, p = X.shape
    k = Y.shape[1]
    coef = np.full((k, p), np.nan)
    stdev = np.full(p, np.nan)
    est = _estimable_columns(X)
    pe = int(est.sum())
    df = n - pe
    if pe == 0:
        return coef, stdev, np.full(k, np.nan), max(df, 0)

    Xe = X[:, est]
    xtx_inv = np.linalg.inv(Xe.T @ Xe)
    b = xtx_inv @ (Xe.T @ Y)
    coef[:, est] = b.T
    stdev[est] = np.sqrt(np.diag(xtx_inv))

    if df > 0:
        resid = Y - Xe @ b
        sigma = np.sqrt(np.sum(resid * resid, axis=0) / df)
    else:
        sigma = np.full(k, np.nan)
    return coef, stdev, sigma, max(df, 0)


def _fit_site_ls(
    y: np.ndarray,
    X: np.ndarray,
    w: Optional[np.ndarray],
    R: Optional[np.ndarray],
) -> Tuple[np.ndarray, np.ndarray, float, int]:
    obs = np.isfinite(y)
    if w is not None:
        obs &= w > 0
    p = X.shape[1]
    if not obs.any():
        return np.full(p, np.nan), np.full(p, np.nan), np.nan, 0

    Xo, yo = X[obs], y[obs]
    A = _whitener(
        None if w is None else w[obs],
        None if R is None else R[np.ix_(obs, obs)],
    )
    if A is not None:
        Xo, yo = A @ Xo, A @ yo
    coef, stdev, sigma, df = _ols_block(Xo, yo[:, None])
    return coef[0], stdev, float(sigma[0]), df


def _fit_site_robust(
    y: np.ndarray, X: np.ndarray, w: Optional[np.ndarray]
) -> Tuple[np.ndarray, np.ndarray, float, int]:
    p = X.shape[1]
    coef = np.full(p, np.nan)
    stdev = np.full(p, np.nan)
    obs = np.isfinite(y)
    if w is not None:
        obs &= w > 0
    Xo, yo = X[obs], y[obs]
    if w is not None:
        sw = np.sqrt(w[obs])
        Xo, yo = Xo * sw[:, None], yo * sw

    est = _estimable_columns(Xo)
    pe = int(est.sum())
    df = int(obs.sum()) - pe
    if pe == 0 or df <= 0:
        return coef, stdev, np.nan, max(df, 0)

    res = sm.RLM(yo, Xo[:, est], M=sm.robust.norms.HuberT()).fit()
    scale = float(res.scale)
    coef[est] = res.params
    if scale > _EPS:
        stdev[est] = np.asarray(res.bse) / scale
    return coef, stdev, scale, df


def lm_fit(
    beta: Union[pd.DataFrame, np.ndarray],
    design: Union[pd.DataFrame, np.ndarray],
    method: str = "ls",
    weights: Optional[np.ndarray] = None,
    block: Optional[np.ndarray] = None,
    correlation: Optional[float] = None,
) -> LinearFit:
    """
    Fit a linear model to every site of a methylation matrix.

    Parameters
    ----------
    beta : pd.DataFrame or np.ndarray
        Sites × samples matrix; ``NaN`` marks missing values, which are
        dropped site by site.
    design : pd.DataFrame or np.ndarray
        Samples × coefficients design matrix.
    method : {"ls", "robust"}, default "ls"
        Least squares, or robust M-estimation with Huber's norm.
    weights : np.ndarray, optional
        Sites × samples non-negative observation weights.
    block : array-like, optional
        Random-effect grouping of samples (least squares only).
    correlation : float, optional
        Intra-block correlation, required with ``block``.

    Returns
    -------
    LinearFit

    Raises
    ------
    ValueError
        On dimension mismatches, unknown ``method`` or an unusable correlation.
    numpy.linalg.LinAlgError
        If the block covariance is not positive definite.
    """
    beta = _as_beta(beta)
    design_df = _as_design(design)
    Y = beta.to_numpy(dtype=float)
    X = design_df.to_numpy(dtype=float)
    n_sites, n = Y.shape
    p = X.shape[1]

    if X.shape[0] != n:
        raise ValueError(f"design rows ({X.shape[0]}) != samples ({n})")
    if method not in ("ls", "robust"):
        raise ValueError(f"Unknown fitting method: {method!r}")
    if weights is not None:
        weights = np.asarray(weights, dtype=float)
        if weights.shape != Y.shape:
            raise ValueError(f"weights shape {weights.shape} != beta shape {Y.shape}")

    R = None
    if block is not None:
        block = np.asarray(block)
        if block.shape[0] != n:
            raise ValueError("block must have one entry per sample")
        if correlation is None or not np.isfinite(correlation):
            raise ValueError("a finite block correlation is required with block")
        if method == "robust":
            logger.debug("Robust fitting ignores the random-effect block")
        else:
            R = _block_correlation_matrix(block, correlation)

    coef = np.full((n_sites, p), np.nan)
    stdev = np.full((n_sites, p), np.nan)
    sigma = np.full(n_sites, np.nan)
    df = np.zeros(n_sites, dtype=int)

    if method == "ls":
        todo = np.arange(n_sites)
        if weights is None:
            complete = np.isfinite(Y).all(axis=1)
            rows = np.flatnonzero(complete)
            if rows.size:
                A = _whitener(None, R)
                Xw = X if A is None else A @ X
                Yw = Y[rows].T if A is None else A @ Y[rows].T
                c, s, sg, d = _ols_block(Xw, Yw)
                coef[rows], stdev[rows], sigma[rows], df[rows] = c, s, sg, d
            todo = np.flatnonzero(~complete)
        for i in todo:
            w_row = None if weights is None else weights[i]
            coef[i], stdev[i], sigma[i], df[i] = _fit_site_ls(Y[i], X, w_row, R)
    else:
        for i in range(n_sites):
            w_row = None if weights is None else weights[i]
            coef[i], stdev[i], sigma[i], df[i] = _fit_site_robust(Y[i], X, w_row)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        amean = np.nanmean(Y, axis=1)

    cols = design_df.columns
    idx = beta.index
    return LinearFit(
        coefficients=pd.DataFrame(coef, index=idx, columns=cols),
        stdev_unscaled=pd.DataFrame(stdev, index=idx, columns=cols),
        sigma=pd.Series(sigma, index=idx, name="sigma"),
        df_residual=pd.Series(df, index=idx, name="df_residual"),
        amean=pd.Series(amean, index=idx, name="amean"),
        design=design_df,
        method=method,
        block=None if R is None else block,
        correlation=None if R is None else float(correlation),
    )


def _trimmed_mean(x: np.ndarray, trim: float = 0.15) -> float:
    x = np.sort(np.asarray(x, dtype=float)[np.isfinite(x)])
    if x.size == 0:
        return np.nan
    k = int(np.floor(trim * x.size))
    if 2 * k >= x.size:
        return float(np.mean(x))
    return float(np.mean(x[k : x.size - k]))


def duplicate_correlation(
    beta: Union[pd.DataFrame, np.ndarray],
    design: Union[pd.DataFrame, np.ndarray],
    block: np.ndarray,
    weights: Optional[np.ndarray] = None,
    trim: float = 0.15,
) -> Dict[str, Union[float, np.ndarray]]:
    """
    Estimate a consensus intra-block correlation shared by all sites.

    For each site the fixed-effects residuals are decomposed by a one-way
    ANOVA on ``block``; the per-site intra-class correlations are averaged on
    the Fisher-z scale with a trimmed mean.

    Returns
    -------
    dict
        ``consensus_correlation`` (float, ``NaN`` when no site is usable) and
        per-site ``correlation``.

    Raises
    ------
    ValueError
        If ``block`` has the wrong length or fewer than two levels.
    """
    beta = _as_beta(beta)
    X = _as_design(design).to_numpy()
    block = np.asarray(block)
    if block.shape[0] != beta.shape[1]:
        raise ValueError("block must have one entry per sample")
    levels = pd.unique(block)
    if levels.size < 2:
        raise ValueError("block must have at least two levels")

    fit = lm_fit(beta, X, method="ls", weights=weights)
    Y = beta.to_numpy(dtype=float)
    r = Y - np.nan_to_num(fit.coefficients.to_numpy()) @ X.T

    obs = np.isfinite(r)
    r0 = np.where(obs, r, 0.0)
    m = np.column_stack([obs[:, block == lv].sum(axis=1) for lv in levels]).astype(float)
    s = np.column_stack([r0[:, block == lv].sum(axis=1) for lv in levels])
    ss = (r0 * r0).sum(axis=1)

    with np.errstate(invalid="ignore", divide="ignore"):
        n = m.sum(axis=1)
        g = (m > 0).sum(axis=1).astype(float)
        group_sq = np.where(m > 0, s * s / np.where(m > 0, m, 1.0), 0.0).sum(axis=1)
        grand_sq = s.sum(axis=1) ** 2 / n
        ss_within = ss - group_sq
        ss_between = group_sq - grand_sq
        ms_between = ss_between / (g - 1.0)
        ms_within = ss_within / (n - g)
        n0 = (n - (m * m).sum(axis=1) / n) / (g - 1.0)
        denom = ms_between + (n0 - 1.0) * ms_within
        rho = (ms_between - ms_within) / denom

    usable = (g >= 2) & (n > g) & (n >= 3) & (denom > 0) & np.isfinite(rho)
    site_cor = np.full(Y.shape[0], np.nan)
    site_cor[usable] = np.clip(rho[usable], -0.99, 0.99)

    z = np.arctanh(site_cor[usable])
    consensus = float(np.tanh(_trimmed_mean(z, trim=trim))) if z.size else np.nan
    logger.debug(f"Consensus intra-block correlation: {consensus:.4f}")
    return {"consensus_correlation": consensus, "correlation": site_cor}


def _assign_partitions(
    n_sites: int, n_partitions: int, rng: Optional[np.random.Generator]
) -> List[np.ndarray]:
    rng = rng if rng is not None else np.random.default_rng()
    labels = rng.integers(0, n_partitions, size=n_sites)
    return [np.flatnonzero(labels == k) for k in range(n_partitions) if (labels == k).any()]


def lm_fit_partitioned(
    beta: pd.DataFrame,
    design: Union[pd.DataFrame, np.ndarray],
    method: str = "ls",
    weights: Optional[np.ndarray] = None,
    n_partitions: int = 8,
    rng: Optional[np.random.Generator] = None,
    n_jobs: int = 1,
) -> LinearFit:
    """
    Memory-safety variant of :func:`lm_fit`.

    Sites are randomly assigned to ``n_partitions`` groups, each group is
    fitted independently with the same design and the per-site outputs are
    reassembled in the original site order.

    Parameters
    ----------
    n_partitions : int, default 8
        Number of partitions (empty partitions are skipped).
    rng : numpy.random.Generator, optional
        Source of the partition assignment; fresh entropy when omitted.
    n_jobs : int, default 1
        joblib workers; partitions are fitted sequentially when 1.
    """
    beta = _as_beta(beta)
    design_df = _as_design(design)
    if n_partitions < 1:
        raise ValueError("n_partitions must be at least 1")
    if weights is not None:
        weights = np.asarray(weights, dtype=float)
        if weights.shape != beta.shape:
            raise ValueError(f"weights shape {weights.shape} != beta shape {beta.shape}")

    groups = _assign_partitions(beta.shape[0], n_partitions, rng)

    def _fit(idx: np.ndarray) -> LinearFit:
        w = None if weights is None else weights[idx]
        return lm_fit(beta.iloc[idx], design_df, method=method, weights=w)

    logger.progress("Fitting site partitions", total=len(groups))
    if n_jobs == 1:
        fits = []
        for idx in groups:
            fits.append(_fit(idx))
            logger.progress_update(1)
    else:
        fits = Parallel(n_jobs=n_jobs)(delayed(_fit)(idx) for idx in groups)
        logger.progress_update(len(groups))

    n_sites, p = beta.shape[0], design_df.shape[1]
    coef = np.full((n_sites, p), np.nan)
    stdev = np.full((n_sites, p), np.nan)
    sigma = np.full(n_sites, np.nan)
    df = np.zeros(n_sites, dtype=int)
    amean = np.full(n_sites, np.nan)
    for idx, fit in zip(groups, fits):
        coef[idx] = fit.coefficients.to_numpy()
        stdev[idx] = fit.stdev_unscaled.to_numpy()
        sigma[idx] = fit.sigma.to_numpy()
        df[idx] = fit.df_residual.to_numpy()
        amean[idx] = fit.amean.to_numpy()

    cols = design_df.columns
    sites = beta.index
    return LinearFit(
        coefficients=pd.DataFrame(coef, index=sites, columns=cols),
        stdev_unscaled=pd.DataFrame(stdev, index=sites, columns=cols),
        sigma=pd.Series(sigma, index=sites, name="sigma"),
        df_residual=pd.Series(df, index=sites, name="df_residual"),
        amean=pd.Series(amean, index=sites, name="amean"),
        design=design_df,
        method=method,
    )
