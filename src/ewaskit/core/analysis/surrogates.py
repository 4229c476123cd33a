#!/usr/bin/env python
# coding: utf-8


"""
Surrogate-variable estimation for unmeasured confounding.

Every estimator takes a fully observed sites × samples matrix together with
model matrices over samples and returns latent factors with one row per
sample. Randomness always comes from an explicit
:class:`numpy.random.Generator`, so two calls with equally seeded generators
give identical factors.

Key Components
--------------
est_dim_rmt
    Random-matrix-theory estimate of the number of significant components.
isva
    Independent surrogate variable analysis (FastICA on model residuals).
sva
    Iteratively re-weighted surrogate variable analysis.
smartsva
    SmartSVA: the re-weighted algorithm iterated to convergence from
    residual singular vectors.
estimate_surrogate_sets
    Builds the covariate-set catalogue of an association study, running the
    requested estimators on the most variable autosomal sites.
"""


from __future__ import annotations

import warnings
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.decomposition import FastICA
from sklearn.utils.extmath import randomized_svd
from statsmodels.stats.multitest import multipletests

from ewaskit.core.analysis.core_analysis import adjust_pvalues
from ewaskit.core.analysis.preparation import (
    impute_missing_values,
    select_most_variable,
)
from ewaskit.core.analysis.validation import build_model_matrix
from ewaskit.io.data_utils import CovariateSet
from ewaskit.utils.logger import log_stage, logger


def _seed(rng: np.random.Generator) -> int:
    return int(rng.integers(0, 2**31 - 1))


def _residualize(dat: np.ndarray, mod: np.ndarray) -> np.ndarray:
    """Residuals of every row of ``dat`` (sites × samples) regressed on ``mod``."""
    hat = mod @ np.linalg.pinv(mod)
    return dat - dat @ hat.T


def f_pvalues(dat: np.ndarray, mod: np.ndarray, mod0: np.ndarray) -> np.ndarray:
    """
    Per-site nested-model F-test p-values (``mod0`` nested in ``mod``).
    """
    n = dat.shape[1]
    df1 = np.linalg.matrix_rank(mod)
    df0 = np.linalg.matrix_rank(mod0)
    if df1 <= df0 or n <= df1:
        raise ValueError("models must be nested with residual degrees of freedom")
    rss1 = np.sum(_residualize(dat, mod) ** 2, axis=1)
    rss0 = np.sum(_residualize(dat, mod0) ** 2, axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        fstat = ((rss0 - rss1) / (df1 - df0)) / (rss1 / (n - df1))
    return stats.f.sf(fstat, df1 - df0, n - df1)


def edge_lfdr(p: np.ndarray, lam: float = 0.8, eps: float = 1e-8) -> np.ndarray:
    """
    Empirical local false discovery rates of a vector of p-values.

    The null proportion is Storey's ``pi0`` at ``lam``; the p-value density is
    estimated by a Gaussian kernel density on the probit scale.
    """
    p = np.asarray(p, dtype=float)
    pi0 = min(float(np.mean(p >= lam)) / (1.0 - lam), 1.0)
    x = stats.norm.ppf(np.clip(p, eps, 1.0 - eps))
    if pi0 == 0 or np.std(x) == 0:
        return np.full_like(p, pi0)

    grid = np.linspace(x.min(), x.max(), 512)
    density = stats.gaussian_kde(x)(grid)
    fx = np.interp(x, grid, density)
    with np.errstate(divide="ignore", invalid="ignore"):
        lfdr = pi0 * stats.norm.pdf(x) / fx
    return np.clip(np.nan_to_num(lfdr, nan=1.0), 0.0, 1.0)


def est_dim_rmt(matrix: np.ndarray) -> Dict[str, Any]:
    """
    Random-matrix-theory estimate of intrinsic dimensionality.

    Each sample (column) is standardised; eigenvalues of the sample
    correlation matrix exceeding the Marchenko–Pastur upper edge count as
    significant components.

    Parameters
    ----------
    matrix : np.ndarray
        Sites × samples matrix, typically model residuals.

    Returns
    -------
    dict
        ``dim`` (int), ``evals`` (descending eigenvalues) and ``lambda_max``.
    """
    M = np.asarray(matrix, dtype=float)
    m, n = M.shape
    sd = M.std(axis=0, ddof=1)
    sd[sd == 0] = 1.0
    Z = (M - M.mean(axis=0)) / sd
    sigma2 = float(np.var(Z.ravel(), ddof=1))
    q = m / n
    lambda_max = sigma2 * (1.0 + 1.0 / q + 2.0 * np.sqrt(1.0 / q))
    C = Z.T @ Z / m
    evals = np.sort(np.linalg.eigvalsh(C))[::-1]
    dim = int(np.sum(evals > lambda_max))
    return {"dim": dim, "evals": evals, "lambda_max": lambda_max}


def _fisher_pvalues(dat: np.ndarray, v: np.ndarray) -> np.ndarray:
    n = dat.shape[1]
    dc = dat - dat.mean(axis=1, keepdims=True)
    vc = v - v.mean()
    with np.errstate(invalid="ignore", divide="ignore"):
        r = dc @ vc / (np.linalg.norm(dc, axis=1) * np.linalg.norm(vc))
    r = np.clip(np.nan_to_num(r), -0.999999, 0.999999)
    z = np.arctanh(r)
    return 2 * stats.norm.sf(np.abs(z), scale=1.0 / np.sqrt(n - 3))


def _variable_pvalues(dat: np.ndarray, design: np.ndarray, col: int) -> np.ndarray:
    n, p = design.shape
    xtx_inv = np.linalg.pinv(design.T @ design)
    coef = dat @ design @ xtx_inv
    resid = dat - coef @ design.T
    df = n - np.linalg.matrix_rank(design)
    s2 = np.sum(resid**2, axis=1) / df
    with np.errstate(invalid="ignore", divide="ignore"):
        t = coef[:, col] / np.sqrt(s2 * xtx_inv[col, col])
    return 2 * stats.t.sf(np.abs(t), df)


def isva(
    beta: np.ndarray,
    mod: np.ndarray,
    ncomp: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
    min_sites: int = 500,
) -> Dict[str, Any]:
    """
    Independent surrogate variable analysis.

    The matrix is residualised on the full model (variable last), the
    residuals are decomposed by FastICA into ``ncomp`` components and every
    component is then re-derived from the sites associated with it: sites
    with a q-value below 0.05 (or at least the top ``min_sites``) are taken
    from the original data and the right singular vector most correlated
    with the component becomes the surrogate.

    Parameters
    ----------
    beta : np.ndarray
        Fully observed sites × samples matrix.
    mod : np.ndarray
        Full model matrix (samples × p) with the variable of interest last.
    ncomp : int, optional
        Number of components; :func:`est_dim_rmt` on the residuals when unset.
    rng : numpy.random.Generator, optional
        Seeds FastICA.

    Returns
    -------
    dict
        ``isv`` (samples × k), ``n_isv``, ``pvalues`` and ``qvalues`` of the
        variable adjusted for the surrogates, and ``deg`` (positions of sites
        with q < 0.05).
    """
    rng = rng if rng is not None else np.random.default_rng()
    dat = np.asarray(beta, dtype=float)
    mod = np.asarray(mod, dtype=float)
    m, n = dat.shape

    resid = _residualize(dat, mod)
    if ncomp is None:
        ncomp = est_dim_rmt(resid)["dim"]
        if ncomp < 1:
            logger.warning("No significant residual component found; using one ISV")
            ncomp = 1
    ncomp = max(1, min(int(ncomp), n - np.linalg.matrix_rank(mod)))

    ica = FastICA(
        n_components=ncomp,
        whiten="unit-variance",
        max_iter=1000,
        random_state=_seed(rng),
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        ica.fit(resid)
    components = ica.mixing_

    n_keep_min = min(min_sites, m)
    isv = np.empty((n, ncomp))
    for k in range(ncomp):
        pv = _fisher_pvalues(dat, components[:, k])
        qv = multipletests(pv, method="fdr_bh")[1]
        nsig = max(int(np.sum(qv < 0.05)), n_keep_min)
        top = np.argsort(pv, kind="stable")[:nsig]
        red = dat[top] - dat[top].mean(axis=1, keepdims=True)
        _, _, vt = np.linalg.svd(red, full_matrices=False)
        cors = np.abs([np.corrcoef(components[:, k], v)[0, 1] for v in vt[:ncomp]])
        isv[:, k] = vt[int(np.nanargmax(cors))]

    pvalues = _variable_pvalues(dat, np.column_stack([mod, isv]), mod.shape[1] - 1)
    qvalues = adjust_pvalues(pvalues, "fdr_bh")
    return {
        "isv": isv,
        "n_isv": ncomp,
        "pvalues": pvalues,
        "qvalues": qvalues,
        "deg": np.flatnonzero(qvalues < 0.05),
    }


def num_sv(
    dat: np.ndarray,
    mod: np.ndarray,
    rng: Optional[np.random.Generator] = None,
    n_perm: int = 20,
) -> int:
    """
    Number of surrogate variables by permutation (Buja and Eyuboglu).

    Each site's residuals are permuted across samples; a component is
    significant while its share of residual variance exceeds the permuted
    shares in at least 90% of permutations.
    """
    rng = rng if rng is not None else np.random.default_rng()
    hat = mod @ np.linalg.pinv(mod)
    res = dat - dat @ hat.T
    n = dat.shape[1]
    ndf = min(n - int(np.ceil(np.trace(hat))), min(res.shape))
    if ndf < 1:
        return 0

    d = np.linalg.svd(res, compute_uv=False)[:ndf]
    dstat = d**2 / np.sum(d**2)
    dstat0 = np.empty((n_perm, ndf))
    for b in range(n_perm):
        res0 = rng.permuted(res, axis=1)
        res0 = res0 - res0 @ hat.T
        d0 = np.linalg.svd(res0, compute_uv=False)[:ndf]
        dstat0[b] = d0**2 / np.sum(d0**2)

    psv = np.array([np.mean(dstat0[:, i] >= dstat[i]) for i in range(ndf)])
    psv = np.maximum.accumulate(psv)
    return int(np.sum(psv <= 0.1))


def _surrogate_weights(
    dat: np.ndarray, mod: np.ndarray, mod0: np.ndarray, sv: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """Posterior probabilities of latent (``gam``) and variable (``b``) association."""
    ptmp = f_pvalues(dat, np.column_stack([mod, sv]), np.column_stack([mod0, sv]))
    pprob_b = 1.0 - edge_lfdr(ptmp)
    ptmp = f_pvalues(dat, np.column_stack([mod0, sv]), mod0)
    pprob_gam = 1.0 - edge_lfdr(ptmp)
    return pprob_gam, pprob_b


def sva(
    beta: np.ndarray,
    mod: np.ndarray,
    mod0: np.ndarray,
    n_sv: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
    n_iter: int = 5,
) -> Dict[str, Any]:
    """
    Iteratively re-weighted surrogate variable analysis.

    Parameters
    ----------
    beta : np.ndarray
        Fully observed sites × samples matrix.
    mod, mod0 : np.ndarray
        Full and null model matrices over samples.
    n_sv : int, optional
        Number of surrogates; :func:`num_sv` when unset.
    rng : numpy.random.Generator, optional
        Drives the permutations of :func:`num_sv`.
    n_iter : int, default 5
        Re-weighting iterations.

    Returns
    -------
    dict
        ``sv`` (samples × n_sv), ``n_sv``, ``pprob_gam`` and ``pprob_b``.
    """
    dat = np.asarray(beta, dtype=float)
    mod = np.asarray(mod, dtype=float)
    mod0 = np.asarray(mod0, dtype=float)
    n = dat.shape[1]

    if n_sv is None:
        n_sv = num_sv(dat, mod, rng=rng)
    logger.debug(f"Number of significant surrogate variables is: {n_sv}")
    if n_sv == 0:
        return {"sv": np.empty((n, 0)), "n_sv": 0, "pprob_gam": None, "pprob_b": None}

    resid = _residualize(dat, mod)
    _, vecs = np.linalg.eigh(resid.T @ resid)
    sv = vecs[:, ::-1][:, :n_sv]

    pprob_gam = pprob_b = None
    dats = resid
    for _ in range(n_iter):
        pprob_gam, pprob_b = _surrogate_weights(dat, mod, mod0, sv)
        pprob = pprob_gam * (1.0 - pprob_b)
        dats = dat * pprob[:, None]
        dats = dats - dats.mean(axis=1, keepdims=True)
        _, vecs = np.linalg.eigh(dats.T @ dats)
        sv = vecs[:, ::-1][:, :n_sv]

    _, _, vt = np.linalg.svd(dats, full_matrices=False)
    return {
        "sv": vt[:n_sv].T,
        "n_sv": int(n_sv),
        "pprob_gam": pprob_gam,
        "pprob_b": pprob_b,
    }


def _mean_rsq(prev: np.ndarray, new: np.ndarray) -> float:
    X = np.column_stack([np.ones(prev.shape[0]), prev])
    coef = np.linalg.lstsq(X, new, rcond=None)[0]
    resid = new - X @ coef
    centred = new - new.mean(axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        rsq = 1.0 - np.sum(resid**2, axis=0) / np.sum(centred**2, axis=0)
    return float(np.nanmean(rsq))


def smartsva(
    beta: np.ndarray,
    mod: np.ndarray,
    mod0: Optional[np.ndarray],
    n_sv: int,
    rng: Optional[np.random.Generator] = None,
    alpha: float = 0.25,
    epsilon: float = 1e-3,
    max_iter: int = 100,
) -> Dict[str, Any]:
    """
    SmartSVA surrogate estimation.

    Starts from the leading right singular vectors of the residuals on the
    full model and re-weights sites by ``(P(latent) · (1 - P(variable)))^alpha``
    until the mean R² between successive surrogate sets changes by less
    than ``epsilon``.

    Parameters
    ----------
    beta : np.ndarray
        Fully observed sites × samples matrix.
    mod : np.ndarray
        Full model matrix.
    mod0 : np.ndarray or None
        Null model matrix; the first column of ``mod`` when ``None``.
    n_sv : int
        Number of surrogates.
    rng : numpy.random.Generator, optional
        Seeds the truncated randomised SVD.

    Returns
    -------
    dict
        ``sv`` (samples × n_sv), ``n_sv``, ``iterations`` and final ``rsq``.
    """
    rng = rng if rng is not None else np.random.default_rng()
    dat = np.asarray(beta, dtype=float)
    mod = np.asarray(mod, dtype=float)
    mod0 = mod[:, :1] if mod0 is None else np.asarray(mod0, dtype=float)
    if n_sv is None or n_sv < 1:
        raise ValueError("smartsva requires a positive number of surrogate variables")
    n_sv = int(min(n_sv, dat.shape[1] - mod.shape[1] - 1))
    if n_sv < 1:
        raise ValueError("too few samples for the requested surrogate variables")

    resid = _residualize(dat, mod)
    _, _, vt = randomized_svd(resid, n_sv, random_state=_seed(rng))
    sv = vt.T

    rsq = rsq_prev = 0.0
    iterations = 0
    for i in range(max_iter):
        iterations = i + 1
        pprob_gam, pprob_b = _surrogate_weights(dat, mod, mod0, sv)
        pprob = (pprob_gam * (1.0 - pprob_b)) ** alpha
        dats = dat * pprob[:, None]
        dats = dats - dats.mean(axis=1, keepdims=True)
        _, _, vt = randomized_svd(dats, n_sv, random_state=_seed(rng))
        rsq = _mean_rsq(sv, vt.T)
        sv = vt.T
        if i > 0 and abs(rsq - rsq_prev) < epsilon:
            break
        rsq_prev = rsq

    logger.debug(f"SmartSVA converged after {iterations} iteration(s), R² = {rsq:.4f}")
    return {"sv": sv, "n_sv": n_sv, "iterations": iterations, "rsq": rsq}


def _factor_frame(factors: np.ndarray, prefix: str, index: pd.Index) -> pd.DataFrame:
    factors = np.asarray(factors, dtype=float).reshape(len(index), -1)
    cols = [f"{prefix}{k + 1}" for k in range(factors.shape[1])]
    return pd.DataFrame(factors, index=index, columns=cols)


def _with_covariates(
    covariates: Optional[pd.DataFrame], factors: pd.DataFrame
) -> pd.DataFrame:
    if covariates is None:
        return factors
    cov = covariates.copy()
    cov.index = factors.index
    return pd.concat([cov, factors], axis=1)


def estimate_surrogate_sets(
    beta: pd.DataFrame,
    variable: np.ndarray,
    covariates: Optional[pd.DataFrame],
    autosomal_sites: pd.Index,
    use_isva: bool = True,
    use_sva: bool = True,
    use_smartsva: bool = False,
    n_sv: Optional[int] = None,
    most_variable: Optional[int] = None,
    random_seed: int = 20161123,
    verbose: bool = False,
) -> Tuple[Dict[CovariateSet, Optional[pd.DataFrame]], Any, Optional[int]]:
    """
    Build the covariate-set catalogue of an association study.

    The catalogue always holds ``NONE`` and, with covariates, ``ALL``. Each
    requested estimator is run on the ``most_variable`` autosomal sites with
    the highest variance (all autosomal sites when unset), mean-imputed,
    with a generator freshly seeded from ``random_seed``. Its factors,
    appended to the covariates, form one more set.

    Parameters
    ----------
    beta : pd.DataFrame
        Preprocessed sites × samples matrix.
    variable : np.ndarray
        Canonical variable of interest.
    covariates : pd.DataFrame or None
        Simplified covariates.
    autosomal_sites : pd.Index
        Autosomal site identifiers of the feature set.
    n_sv : int, optional
        Number of surrogates (estimated per algorithm when unset; SmartSVA
        uses ``est_dim_rmt(residuals)["dim"] + 1``).

    Returns
    -------
    covariate_sets : dict
        ``CovariateSet`` → covariate DataFrame (``None`` for ``NONE``), in
        enumeration order.
    raw : dict or None
        Raw return value of the last estimator that ran.
    most_variable : int or None
        Number of sites the estimators used.

    Raises
    ------
    ValueError
        If ``most_variable`` exceeds the available autosomal sites.
    """
    sets: Dict[CovariateSet, Optional[pd.DataFrame]] = {CovariateSet.NONE: None}
    if covariates is not None:
        sets[CovariateSet.ALL] = covariates

    if not (use_isva or use_sva or use_smartsva):
        return sets, None, most_variable

    sites = autosomal_sites.intersection(beta.index)
    reduced = select_most_variable(beta, sites=sites, n=most_variable)
    most_variable = reduced.shape[0]
    dat = impute_missing_values(reduced).to_numpy()

    samples = beta.columns
    mod0 = build_model_matrix(covariates, len(samples), index=samples).to_numpy()
    mod = np.column_stack([mod0, np.asarray(variable, dtype=float)])

    raw = None
    if use_isva:
        log_stage(verbose, "ISVA.")
        raw = isva(dat, mod, ncomp=n_sv, rng=np.random.default_rng(random_seed))
        sets[CovariateSet.ISVA] = _with_covariates(
            covariates, _factor_frame(raw["isv"], "isv", samples)
        )

    if use_sva:
        log_stage(verbose, "SVA.")
        raw = sva(dat, mod, mod0, n_sv=n_sv, rng=np.random.default_rng(random_seed))
        sets[CovariateSet.SVA] = _with_covariates(
            covariates, _factor_frame(raw["sv"], "sv", samples)
        )

    if use_smartsva:
        log_stage(verbose, "SmartSVA.")
        rng = np.random.default_rng(random_seed)
        k = n_sv
        if k is None:
            k = est_dim_rmt(_residualize(dat, mod))["dim"] + 1
        raw = smartsva(dat, mod, mod0, n_sv=k, rng=rng)
        sets[CovariateSet.SMARTSVA] = _with_covariates(
            covariates, _factor_frame(raw["sv"], "sv", samples)
        )

    return sets, raw, most_variable
