#!/usr/bin/env python
# coding: utf-8


"""
Statistical engine for site-wise association tests.

This module implements empirical Bayes moderated statistics following
Smyth (2004) limma methodology and the regression step of an
epigenome-wide association study: one linear model per site with the
variable of interest, optional covariates, an optional random batch effect
and an optional cell-type interaction design.

Features
--------
- Empirical Bayes variance shrinkage (Smyth moment matching)
- Outlier-robust prior estimation with per-site prior degrees of freedom
- Cell-type interaction designs (``M = A·X·p + B·X·(1-p) + e``)
- Random-effect batch via a consensus intra-block correlation, with an
  automatic fixed-effects fallback when the block fit fails
- Memory-safety mode fitting sites in random partitions
- FDR and Holm adjusted p-values and 95% confidence intervals
"""


from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.optimize import root_scalar
from scipy.special import digamma, polygamma
from statsmodels.stats.multitest import multipletests

from ewaskit.core.analysis.linear_model import (
    LinearFit,
    duplicate_correlation,
    lm_fit,
    lm_fit_partitioned,
)
from ewaskit.core.analysis.validation import (
    check_analysis_memory,
    validate_regression_inputs,
)
from ewaskit.utils.logger import log_stage, logger


def _winsorize_array(
    arr: np.ndarray, lower: float = 0.05, upper: float = 0.95
) -> np.ndarray:
    """
    Clamp a numeric array to its ``lower`` and ``upper`` quantiles.

    Non-finite entries are ignored during quantile computation and preserved
    in the output.

    Raises
    ------
    ValueError
        If ``0 ≤ lower < upper ≤ 1`` is violated.
    """
    if not (0.0 <= lower < upper <= 1.0):
        raise ValueError("`lower` and `upper` must satisfy 0 <= lower < upper <= 1")

    arr = np.asarray(arr, dtype=float)
    finite = np.isfinite(arr)
    if not finite.any():
        return arr.copy()

    lo = np.quantile(arr[finite], lower)
    hi = np.quantile(arr[finite], upper)
    return np.where(finite, np.clip(arr, lo, hi), arr)


@dataclass
class SmythPrior:
    """
    Prior degrees of freedom and variance scale of the site variances.

    ``df_shrunk`` holds per-site prior degrees of freedom when the prior
    was estimated robustly; outlying sites receive less prior weight.
    """

    df_prior: float
    var_prior: float
    df_shrunk: Optional[np.ndarray] = None


# 128-node Gauss-Legendre rule mapped onto [0, 1]
_GL_NODES, _GL_WEIGHTS = np.polynomial.legendre.leggauss(128)
_GL_NODES = (_GL_NODES + 1.0) / 2.0
_GL_WEIGHTS = _GL_WEIGHTS / 2.0


def _f_distribution(df1, df2):
    """Frozen F(df1, df2); the ``df2 = inf`` limit is chi2(df1) / df1."""
    if np.isinf(df2):
        return stats.chi2(df1, scale=1.0 / np.asarray(df1, dtype=float))
    return stats.f(df1, df2)


def _fit_f_dist(x: np.ndarray, d: np.ndarray) -> Tuple[float, float]:
    """
    Moment-matching fit of a scaled F distribution to ``x``.

    Follows limma's ``fitFDist`` (Smyth, 2004): the log-variances are
    centred by ``digamma(df/2) - log(df/2)``, their excess variance over
    ``trigamma(df/2)`` is inverted through the trigamma function by root
    finding.

    Returns
    -------
    tuple of float
        ``(df_prior, var_prior)``; ``df_prior`` is ``inf`` when the
        variances show no excess dispersion.
    """
    m = np.median(x)
    if m == 0:
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    e = np.log(x) - digamma(d / 2) + np.log(d / 2)
    emean = float(np.mean(e))
    if e.size < 2:
        return np.inf, float(np.exp(emean))
    evar = float(np.var(e, ddof=1) - np.mean(polygamma(1, d / 2)))

    if evar <= 0:
        return np.inf, float(np.exp(emean))

    def objective(t: float) -> float:
        return polygamma(1, t) - evar

    try:
        sol = root_scalar(objective, bracket=[1e-8, 1e8], method="brentq")
        if not sol.converged:
            raise RuntimeError("Root finding failed to converge.")
        t = sol.root
    except (ValueError, RuntimeError):
        return np.inf, float(np.exp(emean))

    return float(2 * t), float(np.exp(emean + digamma(t) - np.log(t)))


def _winsorized_log_f_moments(
    df1: float, df2: float, winsor_tail_p: Tuple[float, float]
) -> Tuple[float, float]:
    """
    Mean and variance of ``log F(df1, df2)`` winsorised at ``winsor_tail_p``.

    The central part is integrated by Gauss-Legendre quadrature on the
    ``f / (1 + f)`` scale; each tail contributes its clamp value.
    """
    dist = _f_distribution(df1, df2)
    tails = np.asarray(winsor_tail_p, dtype=float)
    fq = dist.ppf([tails[0], 1.0 - tails[1]])
    zq = np.log(fq)
    q = fq / (1.0 + fq)
    width = q[1] - q[0]
    nodes = q[0] + width * _GL_NODES
    fnodes = nodes / (1.0 - nodes)
    znodes = np.log(fnodes)
    density = dist.pdf(fnodes) / (1.0 - nodes) ** 2

    mean = width * np.sum(_GL_WEIGHTS * density * znodes) + np.sum(zq * tails)
    var = width * np.sum(_GL_WEIGHTS * density * (znodes - mean) ** 2) + np.sum(
        (zq - mean) ** 2 * tails
    )
    return float(mean), float(var)


def _fit_f_dist_robustly(
    x: np.ndarray, d: np.ndarray, winsor_tail_p: Tuple[float, float]
) -> Tuple[float, float, np.ndarray]:
    """
    Outlier-robust fit of a scaled F distribution (limma ``fitFDistRobustly``).

    The prior degrees of freedom are chosen so that the winsorised variance
    of the log-variances matches its theoretical value. Each site then gets
    its own prior degrees of freedom, shrunk towards zero by the posterior
    probability that it is an outlier.

    Returns
    -------
    tuple
        ``(df_prior, var_prior, df_shrunk)`` with ``df_shrunk`` per site.
    """
    n = x.size
    lower, upper = winsor_tail_p
    if not (0.0 < lower < 0.5 and 0.0 < upper < 0.5):
        raise ValueError("winsor_tail_p proportions must lie in (0, 0.5)")

    x = np.maximum(x, np.median(x) * 1e-12)
    df2_nr, s2_nr = _fit_f_dist(x, d)
    if lower < 1.0 / n and upper < 1.0 / n:
        return df2_nr, s2_nr, np.full(n, df2_nr)

    # bring sites with fewer residual df onto the largest df by quantile
    df1 = float(d.max())
    short = d < df1 - 1e-14
    if short.any():
        ref = _f_distribution(d[short], df2_nr)
        target = _f_distribution(df1, df2_nr)
        f = x[short] / s2_nr
        with np.errstate(divide="ignore", invalid="ignore"):
            f_new = np.where(
                ref.logsf(f) < ref.logcdf(f),
                target.isf(ref.sf(f)),
                target.ppf(ref.cdf(f)),
            )
        x = x.copy()
        x[short] = f_new * s2_nr

    z = np.log(x)
    ztrend = float(stats.trim_mean(z, upper))
    zresid = z - ztrend
    zwins = _winsorize_array(zresid, lower, 1.0 - upper)
    zwmean = float(np.mean(zwins))
    zwvar = float(np.var(zwins, ddof=1))

    mean_inf, var_inf = _winsorized_log_f_moments(df1, np.inf, winsor_tail_p)
    if var_inf <= 0 or zwvar <= 0:
        return df2_nr, s2_nr, np.full(n, df2_nr)
    funval_inf = np.log(zwvar / var_inf)

    if funval_inf <= 0:
        log_s20 = ztrend + zwmean - mean_inf
        fstat = np.exp(z - log_s20)
        tail_p = _f_distribution(df1, np.inf).sf(fstat)
        empirical = (n - stats.rankdata(fstat) + 0.5) / n
        not_outlier = np.minimum(tail_p / empirical, 1.0)
        df_shrunk = np.full(n, np.inf)
        outlier = not_outlier < 1
        if outlier.any():
            df_shrunk[outlier] = not_outlier[outlier] * n * df1
            o = np.argsort(tail_p)
            df_shrunk[o] = np.maximum.accumulate(df_shrunk[o])
        return np.inf, float(np.exp(log_s20)), df_shrunk

    if np.isinf(df2_nr):
        return df2_nr, s2_nr, np.full(n, df2_nr)

    def objective(par: float) -> float:
        _, v = _winsorized_log_f_moments(df1, par / (1.0 - par), winsor_tail_p)
        return funval_inf if v <= 0 else np.log(zwvar / v)

    start = df2_nr / (1.0 + df2_nr)
    if objective(start) >= 0:
        df2 = df2_nr
    else:
        sol = root_scalar(
            objective, bracket=[start, 1.0 - 1e-10], method="brentq", xtol=1e-8
        )
        df2 = sol.root / (1.0 - sol.root)

    mean, _ = _winsorized_log_f_moments(df1, df2, winsor_tail_p)
    log_s20 = ztrend + zwmean - mean
    fstat = np.exp(z - log_s20)
    log_tail_p = _f_distribution(df1, df2).logsf(fstat)
    log_empirical = np.log(n - stats.rankdata(fstat) + 0.5) - np.log(n)
    log_not_outlier = np.minimum(log_tail_p - log_empirical, 0.0)
    if not (log_not_outlier < 0).any():
        return df2, float(np.exp(log_s20)), np.full(n, df2)

    not_outlier = np.exp(log_not_outlier)
    min_log_tail = float(np.min(log_tail_p))
    if np.isinf(min_log_tail):
        df_shrunk = not_outlier * df2
    else:
        df2_outlier = np.log(0.5) / min_log_tail * df2
        new_log_tail = _f_distribution(df1, df2_outlier).logsf(np.max(fstat))
        df2_outlier = np.log(0.5) / new_log_tail * df2_outlier
        df_shrunk = not_outlier * df2 - np.expm1(log_not_outlier) * df2_outlier

    # monotone in the tail probability, pooled over the most outlying sites
    o = np.argsort(log_tail_p)
    ordered = df_shrunk[o]
    running = np.cumsum(ordered) / np.arange(1, n + 1)
    imin = int(np.argmin(running))
    ordered[: imin + 1] = running[imin]
    df_shrunk = np.empty(n)
    df_shrunk[o] = np.maximum.accumulate(ordered)
    return df2, float(np.exp(log_s20)), df_shrunk


def _estimate_smyth_prior(
    variances: np.ndarray,
    df: np.ndarray,
    robust: bool = False,
    winsor_tail_p: Tuple[float, float] = (0.05, 0.1),
) -> SmythPrior:
    """
    Estimate empirical Bayes prior degrees of freedom (d₀) and variance scale (s₀²) \
    of per-site residual variances.

    Parameters
    ----------
    variances : np.ndarray
        Per-site residual variances.
    df : np.ndarray
        Per-site residual degrees of freedom.
    robust : bool, default False
        Use :func:`_fit_f_dist_robustly`, which also yields per-site prior
        degrees of freedom.
    winsor_tail_p : tuple of float
        Lower and upper tail proportions for robust mode.

    Returns
    -------
    SmythPrior
        In robust mode ``df_shrunk`` covers every input site; sites without
        a usable variance take the global ``df_prior``.

    Raises
    ------
    ValueError
        If no site has a finite variance with positive residual df.
    """
    x = np.asarray(variances, dtype=float)
    d = np.asarray(df, dtype=float)
    ok = np.isfinite(x) & np.isfinite(d) & (d > 0)
    if not ok.any():
        raise ValueError("No site has a usable residual variance.")
    xo, do = np.maximum(x[ok], 0.0), d[ok]

    zero_median = np.median(xo) == 0
    if zero_median:
        logger.warning("More than half of residual variances are exactly zero")

    if not robust or xo.size < 3 or zero_median:
        df_prior, var_prior = _fit_f_dist(xo, do)
        return SmythPrior(df_prior=df_prior, var_prior=var_prior)

    df_prior, var_prior, shrunk = _fit_f_dist_robustly(xo, do, winsor_tail_p)
    df_shrunk = np.full(x.shape, df_prior)
    df_shrunk[ok] = shrunk
    return SmythPrior(df_prior=df_prior, var_prior=var_prior, df_shrunk=df_shrunk)


def _moderated_variance(
    sample_var: np.ndarray, df_residual: np.ndarray, df_prior, var_prior: float
) -> np.ndarray:
    """
    Compute moderated (shrunk) variances via empirical Bayes blending.

    Formula:
        s₂_post = (d₀·s₀² + df_resid·s²) / (d₀ + df_resid)

    ``df_prior`` is a scalar or one value per site. Sites with infinite
    prior df, or without any degrees of freedom, take the prior variance.
    """
    sample_var = np.asarray(sample_var, dtype=float)
    df_residual = np.asarray(df_residual, dtype=float)

    if not np.isfinite(var_prior) or var_prior <= 0:
        raise ValueError("var_prior must be a positive finite scalar")
    d0 = np.broadcast_to(np.asarray(df_prior, dtype=float), sample_var.shape)

    s2 = np.where(df_residual > 0, np.nan_to_num(sample_var), 0.0)
    total = d0 + df_residual
    with np.errstate(invalid="ignore", divide="ignore"):
        moderated = (d0 * var_prior + df_residual * s2) / total
    moderated = np.where(np.isinf(d0) | (total <= 0), var_prior, moderated)
    return np.maximum(moderated, 1e-12)


@dataclass
class ModeratedFit:
    """
    Empirical Bayes moderated statistics of a :class:`LinearFit`.

    ``df_prior`` is per site (constant unless the prior was robust);
    ``t`` and ``p_value`` are sites × coefficients DataFrames.
    """

    fit: LinearFit
    s2_prior: float
    df_prior: pd.Series
    s2_post: pd.Series
    df_total: pd.Series
    t: pd.DataFrame
    p_value: pd.DataFrame


def e_bayes(
    fit: LinearFit,
    robust: bool = False,
    winsor_tail_p: Tuple[float, float] = (0.05, 0.1),
) -> ModeratedFit:
    """
    Moderate the residual variances of a site-wise fit.

    Parameters
    ----------
    fit : LinearFit
        Output of :func:`~ewaskit.core.analysis.linear_model.lm_fit`.
    robust : bool, default False
        Outlier-robust prior with per-site prior degrees of freedom.
    winsor_tail_p : tuple of float, default (0.05, 0.1)
        Lower and upper tail proportions used in robust mode.

    Returns
    -------
    ModeratedFit
        ``df_total = min(df_residual + df_prior, sum(df_residual))`` per site.
    """
    s2 = fit.sigma.to_numpy() ** 2
    df = fit.df_residual.to_numpy().astype(float)
    prior = _estimate_smyth_prior(s2, df, robust=robust, winsor_tail_p=winsor_tail_p)
    if prior.df_shrunk is not None:
        df_prior = prior.df_shrunk
    else:
        df_prior = np.full(df.shape, prior.df_prior)
    s2_post = _moderated_variance(s2, df, df_prior, prior.var_prior)

    df_pooled = float(np.sum(df))
    df_total = np.minimum(df + df_prior, df_pooled)

    coef = fit.coefficients.to_numpy()
    stdev = fit.stdev_unscaled.to_numpy()
    with np.errstate(invalid="ignore", divide="ignore"):
        t = coef / (stdev * np.sqrt(s2_post)[:, None])
    p = 2 * stats.t.sf(np.abs(t), df_total[:, None])

    idx, cols = fit.coefficients.index, fit.coefficients.columns
    logger.debug(f"Prior df = {prior.df_prior:.3f}, prior variance = {prior.var_prior:.3e}")
    return ModeratedFit(
        fit=fit,
        s2_prior=prior.var_prior,
        df_prior=pd.Series(df_prior, index=idx, name="df_prior"),
        s2_post=pd.Series(s2_post, index=idx, name="s2_post"),
        df_total=pd.Series(df_total, index=idx, name="df_total"),
        t=pd.DataFrame(t, index=idx, columns=cols),
        p_value=pd.DataFrame(p, index=idx, columns=cols),
    )


def adjust_pvalues(pvals: Sequence[float], method: str = "fdr_bh") -> np.ndarray:
    """
    Multiple-testing adjustment with ``statsmodels.multipletests``.

    ``NaN`` p-values stay ``NaN`` and are excluded from the family.
    """
    p = np.asarray(pvals, dtype=float)
    out = np.full_like(p, np.nan)
    ok = np.isfinite(p)
    if ok.any():
        out[ok] = multipletests(p[ok], method=method)[1]
    return out


def build_ewas_design(
    variable: np.ndarray,
    covariates: Optional[pd.DataFrame] = None,
    cell_counts: Optional[np.ndarray] = None,
    sample_names: Optional[pd.Index] = None,
) -> pd.DataFrame:
    """
    Design matrix of the association model.

    Columns are ``intercept``, ``variable`` and then the covariates. With
    cell counts ``p`` the intercept is dropped and the remaining columns ``X``
    are replaced by ``X·p`` followed by ``X·(1-p)`` (prefixed ``typeB.``), so
    that the ``variable`` coefficient is the effect within the target cell
    type.
    """
    n = len(variable)
    index = sample_names if sample_names is not None else pd.RangeIndex(n)
    design = pd.DataFrame(
        {"intercept": np.ones(n), "variable": np.asarray(variable, dtype=float)},
        index=index,
    )
    if covariates is not None and covariates.shape[1] > 0:
        cov = covariates.astype(float).copy()
        cov.index = index
        design = pd.concat([design, cov], axis=1)

    if cell_counts is not None:
        cc = np.asarray(cell_counts, dtype=float)[:, None]
        design = design.drop(columns="intercept")
        type_b = (design * (1.0 - cc)).add_prefix("typeB.")
        design = pd.concat([design * cc, type_b], axis=1)
    return design


@dataclass(frozen=True)
class AnalysisResult:
    """
    Regression output for one covariate set.

    Attributes
    ----------
    design : pd.DataFrame
        Design matrix that was fitted.
    batch : pd.Series or None
        Random-effect grouping, ``None`` when the fixed-effects path ran.
    batch_cor : float or None
        Consensus intra-block correlation.
    cell_counts : pd.Series or None
        Target cell-type proportions.
    fit_path : {"random_effect", "fixed_effects"}
        Which model produced ``table``.
    fit_error : str or None
        Message of a failed random-effect fit.
    table : pd.DataFrame
        Per-site statistics (see :func:`ewas_regression`).
    """

    design: pd.DataFrame
    batch: Optional[pd.Series]
    batch_cor: Optional[float]
    cell_counts: Optional[pd.Series]
    fit_path: str
    fit_error: Optional[str]
    table: pd.DataFrame


def ewas_regression(
    variable: np.ndarray,
    beta: pd.DataFrame,
    covariates: Optional[pd.DataFrame] = None,
    batch: Optional[pd.Series] = None,
    weights: Optional[np.ndarray] = None,
    cell_counts: Optional[pd.Series] = None,
    winsorize_pct: Optional[float] = 0.05,
    robust: bool = True,
    rlm: bool = False,
    lmfit_safer: bool = False,
    n_partitions: int = 8,
    n_jobs: int = 1,
    rng: Optional[np.random.Generator] = None,
    verbose: bool = False,
) -> AnalysisResult:
    """
    Test every site of ``beta`` for association with ``variable``.

    Parameters
    ----------
    variable : np.ndarray
        Canonical numeric variable, no missing values.
    beta : pd.DataFrame
        Sites × samples methylation matrix.
    covariates : pd.DataFrame, optional
        Numeric covariates (one row per sample).
    batch : pd.Series, optional
        Random-effect grouping.
    weights : np.ndarray, optional
        Sites × samples observation weights.
    cell_counts : pd.Series, optional
        Target cell-type proportions in [0, 1].
    winsorize_pct : float or None
        When set and ``robust``, also used as the empirical Bayes tail clamp.
    robust : bool, default True
        Robust empirical Bayes prior.
    rlm : bool, default False
        Robust regression instead of least squares.
    lmfit_safer : bool, default False
        Fit sites in ``n_partitions`` random partitions.
    n_jobs : int, default 1
        joblib workers in memory-safety mode.
    rng : numpy.random.Generator, optional
        Partition assignment generator.
    verbose : bool
        Narrate the regression stages.

    Returns
    -------
    AnalysisResult
        ``table`` has the columns ``p_value, fdr, p_holm, t_statistic,
        coefficient, coefficient_ci_high, coefficient_ci_low,
        coefficient_se, n`` indexed by site.

    Raises
    ------
    ValueError
        On invalid inputs (raised before any fitting).
    MemoryError
        If a whole-matrix fit is projected to exhaust RAM.
    """
    validate_regression_inputs(variable, beta, covariates, batch, cell_counts)
    method = "robust" if rlm else "ls"

    design = build_ewas_design(
        variable,
        covariates,
        None if cell_counts is None else np.asarray(cell_counts, dtype=float),
        sample_names=beta.columns,
    )
    check_analysis_memory(
        beta, partitioned=lmfit_safer and batch is None, n_partitions=n_partitions
    )

    log_stage(verbose, "Linear regression with lm_fit")
    fit = None
    batch_cor = None
    fit_error = None
    if batch is not None:
        log_stage(verbose, "Adjusting for batch effect")
        block = np.asarray(batch)
        corfit = duplicate_correlation(beta, design, block=block, weights=weights)
        batch_cor = corfit["consensus_correlation"]
        log_stage(verbose, "Linear regression with batch as random effect")
        try:
            fit = lm_fit(
                beta,
                design,
                method=method,
                weights=weights,
                block=block,
                correlation=batch_cor,
            )
        except Exception as e:
            fit_error = str(e)
            logger.warning(
                f"lm_fit failed with random effect batch variable, omitting: {e}"
            )

    fit_path = "random_effect"
    if fit is None:
        log_stage(verbose, "Linear regression with only fixed effects")
        batch = None
        fit_path = "fixed_effects"
        if lmfit_safer:
            fit = lm_fit_partitioned(
                beta,
                design,
                method=method,
                weights=weights,
                n_partitions=n_partitions,
                rng=rng,
                n_jobs=n_jobs,
            )
        else:
            fit = lm_fit(beta, design, method=method, weights=weights)

    log_stage(verbose, "Empirical Bayes")
    if winsorize_pct is not None and robust:
        moderated = e_bayes(fit, robust=True, winsor_tail_p=(winsorize_pct, winsorize_pct))
    else:
        moderated = e_bayes(fit, robust=robust)

    coef = moderated.fit.coefficients["variable"].to_numpy()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        std_error = np.sqrt(moderated.s2_post.to_numpy()) * moderated.fit.stdev_unscaled[
            "variable"
        ].to_numpy()
        margin = std_error * stats.t.ppf(0.975, moderated.df_total.to_numpy())
    p_value = moderated.p_value["variable"].to_numpy()

    table = pd.DataFrame(
        {
            "p_value": p_value,
            "fdr": adjust_pvalues(p_value, "fdr_bh"),
            "p_holm": adjust_pvalues(p_value, "holm"),
            "t_statistic": moderated.t["variable"].to_numpy(),
            "coefficient": coef,
            "coefficient_ci_high": coef + margin,
            "coefficient_ci_low": coef - margin,
            "coefficient_se": std_error,
            "n": beta.notna().sum(axis=1).to_numpy(),
        },
        index=beta.index,
    )

    return AnalysisResult(
        design=design,
        batch=batch,
        batch_cor=batch_cor,
        cell_counts=cell_counts,
        fit_path=fit_path,
        fit_error=fit_error,
        table=table,
    )
