#!/usr/bin/env python
# coding: utf-8


"""
Epigenome-wide association study driver.

:func:`ewas` runs the full pipeline on a sites × samples methylation matrix:

1. sample alignment and missing-data filtering (:func:`prepare_inputs`)
2. optional winsorising and IQR outlier masking
3. surrogate-variable estimation, producing the covariate sets
   ``none``, ``all``, ``isva``, ``sva`` and ``smartsva``
4. one moderated site-wise regression per covariate set
5. annotation of every result table with chromosome and position

The returned :class:`EwasResult` is immutable.
"""


from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

import numpy as np
import pandas as pd

import ewaskit
from ewaskit.config.config_manager import (
    DEFAULT_MOST_VARIABLE,
    EwasParameters,
    resolve_parameters,
)
from ewaskit.core.analysis.core_analysis import AnalysisResult, ewas_regression
from ewaskit.core.analysis.surrogates import estimate_surrogate_sets
from ewaskit.core.annotation import (
    FeatureSet,
    _resolve,
    get_autosomal_sites,
    get_features,
    guess_featureset,
)
from ewaskit.core.data_preprocessing import (
    mask_iqr_outliers,
    prepare_inputs,
    winsorize_beta,
)
from ewaskit.io.data_utils import CovariateSet
from ewaskit.utils.logger import log_stage, logger

__all__ = ["CovariateSet", "EwasResult", "ewas"]


@dataclass(frozen=True)
class EwasResult:
    """
    Outcome of one :func:`ewas` invocation.

    Attributes
    ----------
    samples : np.ndarray
        0-based positions of the retained samples in the input matrix.
    sample_names : pd.Index
        Identifiers of the retained samples.
    variable : pd.Series
        Original variable values of the retained samples.
    covariates : pd.DataFrame or None
        Original covariate values of the retained samples.
    winsorize_pct, robust, rlm, outlier_iqr_factor, random_seed
        Options the run used.
    most_variable : int or None
        Number of sites the surrogate estimators used.
    p_value, coefficient : pd.DataFrame
        Sites × covariate set matrices.
    analyses : Mapping[str, AnalysisResult]
        Read-only mapping from covariate-set name to its regression output.
    sva_ret : dict or None
        Raw output of the last surrogate estimator that ran.
    too_hi, too_lo : pd.DataFrame or None
        Coordinates masked as IQR outliers (``None`` when masking was off).
    featureset : str
        Feature set used for validation and annotation.
    version : str
        ewaskit version.
    """

    samples: np.ndarray
    sample_names: pd.Index
    variable: pd.Series
    covariates: Optional[pd.DataFrame]
    winsorize_pct: Optional[float]
    robust: bool
    rlm: bool
    outlier_iqr_factor: Optional[float]
    most_variable: Optional[int]
    random_seed: int
    p_value: pd.DataFrame
    coefficient: pd.DataFrame
    analyses: Mapping[str, AnalysisResult]
    sva_ret: Optional[Any]
    too_hi: Optional[pd.DataFrame]
    too_lo: Optional[pd.DataFrame]
    featureset: str
    version: str

    @property
    def covariate_sets(self):
        return [CovariateSet(name) for name in self.analyses]

    # mappingproxy objects cannot be pickled
    def __getstate__(self):
        state = dict(self.__dict__)
        state["analyses"] = dict(self.analyses)
        return state

    def __setstate__(self, state):
        state = dict(state)
        state["analyses"] = MappingProxyType(state["analyses"])
        self.__dict__.update(state)


def _original_variable(
    variable: Any, sample_idx: np.ndarray, names: pd.Index
) -> pd.Series:
    if isinstance(variable, pd.Series):
        return variable.iloc[sample_idx].copy()
    values = variable if isinstance(variable, pd.Categorical) else np.asarray(variable)
    return pd.Series(values[sample_idx], index=names, name="variable")


def _resolve_most_variable(
    params: EwasParameters, site_ids: pd.Index, autosomal: pd.Index
) -> Optional[int]:
    """
    Number of sites the surrogate estimators rank, checked up front.

    The sites available are the autosomal rows of the matrix when an
    estimator runs, otherwise all rows. The packaged default reads as
    ``min(available, 50000)``; ``None`` keeps every autosomal site.
    """
    estimating = params.isva or params.sva or params.smartsva
    available = len(site_ids)
    if estimating:
        available = len(autosomal.intersection(site_ids))
        if available < 2:
            raise ValueError(
                "Surrogate estimation needs at least 2 autosomal sites, "
                f"found {available}"
            )

    most_variable = params.most_variable
    if most_variable == DEFAULT_MOST_VARIABLE:
        most_variable = min(available, most_variable)
    if most_variable is not None and not 1 < most_variable <= available:
        raise ValueError(f"most_variable must lie in (1, {available}]")
    return most_variable


def _annotate(table: pd.DataFrame, features: pd.DataFrame) -> pd.DataFrame:
    annot = features.reindex(table.index)
    table = table.copy()
    table["chromosome"] = annot["chromosome"].to_numpy()
    table["position"] = annot["position"].to_numpy()
    return table


def ewas(
    beta: pd.DataFrame,
    variable: Any,
    covariates: Optional[pd.DataFrame] = None,
    batch: Optional[Any] = None,
    weights: Optional[Any] = None,
    cell_counts: Optional[Any] = None,
    featureset: Optional[Union[str, FeatureSet]] = None,
    parameters: Optional[EwasParameters] = None,
    **options: Any,
) -> EwasResult:
    """
    Test every site of ``beta`` for association with ``variable``.

    Parameters
    ----------
    beta : pd.DataFrame
        Sites × samples methylation matrix (values in [0, 1], ``NaN`` missing).
        Row ids must belong to a registered feature set.
    variable : array-like
        Variable of interest: numeric, two-level categorical or ordered
        categorical.
    covariates : pd.DataFrame, optional
        Fixed-effect covariates, one row per sample.
    batch : array-like, optional
        Random-effect grouping of the samples.
    weights : array-like, optional
        Sites × samples matrix, per-sample or per-site vector.
    cell_counts : array-like, optional
        Proportion of the target cell type in each sample; switches to the
        cell-type interaction model.
    featureset : str or FeatureSet, optional
        Inferred from the row ids when omitted.
    parameters : EwasParameters, optional
        Base options; the active configuration when omitted.
    **options
        Overrides of individual :class:`EwasParameters` fields, e.g.
        ``sva=False`` or ``winsorize_pct=None``.

    Returns
    -------
    EwasResult

    Raises
    ------
    ValueError
        On invalid inputs or options (before any computation).
    KeyError
        For an unknown feature-set name.
    MemoryError
        If a regression is projected to exhaust RAM outside memory-safety mode.
    """
    params = resolve_parameters(parameters, **options)
    verbose = params.verbose

    if featureset is None:
        featureset = guess_featureset(beta.index)
    fs = _resolve(featureset)
    autosomal = get_autosomal_sites(fs)
    most_variable = _resolve_most_variable(params, beta.index.astype(str), autosomal)

    prepared = prepare_inputs(
        beta,
        variable,
        covariates=covariates,
        batch=batch,
        weights=weights,
        cell_counts=cell_counts,
        site_catalogue=fs.features.index,
        verbose=verbose,
    )
    data = prepared.beta

    if params.winsorize_pct is not None:
        log_stage(
            verbose, "Winsorizing the methylation matrix at", params.winsorize_pct
        )
        data = winsorize_beta(data, params.winsorize_pct)

    too_hi = too_lo = None
    if params.outlier_iqr_factor is not None:
        log_stage(
            verbose,
            "Setting values more than",
            params.outlier_iqr_factor,
            "IQRs beyond the quartiles to missing.",
        )
        data, too_hi, too_lo = mask_iqr_outliers(data, params.outlier_iqr_factor)
        log_stage(verbose, "Masked", len(too_hi) + len(too_lo), "outlier values.")

    sets, sva_ret, most_variable = estimate_surrogate_sets(
        data,
        prepared.variable.values,
        prepared.covariates,
        autosomal,
        use_isva=params.isva,
        use_sva=params.sva,
        use_smartsva=params.smartsva,
        n_sv=params.n_sv,
        most_variable=most_variable,
        random_seed=params.random_seed,
        verbose=verbose,
    )

    weight_matrix = None
    if prepared.weights is not None:
        weight_matrix = prepared.weights.as_matrix(data.shape)

    analyses = {}
    for cs in CovariateSet:
        if cs not in sets:
            continue
        log_stage(verbose, "EWAS for covariate set", cs.value)
        analyses[cs.value] = ewas_regression(
            prepared.variable.values,
            data,
            covariates=sets[cs],
            batch=prepared.batch,
            weights=weight_matrix,
            cell_counts=prepared.cell_counts,
            winsorize_pct=params.winsorize_pct,
            robust=params.robust,
            rlm=params.rlm,
            lmfit_safer=params.lmfit_safer,
            n_partitions=params.n_partitions,
            n_jobs=params.n_jobs,
            rng=np.random.default_rng(params.random_seed),
            verbose=verbose,
        )

    p_value = pd.DataFrame(
        {name: res.table["p_value"] for name, res in analyses.items()}, index=data.index
    )
    coefficient = pd.DataFrame(
        {name: res.table["coefficient"] for name, res in analyses.items()},
        index=data.index,
    )

    features = get_features(fs).set_index("name")
    annotated = {}
    for name, res in analyses.items():
        annotated[name] = AnalysisResult(
            design=res.design,
            batch=res.batch,
            batch_cor=res.batch_cor,
            cell_counts=res.cell_counts,
            fit_path=res.fit_path,
            fit_error=res.fit_error,
            table=_annotate(res.table, features),
        )

    cov_orig = None
    if covariates is not None:
        cov_orig = covariates.iloc[prepared.sample_idx].copy()

    logger.debug(
        f"EWAS finished: {data.shape[0]:,} sites, {data.shape[1]} samples, "
        f"covariate sets {list(annotated)}"
    )
    return EwasResult(
        samples=prepared.sample_idx,
        sample_names=data.columns,
        variable=_original_variable(variable, prepared.sample_idx, data.columns),
        covariates=cov_orig,
        winsorize_pct=params.winsorize_pct,
        robust=params.robust,
        rlm=params.rlm,
        outlier_iqr_factor=params.outlier_iqr_factor,
        most_variable=most_variable,
        random_seed=params.random_seed,
        p_value=p_value,
        coefficient=coefficient,
        analyses=MappingProxyType(annotated),
        sva_ret=sva_ret,
        too_hi=too_hi,
        too_lo=too_lo,
        featureset=fs.name,
        version=ewaskit.__version__,
    )
