#!/usr/bin/env python
# coding: utf-8


"""
Core data structures shared across the ewaskit pipeline.

Key Components
--------------
CovariateSet
    Enumeration of the covariate variants ("none", "all", "isva", "sva",
    "smartsva"); declaration order is the order in which they are tested.
VariableEncoding
    Canonical numeric form of the variable of interest together with the
    kind it was resolved from (numeric, binary or ordered categorical).
WeightSpec
    Canonical observation weights (always expandable to a sites × samples
    matrix), tagged with the input shape they came from.
PreparedData
    Aligned methylation matrix, variable, covariates, batch, weights and cell
    counts after sample filtering. Every downstream component consumes this
    container, never the raw polymorphic inputs.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd


class CovariateSet(str, Enum):
    """Covariate variants tested by the pipeline, in iteration order."""

    NONE = "none"
    ALL = "all"
    ISVA = "isva"
    SVA = "sva"
    SMARTSVA = "smartsva"


@dataclass(frozen=True)
class VariableEncoding:
    """
    Numeric encoding of a sample-level variable.

    Attributes
    ----------
    kind : {"numeric", "binary", "ordered"}
        How the original values were interpreted.
    values : np.ndarray
        Float values, ``NaN`` where the original was missing.
    levels : tuple
        Category levels in coding order (empty for numeric input).
    """

    kind: str
    values: np.ndarray
    levels: Tuple[Any, ...] = ()

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class WeightSpec:
    """
    Observation weights resolved against a sites × samples matrix.

    Attributes
    ----------
    kind : {"matrix", "sample", "site"}
        Shape of the original input.
    values : np.ndarray
        2-D for ``"matrix"``, 1-D otherwise.
    """

    kind: str
    values: np.ndarray

    def subset_samples(self, idx: np.ndarray) -> "WeightSpec":
        if self.kind == "matrix":
            return WeightSpec("matrix", self.values[:, idx])
        if self.kind == "sample":
            return WeightSpec("sample", self.values[idx])
        return self

    def as_matrix(self, shape: Tuple[int, int]) -> np.ndarray:
        """Expand to a full ``(n_sites, n_samples)`` weight matrix."""
        n_sites, n_samples = shape
        if self.kind == "matrix":
            if self.values.shape != (n_sites, n_samples):
                raise ValueError(
                    f"weight matrix shape {self.values.shape} != {(n_sites, n_samples)}"
                )
            return self.values.astype(float)
        if self.kind == "sample":
            if self.values.size != n_samples:
                raise ValueError("sample weights must have one entry per sample")
            return np.tile(self.values.astype(float), (n_sites, 1))
        if self.values.size != n_sites:
            raise ValueError("site weights must have one entry per site")
        return np.repeat(self.values.astype(float)[:, None], n_samples, axis=1)


@dataclass
class PreparedData:
    """
    Aligned inputs for the association pipeline.

    Parameters
    ----------
    beta : pd.DataFrame
        Sites × retained samples methylation matrix.
    variable : VariableEncoding
        Canonical variable of interest (no missing values).
    covariates : pd.DataFrame or None
        Simplified numeric covariates, zero-variance columns removed.
    batch : pd.Series or None
        Random-effect grouping.
    weights : WeightSpec or None
        Observation weights subset to the retained samples.
    cell_counts : pd.Series or None
        Target cell-type proportions.
    sample_idx : np.ndarray
        0-based positions of retained samples in the original matrix.
    meta : dict
        Preprocessing bookkeeping (removed samples, removed covariates, ...).
    """

    beta: pd.DataFrame
    variable: VariableEncoding
    covariates: Optional[pd.DataFrame]
    batch: Optional[pd.Series]
    weights: Optional[WeightSpec]
    cell_counts: Optional[pd.Series]
    sample_idx: np.ndarray
    meta: Dict[str, Any] = field(
        default_factory=lambda: {"n_samples_removed": 0, "removed_covariates": []}
    )

    def __post_init__(self) -> None:
        self.beta.index = self.beta.index.astype(str)
        self.beta.columns = self.beta.columns.astype(str)
        n = self.beta.shape[1]
        if len(self.variable) != n:
            raise ValueError("variable length does not match the number of samples")
        for label, obj in (
            ("covariates", self.covariates),
            ("batch", self.batch),
            ("cell_counts", self.cell_counts),
        ):
            if obj is not None and len(obj) != n:
                raise ValueError(f"{label} length does not match the number of samples")

    @property
    def n_sites(self) -> int:
        return self.beta.shape[0]

    @property
    def n_samples(self) -> int:
        return self.beta.shape[1]
