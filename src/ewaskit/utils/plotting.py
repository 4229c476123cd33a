#!/usr/bin/env python
# coding: utf-8


"""
Plotting utilities for association-study results.

Functions take the per-site statistics table of one covariate set
(``AnalysisResult.table``) and return standardised matplotlib figures.

Features
--------
- Standardised figure creation
- P-value QQ plots annotated with the genomic inflation factor
- Manhattan plots ordered by chromosome and position
- Multi-panel comparison of covariate sets (one QQ panel per set)
"""


from pathlib import Path
from typing import Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from ewaskit.core.analysis.postprocessing import genomic_inflation
from ewaskit.core.annotation import _clean_chr

sns.set(style="whitegrid")


def _new_fig(figsize: tuple = (10, 6), dpi: int = 300) -> plt.Figure:
    """
    Create a new matplotlib figure with the standard ewaskit settings.

    Parameters
    ----------
    figsize : tuple[int, int], default (10, 6)
        Width and height of the figure in inches.
    dpi : int, default 300
        Resolution in dots per inch.

    Returns
    -------
    plt.Figure
        Empty figure.
    """
    return plt.figure(figsize=figsize, dpi=dpi)


def _qq_axes(ax: plt.Axes, pvals: pd.Series, title: str) -> None:
    observed = -np.log10(np.sort(pvals.to_numpy()))
    n = len(pvals)
    expected = -np.log10(np.linspace(1 / (n + 1), 1 - 1 / (n + 1), n))
    lam = genomic_inflation(pvals)

    ax.scatter(expected, observed, alpha=0.6, s=15, edgecolor="k", linewidth=0.3)
    ax.plot([0, expected.max()], [0, expected.max()], "r--", lw=2, label="y=x")
    ax.set_xlabel("Expected -log₁₀(p)")
    ax.set_ylabel("Observed -log₁₀(p)")
    ax.set_title(f"{title} (λ = {lam:.3f})")
    ax.grid(alpha=0.3)
    ax.legend()


def plot_pvalue_qq(
    table: pd.DataFrame,
    pval_col: str = "p_value",
    title: str = "P-value Q-Q Plot",
    dpi: int = 300,
    save_path: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """
    Quantile-quantile plot of observed versus expected -log10(p-values).

    Parameters
    ----------
    table : pd.DataFrame
        Per-site statistics containing ``pval_col``.
    pval_col : str, default "p_value"
        Column name of the p-values.
    title : str
        Plot title; the inflation factor is appended.
    dpi : int, default 300
        Figure resolution.
    save_path : str or Path, optional
        Destination path for saving the figure.

    Returns
    -------
    plt.Figure
        Q-Q plot figure.

    Raises
    ------
    ValueError
        If no finite p-values are present.
    """
    pvals = table[pval_col].dropna()
    if pvals.empty:
        raise ValueError("No p-values to plot")

    fig = _new_fig((6, 6), dpi)
    ax = fig.add_subplot(111)
    _qq_axes(ax, pvals, title)
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return fig


def _chrom_order(chrom: str) -> tuple:
    core = chrom[3:] if chrom.startswith("chr") else chrom
    return (0, int(core), "") if core.isdigit() else (1, 0, core)


def plot_manhattan(
    table: pd.DataFrame,
    pval_col: str = "p_value",
    chr_col: str = "chromosome",
    pos_col: str = "position",
    sig_thresh: Optional[float] = None,
    dpi: int = 300,
    save_path: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """
    Manhattan plot of -log10(p) along the genome.

    Sites without a chromosome or position are not drawn. Chromosomes are
    ordered numerically, then lexically (X, Y, ...), and coloured in
    alternating shades.

    Parameters
    ----------
    table : pd.DataFrame
        Per-site statistics annotated with chromosome and position.
    pval_col, chr_col, pos_col : str
        Column names.
    sig_thresh : float, optional
        Draw a horizontal line at -log10(sig_thresh). Defaults to the
        Bonferroni threshold 0.05 / number of plotted sites.
    dpi : int, default 300
        Figure resolution.
    save_path : str or Path, optional
        Destination path for saving the figure.

    Returns
    -------
    plt.Figure
        Manhattan plot figure.
    """
    for col in (pval_col, chr_col, pos_col):
        if col not in table.columns:
            raise KeyError(f"Column '{col}' not in results DataFrame")

    df = table[[pval_col, chr_col, pos_col]].dropna().copy()
    if df.empty:
        raise ValueError("No annotated p-values to plot")
    df["chr"] = df[chr_col].map(_clean_chr)
    df["logp"] = -np.log10(df[pval_col].clip(lower=np.finfo(float).tiny))

    chroms = sorted(df["chr"].unique(), key=_chrom_order)
    palette = sns.color_palette("deep", 2)

    fig = _new_fig((12, 5), dpi)
    ax = fig.add_subplot(111)
    offset = 0.0
    ticks, labels = [], []
    for i, chrom in enumerate(chroms):
        sub = df[df["chr"] == chrom].sort_values(pos_col)
        x = sub[pos_col].to_numpy(dtype=float) + offset
        ax.scatter(x, sub["logp"], s=8, color=palette[i % 2], alpha=0.8)
        ticks.append(x.mean())
        labels.append(chrom)
        offset = x.max() + 1

    if sig_thresh is None:
        sig_thresh = 0.05 / len(df)
    ax.axhline(-np.log10(sig_thresh), color="r", ls="--", lw=1)

    ax.set_xticks(ticks)
    ax.set_xticklabels(labels, fontsize=8)
    ax.set_xlabel("Chromosome")
    ax.set_ylabel("-log₁₀(p)")
    ax.set_title("Manhattan Plot")
    ax.grid(alpha=0.3, axis="y")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return fig


def plot_covariate_sets(
    result,
    pval_col: str = "p_value",
    dpi: int = 150,
    save_path: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """One Q-Q panel per covariate set of an ``EwasResult``."""
    names = list(result.analyses)
    if not names:
        raise ValueError("Result contains no analyses")

    fig = _new_fig((4.5 * len(names), 4.5), dpi)
    for i, name in enumerate(names, start=1):
        ax = fig.add_subplot(1, len(names), i)
        pvals = result.analyses[name].table[pval_col].dropna()
        if pvals.empty:
            ax.set_title(f"{name} (no p-values)")
            continue
        _qq_axes(ax, pvals, name)
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return fig
