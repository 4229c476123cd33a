#!/usr/bin/env python
# coding: utf-8


"""
Output utilities for saving association-study results.

All export functions include overwrite protection, automatic directory
creation and informative logging.

Features
--------
- One table per covariate set (``<prefix>_<set>.<ext>``) plus the combined
  p-value and coefficient matrices
- CSV, TSV and Excel output
- Pickle persistence of a complete :class:`~ewaskit.core.pipeline.EwasResult`
"""


from pathlib import Path
from typing import Dict, Union

import pandas as pd

from ewaskit.utils.logger import logger

_SUFFIX = {"csv": ".csv", "tsv": ".tsv", "excel": ".xlsx", "xlsx": ".xlsx"}


def _check_overwrite(path: Path, overwrite: bool) -> None:
    """
    Raise FileExistsError if ``path`` exists and overwriting is disabled.

    Raises
    ------
    FileExistsError
        When the file exists and ``overwrite=False``.
    """
    if not overwrite and path.exists():
        raise FileExistsError(f"{path} exists and overwrite=False")


def _write_table(df: pd.DataFrame, path: Path, fmt: str) -> None:
    if fmt == "csv":
        df.to_csv(path, index=True)
    elif fmt == "tsv":
        df.to_csv(path, sep="\t", index=True)
    else:
        df.to_excel(path, index=True)


def export_results(
    result,
    output_dir: Union[str, Path],
    fmt: str = "csv",
    prefix: str = "ewas",
    overwrite: bool = True,
    verbose: bool = True,
) -> Dict[str, Path]:
    """
    Write every covariate-set table and the summary matrices of a result.

    Parameters
    ----------
    result : EwasResult
        Output of :func:`ewaskit.core.pipeline.ewas`.
    output_dir : str or Path
        Destination directory (created if needed).
    fmt : {"csv", "tsv", "excel"}, default "csv"
        Output format.
    prefix : str, default "ewas"
        File-name prefix.
    overwrite : bool, default True
        Raise FileExistsError instead of replacing existing files.
    verbose : bool, default True
        Log a confirmation message on success.

    Returns
    -------
    dict[str, Path]
        Written file per table (covariate-set names, ``"p_value"`` and
        ``"coefficient"``).

    Raises
    ------
    ValueError
        For unsupported ``fmt``.
    FileExistsError
        When ``overwrite=False`` and a target file exists.
    RuntimeError
        If writing fails (e.g. no Excel engine installed).
    """
    fmt = fmt.lower()
    if fmt not in _SUFFIX:
        raise ValueError(f"Unsupported format: {fmt!r}. Choose from {set(_SUFFIX)}")
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    suffix = _SUFFIX[fmt]

    tables = {name: analysis.table for name, analysis in result.analyses.items()}
    tables["p_value"] = result.p_value
    tables["coefficient"] = result.coefficient

    paths = {name: out / f"{prefix}_{name}{suffix}" for name in tables}
    for path in paths.values():
        _check_overwrite(path, overwrite)

    for name, table in tables.items():
        try:
            _write_table(table, paths[name], fmt)
        except Exception as e:
            logger.error(f"Export of '{name}' failed: {e}")
            raise RuntimeError(f"Export failed: {e}") from e

    if verbose:
        logger.info(f"Exported {len(paths)} tables to {out}")
    return paths


def save_ewas_result(
    result, path: Union[str, Path], overwrite: bool = True
) -> Path:
    """
    Pickle a complete result object.

    The suffix is forced to ``.pkl``. Reload with
    :func:`ewaskit.io.readers._read` (``trusted=True``) or ``pandas.read_pickle``.

    Raises
    ------
    FileExistsError
        When ``overwrite=False`` and the target exists.
    """
    path = Path(path)
    if path.suffix != ".pkl":
        path = path.with_suffix(".pkl")
    path.parent.mkdir(parents=True, exist_ok=True)
    _check_overwrite(path, overwrite)
    pd.to_pickle(result, path)
    logger.info(f"Saved EWAS result to {path}")
    return path
