#!/usr/bin/env python
# coding: utf-8


"""
Input utilities for loading methylation studies into ewaskit.

Features
--------
- Robust multi-format reading (CSV, TSV, Excel, pickle, Parquet, Feather)
- Automatic coercion of the methylation matrix to numeric values
- String site / sample identifiers with duplicate detection
- Sample-sheet loading aligned to the columns of a methylation matrix
"""


from pathlib import Path
from typing import Optional, Sequence, Union

import pandas as pd

from ewaskit.utils.logger import logger


def _read(
    path: Union[str, Path], index_col: Optional[int], trusted: bool = False
) -> pd.DataFrame:
    """
    Internal reader for common tabular formats.

    Supported formats
    -----------------
    .csv, .tsv/.txt, .xlsx/.xls, .pkl/.pickle, .parquet, .feather

    Parameters
    ----------
    path : str or Path
        File to read.
    index_col : int or None
        Column to use as the row index.
    trusted : bool, default False
        Only allow ``.pkl`` / ``.pickle`` files from trusted sources.

    Returns
    -------
    pd.DataFrame

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        For untrusted pickles and unsupported formats.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    suf = path.suffix.lower()

    if suf == ".csv":
        return pd.read_csv(path, index_col=index_col)
    elif suf in (".tsv", ".txt"):
        return pd.read_csv(path, sep="\t", index_col=index_col)
    elif suf in (".xlsx", ".xls"):
        return pd.read_excel(path, index_col=index_col)
    elif suf in (".pkl", ".pickle"):
        if trusted:
            return pd.read_pickle(path)  # nosec B301
        raise ValueError("Pickle files are not supported for untrusted input")
    elif suf == ".parquet":
        return pd.read_parquet(path)
    elif suf == ".feather":
        df = pd.read_feather(path)
        if index_col is not None:
            if index_col < 0 or index_col >= len(df.columns):
                raise IndexError("index_col out of bounds for feather file")
            df = df.set_index(df.columns[index_col])
        return df
    raise ValueError(f"Unsupported format: {suf}")


def load_methylation_matrix(
    source: Union[str, Path, pd.DataFrame],
    index_col: Optional[int] = 0,
    trusted: bool = False,
) -> pd.DataFrame:
    """
    Load a sites × samples methylation matrix.

    Non-numeric entries are coerced to ``NaN`` (with a warning reporting how
    many values were affected) and both axes are converted to strings.

    Parameters
    ----------
    source : str, Path or pd.DataFrame
        File path or an already-loaded matrix.
    index_col : int, default 0
        Column holding site identifiers when reading from a file.
    trusted : bool, default False
        Allow pickle input.

    Returns
    -------
    pd.DataFrame

    Raises
    ------
    ValueError
        If site or sample identifiers are duplicated.
    """
    if isinstance(source, (str, Path)):
        beta = _read(Path(source), index_col=index_col, trusted=trusted)
    elif isinstance(source, pd.DataFrame):
        beta = source.copy()
    else:
        raise TypeError("source must be a path or a pandas DataFrame")

    orig_na = int(beta.isna().sum().sum())
    beta = beta.apply(pd.to_numeric, errors="coerce").astype(float)
    coerced = int(beta.isna().sum().sum()) - orig_na
    if coerced > 0:
        logger.warning(f"Coerced {coerced} values to NaN while parsing methylation matrix.")

    beta.index = beta.index.astype(str)
    beta.columns = beta.columns.astype(str)
    if beta.index.duplicated().any():
        raise ValueError("Duplicate site identifiers in methylation matrix")
    if beta.columns.duplicated().any():
        raise ValueError("Duplicate sample identifiers in methylation matrix")

    logger.info(f"Loaded {beta.shape[1]} samples, {beta.shape[0]} sites.")
    return beta


def load_samplesheet(
    source: Union[str, Path, pd.DataFrame],
    samples: Optional[Sequence[str]] = None,
    index_col: Optional[int] = 0,
) -> pd.DataFrame:
    """
    Load per-sample metadata, optionally aligned to a sample order.

    Parameters
    ----------
    source : str, Path or pd.DataFrame
        Sample sheet file or table (one row per sample).
    samples : sequence of str, optional
        Sample order to align to, typically ``beta.columns``.
    index_col : int, default 0
        Column holding sample identifiers when reading from a file.

    Returns
    -------
    pd.DataFrame
        Sample sheet indexed by string sample id.

    Raises
    ------
    KeyError
        If ``samples`` lists ids missing from the sheet.
    """
    if isinstance(source, (str, Path)):
        sheet = _read(Path(source), index_col=index_col)
    else:
        sheet = source.copy()
    sheet.index = sheet.index.astype(str)

    if samples is not None:
        samples = [str(s) for s in samples]
        missing = sorted(set(samples) - set(sheet.index))
        if missing:
            raise KeyError(
                f"Sample sheet missing metadata for {len(missing)} sample(s): {missing[:10]}"
            )
        sheet = sheet.reindex(samples)
    return sheet
