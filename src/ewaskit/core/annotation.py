#!/usr/bin/env python
# coding: utf-8


"""
Site feature catalogues for methylation arrays.

A feature set maps every site identifier of a platform (e.g. an Illumina
450k or EPIC manifest) to its chromosome and position. The association
pipeline uses it to validate the rows of a methylation matrix, to restrict
surrogate-variable estimation to autosomal sites and to annotate the final
result tables.

Features
--------
- In-process registry of named feature sets built from any manifest table
- Chromosome normalisation to UCSC style (``"1"`` / ``"CHR1"`` → ``"chr1"``)
- Autosomal site lookup (``chr1`` … ``chr22``; X, Y, M and contigs excluded)
- Feature-set inference from a collection of site identifiers
"""


from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import pandas as pd

from ewaskit.utils.logger import logger


def _clean_chr(ch: str) -> str:
    """
    Standardise a chromosome label to UCSC form (``"chr1"``, ``"chrX"``).

    ``None`` and missing values are returned unchanged.
    """
    if ch is None or (isinstance(ch, float) and pd.isna(ch)):
        return ch
    ch = str(ch).strip()
    if not ch.lower().startswith("chr"):
        ch = "chr" + ch
    if ch.lower() in {"chrx", "chry", "chrm"}:
        return ch[:3].lower() + ch[3:].upper()
    return ch[:3].lower() + ch[3:]


def _is_autosome(ch: str) -> bool:
    return isinstance(ch, str) and ch.startswith("chr") and ch[3:].isdigit()


@dataclass(frozen=True)
class FeatureSet:
    """
    Named site catalogue.

    Attributes
    ----------
    name : str
        Catalogue name, e.g. ``"450k"``.
    features : pd.DataFrame
        Indexed by site id with ``chromosome`` and ``position`` columns.
    """

    name: str
    features: pd.DataFrame

    def autosomal_sites(self) -> pd.Index:
        chrom = self.features["chromosome"]
        return self.features.index[chrom.map(_is_autosome).astype(bool).values]

    def __len__(self) -> int:
        return len(self.features)


_REGISTRY: Dict[str, FeatureSet] = {}


def register_featureset(
    name: str,
    annotation: pd.DataFrame,
    chr_col: str = "chromosome",
    pos_col: str = "position",
    name_col: Optional[str] = None,
) -> FeatureSet:
    """
    Register a site manifest under ``name``.

    Parameters
    ----------
    name : str
        Catalogue name used by :func:`get_features` and friends.
    annotation : pd.DataFrame
        Manifest with chromosome and position columns. Site ids are taken from
        ``name_col`` when given, from a ``name`` column when present, and from
        the index otherwise.
    chr_col, pos_col : str
        Column names holding chromosome and position.

    Returns
    -------
    FeatureSet
        The registered catalogue (replacing any previous one of that name).

    Raises
    ------
    KeyError
        If the chromosome or position column is missing.
    ValueError
        If site identifiers are duplicated or the manifest is empty.
    """
    if not isinstance(annotation, pd.DataFrame):
        raise TypeError("annotation must be a pandas DataFrame")
    for col in (chr_col, pos_col):
        if col not in annotation.columns:
            raise KeyError(f"Column '{col}' not found in annotation")

    if name_col is None and "name" in annotation.columns:
        name_col = "name"
    ids = annotation[name_col] if name_col is not None else annotation.index

    features = pd.DataFrame(
        {
            "chromosome": annotation[chr_col].map(_clean_chr).values,
            "position": pd.to_numeric(annotation[pos_col], errors="coerce").values,
        },
        index=pd.Index(ids).astype(str),
    )
    features.index.name = "name"

    if features.empty:
        raise ValueError(f"Feature set '{name}' has no sites")
    if features.index.duplicated().any():
        dups = features.index[features.index.duplicated()].unique()
        raise ValueError(f"Duplicate site ids in feature set '{name}': {list(dups[:5])}")

    fs = FeatureSet(name=name, features=features)
    _REGISTRY[name] = fs
    logger.debug(f"Registered feature set '{name}' with {len(features):,} sites")
    return fs


def load_featureset(
    path: Union[str, Path],
    name: Optional[str] = None,
    chr_col: str = "chromosome",
    pos_col: str = "position",
    index_col: Optional[int] = 0,
) -> FeatureSet:
    """Read a manifest file and register it (name defaults to the file stem)."""
    from ewaskit.io.readers import _read

    path = Path(path)
    annotation = _read(path, index_col=index_col)
    return register_featureset(
        name or path.stem, annotation, chr_col=chr_col, pos_col=pos_col
    )


def unregister_featureset(name: str) -> None:
    _REGISTRY.pop(name, None)


def list_featuresets() -> List[str]:
    return list(_REGISTRY)


def _resolve(featureset: Union[str, FeatureSet]) -> FeatureSet:
    if isinstance(featureset, FeatureSet):
        return featureset
    try:
        return _REGISTRY[featureset]
    except KeyError:
        raise KeyError(
            f"Unknown feature set '{featureset}'. Registered: {list_featuresets()}"
        )


def get_features(featureset: Union[str, FeatureSet]) -> pd.DataFrame:
    """
    Return ``name``, ``chromosome`` and ``position`` for every catalogued site.
    """
    fs = _resolve(featureset)
    return fs.features.reset_index()


def get_autosomal_sites(featureset: Union[str, FeatureSet]) -> pd.Index:
    return _resolve(featureset).autosomal_sites()


def guess_featureset(site_ids: Iterable[str]) -> str:
    """
    Infer which registered feature set the given site ids belong to.

    The smallest catalogue containing every id wins; registration order
    breaks ties.

    Raises
    ------
    ValueError
        If no registered feature set contains all the ids.
    """
    ids = pd.Index(site_ids).astype(str)
    candidates = [
        fs for fs in _REGISTRY.values() if ids.isin(fs.features.index).all()
    ]
    if not candidates:
        raise ValueError(
            "Site identifiers do not belong to any registered feature set "
            f"(registered: {list_featuresets()})"
        )
    best = min(candidates, key=len)
    logger.debug(f"Guessed feature set '{best.name}'")
    return best.name
