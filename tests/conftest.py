#!/usr/bin/env python
# coding: utf-8


"""
Shared fixtures for the ewaskit test-suite.

A synthetic feature set ("synthetic") with 180 autosomal and 20 chrX sites is
registered for every test, and the global configuration is reset around it.
"""


import os
import tempfile

os.environ.setdefault(
    "EWASKIT_OUTPUT_DIR", os.path.join(tempfile.gettempdir(), "ewaskit-tests")
)

import matplotlib  # noqa: E402

matplotlib.use("Agg")

import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
import pytest  # noqa: E402

from ewaskit.config.config_manager import reset_config  # noqa: E402
from ewaskit.core.annotation import (  # noqa: E402
    list_featuresets,
    register_featureset,
    unregister_featureset,
)

N_AUTOSOMAL = 180
N_CHRX = 20
SITE_IDS = [f"cg{i:08d}" for i in range(N_AUTOSOMAL + N_CHRX)]


def _manifest() -> pd.DataFrame:
    chrom = [str(i % 22 + 1) for i in range(N_AUTOSOMAL)] + ["X"] * N_CHRX
    return pd.DataFrame(
        {
            "name": SITE_IDS,
            "chromosome": chrom,
            "position": np.arange(len(SITE_IDS)) * 1000 + 1,
        }
    )


@pytest.fixture(autouse=True)
def synthetic_featureset():
    for name in list_featuresets():
        unregister_featureset(name)
    fs = register_featureset("synthetic", _manifest())
    yield fs
    for name in list_featuresets():
        unregister_featureset(name)


@pytest.fixture(autouse=True)
def clean_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def site_ids():
    return list(SITE_IDS)


@pytest.fixture
def make_study():
    """
    Factory for synthetic studies.

    Returns ``(beta, variable)`` where ``beta`` is a sites × samples DataFrame
    of values in (0, 1) and ``variable`` a binary 0/1 array. The first
    ``n_assoc`` sites carry an effect of size ``effect``; ``n_latent`` hidden
    factors add structure shared by all sites.
    """

    def _make(
        n_sites=len(SITE_IDS),
        n_samples=30,
        seed=0,
        effect=0.0,
        n_assoc=10,
        n_latent=0,
        noise=0.03,
    ):
        rng = np.random.default_rng(seed)
        variable = np.tile([0.0, 1.0], n_samples // 2 + 1)[:n_samples]
        base = rng.uniform(0.2, 0.8, size=(n_sites, 1))
        values = base + rng.normal(0.0, noise, size=(n_sites, n_samples))
        values[:n_assoc] += effect * variable
        if n_latent:
            factors = rng.normal(size=(n_latent, n_samples))
            loadings = rng.normal(0.0, 0.05, size=(n_sites, n_latent))
            values += loadings @ factors
        values = np.clip(values, 0.001, 0.999)
        beta = pd.DataFrame(
            values,
            index=SITE_IDS[:n_sites],
            columns=[f"S{j:03d}" for j in range(n_samples)],
        )
        return beta, variable

    return _make
