#!/usr/bin/env python
# coding: utf-8


"""
Tests for ewaskit.core.analysis modules.

Covers:
- Site-wise linear model fitting, block correlation and partitioned fits.
- Empirical Bayes moderation and the regression engine.
- Postprocessing and preparation steps.
- Validation routines for regression inputs.
"""


from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from ewaskit.core.analysis import core_analysis, validation
from ewaskit.core.analysis.core_analysis import (
    _estimate_smyth_prior,
    _moderated_variance,
    _winsorize_array,
    adjust_pvalues,
    build_ewas_design,
    e_bayes,
    ewas_regression,
)
from ewaskit.core.analysis.linear_model import (
    _assign_partitions,
    _estimable_columns,
    duplicate_correlation,
    lm_fit,
    lm_fit_partitioned,
)
from ewaskit.core.analysis.postprocessing import (
    genomic_inflation,
    get_significant_sites,
    summarize_ewas,
)
from ewaskit.core.analysis.preparation import (
    impute_missing_values,
    select_most_variable,
)
from ewaskit.core.analysis.validation import (
    build_model_matrix,
    check_analysis_memory,
    validate_regression_inputs,
)


def _simulate(n_sites=60, n_samples=16, seed=0, effect=0.2, n_assoc=5):
    rng = np.random.default_rng(seed)
    variable = np.tile([0.0, 1.0], n_samples // 2)
    beta = rng.uniform(0.3, 0.7, size=(n_sites, 1)) + rng.normal(
        0, 0.02, size=(n_sites, n_samples)
    )
    beta[:n_assoc] += effect * variable
    beta = pd.DataFrame(
        beta,
        index=[f"cg{i:08d}" for i in range(n_sites)],
        columns=[f"S{j}" for j in range(n_samples)],
    )
    return beta, variable


class TestLinearModel:
    """Test site-wise least squares"""

    def setup_method(self):
        self.beta, self.variable = _simulate()
        self.design = build_ewas_design(self.variable, sample_names=self.beta.columns)

    def test_matches_lstsq(self):
        fit = lm_fit(self.beta, self.design)
        X = self.design.to_numpy()
        expected = np.linalg.lstsq(X, self.beta.to_numpy().T, rcond=None)[0].T
        np.testing.assert_allclose(fit.coefficients.to_numpy(), expected, atol=1e-10)
        assert (fit.df_residual == 14).all()
        assert list(fit.coefficients.columns) == ["intercept", "variable"]

    def test_missing_values_dropped_per_site(self):
        beta = self.beta.copy()
        beta.iloc[3, 2] = np.nan
        fit = lm_fit(beta, self.design)
        keep = [j for j in range(16) if j != 2]
        ref = lm_fit(beta.iloc[[3], keep], self.design.iloc[keep])
        np.testing.assert_allclose(
            fit.coefficients.iloc[3].to_numpy(), ref.coefficients.iloc[0].to_numpy()
        )
        assert fit.df_residual.iloc[3] == 13
        assert fit.df_residual.iloc[4] == 14

    def test_unit_weights_equal_unweighted(self):
        fit = lm_fit(self.beta, self.design)
        wfit = lm_fit(self.beta, self.design, weights=np.ones(self.beta.shape))
        np.testing.assert_allclose(
            fit.coefficients.to_numpy(), wfit.coefficients.to_numpy(), atol=1e-10
        )
        np.testing.assert_allclose(fit.sigma.to_numpy(), wfit.sigma.to_numpy())

    def test_non_estimable_column(self):
        design = self.design.copy()
        design["zero"] = 0.0
        fit = lm_fit(self.beta, design)
        ref = lm_fit(self.beta, self.design)
        assert fit.coefficients["zero"].isna().all()
        np.testing.assert_allclose(
            fit.coefficients["variable"].to_numpy(),
            ref.coefficients["variable"].to_numpy(),
        )
        np.testing.assert_array_equal(fit.df_residual, ref.df_residual)

    def test_zero_correlation_block_equals_ols(self):
        block = np.repeat(["a", "b", "c", "d"], 4)
        fit = lm_fit(self.beta, self.design, block=block, correlation=0.0)
        ref = lm_fit(self.beta, self.design)
        np.testing.assert_allclose(
            fit.coefficients.to_numpy(), ref.coefficients.to_numpy(), atol=1e-10
        )
        assert fit.correlation == 0.0

    def test_block_requires_correlation(self):
        block = np.repeat(["a", "b"], 8)
        with pytest.raises(ValueError):
            lm_fit(self.beta, self.design, block=block)
        with pytest.raises(ValueError):
            lm_fit(self.beta, self.design, block=block, correlation=np.nan)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            lm_fit(self.beta, self.design.iloc[:5])
        with pytest.raises(ValueError):
            lm_fit(self.beta, self.design, method="glm")
        with pytest.raises(ValueError):
            lm_fit(self.beta, self.design, weights=np.ones((2, 2)))

    def test_robust_resists_outlier(self):
        rng = np.random.default_rng(5)
        x = np.linspace(0, 1, 20)
        y = 0.2 + 0.5 * x + rng.normal(0, 0.01, 20)
        y[19] = 5.0
        beta = pd.DataFrame([y])
        design = pd.DataFrame({"intercept": 1.0, "x": x})
        ls = lm_fit(beta, design, method="ls")
        rob = lm_fit(beta, design, method="robust")
        assert rob.method == "robust"
        assert abs(rob.coefficients["x"].iloc[0] - 0.5) < abs(
            ls.coefficients["x"].iloc[0] - 0.5
        )
        assert np.isfinite(rob.stdev_unscaled.to_numpy()).all()

    def test_estimable_columns(self):
        X = np.column_stack([np.ones(4), [0, 1, 0, 1], [0, 0, 0, 0], [1, 0, 1, 0]])
        np.testing.assert_array_equal(_estimable_columns(X), [True, True, False, False])


class TestDuplicateCorrelation:
    """Test consensus intra-block correlation"""

    def test_strong_block_effect(self):
        rng = np.random.default_rng(11)
        block = np.repeat(np.arange(4), 3)
        effects = rng.normal(0, 1.0, size=(40, 4))
        beta = pd.DataFrame(effects[:, block] + rng.normal(0, 0.3, size=(40, 12)))
        design = np.ones((12, 1))
        out = duplicate_correlation(beta, design, block=block)
        assert out["consensus_correlation"] > 0.5
        assert out["correlation"].shape == (40,)
        assert np.nanmax(np.abs(out["correlation"])) <= 0.99

    def test_single_level_rejected(self):
        beta = pd.DataFrame(np.random.default_rng(0).normal(size=(5, 6)))
        with pytest.raises(ValueError):
            duplicate_correlation(beta, np.ones((6, 1)), block=np.zeros(6))

    def test_wrong_length(self):
        beta = pd.DataFrame(np.random.default_rng(0).normal(size=(5, 6)))
        with pytest.raises(ValueError):
            duplicate_correlation(beta, np.ones((6, 1)), block=np.arange(3))


class TestPartitionedFit:
    """Test memory-safety partitioned fitting"""

    def setup_method(self):
        self.beta, variable = _simulate(n_sites=50)
        self.design = build_ewas_design(variable, sample_names=self.beta.columns)

    def test_matches_full_fit(self):
        full = lm_fit(self.beta, self.design)
        part = lm_fit_partitioned(
            self.beta, self.design, n_partitions=8, rng=np.random.default_rng(1)
        )
        pd.testing.assert_frame_equal(full.coefficients, part.coefficients)
        pd.testing.assert_series_equal(full.sigma, part.sigma)
        pd.testing.assert_series_equal(full.amean, part.amean)

    def test_parallel_matches_sequential(self):
        seq = lm_fit_partitioned(
            self.beta, self.design, n_partitions=4, rng=np.random.default_rng(2)
        )
        par = lm_fit_partitioned(
            self.beta,
            self.design,
            n_partitions=4,
            rng=np.random.default_rng(2),
            n_jobs=2,
        )
        pd.testing.assert_frame_equal(seq.coefficients, par.coefficients)

    def test_partitions_cover_all_sites(self):
        groups = _assign_partitions(100, 8, np.random.default_rng(0))
        merged = np.sort(np.concatenate(groups))
        np.testing.assert_array_equal(merged, np.arange(100))

    def test_invalid_partitions(self):
        with pytest.raises(ValueError):
            lm_fit_partitioned(self.beta, self.design, n_partitions=0)


class TestEmpiricalBayes:
    """Test variance moderation"""

    def test_winsorize_array(self):
        arr = np.array([1, 35, 40, 45, 50, 55, 60, 65, 37, 42, 47, 52, 57, 62, 64, 100])
        out = _winsorize_array(arr, lower=0.1, upper=0.9)
        assert out.max() < 100
        assert out.min() > 1

    def test_winsorize_array_nan_and_bounds(self):
        out = _winsorize_array(np.array([np.nan, 1.0, 2.0, 3.0]))
        assert np.isnan(out[0])
        with pytest.raises(ValueError):
            _winsorize_array([1, 2, 3], lower=0.9, upper=0.1)

    def test_smyth_prior_recovers_hyperparameters(self):
        rng = np.random.default_rng(2024)
        d0, s0sq, d = 10.0, 1.0, 5.0
        sigma2 = s0sq * d0 / rng.chisquare(d0, size=5000)
        s2 = sigma2 * rng.chisquare(d, size=5000) / d
        prior = _estimate_smyth_prior(s2, np.full(5000, d))
        assert 4 < prior.df_prior < 25
        assert 0.7 < prior.var_prior < 1.3

    def test_smyth_prior_no_dispersion(self):
        prior = _estimate_smyth_prior(np.full(50, 2.0), np.full(50, 4.0))
        assert np.isinf(prior.df_prior)
        assert prior.var_prior > 0

    def test_smyth_prior_unusable(self):
        with pytest.raises(ValueError):
            _estimate_smyth_prior(np.array([np.nan]), np.array([3.0]))

    def test_moderated_variance(self):
        out = _moderated_variance(np.array([1.0, 2.0, 3.0]), np.full(3, 10.0), 5.0, 1.5)
        assert (out > 0).all()
        np.testing.assert_allclose(out[0], (5 * 1.5 + 10 * 1.0) / 15)
        np.testing.assert_allclose(
            _moderated_variance(np.ones(2), np.ones(2), np.inf, 0.5), [0.5, 0.5]
        )
        with pytest.raises(ValueError):
            _moderated_variance([1.0], [1.0], 1.0, 0.0)

    def test_e_bayes_shrinks_toward_prior(self):
        beta, variable = _simulate(n_sites=200, seed=3)
        fit = lm_fit(beta, build_ewas_design(variable, sample_names=beta.columns))
        mod = e_bayes(fit)
        s2 = fit.sigma.to_numpy() ** 2
        lo = np.minimum(s2, mod.s2_prior) - 1e-12
        hi = np.maximum(s2, mod.s2_prior) + 1e-12
        post = mod.s2_post.to_numpy()
        assert ((post >= lo) & (post <= hi)).all()
        assert (mod.df_total <= fit.df_residual.sum()).all()
        p = mod.p_value.to_numpy()
        assert ((p >= 0) & (p <= 1)).all()

    def test_e_bayes_robust(self):
        beta, variable = _simulate(n_sites=200, seed=4)
        fit = lm_fit(beta, build_ewas_design(variable, sample_names=beta.columns))
        mod = e_bayes(fit, robust=True, winsor_tail_p=(0.05, 0.05))
        assert mod.t.shape == (200, 2)

    def test_robust_prior_downweights_outlier_sites(self):
        rng = np.random.default_rng(7)
        d0, d = 10.0, 6.0
        s2 = d0 / rng.chisquare(d0, size=2000) * rng.chisquare(d, size=2000) / d
        s2[:5] *= 1e4
        df = np.full(2000, d)
        plain = _estimate_smyth_prior(s2, df)
        prior = _estimate_smyth_prior(s2, df, robust=True)

        assert plain.df_shrunk is None
        assert prior.df_shrunk.shape == (2000,)
        assert prior.df_prior > plain.df_prior
        assert prior.df_shrunk[:5].max() < prior.df_prior
        assert prior.df_shrunk[:5].max() <= prior.df_shrunk[5:].min()
        assert (prior.df_shrunk[:5] < np.median(prior.df_shrunk)).all()

    def test_robust_prior_unusable_sites_take_global_df(self):
        rng = np.random.default_rng(8)
        s2 = rng.chisquare(4, size=300) / 4
        s2[3] = np.nan
        prior = _estimate_smyth_prior(s2, np.full(300, 4.0), robust=True)
        assert prior.df_shrunk[3] == prior.df_prior

    def test_robust_prior_tail_range(self):
        s2 = np.random.default_rng(9).chisquare(4, size=100) / 4
        with pytest.raises(ValueError):
            _estimate_smyth_prior(
                s2, np.full(100, 4.0), robust=True, winsor_tail_p=(0.0, 0.1)
            )

    def test_moderated_variance_per_site_prior_df(self):
        d0 = np.array([5.0, 0.0, np.inf])
        out = _moderated_variance(np.array([1.0, 3.0, 2.0]), np.full(3, 10.0), d0, 1.5)
        np.testing.assert_allclose(out, [(5 * 1.5 + 10 * 1.0) / 15, 3.0, 1.5])

    def test_e_bayes_robust_lowers_outlier_prior_df(self):
        beta, variable = _simulate(n_sites=200, seed=4)
        beta.iloc[7] += np.random.default_rng(8).normal(0, 1.0, 16)
        fit = lm_fit(beta, build_ewas_design(variable, sample_names=beta.columns))

        plain = e_bayes(fit)
        assert plain.df_prior.nunique() == 1

        mod = e_bayes(fit, robust=True)
        assert mod.df_prior.index.equals(beta.index)
        assert mod.df_prior.iloc[7] == mod.df_prior.min()
        assert mod.df_prior.iloc[7] < mod.df_prior.median()
        assert mod.df_total.iloc[7] < mod.df_total.median()
        assert (mod.df_total <= fit.df_residual.sum()).all()

    def test_adjust_pvalues(self):
        p = np.array([0.01, np.nan, 0.04, 0.03, 0.5])
        fdr = adjust_pvalues(p, "fdr_bh")
        holm = adjust_pvalues(p, "holm")
        assert np.isnan(fdr[1]) and np.isnan(holm[1])
        ok = ~np.isnan(p)
        assert (fdr[ok] >= p[ok]).all()
        assert (holm[ok] >= p[ok]).all()
        np.testing.assert_allclose(holm[0], 0.04)


class TestDesign:
    """Test design matrix construction"""

    def test_plain_design(self):
        cov = pd.DataFrame({"age": [1.0, 2.0, 3.0, 4.0]})
        design = build_ewas_design(np.array([0, 1, 0, 1]), cov)
        assert list(design.columns) == ["intercept", "variable", "age"]

    def test_cell_count_design_doubles_columns(self):
        cov = pd.DataFrame({"age": [1.0, 2.0, 3.0, 4.0], "bmi": [20, 22, 25, 30]})
        cc = np.array([0.2, 0.5, 0.7, 1.0])
        plain = build_ewas_design(np.array([0, 1, 0, 1]), cov)
        inter = build_ewas_design(np.array([0, 1, 0, 1]), cov, cell_counts=cc)
        assert inter.shape[1] == 2 * (plain.shape[1] - 1)
        assert "intercept" not in inter.columns
        assert list(inter.columns[3:]) == ["typeB.variable", "typeB.age", "typeB.bmi"]
        np.testing.assert_allclose(inter["variable"], [0, 0.5, 0, 1.0])
        np.testing.assert_allclose(inter["typeB.variable"], [0, 0.5, 0, 0.0])


class TestEwasRegression:
    """Test the site-wise regression engine"""

    def setup_method(self):
        self.beta, self.variable = _simulate(n_sites=80, seed=9, effect=0.3)

    def test_table_columns_and_invariants(self):
        res = ewas_regression(self.variable, self.beta)
        table = res.table
        assert list(table.columns) == [
            "p_value",
            "fdr",
            "p_holm",
            "t_statistic",
            "coefficient",
            "coefficient_ci_high",
            "coefficient_ci_low",
            "coefficient_se",
            "n",
        ]
        assert (table["fdr"] >= table["p_value"]).all()
        assert (table["p_holm"] >= table["p_value"]).all()
        assert (table["coefficient_ci_low"] <= table["coefficient"]).all()
        assert (table["coefficient"] <= table["coefficient_ci_high"]).all()
        assert (table["n"] == 16).all()
        assert res.fit_path == "fixed_effects"
        assert res.batch is None

    def test_detects_effect(self):
        table = ewas_regression(self.variable, self.beta).table
        top = table.sort_values("p_value").index[:5]
        assert set(top) == set(self.beta.index[:5])
        np.testing.assert_allclose(table["coefficient"].iloc[:5], 0.3, atol=0.05)

    def test_missing_counts(self):
        beta = self.beta.copy()
        beta.iloc[0, :3] = np.nan
        table = ewas_regression(self.variable, beta).table
        assert table["n"].iloc[0] == 13

    def test_batch_random_effect(self):
        batch = pd.Series(np.repeat(["a", "b", "c", "d"], 4), index=self.beta.columns)
        res = ewas_regression(self.variable, self.beta, batch=batch)
        assert res.fit_path == "random_effect"
        assert res.batch is batch
        assert np.isfinite(res.batch_cor)
        assert res.fit_error is None

    def test_batch_failure_falls_back(self, monkeypatch):
        original = core_analysis.lm_fit

        def failing(*args, **kwargs):
            if kwargs.get("block") is not None:
                raise np.linalg.LinAlgError("block covariance not positive definite")
            return original(*args, **kwargs)

        monkeypatch.setattr(core_analysis, "lm_fit", failing)
        batch = pd.Series(np.repeat(["a", "b"], 8), index=self.beta.columns)
        res = ewas_regression(self.variable, self.beta, batch=batch)
        ref = ewas_regression(self.variable, self.beta)
        assert res.fit_path == "fixed_effects"
        assert res.batch is None
        assert "positive definite" in res.fit_error
        pd.testing.assert_frame_equal(res.table, ref.table)

    def test_single_level_batch_propagates(self):
        batch = pd.Series(["a"] * 16, index=self.beta.columns)
        with pytest.raises(ValueError):
            ewas_regression(self.variable, self.beta, batch=batch)

    def test_lmfit_safer_matches(self):
        ref = ewas_regression(self.variable, self.beta)
        safe = ewas_regression(
            self.variable,
            self.beta,
            lmfit_safer=True,
            n_partitions=4,
            rng=np.random.default_rng(0),
        )
        pd.testing.assert_frame_equal(ref.table, safe.table)

    def test_unit_cell_counts_match_target_only_model(self):
        cc = pd.Series(np.ones(16), index=self.beta.columns)
        res = ewas_regression(
            self.variable, self.beta, cell_counts=cc, winsorize_pct=None
        )
        assert (res.design["typeB.variable"] == 0).all()

        design = build_ewas_design(self.variable, sample_names=self.beta.columns)
        fit = lm_fit(self.beta, design[["variable"]])
        mod = e_bayes(fit, robust=True)
        np.testing.assert_allclose(
            res.table["coefficient"], fit.coefficients["variable"], rtol=1e-10
        )
        np.testing.assert_allclose(
            res.table["p_value"], mod.p_value["variable"], rtol=1e-8
        )

    def test_batch_memory_check_is_not_partitioned(self, monkeypatch):
        monkeypatch.setattr(
            validation.psutil,
            "virtual_memory",
            lambda: SimpleNamespace(available=16),
        )
        batch = pd.Series(np.repeat(["a", "b", "c", "d"], 4), index=self.beta.columns)
        # the random-effect fit uses the whole matrix even in memory-safety mode
        with pytest.raises(MemoryError, match="85%"):
            ewas_regression(
                self.variable, self.beta, batch=batch, lmfit_safer=True, n_partitions=4
            )
        res = ewas_regression(
            self.variable,
            self.beta,
            lmfit_safer=True,
            n_partitions=4,
            rng=np.random.default_rng(0),
        )
        assert res.fit_path == "fixed_effects"

    def test_robust_regression(self):
        res = ewas_regression(self.variable, self.beta.iloc[:20], rlm=True)
        assert res.table["p_value"].notna().all()

    def test_weights(self):
        w = np.ones(self.beta.shape)
        ref = ewas_regression(self.variable, self.beta)
        res = ewas_regression(self.variable, self.beta, weights=w)
        np.testing.assert_allclose(res.table["coefficient"], ref.table["coefficient"])

    def test_precondition_failures(self):
        bad = self.variable.copy()
        bad[0] = np.nan
        with pytest.raises(ValueError):
            ewas_regression(bad, self.beta)
        with pytest.raises(ValueError):
            ewas_regression(self.variable[:5], self.beta)
        with pytest.raises(ValueError):
            ewas_regression(self.variable, self.beta, cell_counts=np.full(16, 1.5))


class TestAnalysisValidation:
    """Test validation helpers"""

    def test_memory_check_returns_estimates(self):
        beta = pd.DataFrame(np.zeros((10, 4)))
        info = check_analysis_memory(beta)
        assert set(info) == {"data_gb", "peak_gb", "available_gb"}

    def test_memory_check_raises(self, monkeypatch):
        monkeypatch.setattr(
            validation.psutil,
            "virtual_memory",
            lambda: SimpleNamespace(available=16),
        )
        beta = pd.DataFrame(np.zeros((100, 10)))
        with pytest.raises(MemoryError, match="lmfit_safer"):
            check_analysis_memory(beta)
        info = check_analysis_memory(beta, partitioned=True)
        assert info["peak_gb"] < 4 * info["data_gb"]

    def test_validate_regression_inputs(self):
        beta = pd.DataFrame(np.zeros((3, 4)))
        validate_regression_inputs(np.zeros(4), beta)
        with pytest.raises(ValueError):
            validate_regression_inputs(np.array([0, 1, np.nan, 1]), beta)
        with pytest.raises(ValueError):
            validate_regression_inputs(
                np.zeros(4), beta, covariates=pd.DataFrame({"a": [1]})
            )
        with pytest.raises(ValueError):
            validate_regression_inputs(np.zeros(4), beta, batch=[1, 2])
        with pytest.raises(ValueError):
            validate_regression_inputs(
                np.zeros(4), beta, cell_counts=[0.1, 0.2, -0.1, 0.5]
            )

    def test_build_model_matrix(self):
        cov = pd.DataFrame({"age": [30.0, np.nan, 50.0]}, index=["a", "b", "c"])
        mod = build_model_matrix(cov, 3, variable=np.array([0, 1, 1]))
        assert list(mod.columns) == ["intercept", "age", "variable"]
        assert mod.shape[0] == 3
        assert np.isnan(mod.loc["b", "age"])
        mod0 = build_model_matrix(None, 3)
        assert list(mod0.columns) == ["intercept"]


class TestAnalysisPreparation:
    """Test site selection and imputation"""

    def test_select_most_variable(self):
        beta = pd.DataFrame(
            [[0, 0, 0], [0, 1, 2], [0, 2, 4], [1, 2, 3], [5, 5, 5]],
            index=["a", "b", "c", "d", "e"],
            dtype=float,
        )
        out = select_most_variable(beta, n=3)
        assert list(out.index) == ["c", "b", "d"]
        out = select_most_variable(beta, sites=pd.Index(["a", "b", "d"]), n=2)
        assert list(out.index) == ["b", "d"]

    def test_select_most_variable_errors(self):
        beta = pd.DataFrame(np.random.default_rng(0).normal(size=(4, 5)))
        with pytest.raises(ValueError):
            select_most_variable(beta, n=5)
        with pytest.raises(ValueError):
            select_most_variable(beta, n=1)

    def test_impute_row_means(self):
        beta = pd.DataFrame(
            [[1.0, np.nan, 3.0], [2.0, 2.0, np.nan], [np.nan, np.nan, np.nan]],
            index=["a", "b", "c"],
        )
        out = impute_missing_values(beta)
        assert out.loc["a"].tolist() == [1.0, 2.0, 3.0]
        assert out.loc["b"].tolist() == [2.0, 2.0, 2.0]
        assert out.loc["c"].isna().all()
        assert beta.isna().sum().sum() == 5

    def test_impute_complete_matrix_is_copied(self):
        beta = pd.DataFrame(np.ones((2, 3)))
        out = impute_missing_values(beta)
        pd.testing.assert_frame_equal(out, beta)
        assert out is not beta


class TestAnalysisPostprocessing:
    """Test result summaries"""

    def setup_method(self):
        self.table = pd.DataFrame(
            {
                "p_value": [1e-6, 1e-4, 0.02, 0.5, np.nan],
                "fdr": [5e-6, 2.5e-4, 0.03, 0.6, np.nan],
                "p_holm": [5e-6, 4e-4, 0.06, 1.0, np.nan],
                "coefficient": [0.2, -0.1, 0.05, 0.0, np.nan],
            },
            index=["s1", "s2", "s3", "s4", "s5"],
        )

    def test_genomic_inflation_uniform(self):
        p = (np.arange(1, 10001) - 0.5) / 10000
        assert genomic_inflation(p) == pytest.approx(1.0, abs=1e-3)
        assert np.isnan(genomic_inflation([np.nan]))

    def test_get_significant_sites(self):
        assert get_significant_sites(self.table) == ["s1", "s2", "s3"]
        assert get_significant_sites(self.table, pval_col="p_holm") == ["s1", "s2"]
        assert get_significant_sites(self.table, direction="negative") == ["s2"]
        assert get_significant_sites(self.table, coef_thresh=0.08) == ["s1", "s2"]
        summary = get_significant_sites(self.table, return_summary=True)
        assert summary["n_positive"] == 2
        assert summary["n_negative"] == 1

    def test_get_significant_sites_errors(self):
        with pytest.raises(KeyError):
            get_significant_sites(self.table, pval_col="padj")
        with pytest.raises(ValueError):
            get_significant_sites(self.table, direction="up")
        assert get_significant_sites(self.table.iloc[:0]) == []

    def test_summarize_ewas(self):
        result = SimpleNamespace(analyses={"none": SimpleNamespace(table=self.table)})
        summary = summarize_ewas(result)
        row = summary.loc["none"]
        assert row["tested"] == 4
        assert row["significant_fdr"] == 3
        assert row["significant_holm"] == 2
        assert row["min_p"] == pytest.approx(1e-6)
        with pytest.raises(ValueError):
            summarize_ewas(result, pval_thresh=0)
