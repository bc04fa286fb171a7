"""
Tests for lipogenesis_toolkit.statistical_analysis module
"""

from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest
from scipy.stats import kstest

from lipogenesis_toolkit.design import (
    Contrast,
    ContrastError,
    DesignError,
    DesignSpec,
    build_design_matrix,
    diet_contrasts,
    resolve_contrasts,
)
from lipogenesis_toolkit.imputation import ImputationConfig
from lipogenesis_toolkit.missingness import INSUFFICIENT_DETECTIONS, NO_DETECTIONS, MissingnessConfig
from lipogenesis_toolkit.pipeline import run_subset_analysis
from lipogenesis_toolkit.statistical_analysis import (
    StatisticalConfig,
    apply_multiple_testing_correction,
    compute_contrasts,
    display_analysis_summary,
    fit_linear_models,
    moderate_variances,
    run_differential_analysis,
    significant_proteins,
)
from lipogenesis_toolkit.validation import SampleMatchingError

DIETS = ["chow", "starch", "fat"]


class TestStatisticalConfig:
    """Test the StatisticalConfig class"""

    def test_config_initialization(self):
        config = StatisticalConfig()

        assert config.trend is True
        assert config.robust is True
        assert config.correction_method == "fdr_bh"
        assert config.p_value_threshold == 0.05
        assert config.p_value_column == "adj.P.Val"
        assert config.log2_fold_change_threshold == 0.0

    def test_config_modification(self):
        config = StatisticalConfig()
        config.fold_change_threshold = 2.0
        config.use_adjusted_pvalue = "unadjusted"

        assert config.log2_fold_change_threshold == pytest.approx(1.0)
        assert config.p_value_column == "P.Value"

    def test_invalid_correction_method(self):
        config = StatisticalConfig()
        config.correction_method = "storey"
        with pytest.raises(ValueError, match="correction_method"):
            config.validate()

    def test_invalid_fold_change(self):
        config = StatisticalConfig()
        config.fold_change_threshold = 0.5
        with pytest.raises(ValueError, match="fold_change_threshold"):
            config.validate()


class TestFitLinearModels:
    """Test per-protein least squares fits"""

    def test_coefficients_are_group_means(self, scenario_matrix, four_week_metadata):
        design = build_design_matrix(DesignSpec.from_metadata(four_week_metadata))
        fit = fit_linear_models(scenario_matrix.iloc[:2], design)

        assert fit.coefficients.loc["protein1", "chow_4wk"] == pytest.approx(20.0)
        assert fit.coefficients.loc["protein1", "fat_4wk"] == pytest.approx(22.0)
        assert fit.df_residual.tolist() == [6.0, 6.0]
        assert fit.sigma2.loc["protein1"] == pytest.approx(0.01)
        assert fit.df_pooled == 12.0

    def test_missing_values_use_observed_samples(self, scenario_matrix, four_week_metadata):
        matrix = scenario_matrix.iloc[:2].copy()
        matrix.loc["protein1", "chow_4wk_1"] = np.nan
        design = build_design_matrix(DesignSpec.from_metadata(four_week_metadata))
        fit = fit_linear_models(matrix, design)

        assert fit.coefficients.loc["protein1", "chow_4wk"] == pytest.approx(20.05)
        assert fit.df_residual.loc["protein1"] == 5.0
        assert fit.n_obs.loc["protein1"] == 8

    def test_group_without_observations_is_nan(self, scenario_matrix, four_week_metadata):
        design = build_design_matrix(DesignSpec.from_metadata(four_week_metadata))
        fit = fit_linear_models(scenario_matrix, design)

        assert np.isnan(fit.coefficients.loc["protein3", "fat_4wk"])
        assert fit.coefficients.loc["protein3", "chow_4wk"] == pytest.approx(19.6)
        assert fit.df_residual.loc["protein3"] == 1.0

    def test_design_sample_mismatch(self, scenario_matrix, four_week_metadata):
        design = build_design_matrix(DesignSpec.from_metadata(four_week_metadata))
        with pytest.raises(SampleMatchingError):
            fit_linear_models(scenario_matrix.iloc[:, :8], design.iloc[1:])


class TestComputeContrasts:
    def test_one_uncorrected_table_per_contrast(self, scenario_matrix, four_week_metadata):
        design = build_design_matrix(DesignSpec.from_metadata(four_week_metadata))
        fit = fit_linear_models(scenario_matrix.iloc[:2], design)
        config = StatisticalConfig()
        config.trend = False
        config.robust = False
        contrast_matrix = resolve_contrasts(diet_contrasts(DIETS, "4wk"), design.columns)

        tables = compute_contrasts(fit, contrast_matrix, moderate_variances(fit, config))

        assert list(tables) == list(contrast_matrix.columns)
        fat = tables["fat_vs_chow_4wk"]
        assert fat.loc["protein1", "logFC"] == pytest.approx(2.0)
        assert fat.loc["protein2", "logFC"] == pytest.approx(0.0)
        assert "adj.P.Val" not in fat.columns
        # identical residual variances give an infinite prior df, capped at the pooled df
        assert fat["df_total"].tolist() == [12.0, 12.0]


class TestApplyMultipleTestingCorrection:
    """Test per-contrast FDR correction"""

    @pytest.fixture
    def raw_results(self):
        rng = np.random.default_rng(8)
        p_values = np.concatenate([rng.uniform(0, 1e-3, 20), rng.uniform(0, 1, 180), [np.nan]])
        return pd.DataFrame(
            {"logFC": rng.normal(0, 2, len(p_values)), "P.Value": p_values},
            index=[f"P{i}" for i in range(len(p_values))],
        )

    def test_adjusted_at_least_raw(self, raw_results):
        corrected = apply_multiple_testing_correction(raw_results, StatisticalConfig())
        valid = corrected["P.Value"].notna()

        assert (corrected.loc[valid, "adj.P.Val"] >= corrected.loc[valid, "P.Value"] - 1e-15).all()
        assert corrected.loc[valid, "adj.P.Val"].le(1.0).all()

    def test_monotone_in_raw_p(self, raw_results):
        corrected = apply_multiple_testing_correction(raw_results, StatisticalConfig()).dropna()
        ordered = corrected.sort_values("P.Value")["adj.P.Val"].to_numpy()

        assert np.all(np.diff(ordered) >= -1e-15)

    def test_missing_p_stays_missing(self, raw_results):
        corrected = apply_multiple_testing_correction(raw_results, StatisticalConfig())
        assert np.isnan(corrected["adj.P.Val"].iloc[-1])
        assert not corrected["Significant"].iloc[-1]
        assert "adj.P.Val" not in raw_results.columns

    def test_fold_change_filter(self, raw_results):
        config = StatisticalConfig()
        config.fold_change_threshold = 4.0
        corrected = apply_multiple_testing_correction(raw_results, config)

        assert (corrected.loc[corrected["Significant"], "logFC"].abs() >= 2.0).all()

    def test_no_correction(self, raw_results):
        config = StatisticalConfig()
        config.correction_method = "none"
        corrected = apply_multiple_testing_correction(raw_results, config)
        pd.testing.assert_series_equal(
            corrected["adj.P.Val"], corrected["P.Value"], check_names=False
        )


class TestRunDifferentialAnalysis:
    """Test moderated contrasts over the diet design"""

    def test_null_p_values_are_uniform(self, null_matrix, four_week_metadata):
        config = StatisticalConfig()
        config.trend = False
        config.robust = False
        results = run_differential_analysis(
            null_matrix,
            DesignSpec.from_metadata(four_week_metadata),
            [Contrast.difference("fat_vs_chow_4wk", "fat_4wk", "chow_4wk")],
            config,
            verbose=False,
        )
        p_values = results["fat_vs_chow_4wk"]["P.Value"].to_numpy()

        assert kstest(p_values, "uniform").pvalue > 0.001
        assert np.mean(p_values < 0.05) == pytest.approx(0.05, abs=0.02)

    def test_default_moderation_keeps_null_tail_rate(self, large_null_matrix, four_week_metadata, statistical_config):
        """Trend and robust moderation (the defaults) keep the type I error at its nominal level"""
        assert statistical_config.trend and statistical_config.robust
        results = run_differential_analysis(
            large_null_matrix,
            DesignSpec.from_metadata(four_week_metadata),
            [Contrast.difference("fat_vs_chow_4wk", "fat_4wk", "chow_4wk")],
            statistical_config,
            verbose=False,
        )
        p_values = results["fat_vs_chow_4wk"]["P.Value"].to_numpy()

        assert kstest(p_values, "uniform").pvalue > 0.001
        assert np.mean(p_values < 0.01) == pytest.approx(0.01, abs=0.003)
        assert np.mean(p_values < 0.001) < 0.002

    def test_row_order_preserved(self, null_matrix, four_week_metadata):
        shuffled = null_matrix.iloc[:200].sample(frac=1.0, random_state=1)
        results = run_differential_analysis(
            shuffled,
            DesignSpec.from_metadata(four_week_metadata),
            diet_contrasts(DIETS, "4wk"),
            verbose=False,
        )

        for table in results.values():
            assert list(table.index) == list(shuffled.index)
        assert set(results) == {
            "starch_vs_chow_4wk", "fat_vs_chow_4wk", "fat_vs_starch_4wk", "starch_fat_mean_vs_chow_4wk"
        }

    def test_contrast_error_before_fitting(self, scenario_matrix, four_week_metadata):
        bad = [Contrast.difference("fat_vs_chow_30wk", "fat_30wk", "chow_30wk")]
        with patch("lipogenesis_toolkit.statistical_analysis.fit_linear_models") as mock_fit:
            with pytest.raises(ContrastError):
                run_differential_analysis(
                    scenario_matrix, DesignSpec.from_metadata(four_week_metadata), bad, verbose=False
                )
            mock_fit.assert_not_called()

    def test_design_error_names_aliased_group(self, scenario_matrix, four_week_metadata):
        groups = four_week_metadata["Group"].astype(str)
        spec = DesignSpec(groups, ("chow_4wk", "starch_4wk", "fat_4wk", "fat_30wk"))
        with pytest.raises(DesignError, match="fat_30wk"):
            run_differential_analysis(
                scenario_matrix, spec, diet_contrasts(DIETS, "4wk"), verbose=False
            )

    def test_inestimable_contrast_is_nan(self, scenario_matrix, four_week_metadata):
        results = run_differential_analysis(
            scenario_matrix,
            DesignSpec.from_metadata(four_week_metadata),
            diet_contrasts(DIETS, "4wk"),
            verbose=False,
        )
        table = results["fat_vs_chow_4wk"]

        assert np.isnan(table.loc["protein3", "logFC"])
        assert np.isnan(table.loc["protein3", "adj.P.Val"])
        assert table.loc[["protein1", "protein2"], "P.Value"].notna().all()


class TestEndToEndScenario:
    """Three proteins x nine samples through classification, imputation and testing"""

    @pytest.fixture
    def analysis(self, scenario_matrix, four_week_metadata):
        return run_subset_analysis(
            scenario_matrix,
            four_week_metadata,
            criteria=None,
            missingness_config=MissingnessConfig(min_detections=3),
            imputation_config=ImputationConfig(on_failure="exclude"),
            contrasts=diet_contrasts(DIETS, "4wk"),
            verbose=False,
        )

    def test_sparse_protein_dropped(self, analysis):
        assert analysis.dropped.to_dict() == {"protein3": INSUFFICIENT_DETECTIONS}
        for table in analysis.results.values():
            assert "protein3" not in table.index

    def test_undetected_protein_not_tested(self, scenario_matrix, four_week_metadata):
        matrix = scenario_matrix.copy()
        matrix.loc["protein4"] = np.nan
        analysis = run_subset_analysis(
            matrix,
            four_week_metadata,
            criteria=None,
            missingness_config=MissingnessConfig(min_detections=0),
            imputation_config=ImputationConfig(on_failure="exclude"),
            contrasts=diet_contrasts(DIETS, "4wk"),
            verbose=False,
        )

        assert analysis.dropped.get("protein4") == NO_DETECTIONS
        for table in analysis.results.values():
            assert "protein4" not in table.index

    def test_fat_effect_detected(self, analysis):
        table = analysis.results["fat_vs_chow_4wk"]

        assert table.loc["protein1", "logFC"] == pytest.approx(2.0)
        assert table.loc["protein1", "P.Value"] < 1e-6
        assert table.loc["protein1", "Significant"]
        assert "protein1" in analysis.significant["fat_vs_chow_4wk"]["up"]

    def test_flat_protein_not_significant(self, analysis):
        table = analysis.results["fat_vs_chow_4wk"]

        assert table.loc["protein2", "logFC"] == pytest.approx(0.0, abs=1e-9)
        assert table.loc["protein2", "P.Value"] > 0.5
        assert not table.loc["protein2", "Significant"]

    def test_starch_matches_chow(self, analysis):
        table = analysis.results["starch_vs_chow_4wk"]
        assert table.loc["protein1", "logFC"] == pytest.approx(0.0, abs=1e-9)

    def test_inputs_untouched(self, analysis, scenario_matrix):
        assert scenario_matrix.shape == (3, 9)
        assert scenario_matrix.loc["protein3"].isna().sum() == 7


class TestSignificantProteins:
    def test_directions(self):
        table = pd.DataFrame(
            {"logFC": [2.0, -1.5, 0.3], "Significant": [True, True, False]},
            index=["A", "B", "C"],
        )
        lists = significant_proteins({"fat_vs_chow_4wk": table})
        assert lists == {"fat_vs_chow_4wk": {"up": ["A"], "down": ["B"]}}


class TestDisplayAnalysisSummary:
    def test_summary_counts(self):
        table = pd.DataFrame(
            {
                "logFC": [2.0, -1.5, 0.3],
                "P.Value": [1e-5, 1e-4, np.nan],
                "adj.P.Val": [1e-4, 1e-3, np.nan],
                "Significant": [True, True, False],
            },
            index=["A", "B", "C"],
        )
        summary = display_analysis_summary({"fat_vs_chow_4wk": table})

        row = summary.iloc[0]
        assert row["Tested"] == 2
        assert row["Up"] == 1
        assert row["Down"] == 1
