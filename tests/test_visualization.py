"""
Tests for lipogenesis_toolkit.visualization module
"""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest
from matplotlib.figure import Figure

from lipogenesis_toolkit.data_import import extract_intensity_matrix
from lipogenesis_toolkit.missingness import MissingnessConfig, classify_missingness
from lipogenesis_toolkit.statistical_analysis import StatisticalConfig
from lipogenesis_toolkit.visualization import (
    plot_intensity_distributions,
    plot_missingness_summary,
    plot_pca,
    plot_volcano,
)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


@pytest.fixture
def study_matrix(protein_groups):
    return extract_intensity_matrix(protein_groups)


@pytest.fixture
def contrast_table():
    rng = np.random.default_rng(4)
    n = 100
    log_fc = rng.normal(0, 1, n)
    p_values = rng.uniform(0, 1, n)
    p_values[:10] = 1e-6
    log_fc[:5] = 2.5
    log_fc[5:10] = -2.5
    return pd.DataFrame(
        {
            "logFC": log_fc,
            "P.Value": p_values,
            "adj.P.Val": np.minimum(p_values * 10, 1.0),
            "Significant": np.arange(n) < 10,
        },
        index=[f"P{i}" for i in range(n)],
    )


class TestPlotVolcano:
    """Test volcano plot creation"""

    def test_returns_figure(self, contrast_table):
        fig = plot_volcano(contrast_table)
        assert isinstance(fig, Figure)

    def test_labels_use_gene_symbols(self, contrast_table):
        annotation = pd.DataFrame(
            {"Gene": [f"Gene{i}" for i in range(len(contrast_table))]}, index=contrast_table.index
        )
        fig = plot_volcano(contrast_table, annotation=annotation, label_top_n=3)
        texts = [t.get_text() for t in fig.axes[0].texts]

        assert len(texts) == 3
        assert all(t.startswith("Gene") for t in texts)

    def test_fold_change_lines(self, contrast_table):
        config = StatisticalConfig()
        config.fold_change_threshold = 2.0
        fig = plot_volcano(contrast_table, config, label_top_n=0)

        # one horizontal significance line and two vertical fold-change lines
        assert len(fig.axes[0].lines) == 3

    def test_missing_p_values_skipped(self, contrast_table):
        table = contrast_table.copy()
        table.iloc[0, table.columns.get_loc("adj.P.Val")] = np.nan
        assert isinstance(plot_volcano(table, label_top_n=0), Figure)


class TestPlotPCA:
    def test_returns_figure(self, study_matrix, study_metadata):
        fig = plot_pca(study_matrix, study_metadata)
        assert isinstance(fig, Figure)
        assert "PC1" in fig.axes[0].get_xlabel()

    def test_no_complete_proteins(self, study_metadata):
        matrix = pd.DataFrame(np.nan, index=["P1", "P2"], columns=study_metadata.index)
        assert plot_pca(matrix, study_metadata) is None


class TestPlotMissingnessSummary:
    def test_returns_figure(self, study_matrix, study_metadata):
        record = classify_missingness(
            study_matrix, study_metadata["Group"], MissingnessConfig(min_detections=1), verbose=False
        )
        fig = plot_missingness_summary(record)

        assert isinstance(fig, Figure)
        assert len(fig.axes) == 2


class TestPlotIntensityDistributions:
    def test_returns_figure(self, study_matrix, study_metadata):
        fig = plot_intensity_distributions(study_matrix, study_metadata)
        assert isinstance(fig, Figure)

    def test_requires_alignment(self, study_matrix, study_metadata):
        from lipogenesis_toolkit.validation import SampleMatchingError

        with pytest.raises(SampleMatchingError):
            plot_intensity_distributions(study_matrix, study_metadata.iloc[::-1])

