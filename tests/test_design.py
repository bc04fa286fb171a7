"""
Tests for lipogenesis_toolkit.design module
"""

import numpy as np
import pytest

from lipogenesis_toolkit.design import (
    Contrast,
    ContrastError,
    DesignError,
    DesignSpec,
    build_design_matrix,
    diet_contrasts,
    group_label,
    resolve_contrasts,
    study_contrasts,
)


class TestDesignSpec:
    def test_from_metadata_levels_in_category_order(self, study_metadata):
        spec = DesignSpec.from_metadata(study_metadata)

        assert spec.levels == (
            "chow_4wk", "starch_4wk", "fat_4wk", "chow_30wk", "starch_30wk", "fat_30wk"
        )
        assert spec.samples == list(study_metadata.index)

    def test_only_present_levels(self, study_metadata):
        four_week = study_metadata[study_metadata["Time"] == "4wk"]
        spec = DesignSpec.from_metadata(four_week)
        assert spec.levels == ("chow_4wk", "starch_4wk", "fat_4wk")

    def test_missing_factor_column(self, four_week_metadata):
        with pytest.raises(ValueError, match="not found"):
            DesignSpec.from_metadata(four_week_metadata, factor_column="Strain")

    def test_covariates(self, four_week_metadata):
        metadata = four_week_metadata.copy()
        metadata["BodyWeight"] = np.linspace(20, 40, len(metadata))
        spec = DesignSpec.from_metadata(metadata, covariates=["BodyWeight"])

        assert spec.coefficient_names == ["chow_4wk", "starch_4wk", "fat_4wk", "BodyWeight"]

    def test_non_numeric_covariate(self, four_week_metadata):
        metadata = four_week_metadata.copy()
        metadata["Strain"] = "C57BL/6J"
        with pytest.raises(ValueError, match="non-numeric"):
            DesignSpec.from_metadata(metadata, covariates=["Strain"])


class TestBuildDesignMatrix:
    """Test cell-means design construction and rank checks"""

    def test_cell_means_design(self, four_week_metadata):
        design = build_design_matrix(DesignSpec.from_metadata(four_week_metadata))

        assert design.shape == (9, 3)
        assert list(design.columns) == ["chow_4wk", "starch_4wk", "fat_4wk"]
        assert (design.sum(axis=1) == 1).all()
        assert design.loc["fat_4wk_2", "fat_4wk"] == 1.0

    def test_empty_level_is_aliased(self, four_week_metadata):
        groups = four_week_metadata["Group"].astype(str)
        spec = DesignSpec(groups, ("chow_4wk", "starch_4wk", "fat_4wk", "fat_30wk"))

        with pytest.raises(DesignError) as excinfo:
            build_design_matrix(spec)

        assert excinfo.value.aliased == ["fat_30wk"]
        assert "fat_30wk" in str(excinfo.value)

    def test_collinear_covariate(self, four_week_metadata):
        metadata = four_week_metadata.copy()
        metadata["ChowFlag"] = (metadata["Diet"] == "chow").astype(float)
        spec = DesignSpec.from_metadata(metadata, covariates=["ChowFlag"])

        with pytest.raises(DesignError) as excinfo:
            build_design_matrix(spec)

        assert {"chow_4wk", "ChowFlag"} <= set(excinfo.value.aliased)

    def test_no_residual_degrees_of_freedom(self, four_week_metadata):
        one_each = four_week_metadata.groupby("Group", observed=True).head(1)
        with pytest.raises(DesignError, match="no residual degrees of freedom"):
            build_design_matrix(DesignSpec.from_metadata(one_each))

    def test_undeclared_level(self, four_week_metadata):
        groups = four_week_metadata["Group"].astype(str)
        with pytest.raises(DesignError, match="undeclared"):
            build_design_matrix(DesignSpec(groups, ("chow_4wk", "fat_4wk")))


class TestContrast:
    def test_difference(self):
        contrast = Contrast.difference("fat_vs_chow", "fat_4wk", "chow_4wk")
        assert dict(contrast.weights) == {"fat_4wk": 1.0, "chow_4wk": -1.0}

    def test_mean_difference(self):
        contrast = Contrast.mean_difference("hf", ["starch_4wk", "fat_4wk"], ["chow_4wk"])
        assert contrast.weights["starch_4wk"] == pytest.approx(0.5)
        assert contrast.weights["chow_4wk"] == pytest.approx(-1.0)


class TestResolveContrasts:
    """Test contrast resolution against design columns"""

    columns = ["chow_4wk", "starch_4wk", "fat_4wk"]

    def test_contrast_matrix(self):
        matrix = resolve_contrasts(diet_contrasts(["chow", "starch", "fat"], "4wk"), self.columns)

        assert matrix.shape == (3, 4)
        assert matrix.loc["fat_4wk", "fat_vs_chow_4wk"] == 1.0
        assert matrix.loc["chow_4wk", "fat_vs_chow_4wk"] == -1.0
        assert np.allclose(matrix.sum(axis=0), 0.0)

    def test_unknown_coefficient(self):
        with pytest.raises(ContrastError, match="not in the design"):
            resolve_contrasts([Contrast.difference("x", "fat_30wk", "chow_4wk")], self.columns)

    def test_duplicate_names(self):
        contrast = Contrast.difference("x", "fat_4wk", "chow_4wk")
        with pytest.raises(ContrastError, match="Duplicate"):
            resolve_contrasts([contrast, contrast], self.columns)

    def test_all_zero(self):
        with pytest.raises(ContrastError, match="all-zero"):
            resolve_contrasts([Contrast("nothing", {"fat_4wk": 0.0})], self.columns)

    def test_empty(self):
        with pytest.raises(ContrastError, match="No contrasts"):
            resolve_contrasts([], self.columns)


class TestStudyContrasts:
    """Test the fixed contrast set of the diet x time study"""

    def test_diet_contrast_names(self):
        names = [c.name for c in diet_contrasts(["chow", "starch", "fat"], "4wk")]
        assert names == [
            "starch_vs_chow_4wk",
            "fat_vs_chow_4wk",
            "fat_vs_starch_4wk",
            "starch_fat_mean_vs_chow_4wk",
        ]

    def test_reference_must_be_a_diet(self):
        with pytest.raises(ContrastError, match="Reference diet"):
            diet_contrasts(["starch", "fat"], "4wk", reference="chow")

    def test_full_set(self):
        contrasts = {c.name: c for c in study_contrasts()}

        assert len(contrasts) == 11
        interaction = contrasts["fat_vs_chow_4wk_minus_30wk"].weights
        assert interaction == {"fat_4wk": 1.0, "chow_4wk": -1.0, "fat_30wk": -1.0, "chow_30wk": 1.0}
        age = contrasts["30wk_vs_4wk"].weights
        assert age["fat_30wk"] == pytest.approx(1 / 3)
        assert age["chow_4wk"] == pytest.approx(-1 / 3)

    def test_resolves_against_study_design(self, study_metadata):
        design = build_design_matrix(DesignSpec.from_metadata(study_metadata))
        matrix = resolve_contrasts(study_contrasts(), design.columns)
        assert matrix.shape == (6, 11)


def test_group_label():
    assert group_label("fat", "30wk") == "fat_30wk"
