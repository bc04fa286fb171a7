"""
Pytest configuration and fixtures for lipogenesis_toolkit tests
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from lipogenesis_toolkit.data_import import ProteinGroupsConfig
from lipogenesis_toolkit.preprocessing import add_group_labels
from lipogenesis_toolkit.statistical_analysis import StatisticalConfig

DIETS = ["chow", "starch", "fat"]
TIMES = ["4wk", "30wk"]


def make_metadata(times=("4wk",), replicates=3):
    """Sample metadata indexed by sample id, ordered diet-within-time."""
    rows = []
    for time in times:
        for diet in DIETS:
            for rep in range(1, replicates + 1):
                rows.append({"Sample": f"{diet}_{time}_{rep}", "Diet": diet, "Time": time})
    metadata = pd.DataFrame(rows).set_index("Sample")
    return add_group_labels(metadata, diet_levels=DIETS, time_levels=list(times))


@pytest.fixture
def four_week_metadata():
    """9 samples: chow, starch and fat at 4 weeks, 3 replicates each"""
    return make_metadata(("4wk",))


@pytest.fixture
def study_metadata():
    """18 samples: 3 diets x 2 timepoints, 3 replicates each"""
    return make_metadata(("4wk", "30wk"))


@pytest.fixture
def scenario_matrix(four_week_metadata):
    """
    Three proteins over nine samples:
    protein1 - fat is chow + 2 with small replicate spread
    protein2 - same level in every group
    protein3 - detected only in two chow samples
    """
    samples = four_week_metadata.index
    offsets = np.array([-0.1, 0.0, 0.1])
    protein1 = np.concatenate([20 + offsets, 20 + offsets[::-1], 22 + offsets])
    protein2 = np.concatenate([21 + offsets[[1, 2, 0]], 21 + offsets, 21 + offsets[[2, 0, 1]]])
    protein3 = np.array([19.5, 19.7] + [np.nan] * 7)
    return pd.DataFrame(
        [protein1, protein2, protein3],
        index=pd.Index(["protein1", "protein2", "protein3"], name="Protein"),
        columns=samples,
    )


def make_null_matrix(samples, n_proteins=2000, seed=2024, d0=4.0, s0_sq=0.25):
    """Proteins with no group effect and variances drawn from a scaled inverse chi-square prior"""
    rng = np.random.default_rng(seed)
    sigma_sq = d0 * s0_sq / rng.chisquare(d0, size=n_proteins)
    means = rng.uniform(18, 30, size=n_proteins)
    values = means[:, None] + rng.normal(size=(n_proteins, len(samples))) * np.sqrt(sigma_sq)[:, None]
    return pd.DataFrame(
        values,
        index=pd.Index([f"P{i:05d}" for i in range(n_proteins)], name="Protein"),
        columns=samples,
    )


@pytest.fixture
def null_matrix(four_week_metadata):
    """2000 null proteins over the 4-week samples"""
    return make_null_matrix(four_week_metadata.index)


@pytest.fixture
def large_null_matrix(four_week_metadata):
    """20000 null proteins, enough to resolve the 1 % tail of the p-values"""
    return make_null_matrix(four_week_metadata.index, n_proteins=20000, seed=11)


@pytest.fixture
def statistical_config():
    """Default statistical configuration"""
    return StatisticalConfig()


@pytest.fixture
def protein_groups_config():
    return ProteinGroupsConfig()


def make_protein_groups(metadata, seed=7, n_background=30):
    """
    MaxQuant-style protein groups table over the given samples.

    Fasn rises 4-fold (log2 + 2) under the fat diet at every time. Scd1 is
    detected in only one starch sample at 4 weeks (MNAR, imputable).
    Acly is never detected in fat at 30 weeks. One contaminant, one reverse
    hit and one single-peptide group must be filtered out.
    """
    rng = np.random.default_rng(seed)
    samples = list(metadata.index)
    diets = metadata["Diet"].astype(str).to_numpy()
    times = metadata["Time"].astype(str).to_numpy()

    rows = []

    def add(protein_id, gene, log_values, contaminant="", reverse="", peptides=5):
        linear = np.where(np.isnan(log_values), 0.0, 2.0 ** log_values)
        row = {
            "Protein IDs": protein_id,
            "Gene names": gene,
            "Potential contaminant": contaminant,
            "Reverse": reverse,
            "Only identified by site": "",
            "Unique peptides": peptides,
        }
        row.update({f"LFQ intensity {s}": v for s, v in zip(samples, linear)})
        rows.append(row)

    for i in range(n_background):
        base = rng.uniform(22, 30)
        add(f"Q{i:05d}", f"Gene{i}", base + rng.normal(0, 0.1, len(samples)))

    fasn = 31 + rng.normal(0, 0.1, len(samples)) + np.where(diets == "fat", 2.0, 0.0)
    add("P19096", "Fasn", fasn)

    scd1 = 21 + rng.normal(0, 0.2, len(samples))
    starch_4wk = np.flatnonzero((diets == "starch") & (times == "4wk"))
    scd1[starch_4wk[1:]] = np.nan
    add("P13516", "Scd1;Scd", scd1)

    acly = 20.5 + rng.normal(0, 0.2, len(samples))
    acly[(diets == "fat") & (times == "30wk")] = np.nan
    add("Q91V92", "Acly", acly)

    add("CON__P02769", "ALB", 25 + rng.normal(0, 0.1, len(samples)), contaminant="+")
    add("REV__Q00000", "", 24 + rng.normal(0, 0.1, len(samples)), reverse="+")
    add("P99999", "Lonely", 23 + rng.normal(0, 0.1, len(samples)), peptides=1)

    return pd.DataFrame(rows)


@pytest.fixture
def protein_groups(study_metadata):
    """Protein groups table for the 18-sample study"""
    return make_protein_groups(study_metadata)


@pytest.fixture
def study_files(tmp_path, study_metadata, protein_groups):
    """proteinGroups.txt and metadata.csv written to a temporary directory"""
    protein_file = tmp_path / "proteinGroups.txt"
    metadata_file = tmp_path / "metadata.csv"
    protein_groups.to_csv(protein_file, sep="\t", index=False)
    study_metadata[["Diet", "Time"]].reset_index().to_csv(metadata_file, index=False)
    return str(protein_file), str(metadata_file)
