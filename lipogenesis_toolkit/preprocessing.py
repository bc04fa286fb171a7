"""
Preprocessing Module for the Lipogenesis Proteomics Toolkit

Quality filtering of protein groups, composite group labels for the
diet x time design, sample subsetting and completeness assessment.
"""

from typing import Any, List, Optional, Sequence, Tuple

import pandas as pd

from .data_import import ProteinGroupsConfig
from .design import group_label
from .validation import check_alignment


def _flag_is_set(column: pd.Series) -> pd.Series:
    return column.fillna("").astype(str).str.strip() == "+"


def filter_quality_flags(
    protein_groups: pd.DataFrame,
    config: Optional[ProteinGroupsConfig] = None,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Keep protein groups with enough unique peptides and no quality flag set.

    Parameters:
    -----------
    protein_groups : pd.DataFrame
        Raw protein groups table
    config : ProteinGroupsConfig, optional
        Flag columns and the unique peptide threshold
    verbose : bool
        Whether to print removal counts

    Returns:
    --------
    pd.DataFrame : Filtered copy of the table
    """
    if config is None:
        config = ProteinGroupsConfig()

    if verbose:
        print("=== FILTERING PROTEIN GROUPS BY QUALITY FLAGS ===\n")
        print(f"Original protein groups: {len(protein_groups)}")

    keep = pd.Series(True, index=protein_groups.index)

    for col in config.flag_columns:
        if col not in protein_groups.columns:
            if verbose:
                print(f"  Warning: flag column '{col}' not found, skipping")
            continue
        flagged = _flag_is_set(protein_groups[col])
        if verbose:
            print(f"  {col}: {int((flagged & keep).sum())} removed")
        keep &= ~flagged

    if config.unique_peptides_column not in protein_groups.columns:
        raise ValueError(
            f"Unique peptide column '{config.unique_peptides_column}' not found"
        )
    unique_peptides = pd.to_numeric(
        protein_groups[config.unique_peptides_column], errors="coerce"
    ).fillna(0)
    too_few = unique_peptides < config.min_unique_peptides
    if verbose:
        print(
            f"  < {config.min_unique_peptides} unique peptides: {int((too_few & keep).sum())} removed"
        )
    keep &= ~too_few

    filtered = protein_groups[keep].copy()

    if verbose:
        print(f"Protein groups kept: {len(filtered)}")
        print(f"Removed: {len(protein_groups) - len(filtered)} protein groups")

    return filtered


def add_group_labels(
    metadata: pd.DataFrame,
    diet_column: str = "Diet",
    time_column: str = "Time",
    group_column: str = "Group",
    diet_levels: Optional[Sequence[Any]] = None,
    time_levels: Optional[Sequence[Any]] = None
) -> pd.DataFrame:
    """
    Derive the composite diet x time group label.

    Diet and time become ordered categoricals with the given (or observed)
    levels, and the group label is "<diet>_<time>". Returns a new frame.
    """
    for col in (diet_column, time_column):
        if col not in metadata.columns:
            raise ValueError(f"Metadata column '{col}' not found")
        if metadata[col].isna().any():
            missing = metadata.index[metadata[col].isna()].tolist()
            raise ValueError(f"Samples missing '{col}': {missing}")

    labelled = metadata.copy()

    if diet_levels is None:
        diet_levels = list(dict.fromkeys(labelled[diet_column].astype(str)))
    if time_levels is None:
        time_levels = list(dict.fromkeys(labelled[time_column].astype(str)))
    diet_levels = [str(level) for level in diet_levels]
    time_levels = [str(level) for level in time_levels]

    unknown_diets = sorted(set(labelled[diet_column].astype(str)) - set(diet_levels))
    unknown_times = sorted(set(labelled[time_column].astype(str)) - set(time_levels))
    if unknown_diets or unknown_times:
        raise ValueError(
            f"Metadata contains undeclared levels: diets {unknown_diets}, times {unknown_times}"
        )

    labelled[diet_column] = pd.Categorical(
        labelled[diet_column].astype(str), categories=diet_levels
    )
    labelled[time_column] = pd.Categorical(
        labelled[time_column].astype(str), categories=time_levels
    )
    group_levels = [group_label(d, t) for t in time_levels for d in diet_levels]
    labelled[group_column] = pd.Categorical(
        [group_label(d, t) for d, t in zip(labelled[diet_column].astype(str), labelled[time_column].astype(str))],
        categories=group_levels,
    )
    return labelled


def subset_samples(
    matrix: pd.DataFrame, metadata: pd.DataFrame, **criteria: Any
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Restrict an aligned (matrix, metadata) pair to samples matching criteria.

    Each keyword is a metadata column; the value is a level or a list of
    levels, e.g. subset_samples(matrix, metadata, Time="4wk"). Categorical
    levels with no remaining samples are dropped, so downstream grouping
    only sees the groups of the subset.
    """
    check_alignment(matrix, metadata)

    mask = pd.Series(True, index=metadata.index)
    for column, value in criteria.items():
        if column not in metadata.columns:
            raise ValueError(f"Metadata column '{column}' not found")
        values = value if isinstance(value, (list, tuple, set)) else [value]
        mask &= metadata[column].astype(str).isin([str(v) for v in values])

    if not mask.any():
        raise ValueError(f"No samples match {criteria}")

    samples: List[str] = metadata.index[mask].tolist()
    subset_metadata = metadata.loc[samples].copy()
    for column in subset_metadata.columns:
        if isinstance(subset_metadata[column].dtype, pd.CategoricalDtype):
            subset_metadata[column] = subset_metadata[column].cat.remove_unused_categories()
    return matrix[samples].copy(), subset_metadata


def assess_data_completeness(
    matrix: pd.DataFrame,
    metadata: pd.DataFrame,
    group_column: str = "Group",
    verbose: bool = True
) -> pd.DataFrame:
    """
    Assess detection completeness per sample.

    Returns:
    --------
    pd.DataFrame with columns Group, Detected, Total, Percent_Detected,
    indexed by sample
    """
    check_alignment(matrix, metadata)

    detected = matrix.notna().sum(axis=0)
    summary = pd.DataFrame(
        {
            "Group": metadata[group_column].astype(str) if group_column in metadata.columns else "Unknown",
            "Detected": detected,
            "Total": len(matrix),
        }
    )
    summary["Percent_Detected"] = (
        summary["Detected"] / summary["Total"] * 100 if len(matrix) else 0.0
    )

    if verbose:
        print("=== ASSESSING DATA COMPLETENESS ===\n")
        total_values = matrix.shape[0] * matrix.shape[1]
        non_null = int(matrix.notna().sum().sum())
        if total_values:
            print(f"Non-missing values: {non_null:,}/{total_values:,} ({non_null / total_values * 100:.1f}%)")
        per_protein = matrix.notna().sum(axis=1)
        print(f"Proteins detected in all samples: {(per_protein == matrix.shape[1]).sum()}")
        print(f"Proteins detected in >50% samples: {(per_protein > 0.5 * matrix.shape[1]).sum()}")
        print("\nPer-group mean detection:")
        for group, pct in summary.groupby("Group", observed=True)["Percent_Detected"].mean().items():
            print(f"  {group}: {pct:.1f}%")

    return summary
