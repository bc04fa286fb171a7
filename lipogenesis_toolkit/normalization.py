"""
Normalization Module for the Lipogenesis Proteomics Toolkit

Sample-level normalization of log-scale intensity matrices. Missing cells
stay missing.
"""

from typing import Dict, Optional

import pandas as pd

from .data_import import log_transform_values


def log_transform(matrix: pd.DataFrame, log_base: str = "log2") -> pd.DataFrame:
    """
    Log-transform a linear-scale intensity matrix.

    Zero and negative readings are treated as not detected (NaN).
    """
    print(f"Applying {log_base} transformation...")
    return log_transform_values(matrix, log_base)


def median_normalize(
    matrix: pd.DataFrame, reference: Optional[float] = None
) -> pd.DataFrame:
    """
    Median normalization for log-scale data.

    Subtracts each sample's median and adds back the global median (the
    median of sample medians), so sample medians become equal while the
    overall scale is preserved.

    Parameters:
    -----------
    matrix : pd.DataFrame
        Log intensities, proteins x samples
    reference : float, optional
        Target median; defaults to the median of the sample medians

    Returns:
    --------
    pd.DataFrame : Normalized copy with the same shape and missing cells
    """

    print("Applying median normalization...")

    sample_medians = matrix.median(axis=0, skipna=True)
    empty = sample_medians[sample_medians.isna()].index.tolist()
    if empty:
        raise ValueError(f"Samples with no detected values cannot be normalized: {empty}")

    if reference is None:
        reference = float(sample_medians.median())

    normalized = matrix.sub(sample_medians, axis=1).add(reference)

    print(f"Median normalization completed for {matrix.shape[1]} samples")
    return normalized


def calculate_normalization_stats(
    before: pd.DataFrame, after: pd.DataFrame
) -> Dict[str, float]:
    """Spread of sample medians before and after normalization."""
    before_medians = before.median(axis=0)
    after_medians = after.median(axis=0)
    return {
        "median_range_before": float(before_medians.max() - before_medians.min()),
        "median_range_after": float(after_medians.max() - after_medians.min()),
        "median_sd_before": float(before_medians.std()),
        "median_sd_after": float(after_medians.std()),
    }
