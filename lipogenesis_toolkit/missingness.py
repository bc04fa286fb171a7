"""
Missingness Classification Module

Per-protein detection counts by experimental group, MAR/MNAR
classification from the largest cross-group difference in percent
detected, and the keep/drop decision driven by minimum detection counts.
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

INSUFFICIENT_DETECTIONS = "insufficient detections"
NO_DETECTIONS = "no detections"


@dataclass
class MissingnessConfig:
    """Thresholds for missingness classification.

    Attributes
    ----------
    group_column : str
        Metadata column holding the group label of each sample
    mnar_threshold : float
        Percentage points; a protein whose largest cross-group difference in
        percent detected reaches this value is classified MNAR
    min_detections : int or Dict[str, int]
        Minimum detected samples per group for an MNAR protein to be kept.
        A mapping gives a threshold per group label (e.g. 8 for four-week
        groups, 6 for thirty-week groups)

    Examples
    --------
    >>> config = MissingnessConfig(group_column='Group', min_detections={'chow_4wk': 8, 'chow_30wk': 6})
    """

    group_column: str = "Group"
    mnar_threshold: float = 60.0
    min_detections: Union[int, Dict[str, int]] = 3

    def validate(self):
        if not 0 < self.mnar_threshold <= 100:
            raise ValueError("mnar_threshold must be in (0, 100] percentage points")
        thresholds = (
            self.min_detections.values()
            if isinstance(self.min_detections, Mapping)
            else [self.min_detections]
        )
        for value in thresholds:
            if int(value) != value or value < 0:
                raise ValueError(f"min_detections must be non-negative integers, got {value}")
        return True

    def thresholds_for(self, levels: Sequence[str]) -> pd.Series:
        """Minimum detection count for each group level."""
        if isinstance(self.min_detections, Mapping):
            missing = [level for level in levels if level not in self.min_detections]
            if missing:
                raise ValueError(f"min_detections has no threshold for groups: {missing}")
            return pd.Series({level: int(self.min_detections[level]) for level in levels})
        return pd.Series(int(self.min_detections), index=list(levels))


def _group_levels(groups: pd.Series, levels: Optional[Sequence[str]]) -> List[str]:
    if levels is not None:
        return [str(level) for level in levels]
    if isinstance(groups.dtype, pd.CategoricalDtype):
        return [str(level) for level in groups.cat.categories]
    return list(dict.fromkeys(groups.astype(str)))


def classify_missingness(
    matrix: pd.DataFrame,
    groups: pd.Series,
    config: Optional[MissingnessConfig] = None,
    levels: Optional[Sequence[str]] = None,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Classify each protein as MAR or MNAR and decide whether it is kept.

    Parameters:
    -----------
    matrix : pd.DataFrame
        Intensity matrix (proteins x samples), NaN = not detected
    groups : pd.Series
        Group label per sample, indexed by sample id. Categorical levels
        with no samples still take part at 0 % detected
    config : MissingnessConfig, optional
        Thresholds; defaults to MissingnessConfig()
    levels : Sequence[str], optional
        Explicit group levels, overriding the levels found in ``groups``
    verbose : bool
        Whether to print a classification summary

    Returns:
    --------
    pd.DataFrame indexed by protein with, per group g, ``n_<g>`` (detected
    count) and ``pct_<g>`` (percent detected), followed by ``largest_dif``,
    ``MAR``, ``keep`` and ``reason``. A protein with no detection in any
    sample is MAR by that rule (largest_dif 0) but is dropped with reason
    "no detections", as no model can be fitted to it.
    """
    if config is None:
        config = MissingnessConfig()
    config.validate()

    missing_samples = [s for s in matrix.columns if s not in groups.index]
    if missing_samples:
        raise ValueError(f"No group label for samples: {missing_samples}")

    group_levels = _group_levels(groups, levels)
    sample_groups = groups.loc[matrix.columns].astype(str)
    unknown = sorted(set(sample_groups) - set(group_levels))
    if unknown:
        raise ValueError(f"Samples carry groups outside the declared levels: {unknown}")

    group_sizes = sample_groups.value_counts().reindex(group_levels, fill_value=0)

    detected = matrix.notna().astype(int)
    counts = (
        detected.T.groupby(sample_groups.values).sum().T
        .reindex(columns=group_levels, fill_value=0)
    )

    sizes = group_sizes.to_numpy(dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        pct = np.where(sizes > 0, counts.to_numpy(dtype=float) / sizes * 100.0, 0.0)
    percents = pd.DataFrame(pct, index=matrix.index, columns=group_levels)

    largest_dif = percents.max(axis=1) - percents.min(axis=1)
    is_mar = largest_dif < config.mnar_threshold

    thresholds = config.thresholds_for(group_levels)
    meets_minimum = counts.ge(thresholds, axis=1).all(axis=1)
    never_detected = counts.sum(axis=1) == 0
    keep = (is_mar | meets_minimum) & ~never_detected

    record = pd.concat(
        [counts.add_prefix("n_"), percents.add_prefix("pct_")], axis=1
    )
    record["largest_dif"] = largest_dif
    record["MAR"] = is_mar
    record["keep"] = keep
    record["reason"] = np.select(
        [never_detected, ~keep], [NO_DETECTIONS, INSUFFICIENT_DETECTIONS], default=""
    )
    record.index.name = matrix.index.name

    if verbose:
        print("=== MISSINGNESS CLASSIFICATION ===\n")
        print(f"Groups: {dict(group_sizes)}")
        print(f"MNAR threshold: largest_dif >= {config.mnar_threshold} percentage points")
        print(f"Proteins: {len(record)}")
        print(f"  MAR: {int(is_mar.sum())}")
        print(f"  MNAR: {int((~is_mar).sum())}")
        print(f"  Kept: {int(keep.sum())}")
        print(f"  Dropped ({INSUFFICIENT_DETECTIONS}): {int((~keep & ~never_detected).sum())}")
        if never_detected.any():
            print(f"  Dropped ({NO_DETECTIONS}): {int(never_detected.sum())}")

    return record


def apply_missingness_filter(
    matrix: pd.DataFrame, record: pd.DataFrame
) -> Tuple[pd.DataFrame, pd.Series]:
    """
    Split a matrix into kept proteins and a drop report.

    Returns:
    --------
    kept : pd.DataFrame
        Copy of the matrix restricted to proteins with keep=True, input order
    dropped : pd.Series
        Reason per dropped protein id
    """
    missing = matrix.index.difference(record.index)
    if len(missing):
        raise ValueError(f"Missingness record lacks proteins: {missing[:5].tolist()}")

    keep = record.loc[matrix.index, "keep"].astype(bool)
    kept = matrix.loc[keep.values].copy()
    dropped = record.loc[matrix.index[~keep.values], "reason"].copy()
    dropped.name = "reason"
    return kept, dropped


def detection_percentages(record: pd.DataFrame) -> pd.DataFrame:
    """Percent-detected block of a missingness record, columns named by group."""
    pct_columns = [c for c in record.columns if c.startswith("pct_")]
    percents = record[pct_columns].copy()
    percents.columns = [c[len("pct_"):] for c in pct_columns]
    return percents
