"""
Experimental Design Module

Explicit design specification (sample -> group level, cell-means
parameterization with optional continuous covariates), design matrix
construction with rank checking, and declarative contrasts resolved
against the design columns before any model is fitted.
"""

from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd


class DesignError(Exception):
    """Raised when a design matrix is not full rank."""
    def __init__(self, message, aliased=None):
        super().__init__(message)
        self.aliased = list(aliased or [])


class ContrastError(Exception):
    """Raised when a contrast cannot be resolved against the design."""
    def __init__(self, message):
        super().__init__(message)


def group_label(diet: str, time: str) -> str:
    """Composite diet x time group label, e.g. ('fat', '4wk') -> 'fat_4wk'."""
    return f"{diet}_{time}"


@dataclass(frozen=True)
class DesignSpec:
    """Which group each sample belongs to, over a fixed set of named levels.

    Attributes
    ----------
    sample_groups : pd.Series
        Group level per sample, indexed by sample id in matrix column order
    levels : Tuple[str, ...]
        Group levels; each becomes one group-mean coefficient
    covariates : pd.DataFrame, optional
        Continuous per-sample covariates (same index), one coefficient each
    """

    sample_groups: pd.Series
    levels: Tuple[str, ...]
    covariates: Optional[pd.DataFrame] = None

    @classmethod
    def from_metadata(
        cls,
        metadata: pd.DataFrame,
        factor_column: str = "Group",
        levels: Optional[Sequence[str]] = None,
        covariates: Sequence[str] = ()
    ) -> "DesignSpec":
        """
        Build a design from sample metadata.

        Levels default to the levels present in ``factor_column``, in
        categorical order when the column is categorical.
        """
        if factor_column not in metadata.columns:
            raise ValueError(f"Design factor column '{factor_column}' not found in metadata")
        factor = metadata[factor_column]
        if factor.isna().any():
            raise ValueError(
                f"Samples missing '{factor_column}': {metadata.index[factor.isna()].tolist()}"
            )

        if levels is None:
            present = set(factor.astype(str))
            if isinstance(factor.dtype, pd.CategoricalDtype):
                ordered = [str(level) for level in factor.cat.categories]
            else:
                ordered = list(dict.fromkeys(factor.astype(str)))
            levels = [level for level in ordered if level in present]

        covariate_frame = None
        if covariates:
            absent = [c for c in covariates if c not in metadata.columns]
            if absent:
                raise ValueError(f"Covariate columns not found in metadata: {absent}")
            covariate_frame = metadata[list(covariates)].apply(pd.to_numeric, errors="coerce")
            if covariate_frame.isna().any().any():
                bad = covariate_frame.columns[covariate_frame.isna().any()].tolist()
                raise ValueError(f"Covariates with missing or non-numeric values: {bad}")

        return cls(
            sample_groups=factor.astype(str).copy(),
            levels=tuple(str(level) for level in levels),
            covariates=covariate_frame,
        )

    @property
    def samples(self) -> List[str]:
        return self.sample_groups.index.tolist()

    @property
    def coefficient_names(self) -> List[str]:
        names = list(self.levels)
        if self.covariates is not None:
            names += list(self.covariates.columns)
        return names


def _aliased_columns(X: np.ndarray, names: Sequence[str], rank: int) -> List[str]:
    """Columns whose removal leaves the rank unchanged, i.e. those in a linear dependency."""
    aliased = []
    for j, name in enumerate(names):
        reduced = np.delete(X, j, axis=1)
        reduced_rank = np.linalg.matrix_rank(reduced) if reduced.size else 0
        if reduced_rank == rank:
            aliased.append(name)
    return aliased


def build_design_matrix(spec: DesignSpec) -> pd.DataFrame:
    """
    Build the samples x coefficients design matrix.

    One indicator column per group level (group means, no intercept),
    followed by covariate columns. Raises DesignError naming the aliased
    coefficients when the matrix is not full column rank.
    """
    unknown = sorted(set(spec.sample_groups) - set(spec.levels))
    if unknown:
        raise DesignError(f"Samples assigned to undeclared group levels: {unknown}")
    if len(set(spec.levels)) != len(spec.levels):
        raise DesignError(f"Duplicate group levels: {list(spec.levels)}")

    design = pd.DataFrame(
        {level: (spec.sample_groups == level).astype(float) for level in spec.levels},
        index=spec.sample_groups.index,
    )
    if spec.covariates is not None:
        covariates = spec.covariates.loc[design.index].astype(float)
        clash = [c for c in covariates.columns if c in design.columns]
        if clash:
            raise DesignError(f"Covariate names clash with group levels: {clash}", aliased=clash)
        design = pd.concat([design, covariates], axis=1)

    X = design.to_numpy()
    n_samples, n_coef = X.shape
    rank = np.linalg.matrix_rank(X)
    if rank < n_coef:
        aliased = _aliased_columns(X, list(design.columns), rank)
        empty = [level for level in spec.levels if design[level].sum() == 0]
        detail = f" (levels with no samples: {empty})" if empty else ""
        raise DesignError(
            f"Design matrix is not full rank (rank {rank} < {n_coef} coefficients); "
            f"aliased coefficients: {aliased}{detail}",
            aliased=aliased,
        )
    if n_samples <= n_coef:
        raise DesignError(
            f"Design leaves no residual degrees of freedom ({n_samples} samples, {n_coef} coefficients)"
        )

    return design


@dataclass(frozen=True)
class Contrast:
    """A named linear combination of design coefficients.

    Examples
    --------
    >>> Contrast("fat_vs_chow", {"fat_4wk": 1, "chow_4wk": -1})
    """

    name: str
    weights: Mapping[str, float] = field(default_factory=dict)

    @classmethod
    def difference(cls, name: str, first: str, second: str) -> "Contrast":
        """first - second"""
        return cls(name, {first: 1.0, second: -1.0})

    @classmethod
    def mean_difference(
        cls, name: str, positive: Sequence[str], negative: Sequence[str]
    ) -> "Contrast":
        """mean(positive) - mean(negative)"""
        weights: Dict[str, float] = {}
        for level in positive:
            weights[level] = weights.get(level, 0.0) + 1.0 / len(positive)
        for level in negative:
            weights[level] = weights.get(level, 0.0) - 1.0 / len(negative)
        return cls(name, weights)


def resolve_contrasts(
    contrasts: Iterable[Contrast], design_columns: Sequence[str]
) -> pd.DataFrame:
    """
    Resolve contrasts into a coefficients x contrasts matrix.

    Raises ContrastError for duplicate names, coefficients absent from the
    design, and all-zero contrasts.
    """
    design_columns = list(design_columns)
    contrasts = list(contrasts)
    if not contrasts:
        raise ContrastError("No contrasts given")

    names = [c.name for c in contrasts]
    duplicated = sorted(set(n for n in names if names.count(n) > 1))
    if duplicated:
        raise ContrastError(f"Duplicate contrast names: {duplicated}")

    columns = {}
    for contrast in contrasts:
        unknown = [coef for coef in contrast.weights if coef not in design_columns]
        if unknown:
            raise ContrastError(
                f"Contrast '{contrast.name}' references coefficients not in the design: "
                f"{unknown} (design coefficients: {design_columns})"
            )
        vector = pd.Series(0.0, index=design_columns)
        for coef, weight in contrast.weights.items():
            vector[coef] += float(weight)
        if not np.any(np.abs(vector.to_numpy()) > 1e-12):
            raise ContrastError(f"Contrast '{contrast.name}' has an all-zero coefficient vector")
        columns[contrast.name] = vector

    return pd.DataFrame(columns, index=pd.Index(design_columns, name="Coefficient"))


def diet_contrasts(
    diets: Sequence[str], time: str, reference: str = "chow"
) -> List[Contrast]:
    """
    Diet comparisons within one timepoint.

    Every pairwise diet difference, plus the mean of the non-reference
    diets against the reference diet when there are two or more of them.
    """
    if reference not in diets:
        raise ContrastError(f"Reference diet '{reference}' not among diets {list(diets)}")
    others = [d for d in diets if d != reference]

    contrasts = [
        Contrast.difference(f"{d}_vs_{reference}_{time}", group_label(d, time), group_label(reference, time))
        for d in others
    ]
    for first, second in combinations(others, 2):
        contrasts.append(
            Contrast.difference(f"{second}_vs_{first}_{time}", group_label(second, time), group_label(first, time))
        )
    if len(others) > 1:
        contrasts.append(
            Contrast.mean_difference(
                f"{'_'.join(others)}_mean_vs_{reference}_{time}",
                [group_label(d, time) for d in others],
                [group_label(reference, time)],
            )
        )
    return contrasts


def study_contrasts(
    diets: Sequence[str] = ("chow", "starch", "fat"),
    times: Sequence[str] = ("4wk", "30wk"),
    reference: str = "chow"
) -> List[Contrast]:
    """
    The study's fixed contrast set over diet x time group means.

    Diet comparisons at each time; for each later time, the diet x time
    interaction of every non-reference diet, (d_t0 - ref_t0) - (d_t - ref_t),
    and the main age effect, mean(cells at t) - mean(cells at t0).
    """
    contrasts: List[Contrast] = []
    for time in times:
        contrasts.extend(diet_contrasts(diets, time, reference))

    first_time = times[0]
    others = [d for d in diets if d != reference]
    for later in times[1:]:
        for diet in others:
            contrasts.append(
                Contrast(
                    f"{diet}_vs_{reference}_{first_time}_minus_{later}",
                    {
                        group_label(diet, first_time): 1.0,
                        group_label(reference, first_time): -1.0,
                        group_label(diet, later): -1.0,
                        group_label(reference, later): 1.0,
                    },
                )
            )
        contrasts.append(
            Contrast.mean_difference(
                f"{later}_vs_{first_time}",
                [group_label(d, later) for d in diets],
                [group_label(d, first_time) for d in diets],
            )
        )
    return contrasts
