"""
Left-Censored Imputation Module

Fills the missing cells of MNAR proteins with draws from a down-shifted
normal distribution fitted to the protein's own observed intensities and
truncated at its lowest observed value ("present but below the limit of
quantitation"). MAR proteins keep their missing cells for the linear model.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy.stats import truncnorm

IMPUTATION_FAILED = "imputation failed"


class ImputationError(Exception):
    """Raised when a left-censored distribution cannot be fitted for MNAR proteins."""
    def __init__(self, message, protein_ids=None):
        super().__init__(message)
        self.protein_ids = list(protein_ids or [])


@dataclass
class ImputationConfig:
    """Parameters of the down-shifted normal imputation.

    Attributes
    ----------
    downshift : float
        Shift of the imputation mean below the observed mean, in observed SDs
    width : float
        Imputation SD as a fraction of the observed SD
    min_observed : int
        Observed values required to fit the distribution for a protein
    random_seed : int
        Seed for reproducible draws
    on_failure : str
        "raise" to stop with ImputationError, "exclude" to drop the protein
        from the imputed matrix and report it
    """

    downshift: float = 1.8
    width: float = 0.3
    min_observed: int = 3
    random_seed: int = 42
    on_failure: str = "raise"

    def validate(self):
        if self.width <= 0:
            raise ValueError("width must be positive")
        if self.downshift < 0:
            raise ValueError("downshift must be non-negative")
        if self.min_observed < 2:
            raise ValueError("min_observed must be at least 2 to estimate a spread")
        if self.on_failure not in ("raise", "exclude"):
            raise ValueError("on_failure must be 'raise' or 'exclude'")
        return True


@dataclass(frozen=True)
class ImputationResult:
    """Outcome of impute_left_censored().

    ``matrix`` has the input's shape minus any excluded proteins;
    ``imputed_mask`` marks cells that were filled; ``excluded`` maps
    protein id to the failure reason.
    """

    matrix: pd.DataFrame
    imputed_mask: pd.DataFrame
    excluded: pd.Series = field(default_factory=lambda: pd.Series(dtype=object, name="reason"))

    @property
    def n_imputed(self) -> int:
        return int(self.imputed_mask.values.sum())


def _fit_failure(observed: np.ndarray, min_observed: int) -> Optional[str]:
    if len(observed) < min_observed:
        return f"{len(observed)} observed values, need {min_observed}"
    if np.std(observed, ddof=1) == 0:
        return "observed values have zero spread"
    return None


def impute_left_censored(
    matrix: pd.DataFrame,
    record: pd.DataFrame,
    config: Optional[ImputationConfig] = None,
    verbose: bool = True
) -> ImputationResult:
    """
    Impute missing cells of MNAR proteins from a left-censored normal.

    For each MNAR protein with missing cells, draws come from
    N(mean - downshift * sd, (width * sd)^2) truncated above at the
    protein's minimum observed value, so every imputed value is at or
    below the lowest observation. Observed cells are never changed and a
    matrix without missing MNAR cells is returned unchanged.

    Parameters:
    -----------
    matrix : pd.DataFrame
        Filtered intensity matrix (proteins x samples)
    record : pd.DataFrame
        Missingness record from classify_missingness(); its ``MAR`` column
        selects the rows to impute
    config : ImputationConfig, optional
        Distribution parameters and failure policy
    verbose : bool
        Whether to print an imputation summary

    Returns:
    --------
    ImputationResult
    """
    if config is None:
        config = ImputationConfig()
    config.validate()

    missing = matrix.index.difference(record.index)
    if len(missing):
        raise ValueError(f"Missingness record lacks proteins: {missing[:5].tolist()}")

    is_mnar = ~record.loc[matrix.index, "MAR"].astype(bool).to_numpy()
    values = matrix.to_numpy(dtype=float, copy=True)
    missing_cells = np.isnan(values)
    filled = np.zeros_like(missing_cells)

    rng = np.random.default_rng(config.random_seed)
    failures = {}

    for i in np.flatnonzero(is_mnar & missing_cells.any(axis=1)):
        row = values[i]
        observed = row[~missing_cells[i]]
        reason = _fit_failure(observed, config.min_observed)
        if reason is not None:
            failures[matrix.index[i]] = reason
            continue

        sd = np.std(observed, ddof=1)
        loc = observed.mean() - config.downshift * sd
        scale = config.width * sd
        upper = (observed.min() - loc) / scale

        draws = truncnorm.rvs(
            -np.inf, upper, loc=loc, scale=scale,
            size=int(missing_cells[i].sum()), random_state=rng,
        )
        row[missing_cells[i]] = np.minimum(draws, observed.min())
        filled[i] = missing_cells[i]

    if failures and config.on_failure == "raise":
        details = "; ".join(f"{pid} ({why})" for pid, why in failures.items())
        raise ImputationError(
            f"Cannot fit left-censored distribution for {len(failures)} MNAR proteins: {details}",
            protein_ids=list(failures),
        )

    imputed = pd.DataFrame(values, index=matrix.index, columns=matrix.columns)
    mask = pd.DataFrame(filled, index=matrix.index, columns=matrix.columns)

    excluded = pd.Series(
        {pid: f"{IMPUTATION_FAILED}: {why}" for pid, why in failures.items()},
        dtype=object, name="reason",
    )
    if failures:
        keep = ~matrix.index.isin(list(failures))
        imputed = imputed.loc[keep]
        mask = mask.loc[keep]

    result = ImputationResult(matrix=imputed, imputed_mask=mask, excluded=excluded)

    if verbose:
        print("=== LEFT-CENSORED IMPUTATION ===\n")
        print(f"MNAR proteins: {int(is_mnar.sum())} of {len(matrix)}")
        print(f"Imputed cells: {result.n_imputed}")
        print(f"  Parameters: downshift={config.downshift}, width={config.width}, seed={config.random_seed}")
        if failures:
            print(f"  Excluded ({IMPUTATION_FAILED}): {len(failures)}")
            for pid, why in failures.items():
                print(f"    {pid}: {why}")

    return result


def remaining_missing(result: ImputationResult) -> List[str]:
    """Proteins that still carry missing cells after imputation (the MAR rows)."""
    still_missing = result.matrix.isna().any(axis=1)
    return result.matrix.index[still_missing].tolist()
