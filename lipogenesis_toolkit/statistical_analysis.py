"""
Statistical Analysis Module for Lipogenesis Proteomics Data

Per-protein linear models over a group-means design, empirical Bayes
variance moderation across proteins, contrast estimation with moderated
t-tests, and per-contrast FDR correction. Result tables keep the row order
of the input matrix so tables from one model can be joined by position.
"""

import warnings
from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np
import pandas as pd
from scipy.stats import t as t_dist
from statsmodels.stats.multitest import multipletests

from .design import Contrast, DesignSpec, build_design_matrix, resolve_contrasts
from .empirical_bayes import EBayesResult, squeeze_variances
from .validation import SampleMatchingError

CORRECTION_METHODS = ("fdr_bh", "fdr_by", "bonferroni", "holm", "none")


class StatisticalConfig:
    """Configuration class for differential abundance analysis

    - trend: prior variance follows average log-intensity
    - robust: robust prior estimation, outlier variances shrunk less
    - correction_method: multiple testing correction within each contrast
    - p_value_threshold / fold_change_threshold: significance calls
      (fold change on the linear scale, 1.0 = no fold-change filter)
    """

    def __init__(self):
        # Experimental design
        self.design_factor = "Group"
        self.covariates = []

        # Empirical Bayes
        self.trend = True
        self.robust = True
        self.winsor_tail_p = (0.05, 0.1)
        self.outlier_fdr = 0.05

        # Multiple testing correction
        self.correction_method = "fdr_bh"

        # Significance calls
        self.p_value_threshold = 0.05
        self.fold_change_threshold = 1.0
        self.use_adjusted_pvalue = "adjusted"  # "adjusted" or "unadjusted"

    @property
    def log2_fold_change_threshold(self) -> float:
        return float(np.log2(self.fold_change_threshold))

    @property
    def p_value_column(self) -> str:
        return "adj.P.Val" if self.use_adjusted_pvalue == "adjusted" else "P.Value"

    def validate(self):
        """Validate parameter values"""
        if self.correction_method not in CORRECTION_METHODS:
            raise ValueError(
                f"correction_method must be one of {CORRECTION_METHODS}, got '{self.correction_method}'"
            )
        if not 0 < self.p_value_threshold < 1:
            raise ValueError("p_value_threshold must be between 0 and 1")
        if self.fold_change_threshold < 1:
            raise ValueError("fold_change_threshold is a linear fold change and must be >= 1")
        if self.use_adjusted_pvalue not in ("adjusted", "unadjusted"):
            raise ValueError("use_adjusted_pvalue must be 'adjusted' or 'unadjusted'")
        low, high = self.winsor_tail_p
        if not (0 <= low < 0.5 and 0 <= high < 0.5):
            raise ValueError("winsor_tail_p proportions must be in [0, 0.5)")
        return True


@dataclass(frozen=True)
class LinearModelFit:
    """Per-protein least squares fits sharing one design.

    ``cov_unscaled`` has shape (proteins, coefficients, coefficients) and
    holds (X'X)^-1 over the samples observed for each protein. Coefficients
    that cannot be estimated for a protein are NaN for that protein only.
    """

    coefficients: pd.DataFrame
    cov_unscaled: np.ndarray
    sigma2: pd.Series
    df_residual: pd.Series
    ave_expr: pd.Series
    n_obs: pd.Series
    design: pd.DataFrame

    @property
    def df_pooled(self) -> float:
        return float(self.df_residual[self.df_residual > 0].sum())


def _align_design(matrix: pd.DataFrame, design: pd.DataFrame) -> pd.DataFrame:
    matrix_samples = [str(c) for c in matrix.columns]
    design_samples = [str(s) for s in design.index]
    if sorted(matrix_samples) != sorted(design_samples):
        only_matrix = sorted(set(matrix_samples) - set(design_samples))
        only_design = sorted(set(design_samples) - set(matrix_samples))
        raise SampleMatchingError(
            f"Design samples do not match matrix columns "
            f"(matrix only: {only_matrix}, design only: {only_design})"
        )
    aligned = design.copy()
    aligned.index = design_samples
    aligned = aligned.loc[matrix_samples]
    aligned.index = matrix.columns
    return aligned


def fit_linear_models(matrix: pd.DataFrame, design: pd.DataFrame) -> LinearModelFit:
    """
    Fit one ordinary least squares model per protein.

    Each protein uses only its observed samples. Proteins sharing a
    missing-value pattern are fitted together. Group coefficients with no
    observed sample for a protein are dropped from that protein's fit and
    reported as NaN.

    Parameters:
    -----------
    matrix : pd.DataFrame
        Log intensities, proteins x samples
    design : pd.DataFrame
        Samples x coefficients design matrix (build_design_matrix())

    Returns:
    --------
    LinearModelFit
    """
    design = _align_design(matrix, design)

    X = design.to_numpy(dtype=float)
    Y = matrix.to_numpy(dtype=float)
    n_proteins = Y.shape[0]
    n_coef = X.shape[1]

    coefficients = np.full((n_proteins, n_coef), np.nan)
    cov_unscaled = np.full((n_proteins, n_coef, n_coef), np.nan)
    sigma2 = np.full(n_proteins, np.nan)
    df_residual = np.zeros(n_proteins)

    observed = ~np.isnan(Y)
    n_obs = observed.sum(axis=1)
    patterns, pattern_index = np.unique(observed, axis=0, return_inverse=True)
    pattern_index = np.ravel(pattern_index)

    n_unestimable = 0
    for k, pattern in enumerate(patterns):
        rows = np.flatnonzero(pattern_index == k)
        if not pattern.any():
            n_unestimable += len(rows)
            continue

        X_obs = X[pattern]
        cols = np.flatnonzero(np.any(X_obs != 0, axis=0))
        X_sub = X_obs[:, cols]
        if np.linalg.matrix_rank(X_sub) < len(cols):
            n_unestimable += len(rows)
            continue

        xtx_inv = np.linalg.inv(X_sub.T @ X_sub)
        Y_sub = Y[np.ix_(rows, np.flatnonzero(pattern))]
        beta = Y_sub @ X_sub @ xtx_inv
        resid = Y_sub - beta @ X_sub.T
        dof = X_sub.shape[0] - X_sub.shape[1]

        coefficients[np.ix_(rows, cols)] = beta
        cov_unscaled[np.ix_(rows, cols, cols)] = xtx_inv
        df_residual[rows] = dof
        if dof > 0:
            sigma2[rows] = np.sum(resid ** 2, axis=1) / dof

    if n_unestimable:
        warnings.warn(f"{n_unestimable} proteins have no estimable coefficients")

    index = matrix.index
    return LinearModelFit(
        coefficients=pd.DataFrame(coefficients, index=index, columns=design.columns),
        cov_unscaled=cov_unscaled,
        sigma2=pd.Series(sigma2, index=index, name="sigma2"),
        df_residual=pd.Series(df_residual, index=index, name="df_residual"),
        ave_expr=matrix.mean(axis=1, skipna=True).rename("AveExpr"),
        n_obs=pd.Series(n_obs, index=index, name="n_obs"),
        design=design,
    )


def moderate_variances(fit: LinearModelFit, config: StatisticalConfig) -> EBayesResult:
    """Empirical Bayes moderation of the fit's residual variances."""
    covariate = fit.ave_expr.to_numpy() if config.trend else None
    return squeeze_variances(
        fit.sigma2.to_numpy(),
        fit.df_residual.to_numpy(),
        covariate=covariate,
        robust=config.robust,
        winsor_tail_p=tuple(config.winsor_tail_p),
        outlier_fdr=config.outlier_fdr,
    )


def compute_contrast(
    fit: LinearModelFit, weights: pd.Series, ebayes: EBayesResult
) -> pd.DataFrame:
    """
    Moderated t-test of one contrast for every fitted protein.

    Parameters:
    -----------
    fit : LinearModelFit
        Per-protein fits
    weights : pd.Series
        Contrast coefficients indexed by design coefficient
    ebayes : EBayesResult
        Moderated variances from moderate_variances()

    Returns:
    --------
    pd.DataFrame with logFC, AveExpr, t, P.Value, SE and df_total, in fit row order
    """
    weights = weights.reindex(fit.coefficients.columns).fillna(0.0)
    used = np.flatnonzero(weights.to_numpy() != 0)
    c = weights.to_numpy()[used]

    beta = fit.coefficients.to_numpy()[:, used]
    V = fit.cov_unscaled[:, used][:, :, used]

    effect = beta @ c
    var_unscaled = np.einsum("i,gij,j->g", c, V, c)
    with np.errstate(invalid="ignore"):
        stdev_unscaled = np.sqrt(var_unscaled)

    df_total = np.minimum(fit.df_residual.to_numpy() + ebayes.df_prior, fit.df_pooled)
    with np.errstate(divide="ignore", invalid="ignore"):
        se = stdev_unscaled * np.sqrt(ebayes.s2_post)
        t_stat = effect / se
        p_value = 2 * t_dist.sf(np.abs(t_stat), df_total)

    return pd.DataFrame(
        {
            "logFC": effect,
            "AveExpr": fit.ave_expr.to_numpy(),
            "t": t_stat,
            "P.Value": p_value,
            "SE": se,
            "df_total": df_total,
        },
        index=fit.coefficients.index,
    )


def compute_contrasts(
    fit: LinearModelFit, contrast_matrix: pd.DataFrame, ebayes: EBayesResult
) -> Dict[str, pd.DataFrame]:
    """Uncorrected moderated t-test table for every column of a resolved contrast matrix."""
    return {
        name: compute_contrast(fit, contrast_matrix[name], ebayes)
        for name in contrast_matrix.columns
    }


def apply_multiple_testing_correction(results_df: pd.DataFrame, config: StatisticalConfig) -> pd.DataFrame:
    """
    Adjust p-values across proteins of one contrast.

    Missing p-values are excluded from the correction and stay missing.
    Returns a new DataFrame with ``adj.P.Val`` and ``Significant`` added.
    """
    corrected = results_df.copy()

    if "P.Value" not in corrected.columns:
        raise ValueError("No P.Value column found for correction")

    p_values = corrected["P.Value"].to_numpy(dtype=float)
    valid = ~np.isnan(p_values)
    adjusted = np.full_like(p_values, np.nan)

    if valid.any():
        if config.correction_method == "none":
            adjusted[valid] = p_values[valid]
        else:
            adjusted[valid] = multipletests(p_values[valid], method=config.correction_method)[1]

    corrected["adj.P.Val"] = adjusted
    selected = corrected[config.p_value_column]
    corrected["Significant"] = (selected < config.p_value_threshold) & (
        corrected["logFC"].abs() >= config.log2_fold_change_threshold
    )
    return corrected


def run_differential_analysis(
    matrix: pd.DataFrame,
    design_spec: DesignSpec,
    contrasts: Sequence[Contrast],
    config: StatisticalConfig = None,
    verbose: bool = True
) -> Dict[str, pd.DataFrame]:
    """
    Differential abundance for every contrast of one fitted design.

    The design is checked for rank and the contrasts are resolved before
    any model is fitted, so specification errors surface first.

    Parameters:
    -----------
    matrix : pd.DataFrame
        Imputed log intensities, proteins x samples
    design_spec : DesignSpec
        Group membership (and covariates) of every matrix sample
    contrasts : Sequence[Contrast]
        Named contrasts over the design coefficients
    config : StatisticalConfig, optional
        Moderation and correction settings
    verbose : bool
        Whether to print progress and a summary

    Returns:
    --------
    Dict[str, pd.DataFrame]
        One table per contrast name, indexed by protein in matrix row order
    """
    if config is None:
        config = StatisticalConfig()
    config.validate()

    design = build_design_matrix(design_spec)
    contrast_matrix = resolve_contrasts(contrasts, design.columns)

    if verbose:
        print("=" * 60)
        print("DIFFERENTIAL ABUNDANCE ANALYSIS")
        print("=" * 60)
        print(f"Proteins: {matrix.shape[0]}, samples: {matrix.shape[1]}")
        print(f"Design coefficients: {list(design.columns)}")
        print(f"Contrasts: {list(contrast_matrix.columns)}")

    fit = fit_linear_models(matrix, design)
    ebayes = moderate_variances(fit, config)

    if verbose:
        finite_df = ebayes.df_prior[np.isfinite(ebayes.df_prior)]
        df_label = f"{np.median(finite_df):.2f}" if len(finite_df) else "inf"
        print(f"✓ Fitted {int((fit.n_obs > 0).sum())} protein models")
        print(
            f"✓ Empirical Bayes: prior df {df_label} "
            f"(trend={config.trend}, robust={config.robust})"
        )

    results = {
        name: apply_multiple_testing_correction(table, config)
        for name, table in compute_contrasts(fit, contrast_matrix, ebayes).items()
    }

    if verbose:
        display_analysis_summary(results, config, label_top_n=0)

    return results


def significant_proteins(
    results: Dict[str, pd.DataFrame], config: StatisticalConfig = None
) -> Dict[str, Dict[str, List[str]]]:
    """
    Significant protein ids per contrast, split by direction.

    Returns:
    --------
    {contrast: {"up": [...], "down": [...]}} in result row order
    """
    if config is None:
        config = StatisticalConfig()

    lists = {}
    for name, table in results.items():
        significant = table["Significant"].fillna(False).astype(bool)
        up = significant & (table["logFC"] > 0)
        down = significant & (table["logFC"] < 0)
        lists[name] = {
            "up": table.index[up].tolist(),
            "down": table.index[down].tolist(),
        }
    return lists


def display_analysis_summary(
    results: Dict[str, pd.DataFrame], config: StatisticalConfig = None, label_top_n: int = 10
) -> pd.DataFrame:
    """
    Print and return a per-contrast summary of significant proteins.
    """
    if config is None:
        config = StatisticalConfig()

    rows = []
    for name, table in results.items():
        significant = table["Significant"].fillna(False).astype(bool)
        rows.append(
            {
                "Contrast": name,
                "Tested": int(table["P.Value"].notna().sum()),
                "Significant": int(significant.sum()),
                "Up": int((significant & (table["logFC"] > 0)).sum()),
                "Down": int((significant & (table["logFC"] < 0)).sum()),
            }
        )
    summary = pd.DataFrame(rows)

    print(f"\nSignificance: {config.p_value_column} < {config.p_value_threshold}, "
          f"fold change >= {config.fold_change_threshold}")
    print(summary.to_string(index=False))

    if label_top_n > 0:
        for name, table in results.items():
            top = table[table["Significant"].fillna(False)].nsmallest(label_top_n, config.p_value_column)
            if len(top):
                print(f"\nTop proteins for {name}:")
                for protein, row in top.iterrows():
                    print(f"  {protein}: logFC={row['logFC']:.2f}, {config.p_value_column}={row[config.p_value_column]:.2e}")

    return summary
