"""
Analysis Pipeline for the Lipogenesis Study

Runs the full chain for one sample subset (missingness classification,
filtering, left-censored imputation, linear models and contrasts) and the
study workflow over the 4-week-only and the combined 4+30-week subsets.
Each stage returns new tables; inputs are never modified in place.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .data_import import (
    ProteinGroupsConfig,
    build_protein_annotation,
    extract_intensity_matrix,
    load_protein_groups,
    load_sample_metadata,
)
from .design import Contrast, DesignSpec, diet_contrasts, group_label, study_contrasts
from .imputation import ImputationConfig, ImputationResult, impute_left_censored
from .missingness import MissingnessConfig, apply_missingness_filter, classify_missingness
from .normalization import median_normalize
from .preprocessing import add_group_labels, filter_quality_flags, subset_samples
from .statistical_analysis import StatisticalConfig, run_differential_analysis, significant_proteins
from .validation import align_metadata_to_matrix

FOUR_WEEK = "4wk"
COMBINED = "combined"

_STATISTICAL_KEYS = (
    "trend",
    "robust",
    "winsor_tail_p",
    "outlier_fdr",
    "correction_method",
    "p_value_threshold",
    "fold_change_threshold",
    "use_adjusted_pvalue",
    "covariates",
)


@dataclass
class AnalysisConfig:
    """All settings of a study run.

    Attributes
    ----------
    protein_groups : ProteinGroupsConfig
        Column layout and quality thresholds of the protein table
    sample_column, diet_column, time_column : str
        Metadata columns
    diets, times : Tuple[str, ...]
        Declared factor levels; the first time is the baseline for
        interaction and age contrasts
    reference_diet : str
        Diet every other diet is compared against
    mnar_threshold : float
        Percentage-point cut-off of the MAR/MNAR classification
    min_detections_by_time : Dict[str, int]
        Minimum detections for an MNAR protein, per group at each time
    normalize : bool
        Median-normalize sample intensities before the analysis
    imputation : ImputationConfig
        Left-censored imputation settings; failed proteins are excluded
        and reported by default
    statistics : StatisticalConfig
        Moderation, correction and significance settings
    """

    protein_groups: ProteinGroupsConfig = field(default_factory=ProteinGroupsConfig)
    sample_column: str = "Sample"
    diet_column: str = "Diet"
    time_column: str = "Time"
    diets: Tuple[str, ...] = ("chow", "starch", "fat")
    times: Tuple[str, ...] = ("4wk", "30wk")
    reference_diet: str = "chow"
    mnar_threshold: float = 60.0
    min_detections_by_time: Dict[str, int] = field(
        default_factory=lambda: {"4wk": 8, "30wk": 6}
    )
    normalize: bool = True
    imputation: ImputationConfig = field(
        default_factory=lambda: ImputationConfig(on_failure="exclude")
    )
    statistics: StatisticalConfig = field(default_factory=StatisticalConfig)

    def missingness_config(self, times: Optional[Sequence[str]] = None) -> MissingnessConfig:
        """Per-group detection thresholds for the groups at the given times."""
        times = list(times) if times is not None else list(self.times)
        missing = [t for t in times if t not in self.min_detections_by_time]
        if missing:
            raise ValueError(f"min_detections_by_time has no threshold for times: {missing}")
        thresholds = {
            group_label(diet, time): int(self.min_detections_by_time[time])
            for time in times
            for diet in self.diets
        }
        return MissingnessConfig(
            group_column=self.statistics.design_factor,
            mnar_threshold=self.mnar_threshold,
            min_detections=thresholds,
        )

    def validate(self):
        if self.reference_diet not in self.diets:
            raise ValueError(f"reference_diet '{self.reference_diet}' not among diets {list(self.diets)}")
        if len(self.times) < 1:
            raise ValueError("At least one time level is required")
        self.missingness_config().validate()
        self.imputation.validate()
        self.statistics.validate()
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Flat parameter dictionary, the format written by export_timestamped_config()."""
        config_dict: Dict[str, Any] = dict(asdict(self.protein_groups))
        config_dict.update(
            sample_column=self.sample_column,
            diet_column=self.diet_column,
            time_column=self.time_column,
            diets=list(self.diets),
            times=list(self.times),
            reference_diet=self.reference_diet,
            mnar_threshold=self.mnar_threshold,
            min_detections_by_time=dict(self.min_detections_by_time),
            normalize=self.normalize,
        )
        config_dict.update(
            {f"imputation_{key}": value for key, value in asdict(self.imputation).items()}
        )
        for key in _STATISTICAL_KEYS:
            value = getattr(self.statistics, key)
            config_dict[key] = list(value) if isinstance(value, (list, tuple)) else value
        return config_dict

    @classmethod
    def from_dict(cls, config_dict: Mapping[str, Any]) -> "AnalysisConfig":
        """
        Rebuild a configuration from a flat parameter dictionary.

        Unknown keys are rejected so that typos in a configuration file
        do not pass silently.
        """
        protein_keys = {f.name for f in fields(ProteinGroupsConfig)}
        imputation_keys = {f"imputation_{f.name}" for f in fields(ImputationConfig)}
        top_keys = {
            "sample_column", "diet_column", "time_column", "diets", "times",
            "reference_diet", "mnar_threshold", "min_detections_by_time", "normalize",
        }
        unknown = sorted(
            set(config_dict) - protein_keys - imputation_keys - top_keys - set(_STATISTICAL_KEYS)
        )
        if unknown:
            raise ValueError(f"Unknown configuration parameters: {unknown}")

        protein_groups = ProteinGroupsConfig(
            **{k: v for k, v in config_dict.items() if k in protein_keys}
        )
        imputation_args = {
            k[len("imputation_"):]: v for k, v in config_dict.items() if k in imputation_keys
        }
        imputation_args.setdefault("on_failure", "exclude")
        imputation = ImputationConfig(**imputation_args)

        statistics = StatisticalConfig()
        for key in _STATISTICAL_KEYS:
            if key in config_dict:
                value = config_dict[key]
                if key == "winsor_tail_p":
                    value = tuple(value)
                setattr(statistics, key, value)

        top = {k: v for k, v in config_dict.items() if k in top_keys}
        for key in ("diets", "times"):
            if key in top:
                top[key] = tuple(top[key])
        return cls(protein_groups=protein_groups, imputation=imputation, statistics=statistics, **top)


@dataclass(frozen=True)
class SubsetAnalysis:
    """Everything computed for one sample subset.

    ``dropped`` holds the reason for every protein removed before the
    models were fitted (missingness filter and failed imputation).
    """

    name: str
    metadata: pd.DataFrame
    record: pd.DataFrame
    dropped: pd.Series
    imputation: ImputationResult
    contrasts: Tuple[Contrast, ...]
    results: Dict[str, pd.DataFrame]
    significant: Dict[str, Dict[str, List[str]]]

    @property
    def matrix(self) -> pd.DataFrame:
        return self.imputation.matrix

    @property
    def contrast_names(self) -> List[str]:
        return [c.name for c in self.contrasts]


@dataclass(frozen=True)
class LipogenesisAnalysis:
    """Result of run_lipogenesis_analysis()."""

    config: AnalysisConfig
    annotation: pd.DataFrame
    matrix: pd.DataFrame
    metadata: pd.DataFrame
    subsets: Dict[str, SubsetAnalysis]

    @property
    def four_week(self) -> SubsetAnalysis:
        return self.subsets[FOUR_WEEK]

    @property
    def combined(self) -> SubsetAnalysis:
        return self.subsets[COMBINED]


def run_subset_analysis(
    matrix: pd.DataFrame,
    metadata: pd.DataFrame,
    criteria: Optional[Mapping[str, Any]],
    missingness_config: MissingnessConfig,
    imputation_config: ImputationConfig,
    contrasts: Sequence[Contrast],
    statistical_config: Optional[StatisticalConfig] = None,
    name: str = "analysis",
    verbose: bool = True
) -> SubsetAnalysis:
    """
    Classify, filter, impute and test one sample subset.

    Parameters:
    -----------
    matrix : pd.DataFrame
        Normalized log intensities, proteins x samples
    metadata : pd.DataFrame
        Metadata aligned to the matrix columns, with the group column
    criteria : Mapping, optional
        Metadata column -> level(s) selecting the subset; None uses all samples
    missingness_config : MissingnessConfig
        Thresholds of the MAR/MNAR classification
    imputation_config : ImputationConfig
        Left-censored imputation settings
    contrasts : Sequence[Contrast]
        Contrasts over the subset's group means
    statistical_config : StatisticalConfig, optional
        Moderation and significance settings
    name : str
        Label of the subset in reports
    verbose : bool
        Whether to print stage summaries

    Returns:
    --------
    SubsetAnalysis
    """
    if statistical_config is None:
        statistical_config = StatisticalConfig()

    if verbose:
        print("\n" + "=" * 60)
        print(f"SUBSET: {name}")
        print("=" * 60)

    if criteria:
        sub_matrix, sub_metadata = subset_samples(matrix, metadata, **dict(criteria))
    else:
        sub_matrix, sub_metadata = matrix.copy(), metadata.copy()

    groups = sub_metadata[missingness_config.group_column]
    record = classify_missingness(sub_matrix, groups, missingness_config, verbose=verbose)
    kept, dropped = apply_missingness_filter(sub_matrix, record)

    imputation = impute_left_censored(kept, record, imputation_config, verbose=verbose)
    if len(imputation.excluded):
        dropped = pd.concat([dropped, imputation.excluded])
    dropped.name = "reason"

    design_spec = DesignSpec.from_metadata(
        sub_metadata,
        factor_column=statistical_config.design_factor,
        covariates=statistical_config.covariates,
    )
    results = run_differential_analysis(
        imputation.matrix, design_spec, contrasts, statistical_config, verbose=verbose
    )

    return SubsetAnalysis(
        name=name,
        metadata=sub_metadata,
        record=record,
        dropped=dropped,
        imputation=imputation,
        contrasts=tuple(contrasts),
        results=results,
        significant=significant_proteins(results, statistical_config),
    )


def run_lipogenesis_analysis(
    protein_file: str,
    metadata_file: str,
    config: Optional[AnalysisConfig] = None,
    verbose: bool = True
) -> LipogenesisAnalysis:
    """
    Complete study workflow from input files to contrast results.

    Loads and quality-filters the protein groups, builds the log intensity
    matrix (median normalized unless disabled), aligns metadata, and runs
    the 4-week-only subset (diet contrasts at 4 weeks) and the combined
    subset (diet contrasts at every time, diet x time interactions and the
    age effect).

    Parameters:
    -----------
    protein_file : str
        Protein groups table (MaxQuant proteinGroups.txt layout)
    metadata_file : str
        Sample metadata with sample, diet and time columns
    config : AnalysisConfig, optional
        Study settings

    Returns:
    --------
    LipogenesisAnalysis
    """
    if config is None:
        config = AnalysisConfig()
    config.validate()

    protein_groups = load_protein_groups(protein_file)
    filtered = filter_quality_flags(protein_groups, config.protein_groups, verbose=verbose)
    annotation = build_protein_annotation(filtered, config.protein_groups)
    matrix = extract_intensity_matrix(filtered, config.protein_groups)
    if config.normalize:
        matrix = median_normalize(matrix)

    metadata = load_sample_metadata(metadata_file, config.sample_column)
    metadata = align_metadata_to_matrix(
        matrix, metadata,
        required_columns=[config.diet_column, config.time_column],
        verbose=verbose,
    )
    metadata = add_group_labels(
        metadata,
        diet_column=config.diet_column,
        time_column=config.time_column,
        group_column=config.statistics.design_factor,
        diet_levels=config.diets,
        time_levels=config.times,
    )

    baseline = config.times[0]
    subsets = {
        FOUR_WEEK: run_subset_analysis(
            matrix, metadata,
            criteria={config.time_column: baseline},
            missingness_config=config.missingness_config([baseline]),
            imputation_config=config.imputation,
            contrasts=diet_contrasts(config.diets, baseline, config.reference_diet),
            statistical_config=config.statistics,
            name=f"{baseline} only",
            verbose=verbose,
        ),
    }
    if len(config.times) > 1:
        subsets[COMBINED] = run_subset_analysis(
            matrix, metadata,
            criteria=None,
            missingness_config=config.missingness_config(),
            imputation_config=config.imputation,
            contrasts=study_contrasts(config.diets, config.times, config.reference_diet),
            statistical_config=config.statistics,
            name=" + ".join(config.times),
            verbose=verbose,
        )

    if verbose:
        print("\n✓ Lipogenesis analysis complete")
        for key, subset in subsets.items():
            n_sig = sum(len(d["up"]) + len(d["down"]) for d in subset.significant.values())
            print(f"  {subset.name}: {len(subset.matrix)} proteins tested, "
                  f"{len(subset.dropped)} dropped, {n_sig} significant calls")

    return LipogenesisAnalysis(
        config=config,
        annotation=annotation,
        matrix=matrix,
        metadata=metadata,
        subsets=subsets,
    )
