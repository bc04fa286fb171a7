"""
Lipogenesis Proteomics Toolkit
==============================

Differential protein abundance analysis of mouse liver proteomics from a
diet x time study (chow, high-starch and high-fat diets, sampled at 4 and
30 weeks). The toolkit covers quality filtering of MaxQuant protein groups,
MAR/MNAR missingness classification, left-censored imputation, per-protein
linear models with empirical Bayes variance moderation, contrasts and FDR
control, plus downstream enrichment, plots and exports.

QUICK START EXAMPLE:
-------------------
    import lipogenesis_toolkit as ltk

    # 1. Configure (thresholds are plain settings)
    config = ltk.AnalysisConfig(min_detections_by_time={'4wk': 8, '30wk': 6})

    # 2. Run both subsets (4-week only, 4 + 30 weeks combined)
    analysis = ltk.run_lipogenesis_analysis('proteinGroups.txt', 'metadata.csv', config)

    # 3. Inspect, plot and export
    table = analysis.four_week.results['fat_vs_chow_4wk']
    ltk.plot_volcano(table, config.statistics, analysis.annotation)
    ltk.export_analysis_results(analysis, 'results/lipogenesis')

MODULE OVERVIEW:
===============

data_import
    Purpose: Load protein groups tables and sample metadata
    Key functions: load_protein_groups(), extract_intensity_matrix(), build_protein_annotation()

preprocessing
    Purpose: Quality-flag filtering, diet x time group labels, subsetting
    Key functions: filter_quality_flags(), add_group_labels(), subset_samples()

normalization
    Purpose: Log transformation and median normalization
    Key functions: median_normalize()

validation
    Purpose: Sample alignment between intensity matrix and metadata
    Key functions: validate_metadata_data_consistency(), align_metadata_to_matrix()

missingness
    Purpose: MAR/MNAR classification and keep/drop decisions per protein
    Key functions: classify_missingness(), apply_missingness_filter()

imputation
    Purpose: Down-shifted, truncated normal imputation of MNAR proteins
    Key functions: impute_left_censored()

design
    Purpose: Group-means design matrices and named contrasts
    Key functions: DesignSpec, build_design_matrix(), study_contrasts()

empirical_bayes
    Purpose: Variance prior estimation (trended, robust) and posterior variances
    Key functions: squeeze_variances()

statistical_analysis
    Purpose: Linear models, moderated t-tests, FDR correction
    Key functions: run_differential_analysis(), StatisticalConfig()

enrichment
    Purpose: Gene set enrichment of significant protein lists via Enrichr
    Key functions: run_enrichment_by_direction(), EnrichrLookup

visualization
    Purpose: QC and results plots
    Key functions: plot_volcano(), plot_pca(), plot_missingness_summary()

export
    Purpose: CSV exports and timestamped configuration files
    Key functions: export_analysis_results(), export_timestamped_config()

pipeline
    Purpose: The study workflow over the 4-week and combined subsets
    Key functions: run_lipogenesis_analysis(), run_subset_analysis()

ERROR HANDLING:
==============
- SampleMatchingError: intensity matrix and metadata samples do not match
- DesignError: design matrix not full rank (names the aliased coefficients)
- ContrastError: contrast references unknown coefficients or is all zero
- ImputationError: left-censored distribution cannot be fitted for a protein
"""

# =============================================================================
# MODULE IMPORTS
# =============================================================================

from . import data_import          # Data loading and parsing
from . import preprocessing        # Quality filtering and grouping
from . import normalization        # Log transform and median normalization
from . import validation           # Sample alignment checks
from . import missingness          # MAR/MNAR classification
from . import imputation           # Left-censored imputation
from . import design               # Design matrices and contrasts
from . import empirical_bayes      # Variance moderation
from . import statistical_analysis # Linear models and moderated tests
from . import enrichment           # Gene set enrichment
from . import visualization        # Plotting
from . import pipeline             # Study workflow
from . import export               # Results export and configuration files

__version__ = "1.0.0"

# =============================================================================
# CONVENIENCE IMPORTS
# =============================================================================

from .data_import import (
    ProteinGroupsConfig,
    load_protein_groups,
    load_sample_metadata,
    extract_intensity_matrix,
    build_protein_annotation,
)

from .preprocessing import (
    filter_quality_flags,
    add_group_labels,
    subset_samples,
    assess_data_completeness,
)

from .normalization import median_normalize

from .validation import (
    validate_metadata_data_consistency,
    align_metadata_to_matrix,
    generate_sample_matching_diagnostic_report,
    SampleMatchingError,
)

from .missingness import (
    MissingnessConfig,
    classify_missingness,
    apply_missingness_filter,
)

from .imputation import (
    ImputationConfig,
    ImputationError,
    impute_left_censored,
)

from .design import (
    DesignSpec,
    DesignError,
    Contrast,
    ContrastError,
    build_design_matrix,
    diet_contrasts,
    study_contrasts,
)

from .empirical_bayes import squeeze_variances

from .statistical_analysis import (
    StatisticalConfig,
    run_differential_analysis,
    significant_proteins,
    display_analysis_summary,
)

from .enrichment import (
    EnrichmentConfig,
    EnrichrLookup,
    run_enrichment_by_direction,
)

from .visualization import (
    plot_volcano,
    plot_pca,
    plot_missingness_summary,
    plot_intensity_distributions,
)

from .pipeline import (
    AnalysisConfig,
    run_subset_analysis,
    run_lipogenesis_analysis,
)

from .export import (
    export_analysis_results,
    export_timestamped_config,
    load_config_file,
)

# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # MODULES
    "data_import",
    "preprocessing",
    "normalization",
    "validation",
    "missingness",
    "imputation",
    "design",
    "empirical_bayes",
    "statistical_analysis",
    "enrichment",
    "visualization",
    "pipeline",
    "export",

    # DATA LOADING
    "ProteinGroupsConfig",
    "load_protein_groups",
    "load_sample_metadata",
    "extract_intensity_matrix",
    "build_protein_annotation",

    # PREPROCESSING
    "filter_quality_flags",
    "add_group_labels",
    "subset_samples",
    "assess_data_completeness",
    "median_normalize",

    # VALIDATION
    "validate_metadata_data_consistency",
    "align_metadata_to_matrix",
    "generate_sample_matching_diagnostic_report",
    "SampleMatchingError",

    # MISSINGNESS AND IMPUTATION
    "MissingnessConfig",
    "classify_missingness",
    "apply_missingness_filter",
    "ImputationConfig",
    "ImputationError",
    "impute_left_censored",

    # DESIGN AND STATISTICS
    "DesignSpec",
    "DesignError",
    "Contrast",
    "ContrastError",
    "build_design_matrix",
    "diet_contrasts",
    "study_contrasts",
    "squeeze_variances",
    "StatisticalConfig",
    "run_differential_analysis",
    "significant_proteins",
    "display_analysis_summary",

    # ENRICHMENT
    "EnrichmentConfig",
    "EnrichrLookup",
    "run_enrichment_by_direction",

    # VISUALIZATION
    "plot_volcano",
    "plot_pca",
    "plot_missingness_summary",
    "plot_intensity_distributions",

    # PIPELINE AND EXPORT
    "AnalysisConfig",
    "run_subset_analysis",
    "run_lipogenesis_analysis",
    "export_analysis_results",
    "export_timestamped_config",
    "load_config_file",
]
