"""
Export Module for the Lipogenesis Proteomics Toolkit

Writes analysis results (matrices, missingness records, annotated
per-contrast tables, significant protein lists) to CSV, and the run
configuration to a timestamped Python file that can be re-read with
AnalysisConfig.from_dict().
"""

import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from .pipeline import AnalysisConfig, LipogenesisAnalysis, SubsetAnalysis

_RESULT_COLUMNS = ["logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "SE", "df_total", "Significant"]

_CONFIG_SECTIONS = [
    (
        "INPUT TABLE LAYOUT",
        [
            "protein_id_column",
            "gene_column",
            "intensity_prefix",
            "sample_column",
            "diet_column",
            "time_column",
        ],
    ),
    (
        "QUALITY FILTERING",
        [
            "contaminant_column",
            "reverse_column",
            "site_only_column",
            "unique_peptides_column",
            "min_unique_peptides",
            "log_base",
            "normalize",
        ],
    ),
    ("EXPERIMENTAL DESIGN", ["diets", "times", "reference_diet", "covariates"]),
    ("MISSINGNESS CLASSIFICATION", ["mnar_threshold", "min_detections_by_time"]),
    (
        "LEFT-CENSORED IMPUTATION",
        [
            "imputation_downshift",
            "imputation_width",
            "imputation_min_observed",
            "imputation_random_seed",
            "imputation_on_failure",
        ],
    ),
    (
        "EMPIRICAL BAYES MODERATION",
        ["trend", "robust", "winsor_tail_p", "outlier_fdr"],
    ),
    (
        "SIGNIFICANCE THRESHOLDS",
        [
            "correction_method",
            "p_value_threshold",
            "fold_change_threshold",
            "use_adjusted_pvalue",
        ],
    ),
]


def _subset_slug(name: str) -> str:
    return name.replace(" + ", "_").replace(" ", "_")


def annotate_results(result: pd.DataFrame, annotation: pd.DataFrame) -> pd.DataFrame:
    """
    Contrast table with protein and gene annotations as leading columns.

    Row order of the contrast table is preserved.
    """
    annotated = result.copy()
    annotated.index.name = "Protein"
    annotated = annotated.reset_index()

    genes = annotation.reindex(annotated["Protein"])
    annotated.insert(1, "Gene", genes["Gene"].values)
    annotated.insert(2, "Gene names", genes["Gene names"].values)

    ordered = ["Protein", "Gene", "Gene names"] + [c for c in _RESULT_COLUMNS if c in annotated.columns]
    extra = [c for c in annotated.columns if c not in ordered]
    return annotated[ordered + extra]


def significant_proteins_table(subset: SubsetAnalysis, annotation: pd.DataFrame) -> pd.DataFrame:
    """Long table of significant proteins: Contrast, Direction, Protein, Gene, logFC, adj.P.Val."""
    rows = []
    for contrast, directions in subset.significant.items():
        table = subset.results[contrast]
        for direction, protein_ids in directions.items():
            for protein in protein_ids:
                rows.append(
                    {
                        "Contrast": contrast,
                        "Direction": direction,
                        "Protein": protein,
                        "Gene": annotation["Gene"].get(protein),
                        "logFC": table.at[protein, "logFC"],
                        "adj.P.Val": table.at[protein, "adj.P.Val"],
                    }
                )
    columns = ["Contrast", "Direction", "Protein", "Gene", "logFC", "adj.P.Val"]
    return pd.DataFrame(rows, columns=columns)


def export_subset_results(
    subset: SubsetAnalysis,
    annotation: pd.DataFrame,
    output_prefix: str,
) -> Dict[str, str]:
    """
    Export every table of one subset analysis.

    Returns:
    --------
    Dict[str, str]
        Label -> path of each written file
    """
    prefix = f"{output_prefix}_{_subset_slug(subset.name)}"
    exported_files = {}

    record_file = f"{prefix}_missingness.csv"
    subset.record.to_csv(record_file)
    exported_files["missingness"] = record_file

    dropped_file = f"{prefix}_dropped_proteins.csv"
    subset.dropped.rename_axis("Protein").to_frame("reason").to_csv(dropped_file)
    exported_files["dropped"] = dropped_file

    matrix_file = f"{prefix}_imputed_matrix.csv"
    subset.matrix.to_csv(matrix_file)
    exported_files["imputed_matrix"] = matrix_file

    mask_file = f"{prefix}_imputed_cells.csv"
    subset.imputation.imputed_mask.to_csv(mask_file)
    exported_files["imputed_cells"] = mask_file

    for contrast, table in subset.results.items():
        contrast_file = f"{prefix}_{contrast}_results.csv"
        annotate_results(table, annotation).to_csv(contrast_file, index=False)
        exported_files[f"results:{contrast}"] = contrast_file

    significant_file = f"{prefix}_significant_proteins.csv"
    significant_proteins_table(subset, annotation).to_csv(significant_file, index=False)
    exported_files["significant"] = significant_file

    return exported_files


def export_analysis_results(
    analysis: LipogenesisAnalysis,
    output_prefix: str = "lipogenesis_analysis",
    include_config: bool = True,
) -> Dict[str, str]:
    """
    Export a complete study analysis.

    Parameters:
    -----------
    analysis : LipogenesisAnalysis
        Result of run_lipogenesis_analysis()
    output_prefix : str
        Path prefix of every output file; its directory is created
    include_config : bool
        Also write the timestamped configuration file

    Returns:
    --------
    Dict[str, str]
        Label -> path of each written file
    """
    directory = os.path.dirname(output_prefix)
    if directory:
        os.makedirs(directory, exist_ok=True)

    exported_files = {}

    matrix_file = f"{output_prefix}_normalized_matrix.csv"
    analysis.matrix.to_csv(matrix_file)
    exported_files["normalized_matrix"] = matrix_file

    metadata_file = f"{output_prefix}_sample_metadata.csv"
    analysis.metadata.to_csv(metadata_file)
    exported_files["sample_metadata"] = metadata_file

    annotation_file = f"{output_prefix}_protein_annotation.csv"
    analysis.annotation.to_csv(annotation_file)
    exported_files["protein_annotation"] = annotation_file

    for key, subset in analysis.subsets.items():
        subset_files = export_subset_results(subset, analysis.annotation, output_prefix)
        exported_files.update({f"{key}/{label}": path for label, path in subset_files.items()})

    config_file = None
    if include_config:
        config_file = export_timestamped_config(
            analysis.config,
            output_prefix,
            computed_values=_computed_values(analysis),
        )
        exported_files["configuration"] = config_file

    _print_export_summary(exported_files)
    return exported_files


def _computed_values(analysis: LipogenesisAnalysis) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "proteins_after_quality_filter": analysis.matrix.shape[0],
        "samples": analysis.matrix.shape[1],
    }
    for key, subset in analysis.subsets.items():
        values[f"{key}_proteins_tested"] = len(subset.matrix)
        values[f"{key}_proteins_dropped"] = len(subset.dropped)
        values[f"{key}_imputed_cells"] = subset.imputation.n_imputed
    return values


def export_timestamped_config(
    config: AnalysisConfig,
    output_prefix: str = "lipogenesis_analysis",
    analysis_description: str = "Liver lipogenesis diet x time proteomics",
    computed_values: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Export the analysis configuration as a timestamped Python file.

    Every parameter is written as ``name = repr(value)``, so executing the
    file into a dict and passing it to AnalysisConfig.from_dict()
    reproduces the configuration.

    Returns:
    --------
    str
        Path to the exported configuration file
    """
    config_dict = config.to_dict()

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    config_file = f"{output_prefix}_config_{timestamp}.py"

    print(f"Exporting analysis configuration to: {config_file}")

    written = set()
    with open(config_file, "w", encoding="utf-8") as f:
        f.write("# =============================================================================\n")
        f.write("# LIPOGENESIS PROTEOMICS ANALYSIS CONFIGURATION\n")
        f.write(f"# Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write(f"# Analysis: {analysis_description}\n")
        f.write("# =============================================================================\n\n")

        for section_num, (section_name, param_names) in enumerate(_CONFIG_SECTIONS, start=1):
            _write_config_section(f, section_name, config_dict, param_names, section_num)
            written.update(param_names)

        remaining = [key for key in config_dict if key not in written]
        if remaining:
            _write_config_section(f, "OTHER PARAMETERS", config_dict, remaining, len(_CONFIG_SECTIONS) + 1)

        if computed_values:
            f.write("# =============================================================================\n")
            f.write("# COMPUTED VALUES (for reference)\n")
            f.write("# =============================================================================\n")
            for key, value in computed_values.items():
                f.write(f"# {key}: {value}\n")

    return config_file


def _write_config_section(
    file_handle,
    section_name: str,
    config_dict: Dict[str, Any],
    param_names: List[str],
    section_number: int = 1,
) -> None:
    """Write a configuration section to file."""

    file_handle.write("# =============================================================================\n")
    file_handle.write(f"# {section_number}. {section_name}\n")
    file_handle.write("# =============================================================================\n")

    for param in param_names:
        if param in config_dict:
            file_handle.write(f"{param} = {repr(config_dict[param])}\n")

    file_handle.write("\n")


def load_config_file(config_file: str) -> AnalysisConfig:
    """Read a file written by export_timestamped_config() back into an AnalysisConfig."""
    if not os.path.exists(config_file):
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    namespace: Dict[str, Any] = {}
    with open(config_file, encoding="utf-8") as f:
        exec(f.read(), {}, namespace)
    return AnalysisConfig.from_dict(namespace)


def _print_export_summary(exported_files: Dict[str, str]) -> None:
    print("\n" + "=" * 60)
    print("✓ All analysis results exported successfully!")
    print("Files created:")
    for label, path in exported_files.items():
        print(f"  • {path} ({label})")
    print("=" * 60)
