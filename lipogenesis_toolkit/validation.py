"""
Data Validation Module for the Lipogenesis Proteomics Toolkit

Functions for validating that the intensity matrix and the sample metadata
describe the same samples, in the same order, with interpretable error
messages when they do not.
"""

import pandas as pd
from typing import Dict, List, Sequence


class SampleMatchingError(Exception):
    """Custom exception for sample matching issues."""
    def __init__(self, message):
        super().__init__(message)


def _preview(names: Sequence[str], limit: int = 5) -> str:
    names = list(names)
    return f"{names[:limit]}{'...' if len(names) > limit else ''}"


def validate_metadata_data_consistency(
    matrix_columns: Sequence[str],
    metadata: pd.DataFrame,
    required_columns: Sequence[str] = (),
    verbose: bool = True
) -> Dict:
    """
    Validate consistency between the intensity matrix and sample metadata.

    Parameters:
    -----------
    matrix_columns : Sequence[str]
        Sample columns of the intensity matrix
    metadata : pd.DataFrame
        Sample metadata indexed by sample identifier
    required_columns : Sequence[str]
        Metadata columns that must exist and be non-missing for every sample
    verbose : bool, default True
        Whether to print detailed validation results

    Returns:
    --------
    Dict containing validation results and diagnostic information
    """

    results = {
        'is_valid': True,
        'errors': [],
        'warnings': [],
        'diagnostics': {}
    }

    if verbose:
        print("METADATA/DATA CONSISTENCY VALIDATION")
        print("=" * 50)

    matrix_samples = [str(c) for c in matrix_columns]
    metadata_samples = [str(s) for s in metadata.index]

    # 1. Duplicates on either side make alignment ambiguous
    duplicated_matrix = sorted(set(s for s in matrix_samples if matrix_samples.count(s) > 1))
    duplicated_metadata = sorted(set(metadata.index[metadata.index.duplicated()].astype(str)))

    if duplicated_matrix:
        results['errors'].append(
            f"Duplicate sample columns in intensity matrix: {_preview(duplicated_matrix)}"
        )
    if duplicated_metadata:
        results['errors'].append(
            f"Duplicate sample identifiers in metadata: {_preview(duplicated_metadata)}"
        )

    # 2. Samples present on only one side
    matrix_set = set(matrix_samples)
    metadata_set = set(metadata_samples)
    missing_from_metadata = [s for s in matrix_samples if s not in metadata_set]
    missing_from_data = [s for s in metadata_samples if s not in matrix_set]

    if missing_from_metadata:
        results['errors'].append(
            f"Found {len(missing_from_metadata)} sample columns with no metadata row: "
            f"{_preview(missing_from_metadata)}"
        )
    if missing_from_data:
        results['errors'].append(
            f"Found {len(missing_from_data)} metadata samples with no column in the intensity matrix: "
            f"{_preview(missing_from_data)}"
        )

    # 3. Required design columns
    for col in required_columns:
        if col not in metadata.columns:
            results['errors'].append(f"Required metadata column '{col}' not found")
            continue
        n_missing = metadata[col].isna().sum()
        if n_missing:
            results['errors'].append(
                f"Metadata column '{col}' has {n_missing} missing values"
            )

    # 4. Order mismatch is recoverable by reindexing, so it only warns
    shared = [s for s in matrix_samples if s in metadata_set]
    metadata_order = [s for s in metadata_samples if s in matrix_set]
    order_matches = shared == metadata_order
    if not order_matches:
        results['warnings'].append(
            "Metadata rows are not in the same order as matrix columns; "
            "metadata will be reindexed to the matrix column order"
        )

    results['is_valid'] = not results['errors']
    results['diagnostics'] = {
        'total_matrix_samples': len(matrix_samples),
        'total_metadata_samples': len(metadata_samples),
        'samples_matched': len(shared),
        'missing_from_metadata': missing_from_metadata,
        'missing_from_data': missing_from_data,
        'duplicated_matrix_samples': duplicated_matrix,
        'duplicated_metadata_samples': duplicated_metadata,
        'order_matches': order_matches,
    }

    if verbose:
        diag = results['diagnostics']
        print(f"Matrix samples: {diag['total_matrix_samples']}")
        print(f"Metadata samples: {diag['total_metadata_samples']}")
        print(f"  Matched: {diag['samples_matched']}")
        for error in results['errors']:
            print(f"  ERROR: {error}")
        for warning in results['warnings']:
            print(f"  Warning: {warning}")
        print(f"Validation {'PASSED' if results['is_valid'] else 'FAILED'}")

    return results


def align_metadata_to_matrix(
    matrix: pd.DataFrame,
    metadata: pd.DataFrame,
    required_columns: Sequence[str] = (),
    verbose: bool = False
) -> pd.DataFrame:
    """
    Return the metadata reindexed to the matrix column order.

    Raises SampleMatchingError if any sample is missing on either side,
    if identifiers are duplicated, or if a required column is missing.
    The input frames are not modified.
    """
    results = validate_metadata_data_consistency(
        matrix.columns, metadata, required_columns=required_columns, verbose=verbose
    )
    if not results['is_valid']:
        raise SampleMatchingError(
            "Sample metadata does not match the intensity matrix:\n  - "
            + "\n  - ".join(results['errors'])
        )

    aligned = metadata.copy()
    aligned.index = aligned.index.astype(str)
    aligned = aligned.loc[[str(c) for c in matrix.columns]]
    aligned.index = matrix.columns
    return aligned


def check_alignment(matrix: pd.DataFrame, metadata: pd.DataFrame) -> None:
    """Raise SampleMatchingError unless metadata rows equal matrix columns, in order."""
    if list(matrix.columns) != list(metadata.index):
        raise SampleMatchingError(
            "Intensity matrix columns and metadata rows are not aligned; "
            "call align_metadata_to_matrix() first"
        )


def generate_sample_matching_diagnostic_report(
    matrix_columns: Sequence[str],
    metadata: pd.DataFrame,
    required_columns: Sequence[str] = ()
) -> str:
    """
    Generate a comprehensive diagnostic report for sample matching issues.

    Returns:
    --------
    str
        Formatted diagnostic report
    """
    results = validate_metadata_data_consistency(
        matrix_columns, metadata, required_columns=required_columns, verbose=False
    )
    diag = results['diagnostics']

    lines: List[str] = []
    lines.append("SAMPLE MATCHING DIAGNOSTIC REPORT")
    lines.append("=" * 60)
    lines.append(f"Intensity matrix samples: {diag['total_matrix_samples']}")
    lines.append(f"Metadata samples:         {diag['total_metadata_samples']}")
    lines.append(f"Matched samples:          {diag['samples_matched']}")
    lines.append("")

    if diag['missing_from_metadata']:
        lines.append("Matrix columns without metadata:")
        for sample in diag['missing_from_metadata']:
            lines.append(f"  - {sample}")
        lines.append("")

    if diag['missing_from_data']:
        lines.append("Metadata samples without matrix columns:")
        for sample in diag['missing_from_data']:
            lines.append(f"  - {sample}")
        lines.append("")

    if results['errors']:
        lines.append("ERRORS:")
        for error in results['errors']:
            lines.append(f"  * {error}")
    if results['warnings']:
        lines.append("WARNINGS:")
        for warning in results['warnings']:
            lines.append(f"  * {warning}")

    if results['is_valid']:
        lines.append("All samples match. Data is ready for analysis.")
    else:
        lines.append("SUGGESTED FIXES:")
        lines.append("  1. Check that sample identifiers in the metadata match the")
        lines.append("     intensity column names after the intensity prefix is removed")
        lines.append("  2. Remove or rename duplicated sample identifiers")
        lines.append("  3. Fill in missing diet/time annotations")

    return "\n".join(lines)
