"""
Data Import Module for the Lipogenesis Proteomics Toolkit

Functions for loading MaxQuant-style protein group tables and sample
metadata, and for turning them into an intensity matrix and a protein
annotation table.
"""

import os
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from .validation import SampleMatchingError


@dataclass
class ProteinGroupsConfig:
    """Column layout and quality thresholds of the protein quantitation table.

    Attributes
    ----------
    protein_id_column : str
        Unique protein group identifier
    gene_column : str
        Semicolon-joined gene symbols
    intensity_prefix : str
        Prefix of per-sample abundance columns; the remainder is the sample id
    contaminant_column, reverse_column, site_only_column : str
        Quality flag columns, a value of "+" marks the flag as set
    unique_peptides_column : str
        Unique peptide count per protein group
    min_unique_peptides : int
        Minimum unique peptides for a protein group to be kept
    log_base : str
        "log2", "log10" or "ln", applied after zeros become NaN
    """

    protein_id_column: str = "Protein IDs"
    gene_column: str = "Gene names"
    intensity_prefix: str = "LFQ intensity "
    contaminant_column: str = "Potential contaminant"
    reverse_column: str = "Reverse"
    site_only_column: str = "Only identified by site"
    unique_peptides_column: str = "Unique peptides"
    min_unique_peptides: int = 2
    log_base: str = "log2"

    @property
    def flag_columns(self):
        return [self.contaminant_column, self.reverse_column, self.site_only_column]


def _read_table(path: str, sep: Optional[str] = None) -> pd.DataFrame:
    if sep is None:
        sep = "\t" if path.endswith((".txt", ".tsv")) else ","
    return pd.read_csv(path, sep=sep, low_memory=False)


def load_protein_groups(protein_file: str, sep: Optional[str] = None) -> pd.DataFrame:
    """
    Load a protein quantitation table (MaxQuant proteinGroups.txt or CSV).

    Parameters:
    -----------
    protein_file : str
        Path to the protein table. Tab-separated for .txt/.tsv, else CSV
    sep : str, optional
        Explicit column separator

    Returns:
    --------
    pd.DataFrame : Raw protein groups table
    """

    print("=== LOADING PROTEIN GROUPS ===\n")

    if not os.path.exists(protein_file):
        raise FileNotFoundError(f"Protein file not found: {protein_file}")

    try:
        protein_groups = _read_table(protein_file, sep)
    except Exception as e:
        raise ValueError(f"Error loading protein file: {e}") from e

    print(f"✓ Loaded protein groups: {protein_groups.shape}")
    return protein_groups


def load_sample_metadata(
    metadata_file: str, sample_column: str = "Sample", sep: Optional[str] = None
) -> pd.DataFrame:
    """
    Load sample metadata and index it by sample identifier.

    Raises SampleMatchingError if sample identifiers are not unique.
    """

    print("=== LOADING SAMPLE METADATA ===\n")

    if not os.path.exists(metadata_file):
        raise FileNotFoundError(f"Metadata file not found: {metadata_file}")

    try:
        metadata = _read_table(metadata_file, sep)
    except Exception as e:
        raise ValueError(f"Error loading metadata file: {e}") from e

    return prepare_sample_metadata(metadata, sample_column)


def prepare_sample_metadata(metadata: pd.DataFrame, sample_column: str = "Sample") -> pd.DataFrame:
    """Index a metadata table by its sample column, enforcing unique ids."""
    if sample_column not in metadata.columns:
        raise ValueError(f"Sample column '{sample_column}' not found in metadata")

    sample_ids = metadata[sample_column].astype(str).str.strip()
    duplicated = sample_ids[sample_ids.duplicated()].unique().tolist()
    if duplicated:
        raise SampleMatchingError(f"Duplicate sample identifiers in metadata: {duplicated}")

    prepared = metadata.drop(columns=[sample_column]).copy()
    prepared.index = pd.Index(sample_ids.values, name=sample_column)

    print(f"✓ Loaded metadata for {len(prepared)} samples")
    return prepared


def parse_gene_symbols(gene_names: pd.Series) -> pd.Series:
    """
    Canonical gene symbol per protein: the first of a semicolon-joined list.

    Examples: "Fasn;Fas" -> "Fasn", "" -> NaN, NaN -> NaN
    """
    def _first_symbol(value):
        if pd.isna(value):
            return np.nan
        first = str(value).split(";")[0].strip()
        return first if first else np.nan

    return gene_names.apply(_first_symbol)


def build_protein_annotation(
    protein_groups: pd.DataFrame, config: Optional[ProteinGroupsConfig] = None
) -> pd.DataFrame:
    """Static per-protein annotation indexed by protein id."""
    if config is None:
        config = ProteinGroupsConfig()

    if config.gene_column in protein_groups.columns:
        gene_names = protein_groups[config.gene_column]
    else:
        gene_names = pd.Series(np.nan, index=protein_groups.index)

    annotation = pd.DataFrame(
        {
            "Gene names": gene_names.values,
            "Gene": parse_gene_symbols(gene_names).values,
        },
        index=pd.Index(protein_groups[config.protein_id_column].astype(str).values, name="Protein"),
    )
    return annotation


def log_transform_values(values: pd.DataFrame, log_base: str = "log2") -> pd.DataFrame:
    """Log-transform strictly positive values; zeros and negatives become NaN."""
    positive = values.where(values > 0)
    if log_base == "log2":
        return np.log2(positive)
    elif log_base == "log10":
        return np.log10(positive)
    elif log_base == "ln":
        return np.log(positive)
    raise ValueError(f"Unknown log base: {log_base}")


def extract_intensity_matrix(
    protein_groups: pd.DataFrame, config: Optional[ProteinGroupsConfig] = None
) -> pd.DataFrame:
    """
    Build the protein x sample intensity matrix from a protein groups table.

    Zero readings are "not detected" and become NaN before the log transform.

    Parameters:
    -----------
    protein_groups : pd.DataFrame
        Protein groups table, usually after filter_quality_flags()
    config : ProteinGroupsConfig, optional
        Column layout; defaults to MaxQuant LFQ columns

    Returns:
    --------
    pd.DataFrame : Log intensities, index = protein id, columns = sample ids
    """
    if config is None:
        config = ProteinGroupsConfig()

    intensity_columns = [
        col for col in protein_groups.columns if str(col).startswith(config.intensity_prefix)
    ]
    if not intensity_columns:
        raise ValueError(
            f"No intensity columns found with prefix '{config.intensity_prefix}'"
        )

    protein_ids = protein_groups[config.protein_id_column].astype(str)
    duplicated = protein_ids[protein_ids.duplicated()].unique().tolist()
    if duplicated:
        raise ValueError(f"Duplicate protein identifiers: {duplicated[:5]}")

    raw = protein_groups[intensity_columns].apply(pd.to_numeric, errors="coerce")
    raw.columns = [str(col)[len(config.intensity_prefix):].strip() for col in intensity_columns]
    raw.index = pd.Index(protein_ids.values, name="Protein")

    n_zero = int((raw == 0).sum().sum())
    matrix = log_transform_values(raw, config.log_base)

    print(
        f"✓ Intensity matrix: {matrix.shape[0]} proteins x {matrix.shape[1]} samples "
        f"({n_zero} zero readings set to missing, {config.log_base} scale)"
    )
    return matrix
