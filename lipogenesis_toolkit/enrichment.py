"""
Gene Set Enrichment Module

Enrichment of significant protein lists (per contrast and direction)
against gene set libraries served by Enrichr. Annotation services sit
behind a narrow ``lookup(symbols) -> mapping`` interface so the statistical
pipeline never depends on a particular ontology database.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import requests
from matplotlib.figure import Figure

ENRICHR_URL = 'https://maayanlab.cloud/Enrichr'


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class EnrichmentConfig:
    """Configuration for gene set enrichment analysis.

    Attributes
    ----------
    enrichr_libraries : List[str]
        Gene set libraries to query from Enrichr (mouse libraries by default)
    pvalue_cutoff : float
        Adjusted p-value threshold for reporting a term
    top_n : int
        Maximum number of top terms to return per library
    min_genes : int
        Minimum number of genes required to run enrichment
    rate_limit_delay : float
        Delay between API requests (seconds)
    timeout : int
        Request timeout in seconds
    """

    enrichr_libraries: List[str] = field(default_factory=lambda: [
        'GO_Biological_Process_2023',
        'GO_Molecular_Function_2023',
        'GO_Cellular_Component_2023',
        'KEGG_2019_Mouse',
        'WikiPathways_2019_Mouse',
    ])
    pvalue_cutoff: float = 0.05
    top_n: int = 20
    min_genes: int = 5
    rate_limit_delay: float = 0.5
    timeout: int = 30


class AnnotationLookup(Protocol):
    """Enrichment backend over gene symbols.

    ``lookup`` maps each symbol to the annotation terms it belongs to;
    ``enrich`` returns the enriched terms of a gene list, and lists shorter
    than ``min_genes`` are not submitted.
    """

    min_genes: int

    def lookup(self, symbols: Sequence[str]) -> Mapping[str, List[str]]:
        ...

    def enrich(self, symbols: Sequence[str], description: str = "Gene list") -> pd.DataFrame:
        ...


# =============================================================================
# ENRICHR API FUNCTIONS
# =============================================================================

def _clean_gene_list(gene_list: Sequence[str]) -> List[str]:
    clean_genes = []
    for g in gene_list:
        if pd.notna(g):
            gene_str = str(g).strip()
            if gene_str and gene_str.lower() not in ['nan', 'none']:
                clean_genes.append(gene_str)
    return list(dict.fromkeys(clean_genes))


def query_enrichr(
    gene_list: Sequence[str],
    config: Optional[EnrichmentConfig] = None,
    description: str = 'Lipogenesis proteomics gene list'
) -> Dict[str, List]:
    """
    Query the Enrichr API for a gene list.

    Returns:
    --------
    Dict[str, List]
        Library name -> list of [rank, term, pval, zscore, combined_score,
        genes, adj_pval, ...]. Empty dict when the submission fails or the
        list is too short.
    """
    if config is None:
        config = EnrichmentConfig()

    clean_genes = _clean_gene_list(gene_list)
    if len(clean_genes) < config.min_genes:
        print(f"  Warning: Only {len(clean_genes)} genes provided, need at least {config.min_genes}")
        return {}

    payload = {
        'list': (None, '\n'.join(clean_genes)),
        'description': (None, description)
    }

    try:
        response = requests.post(f'{ENRICHR_URL}/addList', files=payload, timeout=config.timeout)
        if not response.ok:
            print(f"  Error submitting gene list: {response.status_code}")
            return {}
        user_list_id = json.loads(response.text)['userListId']
    except requests.exceptions.Timeout:
        print("  Error: Enrichr request timed out")
        return {}
    except requests.exceptions.ConnectionError:
        print("  Error: Could not connect to Enrichr (check internet connection)")
        return {}
    except (requests.exceptions.RequestException, KeyError, ValueError) as e:
        print(f"  Error connecting to Enrichr: {e}")
        return {}

    results = {}
    for library in config.enrichr_libraries:
        try:
            time.sleep(config.rate_limit_delay)
            response = requests.get(
                f'{ENRICHR_URL}/enrich',
                params={'userListId': user_list_id, 'backgroundType': library},
                timeout=config.timeout
            )
            if response.ok:
                enrichment_results = json.loads(response.text)
                if library in enrichment_results:
                    results[library] = enrichment_results[library]
        except (requests.exceptions.RequestException, ValueError) as e:
            print(f"  Error querying {library}: {e}")
            continue

    return results


def parse_enrichr_results(
    results: Dict[str, List],
    config: Optional[EnrichmentConfig] = None
) -> pd.DataFrame:
    """
    Parse Enrichr results into a tidy DataFrame.

    Columns: Library, Term, P_Value, Adj_P_Value, Combined_Score, Genes,
    N_Genes. Sorted by Adj_P_Value; empty when nothing passes the cutoff.
    """
    if config is None:
        config = EnrichmentConfig()

    parsed_results = []
    for library, terms in results.items():
        for term_data in terms[:config.top_n]:
            if len(term_data) < 7:
                continue
            adj_pval = term_data[6]
            if adj_pval > config.pvalue_cutoff:
                continue
            genes = term_data[5] if isinstance(term_data[5], list) else [term_data[5]]
            parsed_results.append({
                'Library': library,
                'Term': term_data[1],
                'P_Value': term_data[2],
                'Adj_P_Value': adj_pval,
                'Combined_Score': term_data[4],
                'Genes': ';'.join(genes),
                'N_Genes': len(genes),
            })

    if not parsed_results:
        return pd.DataFrame()
    return pd.DataFrame(parsed_results).sort_values('Adj_P_Value').reset_index(drop=True)


class EnrichrLookup:
    """AnnotationLookup backed by Enrichr libraries.

    ``lookup`` returns, for every submitted symbol, the enriched terms it
    contributes to.
    """

    def __init__(self, config: Optional[EnrichmentConfig] = None):
        self.config = config or EnrichmentConfig()

    @property
    def min_genes(self) -> int:
        return self.config.min_genes

    def enrich(self, symbols: Sequence[str], description: str = 'Gene list') -> pd.DataFrame:
        raw_results = query_enrichr(symbols, self.config, description)
        if not raw_results:
            return pd.DataFrame()
        return parse_enrichr_results(raw_results, self.config)

    def lookup(self, symbols: Sequence[str]) -> Dict[str, List[str]]:
        terms = self.enrich(symbols)
        mapping = {symbol: [] for symbol in _clean_gene_list(symbols)}
        if terms.empty:
            return mapping
        upper = {symbol.upper(): symbol for symbol in mapping}
        for _, row in terms.iterrows():
            for gene in row['Genes'].split(';'):
                symbol = upper.get(gene.upper())
                if symbol is not None:
                    mapping[symbol].append(row['Term'])
        return mapping


# =============================================================================
# HIGH-LEVEL ENRICHMENT FUNCTIONS
# =============================================================================

def proteins_to_genes(protein_ids: Sequence[str], annotation: pd.DataFrame) -> List[str]:
    """Canonical gene symbols of the given proteins, dropping unannotated ones."""
    genes = annotation.reindex(list(protein_ids))['Gene'].dropna().tolist()
    return list(dict.fromkeys(genes))


def run_enrichment_by_direction(
    significant: Dict[str, Dict[str, List[str]]],
    annotation: pd.DataFrame,
    lookup: Optional[AnnotationLookup] = None,
    verbose: bool = True
) -> Dict[Tuple[str, str], pd.DataFrame]:
    """
    Run enrichment for every contrast and direction.

    Parameters
    ----------
    significant : dict
        {contrast: {"up": [protein ids], "down": [protein ids]}} as
        returned by significant_proteins()
    annotation : pd.DataFrame
        Protein annotation with a canonical ``Gene`` column
    lookup : AnnotationLookup, optional
        Enrichment backend; a default EnrichrLookup is used when omitted

    Returns
    -------
    Dict[(contrast, direction), pd.DataFrame]
    """
    if lookup is None:
        lookup = EnrichrLookup()

    enrichment_results = {}
    for contrast, directions in significant.items():
        for direction, protein_ids in directions.items():
            genes = proteins_to_genes(protein_ids, annotation)
            if verbose:
                print(f"\n{contrast} ({direction}): {len(genes)} genes", flush=True)
            if len(genes) < lookup.min_genes:
                enrichment_results[(contrast, direction)] = pd.DataFrame()
                if verbose:
                    print(f"  Skipping - need at least {lookup.min_genes} genes", flush=True)
                continue
            enrichment_df = lookup.enrich(genes, description=f"{contrast} {direction}")
            enrichment_results[(contrast, direction)] = enrichment_df
            if verbose:
                print(f"  Found {len(enrichment_df)} significant terms", flush=True)

    return enrichment_results


def plot_enrichment_barplot(
    enrichment_df: pd.DataFrame,
    title: str = 'Gene Set Enrichment',
    top_n: int = 15,
    figsize: Tuple[int, int] = (12, 8)
) -> Optional[Figure]:
    """
    Horizontal bar plot of -log10 adjusted p-values of the top terms.

    Returns None when there is nothing to plot.
    """
    if enrichment_df.empty:
        print(f"  No significant enrichment results for: {title}")
        return None

    plot_df = enrichment_df.nsmallest(top_n, 'Adj_P_Value').iloc[::-1]
    term_labels = [t[:55] + '...' if len(t) > 55 else t for t in plot_df['Term']]

    fig, ax = plt.subplots(figsize=figsize)
    ax.barh(range(len(plot_df)), -np.log10(plot_df['Adj_P_Value']), color='#1f77b4', alpha=0.8)
    ax.set_yticks(range(len(plot_df)))
    ax.set_yticklabels(term_labels, fontsize=9)
    ax.set_xlabel('-Log10 adjusted p-value', fontsize=12)
    ax.set_title(title, fontsize=14, fontweight='bold')

    for i, n_genes in enumerate(plot_df['N_Genes']):
        ax.text(0, i, f' ({n_genes})', va='center', fontsize=8, color='white')

    plt.tight_layout()
    return fig
