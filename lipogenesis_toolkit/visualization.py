"""
Visualization Module for the Lipogenesis Proteomics Toolkit

Quality control plots (intensity distributions, PCA, missingness) and
results plots (volcano) consuming the toolkit's tidy tables.
"""

from typing import Dict, Optional, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.figure import Figure
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from .missingness import detection_percentages
from .statistical_analysis import StatisticalConfig
from .validation import check_alignment


def _group_palette(groups: pd.Series, palette: str = "Set1") -> Dict[str, tuple]:
    if isinstance(groups.dtype, pd.CategoricalDtype):
        levels = [str(level) for level in groups.cat.categories]
    else:
        levels = list(dict.fromkeys(groups.astype(str)))
    colors = sns.color_palette(palette, n_colors=max(len(levels), 1))
    return {level: colors[i] for i, level in enumerate(levels)}


def plot_intensity_distributions(
    matrix: pd.DataFrame,
    metadata: pd.DataFrame,
    group_column: str = "Group",
    title: str = "Sample Intensity Distributions",
    figsize: Tuple[int, int] = (14, 6),
) -> Figure:
    """
    Box plot of log intensities per sample, colored by group.

    Parameters:
    -----------
    matrix : pd.DataFrame
        Log intensities, proteins x samples
    metadata : pd.DataFrame
        Sample metadata aligned to the matrix columns
    group_column : str
        Metadata column used for coloring
    """
    check_alignment(matrix, metadata)

    long = matrix.melt(var_name="Sample", value_name="Intensity").dropna()
    groups = metadata[group_column]
    long["Group"] = long["Sample"].map(groups.astype(str))
    palette = _group_palette(groups)

    fig, ax = plt.subplots(figsize=figsize)
    sns.boxplot(
        data=long, x="Sample", y="Intensity", hue="Group",
        order=list(matrix.columns), palette=palette, dodge=False,
        fliersize=1, ax=ax,
    )
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.set_xlabel("")
    ax.set_ylabel("Log2 Intensity")
    ax.tick_params(axis="x", rotation=90, labelsize=8)
    if ax.get_legend() is not None:
        sns.move_legend(ax, "upper left", bbox_to_anchor=(1.01, 1), title=group_column)
    plt.tight_layout()
    return fig


def plot_pca(
    matrix: pd.DataFrame,
    metadata: pd.DataFrame,
    group_column: str = "Group",
    figsize: Tuple[int, int] = (10, 8),
) -> Optional[Figure]:
    """
    PCA of samples on proteins detected in every sample.

    Returns None when no protein is complete across samples.
    """
    check_alignment(matrix, metadata)

    complete_data = matrix.dropna()
    if len(complete_data) < 2:
        print("No complete data available for PCA")
        return None

    scaled_data = StandardScaler().fit_transform(complete_data.T)
    pca = PCA(n_components=2)
    pca_result = pca.fit_transform(scaled_data)

    groups = metadata[group_column].astype(str)
    palette = _group_palette(metadata[group_column])

    fig, ax = plt.subplots(figsize=figsize)
    for group, color in palette.items():
        idx = np.flatnonzero(groups.to_numpy() == group)
        if len(idx) == 0:
            continue
        ax.scatter(
            pca_result[idx, 0], pca_result[idx, 1],
            color=color, label=group, alpha=0.8, s=100,
            edgecolors="black", linewidth=0.5,
        )

    ax.set_xlabel(f"PC1 ({pca.explained_variance_ratio_[0]:.1%} variance)")
    ax.set_ylabel(f"PC2 ({pca.explained_variance_ratio_[1]:.1%} variance)")
    ax.set_title("Principal Component Analysis")
    ax.legend()
    ax.grid(True, alpha=0.3)
    plt.tight_layout()

    print(f"PCA on {len(complete_data)} complete proteins: "
          f"PC1 {pca.explained_variance_ratio_[0]:.1%}, PC2 {pca.explained_variance_ratio_[1]:.1%}")
    return fig


def plot_missingness_summary(
    record: pd.DataFrame,
    figsize: Tuple[int, int] = (12, 5),
) -> Figure:
    """
    Two panels: histogram of largest_dif colored by MAR/MNAR, and the
    mean percent detected per group split by classification.
    """
    fig, (ax_hist, ax_bar) = plt.subplots(1, 2, figsize=figsize)

    bins = np.linspace(0, 100, 21)
    ax_hist.hist(record.loc[record["MAR"], "largest_dif"], bins=bins, alpha=0.7, label="MAR", color="#377eb8")
    ax_hist.hist(record.loc[~record["MAR"], "largest_dif"], bins=bins, alpha=0.7, label="MNAR", color="#e41a1c")
    ax_hist.set_xlabel("Largest difference in % detected between groups")
    ax_hist.set_ylabel("Proteins")
    ax_hist.legend()

    percents = detection_percentages(record)
    by_class = percents.groupby(record["MAR"].map({True: "MAR", False: "MNAR"})).mean().T
    by_class.plot(kind="bar", ax=ax_bar, color=[c for k, c in (("MAR", "#377eb8"), ("MNAR", "#e41a1c")) if k in by_class.columns])
    ax_bar.set_ylabel("Mean % detected")
    ax_bar.set_ylim(0, 100)
    ax_bar.tick_params(axis="x", rotation=45)

    kept = int(record["keep"].sum())
    fig.suptitle(f"Missingness classification ({kept}/{len(record)} proteins kept)", fontweight="bold")
    plt.tight_layout()
    return fig


def plot_volcano(
    result: pd.DataFrame,
    config: Optional[StatisticalConfig] = None,
    annotation: Optional[pd.DataFrame] = None,
    title: Optional[str] = None,
    label_top_n: int = 10,
    figsize: Tuple[int, int] = (12, 8),
) -> Figure:
    """
    Volcano plot for one contrast table.

    Parameters:
    -----------
    result : pd.DataFrame
        Contrast table from run_differential_analysis()
    config : StatisticalConfig, optional
        Supplies the p-value column and thresholds
    annotation : pd.DataFrame, optional
        Protein annotation with a ``Gene`` column used for labels
    title : str, optional
        Plot title
    label_top_n : int
        Number of top significant proteins to label
    """
    if config is None:
        config = StatisticalConfig()

    df = result.dropna(subset=["logFC", config.p_value_column]).copy()
    p_col = config.p_value_column
    p_label = "FDR" if p_col == "adj.P.Val" else "P-value"
    fc = config.log2_fold_change_threshold

    df["neg_log10_p"] = -np.log10(df[p_col].clip(lower=np.finfo(float).tiny))
    significant = df["Significant"].astype(bool)
    df["category"] = np.where(
        significant & (df["logFC"] > 0), "Increased",
        np.where(significant & (df["logFC"] < 0), "Decreased", "Not significant"),
    )

    colors = {"Not significant": "gray", "Decreased": "blue", "Increased": "red"}
    fig, ax = plt.subplots(figsize=figsize)
    for category, color in colors.items():
        subset = df[df["category"] == category]
        if len(subset):
            ax.scatter(subset["logFC"], subset["neg_log10_p"], c=color, alpha=0.6, s=30, label=category)

    ax.axhline(y=-np.log10(config.p_value_threshold), color="black", linestyle="--", alpha=0.5)
    if fc > 0:
        ax.axvline(x=fc, color="black", linestyle="--", alpha=0.5)
        ax.axvline(x=-fc, color="black", linestyle="--", alpha=0.5)

    if label_top_n > 0:
        top = df[significant].nsmallest(label_top_n, p_col)
        for protein, row in top.iterrows():
            label = protein
            if annotation is not None and protein in annotation.index and pd.notna(annotation.at[protein, "Gene"]):
                label = annotation.at[protein, "Gene"]
            ax.annotate(label, (row["logFC"], row["neg_log10_p"]), xytext=(5, 5),
                        textcoords="offset points", fontsize=8, alpha=0.7)

    ax.set_xlabel("Log2 Fold Change", fontsize=16, fontweight="bold")
    ax.set_ylabel(f"-Log10 {p_label}", fontsize=16, fontweight="bold")
    ax.set_title(title or f"Volcano Plot ({p_label} < {config.p_value_threshold})")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    ax.grid(True, alpha=0.3)
    ax.legend(loc="upper right", frameon=True, fontsize=11)
    plt.tight_layout()

    print(f"Volcano plot: {len(df)} proteins, "
          f"{int((df['category'] == 'Increased').sum())} increased, "
          f"{int((df['category'] == 'Decreased').sum())} decreased")
    return fig
