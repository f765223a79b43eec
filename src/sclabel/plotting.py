"""Figures for snapshots and harmonization results.

Plot functions only read their inputs and return a matplotlib Figure;
pass ``save_path`` to also write it to disk.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd
from loguru import logger

from sclabel.harmonization import HarmonizationResult
from sclabel.snapshot import AnalysisSnapshot

if TYPE_CHECKING:
    from matplotlib.figure import Figure


def _embedding_values(snapshot: AnalysisSnapshot, color: str) -> pd.Series:
    """Values to color by: an obs column or a gene's expression."""
    adata = snapshot.adata
    if color in adata.obs.columns:
        return adata.obs[color]

    source = adata.raw if adata.raw is not None else adata
    if color in source.var_names:
        column = source[:, color].X
        if hasattr(column, "toarray"):
            column = column.toarray()
        return pd.Series(np.asarray(column).ravel(), index=adata.obs_names, name=color)

    raise KeyError(f"'{color}' is neither an obs column nor a gene")


def plot_embedding(
    snapshot: AnalysisSnapshot,
    color: str,
    basis: str = "umap",
    save_path: str | Path | None = None,
    figsize: tuple[int, int] = (7, 6),
    point_size: float = 4.0,
) -> "Figure":
    """Scatter plot of a 2-D embedding colored by an obs column or gene.

    Args:
        snapshot: Snapshot holding ``obsm["X_<basis>"]``
        color: obs column (categorical or numeric) or gene name
        basis: Embedding name, e.g. "umap" or "pca"
        save_path: Optional path to save figure
        figsize: Figure size
        point_size: Marker size

    Returns:
        The matplotlib Figure
    """
    import matplotlib.pyplot as plt

    key = f"X_{basis}"
    if key not in snapshot.adata.obsm:
        raise KeyError(f"Embedding '{key}' not found (stage: {snapshot.stage.value})")
    coords = np.asarray(snapshot.adata.obsm[key])[:, :2]
    values = _embedding_values(snapshot, color)

    fig, ax = plt.subplots(figsize=figsize)
    if isinstance(values.dtype, pd.CategoricalDtype) or values.dtype == object:
        categories = pd.Categorical(values.astype(str))
        palette = plt.get_cmap("tab20")
        for i, category in enumerate(categories.categories):
            mask = np.asarray(categories == category)
            ax.scatter(
                coords[mask, 0],
                coords[mask, 1],
                s=point_size,
                color=palette(i % palette.N),
                label=category,
                rasterized=True,
            )
        ax.legend(
            loc="center left",
            bbox_to_anchor=(1.0, 0.5),
            frameon=False,
            markerscale=3,
            fontsize="small",
        )
    else:
        points = ax.scatter(
            coords[:, 0],
            coords[:, 1],
            c=values.to_numpy(dtype=float),
            s=point_size,
            cmap="viridis",
            rasterized=True,
        )
        fig.colorbar(points, ax=ax, label=color)

    ax.set_title(color)
    ax.set_xlabel(f"{basis.upper()}1")
    ax.set_ylabel(f"{basis.upper()}2")
    ax.set_xticks([])
    ax.set_yticks([])
    fig.tight_layout()

    if save_path is not None:
        fig.savefig(save_path, dpi=150, bbox_inches="tight")
        logger.info(f"Saved {basis} plot of '{color}' to {save_path}")
    return fig


def contingency_matrix(result: HarmonizationResult, normalize: bool = True) -> pd.DataFrame:
    """Wide cluster x label matrix of the contingency table.

    Rows follow the cluster order of the vote; with normalize, each row
    sums to 1.
    """
    counts = result.contingency.to_pandas()
    matrix = counts.pivot_table(
        index="cluster",
        columns="label",
        values="n_cells",
        aggfunc="sum",
        fill_value=0,
    )
    matrix = matrix.reindex([str(c) for c in result.cluster_order], fill_value=0)
    if normalize:
        totals = matrix.sum(axis=1).replace(0, 1)
        matrix = matrix.div(totals, axis=0)
    return matrix


def plot_label_contingency(
    result: HarmonizationResult,
    normalize: bool = True,
    save_path: str | Path | None = None,
    figsize: tuple[int, int] | None = None,
) -> "Figure":
    """Heatmap of predicted labels per cluster.

    Args:
        result: Harmonization result
        normalize: Show fractions of each cluster instead of counts
        save_path: Optional path to save figure
        figsize: Figure size (default scales with the table)

    Returns:
        The matplotlib Figure
    """
    import matplotlib.pyplot as plt
    import seaborn as sns

    matrix = contingency_matrix(result, normalize=normalize)
    if figsize is None:
        figsize = (max(6, 0.6 * matrix.shape[1] + 3), max(4, 0.4 * matrix.shape[0] + 2))

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(
        matrix,
        annot=matrix.size <= 400,
        fmt=".2f" if normalize else "d",
        cmap="Blues",
        cbar_kws={"label": "Fraction of cluster" if normalize else "Cells"},
        ax=ax,
    )
    ax.set_yticklabels(
        [
            f"{c} ({result.cluster_to_label[k]})"
            for c, k in zip(matrix.index, result.cluster_order)
        ],
        rotation=0,
    )
    ax.set_title("Predicted labels per cluster")
    ax.set_ylabel("Cluster (harmonized label)")
    ax.set_xlabel("Predicted label")
    fig.tight_layout()

    if save_path is not None:
        fig.savefig(save_path, dpi=150)
        logger.info(f"Saved label contingency heatmap to {save_path}")
    return fig
