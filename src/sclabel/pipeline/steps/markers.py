"""Marker Gene Pipeline Step.

Step 8: Differential expression of each Leiden cluster against the rest.

``rank_genes_groups`` runs on the log-normalized matrix in ``.raw`` (all
genes, not just the HVGs). The long-format result is exposed as a polars
table and filtered to the strongest markers per cluster.
"""

from __future__ import annotations

import anndata as ad
import polars as pl
import scanpy as sc
from loguru import logger

from sclabel.config import MarkerConfig
from sclabel.pipeline.base import PipelineStep, require_snapshot
from sclabel.snapshot import CLUSTER_KEY, AnalysisSnapshot, Stage


def marker_table(adata: ad.AnnData, key: str = "rank_genes_groups") -> pl.DataFrame:
    """Long-format marker table (group, names, scores, logfoldchanges, pvals, pvals_adj).

    Columns the DE method does not produce (logreg has no p-values) are
    absent from the result.
    """
    if key not in adata.uns:
        raise KeyError(f"No '{key}' in adata.uns; run rank_genes_groups first")
    df = sc.get.rank_genes_groups_df(adata, group=None, key=key)
    if "group" not in df.columns:
        # Single-group results come back without the group column
        group = adata.uns[key]["names"].dtype.names[0]
        df.insert(0, "group", group)
    df["group"] = df["group"].astype(str)
    return pl.from_pandas(df)


def filter_markers(
    markers: pl.DataFrame,
    min_logfc: float = 0.25,
    max_pval_adj: float = 0.05,
    top_n: int = 10,
) -> pl.DataFrame:
    """Keep significant, up-regulated markers, top_n per group by score."""
    filtered = markers
    if "logfoldchanges" in filtered.columns:
        filtered = filtered.filter(pl.col("logfoldchanges") >= min_logfc)
    if "pvals_adj" in filtered.columns:
        filtered = filtered.filter(pl.col("pvals_adj") <= max_pval_adj)

    return (
        filtered.sort(["group", "scores"], descending=[False, True])
        .group_by("group", maintain_order=True)
        .head(top_n)
    )


class MarkerStep(PipelineStep):
    """Rank marker genes per cluster."""

    name = "markers"
    description = "rank_genes_groups per Leiden cluster"
    produces = Stage.MARKERS

    def __init__(self, config: MarkerConfig | None = None, groupby: str = CLUSTER_KEY):
        self.config = config or MarkerConfig()
        self.groupby = groupby

    def validate_inputs(self, snapshot: AnalysisSnapshot | None) -> bool:
        require_snapshot(self, snapshot, obs=(self.groupby,))
        n_groups = snapshot.adata.obs[self.groupby].nunique()
        if n_groups < 2:
            raise ValueError(
                f"Marker detection needs at least 2 groups in '{self.groupby}', found {n_groups}"
            )
        return True

    def execute(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        cfg = self.config
        adata = snapshot.working_copy()

        logger.info(f"Ranking marker genes per '{self.groupby}' ({cfg.method.value})...")
        sc.tl.rank_genes_groups(
            adata,
            groupby=self.groupby,
            method=cfg.method.value,
            n_genes=cfg.n_genes,
            use_raw=adata.raw is not None,
        )

        top = filter_markers(
            marker_table(adata),
            min_logfc=cfg.min_logfc,
            max_pval_adj=cfg.max_pval_adj,
            top_n=cfg.top_n,
        )
        logger.info(
            f"{top.height:,} markers pass filters across "
            f"{top.get_column('group').n_unique()} groups"
        )

        return snapshot.advance(
            Stage.MARKERS,
            adata,
            groupby=self.groupby,
            **cfg.model_dump(mode="json"),
        )
