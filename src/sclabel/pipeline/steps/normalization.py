"""Normalization and Dimensionality Reduction Pipeline Steps.

Step 4: Library-size normalization and log transform. Raw counts go to
``layers["counts"]`` and the log-normalized matrix over all genes is frozen
in ``.raw`` for marker testing and reference annotation.

Step 5: Highly variable gene selection, scaling and PCA.
"""

from __future__ import annotations

import anndata as ad
import scanpy as sc
from loguru import logger

from sclabel.config import IntegrationConfig, NormalizationConfig
from sclabel.pipeline.base import PipelineStep, require_snapshot
from sclabel.snapshot import AnalysisSnapshot, Stage


def normalize(adata: ad.AnnData, target_sum: float = 1e4) -> None:
    """Normalize to target_sum counts per cell and log1p (in place)."""
    adata.layers["counts"] = adata.X.copy()
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    adata.raw = adata


def reduce_dimensions(
    adata: ad.AnnData,
    config: NormalizationConfig,
    batch_key: str | None = None,
) -> ad.AnnData:
    """Select HVGs, scale and run PCA.

    Returns a new AnnData restricted to the highly variable genes.
    """
    if batch_key is not None and adata.obs[batch_key].nunique() < 2:
        batch_key = None

    n_top_genes = min(config.n_top_genes, adata.n_vars)
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, batch_key=batch_key)
    adata = adata[:, adata.var["highly_variable"].to_numpy()].copy()
    logger.info(
        f"Selected {adata.n_vars:,} highly variable genes"
        + (f" (batch-aware over '{batch_key}')" if batch_key else "")
    )

    sc.pp.scale(adata, max_value=config.scale_max_value)

    n_comps = min(config.n_comps, adata.n_vars - 1, adata.n_obs - 1)
    sc.tl.pca(adata, n_comps=n_comps, svd_solver="arpack")
    variance = adata.uns["pca"]["variance_ratio"]
    logger.info(f"PCA: {n_comps} components explain {variance.sum():.1%} of variance")
    return adata


class NormalizationStep(PipelineStep):
    """Normalize counts and keep the log-normalized matrix in .raw."""

    name = "normalization"
    description = "normalize_total + log1p"
    produces = Stage.NORMALIZED

    def __init__(self, config: NormalizationConfig | None = None):
        self.config = config or NormalizationConfig()

    def validate_inputs(self, snapshot: AnalysisSnapshot | None) -> bool:
        require_snapshot(self, snapshot, obs=("total_counts",))
        if "counts" in snapshot.adata.layers:
            raise ValueError("Snapshot is already normalized")
        return True

    def execute(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        adata = snapshot.working_copy()
        normalize(adata, self.config.target_sum)
        logger.info(f"Normalized {adata.n_obs:,} cells to {self.config.target_sum:g} counts")
        return snapshot.advance(Stage.NORMALIZED, adata, target_sum=self.config.target_sum)


class DimensionalityReductionStep(PipelineStep):
    """HVG selection, scaling and PCA."""

    name = "dimensionality_reduction"
    description = "HVG + scale + PCA"
    produces = Stage.REDUCED

    def __init__(
        self,
        config: NormalizationConfig | None = None,
        integration: IntegrationConfig | None = None,
    ):
        self.config = config or NormalizationConfig()
        self.integration = integration or IntegrationConfig()

    def validate_inputs(self, snapshot: AnalysisSnapshot | None) -> bool:
        require_snapshot(self, snapshot)
        if not snapshot.has(Stage.NORMALIZED):
            raise ValueError("Dimensionality reduction requires a normalized snapshot")
        return True

    def execute(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        cfg = self.config
        batch_key = self.integration.batch_key if cfg.batch_aware_hvg else None
        adata = reduce_dimensions(snapshot.working_copy(), cfg, batch_key=batch_key)
        return snapshot.advance(
            Stage.REDUCED,
            adata,
            n_top_genes=adata.n_vars,
            n_comps=adata.obsm["X_pca"].shape[1],
        )
