"""Quality Control Pipeline Step.

Step 2: Compute per-cell QC metrics and filter cells and genes.

Cells are kept when they detect between min_genes and max_genes genes,
have at least min_counts UMIs and less than max_pct_mt percent
mitochondrial counts. Genes seen in fewer than min_cells cells are dropped.
"""

from __future__ import annotations

import anndata as ad
import scanpy as sc
from loguru import logger

from sclabel.config import QCConfig
from sclabel.pipeline.base import PipelineStep, require_snapshot
from sclabel.snapshot import AnalysisSnapshot, Stage


def compute_qc_metrics(adata: ad.AnnData, mt_prefix: str = "MT-") -> None:
    """Flag mitochondrial genes and add QC metrics to obs (in place)."""
    adata.var["mt"] = adata.var_names.str.upper().str.startswith(mt_prefix.upper())
    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt"],
        percent_top=None,
        log1p=False,
        inplace=True,
    )
    logger.debug(f"{int(adata.var['mt'].sum())} mitochondrial genes (prefix '{mt_prefix}')")


def filter_cells_and_genes(adata: ad.AnnData, config: QCConfig) -> ad.AnnData:
    """Filter cells by QC metrics and genes by minimum cell count.

    Returns the filtered AnnData (subset copy); QC statistics are stored
    in ``uns["qc_stats"]``.
    """
    n_before_cells = adata.n_obs
    n_before_genes = adata.n_vars

    sc.pp.filter_genes(adata, min_cells=config.min_cells)

    # One boolean mask for all cell filters, applied once
    mask = adata.obs["n_genes_by_counts"] >= config.min_genes
    mask &= adata.obs["n_genes_by_counts"] <= config.max_genes
    mask &= adata.obs["total_counts"] >= config.min_counts
    mask &= adata.obs["pct_counts_mt"] < config.max_pct_mt
    adata = adata[mask.to_numpy(), :].copy()

    if adata.n_obs == 0:
        raise ValueError("No cells passed quality control; check the QC thresholds")

    adata.uns["qc_stats"] = {
        "cells_before": n_before_cells,
        "cells_after": adata.n_obs,
        "cells_removed": n_before_cells - adata.n_obs,
        "genes_before": n_before_genes,
        "genes_after": adata.n_vars,
        "genes_removed": n_before_genes - adata.n_vars,
    }

    logger.info(
        f"QC kept {adata.n_obs:,}/{n_before_cells:,} cells and "
        f"{adata.n_vars:,}/{n_before_genes:,} genes"
    )
    return adata


class QualityControlStep(PipelineStep):
    """Compute QC metrics and filter low-quality cells and rare genes."""

    name = "quality_control"
    description = "QC metrics and filtering"
    produces = Stage.QC

    def __init__(self, config: QCConfig | None = None):
        self.config = config or QCConfig()

    def validate_inputs(self, snapshot: AnalysisSnapshot | None) -> bool:
        require_snapshot(self, snapshot)
        return True

    def execute(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        cfg = self.config
        adata = snapshot.working_copy()

        compute_qc_metrics(adata, cfg.mt_prefix)
        adata = filter_cells_and_genes(adata, cfg)

        return snapshot.advance(Stage.QC, adata, **cfg.model_dump(mode="json"))
