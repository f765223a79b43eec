"""Doublet Detection Pipeline Step.

Step 3 (optional): Score doublets with Scrublet, per sample, and drop the
predicted doublets.
"""

from __future__ import annotations

import anndata as ad
import scanpy as sc
from loguru import logger

from sclabel.config import QCConfig
from sclabel.pipeline.base import PipelineStep, require_snapshot
from sclabel.snapshot import SAMPLE_KEY, AnalysisSnapshot, Stage


def detect_doublets(
    adata: ad.AnnData,
    batch_key: str | None = SAMPLE_KEY,
    random_state: int = 0,
) -> None:
    """Run Scrublet in place, adding doublet_score and predicted_doublet to obs."""
    if batch_key is not None and adata.obs[batch_key].nunique() < 2:
        batch_key = None

    sc.pp.scrublet(adata, batch_key=batch_key, random_state=random_state)

    n_doublets = int(adata.obs["predicted_doublet"].sum())
    adata.uns["doublet_stats"] = {
        "n_doublets": n_doublets,
        "n_singlets": adata.n_obs - n_doublets,
        "doublet_rate": n_doublets / adata.n_obs if adata.n_obs else 0.0,
    }
    logger.info(
        f"Scrublet flagged {n_doublets:,} doublets "
        f"({adata.uns['doublet_stats']['doublet_rate']:.1%})"
    )


def remove_doublets(adata: ad.AnnData) -> ad.AnnData:
    """Remove cells predicted as doublets."""
    keep = ~adata.obs["predicted_doublet"].astype(bool).to_numpy()
    return adata[keep].copy()


class DoubletStep(PipelineStep):
    """Score and optionally remove doublets."""

    name = "doublets"
    description = "Scrublet doublet detection"
    produces = Stage.DOUBLETS

    def __init__(self, config: QCConfig | None = None, random_state: int = 0):
        self.config = config or QCConfig()
        self.random_state = random_state

    def validate_inputs(self, snapshot: AnalysisSnapshot | None) -> bool:
        require_snapshot(self, snapshot, obs=(SAMPLE_KEY,))
        return True

    def execute(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        if not self.config.detect_doublets:
            logger.info("Doublet detection disabled, skipping")
            return snapshot

        adata = snapshot.working_copy()
        detect_doublets(adata, batch_key=SAMPLE_KEY, random_state=self.random_state)

        if self.config.remove_doublets:
            n_before = adata.n_obs
            adata = remove_doublets(adata)
            logger.info(f"Removed {n_before - adata.n_obs:,} doublets")

        return snapshot.advance(
            Stage.DOUBLETS,
            adata,
            removed=self.config.remove_doublets,
            random_state=self.random_state,
        )
