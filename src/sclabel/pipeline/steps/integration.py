"""Batch Integration Pipeline Step.

Step 6: Harmony correction of the PCA embedding across samples.

Harmony adjusts ``obsm["X_pca"]`` iteratively so cells of different
batches mix while biological structure is preserved; the corrected
embedding is written to ``obsm["X_pca_harmony"]``. With a single batch
there is nothing to correct and the step passes the snapshot through.
"""

from __future__ import annotations

import scanpy as sc
from loguru import logger

from sclabel.config import IntegrationConfig
from sclabel.pipeline.base import PipelineStep, require_snapshot
from sclabel.snapshot import AnalysisSnapshot, Stage


class IntegrationStep(PipelineStep):
    """Harmony integration over ``batch_key``."""

    name = "integration"
    description = "Harmony batch correction"
    produces = Stage.INTEGRATED

    def __init__(self, config: IntegrationConfig | None = None):
        self.config = config or IntegrationConfig()

    def validate_inputs(self, snapshot: AnalysisSnapshot | None) -> bool:
        require_snapshot(self, snapshot, obs=(self.config.batch_key,), obsm=("X_pca",))
        return True

    def should_skip(self, snapshot: AnalysisSnapshot) -> str | None:
        """Return the reason to skip integration, or None to run it."""
        if not self.config.enabled:
            return "integration disabled"
        n_batches = snapshot.adata.obs[self.config.batch_key].nunique()
        if n_batches < 2:
            return f"single batch in '{self.config.batch_key}'"
        return None

    def execute(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        cfg = self.config
        reason = self.should_skip(snapshot)
        if reason is not None:
            logger.info(f"Skipping Harmony: {reason}")
            return snapshot

        adata = snapshot.working_copy()
        n_batches = adata.obs[cfg.batch_key].nunique()
        logger.info(f"Running Harmony over {n_batches} batches of '{cfg.batch_key}'...")
        sc.external.pp.harmony_integrate(
            adata,
            key=cfg.batch_key,
            basis="X_pca",
            adjusted_basis="X_pca_harmony",
            max_iter_harmony=cfg.max_iter_harmony,
        )

        return snapshot.advance(
            Stage.INTEGRATED,
            adata,
            batch_key=cfg.batch_key,
            n_batches=int(n_batches),
            max_iter_harmony=cfg.max_iter_harmony,
        )
