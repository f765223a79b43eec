"""Label Harmonization Pipeline Step.

Step 10: Replace per-cell predictions by the majority label of each Leiden
cluster (see ``sclabel.harmonization``).
"""

from __future__ import annotations

from loguru import logger

from sclabel.config import HarmonizationConfig
from sclabel.harmonization import NO_CALL, HarmonizationResult, harmonize_obs
from sclabel.pipeline.base import PipelineStep, require_snapshot
from sclabel.snapshot import (
    CLUSTER_KEY,
    HARMONIZED_KEY,
    PREDICTION_KEY,
    AnalysisSnapshot,
    Stage,
)


class HarmonizationStep(PipelineStep):
    """Cluster majority vote over the predicted labels.

    The HarmonizationResult of the latest run is kept in ``last_result``.
    """

    name = "harmonization"
    description = "Cluster majority vote"
    produces = Stage.HARMONIZED

    def __init__(
        self,
        config: HarmonizationConfig | None = None,
        no_call: str = NO_CALL,
    ):
        self.config = config or HarmonizationConfig()
        self.no_call = no_call
        self.last_result: HarmonizationResult | None = None

    def validate_inputs(self, snapshot: AnalysisSnapshot | None) -> bool:
        require_snapshot(self, snapshot, obs=(PREDICTION_KEY, CLUSTER_KEY))
        return True

    def execute(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        if not self.config.enabled:
            logger.info("Harmonization disabled, skipping")
            return snapshot

        adata, result = harmonize_obs(
            snapshot.adata,
            prediction_key=PREDICTION_KEY,
            cluster_key=CLUSTER_KEY,
            key_added=HARMONIZED_KEY,
            no_call=self.no_call,
            policy=self.config.no_call_policy,
        )
        self.last_result = result

        for cluster, label in result.cluster_to_label.items():
            logger.debug(f"  cluster {cluster} -> {label}")

        return snapshot.advance(
            Stage.HARMONIZED,
            adata,
            no_call=self.no_call,
            no_call_policy=result.policy.value,
            n_clusters=result.n_clusters,
            n_labels=len(result.labels),
        )
