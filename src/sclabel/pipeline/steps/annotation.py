"""Cell Type Annotation Pipeline Step.

Step 9: Per-cell reference-based classification.

The configured annotator (CellTypist or SingleR) runs on the
log-normalized expression of all genes kept in ``.raw``. Its per-cell
labels go to ``obs["predicted_label"]`` and confidences to
``obs["prediction_score"]``; cells the annotator abstained on carry the
no-call label.
"""

from __future__ import annotations

import anndata as ad
import pandas as pd
from loguru import logger

from sclabel.config import AnnotationConfig
from sclabel.pipeline.base import (
    AnnotationResult,
    AnnotatorProtocol,
    PipelineStep,
    require_snapshot,
)
from sclabel.pipeline.registry import get_annotator
from sclabel.snapshot import (
    CLUSTER_KEY,
    PREDICTION_KEY,
    PREDICTION_SCORE_KEY,
    AnalysisSnapshot,
    Stage,
)


def expression_for_annotation(adata: ad.AnnData) -> ad.AnnData:
    """Log-normalized matrix over all genes (``.raw`` when present)."""
    if adata.raw is not None:
        return adata.raw.to_adata()
    return adata


def apply_annotations(
    adata: ad.AnnData,
    result: AnnotationResult,
    no_call: str,
) -> int:
    """Write predictions into obs (in place).

    Returns:
        Number of cells the annotator returned nothing for; they are set to
        no_call with a score of 0.
    """
    df = result.annotations_df.select(["cell_id", "predicted_type", "confidence"]).to_pandas()
    df = df.drop_duplicates("cell_id").set_index("cell_id")
    df = df.reindex(adata.obs_names)

    n_missing = int(df["predicted_type"].isna().sum())
    labels = df["predicted_type"].fillna(no_call).astype(str)
    scores = df["confidence"].fillna(0.0).astype(float)

    adata.obs[PREDICTION_KEY] = pd.Categorical(labels.to_numpy())
    adata.obs[PREDICTION_SCORE_KEY] = scores.to_numpy()
    return n_missing


class AnnotationStep(PipelineStep):
    """Run the configured annotator and store per-cell predictions."""

    name = "annotation"
    description = "Reference-based cell type prediction"
    produces = Stage.ANNOTATED

    def __init__(
        self,
        config: AnnotationConfig | None = None,
        annotator: AnnotatorProtocol | None = None,
    ):
        self.config = config or AnnotationConfig()
        self._annotator = annotator

    @property
    def annotator(self) -> AnnotatorProtocol:
        """Annotator instance, created from the registry on first use."""
        if self._annotator is None:
            self._annotator = get_annotator(self.config.annotator.value, config=self.config)
        return self._annotator

    def validate_inputs(self, snapshot: AnalysisSnapshot | None) -> bool:
        require_snapshot(self, snapshot, obs=(CLUSTER_KEY,))
        return True

    def execute(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        cfg = self.config
        adata = snapshot.working_copy()

        logger.info(f"Annotating {adata.n_obs:,} cells with {self.annotator.name}")
        result = self.annotator.annotate(expression_for_annotation(adata), config=cfg)

        n_missing = apply_annotations(adata, result, cfg.no_call_label)
        if n_missing:
            logger.warning(
                f"{self.annotator.name} returned no prediction for {n_missing:,} cells; "
                f"labelled '{cfg.no_call_label}'"
            )

        distribution = adata.obs[PREDICTION_KEY].value_counts()
        adata.uns["annotation_stats"] = {
            "annotator": self.annotator.name,
            "n_no_call": int((adata.obs[PREDICTION_KEY] == cfg.no_call_label).sum()),
            "n_missing": n_missing,
            "n_types": int((distribution > 0).sum()),
        }
        logger.info(f"Predicted {adata.uns['annotation_stats']['n_types']} cell types")
        for label, count in distribution.head(10).items():
            logger.debug(f"  {label}: {count:,}")

        return snapshot.advance(
            Stage.ANNOTATED,
            adata,
            annotator=self.annotator.name,
            **cfg.model_dump(mode="json"),
        )
