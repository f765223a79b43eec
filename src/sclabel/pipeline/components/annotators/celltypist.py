"""CellTypist-based cell type annotation component.

Runs a CellTypist logistic regression model on log-normalized expression
and turns low-confidence predictions into the configured no-call label,
the same role SingleR's pruned labels play.

CellTypist expects log1p-normalized counts (10,000 per cell) over all
genes; pass ``adata.raw.to_adata()`` rather than the scaled HVG matrix.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
from loguru import logger

from sclabel.config import AnnotationConfig
from sclabel.pipeline.base import AnnotationResult, build_annotations_df
from sclabel.pipeline.registry import register_annotator

if TYPE_CHECKING:
    import anndata as ad


@register_annotator
class CellTypistAnnotator:
    """Cell type annotation using a CellTypist model.

    The prediction of a cell is the best-matching cell type; cells whose
    best probability is below ``confidence_threshold`` become no call.
    """

    name = "celltypist"

    def __init__(self, config: AnnotationConfig | None = None):
        """Initialize the CellTypist annotator.

        Args:
            config: Annotation configuration. If None, uses defaults.
        """
        self.config = config or AnnotationConfig()
        self._models: dict[str, Any] = {}

    def _load_model(self, model_name: str) -> Any:
        """Download (if needed) and load a CellTypist model."""
        if model_name not in self._models:
            from celltypist import models

            logger.info(f"Loading CellTypist model: {model_name}")
            models.download_models(model=model_name, force_update=False)
            self._models[model_name] = models.Model.load(model=model_name)
            logger.info(f"Model loaded with {len(self._models[model_name].cell_types)} cell types")
        return self._models[model_name]

    def annotate(
        self,
        adata: "ad.AnnData",
        config: AnnotationConfig | None = None,
    ) -> AnnotationResult:
        """Annotate cells with type labels using CellTypist.

        Args:
            adata: Log-normalized expression over all genes
            config: Override config for this call

        Returns:
            Annotation results with cell types and confidence
        """
        import celltypist

        cfg = config or self.config
        model = self._load_model(cfg.model)

        logger.info(f"Running CellTypist prediction with {cfg.model} on {adata.n_obs:,} cells...")
        predictions = celltypist.annotate(adata, model=model, mode="best match")

        prob_matrix = predictions.probability_matrix
        best = np.asarray(prob_matrix.values).argmax(axis=1)
        labels = [str(prob_matrix.columns[i]) for i in best]
        confidences = np.asarray(prob_matrix.values).max(axis=1).astype(float)

        annotations_df = build_annotations_df(
            cell_ids=list(adata.obs_names),
            labels=labels,
            confidences=confidences.tolist(),
            no_call=cfg.no_call_label,
            threshold=cfg.confidence_threshold,
        )

        result = AnnotationResult(
            annotations_df=annotations_df,
            stats={
                "method": self.name,
                "model": cfg.model,
                "confidence_threshold": cfg.confidence_threshold,
                "n_annotated": annotations_df.height,
            },
        )
        result.stats["n_no_call"] = result.n_no_call

        logger.info(
            f"CellTypist annotation complete: {result.n_annotated:,} cells, "
            f"{result.n_no_call:,} below confidence {cfg.confidence_threshold}"
        )
        return result
