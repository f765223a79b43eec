"""SingleR-based cell type annotation component.

This module wraps SingleR (R-based reference annotation) via rpy2,
providing a pipeline-compatible interface with standard AnnotationResult output.

SingleR scores each cell by Spearman correlation against labelled bulk
references from celldex, then prunes ambiguous calls; pruned cells
(NA in ``pruned.labels``) become the no-call label.

Requires R with SingleR and celldex packages installed:
    R -e 'BiocManager::install(c("SingleR", "celldex"))'
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import numpy as np
from loguru import logger

from sclabel.config import AnnotationConfig
from sclabel.pipeline.base import AnnotationResult, build_annotations_df
from sclabel.pipeline.registry import register_annotator

if TYPE_CHECKING:
    import anndata as ad


# Available SingleR reference datasets
SINGLER_REFERENCES = {
    "blueprint": "BlueprintEncodeData",
    "hpca": "HumanPrimaryCellAtlasData",
    "monaco": "MonacoImmuneData",  # Detailed immune subtypes
    "novershtern": "NovershternHematopoieticData",
}


def is_singler_available() -> bool:
    """Check if rpy2 and SingleR R packages are available."""
    try:
        from rpy2.robjects.packages import importr

        importr("SingleR")
        importr("celldex")
        return True
    except Exception as e:
        logger.debug(f"SingleR not available: {e}")
        return False


def expression_values(expr: Any, columns: list[int]) -> np.ndarray:
    """Flatten the selected genes for R's ``matrix(nrow=genes, ncol=cells)``.

    R fills matrices column by column, so the genes x cells matrix is the
    row-major (C order) flattening of the cells x genes subset.
    """
    subset = expr[:, columns]
    if hasattr(subset, "toarray"):
        subset = subset.toarray()
    return np.asarray(subset, dtype=float).ravel()


def singler_calls(
    pruned: Iterable[str], scores: Any
) -> tuple[list[str | None], np.ndarray]:
    """Turn SingleR output into labels and confidences.

    Pruned cells arrive as empty strings and become None. The confidence
    is the best correlation score of a cell rescaled from [-1, 1] to [0, 1].
    """
    labels = [label if label else None for label in pruned]
    scores = np.asarray(scores, dtype=float)
    confidences = scores if scores.ndim == 1 else scores.max(axis=1)
    return labels, (confidences + 1) / 2


@register_annotator
class SingleRAnnotator:
    """Cell type annotation using SingleR via rpy2.

    Labels come from ``label.main`` of the chosen celldex reference; the
    confidence is the best correlation score rescaled to [0, 1].
    """

    name = "singler"

    def __init__(self, config: AnnotationConfig | None = None):
        """Initialize the SingleR annotator.

        Args:
            config: Annotation configuration. If None, uses defaults.
        """
        self.config = config or AnnotationConfig()

    def annotate(
        self,
        adata: "ad.AnnData",
        config: AnnotationConfig | None = None,
    ) -> AnnotationResult:
        """Annotate cells with type labels using SingleR.

        Args:
            adata: Log-normalized expression over all genes
            config: Override config for this call

        Returns:
            Annotation results with cell types and confidence
        """
        cfg = config or self.config

        if not is_singler_available():
            raise RuntimeError(
                "SingleR not available. Requires rpy2 and R with SingleR and celldex. "
                "Install with: R -e 'BiocManager::install(c(\"SingleR\", \"celldex\"))'"
            )

        labels, confidences = self._run_singler(adata, cfg.singler_reference)

        annotations_df = build_annotations_df(
            cell_ids=list(adata.obs_names),
            labels=labels,
            confidences=confidences.tolist(),
            no_call=cfg.no_call_label,
        )
        result = AnnotationResult(
            annotations_df=annotations_df,
            stats={
                "method": self.name,
                "reference": cfg.singler_reference,
                "n_annotated": annotations_df.height,
            },
        )
        result.stats["n_no_call"] = result.n_no_call

        logger.info(
            f"SingleR annotation complete: {result.n_annotated:,} cells, "
            f"{result.n_no_call:,} pruned"
        )
        return result

    def _run_singler(
        self, adata: "ad.AnnData", reference: str
    ) -> tuple[list[str | None], np.ndarray]:
        """Run SingleR annotation via rpy2.

        Args:
            adata: Log-normalized AnnData
            reference: Key of SINGLER_REFERENCES

        Returns:
            Tuple of (pruned labels with None for pruned cells, confidences)
        """
        import rpy2.robjects as ro
        from rpy2.robjects.packages import importr

        if reference not in SINGLER_REFERENCES:
            raise ValueError(
                f"Unknown SingleR reference '{reference}'. "
                f"Available: {', '.join(SINGLER_REFERENCES)}"
            )

        singler = importr("SingleR")
        celldex = importr("celldex")

        ref_func_name = SINGLER_REFERENCES[reference]
        logger.info(f"Loading reference: {ref_func_name}")
        ref_data = getattr(celldex, ref_func_name)()

        genes = list(adata.var_names)

        ref_genes = set(ro.r.rownames(ref_data))
        common_genes = [g for g in genes if g in ref_genes]
        logger.info(
            f"Common genes: {len(common_genes)} / {len(genes)} "
            f"({100 * len(common_genes) / max(len(genes), 1):.1f}%)"
        )
        if len(common_genes) < 50:
            logger.warning(
                f"Low gene overlap ({len(common_genes)} genes). Results may be unreliable."
            )

        gene_index = {g: i for i, g in enumerate(genes)}
        columns = [gene_index[g] for g in common_genes]

        # genes as rows, cells as columns
        cell_names = [str(cid) for cid in adata.obs_names]
        dimnames = ro.r.list(ro.StrVector(common_genes), ro.StrVector(cell_names))
        expr_subset = ro.r.matrix(
            ro.FloatVector(expression_values(adata.X, columns)),
            nrow=len(common_genes),
            ncol=adata.n_obs,
            dimnames=dimnames,
        )
        ref_subset = ro.r["["](ref_data, ro.StrVector(common_genes), True)
        ref_labels = ro.r("function(x) x$label.main")(ref_data)

        logger.info("Running SingleR prediction...")
        results = singler.SingleR(
            test=expr_subset,
            ref=ref_subset,
            labels=ref_labels,
            de_method="classic",
        )

        pruned = ro.r(
            "function(x) ifelse(is.na(x$pruned.labels), '', x$pruned.labels)"
        )(results)
        scores = ro.r("function(x) x$scores")(results)
        return singler_calls(pruned, scores)
