"""Pipeline step implementations.

Steps in execution order:
1. LoadSamplesStep: 10x samples -> merged AnnData
2. QualityControlStep: QC metrics and filtering
3. DoubletStep: Scrublet doublet detection
4. NormalizationStep: normalize_total + log1p
5. DimensionalityReductionStep: HVG + scale + PCA
6. IntegrationStep: Harmony batch correction
7. ClusteringStep: kNN graph + Leiden + UMAP
8. MarkerStep: rank_genes_groups per cluster
9. AnnotationStep: CellTypist / SingleR predictions
10. HarmonizationStep: cluster majority vote
"""

from sclabel.pipeline.steps.annotation import AnnotationStep, apply_annotations
from sclabel.pipeline.steps.clustering import ClusteringStep, resolution_key
from sclabel.pipeline.steps.doublets import DoubletStep
from sclabel.pipeline.steps.harmonization import HarmonizationStep
from sclabel.pipeline.steps.integration import IntegrationStep
from sclabel.pipeline.steps.loading import LoadSamplesStep, merge_samples, read_sample
from sclabel.pipeline.steps.markers import MarkerStep, filter_markers, marker_table
from sclabel.pipeline.steps.normalization import DimensionalityReductionStep, NormalizationStep
from sclabel.pipeline.steps.qc import QualityControlStep

__all__ = [
    "LoadSamplesStep",
    "QualityControlStep",
    "DoubletStep",
    "NormalizationStep",
    "DimensionalityReductionStep",
    "IntegrationStep",
    "ClusteringStep",
    "MarkerStep",
    "AnnotationStep",
    "HarmonizationStep",
    # Helpers
    "apply_annotations",
    "filter_markers",
    "marker_table",
    "merge_samples",
    "read_sample",
    "resolution_key",
]
