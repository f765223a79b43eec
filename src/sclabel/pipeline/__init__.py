"""Single-cell analysis pipeline for sclabel.

Processes 10x scRNA-seq samples through:

1. Loading - 10x matrices with sample metadata
2. Quality control and doublet removal
3. Normalization, HVG selection and PCA
4. Harmony batch integration
5. Leiden clustering and UMAP
6. Marker genes per cluster
7. Annotation - reference-based cell type labeling (CellTypist, SingleR)
8. Harmonization - cluster majority vote over the predicted labels

Each step turns one immutable AnalysisSnapshot into the next.
Annotators are swappable via registry.

Example:
    ```python
    from sclabel.config import AnalysisConfig
    from sclabel.pipeline import AnalysisPipeline

    config = AnalysisConfig.from_json("analysis.json")
    run = AnalysisPipeline(config).run()
    print(run.summary)
    ```
"""

from sclabel.pipeline.base import (
    AnnotationResult,
    AnnotatorProtocol,
    PipelineStep,
    build_annotations_df,
    require_snapshot,
)
from sclabel.pipeline.registry import (
    get_annotator,
    get_annotator_class,
    list_annotators,
    register_annotator,
    unregister_annotator,
)

# Importing the components registers the annotators
from sclabel.pipeline.components import annotators  # noqa: F401
from sclabel.pipeline.controller import AnalysisPipeline, PipelineRun

__all__ = [
    # Base
    "AnnotationResult",
    "AnnotatorProtocol",
    "PipelineStep",
    "build_annotations_df",
    "require_snapshot",
    # Registry
    "get_annotator",
    "get_annotator_class",
    "list_annotators",
    "register_annotator",
    "unregister_annotator",
    # Controller
    "AnalysisPipeline",
    "PipelineRun",
]
