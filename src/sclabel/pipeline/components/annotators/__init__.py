"""Cell type annotation components.

Available annotators:
- CellTypistAnnotator: Logistic regression models from CellTypist
- SingleRAnnotator: Correlation-based SingleR via rpy2 (optional R dependency)

Usage:
    from sclabel.pipeline import get_annotator

    annotator = get_annotator("celltypist", config)
    result = annotator.annotate(adata.raw.to_adata())
"""

from sclabel.pipeline.components.annotators.celltypist import CellTypistAnnotator
from sclabel.pipeline.components.annotators.singler import (
    SINGLER_REFERENCES,
    SingleRAnnotator,
    is_singler_available,
)

__all__ = [
    "CellTypistAnnotator",
    "SingleRAnnotator",
    "SINGLER_REFERENCES",
    "is_singler_available",
]
