"""Base classes and protocols for the sclabel pipeline.

This module defines the core abstractions:
- PipelineStep: ABC for pipeline step implementations
- AnnotationResult: Annotator output
- AnnotatorProtocol: Interface of reference-based classifiers

Protocols are used for annotators to enable structural subtyping -
components just need to implement the required methods without
inheriting from a base class.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import polars as pl
from pydantic import BaseModel

from sclabel.config import AnnotationConfig
from sclabel.snapshot import AnalysisSnapshot, Stage

if TYPE_CHECKING:
    import anndata as ad


# =============================================================================
# Pipeline Step Base Class
# =============================================================================


class PipelineStep(ABC):
    """Abstract base class for pipeline steps.

    Each step is responsible for:
    1. Declaring its parameters (a pydantic config group)
    2. Validating the incoming snapshot
    3. Executing its logic on a working copy
    4. Returning a new snapshot

    Steps never modify the snapshot they receive.
    """

    name: str = "base_step"
    description: str = "Base pipeline step"

    # Stage this step produces
    produces: Stage | None = None

    config: BaseModel | None = None

    @abstractmethod
    def validate_inputs(self, snapshot: AnalysisSnapshot | None) -> bool:
        """Validate that required inputs are present.

        Returns True if valid, raises ValueError if not.
        """
        ...

    @abstractmethod
    def execute(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        """Execute the step logic.

        Args:
            snapshot: Snapshot produced by the previous step

        Returns:
            New snapshot (or the input unchanged when the step is skipped)
        """
        ...

    def __call__(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        self.validate_inputs(snapshot)
        return self.execute(snapshot)


def require_snapshot(
    step: PipelineStep,
    snapshot: AnalysisSnapshot | None,
    obs: tuple[str, ...] = (),
    obsm: tuple[str, ...] = (),
    uns: tuple[str, ...] = (),
) -> AnalysisSnapshot:
    """Check that a snapshot exists and carries the listed fields."""
    if snapshot is None:
        raise ValueError(f"Step '{step.name}' requires an input snapshot")

    adata = snapshot.adata
    missing = [f"obs['{c}']" for c in obs if c not in adata.obs.columns]
    missing += [f"obsm['{k}']" for k in obsm if k not in adata.obsm]
    missing += [f"uns['{k}']" for k in uns if k not in adata.uns]
    if missing:
        raise ValueError(
            f"Step '{step.name}' requires {', '.join(missing)} "
            f"(snapshot history: {' -> '.join(snapshot.history)})"
        )
    return snapshot


# =============================================================================
# Annotation Types
# =============================================================================


@dataclass
class AnnotationResult:
    """Output from cell type annotation.

    Contains per-cell predictions and run statistics.
    """

    # Annotations (cell_id, predicted_type, confidence, is_no_call)
    annotations_df: pl.DataFrame

    # Statistics
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def n_annotated(self) -> int:
        """Number of annotated cells."""
        return len(self.annotations_df)

    @property
    def n_no_call(self) -> int:
        """Number of cells the classifier abstained on."""
        return int(self.annotations_df.get_column("is_no_call").sum())


def build_annotations_df(
    cell_ids: list[str],
    labels: list[str | None],
    confidences: list[float],
    no_call: str,
    threshold: float = 0.0,
) -> pl.DataFrame:
    """Assemble the standard annotation table.

    Cells with a missing label or a confidence below threshold receive the
    no-call label.
    """
    df = pl.DataFrame(
        {
            "cell_id": [str(c) for c in cell_ids],
            "raw_type": labels,
            "confidence": confidences,
        },
        schema={"cell_id": pl.Utf8, "raw_type": pl.Utf8, "confidence": pl.Float64},
    )
    is_no_call = (
        pl.col("raw_type").is_null()
        | (pl.col("raw_type") == no_call)
        | (pl.col("confidence") < threshold)
    )
    return df.with_columns(is_no_call.alias("is_no_call")).with_columns(
        pl.when(pl.col("is_no_call"))
        .then(pl.lit(no_call))
        .otherwise(pl.col("raw_type"))
        .alias("predicted_type")
    ).select(["cell_id", "predicted_type", "raw_type", "confidence", "is_no_call"])


@runtime_checkable
class AnnotatorProtocol(Protocol):
    """Protocol for annotator implementations.

    Annotators assign cell type labels by comparison with a reference:
    - CellTypist: logistic regression models trained on curated atlases
    - SingleR: correlation against celldex bulk references
    """

    name: str

    def annotate(
        self,
        adata: "ad.AnnData",
        config: AnnotationConfig | None = None,
    ) -> AnnotationResult:
        """Annotate cells with type labels.

        Args:
            adata: Log-normalized expression over all genes
            config: Optional override of the annotator configuration

        Returns:
            Annotation results with one row per cell
        """
        ...
