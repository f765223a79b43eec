"""Immutable, versioned analysis snapshots.

Every pipeline step receives the previous snapshot and returns a new one
built from a copy of its AnnData. Earlier snapshots are never modified, so
any intermediate stage can be inspected or replayed.

Each stage has an enumerated schema (required obs columns, obsm embeddings
and uns entries) that is checked when a snapshot is created.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

import pandas as pd
from loguru import logger

if TYPE_CHECKING:
    import anndata as ad


# obs column names shared by steps and the harmonizer
SAMPLE_KEY = "sample_id"
PATIENT_KEY = "patient_id"
SORT_GATE_KEY = "sort_gate"
CLUSTER_KEY = "leiden"
PREDICTION_KEY = "predicted_label"
PREDICTION_SCORE_KEY = "prediction_score"
HARMONIZED_KEY = "harmonized_label"


class SchemaError(ValueError):
    """An AnnData object lacks fields required by its stage."""


class Stage(str, Enum):
    """Pipeline stages in execution order."""

    LOADED = "loaded"
    QC = "qc"
    DOUBLETS = "doublets"
    NORMALIZED = "normalized"
    REDUCED = "reduced"
    INTEGRATED = "integrated"
    CLUSTERED = "clustered"
    MARKERS = "markers"
    ANNOTATED = "annotated"
    HARMONIZED = "harmonized"


@dataclass(frozen=True)
class StageSchema:
    """Fields an AnnData must carry at a given stage."""

    obs: tuple[str, ...] = ()
    obsm: tuple[str, ...] = ()
    uns: tuple[str, ...] = ()

    def missing(self, adata: "ad.AnnData") -> list[str]:
        """Return the required fields absent from adata."""
        missing = [f"obs['{c}']" for c in self.obs if c not in adata.obs.columns]
        missing += [f"obsm['{k}']" for k in self.obsm if k not in adata.obsm]
        missing += [f"uns['{k}']" for k in self.uns if k not in adata.uns]
        return missing


_METADATA = (SAMPLE_KEY, PATIENT_KEY, SORT_GATE_KEY)
_QC_METRICS = ("n_genes_by_counts", "total_counts", "pct_counts_mt")

STAGE_SCHEMA: dict[Stage, StageSchema] = {
    Stage.LOADED: StageSchema(obs=_METADATA),
    Stage.QC: StageSchema(obs=_METADATA + _QC_METRICS),
    Stage.DOUBLETS: StageSchema(
        obs=_METADATA + _QC_METRICS + ("doublet_score", "predicted_doublet"),
    ),
    Stage.NORMALIZED: StageSchema(obs=_METADATA + _QC_METRICS),
    Stage.REDUCED: StageSchema(obs=_METADATA + _QC_METRICS, obsm=("X_pca",)),
    Stage.INTEGRATED: StageSchema(
        obs=_METADATA + _QC_METRICS,
        obsm=("X_pca", "X_pca_harmony"),
    ),
    Stage.CLUSTERED: StageSchema(
        obs=_METADATA + _QC_METRICS + (CLUSTER_KEY,),
        obsm=("X_pca", "X_umap"),
    ),
    Stage.MARKERS: StageSchema(
        obs=_METADATA + _QC_METRICS + (CLUSTER_KEY,),
        obsm=("X_pca", "X_umap"),
        uns=("rank_genes_groups",),
    ),
    Stage.ANNOTATED: StageSchema(
        obs=_METADATA + _QC_METRICS + (CLUSTER_KEY, PREDICTION_KEY, PREDICTION_SCORE_KEY),
        obsm=("X_pca", "X_umap"),
    ),
    Stage.HARMONIZED: StageSchema(
        obs=_METADATA
        + _QC_METRICS
        + (CLUSTER_KEY, PREDICTION_KEY, PREDICTION_SCORE_KEY, HARMONIZED_KEY),
        obsm=("X_pca", "X_umap"),
    ),
}


def validate_schema(stage: Stage, adata: "ad.AnnData") -> None:
    """Raise SchemaError if adata lacks any field required by stage."""
    missing = STAGE_SCHEMA[stage].missing(adata)
    if missing:
        raise SchemaError(f"Stage '{stage.value}' requires {', '.join(missing)}")


@dataclass(frozen=True)
class CellRecord:
    """Typed per-cell view of a snapshot."""

    barcode: str
    sample_id: str
    patient_id: str
    sort_gate: str
    n_genes_by_counts: int | None = None
    total_counts: float | None = None
    pct_counts_mt: float | None = None
    cluster: str | None = None
    predicted_label: str | None = None
    harmonized_label: str | None = None


def _optional(row: Mapping[str, Any], key: str, cast: Any) -> Any:
    value = row.get(key)
    if value is None or pd.isna(value):
        return None
    return cast(value)


@dataclass(frozen=True, eq=False)
class AnalysisSnapshot:
    """One immutable stage of an analysis.

    Attributes:
        stage: Stage that produced this snapshot
        adata: AnnData owned by this snapshot (do not modify in place)
        history: Stages applied so far, oldest first
        params: Per-stage parameters recorded by the producing steps
    """

    stage: Stage
    adata: "ad.AnnData"
    history: tuple[str, ...] = ()
    params: Mapping[str, Mapping[str, Any]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def __post_init__(self) -> None:
        validate_schema(self.stage, self.adata)

    @classmethod
    def initial(cls, adata: "ad.AnnData", **params: Any) -> "AnalysisSnapshot":
        """Wrap freshly loaded data as the first snapshot."""
        return cls(
            stage=Stage.LOADED,
            adata=adata,
            history=(Stage.LOADED.value,),
            params=MappingProxyType({Stage.LOADED.value: MappingProxyType(dict(params))}),
        )

    def working_copy(self) -> "ad.AnnData":
        """Return a copy of the AnnData for the next step to modify."""
        return self.adata.copy()

    def advance(self, stage: Stage, adata: "ad.AnnData", **params: Any) -> "AnalysisSnapshot":
        """Create the next snapshot from a modified copy.

        Args:
            stage: Stage produced
            adata: New AnnData (must not be this snapshot's object)
            **params: Parameters of the step, recorded for provenance

        Raises:
            ValueError: adata is this snapshot's own object
            SchemaError: adata lacks fields required by stage
        """
        if adata is self.adata:
            raise ValueError("advance() needs a new AnnData; use working_copy()")

        recorded = dict(self.params)
        recorded[stage.value] = MappingProxyType(dict(params))
        snapshot = AnalysisSnapshot(
            stage=stage,
            adata=adata,
            history=self.history + (stage.value,),
            params=MappingProxyType(recorded),
        )
        logger.debug(f"Snapshot {stage.value}: {adata.n_obs:,} cells x {adata.n_vars:,} genes")
        return snapshot

    @property
    def n_cells(self) -> int:
        return self.adata.n_obs

    @property
    def n_genes(self) -> int:
        return self.adata.n_vars

    def has(self, stage: Stage) -> bool:
        """Whether stage has been applied."""
        return stage.value in self.history

    def cell_records(self) -> list[CellRecord]:
        """Typed records for every cell."""
        obs = self.adata.obs
        records = []
        for barcode, row in zip(obs.index, obs.to_dict(orient="records")):
            records.append(
                CellRecord(
                    barcode=str(barcode),
                    sample_id=str(row[SAMPLE_KEY]),
                    patient_id=str(row[PATIENT_KEY]),
                    sort_gate=str(row[SORT_GATE_KEY]),
                    n_genes_by_counts=_optional(row, "n_genes_by_counts", int),
                    total_counts=_optional(row, "total_counts", float),
                    pct_counts_mt=_optional(row, "pct_counts_mt", float),
                    cluster=_optional(row, CLUSTER_KEY, str),
                    predicted_label=_optional(row, PREDICTION_KEY, str),
                    harmonized_label=_optional(row, HARMONIZED_KEY, str),
                )
            )
        return records
