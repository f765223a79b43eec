"""Analysis configuration for sclabel.

A single pydantic hierarchy holds every parameter of the analysis, grouped
the way the pipeline runs:

1. samples - 10x inputs with per-sample metadata
2. qc - cell/gene filtering and doublet detection
3. normalization - library-size normalization, HVG selection, PCA
4. integration - Harmony batch correction
5. clustering - neighbor graph, Leiden resolution sweep, UMAP
6. markers - differential expression and marker table filtering
7. annotation - reference-based classifier
8. harmonization - cluster majority vote
9. output - files written at the end of a run

Defaults follow common 10x PBMC practice
(200 genes minimum, 15% mitochondrial maximum, 2000 HVGs, 30 PCs).

Example:
    config = AnalysisConfig(
        samples=[SampleConfig(sample_id="S1", path="data/S1", patient_id="P1")],
        clustering=ClusteringConfig(resolution=0.8),
    )
    config.to_json("analysis.json")
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sclabel.harmonization import NO_CALL, NoCallPolicy


# ============================================================================
# Enums for type-safe choices
# ============================================================================


class AnnotatorType(str, Enum):
    """Reference-based cell type classifier."""

    CELLTYPIST = "celltypist"
    SINGLER = "singler"


class DEMethod(str, Enum):
    """Differential expression test for marker discovery."""

    WILCOXON = "wilcoxon"
    T_TEST = "t-test"
    T_TEST_OVERESTIM_VAR = "t-test_overestim_var"
    LOGREG = "logreg"


# ============================================================================
# Sub-configurations
# ============================================================================


class SampleConfig(BaseModel):
    """One sequenced sample and its metadata."""

    model_config = ConfigDict(extra="forbid", validate_default=True)

    sample_id: str = Field(..., min_length=1, description="Unique sample identifier")
    path: str = Field(
        ...,
        description="10x matrix directory, filtered_feature_bc_matrix.h5 or .h5ad file",
    )
    patient_id: str = Field(default="unknown", description="Donor / patient identifier")
    sort_gate: str = Field(default="unsorted", description="FACS sort gate of the sample")


class QCConfig(BaseModel):
    """Quality-control thresholds."""

    model_config = ConfigDict(extra="forbid", validate_default=True)

    min_genes: int = Field(default=200, ge=0, description="Minimum detected genes per cell")
    max_genes: int = Field(default=6000, ge=1, description="Maximum detected genes per cell")
    min_counts: int = Field(default=500, ge=0, description="Minimum UMI counts per cell")
    max_pct_mt: float = Field(
        default=15.0,
        ge=0.0,
        le=100.0,
        description="Maximum percentage of mitochondrial counts",
    )
    min_cells: int = Field(default=3, ge=0, description="Minimum cells expressing a gene")
    mt_prefix: str = Field(default="MT-", description="Mitochondrial gene name prefix")

    detect_doublets: bool = Field(default=True, description="Score doublets with Scrublet")
    remove_doublets: bool = Field(default=True, description="Drop predicted doublets")

    @model_validator(mode="after")
    def _check_gene_range(self) -> "QCConfig":
        if self.min_genes > self.max_genes:
            raise ValueError(
                f"min_genes ({self.min_genes}) must not exceed max_genes ({self.max_genes})"
            )
        return self


class NormalizationConfig(BaseModel):
    """Normalization, feature selection and PCA."""

    model_config = ConfigDict(extra="forbid", validate_default=True)

    target_sum: float = Field(default=1e4, gt=0, description="Counts per cell after scaling")
    n_top_genes: int = Field(default=2000, ge=10, description="Highly variable genes to keep")
    batch_aware_hvg: bool = Field(
        default=True,
        description="Select HVGs per sample and combine",
    )
    scale_max_value: float = Field(default=10.0, gt=0, description="Clip scaled values")
    n_comps: int = Field(default=50, ge=2, description="Principal components to compute")


class IntegrationConfig(BaseModel):
    """Harmony batch integration."""

    model_config = ConfigDict(extra="forbid", validate_default=True)

    enabled: bool = Field(default=True, description="Run Harmony on the PCA embedding")
    batch_key: str = Field(default="sample_id", description="obs column defining batches")
    max_iter_harmony: int = Field(default=20, ge=1, description="Harmony iterations")


class ClusteringConfig(BaseModel):
    """Neighbor graph and Leiden clustering."""

    model_config = ConfigDict(extra="forbid", validate_default=True)

    n_neighbors: int = Field(default=15, ge=2, description="Neighbors in the kNN graph")
    n_pcs: int = Field(default=30, ge=2, description="Embedding dimensions used")
    resolutions: list[float] = Field(
        default=[0.2, 0.4, 0.6, 0.8, 1.0],
        description="Resolution sweep; each adds a leiden_<res> column",
    )
    resolution: float = Field(
        default=0.6,
        gt=0.0,
        description="Resolution written to the 'leiden' column",
    )
    use_integrated: bool = Field(
        default=True,
        description="Use X_pca_harmony when present",
    )
    random_state: int = Field(default=0, description="Seed for Leiden and UMAP")

    @field_validator("resolutions")
    @classmethod
    def _positive_resolutions(cls, v: list[float]) -> list[float]:
        if any(r <= 0 for r in v):
            raise ValueError("All resolutions must be positive")
        return sorted(set(v))


class MarkerConfig(BaseModel):
    """Marker gene discovery and table filtering."""

    model_config = ConfigDict(extra="forbid", validate_default=True)

    method: DEMethod = Field(default=DEMethod.WILCOXON, description="DE test")
    n_genes: int = Field(default=100, ge=1, description="Genes ranked per cluster")
    min_logfc: float = Field(default=0.25, description="Minimum log fold change")
    max_pval_adj: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Maximum adjusted p-value",
    )
    top_n: int = Field(default=10, ge=1, description="Markers kept per cluster")


class AnnotationConfig(BaseModel):
    """Reference-based cell type classification."""

    model_config = ConfigDict(extra="forbid", validate_default=True)

    annotator: AnnotatorType = Field(
        default=AnnotatorType.CELLTYPIST,
        description="Classifier backend",
    )
    model: str = Field(default="Immune_All_Low.pkl", description="CellTypist model name")
    singler_reference: Literal["blueprint", "hpca", "monaco", "novershtern"] = Field(
        default="monaco",
        description="celldex reference used by SingleR",
    )
    confidence_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Predictions below this confidence become no call",
    )
    no_call_label: str = Field(
        default=NO_CALL,
        min_length=1,
        description="Label for cells the classifier abstains on",
    )


class HarmonizationConfig(BaseModel):
    """Cluster majority vote."""

    model_config = ConfigDict(extra="forbid", validate_default=True)

    enabled: bool = Field(default=True, description="Run the cluster majority vote")
    no_call_policy: NoCallPolicy = Field(
        default=NoCallPolicy.COMPETE,
        description="compete: no-call can win a cluster; abstain: no-call does not vote",
    )


class OutputConfig(BaseModel):
    """Files written after a run."""

    model_config = ConfigDict(extra="forbid", validate_default=True)

    output_dir: str | None = Field(default=None, description="Output directory (None = no output)")
    save_h5ad: bool = Field(default=True, description="Write the final AnnData")
    save_tables: bool = Field(default=True, description="Write marker and label tables")


# ============================================================================
# Root configuration
# ============================================================================


class AnalysisConfig(BaseModel):
    """Complete configuration of one analysis run.

    Example:
        config = AnalysisConfig.from_json("analysis.json")
        pipeline = AnalysisPipeline(config)
        run = pipeline.run()
    """

    model_config = ConfigDict(extra="forbid", validate_default=True)

    name: str = Field(default="sclabel-analysis", description="Analysis name")

    samples: list[SampleConfig] = Field(default_factory=list)
    qc: QCConfig = Field(default_factory=QCConfig)
    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    integration: IntegrationConfig = Field(default_factory=IntegrationConfig)
    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    markers: MarkerConfig = Field(default_factory=MarkerConfig)
    annotation: AnnotationConfig = Field(default_factory=AnnotationConfig)
    harmonization: HarmonizationConfig = Field(default_factory=HarmonizationConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)

    @field_validator("samples")
    @classmethod
    def _unique_sample_ids(cls, v: list[SampleConfig]) -> list[SampleConfig]:
        ids = [s.sample_id for s in v]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate sample ids: {duplicates}")
        return v

    # ========================================================================
    # JSON files
    # ========================================================================

    @classmethod
    def from_json(cls, path: str | Path) -> "AnalysisConfig":
        """Load a configuration from a JSON file."""
        with open(path) as f:
            return cls.model_validate(json.load(f))

    def to_json(self, path: str | Path) -> Path:
        """Write the configuration to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)
        return path
