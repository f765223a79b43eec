"""Pipeline Controller for sclabel.

Runs the analysis steps in order, keeping every intermediate snapshot:

    load -> qc -> doublets -> normalize -> reduce -> integrate
         -> cluster -> markers -> annotate -> harmonize

Usage:
    config = AnalysisConfig.from_json("analysis.json")
    run = AnalysisPipeline(config).run()
    run.final.adata.obs["harmonized_label"]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import polars as pl
from loguru import logger

from sclabel.config import AnalysisConfig
from sclabel.harmonization import HarmonizationResult, summarize_harmonization
from sclabel.pipeline.base import AnnotatorProtocol, PipelineStep
from sclabel.pipeline.steps import (
    AnnotationStep,
    ClusteringStep,
    DimensionalityReductionStep,
    DoubletStep,
    HarmonizationStep,
    IntegrationStep,
    LoadSamplesStep,
    MarkerStep,
    NormalizationStep,
    QualityControlStep,
    filter_markers,
    marker_table,
)
from sclabel.snapshot import AnalysisSnapshot, Stage

_STAGE_ORDER = {stage: i for i, stage in enumerate(Stage)}


@dataclass
class PipelineRun:
    """Outputs of one pipeline run."""

    # Every snapshot produced, keyed by stage
    snapshots: dict[Stage, AnalysisSnapshot]
    final: AnalysisSnapshot

    # Filtered marker table (group, names, scores, ...)
    markers: pl.DataFrame | None = None

    harmonization: HarmonizationResult | None = None
    summary: pl.DataFrame | None = None

    output_files: dict[str, Path] = field(default_factory=dict)

    @property
    def stages(self) -> list[str]:
        """Stages applied to the final snapshot, oldest first."""
        return list(self.final.history)


class AnalysisPipeline:
    """Runs the sclabel steps locally, in order.

    Example:
        pipeline = AnalysisPipeline(config)
        run = pipeline.run()
        print(run.summary)
    """

    def __init__(
        self,
        config: AnalysisConfig,
        annotator: AnnotatorProtocol | None = None,
    ):
        """Initialize the pipeline.

        Args:
            config: Analysis configuration
            annotator: Annotator instance overriding the registry lookup
        """
        self.config = config
        self.annotator = annotator
        self.harmonization_step: HarmonizationStep | None = None

    def build_steps(self) -> list[PipelineStep]:
        """Create the step instances in execution order."""
        cfg = self.config
        self.harmonization_step = HarmonizationStep(
            cfg.harmonization, no_call=cfg.annotation.no_call_label
        )
        return [
            LoadSamplesStep(cfg.samples),
            QualityControlStep(cfg.qc),
            DoubletStep(cfg.qc, random_state=cfg.clustering.random_state),
            NormalizationStep(cfg.normalization),
            DimensionalityReductionStep(cfg.normalization, cfg.integration),
            IntegrationStep(cfg.integration),
            ClusteringStep(cfg.clustering),
            MarkerStep(cfg.markers),
            AnnotationStep(cfg.annotation, annotator=self.annotator),
            self.harmonization_step,
        ]

    def run(self, snapshot: AnalysisSnapshot | None = None) -> PipelineRun:
        """Run the steps that come after the stage of snapshot.

        Args:
            snapshot: Starting snapshot. None loads the configured samples.

        Returns:
            PipelineRun with all snapshots and the derived tables
        """
        steps = self.build_steps()
        snapshots: dict[Stage, AnalysisSnapshot] = {}
        if snapshot is not None:
            snapshots[snapshot.stage] = snapshot

        logger.info(f"Starting analysis '{self.config.name}'")
        for i, step in enumerate(steps, start=1):
            done = snapshot is not None and (
                _STAGE_ORDER[step.produces] <= _STAGE_ORDER[snapshot.stage]
            )
            if done:
                logger.debug(f"Step {i} ({step.name}) already applied, skipping")
                continue

            logger.info("=" * 50)
            logger.info(f"Step {i}: {step.name}")
            logger.info("=" * 50)

            result = step(snapshot)
            if result is not snapshot:
                snapshots[result.stage] = result
            snapshot = result
            logger.info(f"{snapshot.n_cells:,} cells x {snapshot.n_genes:,} genes")

        run = PipelineRun(snapshots=snapshots, final=snapshot)

        if snapshot.has(Stage.MARKERS):
            mcfg = self.config.markers
            run.markers = filter_markers(
                marker_table(snapshot.adata),
                min_logfc=mcfg.min_logfc,
                max_pval_adj=mcfg.max_pval_adj,
                top_n=mcfg.top_n,
            )

        last_result = self.harmonization_step.last_result
        if last_result is not None:
            run.harmonization = last_result
            run.summary = summarize_harmonization(run.harmonization)

        if self.config.output.output_dir:
            run.output_files = self.save_outputs(run, Path(self.config.output.output_dir))

        logger.info("=" * 50)
        logger.info(f"Analysis complete: {' -> '.join(run.stages)}")
        logger.info("=" * 50)
        return run

    def save_outputs(self, run: PipelineRun, output_dir: Path) -> dict[str, Path]:
        """Write the configuration, final AnnData and tables to output_dir."""
        output_dir.mkdir(parents=True, exist_ok=True)
        out = self.config.output
        files: dict[str, Path] = {}

        files["config"] = self.config.to_json(output_dir / "config.json")

        if out.save_h5ad:
            path = output_dir / f"{self.config.name}.h5ad"
            run.final.adata.write_h5ad(path)
            files["h5ad"] = path

        if out.save_tables:
            if run.markers is not None:
                files["markers"] = output_dir / "markers.csv"
                run.markers.write_csv(files["markers"])
            if run.harmonization is not None:
                files["cell_labels"] = output_dir / "cell_labels.csv"
                run.harmonization.to_frame().write_csv(files["cell_labels"])
                files["cluster_labels"] = output_dir / "cluster_labels.csv"
                run.summary.write_csv(files["cluster_labels"])

        for name, path in files.items():
            logger.info(f"Saved {name}: {path}")
        return files
