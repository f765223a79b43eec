"""Tests for the scanpy-backed pipeline steps and controller.

Tests cover:
- Sample loading and merging
- QC filtering, doublet removal (Scrublet stubbed)
- Normalization, PCA, Harmony (stubbed) and clustering
- Marker table filtering
- Annotation with an in-test annotator and the annotator registry
- Harmonization step and the full AnalysisPipeline run
"""

from unittest.mock import patch

import anndata as ad
import numpy as np
import polars as pl
import pytest

from conftest import make_counts
from sclabel.config import (
    AnalysisConfig,
    AnnotationConfig,
    ClusteringConfig,
    HarmonizationConfig,
    IntegrationConfig,
    MarkerConfig,
    NormalizationConfig,
    OutputConfig,
    QCConfig,
    SampleConfig,
)
from sclabel.harmonization import NO_CALL, HarmonizationResult
from sclabel.pipeline import (
    AnalysisPipeline,
    AnnotationResult,
    AnnotatorProtocol,
    build_annotations_df,
    get_annotator,
    get_annotator_class,
    list_annotators,
    register_annotator,
    unregister_annotator,
)
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

LENIENT_QC = QCConfig(
    min_genes=1,
    max_genes=10_000,
    min_counts=1,
    max_pct_mt=100.0,
    min_cells=1,
    detect_doublets=False,
)
SMALL_NORM = NormalizationConfig(n_top_genes=60, n_comps=10)
SMALL_CLUSTERING = ClusteringConfig(
    n_neighbors=10, n_pcs=10, resolutions=[0.3, 1.0], resolution=1.0
)


class StaticAnnotator:
    """Annotator returning the synthetic ground truth.

    Every fifth cell gets a low confidence, so it becomes no call at the
    default threshold.
    """

    name = "static"

    def __init__(self, config: AnnotationConfig | None = None, drop: int = 0):
        self.config = config or AnnotationConfig()
        self.drop = drop
        self.calls = 0

    def annotate(self, adata, config=None):
        cfg = config or self.config
        self.calls += 1
        cells = list(adata.obs_names)[self.drop :]
        labels = [str(v) for v in adata.obs["true_type"]][self.drop :]
        confidences = [0.1 if i % 5 == 0 else 0.9 for i in range(len(cells))]
        df = build_annotations_df(
            cells, labels, confidences, cfg.no_call_label, cfg.confidence_threshold
        )
        return AnnotationResult(annotations_df=df, stats={"method": self.name})


def loaded(adata: ad.AnnData | None = None) -> AnalysisSnapshot:
    return AnalysisSnapshot.initial(adata if adata is not None else make_counts())


def through_reduction(adata: ad.AnnData | None = None) -> AnalysisSnapshot:
    snapshot = QualityControlStep(LENIENT_QC)(loaded(adata))
    snapshot = NormalizationStep(SMALL_NORM)(snapshot)
    return DimensionalityReductionStep(SMALL_NORM, IntegrationConfig(enabled=False))(snapshot)


@pytest.fixture(scope="module")
def clustered() -> AnalysisSnapshot:
    """Snapshot after PCA and clustering of the synthetic data."""
    return ClusteringStep(SMALL_CLUSTERING)(through_reduction())


@pytest.fixture(scope="module")
def annotated(clustered) -> AnalysisSnapshot:
    """Clustered snapshot with markers and static annotations."""
    snapshot = MarkerStep(MarkerConfig(n_genes=20))(clustered)
    return AnnotationStep(annotator=StaticAnnotator())(snapshot)


class TestLoadSamples:
    """Tests for LoadSamplesStep."""

    @pytest.fixture
    def sample_files(self, tmp_path):
        paths = []
        for i, sample_id in enumerate(["S1", "S2"]):
            adata = make_counts(n_cells=30, samples=(sample_id,), seed=i)
            adata.obs = adata.obs[["true_type"]].copy()
            adata.obs_names = [f"AAAC{j:04d}-1" for j in range(adata.n_obs)]
            path = tmp_path / f"{sample_id}.h5ad"
            adata.write_h5ad(path)
            paths.append(path)
        return paths

    def test_load_and_merge(self, sample_files):
        """Samples are tagged, barcodes prefixed and merged."""
        step = LoadSamplesStep(
            [
                SampleConfig(sample_id="S1", path=str(sample_files[0]), patient_id="P1"),
                SampleConfig(sample_id="S2", path=str(sample_files[1]), sort_gate="CD3+"),
            ]
        )
        snapshot = step(None)

        adata = snapshot.adata
        assert snapshot.stage == Stage.LOADED
        assert adata.n_obs == 60
        assert adata.obs_names.is_unique
        assert adata.obs_names[0] == "S1_AAAC0000-1"
        assert list(adata.obs["sample_id"].cat.categories) == ["S1", "S2"]
        assert set(adata.obs.loc[adata.obs["sample_id"] == "S1", "patient_id"]) == {"P1"}
        assert set(adata.obs.loc[adata.obs["sample_id"] == "S2", "sort_gate"]) == {"CD3+"}
        assert snapshot.params["loaded"]["samples"] == ["S1", "S2"]

    def test_missing_file(self, tmp_path):
        """A missing sample path fails with FileNotFoundError."""
        step = LoadSamplesStep([SampleConfig(sample_id="S1", path=str(tmp_path / "nope"))])

        with pytest.raises(FileNotFoundError, match="S1"):
            step(None)

    def test_unsupported_format(self, tmp_path):
        """Unknown file types are rejected."""
        path = tmp_path / "counts.loom"
        path.write_text("")
        step = LoadSamplesStep([SampleConfig(sample_id="S1", path=str(path))])

        with pytest.raises(ValueError, match="Unsupported"):
            step(None)

    def test_no_samples(self):
        """Loading needs at least one sample."""
        with pytest.raises(ValueError, match="At least one sample"):
            LoadSamplesStep([])(None)


class TestQualityControl:
    """Tests for QualityControlStep."""

    def test_metrics_and_stats(self, counts_adata):
        """QC metrics are added and statistics recorded."""
        snapshot = loaded(counts_adata)
        qc = QualityControlStep(LENIENT_QC)(snapshot)

        assert qc.stage == Stage.QC
        assert {"n_genes_by_counts", "total_counts", "pct_counts_mt"} <= set(qc.adata.obs)
        assert qc.adata.uns["qc_stats"]["cells_before"] == counts_adata.n_obs
        assert qc.adata.var["mt"].sum() == 10
        assert "total_counts" not in snapshot.adata.obs.columns

    def test_count_threshold(self, counts_adata):
        """Cells below min_counts are removed."""
        totals = np.asarray(counts_adata.X.sum(axis=1)).ravel()
        threshold = int(np.median(totals))
        config = LENIENT_QC.model_copy(update={"min_counts": threshold})

        qc = QualityControlStep(config)(loaded(counts_adata))

        assert qc.n_cells == int((totals >= threshold).sum())
        assert qc.adata.uns["qc_stats"]["cells_removed"] == int((totals < threshold).sum())

    def test_everything_filtered(self, counts_adata):
        """Thresholds removing every cell raise an error."""
        config = LENIENT_QC.model_copy(update={"min_counts": 10**9})

        with pytest.raises(ValueError, match="No cells passed"):
            QualityControlStep(config)(loaded(counts_adata))

    def test_requires_snapshot(self):
        """Running without input fails."""
        with pytest.raises(ValueError, match="requires an input snapshot"):
            QualityControlStep(LENIENT_QC)(None)


class TestDoublets:
    """Tests for DoubletStep with Scrublet stubbed."""

    @staticmethod
    def fake_scrublet(adata, batch_key=None, random_state=0):
        flagged = np.zeros(adata.n_obs, dtype=bool)
        flagged[:6] = True
        adata.obs["doublet_score"] = np.where(flagged, 0.9, 0.05)
        adata.obs["predicted_doublet"] = flagged

    @pytest.fixture
    def qc_snapshot(self, counts_adata):
        return QualityControlStep(LENIENT_QC)(loaded(counts_adata))

    def test_removes_doublets(self, qc_snapshot):
        """Predicted doublets are dropped and counted."""
        config = LENIENT_QC.model_copy(update={"detect_doublets": True})
        with patch("scanpy.pp.scrublet", side_effect=self.fake_scrublet) as scrublet:
            result = DoubletStep(config)(qc_snapshot)

        assert scrublet.call_args.kwargs["batch_key"] == "sample_id"
        assert result.stage == Stage.DOUBLETS
        assert result.n_cells == qc_snapshot.n_cells - 6
        assert result.adata.uns["doublet_stats"]["n_doublets"] == 6
        assert not result.adata.obs["predicted_doublet"].any()

    def test_keep_doublets(self, qc_snapshot):
        """With remove_doublets off, cells are only flagged."""
        config = LENIENT_QC.model_copy(
            update={"detect_doublets": True, "remove_doublets": False}
        )
        with patch("scanpy.pp.scrublet", side_effect=self.fake_scrublet):
            result = DoubletStep(config)(qc_snapshot)

        assert result.n_cells == qc_snapshot.n_cells
        assert int(result.adata.obs["predicted_doublet"].sum()) == 6

    def test_disabled(self, qc_snapshot):
        """Disabled detection passes the snapshot through."""
        assert DoubletStep(LENIENT_QC)(qc_snapshot) is qc_snapshot


class TestNormalizationAndReduction:
    """Tests for NormalizationStep and DimensionalityReductionStep."""

    def test_normalization(self, counts_adata):
        """Raw counts are kept and .raw holds all genes."""
        qc = QualityControlStep(LENIENT_QC)(loaded(counts_adata))
        norm = NormalizationStep(SMALL_NORM)(qc)

        assert norm.stage == Stage.NORMALIZED
        assert "counts" in norm.adata.layers
        assert norm.adata.raw.n_vars == qc.n_genes
        assert np.allclose(norm.adata.layers["counts"].sum(), qc.adata.X.sum())
        assert "counts" not in qc.adata.layers

    def test_normalize_twice(self, counts_adata):
        """Normalizing a normalized snapshot fails."""
        qc = QualityControlStep(LENIENT_QC)(loaded(counts_adata))
        norm = NormalizationStep(SMALL_NORM)(qc)

        with pytest.raises(ValueError, match="already normalized"):
            NormalizationStep(SMALL_NORM)(norm)

    def test_reduction(self, counts_adata):
        """HVG subset, scaling and PCA."""
        reduced = through_reduction(counts_adata)

        assert reduced.stage == Stage.REDUCED
        assert 0 < reduced.n_genes <= 60
        assert reduced.adata.obsm["X_pca"].shape == (reduced.n_cells, 10)
        assert reduced.adata.raw.n_vars > reduced.n_genes
        assert reduced.history == ("loaded", "qc", "normalized", "reduced")

    def test_reduction_requires_normalization(self, counts_adata):
        """PCA before normalization fails."""
        qc = QualityControlStep(LENIENT_QC)(loaded(counts_adata))

        with pytest.raises(ValueError, match="normalized"):
            DimensionalityReductionStep(SMALL_NORM)(qc)


class TestIntegration:
    """Tests for IntegrationStep with Harmony stubbed."""

    @pytest.fixture(scope="class")
    def reduced(self):
        return through_reduction()

    def test_harmony(self, reduced):
        """Harmony adds X_pca_harmony on a new snapshot."""

        def fake_harmony(adata, key, basis, adjusted_basis, **kwargs):
            adata.obsm[adjusted_basis] = adata.obsm[basis] + 1.0

        with patch("scanpy.external.pp.harmony_integrate", side_effect=fake_harmony) as harmony:
            result = IntegrationStep(IntegrationConfig(max_iter_harmony=5))(reduced)

        assert harmony.call_args.kwargs["max_iter_harmony"] == 5
        assert result.stage == Stage.INTEGRATED
        assert "X_pca_harmony" in result.adata.obsm
        assert "X_pca_harmony" not in reduced.adata.obsm
        assert result.params["integrated"]["n_batches"] == 2

    def test_disabled(self, reduced):
        """Disabled integration passes the snapshot through."""
        assert IntegrationStep(IntegrationConfig(enabled=False))(reduced) is reduced

    def test_single_batch(self):
        """A single batch is passed through."""
        reduced = through_reduction(make_counts(samples=("S1",)))

        assert IntegrationStep()(reduced) is reduced

    def test_requires_pca(self, counts_adata):
        """Integration before PCA fails."""
        with pytest.raises(ValueError, match="X_pca"):
            IntegrationStep()(loaded(counts_adata))


class TestClustering:
    """Tests for ClusteringStep."""

    def test_columns(self, clustered):
        """Sweep columns, the chosen leiden column and UMAP are written."""
        obs = clustered.adata.obs

        assert clustered.stage == Stage.CLUSTERED
        assert {"leiden", "leiden_0.3", "leiden_1"} <= set(obs.columns)
        assert (obs["leiden"].astype(str) == obs["leiden_1"].astype(str)).all()
        assert clustered.adata.obsm["X_umap"].shape == (clustered.n_cells, 2)
        assert set(clustered.adata.uns["leiden_stats"]["sweep"]) == {"0.3", "1"}
        assert clustered.adata.uns["leiden_stats"]["use_rep"] == "X_pca"

    def test_finds_groups(self, clustered):
        """The planted groups give more than one cluster."""
        assert clustered.adata.obs["leiden"].nunique() >= 2

    def test_resolution_outside_sweep(self):
        """A chosen resolution not in the sweep is run separately."""
        config = SMALL_CLUSTERING.model_copy(update={"resolutions": [0.3], "resolution": 0.7})
        result = ClusteringStep(config)(through_reduction())

        assert "leiden_0.7" not in result.adata.obs.columns
        assert result.adata.uns["leiden_stats"]["resolution"] == 0.7

    def test_requires_pca(self, counts_adata):
        """Clustering before PCA fails."""
        with pytest.raises(ValueError, match="X_pca"):
            ClusteringStep()(loaded(counts_adata))


class TestMarkers:
    """Tests for marker detection and filtering."""

    def test_marker_step(self, annotated):
        """rank_genes_groups is stored and exposed as a polars table."""
        table = marker_table(annotated.adata)

        assert annotated.has(Stage.MARKERS)
        assert {"group", "names", "scores", "logfoldchanges", "pvals_adj"} <= set(table.columns)
        assert set(table.get_column("group").unique()) == set(
            annotated.adata.obs["leiden"].astype(str)
        )

    def test_filter_markers(self):
        """Markers are thresholded and truncated per group by score."""
        markers = pl.DataFrame(
            {
                "group": ["0", "0", "0", "0", "1", "1"],
                "names": ["CD3E", "CD3D", "LYZ", "IL7R", "MS4A1", "CD79A"],
                "scores": [9.0, 8.0, 7.0, 6.0, 5.0, 4.0],
                "logfoldchanges": [2.0, 1.5, -1.0, 1.0, 3.0, 0.1],
                "pvals_adj": [0.001, 0.01, 0.001, 0.2, 0.001, 0.001],
            }
        )

        top = filter_markers(markers, min_logfc=0.25, max_pval_adj=0.05, top_n=1)

        assert top.select(["group", "names"]).rows() == [("0", "CD3E"), ("1", "MS4A1")]

    def test_filter_markers_without_pvalues(self):
        """Tables without p-values (logreg) are filtered by score only."""
        markers = pl.DataFrame({"group": ["0", "0"], "names": ["A", "B"], "scores": [1.0, 2.0]})

        top = filter_markers(markers, top_n=1)

        assert top.get_column("names").to_list() == ["B"]

    def test_single_group(self, clustered):
        """Marker detection needs two groups."""
        with pytest.raises(ValueError, match="at least 2 groups"):
            MarkerStep(groupby="sort_gate")(clustered)


class TestAnnotation:
    """Tests for AnnotationStep and the annotator registry."""

    def test_predictions_written(self, annotated):
        """Labels and scores are stored, low-confidence cells are no call."""
        obs = annotated.adata.obs

        assert annotated.stage == Stage.ANNOTATED
        assert set(obs["predicted_label"]) <= {"type0", "type1", "type2", NO_CALL}
        assert (obs["predicted_label"] == NO_CALL).sum() == (obs["prediction_score"] < 0.5).sum()
        assert annotated.adata.uns["annotation_stats"]["annotator"] == "static"

    def test_annotator_sees_all_genes(self, clustered):
        """The annotator receives the log-normalized matrix from .raw."""
        seen = {}

        class Recorder(StaticAnnotator):
            def annotate(self, adata, config=None):
                seen["n_vars"] = adata.n_vars
                return super().annotate(adata, config)

        AnnotationStep(annotator=Recorder())(clustered)

        assert seen["n_vars"] == clustered.adata.raw.n_vars

    def test_missing_cells_become_no_call(self, clustered):
        """Cells the annotator skipped get the no-call label and score 0."""
        result = AnnotationStep(annotator=StaticAnnotator(drop=4))(clustered)
        obs = result.adata.obs

        assert list(obs["predicted_label"].iloc[:4]) == [NO_CALL] * 4
        assert list(obs["prediction_score"].iloc[:4]) == [0.0] * 4
        assert result.adata.uns["annotation_stats"]["n_missing"] == 4

    def test_static_annotator_matches_protocol(self):
        """Test annotators satisfy AnnotatorProtocol structurally."""
        assert isinstance(StaticAnnotator(), AnnotatorProtocol)

    def test_builtin_annotators_registered(self):
        """CellTypist and SingleR are registered on import."""
        assert {"celltypist", "singler"} <= set(list_annotators())

    def test_register_and_get(self):
        """Registered annotators are instantiated with the config."""
        register_annotator(StaticAnnotator)
        try:
            config = AnnotationConfig(confidence_threshold=0.2)
            annotator = get_annotator("static", config)

            assert isinstance(annotator, StaticAnnotator)
            assert annotator.config.confidence_threshold == 0.2
            assert get_annotator_class("static") is StaticAnnotator
            with pytest.raises(ValueError, match="already registered"):
                register_annotator(StaticAnnotator)
        finally:
            unregister_annotator("static")

    def test_unknown_annotator(self):
        """Unknown names list the available annotators."""
        with pytest.raises(ValueError, match="Available: .*celltypist"):
            get_annotator("scanvi")

    def test_step_uses_registry(self, clustered):
        """Without an explicit annotator, the step looks up the configured one."""
        with patch("sclabel.pipeline.steps.annotation.get_annotator") as lookup:
            lookup.return_value = StaticAnnotator()
            result = AnnotationStep(AnnotationConfig(annotator="singler"))(clustered)

        lookup.assert_called_once()
        assert lookup.call_args.args[0] == "singler"
        assert result.stage == Stage.ANNOTATED


class TestHarmonizationStep:
    """Tests for HarmonizationStep."""

    def test_constant_per_cluster(self, annotated):
        """Every cluster carries one harmonized label."""
        step = HarmonizationStep()
        result = step(annotated)
        obs = result.adata.obs

        assert result.stage == Stage.HARMONIZED
        assert obs.groupby("leiden", observed=True)["harmonized_label"].nunique().max() == 1
        assert isinstance(step.last_result, HarmonizationResult)
        assert "harmonized_label" not in annotated.adata.obs.columns
        assert result.params["harmonized"]["no_call_policy"] == "compete"

    def test_abstain_policy(self, annotated):
        """The configured policy reaches the vote."""
        step = HarmonizationStep(HarmonizationConfig(no_call_policy="abstain"))
        step(annotated)

        assert step.last_result.policy.value == "abstain"

    def test_disabled(self, annotated):
        """Disabled harmonization passes the snapshot through."""
        step = HarmonizationStep(HarmonizationConfig(enabled=False))

        assert step(annotated) is annotated
        assert step.last_result is None

    def test_requires_predictions(self, clustered):
        """Harmonization before annotation fails."""
        with pytest.raises(ValueError, match="predicted_label"):
            HarmonizationStep()(clustered)


class TestAnalysisPipeline:
    """Tests for the full pipeline run."""

    @pytest.fixture
    def config(self, tmp_path):
        return AnalysisConfig(
            name="synthetic",
            qc=LENIENT_QC,
            normalization=SMALL_NORM,
            integration=IntegrationConfig(enabled=False),
            clustering=SMALL_CLUSTERING,
            markers=MarkerConfig(n_genes=20, min_logfc=0.0, max_pval_adj=1.0, top_n=3),
            output=OutputConfig(output_dir=str(tmp_path / "out")),
        )

    def test_run_from_snapshot(self, config, counts_adata, tmp_path):
        """All steps run and every snapshot is kept."""
        annotator = StaticAnnotator()
        run = AnalysisPipeline(config, annotator=annotator).run(loaded(counts_adata))

        assert run.final.stage == Stage.HARMONIZED
        assert set(run.snapshots) == {
            Stage.LOADED,
            Stage.QC,
            Stage.NORMALIZED,
            Stage.REDUCED,
            Stage.CLUSTERED,
            Stage.MARKERS,
            Stage.ANNOTATED,
            Stage.HARMONIZED,
        }
        assert run.stages[-1] == "harmonized"
        assert annotator.calls == 1
        assert run.harmonization is not None
        assert run.summary.height == run.harmonization.n_clusters
        assert run.markers.group_by("group").len().get_column("len").max() <= 3
        assert "predicted_label" not in run.snapshots[Stage.CLUSTERED].adata.obs.columns

    def test_outputs_written(self, config, counts_adata, tmp_path):
        """Configuration, AnnData and tables are saved."""
        run = AnalysisPipeline(config, annotator=StaticAnnotator()).run(loaded(counts_adata))

        out = tmp_path / "out"
        assert set(run.output_files) == {
            "config",
            "h5ad",
            "markers",
            "cell_labels",
            "cluster_labels",
        }
        assert (out / "synthetic.h5ad").exists()
        reloaded = ad.read_h5ad(out / "synthetic.h5ad")
        assert "harmonized_label" in reloaded.obs.columns
        cell_labels = pl.read_csv(out / "cell_labels.csv")
        assert cell_labels.height == run.final.n_cells
        assert AnalysisConfig.from_json(out / "config.json") == config

    def test_resume_skips_applied_steps(self, config, annotated):
        """Steps already in the snapshot history are not rerun."""
        annotator = StaticAnnotator()
        run = AnalysisPipeline(
            config.model_copy(update={"output": OutputConfig()}),
            annotator=annotator,
        ).run(annotated)

        assert annotator.calls == 0
        assert set(run.snapshots) == {Stage.ANNOTATED, Stage.HARMONIZED}

    def test_step_order(self, config):
        """Steps are built in execution order."""
        names = [step.name for step in AnalysisPipeline(config).build_steps()]

        assert names == [
            "load_samples",
            "quality_control",
            "doublets",
            "normalization",
            "dimensionality_reduction",
            "integration",
            "clustering",
            "markers",
            "annotation",
            "harmonization",
        ]

    def test_result_from_harmonization_step(self, config, annotated):
        """The run reports the result of its own harmonization step."""
        pipeline = AnalysisPipeline(
            config.model_copy(update={"output": OutputConfig()}),
            annotator=StaticAnnotator(),
        )
        run = pipeline.run(annotated)

        assert pipeline.build_steps()[-1] is pipeline.harmonization_step
        assert run.harmonization is not None
        assert run.summary.height == run.harmonization.n_clusters

    def test_harmonization_disabled(self, config, annotated):
        """Without harmonization the run has no result or summary."""
        run = AnalysisPipeline(
            config.model_copy(
                update={
                    "output": OutputConfig(),
                    "harmonization": HarmonizationConfig(enabled=False),
                }
            ),
            annotator=StaticAnnotator(),
        ).run(annotated)

        assert run.final.stage == Stage.ANNOTATED
        assert run.harmonization is None
        assert run.summary is None
