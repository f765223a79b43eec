"""Clustering Pipeline Step.

Step 7: kNN graph, Leiden clustering and UMAP.

Leiden runs once per resolution of the sweep (``leiden_<res>`` columns) so
the cluster count can be compared across resolutions; the configured
resolution is also written to ``leiden``, the column every later step
reads.
"""

from __future__ import annotations

import anndata as ad
import scanpy as sc
from loguru import logger

from sclabel.config import ClusteringConfig
from sclabel.pipeline.base import PipelineStep, require_snapshot
from sclabel.snapshot import CLUSTER_KEY, AnalysisSnapshot, Stage


def resolution_key(resolution: float) -> str:
    """obs column of a sweep resolution, e.g. 0.6 -> 'leiden_0.6'."""
    return f"{CLUSTER_KEY}_{resolution:g}"


def choose_representation(adata: ad.AnnData, use_integrated: bool = True) -> str:
    """Harmony embedding when requested and present, else PCA."""
    if use_integrated and "X_pca_harmony" in adata.obsm:
        return "X_pca_harmony"
    return "X_pca"


def run_leiden(
    adata: ad.AnnData,
    resolution: float,
    key_added: str,
    random_state: int = 0,
) -> int:
    """Run Leiden in place and return the number of clusters."""
    sc.tl.leiden(
        adata,
        resolution=resolution,
        key_added=key_added,
        flavor="igraph",
        n_iterations=2,
        directed=False,
        random_state=random_state,
    )
    return adata.obs[key_added].nunique()


class ClusteringStep(PipelineStep):
    """Neighbors, Leiden resolution sweep and UMAP."""

    name = "clustering"
    description = "kNN graph + Leiden + UMAP"
    produces = Stage.CLUSTERED

    def __init__(self, config: ClusteringConfig | None = None):
        self.config = config or ClusteringConfig()

    def validate_inputs(self, snapshot: AnalysisSnapshot | None) -> bool:
        require_snapshot(self, snapshot, obsm=("X_pca",))
        return True

    def execute(self, snapshot: AnalysisSnapshot | None) -> AnalysisSnapshot:
        cfg = self.config
        adata = snapshot.working_copy()

        use_rep = choose_representation(adata, cfg.use_integrated)
        n_pcs = min(cfg.n_pcs, adata.obsm[use_rep].shape[1])
        logger.info(
            f"Building kNN graph on {use_rep} ({n_pcs} dims, {cfg.n_neighbors} neighbors)"
        )
        sc.pp.neighbors(
            adata,
            n_neighbors=cfg.n_neighbors,
            n_pcs=n_pcs,
            use_rep=use_rep,
            random_state=cfg.random_state,
        )

        sweep: dict[str, int] = {}
        for res in cfg.resolutions:
            n_clusters = run_leiden(adata, res, resolution_key(res), cfg.random_state)
            sweep[f"{res:g}"] = int(n_clusters)
            logger.info(f"  resolution {res:g}: {n_clusters} clusters")

        chosen = resolution_key(cfg.resolution)
        if chosen in adata.obs.columns:
            adata.obs[CLUSTER_KEY] = adata.obs[chosen].copy()
        else:
            run_leiden(adata, cfg.resolution, CLUSTER_KEY, cfg.random_state)
        n_clusters = adata.obs[CLUSTER_KEY].nunique()
        adata.uns["leiden_stats"] = {
            "resolution": cfg.resolution,
            "n_clusters": int(n_clusters),
            "sweep": sweep,
            "use_rep": use_rep,
        }
        logger.info(f"Leiden at resolution {cfg.resolution:g}: {n_clusters} clusters")

        sc.tl.umap(adata, random_state=cfg.random_state)

        return snapshot.advance(
            Stage.CLUSTERED,
            adata,
            use_rep=use_rep,
            n_pcs=n_pcs,
            n_neighbors=cfg.n_neighbors,
            resolution=cfg.resolution,
            n_clusters=int(n_clusters),
        )
