"""AnnData obs adapter for cluster majority voting.

Reads predictions and cluster assignments from ``adata.obs`` and writes the
harmonized labels into a copy of the object; the input is never modified.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pandas as pd
from loguru import logger

from sclabel.harmonization.majority import (
    NO_CALL,
    HarmonizationResult,
    NoCallPolicy,
    harmonize,
)

if TYPE_CHECKING:
    import anndata as ad


def obs_predictions(adata: "ad.AnnData", key: str) -> dict[str, str | None]:
    """Read a prediction column as cell id -> label (None for missing)."""
    if key not in adata.obs.columns:
        raise KeyError(f"Prediction column '{key}' not found in adata.obs")
    series = adata.obs[key].astype(object)
    series = series.where(adata.obs[key].notna(), None)
    return dict(zip(adata.obs_names, series))


def obs_clusters(adata: "ad.AnnData", key: str) -> tuple[dict[str, str], list[str] | None]:
    """Read a cluster column as cell id -> cluster, plus declared categories.

    Categorical columns (as written by ``sc.tl.leiden``) declare their
    categories; plain columns declare nothing.
    """
    if key not in adata.obs.columns:
        raise KeyError(f"Cluster column '{key}' not found in adata.obs")
    column = adata.obs[key]
    if column.isna().any():
        raise ValueError(f"Cluster column '{key}' has {int(column.isna().sum())} missing values")

    categories = None
    if isinstance(column.dtype, pd.CategoricalDtype):
        categories = list(column.cat.categories)
    return dict(zip(adata.obs_names, column.astype(object))), categories


def harmonize_obs(
    adata: "ad.AnnData",
    prediction_key: str,
    cluster_key: str = "leiden",
    key_added: str = "harmonized_label",
    no_call: str = NO_CALL,
    policy: NoCallPolicy | str = NoCallPolicy.COMPETE,
) -> tuple["ad.AnnData", HarmonizationResult]:
    """Harmonize an obs prediction column over an obs cluster column.

    Args:
        adata: AnnData holding both columns
        prediction_key: obs column with per-cell predictions
        cluster_key: obs column with cluster assignments
        key_added: obs column receiving the harmonized labels
        no_call: Label for cells without a confident prediction
        policy: No-call vote participation

    Returns:
        Tuple of (new AnnData with ``key_added`` set, HarmonizationResult)
    """
    predictions = obs_predictions(adata, prediction_key)
    clusters, categories = obs_clusters(adata, cluster_key)

    result = harmonize(
        predictions,
        clusters,
        no_call=no_call,
        policy=policy,
        categories=categories,
    )

    out = adata.copy()
    out.obs[key_added] = pd.Categorical(
        [result.harmonized[cell] for cell in out.obs_names],
        categories=result.labels,
    )
    out.uns[key_added] = {
        "cluster_key": cluster_key,
        "prediction_key": prediction_key,
        "no_call": no_call,
        "policy": result.policy.value,
        "cluster_to_label": {str(k): v for k, v in result.cluster_to_label.items()},
    }

    logger.info(
        f"Harmonized '{prediction_key}' over '{cluster_key}': "
        f"{result.n_clusters} clusters -> {len(result.labels)} labels"
    )
    return out, result
