"""Diagnostics for cluster majority voting.

Quantifies how much a cluster vote changed the raw predictions: cluster
purity, no-call share and overall agreement between raw and harmonized
labels.
"""

from __future__ import annotations

from collections.abc import Hashable, Mapping
from typing import Any

import polars as pl
from loguru import logger
from sklearn.metrics import adjusted_rand_score

from sclabel.harmonization.majority import HarmonizationResult, _as_label


def summarize_harmonization(result: HarmonizationResult) -> pl.DataFrame:
    """Per-cluster summary of a majority vote.

    Returns:
        DataFrame with columns cluster, harmonized_label, n_cells, n_agree,
        n_changed, n_no_call, purity and no_call_fraction, one row per cluster.
    """
    table = result.contingency
    winners = pl.DataFrame(
        {
            "cluster_code": list(range(len(result.cluster_order))),
            "harmonized_label": [result.cluster_to_label[c] for c in result.cluster_order],
        },
        schema={"cluster_code": pl.UInt32, "harmonized_label": pl.Utf8},
    )

    sizes = table.group_by(["cluster_code", "cluster"]).agg(
        pl.col("n_cells").sum().cast(pl.Int64).alias("n_cells"),
        pl.col("n_cells")
        .filter(pl.col("label") == result.no_call)
        .sum()
        .cast(pl.Int64)
        .alias("n_no_call"),
    )
    agree = (
        table.join(winners, on="cluster_code", how="inner")
        .filter(pl.col("label") == pl.col("harmonized_label"))
        .select(["cluster_code", pl.col("n_cells").cast(pl.Int64).alias("n_agree")])
    )

    return (
        sizes.join(winners, on="cluster_code", how="inner")
        .join(agree, on="cluster_code", how="left")
        .with_columns(pl.col("n_agree").fill_null(0))
        .with_columns(
            (pl.col("n_cells") - pl.col("n_agree")).alias("n_changed"),
            (pl.col("n_agree") / pl.col("n_cells")).alias("purity"),
            (pl.col("n_no_call") / pl.col("n_cells")).alias("no_call_fraction"),
        )
        .sort("cluster_code")
        .select(
            [
                "cluster",
                "harmonized_label",
                "n_cells",
                "n_agree",
                "n_changed",
                "n_no_call",
                "purity",
                "no_call_fraction",
            ]
        )
    )


def agreement_score(
    predictions: Mapping[Hashable, Any],
    result: HarmonizationResult,
) -> dict[str, float]:
    """Compare raw predictions with the harmonized labels.

    Returns:
        Dict with:
        - fraction_unchanged: cells whose raw label equals the harmonized label
        - fraction_no_call: cells without a raw call
        - cluster_label_ari: adjusted Rand index between raw labels and clusters
    """
    cells = list(result.harmonized)
    if not cells:
        return {"fraction_unchanged": 0.0, "fraction_no_call": 0.0, "cluster_label_ari": 0.0}

    raw = [_as_label(predictions[c], result.no_call) for c in cells]
    harmonized = [result.harmonized[c] for c in cells]
    clusters = [str(result.clusters[c]) for c in cells]

    n = len(cells)
    unchanged = sum(r == h for r, h in zip(raw, harmonized)) / n
    no_call = sum(r == result.no_call for r in raw) / n
    ari = float(adjusted_rand_score(clusters, raw))

    logger.info(
        f"Harmonization agreement: {unchanged:.1%} unchanged, "
        f"{no_call:.1%} no-call, cluster/label ARI={ari:.3f}"
    )
    return {
        "fraction_unchanged": unchanged,
        "fraction_no_call": no_call,
        "cluster_label_ari": ari,
    }
