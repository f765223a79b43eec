"""Cluster-level majority vote over per-cell cell type predictions.

Reference-based annotators (CellTypist, SingleR) label every cell on its
own, so cells of one Leiden cluster often disagree. This module collapses
those predictions to a single label per cluster:

1. Count cells per (cluster, label) pair
2. Pick the most frequent label of each cluster
3. Broadcast the winning label back to every cell of the cluster

Ties are broken in favour of the lexicographically smallest label, so the
same inputs always produce the same output.

Example:
    result = harmonize(
        predictions={"c1": "T-cell", "c2": "T-cell", "c3": "B-cell"},
        clusters={"c1": "A", "c2": "A", "c3": "B"},
    )
    result.cluster_to_label  # {"A": "T-cell", "B": "B-cell"}
"""

from __future__ import annotations

import math
from collections.abc import Hashable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any

import polars as pl
from loguru import logger

# Label used for cells the upstream classifier refused to call
NO_CALL = "Unassigned"


# =============================================================================
# Errors
# =============================================================================


class HarmonizationError(ValueError):
    """Base class for label harmonization failures."""


class DomainMismatch(HarmonizationError):
    """Predictions and cluster assignments cover different cells."""

    def __init__(
        self,
        missing_predictions: Iterable[Hashable],
        missing_clusters: Iterable[Hashable],
    ):
        self.missing_predictions = frozenset(missing_predictions)
        self.missing_clusters = frozenset(missing_clusters)
        examples = sorted(map(str, self.missing_predictions | self.missing_clusters))[:5]
        super().__init__(
            f"Predictions and clusters cover different cells: "
            f"{len(self.missing_predictions)} cells have no prediction, "
            f"{len(self.missing_clusters)} cells have no cluster "
            f"(e.g. {examples})"
        )


class EmptyClusterError(HarmonizationError):
    """A declared cluster label has no member cells."""

    def __init__(self, empty_clusters: Iterable[Hashable]):
        self.empty_clusters = tuple(empty_clusters)
        super().__init__(
            f"{len(self.empty_clusters)} declared clusters have no cells: "
            f"{list(self.empty_clusters)[:10]}"
        )


class NoCallPolicy(str, Enum):
    """How cells without a confident prediction take part in the vote."""

    COMPETE = "compete"  # no-call is an ordinary label and can win a cluster
    ABSTAIN = "abstain"  # no-call cells do not vote


# =============================================================================
# Result
# =============================================================================


@dataclass(frozen=True)
class HarmonizationResult:
    """Outcome of a cluster majority vote.

    All mappings are read-only views.
    """

    cluster_to_label: Mapping[Hashable, str]
    harmonized: Mapping[Hashable, str]
    clusters: Mapping[Hashable, Hashable]

    # Long-format counts (cluster_code, cluster, label, n_cells)
    contingency: pl.DataFrame

    # Clusters in the order used for cluster_code
    cluster_order: tuple[Hashable, ...]

    no_call: str = NO_CALL
    policy: NoCallPolicy = NoCallPolicy.COMPETE

    @property
    def n_cells(self) -> int:
        """Number of harmonized cells."""
        return len(self.harmonized)

    @property
    def n_clusters(self) -> int:
        """Number of clusters."""
        return len(self.cluster_to_label)

    @property
    def labels(self) -> list[str]:
        """Distinct winning labels, sorted."""
        return sorted(set(self.cluster_to_label.values()))

    def to_frame(self) -> pl.DataFrame:
        """Per-cell table with cell_id, cluster and harmonized_label."""
        cells = list(self.harmonized)
        return pl.DataFrame(
            {
                "cell_id": [str(c) for c in cells],
                "cluster": [str(self.clusters[c]) for c in cells],
                "harmonized_label": [self.harmonized[c] for c in cells],
            },
            schema={"cell_id": pl.Utf8, "cluster": pl.Utf8, "harmonized_label": pl.Utf8},
        )

    def cluster_frame(self) -> pl.DataFrame:
        """One row per cluster with its winning label."""
        return pl.DataFrame(
            {
                "cluster": [str(c) for c in self.cluster_order],
                "harmonized_label": [self.cluster_to_label[c] for c in self.cluster_order],
            },
            schema={"cluster": pl.Utf8, "harmonized_label": pl.Utf8},
        )


# =============================================================================
# Core
# =============================================================================


def _as_label(value: Any, no_call: str) -> str:
    """Normalize a raw prediction, turning missing values into no_call."""
    if value is None:
        return no_call
    if isinstance(value, float) and math.isnan(value):
        return no_call
    return str(value)


def _ordered_clusters(values: Iterable[Hashable]) -> list[Hashable]:
    """Sort cluster labels naturally, falling back to string order for mixed types."""
    unique = set(values)
    try:
        return sorted(unique)
    except TypeError:
        return sorted(unique, key=lambda c: (type(c).__name__, str(c)))


def check_domains(
    predictions: Mapping[Hashable, Any],
    clusters: Mapping[Hashable, Hashable],
) -> None:
    """Raise DomainMismatch unless both mappings cover the same cells."""
    pred_cells = set(predictions.keys())
    cluster_cells = set(clusters.keys())
    if pred_cells == cluster_cells:
        return
    raise DomainMismatch(
        missing_predictions=cluster_cells - pred_cells,
        missing_clusters=pred_cells - cluster_cells,
    )


def build_contingency_table(
    predictions: Mapping[Hashable, Any],
    clusters: Mapping[Hashable, Hashable],
    no_call: str = NO_CALL,
    cluster_order: list[Hashable] | None = None,
) -> pl.DataFrame:
    """Count cells per (cluster, label) pair.

    Args:
        predictions: cell id -> predicted label (None/NaN means no call)
        clusters: cell id -> cluster label
        no_call: Label substituted for missing predictions
        cluster_order: Cluster ordering defining cluster_code (default: sorted)

    Returns:
        DataFrame with columns cluster_code, cluster, label, n_cells,
        sorted by cluster_code then label. Only observed pairs are listed.
    """
    check_domains(predictions, clusters)

    if cluster_order is None:
        cluster_order = _ordered_clusters(clusters.values())
    codes = {c: i for i, c in enumerate(cluster_order)}

    cells = list(clusters)
    frame = pl.DataFrame(
        {
            "cluster_code": [codes[clusters[c]] for c in cells],
            "label": [_as_label(predictions[c], no_call) for c in cells],
        },
        schema={"cluster_code": pl.UInt32, "label": pl.Utf8},
    )

    counts = frame.group_by(["cluster_code", "label"]).agg(
        pl.len().cast(pl.UInt32).alias("n_cells")
    )
    names = pl.DataFrame(
        {
            "cluster_code": list(range(len(cluster_order))),
            "cluster": [str(c) for c in cluster_order],
        },
        schema={"cluster_code": pl.UInt32, "cluster": pl.Utf8},
    )
    return (
        names.join(counts, on="cluster_code", how="inner")
        .select(["cluster_code", "cluster", "label", "n_cells"])
        .sort(["cluster_code", "label"])
    )


def select_winners(
    contingency: pl.DataFrame,
    no_call: str = NO_CALL,
    policy: NoCallPolicy = NoCallPolicy.COMPETE,
) -> dict[int, str]:
    """Pick the most frequent label per cluster_code.

    Ties go to the lexicographically smallest label. Under the ABSTAIN
    policy a cluster with no voting cells falls back to no_call.
    """
    votes = contingency
    if policy == NoCallPolicy.ABSTAIN:
        votes = votes.filter(pl.col("label") != no_call)

    winners = (
        votes.sort(["cluster_code", "n_cells", "label"], descending=[False, True, False])
        .group_by("cluster_code", maintain_order=True)
        .first()
    )
    result = {
        int(code): label
        for code, label in winners.select(["cluster_code", "label"]).iter_rows()
    }

    for code in contingency.get_column("cluster_code").unique().to_list():
        if int(code) not in result:
            result[int(code)] = no_call
    return result


def harmonize(
    predictions: Mapping[Hashable, Any],
    clusters: Mapping[Hashable, Hashable],
    no_call: str = NO_CALL,
    policy: NoCallPolicy | str = NoCallPolicy.COMPETE,
    categories: Iterable[Hashable] | None = None,
) -> HarmonizationResult:
    """Replace per-cell predictions with the majority label of each cluster.

    Args:
        predictions: cell id -> predicted label. None or NaN count as no call.
        clusters: cell id -> cluster label, over the same cells.
        no_call: Label used for cells without a confident prediction
        policy: Whether no-call cells compete in the vote or abstain
        categories: Declared cluster labels. Every declared cluster must
            contain at least one cell.

    Returns:
        HarmonizationResult with cluster_to_label and per-cell harmonized labels

    Raises:
        DomainMismatch: predictions and clusters cover different cells
        EmptyClusterError: a declared cluster has no cells
    """
    policy = NoCallPolicy(policy)
    check_domains(predictions, clusters)

    observed = _ordered_clusters(clusters.values())
    if categories is not None:
        declared = list(dict.fromkeys(categories))
        observed_set = set(observed)
        empty = [c for c in declared if c not in observed_set]
        if empty:
            raise EmptyClusterError(empty)
        undeclared = observed_set - set(declared)
        if undeclared:
            raise HarmonizationError(
                f"Cells assigned to undeclared clusters: {sorted(map(str, undeclared))[:10]}"
            )
        cluster_order = declared
    else:
        cluster_order = observed

    contingency = build_contingency_table(
        predictions, clusters, no_call=no_call, cluster_order=cluster_order
    )
    winners = select_winners(contingency, no_call=no_call, policy=policy)

    cluster_to_label = {cluster_order[code]: label for code, label in sorted(winners.items())}
    harmonized = {cell: cluster_to_label[cluster] for cell, cluster in clusters.items()}

    n_changed = sum(
        1 for cell, label in harmonized.items() if _as_label(predictions[cell], no_call) != label
    )
    logger.debug(
        f"Harmonized {len(harmonized):,} cells over {len(cluster_to_label)} clusters "
        f"(policy={policy.value}, {n_changed:,} labels changed)"
    )

    return HarmonizationResult(
        cluster_to_label=MappingProxyType(cluster_to_label),
        harmonized=MappingProxyType(harmonized),
        clusters=MappingProxyType(dict(clusters)),
        contingency=contingency,
        cluster_order=tuple(cluster_order),
        no_call=no_call,
        policy=policy,
    )
