"""Cluster-level harmonization of automatic cell type predictions.

Per-cell predictions from reference-based annotators are noisy. Assuming
cell identity is uniform inside a well-formed cluster, each cluster gets
the label most of its cells were given.

Key concepts:
- Contingency table: cell counts per (cluster, label) pair
- Majority vote: most frequent label per cluster, ties to the smallest label
- No call: cells the annotator abstained on, voting per NoCallPolicy

Example:
    from sclabel.harmonization import harmonize, summarize_harmonization

    result = harmonize(predictions, clusters)
    print(result.cluster_to_label)
    print(summarize_harmonization(result))
"""

from sclabel.harmonization.majority import (
    NO_CALL,
    DomainMismatch,
    EmptyClusterError,
    HarmonizationError,
    HarmonizationResult,
    NoCallPolicy,
    build_contingency_table,
    check_domains,
    harmonize,
    select_winners,
)
from sclabel.harmonization.obs import (
    harmonize_obs,
    obs_clusters,
    obs_predictions,
)
from sclabel.harmonization.evaluation import (
    agreement_score,
    summarize_harmonization,
)

__all__ = [
    # Core
    "NO_CALL",
    "NoCallPolicy",
    "HarmonizationResult",
    "build_contingency_table",
    "check_domains",
    "harmonize",
    "select_winners",
    # Errors
    "HarmonizationError",
    "DomainMismatch",
    "EmptyClusterError",
    # AnnData
    "harmonize_obs",
    "obs_clusters",
    "obs_predictions",
    # Evaluation
    "agreement_score",
    "summarize_harmonization",
]
