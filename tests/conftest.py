"""Shared fixtures: small synthetic AnnData objects."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse


def make_counts(
    n_cells: int = 120,
    n_genes: int = 200,
    n_groups: int = 3,
    samples: tuple[str, ...] = ("S1", "S2"),
    seed: int = 0,
) -> ad.AnnData:
    """Poisson counts with n_groups blocks of up-regulated genes.

    Genes 0-9 are named MT-*, the rest GENE*. Cells carry the loaded-stage
    metadata columns and a ``true_type`` column.
    """
    rng = np.random.default_rng(seed)
    groups = np.arange(n_cells) % n_groups
    rates = np.full((n_cells, n_genes), 1.0)
    block = (n_genes - 10) // n_groups
    for g in range(n_groups):
        start = 10 + g * block
        rates[groups == g, start : start + block // 2] = 8.0
    counts = rng.poisson(rates).astype(np.float32)

    var_names = [f"MT-{i}" for i in range(10)] + [f"GENE{i}" for i in range(10, n_genes)]
    sample_ids = [samples[i % len(samples)] for i in range(n_cells)]
    obs = pd.DataFrame(
        {
            "sample_id": pd.Categorical(sample_ids),
            "patient_id": pd.Categorical([f"P{s[-1]}" for s in sample_ids]),
            "sort_gate": pd.Categorical(["CD45+"] * n_cells),
            "true_type": pd.Categorical([f"type{g}" for g in groups]),
        },
        index=[f"{s}_cell{i}" for i, s in enumerate(sample_ids)],
    )
    return ad.AnnData(
        X=sparse.csr_matrix(counts),
        obs=obs,
        var=pd.DataFrame(index=var_names),
    )


@pytest.fixture
def counts_adata() -> ad.AnnData:
    """Synthetic two-sample count matrix."""
    return make_counts()
