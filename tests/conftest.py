import anndata
import matplotlib
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

matplotlib.use("Agg")


def make_log_expression_adata(cluster_sizes, profiles, n_genes=60, noise=0.3, seed=0,
                              lib_size=5000.0, categories=None):
    """Log-expression AnnData with one mean profile per cluster

    Args:
        cluster_sizes: dict of cluster label -> number of cells
        profiles: dict of cluster label -> mean log-expression per gene
        categories: Optional full category list (may include empty clusters)
    """
    rng = np.random.default_rng(seed)
    blocks, labels = [], []
    for label, n_cells in cluster_sizes.items():
        if n_cells == 0:
            continue
        block = profiles[label] + rng.normal(0, noise, size=(n_cells, n_genes))
        blocks.append(np.clip(block, 0, None))
        labels.extend([label] * n_cells)

    X = np.vstack(blocks)
    adata = anndata.AnnData(X)
    adata.obs_names = [f"cell{i}" for i in range(adata.n_obs)]
    adata.var_names = [f"gene{i}" for i in range(n_genes)]
    adata.obs["cluster"] = pd.Categorical(
        labels, categories=categories or list(cluster_sizes)
    )
    adata.obs["total_counts"] = rng.normal(lib_size, lib_size * 0.04, size=adata.n_obs)

    return adata


def marker_profile(n_genes, high_genes, high=3.0, base=1.0):
    profile = np.full(n_genes, base)
    profile[high_genes] = high
    return profile


@pytest.fixture
def doublet_adata():
    """A and B are real types, C (5 cells) sits halfway between them"""
    n_genes = 60
    profile_a = marker_profile(n_genes, slice(0, 20))
    profile_b = marker_profile(n_genes, slice(20, 40))
    profiles = {"A": profile_a, "B": profile_b, "C": (profile_a + profile_b) / 2}

    return make_log_expression_adata({"A": 100, "B": 100, "C": 5}, profiles, n_genes)


@pytest.fixture
def four_cluster_adata():
    n_genes = 60
    profile_a = marker_profile(n_genes, slice(0, 15))
    profile_b = marker_profile(n_genes, slice(15, 30))
    profile_d = marker_profile(n_genes, slice(30, 45))
    profiles = {
        "A": profile_a,
        "B": profile_b,
        "C": (profile_a + profile_b) / 2,
        "D": profile_d,
    }

    return make_log_expression_adata(
        {"A": 80, "B": 80, "C": 10, "D": 80}, profiles, n_genes, seed=1
    )


@pytest.fixture
def count_adata():
    """Raw counts for two cell types plus 20 heterotypic doublets"""
    rng = np.random.default_rng(42)
    n_genes = 50
    rate_a = np.ones(n_genes)
    rate_a[:25] = 10
    rate_b = np.ones(n_genes)
    rate_b[25:] = 10

    cells_a = rng.poisson(rate_a, size=(150, n_genes))
    cells_b = rng.poisson(rate_b, size=(150, n_genes))
    doublets = rng.poisson(rate_a, size=(20, n_genes)) + rng.poisson(rate_b, size=(20, n_genes))

    counts = np.vstack([cells_a, cells_b, doublets]).astype(float)
    adata = anndata.AnnData(sparse.csr_matrix(counts))
    adata.obs_names = [f"cell{i}" for i in range(adata.n_obs)]
    adata.var_names = [f"gene{i}" for i in range(n_genes)]
    adata.obs["cell_type"] = pd.Categorical(["A"] * 150 + ["B"] * 150 + ["doublet"] * 20)

    return adata
