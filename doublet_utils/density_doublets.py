#!/usr/bin/env python3
"""
Simulation-based doublet detection for single-cell RNA-seq analysis

Artificial doublets are made by adding up the counts of random cell pairs.
Cells sitting in neighbourhoods dense with simulated doublets, relative to
real cells, get high doublet density scores.
"""

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scrublet as scr
from scipy import sparse
from scipy.spatial import cKDTree
from sklearn.decomposition import PCA
from sklearn.neighbors import NearestNeighbors

from doublet_utils.doublet_params import DENSITY_DOUBLET_PARAMS


def get_raw_counts(adata):
    """Return raw counts as CSR: "counts" layer, then adata.raw, then .X"""
    if "counts" in adata.layers:
        X = adata.layers["counts"]
    elif adata.raw is not None:
        X = adata.raw.X
    else:
        X = adata.X

    return sparse.csr_matrix(X, dtype=np.float64)


def simulate_doublets(counts, n_sims, random_state=0):
    """Add the counts of random cell pairs

    Args:
        counts: cells x genes CSR count matrix
        n_sims: Number of doublets to simulate
        random_state: Seed for picking the pairs

    Returns:
        Tuple of (simulated CSR counts, array of picked cell index pairs)
    """
    rng = np.random.default_rng(random_state)
    pair_idx = rng.integers(0, counts.shape[0], size=(n_sims, 2))
    sim_counts = counts[pair_idx[:, 0]] + counts[pair_idx[:, 1]]

    return sparse.csr_matrix(sim_counts), pair_idx


def _log_normalize(counts, size_factors):
    scaled = sparse.diags(1.0 / size_factors) @ counts
    return sparse.csr_matrix(scaled).log1p()


def _top_variable_genes(norm, n_top_genes):
    """Indices of the most variable genes of the log-normalized real cells"""
    if n_top_genes >= norm.shape[1]:
        return np.arange(norm.shape[1])

    # Scaling differs from normalize_total, so select on our own log values
    hvg = sc.pp.highly_variable_genes(
        anndata.AnnData(norm), n_top_genes=n_top_genes, flavor="seurat", inplace=False
    )
    return np.flatnonzero(hvg["highly_variable"].to_numpy())


def compute_doublet_density(
    adata,
    n_sims=DENSITY_DOUBLET_PARAMS["n_sims"],
    k=DENSITY_DOUBLET_PARAMS["k"],
    n_pcs=DENSITY_DOUBLET_PARAMS["n_pcs"],
    n_top_genes=DENSITY_DOUBLET_PARAMS["n_top_genes"],
    random_state=DENSITY_DOUBLET_PARAMS["random_state"],
    key_added="doublet_density",
):
    """Score each cell by the density of simulated doublets around it

    Real and simulated profiles are log-normalized with the same scaling
    (a doublet's size factor is the sum of its two cells'), projected onto
    the PCA of the real cells, and for every cell the number of simulated
    doublets within the distance of its k-th nearest real neighbour is
    compared with the k real neighbours in that radius.

    Args:
        adata: AnnData object with raw counts in layers["counts"], .raw or .X
        n_sims: Number of simulated doublets
        k: Number of real neighbours defining each cell's radius
        n_pcs: Number of principal components
        n_top_genes: Number of most variable genes used for PCA
        random_state: Seed for simulation and PCA
        key_added: Column in adata.obs for the scores

    Returns:
        AnnData object with doublet density scores added
    """
    print("Computing simulated doublet density...")

    counts = get_raw_counts(adata)
    n_cells = counts.shape[0]
    if n_cells <= k:
        raise ValueError(f"Need more than k={k} cells, got {n_cells}")

    lib_sizes = np.asarray(counts.sum(axis=1)).ravel()
    if (lib_sizes <= 0).any():
        raise ValueError("All cells need a positive library size")
    size_factors = lib_sizes / lib_sizes.mean()

    sim_counts, _ = simulate_doublets(counts, n_sims, random_state=random_state)
    sim_size_factors = np.asarray(sim_counts.sum(axis=1)).ravel() / lib_sizes.mean()

    norm_real = _log_normalize(counts, size_factors)
    norm_sim = _log_normalize(sim_counts, sim_size_factors)

    genes = _top_variable_genes(norm_real, n_top_genes)
    real_data = norm_real[:, genes].toarray()
    sim_data = norm_sim[:, genes].toarray()

    n_comps = min(n_pcs, real_data.shape[1], n_cells - 1)
    pca = PCA(n_components=n_comps, random_state=random_state)
    real_pcs = pca.fit_transform(real_data)
    sim_pcs = pca.transform(sim_data)

    # First neighbour is the cell itself
    nbrs = NearestNeighbors(n_neighbors=k + 1).fit(real_pcs)
    distances, _ = nbrs.kneighbors(real_pcs)
    radius = distances[:, k]

    sim_hits = cKDTree(sim_pcs).query_ball_point(real_pcs, r=radius, return_length=True)

    scores = (np.asarray(sim_hits, dtype=float) / n_sims) / (k / n_cells)
    adata.obs[key_added] = scores

    print(f"  Cells: {n_cells}, simulated doublets: {n_sims}, PCs: {n_comps}")
    print(f"  Score range: {scores.min():.3f} - {scores.max():.3f}")

    return adata


def summarize_density_by_cluster(adata, groupby="leiden", key="doublet_density"):
    """Median and maximum doublet density per cluster

    Args:
        adata: AnnData object with doublet density scores
        groupby: Column in adata.obs with cluster labels
        key: Column in adata.obs with the scores

    Returns:
        DataFrame indexed by cluster, sorted by median density (highest first)
    """
    for col in (groupby, key):
        if col not in adata.obs:
            raise KeyError(f"'{col}' not found in adata.obs")

    summary = adata.obs.groupby(groupby, observed=True)[key].agg(["count", "median", "max"])
    summary.columns = ["n_cells", "median_density", "max_density"]
    summary = summary.sort_values("median_density", ascending=False, kind="mergesort")

    print("\nDoublet density per cluster:")
    print(summary)

    return summary


def run_scrublet(
    adata,
    sample_col=None,
    expected_doublet_rate=DENSITY_DOUBLET_PARAMS["expected_doublet_rate"],
    min_counts=2,
    min_cells=3,
    min_gene_variability_pctl=85,
    n_prin_comps=30,
    manual_threshold=None,
    min_cells_per_sample=100,
    random_state=DENSITY_DOUBLET_PARAMS["random_state"],
):
    """Scrublet doublet scores, per sample when sample_col is given

    Args:
        adata: AnnData object with raw counts in layers["counts"], .raw or .X
        sample_col: Column name for sample identification (None = one sample)
        expected_doublet_rate: Expected doublet rate (default 0.06 for 10x)
        manual_threshold: If set, use this threshold instead of automatic
        min_cells_per_sample: Samples with fewer cells are skipped

    Returns:
        AnnData object with doublet_score and predicted_doublet columns
    """
    print("Running Scrublet...")

    counts = get_raw_counts(adata)
    all_scores = np.zeros(adata.n_obs)
    all_predictions = np.zeros(adata.n_obs, dtype=bool)

    if sample_col is None:
        samples = {"all": np.arange(adata.n_obs)}
    else:
        labels = adata.obs[sample_col].astype(str).values
        samples = {s: np.flatnonzero(labels == s) for s in pd.unique(labels)}

    for sample, sample_indices in samples.items():
        print(f"\nProcessing sample: {sample}")

        if len(sample_indices) < min_cells_per_sample:
            print(f"  Skipping - only {len(sample_indices)} cells")
            continue

        scrub = scr.Scrublet(
            counts[sample_indices],
            expected_doublet_rate=expected_doublet_rate,
            random_state=random_state,
        )
        doublet_scores, predicted_doublets = scrub.scrub_doublets(
            min_counts=min_counts,
            min_cells=min_cells,
            min_gene_variability_pctl=min_gene_variability_pctl,
            n_prin_comps=n_prin_comps,
            verbose=False,
        )

        if manual_threshold is not None:
            predicted_doublets = doublet_scores > manual_threshold
        elif predicted_doublets is None:
            # Automatic threshold could not be found
            predicted_doublets = np.zeros(len(doublet_scores), dtype=bool)

        all_scores[sample_indices] = doublet_scores
        all_predictions[sample_indices] = predicted_doublets

        n_doublets = int(np.sum(predicted_doublets))
        print(f"  Cells: {len(doublet_scores)}")
        print(f"  Doublets: {n_doublets} ({n_doublets / len(doublet_scores) * 100:.1f}%)")

    adata.obs["doublet_score"] = all_scores
    adata.obs["predicted_doublet"] = all_predictions

    return adata
