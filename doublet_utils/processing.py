#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles normalization, PCA, clustering and t-SNE
"""

import scanpy as sc

from doublet_utils.doublet_params import PROCESSING_PARAMS


def normalize_data(adata, target_sum=PROCESSING_PARAMS["target_sum"]):
    """Library-size normalize and log transform

    Raw counts are kept in layers["counts"] for library sizes and
    doublet simulation.

    Args:
        adata: AnnData object with raw counts in .X

    Returns:
        Normalized AnnData object
    """
    print("Normalizing data...")

    adata.layers["counts"] = adata.X.copy()
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)

    return adata


def run_pca_clustering(
    adata,
    n_top_genes=PROCESSING_PARAMS["n_top_genes"],
    n_pcs=PROCESSING_PARAMS["n_pcs"],
    n_neighbors=PROCESSING_PARAMS["n_neighbors"],
    resolution=PROCESSING_PARAMS["resolution"],
    random_state=PROCESSING_PARAMS["random_state"],
    run_tsne=True,
):
    """Run HVG selection, PCA, Leiden clustering and t-SNE

    Args:
        adata: Log-normalized AnnData object
        n_top_genes: Number of highly variable genes for PCA
        n_pcs: Number of principal components
        n_neighbors: Neighbours in the kNN graph
        resolution: Leiden resolution
        random_state: Seed for PCA, Leiden and t-SNE
        run_tsne: Whether to compute a t-SNE embedding

    Returns:
        AnnData object with embeddings and clusters in obs["leiden"]
    """
    n_top_genes = min(n_top_genes, adata.n_vars)
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, flavor="seurat")

    n_comps = min(n_pcs, adata.n_obs - 1, int(adata.var["highly_variable"].sum()) - 1)
    print("Running PCA...")
    sc.tl.pca(
        adata,
        n_comps=n_comps,
        mask_var="highly_variable",
        svd_solver="arpack",
        random_state=random_state,
    )

    print("Computing neighborhood graph...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_comps, random_state=random_state)

    print("Clustering...")
    sc.tl.leiden(
        adata,
        resolution=resolution,
        random_state=random_state,
    )

    if run_tsne:
        print("Running t-SNE...")
        sc.tl.tsne(adata, n_pcs=n_comps, random_state=random_state)

    print(f"Found {adata.obs['leiden'].nunique()} clusters")

    return adata
