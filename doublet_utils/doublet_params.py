#!/usr/bin/env python3
"""
Parameters for the doublet detection workflow

This file centralizes all thresholds used in the pipeline.
Modify these values to adjust QC stringency and doublet calling.
"""

# QC outlier flagging
QC_PARAMS = {
    "nmads": 3,  # Number of MADs from the median to call an outlier
    "mt_pattern": "mt-",  # Mouse mitochondrial genes (use "MT-" for human)
    "min_cells": 1,  # Drop genes detected in fewer cells than this
}

# Normalization, dimensionality reduction and clustering
PROCESSING_PARAMS = {
    "target_sum": 1e4,  # Counts per cell after normalization
    "n_top_genes": 2000,  # Highly variable genes kept for PCA
    "n_pcs": 20,  # Principal components used for the neighbour graph
    "n_neighbors": 10,
    "resolution": 0.6,  # Leiden resolution
    "random_state": 0,
}

# Cluster-based doublet detection (triplets of query + two parents)
CLUSTER_DOUBLET_PARAMS = {
    "method": "t-test",  # "t-test" or "wilcoxon"
    "fdr_threshold": 0.05,  # Adjusted p-value cutoff for a gene to count
    "lfc_threshold": 0.0,  # Minimum absolute log fold change
    "direction": "up",  # "up" counts genes higher in the query, "any" both ways
    "min_cells": 2,  # Clusters smaller than this get N = 0
    "n_jobs": 1,
}

# Simulation-based doublet density
DENSITY_DOUBLET_PARAMS = {
    "n_sims": 10000,  # Number of simulated doublets
    "k": 50,  # Neighbours defining the local radius
    "n_pcs": 50,
    "n_top_genes": 1000,
    "random_state": 0,
    "expected_doublet_rate": 0.06,  # Scrublet cross-check
}


def get_param_summary():
    """Return a formatted summary of current parameter settings"""
    summary = [
        "=== Doublet Workflow Settings ===",
        "\nQC:",
        f"  - Outlier cutoff: {QC_PARAMS['nmads']} MADs",
        f"  - Mitochondrial prefix: {QC_PARAMS['mt_pattern']}",
        "\nClustering:",
        f"  - HVGs: {PROCESSING_PARAMS['n_top_genes']}",
        f"  - PCs: {PROCESSING_PARAMS['n_pcs']}",
        f"  - Leiden resolution: {PROCESSING_PARAMS['resolution']}",
        "\nCluster doublets:",
        f"  - Test: {CLUSTER_DOUBLET_PARAMS['method']}",
        f"  - FDR: {CLUSTER_DOUBLET_PARAMS['fdr_threshold']}",
        f"  - Direction: {CLUSTER_DOUBLET_PARAMS['direction']}",
        "\nDoublet density:",
        f"  - Simulated doublets: {DENSITY_DOUBLET_PARAMS['n_sims']}",
        f"  - Neighbours: {DENSITY_DOUBLET_PARAMS['k']}",
    ]

    return "\n".join(summary)


def validate_params():
    """Validate that parameters make sense"""
    errors = []

    if QC_PARAMS["nmads"] <= 0:
        errors.append("nmads must be positive")

    if not 0 < CLUSTER_DOUBLET_PARAMS["fdr_threshold"] < 1:
        errors.append("fdr_threshold must be between 0 and 1")

    if CLUSTER_DOUBLET_PARAMS["lfc_threshold"] < 0:
        errors.append("lfc_threshold must be non-negative")

    if CLUSTER_DOUBLET_PARAMS["direction"] not in ("up", "any"):
        errors.append("direction must be 'up' or 'any'")

    if CLUSTER_DOUBLET_PARAMS["method"] not in ("t-test", "wilcoxon"):
        errors.append("method must be 't-test' or 'wilcoxon'")

    if CLUSTER_DOUBLET_PARAMS["min_cells"] < 1:
        errors.append("min_cells must be at least 1")

    if DENSITY_DOUBLET_PARAMS["k"] < 1 or DENSITY_DOUBLET_PARAMS["n_sims"] < 1:
        errors.append("k and n_sims must be at least 1")

    if not 0 < DENSITY_DOUBLET_PARAMS["expected_doublet_rate"] < 1:
        errors.append("expected_doublet_rate must be between 0 and 1")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_params()
