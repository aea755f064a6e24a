#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation, outlier flagging, and filtering
"""

import numpy as np
import scanpy as sc

from doublet_utils.doublet_params import QC_PARAMS


def calculate_qc_metrics(adata, mt_pattern=QC_PARAMS["mt_pattern"]):
    """Calculate QC metrics

    Args:
        adata: AnnData object with raw counts
        mt_pattern: Prefix of mitochondrial gene names

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    adata.var["mt"] = adata.var_names.str.startswith(mt_pattern)

    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True
    )
    adata.obs["percent_mt"] = adata.obs["pct_counts_mt"]

    return adata


def is_outlier(values, nmads=QC_PARAMS["nmads"], log=False, kind="both"):
    """Flag values more than nmads median absolute deviations from the median

    Args:
        values: 1D array of a QC metric
        nmads: Number of MADs defining the cutoff
        log: Compare on log scale (for counts and genes)
        kind: "lower", "higher" or "both" tails

    Returns:
        Boolean array, True for outliers
    """
    values = np.asarray(values, dtype=float)
    if log:
        values = np.log(values)

    median = np.median(values)
    # Scaled to match the standard deviation for normal data
    mad = 1.4826 * np.median(np.abs(values - median))

    lower = values < median - nmads * mad
    higher = values > median + nmads * mad

    if kind == "lower":
        return lower
    if kind == "higher":
        return higher
    if kind == "both":
        return lower | higher
    raise ValueError(f"kind must be 'lower', 'higher' or 'both', got '{kind}'")


def flag_qc_outliers(adata, nmads=QC_PARAMS["nmads"]):
    """Flag low-quality cells

    Small libraries, few detected genes and high mitochondrial content are
    called on MAD cutoffs. Results go to adata.obs["qc_outlier"].

    Args:
        adata: AnnData object with QC metrics
        nmads: Number of MADs defining the cutoff

    Returns:
        AnnData object with outlier flags added
    """
    print("Flagging QC outliers...")

    adata.obs["low_lib_size"] = is_outlier(
        adata.obs["total_counts"], nmads=nmads, log=True, kind="lower"
    )
    adata.obs["low_n_features"] = is_outlier(
        adata.obs["n_genes_by_counts"], nmads=nmads, log=True, kind="lower"
    )
    adata.obs["high_mt_percent"] = is_outlier(
        adata.obs["percent_mt"], nmads=nmads, kind="higher"
    )
    adata.obs["qc_outlier"] = (
        adata.obs["low_lib_size"]
        | adata.obs["low_n_features"]
        | adata.obs["high_mt_percent"]
    )

    summary = adata.obs[
        ["low_lib_size", "low_n_features", "high_mt_percent", "qc_outlier"]
    ].sum()
    print("QC outlier summary:")
    print(summary)

    return adata


def filter_qc_outliers(adata, min_cells=QC_PARAMS["min_cells"]):
    """Drop flagged cells and genes detected in too few cells

    Args:
        adata: AnnData object with outlier flags
        min_cells: Minimum cells expressing a gene

    Returns:
        Filtered AnnData object
    """
    print("Applying QC filters...")
    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    adata = adata[~adata.obs["qc_outlier"].values].copy()
    sc.pp.filter_genes(adata, min_cells=min_cells)

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata
