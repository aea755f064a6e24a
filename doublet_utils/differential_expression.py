#!/usr/bin/env python3
"""
Differential expression utilities for single-cell RNA-seq analysis
Two-group per-gene tests used when comparing clusters against each other
"""

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests


def _to_dense(X):
    if hasattr(X, "toarray"):
        return X.toarray()
    return np.asarray(X)


class ClusterComparisonTest:
    """Base class for a per-gene test of one group of cells against another.

    Subclasses implement ``_pvalues`` and get log fold changes, BH correction
    and significance flags from ``compare``.

    Args:
        fdr_threshold: Adjusted p-value cutoff for significance
        lfc_threshold: Minimum absolute log fold change for significance
    """

    name = None

    def __init__(self, fdr_threshold=0.05, lfc_threshold=0.0):
        self.fdr_threshold = fdr_threshold
        self.lfc_threshold = lfc_threshold

    def _pvalues(self, group_data, reference_data):
        raise NotImplementedError

    def compare(self, X, group, reference, var_names=None):
        """Test every gene in ``group`` cells against ``reference`` cells

        Args:
            X: cells x genes log-expression matrix (dense or sparse)
            group: Row indices or boolean mask of the tested cells
            reference: Row indices or boolean mask of the reference cells
            var_names: Optional gene names for the result index

        Returns:
            DataFrame indexed by gene with logFC, P.Value, adj.P.Val,
            significant, upregulated and downregulated columns
        """
        group_data = _to_dense(X[group])
        reference_data = _to_dense(X[reference])

        n_genes = group_data.shape[1]
        if var_names is None:
            var_names = pd.RangeIndex(n_genes)

        logfc = group_data.mean(axis=0) - reference_data.mean(axis=0)

        with np.errstate(divide="ignore", invalid="ignore"):
            pvals = np.asarray(self._pvalues(group_data, reference_data), dtype=float)
        # Constant genes and undersized groups give undefined p-values
        pvals = np.where(np.isfinite(pvals), pvals, 1.0)

        if n_genes > 0:
            adj_pvals = multipletests(pvals, method="fdr_bh")[1]
        else:
            adj_pvals = pvals.copy()

        results_df = pd.DataFrame(
            {"logFC": logfc, "P.Value": pvals, "adj.P.Val": adj_pvals},
            index=pd.Index(var_names, name="gene"),
        )

        results_df["significant"] = (
            (results_df["adj.P.Val"] < self.fdr_threshold)
            & (results_df["logFC"].abs() > self.lfc_threshold)
        )
        results_df["upregulated"] = results_df["significant"] & (results_df["logFC"] > 0)
        results_df["downregulated"] = results_df["significant"] & (
            results_df["logFC"] < 0
        )

        return results_df


class WelchTTest(ClusterComparisonTest):
    """Welch's t-test (unequal variances) on log-expression"""

    name = "t-test"

    def _pvalues(self, group_data, reference_data):
        return stats.ttest_ind(group_data, reference_data, axis=0, equal_var=False)[1]


class WilcoxonTest(ClusterComparisonTest):
    """Wilcoxon rank-sum (Mann-Whitney U) test with normal approximation"""

    name = "wilcoxon"

    def _pvalues(self, group_data, reference_data):
        return stats.mannwhitneyu(
            group_data,
            reference_data,
            axis=0,
            alternative="two-sided",
            method="asymptotic",
        )[1]


DE_TESTS = {
    WelchTTest.name: WelchTTest,
    WilcoxonTest.name: WilcoxonTest,
}


def get_de_test(method="t-test", fdr_threshold=0.05, lfc_threshold=0.0):
    """Build a cluster comparison test by name

    Args:
        method: "t-test" or "wilcoxon"
        fdr_threshold: Adjusted p-value cutoff
        lfc_threshold: Minimum absolute log fold change

    Returns:
        ClusterComparisonTest instance
    """
    if method not in DE_TESTS:
        raise ValueError(
            f"Unknown DE method '{method}', expected one of {sorted(DE_TESTS)}"
        )
    return DE_TESTS[method](fdr_threshold=fdr_threshold, lfc_threshold=lfc_threshold)


def compare_clusters(adata, group, reference, groupby="leiden", method="t-test",
                     fdr_threshold=0.05, lfc_threshold=0.0):
    """Run differential expression between two clusters

    Args:
        adata: AnnData object with log-normalized expression in .X
        group: Cluster label tested for up/down regulation
        reference: Cluster label used as reference
        groupby: Column in adata.obs holding cluster labels
        method: "t-test" or "wilcoxon"
        fdr_threshold: Adjusted p-value cutoff
        lfc_threshold: Minimum absolute log fold change

    Returns:
        DataFrame with one row per gene, sorted by adjusted p-value
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    labels = adata.obs[groupby].astype(str).values
    group_mask = labels == str(group)
    reference_mask = labels == str(reference)

    if group_mask.sum() == 0 or reference_mask.sum() == 0:
        raise ValueError(f"No cells found for cluster '{group}' or '{reference}'")

    de_test = get_de_test(method, fdr_threshold, lfc_threshold)
    results_df = de_test.compare(
        adata.X, group_mask, reference_mask, var_names=adata.var_names
    )

    n_up = results_df["upregulated"].sum()
    n_down = results_df["downregulated"].sum()
    print(f"  {group} vs {reference}: {n_up} up, {n_down} down ({de_test.name})")

    results_df = results_df.reset_index()
    results_df["group"] = str(group)
    results_df["reference"] = str(reference)

    return results_df.sort_values(["adj.P.Val", "gene"]).reset_index(drop=True)
