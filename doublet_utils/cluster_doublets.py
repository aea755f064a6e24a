#!/usr/bin/env python3
"""
Cluster-based doublet detection for single-cell RNA-seq analysis

Every cluster is treated in turn as a query and compared against every pair
of other clusters (its putative parents). A query that has few genes
up-regulated against both parents, a library size at least as large as
theirs and a small share of the cells is a candidate doublet population.
"""

import warnings
from concurrent.futures import ThreadPoolExecutor
from itertools import combinations

import numpy as np
import pandas as pd

from doublet_utils.differential_expression import get_de_test
from doublet_utils.doublet_params import CLUSTER_DOUBLET_PARAMS


class InsufficientClustersError(ValueError):
    """Raised when fewer than three clusters have cells"""


class AssignmentMismatchError(ValueError):
    """Raised when cluster labels do not cover exactly the cells of the matrix"""


class DegenerateClusterWarning(UserWarning):
    """Emitted when a cluster is too small to be tested"""


PAIR_COLUMNS = [
    "parent1",
    "parent2",
    "N",
    "best",
    "p.value",
    "lib.size1",
    "lib.size2",
    "degenerate",
]


def get_cluster_labels(adata, groupby="leiden", clusters=None):
    """Resolve one cluster label per cell and the ordered set of clusters

    Args:
        adata: AnnData object
        groupby: Column in adata.obs with cluster labels (used if clusters is None)
        clusters: Optional labels, either a Series indexed by cell name or an
            array aligned with adata.obs_names

    Returns:
        Tuple of (labels Series aligned to adata.obs_names, list of cluster ids)
    """
    if clusters is None:
        if groupby not in adata.obs:
            raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
        labels = adata.obs[groupby]
    elif isinstance(clusters, pd.Series):
        labels = clusters
        if labels.index.has_duplicates:
            raise AssignmentMismatchError("Cluster assignment lists a cell more than once")
        missing = adata.obs_names.difference(labels.index)
        extra = labels.index.difference(adata.obs_names)
        if len(missing) or len(extra):
            raise AssignmentMismatchError(
                f"Cluster assignment does not match the matrix: {len(missing)} cells "
                f"without a label, {len(extra)} labels for unknown cells"
            )
        labels = labels.reindex(adata.obs_names)
    else:
        values = np.asarray(clusters)
        if values.ndim != 1 or len(values) != adata.n_obs:
            raise AssignmentMismatchError(
                f"Got {len(values)} cluster labels for {adata.n_obs} cells"
            )
        labels = pd.Series(values, index=adata.obs_names)

    if labels.isna().any():
        raise AssignmentMismatchError(
            f"{int(labels.isna().sum())} cells have no cluster assignment"
        )

    if isinstance(labels.dtype, pd.CategoricalDtype):
        cluster_ids = list(labels.cat.categories)
    else:
        # Labels may mix types; order them the way ties are broken
        cluster_ids = sorted(pd.unique(labels.values).tolist(), key=str)

    return labels, cluster_ids


def get_library_sizes(adata, library_sizes=None):
    """Per-cell total counts

    Uses, in order: explicit values, obs["total_counts"], the "counts" layer,
    adata.raw, or the row sums of expm1(X).
    """
    if library_sizes is not None:
        sizes = np.asarray(library_sizes, dtype=float)
        if sizes.shape != (adata.n_obs,):
            raise ValueError(f"Got {sizes.size} library sizes for {adata.n_obs} cells")
        return sizes

    if "total_counts" in adata.obs:
        return adata.obs["total_counts"].to_numpy(dtype=float)

    if "counts" in adata.layers:
        X = adata.layers["counts"]
    elif adata.raw is not None:
        X = adata.raw.X
    else:
        X = adata.X.expm1() if hasattr(adata.X, "expm1") else np.expm1(adata.X)

    return np.asarray(X.sum(axis=1), dtype=float).ravel()


def _run_comparisons(X, cell_indices, pairs, de_test, n_jobs):
    """Test each (query, other) cluster pair once; order follows ``pairs``"""

    def _compare(pair):
        query, other = pair
        return de_test.compare(X, cell_indices[query], cell_indices[other])

    if n_jobs is None or n_jobs <= 1:
        results = [_compare(pair) for pair in pairs]
    else:
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            results = list(executor.map(_compare, pairs))

    return dict(zip(pairs, results))


def _score_triplet(res1, res2, var_names, direction):
    """Count genes significant against both parents in the same direction"""
    up1 = res1["logFC"].to_numpy() > 0
    up2 = res2["logFC"].to_numpy() > 0

    hits = res1["upregulated"].to_numpy() & res2["upregulated"].to_numpy()
    consistent = up1 & up2
    if direction == "any":
        hits = hits | (res1["downregulated"].to_numpy() & res2["downregulated"].to_numpy())
        consistent = consistent | (~up1 & ~up2)

    # A gene is only as significant as its weaker comparison
    combined = np.maximum(res1["adj.P.Val"].to_numpy(), res2["adj.P.Val"].to_numpy())

    best, best_p = None, 1.0
    candidates = np.flatnonzero(consistent)
    if len(candidates):
        best_idx = candidates[np.argmin(combined[candidates])]
        best, best_p = var_names[best_idx], float(combined[best_idx])

    return int(hits.sum()), best, best_p


def _select_best_pair(pairs_df):
    """Order candidate parent pairs so the chosen pair comes first

    Powered pairs before degenerate ones, then smallest N, then the largest
    summed library size ratio, then parent labels.
    """
    keyed = pairs_df.assign(
        _lib_sum=(pairs_df["lib.size1"] + pairs_df["lib.size2"]).fillna(-np.inf),
        _p1=pairs_df["parent1"].astype(str),
        _p2=pairs_df["parent2"].astype(str),
    )
    keyed = keyed.sort_values(
        ["degenerate", "N", "_lib_sum", "_p1", "_p2"],
        ascending=[True, True, False, True, True],
        kind="mergesort",
    )
    return keyed[PAIR_COLUMNS].reset_index(drop=True)


def find_doublet_clusters(
    adata,
    groupby="leiden",
    clusters=None,
    method=CLUSTER_DOUBLET_PARAMS["method"],
    fdr_threshold=CLUSTER_DOUBLET_PARAMS["fdr_threshold"],
    lfc_threshold=CLUSTER_DOUBLET_PARAMS["lfc_threshold"],
    direction=CLUSTER_DOUBLET_PARAMS["direction"],
    min_cells=CLUSTER_DOUBLET_PARAMS["min_cells"],
    library_sizes=None,
    layer=None,
    n_jobs=CLUSTER_DOUBLET_PARAMS["n_jobs"],
):
    """Identify clusters that look like doublets of two other clusters

    For every query cluster and every unordered pair of other clusters, count
    the genes significantly DE in the query against both parents in the same
    direction (N). The parent pair with the smallest N is reported per query.

    Args:
        adata: AnnData object with log-normalized expression in .X (or `layer`)
        groupby: Column in adata.obs with cluster labels
        clusters: Optional labels overriding `groupby` (Series indexed by cell
            name, or array aligned with adata.obs_names)
        method: "t-test", "wilcoxon" or a ClusterComparisonTest instance
        fdr_threshold: Adjusted p-value cutoff for a gene to count
        lfc_threshold: Minimum absolute log fold change for a gene to count
        direction: "up" counts genes higher in the query, "any" also counts
            genes lower in the query than both parents
        min_cells: Clusters with fewer cells get N = 0 for all their triplets
        library_sizes: Optional per-cell total counts
        layer: Layer to test instead of .X
        n_jobs: Number of worker threads for the pairwise comparisons

    Returns:
        DataFrame indexed by query cluster, sorted by N then prop, with columns
        parent1, parent2, N, best, p.value, lib.size1, lib.size2, prop,
        degenerate and all.pairs (a DataFrame of every candidate pair)
    """
    if direction not in ("up", "any"):
        raise ValueError(f"direction must be 'up' or 'any', got '{direction}'")

    labels, cluster_ids = get_cluster_labels(adata, groupby=groupby, clusters=clusters)
    lib_sizes = get_library_sizes(adata, library_sizes)
    X = adata.layers[layer] if layer is not None else adata.X
    var_names = np.asarray(adata.var_names)

    if isinstance(method, str):
        de_test = get_de_test(method, fdr_threshold, lfc_threshold)
    else:
        de_test = method

    label_values = labels.to_numpy()
    cell_indices = [np.flatnonzero(label_values == cid) for cid in cluster_ids]
    n_cells = np.array([len(idx) for idx in cell_indices])
    n_clusters = len(cluster_ids)
    n_populated = int((n_cells > 0).sum())
    # Empty categories do not count towards the three clusters a triplet needs
    if n_populated < 3:
        raise InsufficientClustersError(
            f"Need at least 3 clusters with cells for doublet detection, found {n_populated}"
        )

    print("Scoring cluster doublets...")
    median_lib = np.array(
        [np.median(lib_sizes[idx]) if len(idx) else np.nan for idx in cell_indices]
    )
    degenerate = n_cells < min_cells

    if degenerate.any():
        small = [str(cluster_ids[i]) for i in np.flatnonzero(degenerate)]
        warnings.warn(
            f"Clusters with fewer than {min_cells} cells get N = 0: {', '.join(small)}",
            DegenerateClusterWarning,
            stacklevel=2,
        )

    # Every triplet reuses the same query-vs-parent tests
    comparisons = [
        (q, o)
        for q in range(n_clusters)
        for o in range(n_clusters)
        if q != o and not degenerate[q] and not degenerate[o]
    ]
    n_triplets = n_clusters * (n_clusters - 1) * (n_clusters - 2) // 2
    print(f"  {n_clusters} clusters, {n_triplets} candidate triplets")
    print(f"  Running {len(comparisons)} pairwise comparisons ({de_test.name})")

    de_results = _run_comparisons(X, cell_indices, comparisons, de_test, n_jobs)

    rows = []
    for q in range(n_clusters):
        others = [i for i in range(n_clusters) if i != q]
        pair_records = []

        for a, b in combinations(others, 2):
            is_degenerate = bool(degenerate[q] or degenerate[a] or degenerate[b])
            if is_degenerate:
                n_genes, best, best_p = 0, None, 1.0
            else:
                n_genes, best, best_p = _score_triplet(
                    de_results[(q, a)], de_results[(q, b)], var_names, direction
                )

            with np.errstate(divide="ignore", invalid="ignore"):
                lib1 = median_lib[a] / median_lib[q]
                lib2 = median_lib[b] / median_lib[q]

            pair_records.append(
                {
                    "parent1": cluster_ids[a],
                    "parent2": cluster_ids[b],
                    "N": n_genes,
                    "best": best,
                    "p.value": best_p,
                    "lib.size1": lib1,
                    "lib.size2": lib2,
                    "degenerate": is_degenerate,
                }
            )

        all_pairs = _select_best_pair(pd.DataFrame(pair_records, columns=PAIR_COLUMNS))
        chosen = all_pairs.iloc[0]

        rows.append(
            {
                "query": cluster_ids[q],
                "parent1": chosen["parent1"],
                "parent2": chosen["parent2"],
                "N": int(chosen["N"]),
                "best": chosen["best"],
                "p.value": float(chosen["p.value"]),
                "lib.size1": float(chosen["lib.size1"]),
                "lib.size2": float(chosen["lib.size2"]),
                "prop": n_cells[q] / n_cells.sum(),
                "degenerate": bool(degenerate[q]),
                "all.pairs": all_pairs,
            }
        )

    results = pd.DataFrame(rows)
    results["_query"] = results["query"].astype(str)
    results = results.sort_values(["N", "prop", "_query"], kind="mergesort")
    results = results.drop(columns="_query").set_index("query")

    print("\nCluster doublet summary (most doublet-like first):")
    print(results.drop(columns="all.pairs").to_string())

    return results


def all_pairs_table(results):
    """Flatten the all.pairs column into one long table

    Args:
        results: Output of find_doublet_clusters

    Returns:
        DataFrame with a query column plus every candidate pair column
    """
    tables = []
    for query, all_pairs in results["all.pairs"].items():
        table = all_pairs.copy()
        table.insert(0, "query", query)
        tables.append(table)

    return pd.concat(tables, ignore_index=True)


def flag_doublet_clusters(results, max_n=None, max_prop=None, max_lib_ratio=None):
    """Shortlist candidate doublet clusters for manual review

    Unset thresholds do not filter; there is no universal cutoff.

    Args:
        results: Output of find_doublet_clusters
        max_n: Keep queries with N at most this
        max_prop: Keep queries holding at most this fraction of cells
        max_lib_ratio: Keep queries whose lib.size1 and lib.size2 are both at
            most this (doublets usually carry more RNA than their parents)

    Returns:
        List of query cluster ids in result order
    """
    keep = pd.Series(True, index=results.index)
    if max_n is not None:
        keep &= results["N"] <= max_n
    if max_prop is not None:
        keep &= results["prop"] <= max_prop
    if max_lib_ratio is not None:
        keep &= (results["lib.size1"] <= max_lib_ratio) & (
            results["lib.size2"] <= max_lib_ratio
        )

    return list(results.index[keep])
