#!/usr/bin/env python3
"""
Plotting utilities for doublet detection results
"""

import matplotlib.pyplot as plt
import numpy as np
import scanpy as sc
import seaborn as sns


def _save_or_show(fig, save_dir, filename):
    if save_dir:
        fig.savefig(save_dir / filename, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{filename}")
        plt.close(fig)
    else:
        plt.show()


def plot_doublet_density_embedding(
    adata, basis="tsne", key="doublet_density", groupby="leiden", save_dir=None
):
    """Plot clusters and log doublet density side by side on an embedding

    Args:
        adata: AnnData object with an embedding and doublet density scores
        basis: Embedding name ("tsne" or "umap")
        key: Column in adata.obs with the scores
        groupby: Column in adata.obs with cluster labels
        save_dir: Directory to save plot
    """
    if f"X_{basis}" not in adata.obsm:
        print(f"No {basis} found, skipping doublet density visualization")
        return

    adata.obs[f"log_{key}"] = np.log1p(adata.obs[key])

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))

    sc.pl.embedding(
        adata,
        basis=basis,
        color=groupby,
        ax=ax1,
        show=False,
        title="Clusters",
        legend_loc="on data",
    )
    sc.pl.embedding(
        adata,
        basis=basis,
        color=f"log_{key}",
        ax=ax2,
        show=False,
        title="Log doublet density",
        cmap="Reds",
    )

    plt.tight_layout()
    _save_or_show(fig, save_dir, f"doublet_density_{basis}.png")


def plot_doublet_density_by_cluster(
    adata, key="doublet_density", groupby="leiden", save_dir=None
):
    """Boxplot of log doublet density per cluster

    Args:
        adata: AnnData object with doublet density scores
        key: Column in adata.obs with the scores
        groupby: Column in adata.obs with cluster labels
        save_dir: Directory to save plot
    """
    plot_df = adata.obs[[groupby, key]].copy()
    plot_df["log_density"] = np.log1p(plot_df[key])

    fig, ax = plt.subplots(figsize=(10, 5))
    sns.boxplot(data=plot_df, x=groupby, y="log_density", ax=ax, color="skyblue")
    ax.set_xlabel("Cluster")
    ax.set_ylabel("Log doublet density")
    ax.set_title("Doublet density per cluster")

    plt.tight_layout()
    _save_or_show(fig, save_dir, "doublet_density_by_cluster.png")


def plot_cluster_doublet_summary(results, save_dir=None):
    """Plot N and library size ratios per query cluster

    Args:
        results: Output of find_doublet_clusters
        save_dir: Directory to save plot
    """
    queries = results.index.astype(str)

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))

    ax1.bar(queries, results["N"], color="steelblue", edgecolor="black")
    ax1.set_xlabel("Query cluster")
    ax1.set_ylabel("N (unique DE genes vs both parents)")
    ax1.set_title("Cluster doublet scores")

    ax2.scatter(results["lib.size1"], results["lib.size2"], s=results["prop"] * 2000 + 20)
    for query, row in results.iterrows():
        ax2.annotate(str(query), (row["lib.size1"], row["lib.size2"]))
    ax2.axvline(1, color="gray", linestyle="--", linewidth=1)
    ax2.axhline(1, color="gray", linestyle="--", linewidth=1)
    ax2.set_xlabel("lib.size1 (parent1 / query)")
    ax2.set_ylabel("lib.size2 (parent2 / query)")
    ax2.set_title("Library size ratios (point size = prop)")

    plt.tight_layout()
    _save_or_show(fig, save_dir, "cluster_doublet_summary.png")
