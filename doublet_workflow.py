#!/usr/bin/env python3
"""
Single-cell RNA-seq doublet detection workflow

This script performs:
1. Count matrix loading
2. Quality control with MAD-based outlier removal
3. Normalization, PCA, clustering and t-SNE
4. Cluster-based doublet detection (query cluster vs. parent pairs)
5. Simulation-based doublet density per cell

uv run python doublet_workflow.py --input data/filtered_feature_bc_matrix
"""

import warnings
import argparse
import matplotlib
import scanpy as sc
from pathlib import Path

from doublet_utils.data_loader import load_count_matrix
from doublet_utils.qc_utils import (
    calculate_qc_metrics,
    flag_qc_outliers,
    filter_qc_outliers,
)
from doublet_utils.processing import normalize_data, run_pca_clustering
from doublet_utils.cluster_doublets import (
    DegenerateClusterWarning,
    all_pairs_table,
    find_doublet_clusters,
)
from doublet_utils.density_doublets import (
    compute_doublet_density,
    summarize_density_by_cluster,
)
from doublet_utils.doublet_plots import (
    plot_cluster_doublet_summary,
    plot_doublet_density_by_cluster,
    plot_doublet_density_embedding,
)
from doublet_utils.doublet_params import (
    CLUSTER_DOUBLET_PARAMS,
    DENSITY_DOUBLET_PARAMS,
    get_param_summary,
)

# Configure scanpy
sc.settings.verbosity = 2
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Keep our own degeneracy notes visible, silence library chatter
warnings.filterwarnings("ignore")
warnings.simplefilter("always", DegenerateClusterWarning)


def main(
    input_path,
    output_dir="doublet_results",
    plots_dir_path="plots",
    method=CLUSTER_DOUBLET_PARAMS["method"],
    n_jobs=CLUSTER_DOUBLET_PARAMS["n_jobs"],
    n_sims=DENSITY_DOUBLET_PARAMS["n_sims"],
    seed=DENSITY_DOUBLET_PARAMS["random_state"],
):
    """Main analysis pipeline

    Args:
        input_path: 10x directory, .mtx or .h5 count matrix
        output_dir: Directory for result tables and the annotated h5ad
        plots_dir_path: Directory where plots will be saved
        method: DE test for cluster doublets ("t-test" or "wilcoxon")
        n_jobs: Worker threads for the cluster comparisons
        n_sims: Number of simulated doublets
        seed: Random seed for clustering and simulation
    """
    print("Starting doublet detection pipeline...")

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    plots_dir = Path(plots_dir_path)
    plots_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    matplotlib.use("Agg")

    print("\n" + get_param_summary() + "\n")

    # Step 1: Load data
    adata = load_count_matrix(input_path)

    # Step 2: QC
    adata = calculate_qc_metrics(adata)
    adata = flag_qc_outliers(adata)
    adata = filter_qc_outliers(adata)

    # Step 3: Normalize, reduce, cluster
    adata = normalize_data(adata)
    adata = run_pca_clustering(adata, random_state=seed)

    # Step 4: Cluster-based doublet detection
    results = find_doublet_clusters(adata, groupby="leiden", method=method, n_jobs=n_jobs)
    results.drop(columns="all.pairs").to_csv(output_dir / "cluster_doublets.csv")
    all_pairs_table(results).to_csv(output_dir / "cluster_doublet_pairs.csv", index=False)
    print(f"Saved cluster doublet tables to {output_dir}")
    plot_cluster_doublet_summary(results, save_dir=plots_dir)

    top = results.iloc[0]
    print(
        f"\nMost doublet-like cluster: {results.index[0]} "
        f"(parents {top['parent1']} + {top['parent2']}, N={top['N']}, "
        f"prop={top['prop']:.3f})"
    )

    # Step 5: Simulation-based doublet density
    n_sims = min(n_sims, adata.n_obs * 10)
    adata = compute_doublet_density(adata, n_sims=n_sims, random_state=seed)
    summary = summarize_density_by_cluster(adata, groupby="leiden")
    summary.to_csv(output_dir / "doublet_density_by_cluster.csv")
    plot_doublet_density_embedding(adata, save_dir=plots_dir)
    plot_doublet_density_by_cluster(adata, save_dir=plots_dir)

    # Save results
    output_path = output_dir / "doublet_annotated.h5ad"
    adata.write(output_path)
    print(f"Saved annotated data to {output_path}")

    print("Analysis complete!")
    return adata, results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="scRNA-seq doublet detection")
    parser.add_argument(
        "--input",
        required=True,
        help="10x directory, .mtx/.mtx.gz file or .h5 count matrix",
    )
    parser.add_argument(
        "--output-dir",
        default="doublet_results",
        help="Directory for result tables (default: 'doublet_results')",
    )
    parser.add_argument(
        "--plots-dir",
        default="plots",
        help="Directory to write plots to (default: 'plots')",
    )
    parser.add_argument(
        "--method",
        choices=["t-test", "wilcoxon"],
        default=CLUSTER_DOUBLET_PARAMS["method"],
        help="DE test used to compare clusters",
    )
    parser.add_argument(
        "--n-jobs",
        type=int,
        default=CLUSTER_DOUBLET_PARAMS["n_jobs"],
        help="Worker threads for cluster comparisons",
    )
    parser.add_argument(
        "--n-sims",
        type=int,
        default=DENSITY_DOUBLET_PARAMS["n_sims"],
        help="Number of simulated doublets",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=DENSITY_DOUBLET_PARAMS["random_state"],
        help="Random seed",
    )
    args = parser.parse_args()

    main(
        args.input,
        output_dir=args.output_dir,
        plots_dir_path=args.plots_dir,
        method=args.method,
        n_jobs=args.n_jobs,
        n_sims=args.n_sims,
        seed=args.seed,
    )
