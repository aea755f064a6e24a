import numpy as np
import pytest

from doublet_utils.density_doublets import (
    compute_doublet_density,
    get_raw_counts,
    run_scrublet,
    simulate_doublets,
    summarize_density_by_cluster,
)


def test_simulated_doublets_are_sums_of_two_cells(count_adata):
    counts = get_raw_counts(count_adata)

    sim_counts, pair_idx = simulate_doublets(counts, 25, random_state=1)

    assert sim_counts.shape == (25, count_adata.n_vars)
    expected = counts[pair_idx[:, 0]].toarray() + counts[pair_idx[:, 1]].toarray()
    assert np.allclose(sim_counts.toarray(), expected)


def test_simulation_is_seeded(count_adata):
    counts = get_raw_counts(count_adata)

    _, first = simulate_doublets(counts, 10, random_state=7)
    _, second = simulate_doublets(counts, 10, random_state=7)

    assert (first == second).all()


def test_real_doublets_score_higher(count_adata):
    adata = compute_doublet_density(
        count_adata, n_sims=1000, k=10, n_pcs=5, n_top_genes=50, random_state=0
    )

    scores = adata.obs["doublet_density"]
    assert len(scores) == adata.n_obs
    assert (scores >= 0).all()
    is_doublet = adata.obs["cell_type"] == "doublet"
    assert scores[is_doublet].median() > scores[~is_doublet].median()


def test_density_is_reproducible(count_adata):
    first = compute_doublet_density(
        count_adata.copy(), n_sims=200, k=10, n_pcs=5, random_state=3
    ).obs["doublet_density"]
    second = compute_doublet_density(
        count_adata.copy(), n_sims=200, k=10, n_pcs=5, random_state=3
    ).obs["doublet_density"]

    assert np.allclose(first, second)


def test_counts_layer_takes_precedence(count_adata):
    adata = count_adata.copy()
    adata.layers["counts"] = adata.X.copy()
    adata.X = adata.X.log1p()

    assert np.allclose(get_raw_counts(adata).toarray(), count_adata.X.toarray())


def test_too_few_cells_raises(count_adata):
    with pytest.raises(ValueError):
        compute_doublet_density(count_adata[:5].copy(), k=10)


def test_summarize_density_by_cluster(count_adata):
    adata = compute_doublet_density(count_adata, n_sims=500, k=10, n_pcs=5)

    summary = summarize_density_by_cluster(adata, groupby="cell_type")

    assert list(summary.columns) == ["n_cells", "median_density", "max_density"]
    assert summary.loc["doublet", "n_cells"] == 20
    assert summary["median_density"].is_monotonic_decreasing

    with pytest.raises(KeyError):
        summarize_density_by_cluster(adata, groupby="missing")


def test_scrublet_skips_small_samples(count_adata):
    adata = run_scrublet(count_adata, sample_col="cell_type", min_cells_per_sample=1000)

    assert (adata.obs["doublet_score"] == 0).all()
    assert not adata.obs["predicted_doublet"].any()


def test_scrublet_scores_every_cell(count_adata):
    adata = run_scrublet(
        count_adata.copy(), n_prin_comps=5, min_gene_variability_pctl=50, min_cells_per_sample=10
    )

    scores = adata.obs["doublet_score"]
    assert len(scores) == adata.n_obs
    assert (scores > 0).any()
    is_doublet = adata.obs["cell_type"] == "doublet"
    assert scores[is_doublet].median() > scores[~is_doublet].median()


def test_scrublet_manual_threshold(count_adata):
    adata = run_scrublet(
        count_adata.copy(),
        n_prin_comps=5,
        min_gene_variability_pctl=50,
        min_cells_per_sample=10,
        manual_threshold=0.2,
    )

    expected = adata.obs["doublet_score"] > 0.2
    assert (adata.obs["predicted_doublet"] == expected).all()


def test_density_on_a_subset_of_variable_genes(count_adata):
    adata = compute_doublet_density(
        count_adata.copy(), n_sims=1000, k=10, n_pcs=5, n_top_genes=20, random_state=0
    )

    scores = adata.obs["doublet_density"]
    is_doublet = adata.obs["cell_type"] == "doublet"
    assert scores[is_doublet].median() > scores[~is_doublet].median()
