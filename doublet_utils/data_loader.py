#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles 10x matrix market directories, bare .mtx files and H5 files
"""

import anndata
import h5py
import pandas as pd
import scanpy as sc
from pathlib import Path
from scipy import sparse


def _decode(values):
    return [x.decode("utf-8") if isinstance(x, bytes) else str(x) for x in values]


def _read_10x_h5_group(group):
    """Counts, gene symbols, gene ids and barcodes from one 10x H5 group

    Cell Ranger v3+ and CellBender keep genes under "features"; v2 files have
    one group per genome with "gene_names" and "genes" datasets.
    """
    X = sparse.csc_matrix(
        (group["data"][:], group["indices"][:], group["indptr"][:]),
        shape=tuple(group["shape"][:]),
    )
    if "features" in group:
        gene_names = _decode(group["features"]["name"][:])
        gene_ids = _decode(group["features"]["id"][:])
    else:
        gene_ids = _decode(group["genes"][:])
        gene_names = _decode(group["gene_names"][:]) if "gene_names" in group else gene_ids
    cell_barcodes = _decode(group["barcodes"][:])

    return X, gene_names, gene_ids, cell_barcodes


def load_h5_matrix(file_path, genome=None):
    """Load a 10x (v2 or v3) / CellBender H5 file

    Args:
        file_path: Path to the H5 file
        genome: Genome group to read from a v2 file (default: the first one)

    Returns:
        AnnData object (cells x genes) with gene ids in var["gene_ids"]
    """
    with h5py.File(file_path, "r") as f:
        if "matrix" in f:
            group = f["matrix"]
        else:
            genomes = list(f.keys())
            if not genomes:
                raise ValueError(f"No count matrix found in {file_path}")
            if genome is None:
                genome = genomes[0]
            elif genome not in f:
                raise ValueError(f"Genome '{genome}' not in {file_path}: {genomes}")
            group = f[genome]

        X, gene_names, gene_ids, cell_barcodes = _read_10x_h5_group(group)

    # Stored as genes x cells
    if X.shape == (len(gene_names), len(cell_barcodes)):
        X = X.T
    adata = anndata.AnnData(X.tocsr())

    adata.var_names = gene_names
    adata.var["gene_ids"] = gene_ids
    adata.obs_names = cell_barcodes
    adata.var_names_make_unique()

    return adata


def load_mtx_matrix(file_path, genes_path=None, barcodes_path=None):
    """Load a genes x cells matrix market file with optional name files

    Args:
        file_path: Path to the .mtx (or .mtx.gz) file
        genes_path: Optional TSV with gene ids (first column) and symbols (second)
        barcodes_path: Optional file with one cell barcode per line

    Returns:
        AnnData object (cells x genes)
    """
    adata = sc.read_mtx(file_path).T
    adata.X = sparse.csr_matrix(adata.X)

    if genes_path is not None:
        genes = pd.read_csv(genes_path, sep="\t", header=None)
        names = genes[1] if genes.shape[1] > 1 else genes[0]
        adata.var_names = names.astype(str).values
        adata.var["gene_ids"] = genes[0].astype(str).values
    if barcodes_path is not None:
        barcodes = pd.read_csv(barcodes_path, sep="\t", header=None)[0]
        adata.obs_names = barcodes.astype(str).values

    adata.var_names_make_unique()

    return adata


def load_count_matrix(path):
    """Load a count matrix, picking the reader from the path

    Args:
        path: 10x output directory, .mtx/.mtx.gz file or .h5 file

    Returns:
        AnnData object with raw counts
    """
    path = Path(path)
    print(f"Loading {path}")

    if path.is_dir():
        adata = sc.read_10x_mtx(path, var_names="gene_symbols", make_unique=True)
    elif path.suffix == ".h5":
        adata = load_h5_matrix(path)
    elif path.name.endswith((".mtx", ".mtx.gz")):
        adata = load_mtx_matrix(path)
    else:
        raise ValueError(f"Unsupported count matrix format: {path}")

    print(f"Loaded {adata.n_obs} cells and {adata.n_vars} genes")

    return adata
