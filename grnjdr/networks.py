"""
Networks Module
===============

Single-sample gene regulatory networks (PANDA + LIONESS via netZooPy) and the
node-level degree summaries used as "network omics" views.

For every sample LIONESS yields a bipartite TF -> gene network with continuous
edge weights. Two per-sample summaries are derived from it:

    indegree[s, g]  = sum over TFs t of w[s, t, g]   (how strongly gene g is targeted)
    outdegree[s, t] = sum over genes g of w[s, t, g] (how strongly TF t regulates)

The degree tables are then handled exactly like any other omics matrix
(samples x features) by the preprocessing and factorization modules.

netZooPy is imported lazily. Most runs use precomputed degree tables and never
touch the network inference step.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .data_loading import VIEW_FILE_NAMES, load_omics_matrix


def reshape_lioness_output(
    lioness_matrix: np.ndarray,
    n_tfs: int,
    n_genes: int,
    n_samples: int,
    edge_order: str = "tf_major",
) -> np.ndarray:
    """
    Reshape a flat LIONESS edge matrix into [samples, tfs, genes].

    Parameters
    ----------
    lioness_matrix : np.ndarray
        2-D array with one axis of length n_tfs * n_genes (edges) and the other
        of length n_samples. Either orientation is accepted.
    n_tfs, n_genes, n_samples : int
        Network dimensions.
    edge_order : {"tf_major", "gene_major"}, default="tf_major"
        How each sample's edge vector was flattened: "tf_major" means the
        (tf, gene) matrix was flattened row by row.

    Returns
    -------
    np.ndarray
        Array of shape (n_samples, n_tfs, n_genes).
    """
    lioness_matrix = np.asarray(lioness_matrix, dtype=float)
    n_edges = n_tfs * n_genes

    if lioness_matrix.ndim != 2:
        raise ValueError(f"Expected a 2-D LIONESS matrix, got {lioness_matrix.ndim}-D")

    if lioness_matrix.shape == (n_samples, n_edges):
        per_sample = lioness_matrix
    elif lioness_matrix.shape == (n_edges, n_samples):
        per_sample = lioness_matrix.T
    else:
        raise ValueError(
            f"LIONESS matrix shape {lioness_matrix.shape} does not match "
            f"{n_samples} samples x {n_edges} edges ({n_tfs} TFs x {n_genes} genes)"
        )

    if edge_order == "tf_major":
        return per_sample.reshape(n_samples, n_tfs, n_genes)
    if edge_order == "gene_major":
        return per_sample.reshape(n_samples, n_genes, n_tfs).transpose(0, 2, 1)
    raise ValueError(f"Unknown edge_order: {edge_order}")


def run_panda_lioness(
    expression: pd.DataFrame,
    motif_path: Union[str, Path],
    ppi_path: Union[str, Path],
    output_dir: Optional[Union[str, Path]] = None,
    computing: str = "cpu",
    precision: str = "double",
    verbose: bool = True,
) -> Dict[str, object]:
    """
    Infer one PANDA consensus network and LIONESS single-sample networks.

    Parameters
    ----------
    expression : pd.DataFrame
        Expression matrix, samples x genes (as returned by load_omics_matrix).
    motif_path : str or Path
        TF-gene motif prior (three columns: tf, gene, weight).
    ppi_path : str or Path
        TF-TF protein interaction prior (three columns).
    output_dir : str or Path, optional
        Where LIONESS writes its intermediate files. Defaults to "lioness_output".
    computing : {"cpu", "gpu"}, default="cpu"
        Passed to netZooPy.
    precision : {"single", "double"}, default="double"
        Passed to netZooPy.
    verbose : bool, default=True
        Whether to print progress.

    Returns
    -------
    dict
        networks: ndarray [samples, tfs, genes]; tfs, genes, samples: lists
    """
    from netZooPy.lioness import Lioness
    from netZooPy.panda import Panda

    for path in (motif_path, ppi_path):
        if not Path(path).exists():
            raise FileNotFoundError(f"Network prior not found: {path}")

    output_dir = Path(output_dir) if output_dir is not None else Path("lioness_output")
    output_dir.mkdir(parents=True, exist_ok=True)

    samples = list(expression.index.astype(str))
    if verbose:
        print(f"Running PANDA on {expression.shape[1]} genes x {len(samples)} samples")

    # netZooPy expects genes x samples
    panda_obj = Panda(
        expression.T,
        str(motif_path),
        str(ppi_path),
        save_tmp=False,
        remove_missing=False,
        keep_expression_matrix=True,
        save_memory=False,
        modeProcess="intersection",
        computing=computing,
        precision=precision,
    )

    tfs = list(panda_obj.unique_tfs)
    genes = list(panda_obj.gene_names)

    if verbose:
        print(f"  PANDA network: {len(tfs)} TFs x {len(genes)} genes")
        print(f"Running LIONESS for {len(samples)} samples (this may take a while)")

    lioness_obj = Lioness(
        panda_obj,
        computing=computing,
        precision=precision,
        save_dir=str(output_dir),
        save_fmt="npy",
    )

    networks = reshape_lioness_output(
        lioness_obj.total_lioness_network,
        n_tfs=len(tfs),
        n_genes=len(genes),
        n_samples=len(samples),
    )

    return {"networks": networks, "tfs": tfs, "genes": genes, "samples": samples}


def compute_degrees(
    networks: np.ndarray,
    tfs: Sequence[str],
    genes: Sequence[str],
    samples: Sequence[str],
) -> Dict[str, pd.DataFrame]:
    """
    Compute gene indegree and TF outdegree for every sample network.

    Parameters
    ----------
    networks : np.ndarray
        Array of shape (n_samples, n_tfs, n_genes).
    tfs, genes, samples : sequence of str
        Labels for the three axes.

    Returns
    -------
    dict
        {"indegree": samples x genes, "outdegree": samples x tfs}
    """
    networks = np.asarray(networks, dtype=float)
    expected = (len(samples), len(tfs), len(genes))
    if networks.shape != expected:
        raise ValueError(f"Network array shape {networks.shape} != {expected}")

    indegree = pd.DataFrame(
        networks.sum(axis=1), index=list(samples), columns=list(genes)
    )
    outdegree = pd.DataFrame(
        networks.sum(axis=2), index=list(samples), columns=list(tfs)
    )
    indegree.index.name = outdegree.index.name = "sample"
    return {"indegree": indegree, "outdegree": outdegree}


def edge_table_to_degrees(edges: pd.DataFrame) -> Dict[str, pd.DataFrame]:
    """
    Compute degrees from a long edge table with columns tf, gene, sample, weight.

    Missing edges count as weight 0.
    """
    required = ["tf", "gene", "sample", "weight"]
    missing = [c for c in required if c not in edges.columns]
    if missing:
        raise ValueError(f"Edge table missing columns: {missing}")

    indegree = edges.pivot_table(
        index="sample", columns="gene", values="weight", aggfunc="sum", fill_value=0.0
    )
    outdegree = edges.pivot_table(
        index="sample", columns="tf", values="weight", aggfunc="sum", fill_value=0.0
    )
    indegree.columns.name = outdegree.columns.name = None
    return {"indegree": indegree, "outdegree": outdegree}


def save_degree_tables(
    degrees: Dict[str, pd.DataFrame],
    output_dir: Union[str, Path],
    verbose: bool = True,
) -> List[Path]:
    """Write degree tables as features x samples .tsv.gz files."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    paths = []
    for view in ("indegree", "outdegree"):
        if view not in degrees:
            continue
        path = output_dir / f"{VIEW_FILE_NAMES[view]}.gz"
        degrees[view].T.to_csv(path, sep="\t", compression="gzip")
        paths.append(path)
        if verbose:
            print(f"{view} table saved to: {path}")
    return paths


def load_degree_tables(input_dir: Union[str, Path]) -> Dict[str, pd.DataFrame]:
    """Load indegree/outdegree tables written by save_degree_tables()."""
    input_dir = Path(input_dir)
    degrees = {}
    for view in ("indegree", "outdegree"):
        for name in (f"{VIEW_FILE_NAMES[view]}.gz", VIEW_FILE_NAMES[view]):
            path = input_dir / name
            if path.exists():
                degrees[view] = load_omics_matrix(path)
                break
        else:
            raise FileNotFoundError(f"No {view} table in {input_dir}")
    return degrees


def compare_degree_distributions(degrees: Dict[str, pd.DataFrame]) -> pd.DataFrame:
    """Per-sample summary statistics of each degree view."""
    rows = []
    for view, df in degrees.items():
        summary = pd.DataFrame({
            "view": view,
            "mean": df.mean(axis=1),
            "std": df.std(axis=1),
            "min": df.min(axis=1),
            "max": df.max(axis=1),
        })
        summary.index.name = "sample"
        rows.append(summary.reset_index())
    return pd.concat(rows, ignore_index=True)
