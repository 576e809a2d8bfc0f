"""
Enrichment Module
=================

Gene-set enrichment of survival-associated factors and overlap testing of the
resulting pathway sets.

Workflow:
    1. Rank the features of one view by their weight on a SAF.
    2. Run pre-ranked GSEA (gseapy.prerank) against a gene-set collection
       (MSigDB Hallmark or KEGG).
    3. Keep pathways with FDR below a threshold.
    4. Test with Fisher's exact test whether the pathway sets found from two
       omics combinations (e.g. expression/methylation vs. indegree/outdegree)
       overlap more than expected by chance.

Feature Identifiers:
    Weights from MOFA+ may carry a "|<view>" suffix; it is stripped before
    ranking. Degree views are keyed by gene symbol (indegree) or TF symbol
    (outdegree), so they can be ranked against the same collections.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import gseapy as gp
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from gseapy.parser import read_gmt
from scipy import stats

from .survival import saf_names

plt.style.use("seaborn-v0_8-whitegrid")


DEFAULT_GENESET_DIR = "data/genesets"
GENE_SET_FILES = {
    "hallmark": "h.all.v2023.1.Hs.symbols.gmt",
    "kegg": "c2.cp.kegg.v2023.1.Hs.symbols.gmt",
}
DEFAULT_PADJ_THRESHOLD = 0.05

GSEA_COLUMNS = ["factor", "term", "es", "nes", "pval", "padj", "leading_edge"]

# gseapy renamed its result columns in 1.0; map both spellings
_GSEA_RENAME = {
    "Term": "term",
    "ES": "es",
    "NES": "nes",
    "NOM p-val": "pval",
    "FDR q-val": "padj",
    "Lead_genes": "leading_edge",
    "fdr": "padj",
    "ledge_genes": "leading_edge",
    "lead_genes": "leading_edge",
}


def load_gene_sets(
    path_or_name: Union[str, Path],
    geneset_dir: Union[str, Path] = DEFAULT_GENESET_DIR,
) -> Dict[str, List[str]]:
    """
    Load a gene-set collection from a GMT file.

    Parameters
    ----------
    path_or_name : str or Path
        A path to a .gmt file, or one of the names in GENE_SET_FILES
        ("hallmark", "kegg"), which are looked up in ``geneset_dir``.
    geneset_dir : str or Path, default="data/genesets"
        Directory holding the named collections.

    Returns
    -------
    dict
        {term: [gene, ...]}
    """
    key = str(path_or_name).lower()
    if key in GENE_SET_FILES:
        path = Path(geneset_dir) / GENE_SET_FILES[key]
    else:
        path = Path(path_or_name)

    if not path.exists():
        raise FileNotFoundError(f"Gene set file not found: {path}")

    return read_gmt(str(path))


def rank_features_for_gsea(
    weights: pd.DataFrame,
    factor: str,
    strip_suffix: bool = True,
) -> pd.Series:
    """
    Build a descending ranking of features by their weight on ``factor``.

    Feature IDs are upper-cased. When several features map to the same ID
    (e.g. after stripping suffixes), the one with the largest |weight| is kept.
    """
    if factor not in weights.columns:
        raise ValueError(f"Factor '{factor}' not in weights ({list(weights.columns)})")

    ids = weights.index.astype(str)
    if strip_suffix:
        ids = ids.str.split("|").str[0]
    ranking = pd.Series(weights[factor].to_numpy(dtype=float), index=ids.str.upper())
    ranking = ranking.dropna()

    if ranking.index.has_duplicates:
        ranking = ranking.iloc[np.argsort(-ranking.abs().to_numpy(), kind="stable")]
        ranking = ranking[~ranking.index.duplicated(keep="first")]

    return ranking.sort_values(ascending=False)


def _standardize_gsea_table(res2d: pd.DataFrame, factor: str) -> pd.DataFrame:
    df = res2d.copy()
    if "Term" not in df.columns and "term" not in df.columns:
        df = df.reset_index().rename(columns={"index": "Term"})
    df = df.rename(columns=_GSEA_RENAME)
    missing = [c for c in ("term", "nes", "pval", "padj") if c not in df.columns]
    if missing:
        raise ValueError(f"Unexpected GSEA result columns, missing {missing}")
    if "es" not in df.columns:
        df["es"] = np.nan
    if "leading_edge" not in df.columns:
        df["leading_edge"] = ""
    df["factor"] = factor
    for col in ("es", "nes", "pval", "padj"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df[GSEA_COLUMNS].sort_values("padj").reset_index(drop=True)


def run_factor_gsea(
    weights: pd.DataFrame,
    factor: str,
    gene_sets: Dict[str, List[str]],
    permutation_num: int = 1000,
    min_size: int = 15,
    max_size: int = 500,
    seed: int = 42,
    threads: int = 1,
) -> pd.DataFrame:
    """
    Pre-ranked GSEA of one factor's weights.

    Parameters
    ----------
    weights : pd.DataFrame
        Features x factors for one view.
    factor : str
        Factor to test.
    gene_sets : dict
        {term: [genes]} as returned by load_gene_sets().
    permutation_num : int, default=1000
        Number of gene-set permutations.
    min_size, max_size : int
        Gene-set size limits after intersecting with the ranking.
    seed : int, default=42
        Random seed.
    threads : int, default=1
        Worker threads for gseapy.

    Returns
    -------
    pd.DataFrame
        Columns: factor, term, es, nes, pval, padj, leading_edge (sorted by padj).
    """
    ranking = rank_features_for_gsea(weights, factor)
    pre = gp.prerank(
        rnk=ranking,
        gene_sets=gene_sets,
        permutation_num=permutation_num,
        min_size=min_size,
        max_size=max_size,
        seed=seed,
        threads=threads,
        outdir=None,
        no_plot=True,
        verbose=False,
    )
    return _standardize_gsea_table(pre.res2d, factor)


def filter_significant_pathways(
    gsea_table: pd.DataFrame,
    padj_threshold: float = DEFAULT_PADJ_THRESHOLD,
    direction: Optional[str] = None,
) -> pd.DataFrame:
    """
    Keep pathways with padj below the threshold.

    Parameters
    ----------
    direction : {"up", "down"}, optional
        Restrict to positive or negative NES.
    """
    out = gsea_table[gsea_table["padj"] < padj_threshold]
    if direction == "up":
        out = out[out["nes"] > 0]
    elif direction == "down":
        out = out[out["nes"] < 0]
    elif direction is not None:
        raise ValueError(f"direction must be 'up', 'down' or None, got {direction}")
    return out.reset_index(drop=True)


def run_saf_enrichment(
    jdr_result: Dict[str, Any],
    survival_table: pd.DataFrame,
    cancer: str,
    gene_sets: Dict[str, List[str]],
    view: str,
    verbose: bool = True,
    **gsea_kwargs,
) -> pd.DataFrame:
    """
    Run GSEA for every SAF of one cancer/combination on one view's weights.

    Returns
    -------
    pd.DataFrame
        Concatenated GSEA tables with "cancer", "combination" and "view" columns.
        Empty when there are no SAFs.
    """
    combination = jdr_result.get("combination")
    if view not in jdr_result["weights"]:
        raise ValueError(f"View '{view}' not in JDR result ({list(jdr_result['weights'])})")

    safs = saf_names(survival_table, cancer, combination)
    tables = []
    for factor in safs:
        if verbose:
            print(f"  GSEA {cancer}/{combination}/{view}/{factor}")
        table = run_factor_gsea(jdr_result["weights"][view], factor, gene_sets,
                                **gsea_kwargs)
        table.insert(0, "view", view)
        table.insert(0, "combination", combination)
        table.insert(0, "cancer", cancer)
        tables.append(table)

    if not tables:
        return pd.DataFrame(columns=["cancer", "combination", "view"] + GSEA_COLUMNS)
    return pd.concat(tables, ignore_index=True)


def pathway_overlap_fisher(
    set_a: Iterable[str],
    set_b: Iterable[str],
    universe: Iterable[str],
) -> Dict[str, Any]:
    """
    One-sided Fisher's exact test for the overlap of two pathway sets.

    Parameters
    ----------
    set_a, set_b : iterable of str
        Significant pathways from two analyses. Items outside ``universe``
        are ignored.
    universe : iterable of str
        All pathways that could have been called in both analyses.

    Returns
    -------
    dict
        table (2x2 list), odds_ratio, pval, overlap (sorted list)

    Examples
    --------
    >>> res = pathway_overlap_fisher({"A", "B"}, {"A", "B"}, {"A", "B", "C", "D"})
    >>> res["overlap"]
    ['A', 'B']
    """
    universe = set(universe)
    if not universe:
        raise ValueError("Universe of pathways is empty")
    a = set(set_a) & universe
    b = set(set_b) & universe

    both = len(a & b)
    only_a = len(a - b)
    only_b = len(b - a)
    neither = len(universe) - both - only_a - only_b

    table = [[both, only_a], [only_b, neither]]
    odds_ratio, pval = stats.fisher_exact(table, alternative="greater")
    return {
        "table": table,
        "odds_ratio": float(odds_ratio),
        "pval": float(pval),
        "overlap": sorted(a & b),
    }


def compare_pathway_sets(
    gsea_a: pd.DataFrame,
    gsea_b: pd.DataFrame,
    padj_threshold: float = DEFAULT_PADJ_THRESHOLD,
) -> Dict[str, Any]:
    """
    Fisher overlap of the significant pathways of two GSEA tables.

    The universe is the set of terms tested in both tables.
    """
    universe = set(gsea_a["term"]) & set(gsea_b["term"])
    sig_a = set(filter_significant_pathways(gsea_a, padj_threshold)["term"])
    sig_b = set(filter_significant_pathways(gsea_b, padj_threshold)["term"])
    result = pathway_overlap_fisher(sig_a, sig_b, universe)
    result["n_significant_a"] = len(sig_a & universe)
    result["n_significant_b"] = len(sig_b & universe)
    result["n_universe"] = len(universe)
    return result


def plot_gsea_dotplot(
    gsea_table: pd.DataFrame,
    top_n: int = 20,
    title: str = "GSEA of survival-associated factors",
    save_path: Optional[Union[str, Path]] = None,
    figsize: tuple = (9, 8),
) -> plt.Figure:
    """
    Dot plot of the top pathways: x = NES, size/colour = -log10(padj).
    """
    df = gsea_table.sort_values("padj").head(top_n).copy()
    df["neg_log10_padj"] = -np.log10(df["padj"].clip(lower=1e-10))
    label = df["term"].str.replace("HALLMARK_", "").str.replace("KEGG_", "")
    if "factor" in df.columns and df["factor"].nunique() > 1:
        label = label + " (" + df["factor"] + ")"
    df["label"] = label
    df = df.iloc[::-1]

    fig, ax = plt.subplots(figsize=figsize)
    scatter = ax.scatter(
        df["nes"],
        range(len(df)),
        s=40 + 40 * df["neg_log10_padj"],
        c=df["neg_log10_padj"],
        cmap="viridis",
        edgecolor="black",
        linewidth=0.5,
    )
    ax.axvline(0, color="#94a3b8", linestyle="--", linewidth=1)
    ax.set_yticks(range(len(df)))
    ax.set_yticklabels(df["label"], fontsize=9)
    ax.set_xlabel("Normalized Enrichment Score (NES)", fontsize=11)
    ax.set_title(title, fontsize=13, fontweight="bold")
    cbar = fig.colorbar(scatter, ax=ax)
    cbar.set_label("-log10(FDR)")

    plt.tight_layout()

    if save_path is not None:
        save_path = Path(save_path)
        save_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(save_path, dpi=150, bbox_inches="tight")
        print(f"GSEA dot plot saved to: {save_path}")

    return fig
