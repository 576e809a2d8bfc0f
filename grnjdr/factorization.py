"""
Factorization Module
====================

Joint dimensionality reduction (JDR) of matched omics views.

Two methods are supported:
    - "mofa": MOFA+ (mofapy2), the method used in the study. The trained model is
      written to HDF5 and read back with h5py so that precomputed models and fresh
      runs go through the same reader.
    - "pca": a block-scaled concatenated PCA (scikit-learn) used as a fast
      baseline and for smoke runs without mofapy2.

JDR Result Format (plain dict, shared by both methods):
    factors : pd.DataFrame   samples x Factor1..FactorK
    weights : dict           {view: features x Factor1..FactorK}
    r2      : pd.DataFrame   views x factors, variance explained in percent
    method  : str
    views   : list of str

Omics Combinations:
    The study compares factorizations of classic omics against factorizations
    that include LIONESS degree views. OMICS_COMBINATIONS names these view sets.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Union

import h5py
import numpy as np
import pandas as pd
from sklearn.decomposition import PCA


OMICS_COMBINATIONS = {
    "expr_meth": ["expression", "methylation"],
    "indeg_outdeg": ["indegree", "outdegree"],
    "expr_indeg": ["expression", "indegree"],
    "expr_meth_indeg_outdeg": ["expression", "methylation", "indegree", "outdegree"],
}

DEFAULT_N_FACTORS = 10
JDR_METHODS = ("mofa", "pca")

# MOFA+ requires feature names unique across views
FEATURE_VIEW_SEPARATOR = "|"


def factor_names(n_factors: int) -> List[str]:
    """Return ["Factor1", ..., "FactorK"]."""
    return [f"Factor{k + 1}" for k in range(n_factors)]


def _decode(values) -> List[str]:
    return [v.decode() if isinstance(v, bytes) else str(v) for v in values]


def _strip_view_suffix(feature: str, view: str) -> str:
    suffix = f"{FEATURE_VIEW_SEPARATOR}{view}"
    return feature[: -len(suffix)] if feature.endswith(suffix) else feature


def _check_views(views: Dict[str, pd.DataFrame]) -> List[str]:
    if not views:
        raise ValueError("No views given for factorization")
    samples = None
    for view, df in views.items():
        if samples is None:
            samples = list(df.index)
        elif list(df.index) != samples:
            raise ValueError(
                f"View '{view}' rows do not match the other views; run match_samples() first"
            )
        if df.isna().values.any():
            raise ValueError(f"View '{view}' contains NaN values")
    return samples


R2_UNITS = ("auto", "fraction", "percent")


def load_mofa_model(
    path: Union[str, Path],
    r2_units: str = "auto",
) -> Dict[str, object]:
    """
    Read factors, weights and variance explained from a MOFA+ HDF5 model.

    Parameters
    ----------
    path : str or Path
        Model file written by mofapy2 (``entry_point.save``).
    r2_units : {"auto", "fraction", "percent"}, default="auto"
        Scale of the stored variance explained. Current mofapy2 writes
        percentages; models from older releases store fractions. "auto" treats
        tables whose maximum is at most 1 as fractions, which misreads models
        where no factor explains more than 1%, so pass the scale when known.

    Returns
    -------
    dict
        JDR result dict (see module docstring), method = "mofa".
    """
    if r2_units not in R2_UNITS:
        raise ValueError(f"r2_units must be one of {R2_UNITS}, got {r2_units!r}")
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"MOFA model not found: {path}")

    with h5py.File(path, "r") as f:
        groups = _decode(f["groups"]["groups"][()]) if "groups" in f else ["group0"]
        group = groups[0]

        if "views" in f:
            views = _decode(f["views"]["views"][()])
        else:
            views = list(f["features"].keys())

        samples = _decode(f["samples"][group][()])
        Z = np.asarray(f["expectations"]["Z"][group][()])  # factors x samples
        names = factor_names(Z.shape[0])
        factors = pd.DataFrame(Z.T, index=samples, columns=names)

        weights = {}
        for view in views:
            features = [
                _strip_view_suffix(feat, view)
                for feat in _decode(f["features"][view][()])
            ]
            W = np.asarray(f["expectations"]["W"][view][()])  # factors x features
            weights[view] = pd.DataFrame(W.T, index=features, columns=names)

        r2 = None
        if "variance_explained" in f and "r2_per_factor" in f["variance_explained"]:
            r2_values = np.asarray(f["variance_explained"]["r2_per_factor"][group][()])
            if r2_units == "fraction" or (
                r2_units == "auto" and np.nanmax(r2_values) <= 1.0
            ):
                r2_values = r2_values * 100
            r2 = pd.DataFrame(r2_values, index=views, columns=names)

    return {
        "factors": factors,
        "weights": weights,
        "r2": r2,
        "method": "mofa",
        "views": views,
    }


def run_mofa(
    views: Dict[str, pd.DataFrame],
    n_factors: int = DEFAULT_N_FACTORS,
    output_path: Optional[Union[str, Path]] = None,
    seed: int = 42,
    convergence_mode: str = "fast",
    max_iterations: int = 1000,
    verbose: bool = True,
) -> Dict[str, object]:
    """
    Train a MOFA+ model on matched views.

    Parameters
    ----------
    views : dict
        {view_name: samples x features DataFrame}, identical row order, no NaNs.
    n_factors : int, default=10
        Number of factors to learn (MOFA+ may drop inactive factors).
    output_path : str or Path, optional
        Where to save the HDF5 model. Defaults to "mofa_model.hdf5".
    seed : int, default=42
        Random seed.
    convergence_mode : {"fast", "medium", "slow"}, default="fast"
        MOFA+ ELBO convergence tolerance.
    max_iterations : int, default=1000
        Maximum number of training iterations.
    verbose : bool, default=True
        Whether to print progress.
    """
    from mofapy2.run.entry_point import entry_point

    samples = _check_views(views)
    view_names = list(views.keys())
    output_path = Path(output_path) if output_path is not None else Path("mofa_model.hdf5")
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if verbose:
        print(f"Training MOFA+ ({n_factors} factors) on views {view_names}, "
              f"{len(samples)} samples")

    data = [[views[v].to_numpy(dtype=float)] for v in view_names]
    features = [
        [f"{feat}{FEATURE_VIEW_SEPARATOR}{v}" for feat in views[v].columns]
        for v in view_names
    ]

    ent = entry_point()
    ent.set_data_options(scale_views=False, scale_groups=False)
    ent.set_data_matrix(
        data,
        likelihoods=["gaussian"] * len(view_names),
        views_names=view_names,
        groups_names=["group0"],
        samples_names=[[str(s) for s in samples]],
        features_names=features,
    )
    ent.set_model_options(factors=n_factors, spikeslab_weights=True, ard_weights=True)
    ent.set_train_options(
        iter=max_iterations,
        convergence_mode=convergence_mode,
        seed=seed,
        verbose=False,
    )
    ent.build()
    ent.run()
    ent.save(outfile=str(output_path))

    if verbose:
        print(f"MOFA+ model saved to: {output_path}")

    return load_mofa_model(output_path, r2_units="percent")


def run_pca_factorization(
    views: Dict[str, pd.DataFrame],
    n_factors: int = DEFAULT_N_FACTORS,
    seed: int = 42,
    verbose: bool = True,
) -> Dict[str, object]:
    """
    Block-scaled concatenated PCA across views.

    Each view is centred and divided by the square root of its total variance,
    so every view contributes equally. The views are then concatenated and
    decomposed with PCA.
    """
    samples = _check_views(views)
    view_names = list(views.keys())

    blocks = []
    for v in view_names:
        X = views[v].to_numpy(dtype=float)
        X = X - X.mean(axis=0)
        total_var = (X ** 2).sum() / max(X.shape[0] - 1, 1)
        if total_var > 0:
            X = X / np.sqrt(total_var)
        blocks.append(X)
    X_all = np.hstack(blocks)

    max_factors = min(X_all.shape)
    if n_factors > max_factors:
        if verbose:
            print(f"  Warning: reducing n_factors from {n_factors} to {max_factors}")
        n_factors = max_factors

    pca = PCA(n_components=n_factors, random_state=seed)
    Z = pca.fit_transform(X_all)
    names = factor_names(n_factors)

    weights = {}
    r2 = pd.DataFrame(0.0, index=view_names, columns=names)
    start = 0
    for v, X in zip(view_names, blocks):
        stop = start + X.shape[1]
        W = pca.components_[:, start:stop]  # factors x features
        weights[v] = pd.DataFrame(W.T, index=list(views[v].columns), columns=names)

        ss_total = (X ** 2).sum()
        for k, name in enumerate(names):
            recon = np.outer(Z[:, k], W[k])
            ss_res = ((X - recon) ** 2).sum()
            r2.loc[v, name] = 100 * (1 - ss_res / ss_total) if ss_total > 0 else 0.0
        start = stop

    if verbose:
        print(f"PCA factorization: {n_factors} factors, "
              f"{100 * pca.explained_variance_ratio_.sum():.1f}% variance explained")

    return {
        "factors": pd.DataFrame(Z, index=samples, columns=names),
        "weights": weights,
        "r2": r2,
        "method": "pca",
        "views": view_names,
    }


def run_jdr(
    views: Dict[str, pd.DataFrame],
    combination: Union[str, List[str]],
    method: str = "mofa",
    n_factors: int = DEFAULT_N_FACTORS,
    output_dir: Optional[Union[str, Path]] = None,
    seed: int = 42,
    verbose: bool = True,
) -> Dict[str, object]:
    """
    Run JDR on one combination of views.

    Parameters
    ----------
    views : dict
        All available preprocessed views for a cancer.
    combination : str or list of str
        A key of OMICS_COMBINATIONS or an explicit list of view names.
    method : {"mofa", "pca"}, default="mofa"
        Factorization method.
    n_factors : int, default=10
        Number of factors.
    output_dir : str or Path, optional
        Directory for the MOFA+ HDF5 model.
    seed : int, default=42
        Random seed.
    verbose : bool, default=True
        Whether to print progress.
    """
    if method not in JDR_METHODS:
        raise ValueError(f"Unknown JDR method '{method}', expected one of {JDR_METHODS}")

    if isinstance(combination, str):
        if combination not in OMICS_COMBINATIONS:
            raise ValueError(f"Unknown omics combination: {combination}")
        name, view_names = combination, OMICS_COMBINATIONS[combination]
    else:
        view_names = list(combination)
        name = "_".join(view_names)

    missing = [v for v in view_names if v not in views]
    if missing:
        raise ValueError(f"Views not available for combination '{name}': {missing}")

    selected = {v: views[v] for v in view_names}

    if method == "mofa":
        output_dir = Path(output_dir) if output_dir is not None else Path("results/models")
        result = run_mofa(
            selected,
            n_factors=n_factors,
            output_path=output_dir / f"mofa_{name}.hdf5",
            seed=seed,
            verbose=verbose,
        )
    else:
        result = run_pca_factorization(selected, n_factors=n_factors, seed=seed,
                                       verbose=verbose)

    result["combination"] = name
    return result


def top_weighted_features(
    weights: pd.DataFrame,
    factor: str,
    n: int = 20,
    absolute: bool = True,
) -> pd.DataFrame:
    """
    Rank features of one view by their loading on ``factor``.

    Returns
    -------
    pd.DataFrame
        Columns: feature, weight, rank
    """
    if factor not in weights.columns:
        raise ValueError(f"Factor '{factor}' not in weights ({list(weights.columns)})")

    w = weights[factor]
    order = w.abs().sort_values(ascending=False) if absolute else w.sort_values(ascending=False)
    top = order.head(n).index
    df = pd.DataFrame({"feature": top, "weight": w.loc[top].to_numpy()})
    df["rank"] = range(1, len(df) + 1)
    return df


def save_jdr_result(
    result: Dict[str, object],
    output_dir: Union[str, Path],
    verbose: bool = True,
) -> Path:
    """Write a JDR result as CSV tables plus meta.json."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    result["factors"].to_csv(output_dir / "factors.csv")
    for view, w in result["weights"].items():
        w.to_csv(output_dir / f"weights_{view}.csv")
    if result.get("r2") is not None:
        result["r2"].to_csv(output_dir / "r2.csv")

    meta = {
        "method": result.get("method"),
        "views": list(result["weights"].keys()),
        "combination": result.get("combination"),
    }
    with open(output_dir / "meta.json", "w") as f:
        json.dump(meta, f, indent=2)

    if verbose:
        print(f"JDR result saved to: {output_dir}")
    return output_dir


def load_jdr_result(input_dir: Union[str, Path]) -> Dict[str, object]:
    """Load a JDR result written by save_jdr_result()."""
    input_dir = Path(input_dir)
    meta_path = input_dir / "meta.json"
    if not meta_path.exists():
        raise FileNotFoundError(f"No JDR result in {input_dir}")

    with open(meta_path) as f:
        meta = json.load(f)

    factors = pd.read_csv(input_dir / "factors.csv", index_col=0)
    weights = {
        view: pd.read_csv(input_dir / f"weights_{view}.csv", index_col=0)
        for view in meta["views"]
    }
    r2_path = input_dir / "r2.csv"
    r2 = pd.read_csv(r2_path, index_col=0) if r2_path.exists() else None

    return {
        "factors": factors,
        "weights": weights,
        "r2": r2,
        "method": meta.get("method"),
        "views": meta["views"],
        "combination": meta.get("combination"),
    }
