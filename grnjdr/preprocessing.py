"""
Preprocessing Module
====================

Matches samples across views, transforms and filters features, and scales each
view before joint dimensionality reduction.

Key Considerations:
-------------------
1. Sample matching happens first: JDR needs every view for every sample, and
   Cox regression needs survival information for every sample.

2. Per-view transforms:
   - expression / mirna: log2(x + 1), but only when values look untransformed
     (max > 50). GDC TPM tables are sometimes already log-transformed.
   - methylation: beta values are converted to M-values, log2(beta / (1 - beta)),
     which are closer to homoscedastic.
   - cnv, indegree, outdegree: used as is. Degrees are already continuous and
     centred around the PANDA consensus network.

3. Feature selection keeps the most variable features per view so that large
   views (methylation, indegree) do not dominate the factorization.

4. Every view is z-scored per feature (scanpy.pp.scale) so the views are comparable.
"""

from pathlib import Path
from typing import Dict, Optional, Union

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

from .data_loading import anndata_to_frame, build_view_anndata


DEFAULT_PROCESSED_DIR = "data/processed"
DEFAULT_N_TOP_FEATURES = 5000

LOG_TRANSFORM_VIEWS = ("expression", "mirna")
BETA_EPSILON = 1e-6


def match_samples(
    views: Dict[str, pd.DataFrame],
    survival: Optional[pd.DataFrame] = None,
    verbose: bool = True,
) -> Dict[str, object]:
    """
    Restrict every view (and the survival table) to the shared samples.

    Parameters
    ----------
    views : dict
        {view_name: samples x features DataFrame}
    survival : pd.DataFrame, optional
        Survival table indexed by sample ID.
    verbose : bool, default=True
        Whether to print per-view sample counts.

    Returns
    -------
    dict
        {"views": {...}, "survival": DataFrame or None}, rows in sorted sample order.
    """
    if not views:
        raise ValueError("No views to match")

    common = None
    for df in views.values():
        common = set(df.index) if common is None else common & set(df.index)
    if survival is not None:
        common &= set(survival.index)

    if not common:
        raise ValueError("No samples shared across all views")

    common = sorted(common)
    if verbose:
        counts = ", ".join(f"{v}={len(df)}" for v, df in views.items())
        print(f"  Matching samples ({counts}) -> {len(common)} shared")

    matched = {view: df.loc[common] for view, df in views.items()}
    matched_survival = survival.loc[common] if survival is not None else None
    return {"views": matched, "survival": matched_survival}


def transform_view(df: pd.DataFrame, view: str) -> pd.DataFrame:
    """Apply the view-specific value transform (see module docstring)."""
    if view in LOG_TRANSFORM_VIEWS:
        if np.nanmax(df.to_numpy(dtype=float)) > 50:
            return np.log2(df.clip(lower=0) + 1)
        return df
    if view == "methylation":
        beta = df.clip(lower=BETA_EPSILON, upper=1 - BETA_EPSILON)
        return np.log2(beta / (1 - beta))
    return df


def filter_features(
    df: pd.DataFrame,
    max_missing_fraction: float = 0.2,
    min_variance: float = 1e-8,
) -> pd.DataFrame:
    """
    Drop features with too many missing values or (near-)zero variance.

    Parameters
    ----------
    df : pd.DataFrame
        Samples x features matrix.
    max_missing_fraction : float, default=0.2
        Features with a larger fraction of NaNs are removed.
    min_variance : float, default=1e-8
        Features with variance (ignoring NaNs) at or below this are removed.
    """
    missing_fraction = df.isna().mean(axis=0)
    keep = missing_fraction <= max_missing_fraction
    variances = df.var(axis=0, skipna=True)
    keep &= variances > min_variance
    return df.loc[:, keep[keep].index]


def select_top_variable_features(
    df: pd.DataFrame,
    n_top: Optional[int],
) -> pd.DataFrame:
    """Keep the ``n_top`` features with the highest variance."""
    if n_top is None or n_top >= df.shape[1]:
        return df
    if n_top <= 0:
        raise ValueError(f"n_top must be positive, got {n_top}")
    top = df.var(axis=0, skipna=True).nlargest(n_top).index
    # Preserve the original feature order
    return df.loc[:, [c for c in df.columns if c in set(top)]]


def impute_missing(df: pd.DataFrame) -> pd.DataFrame:
    """Fill remaining NaNs with the per-feature mean."""
    if not df.isna().values.any():
        return df
    return df.fillna(df.mean(axis=0))


def scale_view(df: pd.DataFrame, view: str = "view") -> pd.DataFrame:
    """Z-score each feature with scanpy.pp.scale."""
    adata = build_view_anndata(df, view)
    sc.pp.scale(adata, zero_center=True)
    return anndata_to_frame(adata)


def run_preprocessing_pipeline(
    views: Dict[str, pd.DataFrame],
    survival: Optional[pd.DataFrame] = None,
    n_top_features: Optional[int] = DEFAULT_N_TOP_FEATURES,
    max_missing_fraction: float = 0.2,
    scale: bool = True,
    verbose: bool = True,
) -> Dict[str, object]:
    """
    Run sample matching, transforms, filtering, imputation and scaling.

    Parameters
    ----------
    views : dict
        {view_name: samples x features DataFrame}
    survival : pd.DataFrame, optional
        Survival table to co-match with the views.
    n_top_features : int, optional
        Most-variable features to keep per view. None keeps all.
    max_missing_fraction : float, default=0.2
        See filter_features().
    scale : bool, default=True
        Whether to z-score features.
    verbose : bool, default=True
        Whether to print progress.

    Returns
    -------
    dict
        {"views": {view_name: DataFrame}, "survival": DataFrame or None}
    """
    if verbose:
        print("=" * 60)
        print("PREPROCESSING PIPELINE")
        print("=" * 60)

    matched = match_samples(views, survival, verbose=verbose)

    processed = {}
    for view, df in matched["views"].items():
        n_before = df.shape[1]
        df = transform_view(df, view)
        df = filter_features(df, max_missing_fraction=max_missing_fraction)
        df = select_top_variable_features(df, n_top_features)
        df = impute_missing(df)
        if scale:
            df = scale_view(df, view)
        processed[view] = df
        if verbose:
            print(f"  {view:<12} {n_before:>6} -> {df.shape[1]:>6} features")

    if verbose:
        n_samples = len(next(iter(processed.values())))
        print(f"\nPreprocessing complete: {n_samples} samples, {len(processed)} views")

    return {"views": processed, "survival": matched["survival"]}


def save_preprocessed_data(
    result: Dict[str, object],
    output_dir: Union[str, Path],
    verbose: bool = True,
) -> None:
    """
    Save preprocessed views (one .h5ad per view) and the survival table.

    Views left in ``output_dir`` by an earlier run are removed, so the
    directory always holds views matched to the same samples.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    for stale in output_dir.glob("*.h5ad"):
        stale.unlink()

    for view, df in result["views"].items():
        build_view_anndata(df, view).write_h5ad(output_dir / f"{view}.h5ad")

    if result.get("survival") is not None:
        result["survival"].to_csv(output_dir / "survival.csv")

    if verbose:
        print(f"Preprocessed data saved to: {output_dir}")


def load_preprocessed_data(
    input_dir: Union[str, Path],
    verbose: bool = True,
) -> Dict[str, object]:
    """
    Load views and survival table written by save_preprocessed_data().
    """
    input_dir = Path(input_dir)
    if not input_dir.exists():
        raise FileNotFoundError(f"Preprocessed data not found: {input_dir}")

    view_files = sorted(input_dir.glob("*.h5ad"))
    if not view_files:
        raise FileNotFoundError(f"No .h5ad views in {input_dir}")

    views = {}
    for path in view_files:
        adata = ad.read_h5ad(path)
        views[str(adata.uns.get("view", path.stem))] = anndata_to_frame(adata)

    survival = None
    survival_path = input_dir / "survival.csv"
    if survival_path.exists():
        survival = pd.read_csv(survival_path, index_col=0)

    if verbose:
        shapes = ", ".join(f"{v}={df.shape}" for v, df in views.items())
        print(f"Loaded preprocessed data from {input_dir}: {shapes}")

    return {"views": views, "survival": survival}
