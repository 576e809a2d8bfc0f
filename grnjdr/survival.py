"""
Survival Module
===============

Cox proportional-hazards regression on JDR factors and the labelling of
survival-associated factors (SAFs).

This module implements the survival part of the study:
    - Fit one Cox model per factor (optionally adjusted for clinical covariates)
    - Adjust p-values across factors with Benjamini-Hochberg
    - Label factors with padj < alpha as SAFs
    - Compare omics combinations by the concordance index of a multivariate
      Cox model on all factors (in-sample and cross-validated)
    - Test whether factors add information over a clinical-only model
      (likelihood ratio test)
    - Split samples on a factor and compare Kaplan-Meier curves (log-rank test)

All model fitting is done by lifelines; this module only arranges inputs and
collects outputs into tables.
"""

import warnings
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError
from lifelines.statistics import logrank_test
from lifelines.utils import k_fold_cross_validation
from scipy import stats
from statsmodels.stats.multitest import multipletests


DEFAULT_ALPHA = 0.05
DEFAULT_MULTIVARIATE_PENALIZER = 0.1

COX_COLUMNS = [
    "factor",
    "coef",
    "hazard_ratio",
    "ci_lower",
    "ci_upper",
    "z",
    "pval",
    "n_samples",
    "n_events",
    "converged",
]


def _join_survival(
    factors: pd.DataFrame,
    survival: pd.DataFrame,
    covariates: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Inner-join factors, covariates and survival on sample ID; drop NaN rows."""
    missing = [c for c in ("time", "event") if c not in survival.columns]
    if missing:
        raise ValueError(f"Survival table missing columns: {missing}")

    df = factors.join(survival[["time", "event"]], how="inner")
    if covariates is not None and covariates.shape[1] > 0:
        df = df.join(covariates, how="inner")
    df = df.dropna()
    if len(df) == 0:
        raise ValueError("No samples shared between factors and survival table")
    return df


def adjust_pvalues(pvals: Union[Sequence[float], pd.Series]) -> np.ndarray:
    """
    Benjamini-Hochberg adjustment that leaves NaN p-values as NaN.

    Examples
    --------
    >>> adjust_pvalues([0.01, np.nan, 0.04])
    array([0.02, nan, 0.04])
    """
    pvals = np.asarray(pvals, dtype=float)
    padj = np.full_like(pvals, np.nan)
    mask = ~np.isnan(pvals)
    if mask.any():
        padj[mask] = multipletests(pvals[mask], method="fdr_bh")[1]
    return padj


def fit_univariate_cox(
    factors: pd.DataFrame,
    survival: pd.DataFrame,
    covariates: Optional[pd.DataFrame] = None,
    penalizer: float = 0.0,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Fit one Cox model per factor.

    Parameters
    ----------
    factors : pd.DataFrame
        Samples x factors.
    survival : pd.DataFrame
        Columns "time" and "event", indexed by sample.
    covariates : pd.DataFrame, optional
        Numeric clinical covariates included in every model.
    penalizer : float, default=0.0
        lifelines L2 penalizer.
    verbose : bool, default=False
        Whether to print one line per factor.

    Returns
    -------
    pd.DataFrame
        One row per factor with columns COX_COLUMNS. Constant factors and models
        that fail to converge get NaN statistics and converged=False.
    """
    df = _join_survival(factors, survival, covariates)
    cov_cols = list(covariates.columns) if covariates is not None else []
    n_events = int(df["event"].sum())

    rows = []
    for factor in factors.columns:
        row = {
            "factor": factor,
            "coef": np.nan,
            "hazard_ratio": np.nan,
            "ci_lower": np.nan,
            "ci_upper": np.nan,
            "z": np.nan,
            "pval": np.nan,
            "n_samples": len(df),
            "n_events": n_events,
            "converged": False,
        }

        if df[factor].std() == 0 or n_events == 0:
            print(f"  Warning: skipping {factor} (constant factor or no events)")
            rows.append(row)
            continue

        model_df = df[[factor] + cov_cols + ["time", "event"]]
        cph = CoxPHFitter(penalizer=penalizer)
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                cph.fit(model_df, duration_col="time", event_col="event")
        except (ConvergenceError, np.linalg.LinAlgError) as e:
            print(f"  Warning: Cox model for {factor} did not converge: {e}")
            rows.append(row)
            continue

        s = cph.summary.loc[factor]
        row.update({
            "coef": float(s["coef"]),
            "hazard_ratio": float(s["exp(coef)"]),
            "ci_lower": float(s["exp(coef) lower 95%"]),
            "ci_upper": float(s["exp(coef) upper 95%"]),
            "z": float(s["z"]),
            "pval": float(s["p"]),
            "converged": True,
        })
        rows.append(row)

        if verbose:
            print(f"  {factor:<10} HR={row['hazard_ratio']:.3f} p={row['pval']:.2e}")

    return pd.DataFrame(rows, columns=COX_COLUMNS)


def label_survival_factors(
    cox_table: pd.DataFrame,
    alpha: float = DEFAULT_ALPHA,
) -> pd.DataFrame:
    """
    Add BH-adjusted p-values and SAF labels to a Cox table.

    Returns
    -------
    pd.DataFrame
        Copy of ``cox_table`` with "padj", "SAF" (bool) and "label"
        ("SAF" / "ns") columns.
    """
    if "pval" not in cox_table.columns:
        raise ValueError("Cox table has no 'pval' column")

    out = cox_table.copy()
    out["padj"] = adjust_pvalues(out["pval"])
    out["SAF"] = (out["padj"] < alpha).fillna(False).astype(bool)
    out["label"] = np.where(out["SAF"], "SAF", "ns")
    return out


def fit_multivariate_cox(
    factors: pd.DataFrame,
    survival: pd.DataFrame,
    covariates: Optional[pd.DataFrame] = None,
    penalizer: float = DEFAULT_MULTIVARIATE_PENALIZER,
) -> Dict[str, Any]:
    """
    Fit a single Cox model on all factors (and covariates).

    Returns
    -------
    dict
        concordance, log_likelihood, n_params, n_samples, summary, model
    """
    df = _join_survival(factors, survival, covariates)
    cph = CoxPHFitter(penalizer=penalizer)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        cph.fit(df, duration_col="time", event_col="event")

    return {
        "concordance": float(cph.concordance_index_),
        "log_likelihood": float(cph.log_likelihood_),
        "n_params": int(len(cph.params_)),
        "n_samples": len(df),
        "summary": cph.summary,
        "model": cph,
    }


def cross_validated_concordance(
    factors: pd.DataFrame,
    survival: pd.DataFrame,
    k: int = 5,
    seed: int = 42,
    penalizer: float = DEFAULT_MULTIVARIATE_PENALIZER,
) -> Dict[str, float]:
    """
    Mean and standard deviation of held-out C-index over k folds.
    """
    df = _join_survival(factors, survival)
    if len(df) < k:
        raise ValueError(f"Need at least {k} samples for {k}-fold CV, got {len(df)}")

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        scores = k_fold_cross_validation(
            CoxPHFitter(penalizer=penalizer),
            df,
            duration_col="time",
            event_col="event",
            k=k,
            scoring_method="concordance_index",
            seed=seed,
        )
    scores = np.asarray(scores, dtype=float)
    return {"cv_concordance": float(np.mean(scores)), "cv_concordance_std": float(np.std(scores))}


def likelihood_ratio_test(
    full: Dict[str, Any],
    reduced: Dict[str, Any],
) -> Dict[str, float]:
    """
    Likelihood ratio test between two nested multivariate Cox fits.

    Parameters
    ----------
    full, reduced : dict
        Results of fit_multivariate_cox(); ``full`` must have more parameters.

    Returns
    -------
    dict
        statistic, df, pval
    """
    dof = full["n_params"] - reduced["n_params"]
    if dof <= 0:
        raise ValueError("Full model must have more parameters than the reduced model")
    statistic = max(2.0 * (full["log_likelihood"] - reduced["log_likelihood"]), 0.0)
    pval = float(stats.chi2.sf(statistic, dof))
    return {"statistic": float(statistic), "df": int(dof), "pval": pval}


def compare_with_clinical_model(
    factors: pd.DataFrame,
    survival: pd.DataFrame,
    covariates: pd.DataFrame,
    penalizer: float = DEFAULT_MULTIVARIATE_PENALIZER,
) -> Dict[str, float]:
    """
    Test whether factors improve a covariates-only Cox model.

    Both models are fitted on the same samples (those with complete covariates).
    """
    if covariates is None or covariates.shape[1] == 0:
        raise ValueError("A clinical model needs at least one covariate")

    df = _join_survival(factors, survival, covariates)
    clinical = fit_multivariate_cox(
        df[list(covariates.columns)], df, penalizer=penalizer
    )
    full = fit_multivariate_cox(
        df[list(factors.columns) + list(covariates.columns)], df, penalizer=penalizer
    )
    lrt = likelihood_ratio_test(full, clinical)
    lrt["clinical_concordance"] = clinical["concordance"]
    lrt["full_concordance"] = full["concordance"]
    return lrt


def kaplan_meier_split(
    values: pd.Series,
    survival: pd.DataFrame,
    split: Union[str, float] = "median",
) -> Dict[str, Any]:
    """
    Split samples into high/low groups on ``values`` and run a log-rank test.

    Parameters
    ----------
    values : pd.Series
        Factor values indexed by sample.
    survival : pd.DataFrame
        Columns "time" and "event".
    split : "median" or float, default="median"
        Threshold; samples with values above it form the "high" group.

    Returns
    -------
    dict
        groups (Series of "high"/"low"), threshold, statistic, pval, data
    """
    df = survival[["time", "event"]].join(values.rename("value"), how="inner").dropna()
    if len(df) == 0:
        raise ValueError("No samples shared between values and survival table")

    threshold = float(df["value"].median()) if split == "median" else float(split)
    groups = pd.Series(np.where(df["value"] > threshold, "high", "low"), index=df.index)

    high, low = df[groups == "high"], df[groups == "low"]
    if len(high) == 0 or len(low) == 0:
        raise ValueError(f"Split at {threshold:.3f} leaves an empty group")

    result = logrank_test(
        high["time"], low["time"],
        event_observed_A=high["event"], event_observed_B=low["event"],
    )
    return {
        "groups": groups,
        "threshold": threshold,
        "statistic": float(result.test_statistic),
        "pval": float(result.p_value),
        "data": df.assign(group=groups),
    }


def run_survival_analysis(
    jdr_results: Dict[str, Dict[str, Dict[str, Any]]],
    survivals: Dict[str, pd.DataFrame],
    alpha: float = DEFAULT_ALPHA,
    covariates: Optional[Dict[str, pd.DataFrame]] = None,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Univariate Cox + SAF labelling for every cancer and omics combination.

    Parameters
    ----------
    jdr_results : dict
        {cancer: {combination: JDR result dict}}
    survivals : dict
        {cancer: survival table}
    alpha : float, default=0.05
        FDR threshold for SAF labelling (applied within each cancer/combination).
    covariates : dict, optional
        {cancer: covariate table}
    verbose : bool, default=True
        Whether to print per-cancer summaries.

    Returns
    -------
    pd.DataFrame
        Long table with "cancer" and "combination" columns followed by the Cox
        columns, "padj", "SAF" and "label".
    """
    if verbose:
        print("=" * 60)
        print("COX REGRESSION ON JDR FACTORS")
        print("=" * 60)

    tables = []
    for cancer, by_combination in jdr_results.items():
        if cancer not in survivals:
            raise ValueError(f"No survival table for cancer {cancer}")
        cancer_cov = covariates.get(cancer) if covariates else None
        for combination, result in by_combination.items():
            cox = fit_univariate_cox(result["factors"], survivals[cancer], cancer_cov)
            cox = label_survival_factors(cox, alpha=alpha)
            cox.insert(0, "combination", combination)
            cox.insert(0, "cancer", cancer)
            tables.append(cox)
            if verbose:
                safs = cox.loc[cox["SAF"], "factor"].tolist()
                print(f"  {cancer:<6} {combination:<24} SAFs: {safs if safs else 'none'}")

    if not tables:
        return pd.DataFrame(columns=["cancer", "combination"] + COX_COLUMNS
                            + ["padj", "SAF", "label"])
    return pd.concat(tables, ignore_index=True)


def summarize_safs(survival_table: pd.DataFrame) -> pd.DataFrame:
    """Number of factors and SAFs per cancer x combination."""
    summary = (
        survival_table.groupby(["cancer", "combination"])
        .agg(
            n_factors=("factor", "count"),
            n_safs=("SAF", "sum"),
            min_padj=("padj", "min"),
        )
        .reset_index()
    )
    summary["n_safs"] = summary["n_safs"].astype(int)
    return summary


def compare_combinations(
    jdr_results: Dict[str, Dict[str, Dict[str, Any]]],
    survivals: Dict[str, pd.DataFrame],
    covariates: Optional[Dict[str, pd.DataFrame]] = None,
    k: int = 5,
    seed: int = 42,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    C-index of a multivariate Cox model on all factors, per cancer x combination.

    When covariates are supplied, a likelihood ratio test against the
    clinical-only model is added (columns lrt_statistic, lrt_df, lrt_pval).
    A model that fails to converge gives NaN metrics for its row instead of
    aborting the comparison.

    Returns
    -------
    pd.DataFrame
        Columns: cancer, combination, n_factors, concordance, cv_concordance,
        cv_concordance_std [, lrt_*].
    """
    rows = []
    for cancer, by_combination in jdr_results.items():
        for combination, result in by_combination.items():
            factors = result["factors"]
            row = {"cancer": cancer, "combination": combination,
                   "n_factors": factors.shape[1]}
            try:
                fit = fit_multivariate_cox(factors, survivals[cancer])
                row["concordance"] = fit["concordance"]
            except (ConvergenceError, np.linalg.LinAlgError) as e:
                print(f"  Warning: Cox fit failed for {cancer}/{combination}: {e}")
                row["concordance"] = np.nan
            try:
                row.update(cross_validated_concordance(
                    factors, survivals[cancer], k=k, seed=seed
                ))
            except (ValueError, ConvergenceError, np.linalg.LinAlgError) as e:
                print(f"  Warning: CV C-index failed for {cancer}/{combination}: {e}")
                row.update({"cv_concordance": np.nan, "cv_concordance_std": np.nan})

            cancer_cov = covariates.get(cancer) if covariates else None
            if cancer_cov is not None and cancer_cov.shape[1] > 0:
                try:
                    lrt = compare_with_clinical_model(factors, survivals[cancer], cancer_cov)
                    row.update({
                        "lrt_statistic": lrt["statistic"],
                        "lrt_df": lrt["df"],
                        "lrt_pval": lrt["pval"],
                    })
                except (ConvergenceError, np.linalg.LinAlgError) as e:
                    print(f"  Warning: clinical model comparison failed for "
                          f"{cancer}/{combination}: {e}")
                    row.update({"lrt_statistic": np.nan, "lrt_df": np.nan,
                                "lrt_pval": np.nan})
            rows.append(row)

            if verbose:
                print(f"  {cancer:<6} {combination:<24} C-index={row['concordance']:.3f} "
                      f"CV={row['cv_concordance']:.3f}")

    return pd.DataFrame(rows)


def saf_names(survival_table: pd.DataFrame, cancer: str, combination: str) -> List[str]:
    """Return the SAF factor names for one cancer/combination."""
    mask = (
        (survival_table["cancer"] == cancer)
        & (survival_table["combination"] == combination)
        & survival_table["SAF"]
    )
    return survival_table.loc[mask, "factor"].tolist()
