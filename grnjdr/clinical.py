"""
Clinical Module
===============

Builds survival tables and clinical covariates from TCGA clinical exports, and
tests associations between latent factors and clinical variables.

Survival Label Sources (in order of preference):
    1. TCGA Pan-Cancer Clinical Data Resource (CDR) columns:
       "OS" (0/1 event) and "OS.time" (days)
    2. GDC clinical columns:
       "vital_status" (Alive/Dead), "days_to_death", "days_to_last_follow_up"

Label Conventions:
    - time: follow-up in days by default, or months/years (float, strictly positive)
    - event: 1 = death observed, 0 = censored

Covariates:
    - age: age at diagnosis in years
    - sex: 1 = male, 0 = female
    - stage: simplified AJCC stage as ordinal 1-4
"""

import re
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests


VITAL_STATUS_TO_EVENT = {
    "dead": 1,
    "deceased": 1,
    "alive": 0,
    "living": 0,
}

SEX_TO_BINARY = {
    "male": 1,
    "female": 0,
}

AGE_COLUMNS = ["age_at_initial_pathologic_diagnosis", "age_at_diagnosis", "age"]
SEX_COLUMNS = ["gender", "sex"]
STAGE_COLUMNS = ["ajcc_pathologic_tumor_stage", "tumor_stage", "stage"]

ROMAN_TO_STAGE = {"IV": 4, "III": 3, "II": 2, "I": 1}

# Days per unit of the survival time axis
TIME_UNITS = {
    "days": 1.0,
    "months": 30.4375,
    "years": 365.25,
}

# TCGA placeholders for missing clinical values
CLINICAL_MISSING_VALUES = [
    "[Not Available]",
    "[Not Applicable]",
    "[Not Evaluated]",
    "[Unknown]",
    "[Discrepancy]",
    "[Not Reported]",
    "not reported",
    "Unknown",
]

DEFAULT_MIN_EVENTS = 10


def _first_present(df: pd.DataFrame, candidates: Sequence[str]) -> Optional[str]:
    for col in candidates:
        if col in df.columns:
            return col
    return None


def build_survival_table(
    clinical: pd.DataFrame,
    time_unit: str = "days",
    max_time: Optional[float] = None,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Build a (time, event) survival table from a clinical DataFrame.

    Parameters
    ----------
    clinical : pd.DataFrame
        Clinical table indexed by sample ID.
    time_unit : str, default="days"
        Unit of the returned "time" column: "days", "months" or "years".
        Source follow-up columns are always in days.
    max_time : float, optional
        Administrative censoring horizon in ``time_unit``. Samples followed longer are
        censored at ``max_time``; events after the horizon become censored.
    verbose : bool, default=True
        Whether to print a summary.

    Returns
    -------
    pd.DataFrame
        Columns "time" (float) and "event" (int), indexed like ``clinical``.
        Rows with missing, negative or zero follow-up are removed.
    """
    if time_unit not in TIME_UNITS:
        raise ValueError(
            f"Unknown time unit: {time_unit}. Choose from {list(TIME_UNITS)}"
        )

    if "OS" in clinical.columns and "OS.time" in clinical.columns:
        event = pd.to_numeric(clinical["OS"], errors="coerce")
        time = pd.to_numeric(clinical["OS.time"], errors="coerce")
        source = "CDR (OS, OS.time)"
    elif "vital_status" in clinical.columns:
        status = clinical["vital_status"].astype(str).str.strip().str.lower()
        event = status.map(VITAL_STATUS_TO_EVENT)
        death = (
            pd.to_numeric(clinical["days_to_death"], errors="coerce")
            if "days_to_death" in clinical.columns
            else pd.Series(np.nan, index=clinical.index)
        )
        follow_up = (
            pd.to_numeric(clinical["days_to_last_follow_up"], errors="coerce")
            if "days_to_last_follow_up" in clinical.columns
            else pd.Series(np.nan, index=clinical.index)
        )
        time = death.where(event == 1, follow_up)
        source = "GDC (vital_status)"
    else:
        raise ValueError(
            "Clinical table has neither OS/OS.time nor vital_status columns"
        )

    survival = pd.DataFrame({"time": time, "event": event}, index=clinical.index)
    n_before = len(survival)
    survival = survival.dropna()
    survival = survival[survival["time"] > 0]

    survival["time"] = survival["time"].astype(float) / TIME_UNITS[time_unit]
    survival["event"] = survival["event"].astype(int)

    if max_time is not None:
        beyond = survival["time"] > max_time
        survival.loc[beyond, "event"] = 0
        survival.loc[beyond, "time"] = float(max_time)

    if verbose:
        print(f"Survival table from {source}: {len(survival)} samples "
              f"({n_before - len(survival)} dropped), "
              f"{int(survival['event'].sum())} events, time in {time_unit}")

    return survival


def simplify_stage(value: Any) -> float:
    """
    Convert an AJCC stage string to an ordinal 1-4.

    Examples
    --------
    >>> simplify_stage("Stage IIIB")
    3.0
    >>> simplify_stage("[Not Available]")
    nan
    """
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return np.nan
    match = re.search(r"stage\s*(IV|III|II|I)", str(value), flags=re.IGNORECASE)
    if match is None:
        return np.nan
    return float(ROMAN_TO_STAGE[match.group(1).upper()])


def extract_covariates(
    clinical: pd.DataFrame,
    covariates: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Extract numeric clinical covariates for Cox models.

    Parameters
    ----------
    clinical : pd.DataFrame
        Clinical table indexed by sample ID.
    covariates : list of str, optional
        Any of "age", "sex", "stage". Defaults to ["age", "sex"].

    Returns
    -------
    pd.DataFrame
        One numeric column per covariate. Covariates whose source column is
        absent are skipped.
    """
    if covariates is None:
        covariates = ["age", "sex"]

    out = pd.DataFrame(index=clinical.index)
    for cov in covariates:
        if cov == "age":
            col = _first_present(clinical, AGE_COLUMNS)
            if col is not None:
                out["age"] = pd.to_numeric(clinical[col], errors="coerce")
        elif cov == "sex":
            col = _first_present(clinical, SEX_COLUMNS)
            if col is not None:
                out["sex"] = (
                    clinical[col].astype(str).str.strip().str.lower().map(SEX_TO_BINARY)
                )
        elif cov == "stage":
            col = _first_present(clinical, STAGE_COLUMNS)
            if col is not None:
                out["stage"] = clinical[col].map(simplify_stage)
        else:
            raise ValueError(f"Unknown covariate: {cov}")

    # Single-sex cohorts (OV, PRAD) carry no information in "sex"
    constant = [c for c in out.columns if out[c].nunique(dropna=True) <= 1]
    if constant:
        out = out.drop(columns=constant)

    return out.astype(float)


def validate_survival_table(
    survival: pd.DataFrame,
    min_events: int = DEFAULT_MIN_EVENTS,
    verbose: bool = True,
) -> Dict[str, Any]:
    """
    Check that a survival table is usable for Cox regression.

    Returns
    -------
    dict
        n_samples, n_events, enough_events, non_negative_times,
        binary_events, all_checks_passed
    """
    missing = [c for c in ("time", "event") if c not in survival.columns]
    if missing:
        raise ValueError(f"Survival table missing columns: {missing}")

    n_events = int(survival["event"].sum())
    checks = {
        "n_samples": len(survival),
        "n_events": n_events,
        "enough_events": n_events >= min_events,
        "non_negative_times": bool((survival["time"] >= 0).all()),
        "binary_events": bool(survival["event"].isin([0, 1]).all()),
    }
    checks["all_checks_passed"] = (
        checks["enough_events"]
        and checks["non_negative_times"]
        and checks["binary_events"]
    )

    if verbose:
        print(f"  Samples: {checks['n_samples']}, events: {n_events} "
              f"(min {min_events}) -> "
              f"{'OK' if checks['all_checks_passed'] else 'FAILED'}")

    return checks


def associate_factors_with_clinical(
    factors: pd.DataFrame,
    clinical: pd.DataFrame,
    columns: List[str],
    min_group_size: int = 3,
) -> pd.DataFrame:
    """
    Test each factor against each clinical variable.

    Categorical variables are tested with Mann-Whitney U (two groups) or
    Kruskal-Wallis (more groups); numeric variables with Spearman correlation.
    Groups smaller than ``min_group_size`` are dropped before testing.
    TCGA placeholders such as "[Not Available]" count as missing values.

    Returns
    -------
    pd.DataFrame
        Columns: factor, variable, test, statistic, pval, padj
    """
    missing = [c for c in columns if c not in clinical.columns]
    if missing:
        raise ValueError(f"Clinical columns not found: {missing}")

    shared = factors.index.intersection(clinical.index)
    factors = factors.loc[shared]
    clinical = clinical.loc[shared]

    rows = []
    for variable in columns:
        values = clinical[variable].replace(CLINICAL_MISSING_VALUES, np.nan)
        numeric = pd.to_numeric(values, errors="coerce")
        is_numeric = numeric.notna().sum() >= max(values.notna().sum(), 1) * 0.9

        for factor in factors.columns:
            f = factors[factor]
            if is_numeric:
                mask = numeric.notna()
                if mask.sum() < min_group_size:
                    continue
                stat, pval = stats.spearmanr(f[mask], numeric[mask])
                test = "spearman"
            else:
                groups = [
                    f[values == level].to_numpy()
                    for level in values.dropna().unique()
                ]
                groups = [g for g in groups if len(g) >= min_group_size]
                if len(groups) < 2:
                    continue
                if len(groups) == 2:
                    stat, pval = stats.mannwhitneyu(
                        groups[0], groups[1], alternative="two-sided"
                    )
                    test = "mannwhitneyu"
                else:
                    stat, pval = stats.kruskal(*groups)
                    test = "kruskal"
            rows.append({
                "factor": factor,
                "variable": variable,
                "test": test,
                "statistic": float(stat),
                "pval": float(pval),
            })

    result = pd.DataFrame(
        rows, columns=["factor", "variable", "test", "statistic", "pval"]
    )
    if len(result) > 0:
        result["padj"] = multipletests(result["pval"].fillna(1.0), method="fdr_bh")[1]
    else:
        result["padj"] = pd.Series(dtype=float)
    return result
