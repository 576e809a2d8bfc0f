"""
Tests for grnjdr/clinical.py
"""

import numpy as np
import pandas as pd
import pytest

from grnjdr.clinical import (
    associate_factors_with_clinical,
    build_survival_table,
    extract_covariates,
    simplify_stage,
    validate_survival_table,
)


def test_build_survival_table_from_cdr_columns():
    clinical = pd.DataFrame(
        {"OS": [1, 0, 1, np.nan], "OS.time": [100, 300, 0, 50]},
        index=["a", "b", "c", "d"],
    )

    survival = build_survival_table(clinical, verbose=False)

    # "c" has zero follow-up and "d" a missing event
    assert list(survival.index) == ["a", "b"]
    assert survival["event"].tolist() == [1, 0]
    assert survival["time"].dtype == float


def test_build_survival_table_from_vital_status():
    clinical = pd.DataFrame(
        {
            "vital_status": ["Dead", "Alive", "alive", "Unknown"],
            "days_to_death": [120, np.nan, np.nan, 10],
            "days_to_last_follow_up": [np.nan, 400, 800, 10],
        },
        index=["a", "b", "c", "d"],
    )

    survival = build_survival_table(clinical, verbose=False)

    assert list(survival.index) == ["a", "b", "c"]
    assert survival.loc["a", "time"] == 120
    assert survival.loc["a", "event"] == 1
    assert survival.loc["c", "time"] == 800
    assert survival.loc["c", "event"] == 0


def test_build_survival_table_administrative_censoring():
    clinical = pd.DataFrame(
        {"OS": [1, 1, 0], "OS.time": [100, 2500, 3000]},
        index=["a", "b", "c"],
    )

    survival = build_survival_table(clinical, max_time=1825, verbose=False)

    assert survival.loc["a", "event"] == 1
    # Event after the horizon becomes censored at the horizon
    assert survival.loc["b", "event"] == 0
    assert survival.loc["b", "time"] == 1825
    assert survival.loc["c", "time"] == 1825


def test_build_survival_table_in_months_censors_in_months():
    clinical = pd.DataFrame(
        {"OS": [1, 1], "OS.time": [365.25, 3652.5]},
        index=["a", "b"],
    )

    survival = build_survival_table(clinical, time_unit="months", max_time=60,
                                    verbose=False)

    assert np.isclose(survival.loc["a", "time"], 12.0)
    assert survival.loc["a", "event"] == 1
    # 120 months is beyond the 60 month horizon
    assert survival.loc["b", "time"] == 60
    assert survival.loc["b", "event"] == 0

    years = build_survival_table(clinical, time_unit="years", verbose=False)
    assert np.allclose(years["time"], [1.0, 10.0])


def test_build_survival_table_unknown_time_unit():
    clinical = pd.DataFrame({"OS": [1], "OS.time": [100]}, index=["a"])
    with pytest.raises(ValueError, match="weeks"):
        build_survival_table(clinical, time_unit="weeks", verbose=False)


def test_build_survival_table_without_survival_columns():
    with pytest.raises(ValueError, match="OS"):
        build_survival_table(pd.DataFrame({"age": [50]}), verbose=False)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Stage I", 1.0),
        ("Stage IIA", 2.0),
        ("Stage IIIC", 3.0),
        ("stage iv", 4.0),
        ("Stage X", np.nan),
        ("[Not Available]", np.nan),
        (np.nan, np.nan),
        (None, np.nan),
    ],
)
def test_simplify_stage(value, expected):
    result = simplify_stage(value)
    if np.isnan(expected):
        assert np.isnan(result)
    else:
        assert result == expected


def test_extract_covariates_encodes_sex_age_and_stage():
    clinical = pd.DataFrame(
        {
            "age_at_initial_pathologic_diagnosis": ["61", "45", "[Not Available]"],
            "gender": ["MALE", "FEMALE", "FEMALE"],
            "ajcc_pathologic_tumor_stage": ["Stage II", "Stage IV", "Stage I"],
        },
        index=["a", "b", "c"],
    )

    cov = extract_covariates(clinical, ["age", "sex", "stage"])

    assert list(cov.columns) == ["age", "sex", "stage"]
    assert cov.loc["a", "age"] == 61
    assert np.isnan(cov.loc["c", "age"])
    assert cov["sex"].tolist() == [1.0, 0.0, 0.0]
    assert cov["stage"].tolist() == [2.0, 4.0, 1.0]


def test_extract_covariates_drops_constant_sex():
    clinical = pd.DataFrame({"age": [50, 60], "gender": ["FEMALE", "FEMALE"]})

    cov = extract_covariates(clinical)

    assert list(cov.columns) == ["age"]


def test_extract_covariates_unknown_name():
    with pytest.raises(ValueError, match="Unknown covariate"):
        extract_covariates(pd.DataFrame({"age": [1]}), ["bmi"])


def test_validate_survival_table(survival_cohort):
    _, survival = survival_cohort

    checks = validate_survival_table(survival, min_events=10, verbose=False)

    assert checks["n_samples"] == 120
    assert checks["enough_events"]
    assert checks["all_checks_passed"]

    too_strict = validate_survival_table(survival, min_events=10_000, verbose=False)
    assert not too_strict["all_checks_passed"]


def test_validate_survival_table_missing_columns():
    with pytest.raises(ValueError, match="missing columns"):
        validate_survival_table(pd.DataFrame({"time": [1.0]}), verbose=False)


def test_associate_factors_with_clinical_detects_group_shift():
    rng = np.random.default_rng(3)
    n = 60
    sex = np.array(["MALE", "FEMALE"] * (n // 2))
    factors = pd.DataFrame(
        {
            "Factor1": np.where(sex == "MALE", 3.0, 0.0) + rng.normal(scale=0.5, size=n),
            "Factor2": rng.normal(size=n),
        },
        index=[f"s{i}" for i in range(n)],
    )
    age = 40 + 10 * factors["Factor2"] + rng.normal(scale=1.0, size=n)
    stage = np.array(["Stage I", "Stage II", "Stage III"] * (n // 3))
    clinical = pd.DataFrame({"gender": sex, "age": age, "stage": stage},
                            index=factors.index)

    result = associate_factors_with_clinical(factors, clinical, ["gender", "age", "stage"])

    assert set(result.columns) == {"factor", "variable", "test", "statistic", "pval", "padj"}
    assert len(result) == 6

    sex_f1 = result[(result["variable"] == "gender") & (result["factor"] == "Factor1")].iloc[0]
    assert sex_f1["test"] == "mannwhitneyu"
    assert sex_f1["padj"] < 0.001

    age_f2 = result[(result["variable"] == "age") & (result["factor"] == "Factor2")].iloc[0]
    assert age_f2["test"] == "spearman"
    assert age_f2["padj"] < 0.001

    assert set(result.loc[result["variable"] == "stage", "test"]) == {"kruskal"}
    assert (result["padj"] >= result["pval"]).all()


def test_associate_factors_with_clinical_missing_column():
    factors = pd.DataFrame({"Factor1": [1.0]}, index=["a"])
    with pytest.raises(ValueError, match="not found"):
        associate_factors_with_clinical(factors, pd.DataFrame(index=["a"]), ["stage"])


def test_associate_factors_with_clinical_ignores_tcga_placeholders():
    rng = np.random.default_rng(5)
    n = 60
    sex = np.array(["MALE", "FEMALE"] * (n // 2), dtype=object)
    sex[:6] = "[Not Available]"
    age = (40 + 10 * rng.normal(size=n)).astype(object)
    age[:8] = "[Not Available]"
    factors = pd.DataFrame({"Factor1": rng.normal(size=n)},
                           index=[f"s{i}" for i in range(n)])
    clinical = pd.DataFrame({"gender": sex, "age": age}, index=factors.index)

    result = associate_factors_with_clinical(factors, clinical, ["gender", "age"])

    tests = dict(zip(result["variable"], result["test"]))
    # Placeholders are neither a third sex group nor block numeric detection
    assert tests == {"gender": "mannwhitneyu", "age": "spearman"}
