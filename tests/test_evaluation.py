"""
Tests for grnjdr/evaluation.py
"""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from grnjdr.evaluation import (
    generate_results_table,
    plot_concordance_comparison,
    plot_hazard_ratios,
    plot_kaplan_meier,
    plot_saf_heatmap,
    plot_variance_explained,
)
from grnjdr.factorization import run_pca_factorization
from grnjdr.survival import kaplan_meier_split, run_survival_analysis


@pytest.fixture
def survival_table(survival_cohort):
    factors, survival = survival_cohort
    jdr_results = {
        "BRCA": {"expr_meth": {"factors": factors},
                 "indeg_outdeg": {"factors": factors[["Factor2", "Factor3"]]}},
        "LUAD": {"expr_meth": {"factors": factors}},
    }
    return run_survival_analysis(
        jdr_results, {"BRCA": survival, "LUAD": survival}, verbose=False
    )


@pytest.fixture
def comparison_table():
    return pd.DataFrame({
        "cancer": ["BRCA", "BRCA", "LUAD"],
        "combination": ["expr_meth", "indeg_outdeg", "expr_meth"],
        "n_factors": [3, 2, 3],
        "concordance": [0.72, 0.55, 0.70],
        "cv_concordance": [0.70, 0.52, 0.68],
        "cv_concordance_std": [0.02, 0.03, 0.02],
    })


def test_plot_saf_heatmap(tmp_path, survival_table):
    path = tmp_path / "saf_heatmap.png"

    fig = plot_saf_heatmap(survival_table, save_path=path)

    assert isinstance(fig, plt.Figure)
    assert path.exists()
    ax = fig.axes[0]
    assert [t.get_text() for t in ax.get_xticklabels()] == ["Factor1", "Factor2", "Factor3"]
    assert "*" in [t.get_text() for t in ax.texts]
    plt.close(fig)


def test_plot_hazard_ratios(tmp_path, survival_table):
    cox = survival_table[(survival_table["cancer"] == "BRCA")
                         & (survival_table["combination"] == "expr_meth")]
    path = tmp_path / "forest.pdf"

    fig = plot_hazard_ratios(cox, save_path=path)

    assert path.exists()
    assert fig.axes[0].get_xscale() == "log"
    assert len(fig.axes[0].get_yticklabels()) == 3
    plt.close(fig)


def test_plot_kaplan_meier(tmp_path, survival_cohort):
    factors, survival = survival_cohort
    km = kaplan_meier_split(factors["Factor1"], survival)
    path = tmp_path / "km.png"

    fig = plot_kaplan_meier(km, title="Factor1", save_path=path)

    assert path.exists()
    assert "log-rank p" in fig.axes[0].get_title()
    plt.close(fig)


def test_plot_concordance_comparison(tmp_path, comparison_table):
    fig = plot_concordance_comparison(comparison_table, save_path=tmp_path / "cindex.png")

    assert (tmp_path / "cindex.png").exists()
    plt.close(fig)

    with pytest.raises(ValueError, match="lrt_pval"):
        plot_concordance_comparison(comparison_table, metric="lrt_pval")


def test_plot_variance_explained(omics_views):
    result = run_pca_factorization(omics_views, n_factors=4, verbose=False)
    result["combination"] = "expr_indeg"

    fig = plot_variance_explained(result)

    assert "expr_indeg" in fig.axes[0].get_title()
    plt.close(fig)

    with pytest.raises(ValueError, match="variance explained"):
        plot_variance_explained({"r2": None})


def test_generate_results_table(tmp_path, survival_table, comparison_table):
    path = tmp_path / "tables" / "results.csv"

    table = generate_results_table(survival_table, comparison_table, save_path=path)

    assert path.exists()
    assert len(table) == 3
    for col in ("n_factors", "n_safs", "min_padj", "best_factor", "best_hazard_ratio",
                "concordance", "cv_concordance"):
        assert col in table.columns

    brca = table.set_index(["cancer", "combination"]).loc[("BRCA", "expr_meth")]
    assert brca["best_factor"] == "Factor1"
    assert brca["best_hazard_ratio"] > 1
    assert np.isclose(brca["concordance"], 0.72)

    saved = pd.read_csv(path)
    assert list(saved.columns) == list(table.columns)


def test_generate_results_table_without_comparison(survival_table):
    table = generate_results_table(survival_table)

    assert "concordance" not in table.columns
    assert table["n_factors"].tolist() == [3, 2, 3]
