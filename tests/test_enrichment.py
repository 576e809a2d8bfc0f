"""
Tests for grnjdr/enrichment.py

gseapy.prerank is replaced with a stub returning a fixed result table, so these
tests check ranking, result handling and overlap statistics rather than GSEA.
"""

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

import grnjdr.enrichment as enrichment
from grnjdr.enrichment import (
    GSEA_COLUMNS,
    compare_pathway_sets,
    filter_significant_pathways,
    load_gene_sets,
    pathway_overlap_fisher,
    plot_gsea_dotplot,
    rank_features_for_gsea,
    run_factor_gsea,
    run_saf_enrichment,
)


def _gsea_table(terms, padj, nes=None):
    nes = nes if nes is not None else [1.5] * len(terms)
    return pd.DataFrame({
        "factor": "Factor1",
        "term": terms,
        "es": [0.5] * len(terms),
        "nes": nes,
        "pval": padj,
        "padj": padj,
        "leading_edge": ["TP53;EGFR"] * len(terms),
    })


class _FakePrerank:
    def __init__(self, res2d):
        self.res2d = res2d


@pytest.fixture
def fake_prerank(monkeypatch):
    calls = []
    res2d = pd.DataFrame({
        "Name": ["prerank", "prerank"],
        "Term": ["HALLMARK_APOPTOSIS", "HALLMARK_HYPOXIA"],
        "ES": [0.6, -0.4],
        "NES": [1.9, -1.2],
        "NOM p-val": [0.001, 0.2],
        "FDR q-val": [0.01, 0.3],
        "FWER p-val": [0.01, 0.5],
        "Tag %": ["10/50", "5/40"],
        "Gene %": ["12%", "8%"],
        "Lead_genes": ["TP53;BAX", "HIF1A"],
    })

    def prerank(**kwargs):
        calls.append(kwargs)
        return _FakePrerank(res2d)

    monkeypatch.setattr(enrichment.gp, "prerank", prerank)
    return calls


def test_load_gene_sets_from_path_and_name(tmp_path):
    gmt = "HALLMARK_APOPTOSIS\tna\tTP53\tBAX\tCASP3\nHALLMARK_HYPOXIA\tna\tHIF1A\tVEGFA\n"
    path = tmp_path / "custom.gmt"
    path.write_text(gmt)
    (tmp_path / enrichment.GENE_SET_FILES["hallmark"]).write_text(gmt)

    by_path = load_gene_sets(path)
    by_name = load_gene_sets("Hallmark", geneset_dir=tmp_path)

    assert by_path["HALLMARK_APOPTOSIS"] == ["TP53", "BAX", "CASP3"]
    assert set(by_name) == {"HALLMARK_APOPTOSIS", "HALLMARK_HYPOXIA"}


def test_load_gene_sets_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_gene_sets("kegg", geneset_dir=tmp_path)


def test_rank_features_for_gsea_strips_suffix_and_dedupes():
    weights = pd.DataFrame(
        {"Factor1": [0.2, -0.8, 0.5, np.nan]},
        index=["tp53|expression", "EGFR|expression", "egfr", "MYC|expression"],
    )

    ranking = rank_features_for_gsea(weights, "Factor1")

    # EGFR appears twice; the larger |weight| (-0.8) is kept, MYC is NaN
    assert ranking.index.tolist() == ["TP53", "EGFR"]
    assert ranking.tolist() == [0.2, -0.8]


def test_rank_features_for_gsea_unknown_factor():
    with pytest.raises(ValueError, match="Factor2"):
        rank_features_for_gsea(pd.DataFrame({"Factor1": [1.0]}, index=["A"]), "Factor2")


def test_run_factor_gsea_standardizes_columns(fake_prerank):
    weights = pd.DataFrame({"Factor1": [0.3, -0.1]}, index=["TP53", "HIF1A"])

    table = run_factor_gsea(weights, "Factor1", {"SET": ["TP53"]}, permutation_num=10)

    assert list(table.columns) == GSEA_COLUMNS
    assert table["term"].tolist() == ["HALLMARK_APOPTOSIS", "HALLMARK_HYPOXIA"]
    assert table.loc[0, "padj"] == 0.01
    assert table.loc[0, "leading_edge"] == "TP53;BAX"
    assert (table["factor"] == "Factor1").all()

    call = fake_prerank[0]
    assert call["permutation_num"] == 10
    assert call["rnk"].index.tolist() == ["TP53", "HIF1A"]
    assert call["no_plot"] is True


def test_filter_significant_pathways_by_direction():
    table = _gsea_table(["A", "B", "C"], [0.01, 0.02, 0.5], nes=[2.0, -1.8, 1.0])

    assert filter_significant_pathways(table)["term"].tolist() == ["A", "B"]
    assert filter_significant_pathways(table, direction="up")["term"].tolist() == ["A"]
    assert filter_significant_pathways(table, direction="down")["term"].tolist() == ["B"]
    with pytest.raises(ValueError, match="direction"):
        filter_significant_pathways(table, direction="sideways")


def test_run_saf_enrichment_only_tests_safs(fake_prerank):
    jdr_result = {
        "combination": "expr_indeg",
        "weights": {
            "expression": pd.DataFrame(
                {"Factor1": [0.3, -0.1], "Factor2": [0.1, 0.2]}, index=["TP53", "HIF1A"]
            )
        },
    }
    survival_table = pd.DataFrame({
        "cancer": ["BRCA", "BRCA"],
        "combination": ["expr_indeg", "expr_indeg"],
        "factor": ["Factor1", "Factor2"],
        "SAF": [True, False],
    })

    table = run_saf_enrichment(jdr_result, survival_table, "BRCA", {"SET": ["TP53"]},
                               view="expression", verbose=False)

    assert len(fake_prerank) == 1
    assert list(table.columns[:3]) == ["cancer", "combination", "view"]
    assert set(table["factor"]) == {"Factor1"}

    empty = run_saf_enrichment(jdr_result, survival_table, "LUAD", {"SET": ["TP53"]},
                               view="expression", verbose=False)
    assert empty.empty

    with pytest.raises(ValueError, match="indegree"):
        run_saf_enrichment(jdr_result, survival_table, "BRCA", {}, view="indegree",
                           verbose=False)


def test_pathway_overlap_fisher():
    universe = [f"P{i}" for i in range(10)]

    result = pathway_overlap_fisher({"P0", "P1", "P2", "OUTSIDE"}, {"P0", "P1", "P3"},
                                    universe)

    assert result["table"] == [[2, 1], [1, 6]]
    assert result["overlap"] == ["P0", "P1"]
    assert np.isclose(result["odds_ratio"], 12.0)
    assert 0 < result["pval"] < 1


def test_pathway_overlap_fisher_identical_sets_is_significant():
    universe = [f"P{i}" for i in range(40)]
    sig = universe[:8]

    result = pathway_overlap_fisher(sig, sig, universe)

    assert result["pval"] < 1e-6


def test_pathway_overlap_fisher_empty_universe():
    with pytest.raises(ValueError, match="empty"):
        pathway_overlap_fisher({"A"}, {"A"}, [])


def test_compare_pathway_sets_uses_shared_universe():
    gsea_a = _gsea_table(["T1", "T2", "T3", "T4"], [0.01, 0.01, 0.5, 0.5])
    gsea_b = _gsea_table(["T2", "T3", "T4", "T5"], [0.01, 0.01, 0.5, 0.01])

    result = compare_pathway_sets(gsea_a, gsea_b)

    assert result["n_universe"] == 3
    assert result["n_significant_a"] == 1
    assert result["n_significant_b"] == 2
    assert result["overlap"] == ["T2"]


def test_plot_gsea_dotplot_saves_figure(tmp_path):
    table = _gsea_table(["HALLMARK_A", "KEGG_B"], [0.01, 0.2], nes=[1.5, -1.1])
    path = tmp_path / "figs" / "dotplot.png"

    fig = plot_gsea_dotplot(table, save_path=path)

    assert isinstance(fig, plt.Figure)
    assert Path(path).exists()
    labels = [t.get_text() for t in fig.axes[0].get_yticklabels()]
    assert "A" in labels and "B" in labels
    plt.close(fig)
