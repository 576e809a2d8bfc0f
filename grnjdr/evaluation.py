"""
Evaluation Module
=================

Summary tables and figures for the survival analysis of JDR factors.

This module provides functions to:
    - Plot a heatmap of factor significance across cancers and combinations
    - Draw forest plots of per-factor hazard ratios
    - Draw Kaplan-Meier curves for high/low factor groups
    - Compare the C-index of omics combinations per cancer
    - Plot variance explained per view and factor
    - Save a per-cancer/combination results summary as CSV

Expected Usage:
    After run_survival_analysis() and compare_combinations() from
    grnjdr/survival.py, use these functions to produce the paper figures.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from lifelines import KaplanMeierFitter

from .survival import summarize_safs

# Set matplotlib style for publication-quality figures
plt.style.use("seaborn-v0_8-whitegrid")

GROUP_COLORS = {"high": "#dc2626", "low": "#2563eb"}


def _save_figure(fig: plt.Figure, save_path: Optional[Union[str, Path]], what: str) -> None:
    if save_path is None:
        return
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(save_path, dpi=150, bbox_inches="tight")
    print(f"{what} saved to: {save_path}")


def plot_saf_heatmap(
    survival_table: pd.DataFrame,
    alpha: float = 0.05,
    title: str = "Survival association of JDR factors",
    save_path: Optional[Union[str, Path]] = None,
    figsize: Optional[tuple] = None,
) -> plt.Figure:
    """
    Heatmap of -log10(padj) with rows = cancer/combination, columns = factor.

    Cells for SAFs (padj < alpha) are annotated with "*".

    Parameters
    ----------
    survival_table : pd.DataFrame
        Output of run_survival_analysis().
    alpha : float, default=0.05
        SAF threshold used for the annotation.
    title : str
        Plot title.
    save_path : str or Path, optional
        If provided, saves the figure to this path.
    figsize : tuple, optional
        Figure size; scaled to the table when None.

    Returns
    -------
    plt.Figure
    """
    df = survival_table.copy()
    df["row"] = df["cancer"] + " / " + df["combination"]
    df["neg_log10_padj"] = -np.log10(df["padj"].clip(lower=1e-10))

    matrix = df.pivot(index="row", columns="factor", values="neg_log10_padj")
    padj = df.pivot(index="row", columns="factor", values="padj")

    # Natural factor order (Factor2 before Factor10)
    ordered = sorted(matrix.columns, key=lambda f: int("".join(c for c in f if c.isdigit()) or 0))
    matrix = matrix[ordered]
    padj = padj[ordered]
    annot = padj.apply(lambda col: col.map(lambda p: "*" if p < alpha else ""))

    if figsize is None:
        figsize = (max(6, 0.6 * matrix.shape[1] + 3), max(4, 0.4 * matrix.shape[0] + 2))

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(
        matrix,
        annot=annot,
        fmt="",
        cmap="Reds",
        vmin=0,
        linewidths=0.5,
        linecolor="white",
        cbar_kws={"label": "-log10(FDR)"},
        ax=ax,
    )
    ax.set_xlabel("Factor", fontsize=11)
    ax.set_ylabel("")
    ax.set_title(title, fontsize=13, fontweight="bold")

    plt.tight_layout()
    _save_figure(fig, save_path, "SAF heatmap")
    return fig


def plot_hazard_ratios(
    cox_table: pd.DataFrame,
    title: str = "Hazard ratios per factor",
    save_path: Optional[Union[str, Path]] = None,
    figsize: tuple = (7, 6),
) -> plt.Figure:
    """
    Forest plot of hazard ratios with 95% confidence intervals.

    SAFs (if the table has an "SAF" column) are drawn in red.
    """
    df = cox_table.dropna(subset=["hazard_ratio"]).reset_index(drop=True)
    is_saf = df["SAF"].to_numpy() if "SAF" in df.columns else np.zeros(len(df), dtype=bool)

    fig, ax = plt.subplots(figsize=figsize)
    y = np.arange(len(df))[::-1]
    colors = np.where(is_saf, "#dc2626", "#475569")

    ax.hlines(y, df["ci_lower"], df["ci_upper"], colors=colors, linewidth=2)
    ax.scatter(df["hazard_ratio"], y, c=colors, s=60, zorder=3, edgecolor="white")
    ax.axvline(1.0, color="#94a3b8", linestyle="--", linewidth=1)

    ax.set_xscale("log")
    ax.set_yticks(y)
    ax.set_yticklabels(df["factor"])
    ax.set_xlabel("Hazard ratio (95% CI, log scale)", fontsize=11)
    ax.set_title(title, fontsize=13, fontweight="bold")

    from matplotlib.lines import Line2D

    legend_elements = [
        Line2D([0], [0], marker="o", color="#dc2626", label="SAF", linestyle=""),
        Line2D([0], [0], marker="o", color="#475569", label="not significant", linestyle=""),
    ]
    ax.legend(handles=legend_elements, loc="best", fontsize=9)

    plt.tight_layout()
    _save_figure(fig, save_path, "Hazard ratio plot")
    return fig


def plot_kaplan_meier(
    km_result: Dict[str, Any],
    title: str = "Kaplan-Meier curves",
    save_path: Optional[Union[str, Path]] = None,
    figsize: tuple = (7, 5),
    time_unit: str = "days",
) -> plt.Figure:
    """
    Kaplan-Meier curves for the high/low groups of kaplan_meier_split().
    """
    data = km_result["data"]

    fig, ax = plt.subplots(figsize=figsize)
    for group in ("high", "low"):
        subset = data[data["group"] == group]
        if len(subset) == 0:
            continue
        kmf = KaplanMeierFitter()
        kmf.fit(subset["time"], event_observed=subset["event"],
                label=f"{group} (n={len(subset)})")
        kmf.plot_survival_function(ax=ax, ci_show=True, color=GROUP_COLORS[group])

    ax.set_xlabel(f"Time ({time_unit})", fontsize=11)
    ax.set_ylabel("Survival probability", fontsize=11)
    ax.set_ylim([0, 1.05])
    ax.set_title(f"{title}\nlog-rank p = {km_result['pval']:.2e}",
                 fontsize=12, fontweight="bold")

    plt.tight_layout()
    _save_figure(fig, save_path, "Kaplan-Meier plot")
    return fig


def plot_concordance_comparison(
    comparison_table: pd.DataFrame,
    metric: str = "cv_concordance",
    title: str = "C-index per omics combination",
    save_path: Optional[Union[str, Path]] = None,
    figsize: tuple = (10, 5),
) -> plt.Figure:
    """
    Grouped bar chart of a concordance metric per cancer and combination.
    """
    if metric not in comparison_table.columns:
        raise ValueError(f"Metric '{metric}' not in comparison table")

    fig, ax = plt.subplots(figsize=figsize)
    sns.barplot(
        data=comparison_table,
        x="cancer",
        y=metric,
        hue="combination",
        palette="Set2",
        ax=ax,
    )
    ax.axhline(0.5, color="#64748b", linestyle="--", linewidth=1, alpha=0.7)
    ax.set_ylim([0.4, 1.0])
    ax.set_xlabel("Cancer", fontsize=11)
    ax.set_ylabel("C-index", fontsize=11)
    ax.set_title(title, fontsize=13, fontweight="bold")
    ax.legend(title="Combination", fontsize=9, loc="upper right")

    plt.tight_layout()
    _save_figure(fig, save_path, "C-index comparison plot")
    return fig


def plot_variance_explained(
    jdr_result: Dict[str, Any],
    title: Optional[str] = None,
    save_path: Optional[Union[str, Path]] = None,
    figsize: Optional[tuple] = None,
) -> plt.Figure:
    """
    Heatmap of variance explained (%) per view and factor.
    """
    r2 = jdr_result.get("r2")
    if r2 is None:
        raise ValueError("JDR result has no variance explained table")

    if figsize is None:
        figsize = (max(6, 0.6 * r2.shape[1] + 2), max(2.5, 0.6 * r2.shape[0] + 1.5))
    if title is None:
        title = f"Variance explained ({jdr_result.get('combination', 'JDR')})"

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(r2, annot=True, fmt=".1f", cmap="Blues", vmin=0,
                cbar_kws={"label": "R2 (%)"}, ax=ax)
    ax.set_title(title, fontsize=13, fontweight="bold")

    plt.tight_layout()
    _save_figure(fig, save_path, "Variance explained plot")
    return fig


def generate_results_table(
    survival_table: pd.DataFrame,
    comparison_table: Optional[pd.DataFrame] = None,
    save_path: Optional[Union[str, Path]] = None,
) -> pd.DataFrame:
    """
    Per cancer/combination summary: factors, SAFs, best factor, C-index.

    Returns
    -------
    pd.DataFrame
        Columns: cancer, combination, n_factors, n_safs, min_padj, best_factor,
        best_hazard_ratio [, concordance, cv_concordance, ...].
    """
    summary = summarize_safs(survival_table)

    valid = survival_table.dropna(subset=["padj"])
    if len(valid) > 0:
        best = (
            valid.sort_values("padj")
            .groupby(["cancer", "combination"], as_index=False)
            .first()[["cancer", "combination", "factor", "hazard_ratio"]]
            .rename(columns={"factor": "best_factor", "hazard_ratio": "best_hazard_ratio"})
        )
        summary = summary.merge(best, on=["cancer", "combination"], how="left")
    else:
        summary["best_factor"] = None
        summary["best_hazard_ratio"] = np.nan

    if comparison_table is not None and len(comparison_table) > 0:
        extra = [c for c in comparison_table.columns
                 if c not in ("n_factors",) and c not in summary.columns]
        summary = summary.merge(
            comparison_table[["cancer", "combination"] + extra],
            on=["cancer", "combination"],
            how="left",
        )

    if save_path is not None:
        save_path = Path(save_path)
        save_path.parent.mkdir(parents=True, exist_ok=True)
        summary.to_csv(save_path, index=False)
        print(f"Results table saved to: {save_path}")

    return summary
