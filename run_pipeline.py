#!/usr/bin/env python3
"""
Run the GRN-informed Multi-Omics Survival Pipeline
==================================================

This script runs the full analysis from per-cancer input tables to the final
figures and tables. Gene regulatory network summaries (LIONESS indegree and
outdegree) are treated as extra omics views and jointly factorized with
classic omics. The factors are then tested for association with overall survival.

Pipeline Steps:
    1. Load omics and clinical tables, build survival tables
    2. Load (or infer with PANDA/LIONESS) network indegree/outdegree views
    3. Preprocess: match samples, transform, filter, scale
    4. Joint dimensionality reduction per omics combination (MOFA+ or PCA)
    5. Cox regression per factor, label survival-associated factors (SAFs)
    6. Compare omics combinations (C-index, LRT vs. clinical model)
    7. GSEA of SAF loadings and Fisher overlap of pathway sets
    8. Generate figures and summary tables

Usage:
    python run_pipeline.py
    python run_pipeline.py --use-precomputed          # Reuse cached intermediates
    python run_pipeline.py --cancers BRCA LUAD --jdr-method pca --skip-gsea

Outputs:
    - results/figures/*.png: SAF heatmap, forest plots, KM curves, C-index bars
    - results/tables/*.csv: Cox tables, C-index comparison, GSEA, Fisher overlap
    - <data-dir>/processed/<CANCER>/: preprocessed views (.h5ad), survival.csv and
      preprocessing.json. With --use-precomputed this cache replaces steps 2-3
      (and the omics tables) when it holds every requested view and was built
      with the same settings.
"""

import argparse
import json
import sys
import time
from pathlib import Path

import matplotlib
import pandas as pd

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402

PROJECT_ROOT = Path(__file__).parent

from grnjdr.clinical import (  # noqa: E402
    TIME_UNITS,
    build_survival_table,
    extract_covariates,
    validate_survival_table,
    associate_factors_with_clinical,
)
from grnjdr.data_loading import (  # noqa: E402
    DEFAULT_CANCERS,
    DEFAULT_DATA_DIR,
    NETWORK_VIEWS,
    VIEW_FILE_NAMES,
    align_clinical_to_samples,
    apply_sample_mapping,
    load_cancer_data,
    load_clinical_table,
    resolve_data_file,
)
from grnjdr.enrichment import (  # noqa: E402
    compare_pathway_sets,
    load_gene_sets,
    plot_gsea_dotplot,
    run_saf_enrichment,
)
from grnjdr.evaluation import (  # noqa: E402
    generate_results_table,
    plot_concordance_comparison,
    plot_hazard_ratios,
    plot_kaplan_meier,
    plot_saf_heatmap,
    plot_variance_explained,
)
from grnjdr.factorization import (  # noqa: E402
    DEFAULT_N_FACTORS,
    OMICS_COMBINATIONS,
    load_jdr_result,
    run_jdr,
    save_jdr_result,
)
from grnjdr.networks import (  # noqa: E402
    compute_degrees,
    load_degree_tables,
    run_panda_lioness,
    save_degree_tables,
)
from grnjdr.preprocessing import (  # noqa: E402
    DEFAULT_N_TOP_FEATURES,
    load_preprocessed_data,
    run_preprocessing_pipeline,
    save_preprocessed_data,
)
from grnjdr.survival import (  # noqa: E402
    compare_combinations,
    kaplan_meier_split,
    run_survival_analysis,
    summarize_safs,
)

TOTAL_STEPS = 9

# Written next to the cached .h5ad views
PROCESSED_META_FILE = "preprocessing.json"


def print_header(title: str) -> None:
    """Print a formatted section header."""
    print("\n" + "=" * 70)
    print(f" {title}")
    print("=" * 70)


def print_step(step_num: int, description: str) -> None:
    """Print a formatted step indicator."""
    print(f"\n[Step {step_num}/{TOTAL_STEPS}] {description}")
    print("-" * 60)


def required_views(combinations) -> list:
    views = []
    for name in combinations:
        for view in OMICS_COMBINATIONS[name]:
            if view not in views:
                views.append(view)
    return views


def processed_dir_for(cancer: str, args) -> Path:
    """Cache directory of the preprocessed views of one cancer."""
    return Path(args.data_dir) / "processed" / cancer


def preprocessing_settings(args) -> dict:
    """Options that change the preprocessed views or the survival table."""
    return {
        "n_top_features": args.n_top_features,
        "time_unit": args.time_unit,
        "max_time": args.max_time,
    }


def load_cached_preprocessing(cancer: str, args):
    """
    Return the cached preprocessing of ``cancer`` when it covers this run.

    The cache must hold every view of the requested combinations and have been
    written with the same preprocessing settings. Otherwise None is returned
    and the views are recomputed from the input tables.
    """
    processed_dir = processed_dir_for(cancer, args)
    meta_path = processed_dir / PROCESSED_META_FILE
    if not meta_path.exists():
        print(f"  No cached preprocessing in {processed_dir}; computing from input tables")
        return None

    with open(meta_path) as f:
        meta = json.load(f)

    needed = required_views(args.combinations)
    missing = [v for v in needed if v not in meta.get("views", [])]
    if missing:
        print(f"  Warning: cached preprocessing in {processed_dir} lacks {missing}; "
              f"recomputing")
        return None
    if meta.get("settings") != preprocessing_settings(args):
        print(f"  Warning: cached preprocessing in {processed_dir} used settings "
              f"{meta.get('settings')}; recomputing")
        return None

    cached = load_preprocessed_data(processed_dir)
    if cached["survival"] is None:
        print(f"  Warning: no cached survival table in {processed_dir}; recomputing")
        return None

    cached["views"] = {v: cached["views"][v] for v in needed}
    return cached


def has_degree_tables(cancer_dir: Path) -> bool:
    for view in NETWORK_VIEWS:
        try:
            resolve_data_file(cancer_dir, VIEW_FILE_NAMES[view])
        except FileNotFoundError:
            return False
    return True


def omics_views_to_load(cancer: str, args) -> list:
    """Input tables read in step 1, including expression when PANDA needs it."""
    needed = required_views(args.combinations)
    omics = [v for v in needed if v not in NETWORK_VIEWS]
    needs_inference = (
        any(v in NETWORK_VIEWS for v in needed)
        and args.motif is not None
        and args.ppi is not None
        and not has_degree_tables(Path(args.data_dir) / cancer)
    )
    if needs_inference and "expression" not in omics:
        omics.append("expression")
    return omics


def step1_load_data(cancer: str, args, cached=None) -> dict:
    """
    Step 1: Load omics views and clinical data, build survival labels.

    With a usable preprocessing cache only the clinical table is read, for
    covariates and clinical associations, and the cached survival table is kept.
    """
    cancer_dir = Path(args.data_dir) / cancer
    if cached is not None:
        views = {}
        survival = cached["survival"]
        try:
            clinical = load_clinical_table(
                resolve_data_file(cancer_dir, VIEW_FILE_NAMES["clinical"])
            )
            clinical = align_clinical_to_samples(clinical, survival.index)
        except FileNotFoundError:
            print(f"  Warning: no clinical table for {cancer}; "
                  f"covariates and clinical associations are skipped")
            clinical = pd.DataFrame(index=survival.index)
    else:
        data = load_cancer_data(cancer, args.data_dir, views=omics_views_to_load(cancer, args))
        views = data["views"]
        clinical = data["clinical"]
        survival = build_survival_table(
            clinical, time_unit=args.time_unit, max_time=args.max_time
        )

    checks = validate_survival_table(survival, min_events=args.min_events)
    if not checks["all_checks_passed"]:
        print(f"  Warning: survival table for {cancer} failed validation")

    covariates = extract_covariates(clinical, args.covariates)
    return {
        "views": views,
        "clinical": clinical,
        "survival": survival,
        "covariates": covariates,
        "checks": checks,
    }


def step2_network_degrees(cancer: str, loaded: dict, args) -> dict:
    """Step 2: Load precomputed degree views or infer them with PANDA/LIONESS."""
    if not any(v in NETWORK_VIEWS for v in required_views(args.combinations)):
        return {}

    cancer_dir = Path(args.data_dir) / cancer
    try:
        degrees = load_degree_tables(cancer_dir)
        print(f"  Loaded precomputed degree tables from {cancer_dir}")
    except FileNotFoundError:
        if args.motif is None or args.ppi is None:
            raise
        if "expression" not in loaded["views"]:
            raise ValueError(
                f"PANDA/LIONESS for {cancer} needs the 'expression' view, "
                f"which was not loaded"
            )
        print(f"  No degree tables for {cancer}; running PANDA/LIONESS")
        networks = run_panda_lioness(
            loaded["views"]["expression"],
            motif_path=args.motif,
            ppi_path=args.ppi,
            output_dir=Path(args.results_dir) / "lioness" / cancer,
        )
        degrees = compute_degrees(
            networks["networks"], networks["tfs"], networks["genes"], networks["samples"]
        )
        save_degree_tables(degrees, cancer_dir)

    return {view: apply_sample_mapping(df, primary_only=True) for view, df in degrees.items()}


def step3_preprocess(cancer: str, views: dict, survival: pd.DataFrame, args) -> dict:
    """Step 3: Preprocess the views of the requested combinations and cache them."""
    needed = required_views(args.combinations)
    result = run_preprocessing_pipeline(
        {v: views[v] for v in needed},
        survival=survival,
        n_top_features=args.n_top_features,
    )

    processed_dir = processed_dir_for(cancer, args)
    save_preprocessed_data(result, processed_dir)
    with open(processed_dir / PROCESSED_META_FILE, "w") as f:
        json.dump({"views": needed, "settings": preprocessing_settings(args)}, f, indent=2)
    return result


def step4_jdr(cancer: str, views: dict, args) -> dict:
    """Step 4: Joint dimensionality reduction for every omics combination."""
    results = {}
    for combination in args.combinations:
        out_dir = Path(args.results_dir) / "jdr" / cancer / combination
        if args.use_precomputed and (out_dir / "meta.json").exists():
            print(f"  Loading cached JDR result: {out_dir}")
            results[combination] = load_jdr_result(out_dir)
            continue

        result = run_jdr(
            views,
            combination,
            method=args.jdr_method,
            n_factors=args.n_factors,
            output_dir=Path(args.results_dir) / "models" / cancer,
            seed=args.seed,
        )
        save_jdr_result(result, out_dir)
        results[combination] = result
    return results


def step5_survival(jdr_results: dict, survivals: dict, covariates: dict, args) -> pd.DataFrame:
    """Step 5: Cox regression per factor and SAF labelling."""
    survival_table = run_survival_analysis(
        jdr_results,
        survivals,
        alpha=args.alpha,
        covariates=covariates if args.adjust_covariates else None,
    )
    tables_dir = Path(args.results_dir) / "tables"
    tables_dir.mkdir(parents=True, exist_ok=True)
    survival_table.to_csv(tables_dir / "cox_factors.csv", index=False)
    summarize_safs(survival_table).to_csv(tables_dir / "saf_summary.csv", index=False)
    print(f"\n✓ Cox table saved to: {tables_dir / 'cox_factors.csv'}")
    return survival_table


def step6_compare(jdr_results: dict, survivals: dict, covariates: dict,
                  clinicals: dict, args) -> pd.DataFrame:
    """Step 6: C-index comparison and factor-clinical associations."""
    comparison = compare_combinations(
        jdr_results, survivals, covariates=covariates, seed=args.seed
    )
    tables_dir = Path(args.results_dir) / "tables"
    comparison.to_csv(tables_dir / "concordance_comparison.csv", index=False)

    association_tables = []
    for cancer, by_combination in jdr_results.items():
        columns = [c for c in args.clinical_associations if c in clinicals[cancer].columns]
        if not columns:
            continue
        for combination, result in by_combination.items():
            assoc = associate_factors_with_clinical(
                result["factors"], clinicals[cancer], columns
            )
            assoc.insert(0, "combination", combination)
            assoc.insert(0, "cancer", cancer)
            association_tables.append(assoc)
    if association_tables:
        pd.concat(association_tables, ignore_index=True).to_csv(
            tables_dir / "clinical_associations.csv", index=False
        )

    print(f"\n✓ C-index comparison saved to: {tables_dir / 'concordance_comparison.csv'}")
    return comparison


def step7_enrichment(jdr_results: dict, survival_table: pd.DataFrame, args) -> dict:
    """Step 7: GSEA on SAF loadings and Fisher overlap between combinations."""
    if args.skip_gsea:
        print("⚡ Skipping GSEA (--skip-gsea)")
        return {}

    gene_sets = load_gene_sets(args.gene_sets, geneset_dir=PROJECT_ROOT / "data" / "genesets")
    tables_dir = Path(args.results_dir) / "tables"
    figures_dir = Path(args.results_dir) / "figures"

    gsea_tables = []
    overlap_rows = []
    for cancer, by_combination in jdr_results.items():
        per_combination = {}
        for combination, result in by_combination.items():
            view = next((v for v in ("expression", "indegree") if v in result["weights"]),
                        None)
            if view is None:
                continue
            table = run_saf_enrichment(
                result, survival_table, cancer, gene_sets, view,
                permutation_num=args.permutations, seed=args.seed,
            )
            per_combination[combination] = table
            if len(table) > 0:
                gsea_tables.append(table)
                plot_gsea_dotplot(
                    table,
                    title=f"{cancer} {combination}: SAF pathways",
                    save_path=figures_dir / f"gsea_{cancer}_{combination}.png",
                )
                plt.close("all")

        a, b = args.overlap_pair
        if a in per_combination and b in per_combination:
            if len(per_combination[a]) and len(per_combination[b]):
                fisher = compare_pathway_sets(
                    per_combination[a], per_combination[b], padj_threshold=args.alpha
                )
                overlap_rows.append({
                    "cancer": cancer,
                    "combination_a": a,
                    "combination_b": b,
                    "n_significant_a": fisher["n_significant_a"],
                    "n_significant_b": fisher["n_significant_b"],
                    "n_overlap": len(fisher["overlap"]),
                    "n_universe": fisher["n_universe"],
                    "odds_ratio": fisher["odds_ratio"],
                    "pval": fisher["pval"],
                    "overlap": "; ".join(fisher["overlap"]),
                })

    gsea = pd.concat(gsea_tables, ignore_index=True) if gsea_tables else pd.DataFrame()
    overlap = pd.DataFrame(overlap_rows)
    gsea.to_csv(tables_dir / "gsea_safs.csv", index=False)
    overlap.to_csv(tables_dir / "pathway_overlap_fisher.csv", index=False)
    print(f"\n✓ GSEA results saved to: {tables_dir / 'gsea_safs.csv'}")
    print(f"✓ Fisher overlap saved to: {tables_dir / 'pathway_overlap_fisher.csv'}")
    return {"gsea": gsea, "overlap": overlap}


def step8_figures(jdr_results: dict, survivals: dict, survival_table: pd.DataFrame,
                  comparison: pd.DataFrame, args) -> pd.DataFrame:
    """Step 8: Generate figures and the final results table."""
    figures_dir = Path(args.results_dir) / "figures"
    tables_dir = Path(args.results_dir) / "tables"

    plot_saf_heatmap(survival_table, alpha=args.alpha,
                     save_path=figures_dir / "saf_heatmap.png")
    plot_concordance_comparison(comparison, save_path=figures_dir / "concordance_comparison.png")
    plt.close("all")

    for cancer, by_combination in jdr_results.items():
        for combination, result in by_combination.items():
            cox = survival_table[
                (survival_table["cancer"] == cancer)
                & (survival_table["combination"] == combination)
            ]
            plot_hazard_ratios(
                cox,
                title=f"{cancer} {combination}",
                save_path=figures_dir / f"hazard_ratios_{cancer}_{combination}.png",
            )
            if result.get("r2") is not None:
                plot_variance_explained(
                    result,
                    save_path=figures_dir / f"variance_explained_{cancer}_{combination}.png",
                )

            # Kaplan-Meier curves for the strongest SAF
            safs = cox[cox["SAF"]].sort_values("padj")
            if len(safs) > 0:
                factor = safs.iloc[0]["factor"]
                km = kaplan_meier_split(result["factors"][factor], survivals[cancer])
                plot_kaplan_meier(
                    km,
                    title=f"{cancer} {combination} {factor}",
                    save_path=figures_dir / f"km_{cancer}_{combination}_{factor}.png",
                    time_unit=args.time_unit,
                )
            plt.close("all")

    return generate_results_table(
        survival_table, comparison, save_path=tables_dir / "results_summary.csv"
    )


def step9_summary(summary: pd.DataFrame, total_time: float, args) -> bool:
    """Step 9: Print the final summary and acceptance criteria check."""
    print_header("PIPELINE COMPLETE")

    print("\n📊 SURVIVAL-ASSOCIATED FACTORS:")
    print(f"   {'Cancer':<8} {'Combination':<26} {'SAFs':>5} {'C-index':>9}")
    print(f"   {'-' * 50}")
    for _, row in summary.iterrows():
        cindex = row.get("cv_concordance", float("nan"))
        print(f"   {row['cancer']:<8} {row['combination']:<26} "
              f"{int(row['n_safs']):>5} {cindex:>9.3f}")

    print(f"\n⏱  Total Runtime: {total_time:.1f} seconds ({total_time / 60:.1f} minutes)")

    print("\n✅ ACCEPTANCE CRITERIA:")
    tables_dir = Path(args.results_dir) / "tables"
    checks = [
        ("Every cancer/combination has a Cox table", len(summary) > 0),
        ("Summary table written", (tables_dir / "results_summary.csv").exists()),
        ("SAF heatmap written",
         (Path(args.results_dir) / "figures" / "saf_heatmap.png").exists()),
    ]
    for desc, passed in checks:
        status = "✓ PASS" if passed else "✗ FAIL"
        print(f"   {status}: {desc}")

    all_passed = all(passed for _, passed in checks)
    print(f"\n{'=' * 70}")
    print(f" {'ALL CHECKS PASSED ✓' if all_passed else 'SOME CHECKS FAILED ✗'}")
    print(f"{'=' * 70}")
    return all_passed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the GRN-informed multi-omics survival pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_pipeline.py                              # Full pipeline
    python run_pipeline.py --use-precomputed            # Reuse cached intermediates
    python run_pipeline.py --jdr-method pca --skip-gsea # Fast smoke run
        """,
    )
    parser.add_argument("--cancers", nargs="+", default=DEFAULT_CANCERS,
                        help="Cancer types to analyse (sub-directories of --data-dir)")
    parser.add_argument("--data-dir", default=str(PROJECT_ROOT / DEFAULT_DATA_DIR),
                        help="Root directory of per-cancer input tables")
    parser.add_argument("--results-dir", default=str(PROJECT_ROOT / "results"),
                        help="Output directory for tables, figures and models")
    parser.add_argument("--use-precomputed", action="store_true",
                        help="Reuse cached preprocessed views and JDR results when they "
                             "cover the requested combinations and settings")
    parser.add_argument("--combinations", nargs="+", default=list(OMICS_COMBINATIONS),
                        choices=list(OMICS_COMBINATIONS),
                        help="Omics combinations to factorize")
    parser.add_argument("--jdr-method", default="mofa", choices=["mofa", "pca"],
                        help="Joint dimensionality reduction method")
    parser.add_argument("--n-factors", type=int, default=DEFAULT_N_FACTORS,
                        help="Number of JDR factors")
    parser.add_argument("--n-top-features", type=int, default=DEFAULT_N_TOP_FEATURES,
                        help="Most variable features kept per view")
    parser.add_argument("--alpha", type=float, default=0.05,
                        help="FDR threshold for SAFs and significant pathways")
    parser.add_argument("--time-unit", default="days", choices=list(TIME_UNITS),
                        help="Unit of survival times and of --max-time")
    parser.add_argument("--max-time", type=float, default=None,
                        help="Administrative censoring horizon in --time-unit")
    parser.add_argument("--min-events", type=int, default=10,
                        help="Minimum number of events for a usable survival table")
    parser.add_argument("--covariates", nargs="*", default=["age", "sex"],
                        help="Clinical covariates for the clinical-only model")
    parser.add_argument("--adjust-covariates", action="store_true",
                        help="Adjust univariate Cox models for the covariates")
    parser.add_argument("--clinical-associations", nargs="*",
                        default=["gender", "ajcc_pathologic_tumor_stage", "race"],
                        help="Clinical columns tested against factors")
    parser.add_argument("--gene-sets", default="hallmark",
                        help="'hallmark', 'kegg' or a path to a .gmt file")
    parser.add_argument("--permutations", type=int, default=1000,
                        help="GSEA permutations")
    parser.add_argument("--skip-gsea", action="store_true",
                        help="Skip GSEA and the Fisher overlap test")
    parser.add_argument("--overlap-pair", nargs=2, default=["expr_meth", "indeg_outdeg"],
                        metavar=("A", "B"),
                        help="Combinations whose SAF pathways are compared")
    parser.add_argument("--motif", default=None,
                        help="TF-gene motif prior for PANDA (needed without degree tables)")
    parser.add_argument("--ppi", default=None,
                        help="TF-TF PPI prior for PANDA (needed without degree tables)")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    return parser


def main(argv=None) -> int:
    """Main entry point for the pipeline."""
    args = build_parser().parse_args(argv)

    print_header("GRN-INFORMED MULTI-OMICS SURVIVAL PIPELINE")
    print(f"Cancers: {', '.join(args.cancers)}")
    print(f"Combinations: {', '.join(args.combinations)}")
    print(f"JDR: {args.jdr_method} ({args.n_factors} factors)")
    print(f"Use precomputed files: {args.use_precomputed}")

    start_time = time.time()

    try:
        jdr_results, survivals, covariates, clinicals = {}, {}, {}, {}

        for cancer in args.cancers:
            print_header(cancer)

            cached = load_cached_preprocessing(cancer, args) if args.use_precomputed else None

            print_step(1, f"Loading data ({cancer})")
            loaded = step1_load_data(cancer, args, cached)
            clinicals[cancer] = loaded["clinical"]
            covariates[cancer] = loaded["covariates"]

            print_step(2, f"Network degree views ({cancer})")
            if cached is not None:
                print("  Skipped, cached preprocessed views are used")
            else:
                views = dict(loaded["views"])
                views.update(step2_network_degrees(cancer, loaded, args))

            print_step(3, f"Preprocessing ({cancer})")
            if cached is not None:
                print(f"  Using cached preprocessed views from: "
                      f"{processed_dir_for(cancer, args)}")
                processed = cached
            else:
                processed = step3_preprocess(cancer, views, loaded["survival"], args)
            survivals[cancer] = (
                processed["survival"] if processed["survival"] is not None
                else loaded["survival"]
            )

            print_step(4, f"Joint dimensionality reduction ({cancer})")
            jdr_results[cancer] = step4_jdr(cancer, processed["views"], args)

        print_step(5, "Cox regression and SAF labelling")
        survival_table = step5_survival(jdr_results, survivals, covariates, args)

        print_step(6, "Comparing omics combinations")
        comparison = step6_compare(jdr_results, survivals, covariates, clinicals, args)

        print_step(7, "Gene-set enrichment of SAFs")
        step7_enrichment(jdr_results, survival_table, args)

        print_step(8, "Generating figures and tables")
        summary = step8_figures(jdr_results, survivals, survival_table, comparison, args)

        total_time = time.time() - start_time
        print_step(9, "Final summary")
        all_passed = step9_summary(summary, total_time, args)

        return 0 if all_passed else 1

    except Exception as e:
        print(f"\n❌ ERROR: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
