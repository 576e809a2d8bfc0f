"""
GRN-informed JDR Survival Pipeline
==================================

This package reproduces the multi-omics survival analysis of cancer cohorts in
which single-sample gene regulatory network (GRN) summaries are treated as
additional omics views.

Modules:
    - data_loading: Load per-cancer omics, degree and clinical tables
    - clinical: Survival tables, clinical covariates, factor-clinical associations
    - preprocessing: Sample matching, transforms, feature filtering, scaling
    - networks: PANDA/LIONESS networks (netZooPy) and indegree/outdegree views
    - factorization: Joint dimensionality reduction (MOFA+ or PCA baseline)
    - survival: Cox regression, SAF labelling, C-index and LRT comparisons
    - enrichment: Pre-ranked GSEA of SAFs and Fisher overlap of pathway sets
    - evaluation: Summary tables and figures
"""

__version__ = "0.1.0"

# Data loading exports
from .data_loading import (
    resolve_data_file,
    load_omics_matrix,
    harmonize_sample_ids,
    apply_sample_mapping,
    load_clinical_table,
    align_clinical_to_samples,
    load_cancer_data,
    build_view_anndata,
    anndata_to_frame,
    DEFAULT_DATA_DIR,
    DEFAULT_CANCERS,
    OMICS_VIEWS,
    NETWORK_VIEWS,
    VIEW_FILE_NAMES,
)

# Clinical exports
from .clinical import (
    build_survival_table,
    simplify_stage,
    extract_covariates,
    validate_survival_table,
    associate_factors_with_clinical,
)

# Preprocessing exports
from .preprocessing import (
    match_samples,
    transform_view,
    filter_features,
    select_top_variable_features,
    impute_missing,
    scale_view,
    run_preprocessing_pipeline,
    save_preprocessed_data,
    load_preprocessed_data,
    DEFAULT_PROCESSED_DIR,
)

# Network exports
from .networks import (
    run_panda_lioness,
    reshape_lioness_output,
    compute_degrees,
    edge_table_to_degrees,
    save_degree_tables,
    load_degree_tables,
    compare_degree_distributions,
)

# Factorization exports
from .factorization import (
    run_mofa,
    load_mofa_model,
    run_pca_factorization,
    run_jdr,
    top_weighted_features,
    save_jdr_result,
    load_jdr_result,
    OMICS_COMBINATIONS,
    DEFAULT_N_FACTORS,
)

# Survival exports
from .survival import (
    adjust_pvalues,
    fit_univariate_cox,
    label_survival_factors,
    fit_multivariate_cox,
    cross_validated_concordance,
    likelihood_ratio_test,
    compare_with_clinical_model,
    kaplan_meier_split,
    run_survival_analysis,
    summarize_safs,
    compare_combinations,
    saf_names,
)

# Enrichment exports
from .enrichment import (
    load_gene_sets,
    rank_features_for_gsea,
    run_factor_gsea,
    filter_significant_pathways,
    run_saf_enrichment,
    pathway_overlap_fisher,
    compare_pathway_sets,
    plot_gsea_dotplot,
)

# Evaluation exports
from .evaluation import (
    plot_saf_heatmap,
    plot_hazard_ratios,
    plot_kaplan_meier,
    plot_concordance_comparison,
    plot_variance_explained,
    generate_results_table,
)
