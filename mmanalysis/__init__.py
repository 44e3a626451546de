"""
mmanalysis - Mixed Model Analysis Package

Linear mixed models, moderation tests, post-hoc contrasts and
difference-in-differences on multiply imputed longitudinal data.
"""

from .processing import (
    wide_to_long,
    long_to_wide,
    check_unique_observations,
    set_reference_levels,
    center_variables
)
from .simulation import simulate_repeated_measures, simulate_moderation_data, simulate_did_data
from .models import (
    fit_mixed_model,
    tidy_fixed_effects,
    random_effects_summary,
    intraclass_correlation,
    compare_models,
    wald_test,
    interaction_terms,
    build_formula,
    test_interaction
)
from .contrasts import (
    reference_grid,
    emmeans,
    simple_slopes,
    pairwise_contrasts,
    interaction_contrasts,
    linear_contrast,
    moderator_levels
)
from .imputation import ImputationSpec, make_imputation_spec, quickpred, impute
from .pooling import fit_imputed, pool, pool_scalar, pooled_wald_test, barnard_rubin_df
from .visualization import (
    plot_interaction,
    plot_coefficients,
    plot_simple_slopes,
    plot_did,
    plot_imputation_chains
)
from .analysis import MixedModelAnalysis, ModerationAnalysis, DIDAnalysis
from .exploratory import (
    missing_pattern,
    plot_missingness,
    plot_outcome_distribution,
    plot_trajectories,
    data_summary,
    run_exploratory_analysis
)

__version__ = "0.1.0"
__all__ = [
    "wide_to_long",
    "long_to_wide",
    "check_unique_observations",
    "set_reference_levels",
    "center_variables",
    "simulate_repeated_measures",
    "simulate_moderation_data",
    "simulate_did_data",
    "fit_mixed_model",
    "tidy_fixed_effects",
    "random_effects_summary",
    "intraclass_correlation",
    "compare_models",
    "wald_test",
    "interaction_terms",
    "build_formula",
    "test_interaction",
    # Post-hoc contrasts
    "reference_grid",
    "emmeans",
    "simple_slopes",
    "pairwise_contrasts",
    "interaction_contrasts",
    "linear_contrast",
    "moderator_levels",
    # Multiple imputation
    "ImputationSpec",
    "make_imputation_spec",
    "quickpred",
    "impute",
    "fit_imputed",
    "pool",
    "pool_scalar",
    "pooled_wald_test",
    "barnard_rubin_df",
    "plot_interaction",
    "plot_coefficients",
    "plot_simple_slopes",
    "plot_did",
    "plot_imputation_chains",
    "MixedModelAnalysis",
    "ModerationAnalysis",
    "DIDAnalysis",
    # Exploratory analysis
    "missing_pattern",
    "plot_missingness",
    "plot_outcome_distribution",
    "plot_trajectories",
    "data_summary",
    "run_exploratory_analysis",
]
