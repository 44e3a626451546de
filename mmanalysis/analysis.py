"""
Analysis workflows: mixed-model fitting, moderation and DID with multiple imputation.
"""

import pandas as pd
from typing import Dict, List, Optional
from dataclasses import dataclass

from .processing import (
    check_columns, wide_to_long, check_unique_observations, center_variables, is_categorical,
    factor_levels, set_reference_levels
)
from .models import (
    MixedModelResult, ModelComparison, ModerationResult, WaldTestResult,
    fit_mixed_model, compare_models, intraclass_correlation, interaction_terms,
    test_interaction
)
from .contrasts import (
    EMMResult, emmeans, simple_slopes, pairwise_contrasts, interaction_contrasts,
    moderator_levels, _fmt
)
from .imputation import ImputationSpec, ImputedDatasets, make_imputation_spec, impute
from .pooling import ImputedFits, PooledResult, fit_imputed, pool, pooled_wald_test
from .visualization import (
    plot_coefficients, plot_interaction, plot_simple_slopes, plot_did,
    plot_imputation_chains, _significance
)


def _contrast_lines(table: pd.DataFrame, by: Optional[List[str]] = None) -> str:
    text = ""
    for _, row in table.iterrows():
        prefix = ", ".join(f"{b}={_fmt(row[b])}" for b in (by or [])) + (": " if by else "")
        text += f"  {prefix}{row['contrast']}\n"
        text += (
            f"    Estimate: {row['estimate']:.4f} [{row['ci_lower']:.4f}, {row['ci_upper']:.4f}]"
            f"  p={row['p_adjusted']:.3e} {_significance(row['p_adjusted'])}\n"
        )
    return text


# ---------------------------------------------------------------------------
# Mixed model fitting
# ---------------------------------------------------------------------------

@dataclass
class MixedModelAnalysisResult:
    """Container for base and extended mixed-model fits."""
    base: MixedModelResult
    extended: Optional[MixedModelResult]
    comparison: Optional[ModelComparison]
    selected: str
    fixed_effects: pd.DataFrame
    random_effects: pd.DataFrame
    icc: float
    n_observations: int
    n_groups: int


class MixedModelAnalysis:
    """
    Linear mixed-effects model workflow

    Fits a random-intercept model, optionally extends it with random
    slopes, compares the two by likelihood ratio and reports the selected
    model.

    Parameters
    ----------
    data : pd.DataFrame
        Long-format dataset
    formula : str
        Fixed-effects formula, e.g. "reaction ~ days"
    groups : str
        Grouping factor (e.g. "subject")
    extended_re_formula : str, optional
        Random-effects formula of the extended model, e.g. "~days"

    Examples
    --------
    >>> from mmanalysis import MixedModelAnalysis, simulate_repeated_measures
    >>> df = simulate_repeated_measures(seed=1)
    >>> mm = MixedModelAnalysis(df, "reaction ~ days", "subject", "~days")
    >>> results = mm.run()
    >>> print(mm.summary())
    """

    def __init__(
        self,
        data: pd.DataFrame,
        formula: str,
        groups: str,
        extended_re_formula: Optional[str] = None
    ):
        self.data = data
        self.formula = formula
        self.groups = groups
        self.extended_re_formula = extended_re_formula

        self.results: Optional[MixedModelAnalysisResult] = None

    def run(self, reml: bool = True, alpha: float = 0.05) -> MixedModelAnalysisResult:
        """
        Run the model-fitting pipeline.

        Parameters
        ----------
        reml : bool
            Fit by REML (default True)
        alpha : float
            Significance level for keeping the extended model

        Returns
        -------
        MixedModelAnalysisResult
        """
        print("Fitting random-intercept model...")
        base = fit_mixed_model(self.data, self.formula, self.groups, reml=reml)

        extended = None
        comparison = None
        selected = "base"
        if self.extended_re_formula:
            print(f"Fitting extended model (re_formula='{self.extended_re_formula}')...")
            extended = fit_mixed_model(
                self.data, self.formula, self.groups,
                re_formula=self.extended_re_formula, reml=reml
            )
            print("Comparing models (likelihood ratio)...")
            comparison = compare_models(base, extended)
            if comparison.p_value < alpha:
                selected = "extended"

        model = extended if selected == "extended" else base

        self.results = MixedModelAnalysisResult(
            base=base,
            extended=extended,
            comparison=comparison,
            selected=selected,
            fixed_effects=model.fixed_effects(alpha=alpha),
            random_effects=model.random_effects(),
            icc=intraclass_correlation(base),
            n_observations=model.n_obs,
            n_groups=model.n_groups
        )

        print(f"\nAnalysis complete!")
        print(f"  Observations: {model.n_obs}")
        print(f"  Groups: {model.n_groups}")
        print(f"  Selected model: {selected}")

        return self.results

    def plot(self, title: str = "Fixed Effects", save_path: Optional[str] = None, **kwargs):
        """
        Forest plot of the selected model's fixed effects.

        Returns
        -------
        matplotlib.figure.Figure
        """
        if self.results is None:
            raise ValueError("Must run analysis first. Call .run()")
        return plot_coefficients(self.results.fixed_effects, title=title, save_path=save_path, **kwargs)

    def summary(self) -> str:
        """
        Generate a text summary of the analysis results.

        Returns
        -------
        str
            Summary text
        """
        if self.results is None:
            return "No results. Run .run() first."

        r = self.results
        text = f"""
================================================================================
                        LINEAR MIXED MODEL SUMMARY
================================================================================

DATA SUMMARY
------------
  Observations: {r.n_observations}
  Groups ({self.groups}): {r.n_groups}
  ICC (random-intercept model): {r.icc:.3f}

"""
        if r.comparison is not None:
            c = r.comparison
            text += "MODEL COMPARISON\n----------------\n"
            text += f"  Base:     {self.formula} + (1 | {self.groups})\n"
            text += f"  Extended: {self.formula} + ({self.extended_re_formula} | {self.groups})\n"
            text += f"  Chi-square({c.df}) = {c.statistic:.3f}, p = {c.p_value:.3e} {_significance(c.p_value)}\n"
            text += f"  Selected: {r.selected}\n\n"

        text += "FIXED EFFECTS\n-------------\n"
        for _, row in r.fixed_effects.iterrows():
            text += (
                f"  {row['term']}: {row['estimate']:.4f} ± {row['std_error']:.4f} "
                f"(p={row['p_value']:.3e}) {_significance(row['p_value'])}\n"
            )

        text += "\nRANDOM EFFECTS\n--------------\n"
        for _, row in r.random_effects.iterrows():
            text += f"  {row['group']} {row['term']}: variance {row['variance']:.4f} (SD {row['std_dev']:.4f})\n"

        text += "\n================================================================================\n"
        return text


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------

@dataclass
class ModerationAnalysisResult:
    """Container for moderation analysis results."""
    moderation: ModerationResult
    focal: str
    moderators: List[str]
    at: Dict[str, List]
    emm: Optional[EMMResult]
    slopes: Optional[EMMResult]
    pairwise: pd.DataFrame
    interaction_contrasts: Optional[pd.DataFrame]
    n_observations: int
    n_groups: int


class ModerationAnalysis:
    """
    Moderation (interaction) analysis with a linear mixed model

    Tests whether the effect of a focal predictor depends on one moderator
    (two-way interaction) or on two moderators (three-way interaction),
    then probes the interaction with post-hoc contrasts.

    Parameters
    ----------
    data : pd.DataFrame
        Long-format dataset
    outcome : str
        Outcome column
    focal : str
        Focal predictor
    moderators : List[str]
        One or two moderators
    groups : str
        Grouping factor for the random intercept
    covariates : List[str], optional
        Additional covariates
    re_formula : str, optional
        Random-effects formula
    center : bool
        Mean-center numeric focal/moderator variables (adds "_c" columns)

    Examples
    --------
    >>> from mmanalysis import ModerationAnalysis, simulate_moderation_data
    >>> df = simulate_moderation_data(seed=1)
    >>> mod = ModerationAnalysis(df, "score", "condition", ["group", "age"], "subject")
    >>> results = mod.run()
    >>> print(results.moderation.p_value)
    """

    def __init__(
        self,
        data: pd.DataFrame,
        outcome: str,
        focal: str,
        moderators: List[str],
        groups: str,
        covariates: Optional[List[str]] = None,
        re_formula: Optional[str] = None,
        center: bool = True
    ):
        if isinstance(moderators, str):
            moderators = [moderators]
        if len(moderators) not in (1, 2):
            raise ValueError("Provide one moderator (two-way) or two moderators (three-way)")
        check_columns(data, [outcome, focal, groups] + list(moderators) + list(covariates or []))

        self.data = data
        self.outcome = outcome
        self.focal = focal
        self.moderators = list(moderators)
        self.groups = groups
        self.covariates = list(covariates or [])
        self.re_formula = re_formula
        self.center = center

        self.results: Optional[ModerationAnalysisResult] = None

    def run(
        self,
        alpha: float = 0.05,
        adjust: Optional[str] = "holm",
        n_sd: float = 1.0
    ) -> ModerationAnalysisResult:
        """
        Run the moderation pipeline.

        Parameters
        ----------
        alpha : float
            Significance level for coefficient tables
        adjust : str, optional
            P-value adjustment for pairwise contrasts
        n_sd : float
            Numeric moderators are probed at mean and mean +/- n_sd SD

        Returns
        -------
        ModerationAnalysisResult
        """
        df = self.data
        names = {v: v for v in [self.focal] + self.moderators}
        numeric = [v for v in names if not is_categorical(df[v])]
        if self.center and numeric:
            print(f"Centering {', '.join(numeric)}...")
            df = center_variables(df, numeric)
            names.update({v: f"{v}_c" for v in numeric})

        focal = names[self.focal]
        moderators = [names[v] for v in self.moderators]

        order = "three-way" if len(moderators) == 2 else "two-way"
        print(f"Testing {order} interaction {' x '.join([focal] + moderators)}...")
        moderation = test_interaction(
            df, self.outcome, [focal] + moderators, self.groups,
            covariates=self.covariates, re_formula=self.re_formula, alpha=alpha
        )
        full = moderation.full

        at = {m: moderator_levels(full.data, m, n_sd) for m in moderators if not is_categorical(full.data[m])}

        emm = None
        slopes = None
        contrasts_ix = None
        if is_categorical(full.data[focal]):
            print("Computing estimated marginal means and contrasts...")
            emm = emmeans(full, [focal] + moderators, at=at)
            pairwise = pairwise_contrasts(emm, by=moderators, adjust=adjust)
            contrasts_ix = interaction_contrasts(emm)
        else:
            print("Computing simple slopes...")
            slopes = simple_slopes(full, focal, specs=moderators, at=at)
            pairwise = pairwise_contrasts(slopes, by=moderators[1:] or None, adjust=adjust)
            if len(moderators) == 2:
                contrasts_ix = interaction_contrasts(slopes)

        self.results = ModerationAnalysisResult(
            moderation=moderation,
            focal=focal,
            moderators=moderators,
            at=at,
            emm=emm,
            slopes=slopes,
            pairwise=pairwise,
            interaction_contrasts=contrasts_ix,
            n_observations=full.n_obs,
            n_groups=full.n_groups
        )

        print(f"\nAnalysis complete!")
        print(f"  Observations: {full.n_obs}")
        print(f"  Groups: {full.n_groups}")
        print(f"  Interaction LRT p-value: {moderation.p_value:.3e}")

        return self.results

    def plot(self, title: Optional[str] = None, save_path: Optional[str] = None, **kwargs):
        """
        Plot the interaction: EMMs for a categorical focal predictor, simple
        slopes for a numeric one.

        Returns
        -------
        matplotlib.figure.Figure
        """
        if self.results is None:
            raise ValueError("Must run analysis first. Call .run()")

        r = self.results
        if r.emm is not None:
            return plot_interaction(
                r.emm, x=r.focal, trace=r.moderators[0],
                title=title or "Estimated Marginal Means", save_path=save_path, **kwargs
            )
        return plot_simple_slopes(
            r.moderation.full, r.focal, r.moderators[0],
            title=title or "Simple Slopes", save_path=save_path, **kwargs
        )

    def summary(self) -> str:
        """
        Generate a text summary of the analysis results.

        Returns
        -------
        str
            Summary text
        """
        if self.results is None:
            return "No results. Run .run() first."

        r = self.results
        c = r.moderation.comparison
        w = r.moderation.wald

        text = f"""
================================================================================
                          MODERATION ANALYSIS SUMMARY
================================================================================

DATA SUMMARY
------------
  Observations: {r.n_observations}
  Groups ({self.groups}): {r.n_groups}

INTERACTION TEST
----------------
  Reduced: {c.reduced_formula}
  Full:    {c.full_formula}
  LRT: Chi-square({c.df}) = {c.statistic:.3f}, p = {c.p_value:.3e} {_significance(c.p_value)}
  Wald: Chi-square({w.df}) = {w.statistic:.3f}, p = {w.p_value:.3e}

INTERACTION COEFFICIENTS
------------------------
"""
        for _, row in r.moderation.interaction_table.iterrows():
            text += (
                f"  {row['term']}: {row['estimate']:.4f} [{row['ci_lower']:.4f}, {row['ci_upper']:.4f}] "
                f"(p={row['p_value']:.3e}) {_significance(row['p_value'])}\n"
            )

        if r.slopes is not None:
            est = r.slopes.estimate_name
            text += f"\nSIMPLE SLOPES OF {r.focal}\n-------------------------\n"
            for _, row in r.slopes.table.iterrows():
                cell = ", ".join(
                    f"{m}={row[m]:.2f}" if m in r.at else f"{m}={row[m]}" for m in r.moderators
                )
                text += f"  {cell}: {row[est]:.4f} [{row['ci_lower']:.4f}, {row['ci_upper']:.4f}]\n"

        by = r.moderators if r.emm is not None else r.moderators[1:]
        text += "\nPAIRWISE CONTRASTS\n------------------\n"
        text += _contrast_lines(r.pairwise, by=by)

        if r.interaction_contrasts is not None:
            text += "\nINTERACTION CONTRASTS\n---------------------\n"
            text += _contrast_lines(r.interaction_contrasts)

        text += "\n================================================================================\n"
        return text


# ---------------------------------------------------------------------------
# Difference-in-differences with multiple imputation
# ---------------------------------------------------------------------------

@dataclass
class DIDResult:
    """Container for DID analysis results."""
    long_data: pd.DataFrame
    spec: ImputationSpec
    imputed: ImputedDatasets
    fits: ImputedFits
    pooled: PooledResult
    emm: EMMResult
    group_contrasts: pd.DataFrame
    time_contrasts: pd.DataFrame
    did: pd.DataFrame
    did_wald: WaldTestResult
    complete_case: Optional[pd.DataFrame]
    n_subjects: int
    n_observations: int
    n_missing: int
    re_formula: Optional[str] = None

    @property
    def did_estimate(self) -> float:
        return float(self.did["estimate"].iloc[0])

    @property
    def did_p_value(self) -> float:
        return float(self.did["p_value"].iloc[0])


class DIDAnalysis:
    """
    Difference-in-differences on multiply imputed longitudinal data

    Reshapes wide two-period data to long format, imputes missing outcomes
    by chained equations, fits a mixed model (random subject intercept)
    to each completed dataset, pools with Rubin's rules and estimates the
    group x time interaction contrast.

    Parameters
    ----------
    data : pd.DataFrame
        Wide dataset with one row per subject
    id_col : str
        Subject identifier
    group_col : str
        Treatment/control assignment
    outcome_cols : Dict[str, str]
        Mapping of time label to wide outcome column, in time order
    covariates : List[str], optional
        Subject-level covariates (e.g. sex, age, race)
    time_col : str
        Name of the long-format time column
    value_col : str
        Name of the long-format outcome column

    Examples
    --------
    >>> from mmanalysis import DIDAnalysis, simulate_did_data
    >>> wide = simulate_did_data(seed=1)
    >>> did = DIDAnalysis(wide, covariates=["sex", "age", "race"])
    >>> results = did.run(m=5, seed=1)
    >>> print(results.did)
    """

    def __init__(
        self,
        data: pd.DataFrame,
        id_col: str = "id",
        group_col: str = "group",
        outcome_cols: Optional[Dict[str, str]] = None,
        covariates: Optional[List[str]] = None,
        time_col: str = "time",
        value_col: str = "y"
    ):
        self.outcome_cols = outcome_cols or {"pre": "y_pre", "post": "y_post"}
        self.covariates = list(covariates or [])
        check_columns(data, [id_col, group_col] + list(self.outcome_cols.values()) + self.covariates)
        if len(self.outcome_cols) != 2:
            raise ValueError("outcome_cols must map exactly 2 time points (pre, post) to columns")
        if data[group_col].nunique() != 2:
            raise ValueError(f"'{group_col}' must have exactly 2 groups")

        self.data = data
        self.id_col = id_col
        self.group_col = group_col
        self.time_col = time_col
        self.value_col = value_col

        self.results: Optional[DIDResult] = None

    @property
    def formula(self) -> str:
        rhs = f"{self.group_col} * {self.time_col}"
        if self.covariates:
            rhs += " + " + " + ".join(self.covariates)
        return f"{self.value_col} ~ {rhs}"

    def run(
        self,
        m: int = 5,
        seed: Optional[int] = None,
        method: Optional[Dict[str, str]] = None,
        predictors: Optional[Dict[str, List[str]]] = None,
        maxit: int = 10,
        k_pmm: int = 20,
        re_formula: Optional[str] = None,
        reml: bool = True,
        adjust: Optional[str] = "holm",
        complete_case: bool = True
    ) -> DIDResult:
        """
        Run the imputation and pooled DID pipeline.

        Parameters
        ----------
        m : int
            Number of imputations (default 5)
        seed : int, optional
            Random seed for imputation
        method : Dict[str, str], optional
            Per-variable imputation methods (default "pmm" for the outcome)
        predictors : Dict[str, List[str]], optional
            Per-variable imputation predictors. By default the outcome is
            imputed from group, time, their interaction and covariates;
            the subject id is never a predictor.
        maxit : int
            Chained-equation cycles per imputation
        k_pmm : int
            Donors for predictive mean matching
        re_formula : str, optional
            Random-effects formula (default: random intercept)
        reml : bool
            Fit by REML (default True)
        adjust : str, optional
            P-value adjustment for pairwise contrasts
        complete_case : bool
            Also fit the model to complete cases for comparison

        Returns
        -------
        DIDResult
        """
        g, t, y = self.group_col, self.time_col, self.value_col

        # Step 1: Reshape to long format
        print("Reshaping to long format...")
        long_df = wide_to_long(
            self.data, id_col=self.id_col, outcome_cols=self.outcome_cols,
            time_col=t, value_col=y, keep=[g] + self.covariates
        )
        check_unique_observations(long_df, self.id_col, t)
        if not is_categorical(long_df[g]):
            # group x time cells need group as a factor
            long_df = set_reference_levels(long_df, {g: factor_levels(long_df[g])})
        n_missing = int(long_df[y].isna().sum())

        # Step 2: Configure imputation
        print("Configuring imputation...")
        if predictors is None:
            predictors = {y: [g, t, f"{g}:{t}"] + self.covariates}
        spec = make_imputation_spec(
            long_df, exclude=[self.id_col], method=method, predictors=predictors,
            k_pmm=k_pmm, maxit=maxit
        )

        # Step 3: Multiple imputation
        print(f"Imputing {n_missing} missing values ({m} imputations)...")
        imputed = impute(long_df, spec, m=m, seed=seed)

        # Step 4: Fit model to each completed dataset
        print(f"Fitting mixed model to each imputed dataset: {self.formula}")
        fits = fit_imputed(imputed, self.formula, self.id_col, re_formula=re_formula, reml=reml)

        # Step 5: Pool
        print("Pooling estimates (Rubin's rules)...")
        pooled = pool(fits)

        # Step 6: Post-hoc contrasts on the pooled fit
        print("Computing estimated marginal means and contrasts...")
        emm = emmeans(pooled, [g, t])
        group_contrasts = pairwise_contrasts(emm, by=t, adjust=adjust, reverse=True)
        time_contrasts = pairwise_contrasts(emm, by=g, adjust=adjust, reverse=True)
        did = interaction_contrasts(emm, [g, t])
        did_wald = pooled_wald_test(pooled, interaction_terms(pooled.fe_names, [g, t]))

        cc_table = None
        if complete_case and n_missing > 0:
            print("Fitting complete-case model for comparison...")
            cc = fit_mixed_model(long_df, self.formula, self.id_col, re_formula=re_formula, reml=reml)
            cc_table = cc.fixed_effects()

        self.results = DIDResult(
            long_data=long_df,
            spec=spec,
            imputed=imputed,
            fits=fits,
            pooled=pooled,
            emm=emm,
            group_contrasts=group_contrasts,
            time_contrasts=time_contrasts,
            did=did,
            did_wald=did_wald,
            complete_case=cc_table,
            n_subjects=int(long_df[self.id_col].nunique()),
            n_observations=len(long_df),
            n_missing=n_missing,
            re_formula=re_formula
        )

        print(f"\nAnalysis complete!")
        print(f"  Subjects: {self.results.n_subjects}")
        print(f"  Observations: {self.results.n_observations} ({n_missing} imputed)")
        print(f"  DID estimate: {self.results.did_estimate:.4f} (p={self.results.did_p_value:.3e})")

        return self.results

    def plot(self, title: str = "Difference-in-Differences", save_path: Optional[str] = None, **kwargs):
        """
        Plot pooled group means over time with the counterfactual path.

        Returns
        -------
        matplotlib.figure.Figure
        """
        if self.results is None:
            raise ValueError("Must run analysis first. Call .run()")
        r = self.results
        return plot_did(
            r.emm, group_col=self.group_col, time_col=self.time_col,
            did_estimate=r.did_estimate, did_p_value=r.did_p_value,
            title=title, save_path=save_path, **kwargs
        )

    def plot_estimates(self, title: str = "Pooled Fixed Effects", save_path: Optional[str] = None, **kwargs):
        """
        Forest plot of the pooled fixed effects.

        Returns
        -------
        matplotlib.figure.Figure
        """
        if self.results is None:
            raise ValueError("Must run analysis first. Call .run()")
        return plot_coefficients(self.results.pooled.table, title=title, save_path=save_path, **kwargs)

    def plot_chains(self, save_path: Optional[str] = None, **kwargs):
        """
        Convergence plot of the imputation chains.

        Returns
        -------
        matplotlib.figure.Figure
        """
        if self.results is None:
            raise ValueError("Must run analysis first. Call .run()")
        return plot_imputation_chains(self.results.imputed, save_path=save_path, **kwargs)

    def summary(self) -> str:
        """
        Generate a text summary of the analysis results.

        Returns
        -------
        str
            Summary text
        """
        if self.results is None:
            return "No results. Run .run() first."

        r = self.results
        p = r.pooled
        w = r.did_wald
        re_terms = r.re_formula.lstrip("~").strip() if r.re_formula else "1"

        text = f"""
================================================================================
              DIFFERENCE-IN-DIFFERENCES (MULTIPLE IMPUTATION) SUMMARY
================================================================================

DATA SUMMARY
------------
  Subjects: {r.n_subjects}
  Observations: {r.n_observations}
  Missing outcomes imputed: {r.n_missing} ({r.n_missing / r.n_observations * 100:.1f}%)
  Imputations: {p.m}
  Logged imputation events: {len(r.imputed.logged_events)}

POOLED FIXED EFFECTS
--------------------
  Model: {self.formula} + ({re_terms} | {self.id_col})
"""
        for _, row in p.table.iterrows():
            text += (
                f"  {row['term']}: {row['estimate']:.4f} ± {row['std_error']:.4f} "
                f"(df={row['df']:.1f}, p={row['p_value']:.3e}, fmi={row['fmi']:.3f}) "
                f"{_significance(row['p_value'])}\n"
            )

        text += "\nESTIMATED MARGINAL MEANS\n------------------------\n"
        for _, row in r.emm.table.iterrows():
            text += (
                f"  {row[self.group_col]}, {row[self.time_col]}: {row['emmean']:.4f} "
                f"[{row['ci_lower']:.4f}, {row['ci_upper']:.4f}]\n"
            )

        text += "\nGROUP CONTRASTS\n---------------\n"
        text += _contrast_lines(r.group_contrasts, by=[self.time_col])
        text += "\nTIME CONTRASTS\n--------------\n"
        text += _contrast_lines(r.time_contrasts, by=[self.group_col])

        d = r.did.iloc[0]
        text += "\nDIFFERENCE-IN-DIFFERENCES\n-------------------------\n"
        text += f"  {d['contrast']}\n"
        text += (
            f"    Estimate: {d['estimate']:.4f} [{d['ci_lower']:.4f}, {d['ci_upper']:.4f}] "
            f"(df={d['df']:.1f}, p={d['p_value']:.3e}) {_significance(d['p_value'])}\n"
        )
        text += f"    Pooled Wald (D1): F({w.df}, {w.df_denom:.1f}) = {w.statistic:.3f}, p = {w.p_value:.3e}\n"

        if r.complete_case is not None:
            cc = r.complete_case
            did_terms = interaction_terms(list(cc["term"]), [self.group_col, self.time_col])
            if did_terms:
                row = cc[cc["term"] == did_terms[0]].iloc[0]
                text += (
                    f"    Complete-case estimate: {row['estimate']:.4f} "
                    f"[{row['ci_lower']:.4f}, {row['ci_upper']:.4f}]\n"
                )

        text += "\n================================================================================\n"
        return text
