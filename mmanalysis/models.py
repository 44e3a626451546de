"""
Linear mixed-effects model fitting and hypothesis tests.
"""

import re
import pandas as pd
import numpy as np
from typing import List, Tuple, Optional, Any
from dataclasses import dataclass, field
import warnings

from .processing import check_columns, formula_variables, is_categorical, factor_levels


@dataclass
class MixedModelResult:
    """Container for a fitted linear mixed-effects model."""
    model: Any  # statsmodels MixedLMResults
    formula: str
    groups: str
    re_formula: Optional[str]
    reml: bool
    data: pd.DataFrame
    design_info: Any
    fe_names: List[str]
    n_obs: int
    n_groups: int
    converged: bool
    llf: float
    aic: float
    bic: float
    method: Optional[Any] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def fe_params(self) -> np.ndarray:
        return np.asarray(self.model.fe_params, dtype=float)

    def fe_cov(self) -> np.ndarray:
        """Covariance matrix of the fixed effects."""
        k = len(self.fe_names)
        return np.asarray(self.model.cov_params(), dtype=float)[:k, :k]

    def fixed_effects(self, alpha: float = 0.05) -> pd.DataFrame:
        return tidy_fixed_effects(self, alpha=alpha)

    def random_effects(self) -> pd.DataFrame:
        return random_effects_summary(self)

    def linear_combination(self, L: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Estimate L @ beta for the fixed effects.

        Returns
        -------
        tuple
            (estimates, standard errors, degrees of freedom). MixedLM
            inference is asymptotic, so df is infinite.
        """
        L = _as_contrast_matrix(L, len(self.fe_names))
        est = L @ self.fe_params
        cov = L @ self.fe_cov() @ L.T
        se = np.sqrt(np.clip(np.diag(cov), 0, None))
        return est, se, np.full(len(est), np.inf)

    def summary(self) -> str:
        return str(self.model.summary())


@dataclass
class ModelComparison:
    """Container for a likelihood-ratio test between nested models."""
    reduced_formula: str
    full_formula: str
    llf_reduced: float
    llf_full: float
    aic_reduced: float
    aic_full: float
    bic_reduced: float
    bic_full: float
    statistic: float
    df: int
    p_value: float

    def table(self) -> pd.DataFrame:
        """ANOVA-style comparison table."""
        return pd.DataFrame({
            "model": ["reduced", "full"],
            "formula": [self.reduced_formula, self.full_formula],
            "aic": [self.aic_reduced, self.aic_full],
            "bic": [self.bic_reduced, self.bic_full],
            "loglik": [self.llf_reduced, self.llf_full],
            "chisq": [np.nan, self.statistic],
            "df": [np.nan, self.df],
            "p_value": [np.nan, self.p_value]
        })


@dataclass
class WaldTestResult:
    """Container for a joint Wald test of fixed effects."""
    terms: List[str]
    statistic: float
    df: float
    p_value: float
    df_denom: float = np.inf  # finite for the pooled F version


@dataclass
class ModerationResult:
    """Container for an interaction (moderation) test."""
    predictors: List[str]
    reduced: MixedModelResult
    full: MixedModelResult
    comparison: ModelComparison
    wald: WaldTestResult
    interaction_terms: List[str]
    interaction_table: pd.DataFrame

    @property
    def p_value(self) -> float:
        return self.comparison.p_value


def _as_contrast_matrix(L, n_params: int) -> np.ndarray:
    L = np.atleast_2d(np.asarray(L, dtype=float))
    if L.shape[1] != n_params:
        raise ValueError(
            f"Contrast matrix has {L.shape[1]} columns but the model has {n_params} fixed effects"
        )
    return L


def fit_mixed_model(
    df: pd.DataFrame,
    formula: str,
    groups: str,
    re_formula: Optional[str] = None,
    reml: bool = True,
    method: Optional[Any] = None
) -> MixedModelResult:
    """
    Fit a linear mixed-effects model with statsmodels MixedLM.

    Parameters
    ----------
    df : pd.DataFrame
        Long-format dataset
    formula : str
        Patsy formula for the fixed effects, e.g. "y ~ group * time + age"
    groups : str
        Column identifying the grouping factor (e.g. subject)
    re_formula : str, optional
        Formula for random effects, e.g. "~days" for random intercepts and
        slopes. If None, fits a random intercept only.
    reml : bool
        Fit by REML (True) or maximum likelihood (False)
    method : str or list, optional
        Optimizer(s) passed to MixedLM.fit

    Returns
    -------
    MixedModelResult
        Fitted model with the data and design information used
    """
    import statsmodels.api as sm
    from patsy import dmatrices, dmatrix

    check_columns(df, [groups])
    variables = formula_variables(formula, df.columns)
    if re_formula:
        variables += [v for v in formula_variables(re_formula, df.columns) if v not in variables]

    used = df.dropna(subset=variables + [groups]).copy()
    if len(used) == 0:
        raise ValueError(f"No complete observations for formula '{formula}'")
    if used[groups].nunique() < 2:
        raise ValueError(f"Need at least 2 levels of grouping factor '{groups}'")

    # Fix factor levels so design matrices can be rebuilt on reference grids
    for col in variables:
        if is_categorical(used[col]):
            if isinstance(used[col].dtype, pd.CategoricalDtype):
                used[col] = used[col].cat.remove_unused_categories()
            else:
                used[col] = pd.Categorical(used[col], categories=factor_levels(used[col]))

    y, X = dmatrices(formula, used, return_type="dataframe")
    exog_re = dmatrix(re_formula, used, return_type="dataframe") if re_formula else None

    model = sm.MixedLM(y.iloc[:, 0], X, groups=used[groups].to_numpy(), exog_re=exog_re)

    fit_kwargs = {"reml": reml}
    if method is not None:
        fit_kwargs["method"] = method

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = model.fit(**fit_kwargs)

    messages = []
    for w in caught:
        msg = str(w.message)
        if msg not in messages:
            messages.append(msg)
            warnings.warn(f"[{formula}] {msg}", w.category)

    return MixedModelResult(
        model=result,
        formula=formula,
        groups=groups,
        re_formula=re_formula,
        reml=reml,
        data=used,
        design_info=X.design_info,
        fe_names=list(X.columns),
        n_obs=len(used),
        n_groups=int(used[groups].nunique()),
        converged=bool(getattr(result, "converged", True)),
        llf=float(result.llf),
        aic=float(result.aic),
        bic=float(result.bic),
        method=method,
        warnings=messages
    )


def tidy_fixed_effects(result: MixedModelResult, alpha: float = 0.05) -> pd.DataFrame:
    """
    Fixed-effect estimates as a tidy table.

    Parameters
    ----------
    result : MixedModelResult
        Fitted model
    alpha : float
        Significance level for confidence intervals (default 0.05)

    Returns
    -------
    pd.DataFrame
        Columns: term, estimate, std_error, statistic, p_value, ci_lower, ci_upper
    """
    from scipy import stats

    est = result.fe_params
    se = np.sqrt(np.clip(np.diag(result.fe_cov()), 0, None))
    with np.errstate(divide="ignore", invalid="ignore"):
        z = est / se
    crit = stats.norm.ppf(1 - alpha / 2)

    return pd.DataFrame({
        "term": result.fe_names,
        "estimate": est,
        "std_error": se,
        "statistic": z,
        "p_value": 2 * stats.norm.sf(np.abs(z)),
        "ci_lower": est - crit * se,
        "ci_upper": est + crit * se
    })


def random_effects_summary(result: MixedModelResult) -> pd.DataFrame:
    """
    Variance components of a fitted model.

    Returns
    -------
    pd.DataFrame
        Columns: group, term, variance, std_dev, with a final Residual row
    """
    cov_re = result.model.cov_re
    names = list(cov_re.index) if hasattr(cov_re, "index") else [f"re{i}" for i in range(len(cov_re))]
    cov = np.asarray(cov_re, dtype=float)

    rows = []
    for i, name in enumerate(names):
        rows.append((result.groups, "(Intercept)" if name in ("Group", "Intercept") else name,
                     cov[i, i], np.sqrt(max(cov[i, i], 0.0))))
    scale = float(result.model.scale)
    rows.append(("Residual", "", scale, np.sqrt(scale)))

    return pd.DataFrame(rows, columns=["group", "term", "variance", "std_dev"])


def intraclass_correlation(result: MixedModelResult) -> float:
    """Share of variance due to the random intercept (NaN without one)."""
    re_table = random_effects_summary(result)
    intercept = re_table[(re_table["group"] == result.groups) & (re_table["term"] == "(Intercept)")]
    if intercept.empty:
        return np.nan
    var_u = float(intercept["variance"].iloc[0])
    var_e = float(re_table["variance"].iloc[-1])
    return var_u / (var_u + var_e) if (var_u + var_e) > 0 else np.nan


def _refit_ml(result: MixedModelResult) -> MixedModelResult:
    return fit_mixed_model(
        result.data, result.formula, result.groups,
        re_formula=result.re_formula, reml=False, method=result.method
    )


def compare_models(reduced: MixedModelResult, full: MixedModelResult) -> ModelComparison:
    """
    Likelihood-ratio test between two nested mixed models.

    Models fit by REML are refit by maximum likelihood first, since REML
    likelihoods are not comparable across different fixed effects.

    Parameters
    ----------
    reduced : MixedModelResult
        Nested (smaller) model
    full : MixedModelResult
        Larger model

    Returns
    -------
    ModelComparison
        Chi-square statistic, df and p-value
    """
    from scipy import stats

    if reduced.groups != full.groups:
        raise ValueError("Models must share the same grouping factor")
    if reduced.n_obs != full.n_obs:
        raise ValueError(
            f"Models were fit to different numbers of observations ({reduced.n_obs} vs {full.n_obs})"
        )

    if reduced.reml or full.reml:
        warnings.warn("Refitting models with ML (reml=False) for the likelihood-ratio test")
        reduced = _refit_ml(reduced) if reduced.reml else reduced
        full = _refit_ml(full) if full.reml else full

    df_diff = len(full.model.params) - len(reduced.model.params)
    if df_diff <= 0:
        raise ValueError("Full model must have more parameters than the reduced model")

    statistic = max(2 * (full.llf - reduced.llf), 0.0)
    p_value = float(stats.chi2.sf(statistic, df_diff))

    return ModelComparison(
        reduced_formula=reduced.formula,
        full_formula=full.formula,
        llf_reduced=reduced.llf,
        llf_full=full.llf,
        aic_reduced=reduced.aic,
        aic_full=full.aic,
        bic_reduced=reduced.bic,
        bic_full=full.bic,
        statistic=statistic,
        df=int(df_diff),
        p_value=p_value
    )


def wald_test(result: MixedModelResult, terms: List[str]) -> WaldTestResult:
    """
    Joint chi-square Wald test that the named fixed effects are all zero.

    Parameters
    ----------
    result : MixedModelResult
        Fitted model
    terms : List[str]
        Fixed-effect names, as in `result.fe_names`

    Returns
    -------
    WaldTestResult
    """
    from scipy import stats

    unknown = [t for t in terms if t not in result.fe_names]
    if unknown or not terms:
        raise ValueError(f"Unknown or empty fixed-effect terms: {unknown}")

    idx = [result.fe_names.index(t) for t in terms]
    b = result.fe_params[idx]
    V = result.fe_cov()[np.ix_(idx, idx)]
    statistic = float(b @ np.linalg.solve(V, b))

    return WaldTestResult(
        terms=list(terms),
        statistic=statistic,
        df=len(terms),
        p_value=float(stats.chi2.sf(statistic, len(terms)))
    )


def _term_variables(name: str) -> List[str]:
    """Variables making up a design column name, e.g. 'C(g)[T.b]:x' -> ['g', 'x']."""
    out = []
    for part in name.split(":"):
        base = re.sub(r"\[.*\]$", "", part)
        m = re.match(r"^C\(\s*([^,\s)]+)", base)
        if m:
            base = m.group(1)
        out.append(base)
    return out


def interaction_terms(names: List[str], variables: List[str]) -> List[str]:
    """
    Select design columns for the interaction of exactly `variables`.

    Parameters
    ----------
    names : List[str]
        Fixed-effect names
    variables : List[str]
        Variables in the interaction, e.g. ["group", "time"]

    Returns
    -------
    List[str]
        Matching fixed-effect names
    """
    target = set(variables)
    out = []
    for name in names:
        parts = _term_variables(name)
        if len(parts) == len(variables) and set(parts) == target:
            out.append(name)
    return out


def build_formula(
    outcome: str,
    predictors: List[str],
    covariates: Optional[List[str]] = None,
    order: Optional[int] = None
) -> str:
    """
    Build a fixed-effects formula with interactions up to a given order.

    Examples
    --------
    >>> build_formula("y", ["x", "m"])
    'y ~ x * m'
    >>> build_formula("y", ["x", "m", "w"], ["age"], order=2)
    'y ~ (x + m + w)**2 + age'
    """
    if not predictors:
        raise ValueError("Need at least one predictor")
    order = len(predictors) if order is None else order
    if not 1 <= order <= len(predictors):
        raise ValueError(f"order must be between 1 and {len(predictors)}")

    if order == 1 or len(predictors) == 1:
        rhs = " + ".join(predictors)
    elif order == len(predictors):
        rhs = " * ".join(predictors)
    else:
        rhs = f"({' + '.join(predictors)})**{order}"

    if covariates:
        rhs += " + " + " + ".join(covariates)
    return f"{outcome} ~ {rhs}"


def test_interaction(
    df: pd.DataFrame,
    outcome: str,
    predictors: List[str],
    groups: str,
    covariates: Optional[List[str]] = None,
    re_formula: Optional[str] = None,
    alpha: float = 0.05
) -> ModerationResult:
    """
    Test the highest-order interaction among 2 or 3 predictors.

    Fits the model with all lower-order terms and the model adding the
    highest-order interaction (both by ML on the same observations), and
    compares them with a likelihood-ratio test and a Wald test.

    Parameters
    ----------
    df : pd.DataFrame
        Long-format dataset
    outcome : str
        Outcome column
    predictors : List[str]
        Focal predictor followed by one or two moderators
    groups : str
        Grouping factor for the random intercept
    covariates : List[str], optional
        Additional main-effect covariates
    re_formula : str, optional
        Random-effects formula
    alpha : float
        Significance level for the coefficient table

    Returns
    -------
    ModerationResult
    """
    if len(predictors) not in (2, 3):
        raise ValueError("Moderation tests need 2 (two-way) or 3 (three-way) predictors")

    covariates = covariates or []
    check_columns(df, [outcome, groups] + list(predictors) + covariates)

    # Both models must see the same rows
    data = df.dropna(subset=[outcome, groups] + list(predictors) + covariates)

    k = len(predictors)
    reduced = fit_mixed_model(
        data, build_formula(outcome, predictors, covariates, order=k - 1),
        groups, re_formula=re_formula, reml=False
    )
    full = fit_mixed_model(
        data, build_formula(outcome, predictors, covariates, order=k),
        groups, re_formula=re_formula, reml=False
    )

    comparison = compare_models(reduced, full)
    terms = interaction_terms(full.fe_names, predictors)
    wald = wald_test(full, terms)

    table = tidy_fixed_effects(full, alpha=alpha)
    table = table[table["term"].isin(terms)].reset_index(drop=True)

    return ModerationResult(
        predictors=list(predictors),
        reduced=reduced,
        full=full,
        comparison=comparison,
        wald=wald,
        interaction_terms=terms,
        interaction_table=table
    )

