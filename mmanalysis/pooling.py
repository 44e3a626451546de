"""
Fitting mixed models on imputed datasets and pooling with Rubin's rules.
"""

import pandas as pd
import numpy as np
from typing import List, Optional, Any, Sequence, Tuple, Union
from dataclasses import dataclass
import warnings

from .models import MixedModelResult, WaldTestResult, fit_mixed_model, random_effects_summary, _as_contrast_matrix
from .imputation import ImputedDatasets
from .contrasts import _critical_value, _p_value


@dataclass
class ImputedFits:
    """Container for one fitted model per imputed dataset."""
    fits: List[MixedModelResult]
    imputed: Optional[ImputedDatasets] = None

    @property
    def m(self) -> int:
        return len(self.fits)

    def pool(self, dfcom: Optional[float] = None, alpha: float = 0.05) -> "PooledResult":
        return pool(self, dfcom=dfcom, alpha=alpha)


@dataclass
class PooledResult:
    """Container for pooled fixed effects across imputed fits."""
    table: pd.DataFrame
    fits: List[MixedModelResult]
    qbar: np.ndarray
    ubar: np.ndarray
    between: np.ndarray
    total: np.ndarray
    dfcom: float
    fe_names: List[str]
    design_info: Any
    data: pd.DataFrame
    alpha: float = 0.05

    @property
    def m(self) -> int:
        return len(self.fits)

    def cov_params(self) -> pd.DataFrame:
        """Total (within + between) covariance of the pooled fixed effects."""
        return pd.DataFrame(self.total, index=self.fe_names, columns=self.fe_names)

    def linear_combination(self, L: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Pool L @ beta across imputations.

        Each row of L is pooled as a scalar with Rubin's rules, so each
        contrast gets its own Barnard-Rubin degrees of freedom.
        """
        L = _as_contrast_matrix(L, len(self.fe_names))
        q = np.array([L @ f.fe_params for f in self.fits])
        u = np.array([np.diag(L @ f.fe_cov() @ L.T) for f in self.fits])

        m = self.m
        qbar = q.mean(axis=0)
        ubar = u.mean(axis=0)
        b = q.var(axis=0, ddof=1)
        t = ubar + (1 + 1 / m) * b
        return qbar, np.sqrt(t), barnard_rubin_df(m, b, t, self.dfcom)

    def fixed_effects(self, alpha: Optional[float] = None) -> pd.DataFrame:
        if alpha is None or alpha == self.alpha:
            return self.table.copy()
        return _pool_table(self.fe_names, self.qbar, self.ubar, self.between, self.m, self.dfcom, alpha)

    def random_effects(self) -> pd.DataFrame:
        """Variance components averaged over imputations."""
        tables = [random_effects_summary(f) for f in self.fits]
        out = tables[0][["group", "term"]].copy()
        out["variance"] = np.mean([t["variance"].to_numpy() for t in tables], axis=0)
        out["std_dev"] = np.sqrt(out["variance"])
        return out

    def summary(self) -> str:
        lines = [
            "Pooled mixed model (Rubin's rules)",
            f"  Formula: {self.fits[0].formula}",
            f"  Imputations: {self.m}    Complete-data df: {self.dfcom:g}",
            "",
            self.table[["term", "estimate", "std_error", "df", "p_value", "ci_lower", "ci_upper", "fmi"]]
            .to_string(index=False, float_format=lambda x: f"{x:.4f}")
        ]
        return "\n".join(lines)


def barnard_rubin_df(m: int, b: np.ndarray, t: np.ndarray, dfcom: float) -> np.ndarray:
    """
    Barnard-Rubin (1999) small-sample degrees of freedom.

    Parameters
    ----------
    m : int
        Number of imputations
    b : np.ndarray
        Between-imputation variance
    t : np.ndarray
        Total variance
    dfcom : float
        Complete-data degrees of freedom (np.inf for large samples)

    Returns
    -------
    np.ndarray
        Degrees of freedom
    """
    b = np.asarray(b, dtype=float)
    t = np.asarray(t, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        lam = np.where(t > 0, (1 + 1 / m) * b / t, 0.0)
    lam = np.clip(lam, 1e-4, 1.0)
    df_old = (m - 1) / lam ** 2
    if np.isinf(dfcom):
        return df_old
    df_obs = (dfcom + 1) / (dfcom + 3) * dfcom * (1 - lam)
    return df_old * df_obs / (df_old + df_obs)


def _pool_table(names, qbar, ubar, between, m, dfcom, alpha) -> pd.DataFrame:
    u = np.diag(ubar)
    b = np.diag(between)
    t = u + (1 + 1 / m) * b
    df = barnard_rubin_df(m, b, t, dfcom)
    with np.errstate(divide="ignore", invalid="ignore"):
        riv = np.where(u > 0, (1 + 1 / m) * b / u, np.nan)
        lam = np.where(t > 0, (1 + 1 / m) * b / t, np.nan)
        se = np.sqrt(t)
        stat = qbar / se
    fmi = (riv + 2 / (df + 3)) / (1 + riv)
    crit = _critical_value(df, 1 - alpha)

    return pd.DataFrame({
        "term": names,
        "m": m,
        "estimate": qbar,
        "ubar": u,
        "b": b,
        "t": t,
        "dfcom": dfcom,
        "df": df,
        "riv": riv,
        "lambda": lam,
        "fmi": fmi,
        "std_error": se,
        "statistic": stat,
        "p_value": _p_value(stat, df),
        "ci_lower": qbar - crit * se,
        "ci_upper": qbar + crit * se
    })


def fit_imputed(
    imputed: ImputedDatasets,
    formula: str,
    groups: str,
    re_formula: Optional[str] = None,
    reml: bool = True,
    method: Optional[Any] = None
) -> ImputedFits:
    """
    Fit the same mixed model to every completed dataset.

    Parameters
    ----------
    imputed : ImputedDatasets
        Output of impute()
    formula : str
        Fixed-effects formula
    groups : str
        Grouping factor column
    re_formula : str, optional
        Random-effects formula
    reml : bool
        Fit by REML (default True)
    method : str or list, optional
        Optimizer(s) passed to MixedLM.fit

    Returns
    -------
    ImputedFits
    """
    fits = [
        fit_mixed_model(d, formula, groups, re_formula=re_formula, reml=reml, method=method)
        for d in imputed.datasets
    ]

    names = fits[0].fe_names
    for i, f in enumerate(fits[1:], start=2):
        if f.fe_names != names:
            raise ValueError(f"Imputation {i} produced different fixed effects: {f.fe_names}")

    n_bad = sum(not f.converged for f in fits)
    if n_bad:
        warnings.warn(f"{n_bad} of {len(fits)} imputed-data fits did not converge")

    return ImputedFits(fits=fits, imputed=imputed)


def pool(
    fits: Union[ImputedFits, Sequence[MixedModelResult]],
    dfcom: Optional[float] = None,
    alpha: float = 0.05
) -> PooledResult:
    """
    Combine fixed effects across imputations with Rubin's rules.

    Parameters
    ----------
    fits : ImputedFits or sequence of MixedModelResult
        One fit per imputed dataset
    dfcom : float, optional
        Complete-data degrees of freedom. Defaults to the number of
        observations minus the number of fixed effects.
    alpha : float
        Significance level for confidence intervals

    Returns
    -------
    PooledResult
        Table columns: term, m, estimate, ubar, b, t, dfcom, df, riv,
        lambda, fmi, std_error, statistic, p_value, ci_lower, ci_upper
    """
    fit_list = list(fits.fits) if isinstance(fits, ImputedFits) else list(fits)
    m = len(fit_list)
    if m < 2:
        raise ValueError("Pooling needs at least 2 imputed fits")

    names = fit_list[0].fe_names
    if any(f.fe_names != names for f in fit_list):
        raise ValueError("All fits must have the same fixed effects")

    k = len(names)
    if dfcom is None:
        dfcom = float(fit_list[0].n_obs - k)

    Q = np.vstack([f.fe_params for f in fit_list])
    U = np.stack([f.fe_cov() for f in fit_list])
    qbar = Q.mean(axis=0)
    ubar = U.mean(axis=0)
    between = np.atleast_2d(np.cov(Q, rowvar=False, ddof=1))
    total = ubar + (1 + 1 / m) * between

    return PooledResult(
        table=_pool_table(names, qbar, ubar, between, m, dfcom, alpha),
        fits=fit_list,
        qbar=qbar,
        ubar=ubar,
        between=between,
        total=total,
        dfcom=dfcom,
        fe_names=list(names),
        design_info=fit_list[0].design_info,
        data=pd.concat([f.data for f in fit_list], ignore_index=True),
        alpha=alpha
    )


def pool_scalar(
    estimates: Sequence[float],
    variances: Sequence[float],
    dfcom: float = np.inf
) -> pd.Series:
    """
    Rubin's rules for a single quantity.

    Parameters
    ----------
    estimates : Sequence[float]
        Estimate from each imputed dataset
    variances : Sequence[float]
        Squared standard error from each imputed dataset
    dfcom : float
        Complete-data degrees of freedom

    Returns
    -------
    pd.Series
        qbar, ubar, b, t, df, riv, lambda, fmi, std_error
    """
    q = np.asarray(estimates, dtype=float)
    u = np.asarray(variances, dtype=float)
    if q.shape != u.shape or q.ndim != 1:
        raise ValueError("estimates and variances must be 1-d and of equal length")
    m = len(q)
    if m < 2:
        raise ValueError("Pooling needs at least 2 estimates")

    qbar = q.mean()
    ubar = u.mean()
    b = q.var(ddof=1)
    t = ubar + (1 + 1 / m) * b
    df = float(barnard_rubin_df(m, b, t, dfcom))
    riv = (1 + 1 / m) * b / ubar if ubar > 0 else np.nan
    lam = (1 + 1 / m) * b / t if t > 0 else np.nan

    return pd.Series({
        "qbar": qbar,
        "ubar": ubar,
        "b": b,
        "t": t,
        "df": df,
        "riv": riv,
        "lambda": lam,
        "fmi": (riv + 2 / (df + 3)) / (1 + riv),
        "std_error": np.sqrt(t)
    })


def pooled_wald_test(pooled: PooledResult, terms: List[str]) -> WaldTestResult:
    """
    Multivariate Wald test (D1) of pooled fixed effects.

    Uses the Li, Raghunathan and Rubin (1991) statistic with the average
    relative increase in variance, referred to an F distribution.

    Parameters
    ----------
    pooled : PooledResult
        Pooled fit
    terms : List[str]
        Fixed-effect names tested jointly against zero

    Returns
    -------
    WaldTestResult
        statistic is the F value; df and df_denom are its degrees of freedom
    """
    from scipy import stats

    unknown = [t for t in terms if t not in pooled.fe_names]
    if unknown or not terms:
        raise ValueError(f"Unknown or empty fixed-effect terms: {unknown}")

    idx = [pooled.fe_names.index(t) for t in terms]
    k = len(idx)
    m = pooled.m
    q = pooled.qbar[idx]
    U = pooled.ubar[np.ix_(idx, idx)]
    B = pooled.between[np.ix_(idx, idx)]

    rm = (1 + 1 / m) * np.trace(B @ np.linalg.inv(U)) / k
    d1 = float(q @ np.linalg.solve(U, q)) / (k * (1 + rm))

    if rm <= 0:
        df2 = np.inf
        p_value = float(stats.chi2.sf(d1 * k, k))
    else:
        v = k * (m - 1)
        if v > 4:
            df2 = 4 + (v - 4) * (1 + (1 - 2 / v) / rm) ** 2
        else:
            df2 = v * (1 + 1 / k) * (1 + 1 / rm) ** 2 / 2
        p_value = float(stats.f.sf(d1, k, df2))

    return WaldTestResult(terms=list(terms), statistic=d1, df=k, p_value=p_value, df_denom=float(df2))
