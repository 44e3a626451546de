"""
Estimated marginal means and post-hoc contrasts for fitted mixed models.

Every function here works on any fit exposing ``data``, ``design_info``,
``fe_names`` and ``linear_combination(L)``, i.e. both a single
:class:`~mmanalysis.models.MixedModelResult` and a pooled
:class:`~mmanalysis.pooling.PooledResult`.
"""

import ast
import itertools
import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Any, Sequence, Tuple, Union
from dataclasses import dataclass

from .processing import is_categorical, factor_levels


@dataclass
class EMMResult:
    """Container for estimated marginal means (or trends)."""
    table: pd.DataFrame
    L: np.ndarray
    specs: List[str]
    fit: Any
    level: float = 0.95
    estimate_name: str = "emmean"


def _critical_value(df: np.ndarray, level: float) -> np.ndarray:
    from scipy import stats

    df = np.asarray(df, dtype=float)
    q = 1 - (1 - level) / 2
    finite = np.isfinite(df)
    return np.where(finite, stats.t.ppf(q, np.where(finite, df, 1.0)), stats.norm.ppf(q))


def _p_value(statistic: np.ndarray, df: np.ndarray) -> np.ndarray:
    from scipy import stats

    statistic = np.abs(np.asarray(statistic, dtype=float))
    df = np.asarray(df, dtype=float)
    finite = np.isfinite(df)
    return np.where(
        finite,
        2 * stats.t.sf(statistic, np.where(finite, df, 1.0)),
        2 * stats.norm.sf(statistic)
    )


def _inference(fit, L: np.ndarray, level: float) -> Dict[str, np.ndarray]:
    est, se, df = fit.linear_combination(L)
    crit = _critical_value(df, level)
    with np.errstate(divide="ignore", invalid="ignore"):
        stat = est / se
    return {
        "estimate": est,
        "std_error": se,
        "df": df,
        "statistic": stat,
        "p_value": _p_value(stat, df),
        "ci_lower": est - crit * se,
        "ci_upper": est + crit * se
    }


def design_variables(fit) -> List[str]:
    """Data columns entering the fixed-effects design of a fit."""
    columns = set(fit.data.columns)
    found = []
    for factor in fit.design_info.factor_infos:
        code = getattr(factor, "code", factor.name())
        for node in ast.walk(ast.parse(code, mode="eval")):
            if isinstance(node, ast.Name) and node.id in columns and node.id not in found:
                found.append(node.id)
    return found


def _variable_levels(fit, specs: List[str], at: Dict[str, Any]) -> Dict[str, list]:
    variables = design_variables(fit)
    unknown = [v for v in list(specs) + list(at) if v not in variables]
    if unknown:
        raise ValueError(f"Not predictors in the model: {unknown}")

    levels = {}
    for v in variables:
        s = fit.data[v]
        if is_categorical(s):
            all_levels = factor_levels(s)
            if v in at:
                chosen = list(np.atleast_1d(at[v]))
                bad = [x for x in chosen if x not in all_levels]
                if bad:
                    raise ValueError(f"Levels {bad} not found for factor '{v}'")
                levels[v] = chosen
            else:
                levels[v] = all_levels
        else:
            levels[v] = [float(x) for x in np.atleast_1d(at[v])] if v in at else [float(s.mean())]
    return levels


def reference_grid(
    fit,
    specs: Sequence[str],
    at: Optional[Dict[str, Any]] = None
) -> pd.DataFrame:
    """
    Build the reference grid underlying estimated marginal means.

    Factors named in `specs` take all their levels (or the `at` levels).
    Numeric predictors are held at their mean unless given in `at`.
    Factors not in `specs` are also crossed in full, so that cell means
    can average over them with equal weights.

    Parameters
    ----------
    fit : MixedModelResult or PooledResult
        Fitted model
    specs : Sequence[str]
        Variables defining the cells
    at : dict, optional
        Values for numeric predictors (or subsets of factor levels)

    Returns
    -------
    pd.DataFrame
        One row per grid point, spec variables first
    """
    specs = [specs] if isinstance(specs, str) else list(specs)
    levels = _variable_levels(fit, specs, dict(at or {}))
    order = specs + [v for v in levels if v not in specs]

    grid = pd.DataFrame(list(itertools.product(*[levels[v] for v in order])), columns=order)
    for v in order:
        s = fit.data[v]
        if is_categorical(s):
            ordered = bool(getattr(s.dtype, "ordered", False))
            grid[v] = pd.Categorical(grid[v], categories=factor_levels(s), ordered=ordered)
    return grid


def _cell_matrix(
    fit,
    specs: List[str],
    at: Optional[Dict[str, Any]] = None,
    shift: Optional[Tuple[str, float]] = None
) -> Tuple[pd.DataFrame, np.ndarray]:
    """Cells of `specs` and the matrix mapping fixed effects to cell predictions."""
    from patsy import build_design_matrices

    levels = _variable_levels(fit, specs, dict(at or {}))
    grid = reference_grid(fit, specs, at=at)
    if shift is not None:
        grid[shift[0]] = grid[shift[0]] + shift[1]

    X = np.asarray(build_design_matrices([fit.design_info], grid)[0], dtype=float)

    n_cells = int(np.prod([len(levels[s]) for s in specs])) if specs else 1
    L = X.reshape(n_cells, -1, X.shape[1]).mean(axis=1)

    if specs:
        cells = pd.DataFrame(list(itertools.product(*[levels[s] for s in specs])), columns=specs)
        for s in specs:
            if is_categorical(fit.data[s]):
                cells[s] = pd.Categorical(cells[s], categories=levels[s])
    else:
        cells = pd.DataFrame(index=range(1))
    return cells, L


def emmeans(
    fit,
    specs: Union[str, Sequence[str]],
    at: Optional[Dict[str, Any]] = None,
    level: float = 0.95
) -> EMMResult:
    """
    Estimated marginal means for each cell of `specs`.

    Parameters
    ----------
    fit : MixedModelResult or PooledResult
        Fitted model
    specs : str or Sequence[str]
        Variables defining the cells, e.g. ["group", "time"]
    at : dict, optional
        Values at which to evaluate numeric predictors
    level : float
        Confidence level (default 0.95)

    Returns
    -------
    EMMResult
        Table with columns specs..., emmean, std_error, df, ci_lower, ci_upper
    """
    specs = [specs] if isinstance(specs, str) else list(specs)
    if not specs:
        raise ValueError("emmeans needs at least one variable in specs")

    cells, L = _cell_matrix(fit, specs, at=at)
    inf = _inference(fit, L, level)

    table = cells.copy()
    table["emmean"] = inf["estimate"]
    for col in ("std_error", "df", "ci_lower", "ci_upper"):
        table[col] = inf[col]

    return EMMResult(table=table, L=L, specs=specs, fit=fit, level=level)


def simple_slopes(
    fit,
    var: str,
    specs: Optional[Union[str, Sequence[str]]] = None,
    at: Optional[Dict[str, Any]] = None,
    level: float = 0.95,
    delta: Optional[float] = None
) -> EMMResult:
    """
    Slope of a numeric predictor within each cell of `specs` (emtrends).

    The slope is the central finite difference of the model prediction
    with respect to `var`, which is exact for terms linear in `var`.

    Parameters
    ----------
    fit : MixedModelResult or PooledResult
        Fitted model
    var : str
        Numeric predictor whose slope is estimated
    specs : str or Sequence[str], optional
        Moderators defining the cells. If None, the average slope.
    at : dict, optional
        Values of numeric moderators, e.g. {"age_c": [-10, 0, 10]}
    level : float
        Confidence level
    delta : float, optional
        Step for the finite difference (default 0.001 SD of `var`)

    Returns
    -------
    EMMResult
        Table column "<var>.trend" holds the slopes; usable with
        pairwise_contrasts to compare slopes.
    """
    specs = [] if specs is None else ([specs] if isinstance(specs, str) else list(specs))
    if var in specs:
        raise ValueError(f"'{var}' cannot be both the slope variable and a spec")
    if var not in design_variables(fit):
        raise ValueError(f"'{var}' is not a predictor in the model")
    if is_categorical(fit.data[var]):
        raise ValueError(f"Slopes need a numeric predictor; '{var}' is categorical")

    if delta is None:
        sd = float(fit.data[var].std())
        delta = 1e-3 * sd if sd > 0 else 1e-3

    cells, L_plus = _cell_matrix(fit, specs, at=at, shift=(var, delta))
    _, L_minus = _cell_matrix(fit, specs, at=at, shift=(var, -delta))
    L = (L_plus - L_minus) / (2 * delta)

    inf = _inference(fit, L, level)
    name = f"{var}.trend"
    table = cells.copy()
    table[name] = inf["estimate"]
    for col in ("std_error", "df", "ci_lower", "ci_upper"):
        table[col] = inf[col]

    return EMMResult(table=table, L=L, specs=specs, fit=fit, level=level, estimate_name=name)


def _fmt(value) -> str:
    if isinstance(value, (float, np.floating)):
        return f"{value:g}"
    return str(value)


def _groups(table: pd.DataFrame, by: List[str]):
    if not by:
        return [((), np.arange(len(table)))]
    out = []
    for key, idx in table.groupby(by, sort=False, observed=True).indices.items():
        key = key if isinstance(key, tuple) else (key,)
        out.append((key, np.asarray(idx)))
    return out


def _adjust(p_values: np.ndarray, method: Optional[str]) -> np.ndarray:
    from statsmodels.stats.multitest import multipletests

    if method in (None, "none") or len(p_values) == 0:
        return p_values
    ok = np.isfinite(p_values)
    adjusted = p_values.copy()
    if ok.any():
        adjusted[ok] = multipletests(p_values[ok], method=method)[1]
    return adjusted


def _contrast_frame(emm: EMMResult, rows: List[dict], Ls: List[np.ndarray],
                    families: List[int], adjust: Optional[str], level: float) -> pd.DataFrame:
    inf = _inference(emm.fit, np.vstack(Ls), level)
    out = pd.DataFrame(rows)
    for col in ("estimate", "std_error", "df", "statistic", "p_value"):
        out[col] = inf[col]

    families = np.asarray(families)
    p_adj = np.empty(len(out))
    for fam in np.unique(families):
        mask = families == fam
        p_adj[mask] = _adjust(inf["p_value"][mask], adjust)
    out["p_adjusted"] = p_adj
    out["ci_lower"] = inf["ci_lower"]
    out["ci_upper"] = inf["ci_upper"]
    return out


def pairwise_contrasts(
    emm: EMMResult,
    by: Optional[Union[str, Sequence[str]]] = None,
    adjust: Optional[str] = "holm",
    reverse: bool = False,
    level: Optional[float] = None
) -> pd.DataFrame:
    """
    All pairwise differences between cells, optionally within `by` groups.

    Parameters
    ----------
    emm : EMMResult
        Output of emmeans() or simple_slopes()
    by : str or Sequence[str], optional
        Spec variables to condition on; pairs are formed within each level
    adjust : str, optional
        Multiple-comparison adjustment passed to statsmodels multipletests
        ("holm", "bonferroni", "fdr_bh", ...), applied within each by
        group. "none" or None skips adjustment.
    reverse : bool
        If False, contrasts are "earlier - later" cell; if True "later - earlier"
    level : float, optional
        Confidence level (defaults to the EMM level)

    Returns
    -------
    pd.DataFrame
        Columns: by..., contrast, estimate, std_error, df, statistic,
        p_value, p_adjusted, ci_lower, ci_upper
    """
    by = [] if by is None else ([by] if isinstance(by, str) else list(by))
    bad = [b for b in by if b not in emm.specs]
    if bad:
        raise ValueError(f"'by' variables must be in specs {emm.specs}: {bad}")
    pair_vars = [s for s in emm.specs if s not in by]
    if not pair_vars and emm.specs:
        raise ValueError("No variables left to contrast after conditioning on 'by'")

    table = emm.table
    rows, Ls, families = [], [], []
    for fam, (key, idx) in enumerate(_groups(table, by)):
        labels = {i: " ".join(_fmt(table.iloc[i][v]) for v in pair_vars) for i in idx}
        for a, b in itertools.combinations(idx, 2):
            i, j = (b, a) if reverse else (a, b)
            row = dict(zip(by, key))
            row["contrast"] = f"{labels[i]} - {labels[j]}"
            rows.append(row)
            Ls.append(emm.L[i] - emm.L[j])
            families.append(fam)

    if not rows:
        raise ValueError("Need at least two cells to form pairwise contrasts")

    return _contrast_frame(emm, rows, Ls, families, adjust, level or emm.level)


def interaction_contrasts(
    emm: EMMResult,
    variables: Optional[Sequence[str]] = None,
    adjust: Optional[str] = "none",
    reverse: bool = True,
    level: Optional[float] = None
) -> pd.DataFrame:
    """
    Interaction contrasts: products of pairwise contrasts across factors.

    For two factors this is the difference of differences, e.g. with
    group (control, treatment) and time (pre, post) and the default
    reverse=True, the single contrast
    "(treatment - control) : (post - pre)" is the DID estimate.

    Parameters
    ----------
    emm : EMMResult
        Output of emmeans() over at least the interacting variables
    variables : Sequence[str], optional
        Interacting spec variables (default: all specs). Remaining specs
        act as 'by' variables.
    adjust : str, optional
        Multiple-comparison adjustment within each by group
    reverse : bool
        If True, each pairwise factor contrast is "later - earlier" level
    level : float, optional
        Confidence level

    Returns
    -------
    pd.DataFrame
        Same columns as pairwise_contrasts()
    """
    variables = list(emm.specs) if variables is None else list(variables)
    if len(variables) < 2:
        raise ValueError("Interaction contrasts need at least two variables")
    bad = [v for v in variables if v not in emm.specs]
    if bad:
        raise ValueError(f"Variables must be in specs {emm.specs}: {bad}")
    by = [s for s in emm.specs if s not in variables]

    table = emm.table
    rows, Ls, families = [], [], []
    for fam, (key, idx) in enumerate(_groups(table, by)):
        sub = table.iloc[idx]
        level_pairs = [
            list(itertools.combinations(list(dict.fromkeys(sub[v].tolist())), 2))
            for v in variables
        ]
        for combo in itertools.product(*level_pairs):
            w = np.ones(len(idx))
            for v, (lo, hi) in zip(variables, combo):
                values = sub[v].to_numpy()
                sign_hi, sign_lo = (1.0, -1.0) if reverse else (-1.0, 1.0)
                w *= np.where(values == hi, sign_hi, np.where(values == lo, sign_lo, 0.0))

            row = dict(zip(by, key))
            row["contrast"] = " : ".join(
                f"{_fmt(hi)} - {_fmt(lo)}" if reverse else f"{_fmt(lo)} - {_fmt(hi)}"
                for lo, hi in combo
            )
            rows.append(row)
            Ls.append(w @ emm.L[idx])
            families.append(fam)

    return _contrast_frame(emm, rows, Ls, families, adjust, level or emm.level)


def linear_contrast(
    emm: EMMResult,
    weights: Sequence[float],
    label: str = "custom",
    level: Optional[float] = None
) -> pd.DataFrame:
    """
    A single user-defined contrast of the EMM cells.

    Parameters
    ----------
    emm : EMMResult
        Estimated marginal means
    weights : Sequence[float]
        One weight per row of `emm.table`
    label : str
        Name of the contrast

    Returns
    -------
    pd.DataFrame
        One-row contrast table
    """
    w = np.asarray(weights, dtype=float)
    if w.shape != (len(emm.table),):
        raise ValueError(f"Need {len(emm.table)} weights, got {w.size}")
    return _contrast_frame(emm, [{"contrast": label}], [w @ emm.L], [0], None, level or emm.level)


def moderator_levels(data: pd.DataFrame, var: str, n_sd: float = 1.0) -> List[float]:
    """Mean and mean +/- n_sd standard deviations of a numeric moderator."""
    if is_categorical(data[var]):
        return factor_levels(data[var])
    mean = float(data[var].mean())
    sd = float(data[var].std())
    return [mean - n_sd * sd, mean, mean + n_sd * sd]
