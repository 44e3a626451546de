"""
Multiple imputation by chained equations.

Imputation itself is done by statsmodels ``MICEData`` (predictive mean
matching on a perturbed OLS fit). This module adds the bookkeeping around it:
a per-variable method and predictor specification, dummy coding of
categorical predictors, removal of unusable predictors with a log of what
was removed, and one independent chain per imputed dataset.
"""

import re
import itertools
import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Sequence
from dataclasses import dataclass, field
import warnings

from .processing import check_columns, is_categorical, factor_levels

# method name -> MICEData perturbation method ("" means: do not impute)
SUPPORTED_METHODS = {"pmm": "gaussian", "pmm-boot": "boot", "": None}

COLLINEAR_THRESHOLD = 0.99


@dataclass
class ImputationSpec:
    """Per-variable imputation configuration."""
    method: Dict[str, str]
    predictors: Dict[str, List[str]]
    exclude: List[str] = field(default_factory=list)
    k_pmm: int = 20
    maxit: int = 10
    logged_events: List[dict] = field(default_factory=list)

    @property
    def targets(self) -> List[str]:
        """Variables that will be imputed."""
        return [v for v, m in self.method.items() if m]

    def set_method(self, var: str, method: str) -> None:
        _validate_method(method)
        if var not in self.method:
            raise ValueError(f"Unknown variable '{var}'")
        self.method[var] = method
        if method and var not in self.predictors:
            self.predictors[var] = [v for v in self.method if v != var]

    def set_predictors(self, var: str, predictors: Sequence[str]) -> None:
        if var in predictors:
            raise ValueError(f"'{var}' cannot predict itself")
        self.predictors[var] = list(predictors)

    def predictor_matrix(self) -> pd.DataFrame:
        """0/1 matrix with one row per variable and one column per predictor."""
        variables = list(self.method)
        mat = pd.DataFrame(0, index=variables, columns=variables)
        for target, preds in self.predictors.items():
            if not self.method.get(target):
                continue
            for p in preds:
                for part in p.split(":"):
                    if part in mat.columns:
                        mat.loc[target, part] = 1
        return mat


@dataclass
class ImputedDatasets:
    """Container for a set of multiply imputed datasets."""
    data: pd.DataFrame
    datasets: List[pd.DataFrame]
    spec: ImputationSpec
    where: pd.DataFrame
    logged_events: pd.DataFrame
    chain_stats: pd.DataFrame
    seed: Optional[int] = None

    @property
    def m(self) -> int:
        return len(self.datasets)

    def complete(self, i: int = 0) -> pd.DataFrame:
        """The i-th completed dataset (0-based)."""
        if not 0 <= i < self.m:
            raise ValueError(f"Imputation index must be in [0, {self.m - 1}]")
        return self.datasets[i].copy()

    def complete_long(self, include_original: bool = False) -> pd.DataFrame:
        """
        Stack completed datasets with '.imp' and '.id' columns.

        '.imp' is 1..m (0 for the original data when `include_original`);
        '.id' is the row position in the original data.
        """
        frames = []
        sources = ([self.data] if include_original else []) + self.datasets
        start = 0 if include_original else 1
        for k, d in enumerate(sources, start=start):
            f = d.copy()
            f.insert(0, ".id", np.arange(len(d)))
            f.insert(0, ".imp", k)
            frames.append(f)
        return pd.concat(frames, ignore_index=True)

    def imputed_values(self, var: str) -> pd.DataFrame:
        """Imputed values of `var`: one row per missing cell, one column per imputation."""
        if var not in self.where.columns:
            raise ValueError(f"'{var}' was not imputed")
        mask = self.where[var].to_numpy()
        return pd.DataFrame(
            {i + 1: d[var].to_numpy()[mask] for i, d in enumerate(self.datasets)},
            index=self.data.index[mask]
        )


def _validate_method(method: str) -> None:
    if method not in SUPPORTED_METHODS:
        raise ValueError(
            f"Unsupported imputation method '{method}'. Choose from {sorted(SUPPORTED_METHODS)}"
        )


def make_imputation_spec(
    df: pd.DataFrame,
    exclude: Sequence[str] = (),
    method: Optional[Dict[str, str]] = None,
    predictors: Optional[Dict[str, List[str]]] = None,
    default_method: str = "pmm",
    k_pmm: int = 20,
    maxit: int = 10
) -> ImputationSpec:
    """
    Build a default imputation specification for a dataset.

    Numeric variables with missing values get `default_method`, complete
    variables get "" (not imputed). Categorical variables with missing
    values are not imputed and a logged event records it. Every other
    non-excluded variable predicts each imputed variable unless
    `predictors` says otherwise.

    Parameters
    ----------
    df : pd.DataFrame
        Dataset with missing values
    exclude : Sequence[str]
        Columns neither imputed nor used as predictors (e.g. subject id)
    method : Dict[str, str], optional
        Per-variable method overrides: "pmm", "pmm-boot" or ""
    predictors : Dict[str, List[str]], optional
        Per-variable predictor overrides. Entries "a:b" add the product of
        a and b as a predictor.
    default_method : str
        Method for numeric variables with missing values (default "pmm")
    k_pmm : int
        Number of donors for predictive mean matching
    maxit : int
        Number of chained-equation cycles per imputation

    Returns
    -------
    ImputationSpec
    """
    exclude = list(exclude)
    check_columns(df, exclude)
    _validate_method(default_method)

    variables = [c for c in df.columns if c not in exclude]
    methods = {}
    events = []
    for v in variables:
        n_miss = int(df[v].isna().sum())
        if n_miss == 0:
            methods[v] = ""
        elif is_categorical(df[v]):
            methods[v] = ""
            events.append({"dep": v, "meth": "", "out": v,
                           "note": f"categorical variable with {n_miss} missing values is not imputed"})
        else:
            methods[v] = default_method

    for v, m in (method or {}).items():
        _validate_method(m)
        if v not in methods:
            raise ValueError(f"Cannot set method for unknown or excluded variable '{v}'")
        if m and is_categorical(df[v]):
            raise ValueError(f"Only numeric variables can be imputed; '{v}' is categorical")
        methods[v] = m

    preds = {v: [p for p in variables if p != v] for v in variables if methods[v]}
    for v, p in (predictors or {}).items():
        if v not in methods:
            raise ValueError(f"Cannot set predictors for unknown or excluded variable '{v}'")
        preds[v] = list(p)

    return ImputationSpec(
        method=methods,
        predictors=preds,
        exclude=exclude,
        k_pmm=k_pmm,
        maxit=maxit,
        logged_events=events
    )


def _numeric_view(s: pd.Series) -> pd.Series:
    if is_categorical(s):
        codes = pd.Categorical(s, categories=factor_levels(s)).codes.astype(float)
        codes[codes < 0] = np.nan
        return pd.Series(codes, index=s.index)
    return s.astype(float)


def quickpred(
    df: pd.DataFrame,
    mincor: float = 0.1,
    exclude: Sequence[str] = (),
    include: Sequence[str] = ()
) -> Dict[str, List[str]]:
    """
    Select imputation predictors by correlation.

    A variable predicts a target if its absolute correlation with the
    target, or with the target's missingness indicator, is at least
    `mincor`. Factors enter through their integer codes.

    Parameters
    ----------
    df : pd.DataFrame
        Dataset with missing values
    mincor : float
        Minimum absolute correlation (default 0.1)
    exclude : Sequence[str]
        Columns never used as predictors
    include : Sequence[str]
        Columns always used as predictors

    Returns
    -------
    Dict[str, List[str]]
        Predictors for each variable with missing values
    """
    check_columns(df, list(exclude) + list(include))
    variables = [c for c in df.columns if c not in exclude]
    num = {c: _numeric_view(df[c]) for c in variables}

    out = {}
    for target in variables:
        if not df[target].isna().any() or is_categorical(df[target]):
            continue
        y = num[target]
        r = y.isna().astype(float)
        chosen = []
        for p in variables:
            if p == target:
                continue
            x = num[p]
            c1 = abs(y.corr(x)) if x.std() > 0 else 0.0
            c2 = abs(r.corr(x)) if (x.std() > 0 and r.std() > 0) else 0.0
            c1 = 0.0 if np.isnan(c1) else c1
            c2 = 0.0 if np.isnan(c2) else c2
            if max(c1, c2) >= mincor or p in include:
                chosen.append(p)
        out[target] = chosen
    return out


def _safe_name(name, taken: set) -> str:
    base = re.sub(r"\W", "_", str(name))
    if not base or base[0].isdigit():
        base = "v_" + base
    candidate, k = base, 1
    while candidate in taken:
        k += 1
        candidate = f"{base}_{k}"
    taken.add(candidate)
    return candidate


def _encode(df: pd.DataFrame, variables: List[str]):
    """Numeric frame for MICEData with dummy-coded factors and safe names."""
    taken = set()
    columns = {}
    encoded = {}
    for v in variables:
        s = df[v]
        if is_categorical(s):
            levels = factor_levels(s)
            missing = s.isna().to_numpy()
            names = []
            for lv in levels[1:]:
                name = _safe_name(f"{v}_{lv}", taken)
                col = (s.astype(object) == lv).to_numpy(dtype=float)
                col[missing] = np.nan
                encoded[name] = col
                names.append(name)
            columns[v] = names
        else:
            name = _safe_name(v, taken)
            encoded[name] = s.to_numpy(dtype=float)
            columns[v] = [name]

    enc = pd.DataFrame(encoded)
    enc.columns = pd.Index(list(encoded), dtype=object)
    return enc, columns


def _prune_predictors(enc: pd.DataFrame, target_col: str, terms: List[str],
                      target: str, events: List[dict]) -> List[str]:
    """Drop constant and collinear main-effect predictor columns."""
    kept = []
    observed = enc[target_col].notna()
    for term in terms:
        if ":" in term:
            kept.append(term)
            continue
        x = enc.loc[observed, term]
        if x.nunique(dropna=True) <= 1:
            events.append({"dep": target, "meth": "constant", "out": term, "note": "constant predictor removed"})
            continue
        collinear = False
        for other in [target_col] + [k for k in kept if ":" not in k]:
            r = enc.loc[observed, term].corr(enc.loc[observed, other])
            if not np.isnan(r) and abs(r) > COLLINEAR_THRESHOLD:
                events.append({"dep": target, "meth": "collinear", "out": term,
                               "note": f"collinear with {other} (r={r:.3f})"})
                collinear = True
                break
        if not collinear:
            kept.append(term)
    return kept


def impute(
    df: pd.DataFrame,
    spec: Optional[ImputationSpec] = None,
    m: int = 5,
    seed: Optional[int] = None
) -> ImputedDatasets:
    """
    Generate `m` completed datasets by chained equations.

    Each imputation runs its own MICEData chain for `spec.maxit` cycles,
    starting from statsmodels' initial mean-matching fill.

    Parameters
    ----------
    df : pd.DataFrame
        Dataset with missing values (e.g. long format)
    spec : ImputationSpec, optional
        Imputation configuration (default: make_imputation_spec(df))
    m : int
        Number of imputed datasets (default 5)
    seed : int, optional
        Seed for numpy's global generator, which MICEData draws from. The
        generator's previous state is restored once the chains finish.

    Returns
    -------
    ImputedDatasets
        Completed datasets, missingness mask, logged events and chain
        statistics
    """
    from statsmodels.imputation.mice import MICEData

    if m < 1:
        raise ValueError("m must be at least 1")
    if spec is None:
        spec = make_imputation_spec(df)

    check_columns(df, list(spec.method))
    events = [dict(e) for e in spec.logged_events]
    targets = spec.targets

    for t in targets:
        if is_categorical(df[t]):
            raise ValueError(f"Only numeric variables can be imputed; '{t}' is categorical")

    # Resolve predictor terms to variables usable by MICEData
    def usable(v: str, target: str) -> bool:
        if v not in df.columns or v in spec.exclude:
            raise ValueError(f"Predictor '{v}' for '{target}' is not an available column")
        if df[v].isna().any() and v not in targets:
            events.append({"dep": target, "meth": "dropped", "out": v,
                           "note": "predictor has missing values but is not imputed"})
            return False
        return True

    target_terms = {}
    for t in targets:
        terms = []
        for p in spec.predictors.get(t, []):
            parts = p.split(":")
            if t in parts:
                raise ValueError(f"'{t}' cannot predict itself")
            if all(usable(part, t) for part in parts):
                terms.append(parts)
        target_terms[t] = terms

    variables = list(dict.fromkeys(
        targets + [part for terms in target_terms.values() for parts in terms for part in parts]
    ))
    enc, columns = _encode(df, variables)

    if len(enc.columns) and enc.isna().all(axis=1).any():
        raise ValueError("Some rows have every imputation variable missing")

    formulas = {}
    for t in targets:
        tcol = columns[t][0]
        rhs = []
        for parts in target_terms[t]:
            for combo in itertools.product(*[columns[part] for part in parts]):
                rhs.append(":".join(combo))
        rhs = _prune_predictors(enc, tcol, list(dict.fromkeys(rhs)), t, events)
        if not rhs:
            events.append({"dep": t, "meth": "empty", "out": "", "note": "no predictors; intercept-only imputation"})
        formulas[t] = " + ".join(rhs) if rhs else "1"

    where = pd.DataFrame({t: df[t].isna().to_numpy() for t in targets}, index=df.index)

    saved_state = np.random.get_state() if seed is not None else None
    if seed is not None:
        np.random.seed(seed)

    datasets = []
    stats_rows = []
    try:
        for i in range(m):
            completed = df.copy()
            if targets:
                imp = MICEData(enc, k_pmm=spec.k_pmm)
                for t in targets:
                    imp.set_imputer(
                        columns[t][0],
                        formula=formulas[t],
                        k_pmm=spec.k_pmm,
                        perturbation_method=SUPPORTED_METHODS[spec.method[t]]
                    )
                for it in range(spec.maxit):
                    imp.update_all(1)
                    for t in targets:
                        vals = imp.data[columns[t][0]].to_numpy()[where[t].to_numpy()]
                        stats_rows.append((i + 1, it + 1, t, float(np.mean(vals)) if len(vals) else np.nan,
                                           float(np.std(vals, ddof=1)) if len(vals) > 1 else np.nan))
                for t in targets:
                    mask = where[t].to_numpy()
                    values = completed[t].to_numpy(dtype=float, copy=True)
                    values[mask] = imp.data[columns[t][0]].to_numpy()[mask]
                    completed[t] = values
            datasets.append(completed)
    finally:
        if saved_state is not None:
            np.random.set_state(saved_state)

    logged = pd.DataFrame(events, columns=["dep", "meth", "out", "note"])
    if len(logged):
        warnings.warn(f"{len(logged)} logged events during imputation; check ImputedDatasets.logged_events")

    return ImputedDatasets(
        data=df.copy(),
        datasets=datasets,
        spec=spec,
        where=where,
        logged_events=logged,
        chain_stats=pd.DataFrame(stats_rows, columns=["imputation", "iteration", "variable", "mean", "sd"]),
        seed=seed
    )
