"""
Data processing functions for longitudinal mixed-model analysis.
"""

import ast
import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Sequence


def check_columns(df: pd.DataFrame, columns: Sequence[str]) -> None:
    """Raise ValueError if any of `columns` is absent from `df`."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"Columns not found in data: {missing}")


def formula_variables(formula: str, columns: Sequence[str]) -> List[str]:
    """
    Find the data columns referenced by a patsy formula.

    Parameters
    ----------
    formula : str
        Patsy formula, e.g. "y ~ C(group) * time + age"
    columns : Sequence[str]
        Candidate column names

    Returns
    -------
    List[str]
        Referenced columns, in order of first appearance
    """
    from patsy import ModelDesc

    desc = ModelDesc.from_formula(formula)
    columns = set(columns)
    found = []
    for term in list(desc.lhs_termlist) + list(desc.rhs_termlist):
        for factor in term.factors:
            code = getattr(factor, "code", factor.name())
            for node in ast.walk(ast.parse(code, mode="eval")):
                if isinstance(node, ast.Name) and node.id in columns and node.id not in found:
                    found.append(node.id)
    return found


def is_categorical(series: pd.Series) -> bool:
    """True for columns patsy codes as factors."""
    return (
        isinstance(series.dtype, pd.CategoricalDtype)
        or pd.api.types.is_bool_dtype(series)
        or not pd.api.types.is_numeric_dtype(series)
    )


def factor_levels(series: pd.Series) -> list:
    """Levels of a categorical column in patsy order."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    return sorted(series.dropna().unique())


def wide_to_long(
    df: pd.DataFrame,
    id_col: str = "id",
    outcome_cols: Optional[Dict[str, str]] = None,
    time_col: str = "time",
    value_col: str = "y",
    keep: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Reshape a wide dataset (one row per subject) to long format.

    Parameters
    ----------
    df : pd.DataFrame
        Wide dataset with one outcome column per time point
    id_col : str
        Subject identifier column
    outcome_cols : Dict[str, str]
        Mapping of time label to wide outcome column, in time order
        (default {"pre": "y_pre", "post": "y_post"})
    time_col : str
        Name of the time column to create
    value_col : str
        Name of the outcome column to create
    keep : List[str], optional
        Subject-level columns to carry over. If None, keeps every
        column that is not an outcome column.

    Returns
    -------
    pd.DataFrame
        One row per (subject, time), sorted by subject then time. The time
        column is an ordered categorical following `outcome_cols`.
    """
    if outcome_cols is None:
        outcome_cols = {"pre": "y_pre", "post": "y_post"}

    check_columns(df, [id_col] + list(outcome_cols.values()))

    dupes = df[id_col][df[id_col].duplicated()]
    if len(dupes) > 0:
        raise ValueError(
            f"Wide data must have one row per subject; duplicated ids: {list(dupes.unique()[:5])}"
        )

    if keep is None:
        keep = [c for c in df.columns if c not in outcome_cols.values() and c != id_col]
    check_columns(df, keep)

    value_to_time = {col: label for label, col in outcome_cols.items()}

    long_df = df[[id_col] + keep + list(outcome_cols.values())].melt(
        id_vars=[id_col] + keep,
        value_vars=list(outcome_cols.values()),
        var_name=time_col,
        value_name=value_col
    )
    long_df[time_col] = pd.Categorical(
        long_df[time_col].map(value_to_time),
        categories=list(outcome_cols.keys()),
        ordered=True
    )

    long_df = long_df.sort_values([id_col, time_col]).reset_index(drop=True)
    return long_df[[id_col, time_col] + keep + [value_col]]


def long_to_wide(
    df: pd.DataFrame,
    id_col: str = "id",
    time_col: str = "time",
    value_col: str = "y",
    prefix: Optional[str] = None
) -> pd.DataFrame:
    """
    Reshape a long dataset back to one row per subject.

    Outcome columns are named "<prefix>_<time>" (prefix defaults to
    `value_col`). Subject-level columns that are constant within subject
    are carried over.
    """
    check_unique_observations(df, id_col, time_col)
    prefix = value_col if prefix is None else prefix

    wide = df.pivot(index=id_col, columns=time_col, values=value_col)
    wide.columns = [f"{prefix}_{t}" for t in wide.columns]

    other = [c for c in df.columns if c not in (time_col, value_col, id_col)]
    constant = [c for c in other if (df.groupby(id_col, observed=True)[c].nunique(dropna=False) <= 1).all()]
    if not constant:
        return wide.reset_index()
    subject = df.groupby(id_col, observed=True)[constant].first()

    return subject.join(wide).reset_index()


def check_unique_observations(df: pd.DataFrame, id_col: str = "id", time_col: str = "time") -> None:
    """Raise ValueError if any (subject, time) pair appears more than once."""
    check_columns(df, [id_col, time_col])
    dupes = df.duplicated(subset=[id_col, time_col], keep=False)
    if dupes.any():
        pairs = df.loc[dupes, [id_col, time_col]].drop_duplicates().head(5)
        raise ValueError(
            f"Found {int(dupes.sum())} rows with duplicated ({id_col}, {time_col}) pairs, e.g. "
            f"{list(pairs.itertuples(index=False, name=None))}"
        )


def set_reference_levels(df: pd.DataFrame, levels: Dict[str, List]) -> pd.DataFrame:
    """
    Convert columns to categoricals with a fixed level order.

    The first level of each column becomes the reference category under
    treatment coding.

    Parameters
    ----------
    df : pd.DataFrame
        Dataset
    levels : Dict[str, List]
        Mapping of column name to ordered list of levels

    Returns
    -------
    pd.DataFrame
        Copy of `df` with categorical columns
    """
    check_columns(df, list(levels))
    df = df.copy()
    for col, lv in levels.items():
        unknown = set(df[col].dropna().unique()) - set(lv)
        if unknown:
            raise ValueError(f"Column '{col}' has values not in levels: {sorted(map(str, unknown))}")
        df[col] = pd.Categorical(df[col], categories=list(lv))
    return df


def center_variables(
    df: pd.DataFrame,
    columns: List[str],
    scale: bool = False,
    suffix: str = "_c"
) -> pd.DataFrame:
    """
    Add mean-centered copies of numeric columns.

    Parameters
    ----------
    df : pd.DataFrame
        Dataset
    columns : List[str]
        Numeric columns to center
    scale : bool
        If True, also divide by the standard deviation
    suffix : str
        Suffix for the new columns (default "_c")

    Returns
    -------
    pd.DataFrame
        Copy of `df` with centered columns added
    """
    check_columns(df, columns)
    df = df.copy()
    for col in columns:
        if is_categorical(df[col]):
            raise ValueError(f"Cannot center non-numeric column '{col}'")
        centered = df[col] - df[col].mean()
        if scale:
            sd = df[col].std()
            centered = centered / sd if sd > 0 else centered * np.nan
        df[f"{col}{suffix}"] = centered
    return df
