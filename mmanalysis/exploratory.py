"""
Exploratory data analysis functions for longitudinal data with missing values.
"""

import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
from typing import Optional, List, Tuple

from .processing import check_columns, is_categorical


def missing_pattern(df: pd.DataFrame, columns: Optional[List[str]] = None) -> pd.DataFrame:
    """
    Tabulate missing-data patterns.

    Each row is a distinct pattern (1 = observed, 0 = missing) with the
    number of rows showing it and the number of missing variables. Columns
    are ordered from fewest to most missing values, and the final row holds
    the missing count per variable.

    Parameters
    ----------
    df : pd.DataFrame
        Dataset
    columns : List[str], optional
        Columns to include (default: all)

    Returns
    -------
    pd.DataFrame
        Pattern table with 'count' and 'n_missing' columns
    """
    columns = list(df.columns) if columns is None else columns
    check_columns(df, columns)

    observed = df[columns].notna().astype(int)
    order = observed.sum().sort_values(ascending=False).index.tolist()
    observed = observed[order]

    patterns = (
        observed.value_counts(sort=False)
        .rename("count")
        .reset_index()
    )
    patterns["n_missing"] = len(order) - patterns[order].sum(axis=1)
    patterns = patterns.sort_values(["n_missing", "count"], ascending=[True, False]).reset_index(drop=True)

    totals = {c: int(df[c].isna().sum()) for c in order}
    totals["count"] = int(len(df))
    totals["n_missing"] = int(df[order].isna().sum().sum())
    patterns.index = [str(i) for i in range(len(patterns))]
    patterns.loc["total"] = pd.Series(totals)

    return patterns[order + ["count", "n_missing"]].astype(int)


def plot_missingness(
    df: pd.DataFrame,
    columns: Optional[List[str]] = None,
    title: str = "Missing Data",
    figsize: Tuple[int, int] = (10, 4),
    color: str = "coral",
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Plot the share of missing values per variable and the missingness map.

    Parameters
    ----------
    df : pd.DataFrame
        Dataset
    columns : List[str], optional
        Columns to include (default: all)
    title : str
        Plot title
    figsize : tuple
        Figure size (width, height)
    color : str
        Bar color
    save_path : str, optional
        Path to save figure

    Returns
    -------
    matplotlib.figure.Figure
    """
    columns = list(df.columns) if columns is None else columns
    check_columns(df, columns)

    fig, axes = plt.subplots(1, 2, figsize=figsize)

    pct = df[columns].isna().mean() * 100
    axes[0].barh(columns, pct, color=color, edgecolor='white')
    axes[0].set_xlabel('% missing')
    axes[0].set_title('Missing by Variable')
    axes[0].invert_yaxis()
    axes[0].grid(True, alpha=0.3, axis='x')

    axes[1].imshow(df[columns].isna().to_numpy(), aspect='auto', cmap='Greys', interpolation='none')
    axes[1].set_xticks(range(len(columns)))
    axes[1].set_xticklabels(columns, rotation=45, ha='right')
    axes[1].set_ylabel('Row')
    axes[1].set_title('Missingness Map (black = missing)')

    fig.suptitle(title, fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Saved to {save_path}")

    return fig


def plot_outcome_distribution(
    df: pd.DataFrame,
    outcome_col: str = "y",
    group_col: Optional[str] = None,
    title: str = "Outcome Distribution",
    figsize: Tuple[int, int] = (10, 4),
    color: str = "steelblue",
    bins: int = 30,
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Histogram and box plot of an outcome, optionally split by group.

    Parameters
    ----------
    df : pd.DataFrame
        Dataset containing the outcome (wide or long)
    outcome_col : str
        Name of outcome column
    group_col : str, optional
        If given, histograms are overlaid and box plots drawn per group
    title : str
        Plot title
    figsize : tuple
        Figure size (width, height)
    color : str
        Histogram color
    bins : int
        Number of histogram bins
    save_path : str, optional
        Path to save figure

    Returns
    -------
    matplotlib.figure.Figure
    """
    check_columns(df, [outcome_col] + ([group_col] if group_col else []))
    fig, axes = plt.subplots(1, 2, figsize=figsize)

    values = df[outcome_col].dropna()
    edges = np.histogram_bin_edges(values, bins=bins)

    if group_col:
        sub = df.dropna(subset=[outcome_col, group_col])
        labels = list(dict.fromkeys(sub[group_col].tolist()))
        groups = [sub.loc[sub[group_col] == g, outcome_col] for g in labels]
        for g, v in zip(labels, groups):
            axes[0].hist(v, bins=edges, edgecolor='white', alpha=0.5, label=f'{g} (n={len(v)})')
    else:
        axes[0].hist(values, bins=edges, color=color, edgecolor='white', alpha=0.7)
        axes[0].axvline(values.mean(), color='red', linestyle='--', label=f'Mean: {values.mean():.2f}')
    axes[0].set_xlabel(outcome_col)
    axes[0].set_ylabel('Count')
    axes[0].set_title(f'{len(values)} observed, {int(df[outcome_col].isna().sum())} missing')
    axes[0].legend()

    if group_col:
        axes[1].boxplot(groups)
        axes[1].set_xticks(range(1, len(labels) + 1))
        axes[1].set_xticklabels([str(g) for g in labels])
        axes[1].set_xlabel(group_col)
    else:
        axes[1].boxplot(values)
    axes[1].set_ylabel(outcome_col)
    axes[1].set_title('Box Plot')

    fig.suptitle(title, fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Saved to {save_path}")

    return fig


def plot_trajectories(
    long_df: pd.DataFrame,
    id_col: str = "id",
    time_col: str = "time",
    outcome_col: str = "y",
    group_col: Optional[str] = None,
    max_subjects: int = 100,
    title: str = "Individual Trajectories",
    figsize: Tuple[int, int] = (10, 6),
    alpha: float = 0.2,
    seed: Optional[int] = None,
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Spaghetti plot of subject trajectories with group means.

    Parameters
    ----------
    long_df : pd.DataFrame
        Long-format data
    id_col, time_col, outcome_col : str
        Column names
    group_col : str, optional
        Group column for coloring
    max_subjects : int
        Maximum number of subjects drawn (random sample)
    title : str
        Plot title
    figsize : tuple
        Figure size
    alpha : float
        Transparency of individual lines
    seed : int, optional
        Seed for subject sampling
    save_path : str, optional
        Path to save figure

    Returns
    -------
    matplotlib.figure.Figure
    """
    check_columns(long_df, [id_col, time_col, outcome_col] + ([group_col] if group_col else []))

    times = list(dict.fromkeys(long_df.sort_values(time_col)[time_col].tolist()))
    numeric_time = not is_categorical(long_df[time_col])
    x_of = {t: (float(t) if numeric_time else i) for i, t in enumerate(times)}

    ids = long_df[id_col].unique()
    if len(ids) > max_subjects:
        rng = np.random.default_rng(seed)
        ids = rng.choice(ids, size=max_subjects, replace=False)
    shown = long_df[long_df[id_col].isin(ids)]

    groups = list(dict.fromkeys(long_df[group_col].tolist())) if group_col else [None]
    colors = {g: plt.cm.tab10(i % 10) for i, g in enumerate(groups)}

    fig, ax = plt.subplots(figsize=figsize)

    for _, subj in shown.groupby(id_col, sort=False):
        subj = subj.dropna(subset=[outcome_col])
        g = subj[group_col].iloc[0] if group_col and len(subj) else None
        ax.plot([x_of[t] for t in subj[time_col]], subj[outcome_col],
                color=colors.get(g, "gray"), alpha=alpha, linewidth=1)

    for g in groups:
        sub = long_df if g is None else long_df[long_df[group_col] == g]
        means = sub.groupby(time_col, observed=True)[outcome_col].mean().reindex(times)
        ax.plot([x_of[t] for t in times], means.to_numpy(), color=colors[g], linewidth=3,
                marker="o", label=f"{g} mean" if g is not None else "Mean")

    if not numeric_time:
        ax.set_xticks(list(x_of.values()))
        ax.set_xticklabels([str(t) for t in times])
    ax.set_xlabel(time_col)
    ax.set_ylabel(outcome_col)
    ax.set_title(title, fontsize=14, fontweight='bold')
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Saved to {save_path}")

    return fig


def data_summary(
    df: pd.DataFrame,
    id_col: str = "id",
    outcome_cols: Optional[List[str]] = None,
    group_col: Optional[str] = None,
    covariate_cols: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Generate a summary table of a (wide or long) dataset.

    Parameters
    ----------
    df : pd.DataFrame
        Dataset
    id_col : str
        Subject ID column name
    outcome_cols : List[str], optional
        Outcome columns to describe
    group_col : str, optional
        Group column; group sizes are reported
    covariate_cols : List[str], optional
        Covariates to describe (mean ± SD or level counts)

    Returns
    -------
    pd.DataFrame
        Summary statistics table
    """
    outcome_cols = outcome_cols or []
    covariate_cols = covariate_cols or []
    check_columns(df, [id_col] + outcome_cols + covariate_cols + ([group_col] if group_col else []))

    n_subjects = df[id_col].nunique()
    rows = [
        ('DATA', '', ''),
        ('  Subjects', n_subjects, ''),
        ('  Rows', len(df), ''),
        ('  Rows per subject', f"{len(df)/n_subjects:.1f}" if n_subjects else '', 'mean'),
    ]

    if group_col:
        rows.append(('', '', ''))
        rows.append(('GROUPS', '', ''))
        counts = df.groupby(group_col, observed=True)[id_col].nunique()
        for g, n in counts.items():
            rows.append((f'  {g}', int(n), 'subjects'))

    if outcome_cols:
        rows.append(('', '', ''))
        rows.append(('OUTCOMES', '', ''))
        for col in outcome_cols:
            values = df[col].dropna()
            n_miss = int(df[col].isna().sum())
            rows.append((f'  {col}', f"{values.mean():.2f} ± {values.std():.2f}", 'mean ± SD'))
            rows.append((f'    missing', f"{n_miss} ({n_miss / len(df) * 100:.1f}%)", 'n (%)'))

    if covariate_cols:
        rows.append(('', '', ''))
        rows.append(('COVARIATES', '', ''))
        for col in covariate_cols:
            if is_categorical(df[col]):
                counts = df[col].value_counts(dropna=True)
                levels = ", ".join(f"{k}: {v}" for k, v in counts.items())
                rows.append((f'  {col}', levels, 'counts'))
            else:
                values = df[col].dropna()
                rows.append((f'  {col}', f"{values.mean():.2f} ± {values.std():.2f}", 'mean ± SD'))

    return pd.DataFrame(rows, columns=['Metric', 'Value', 'Note'])


def run_exploratory_analysis(
    df: pd.DataFrame,
    id_col: str = "id",
    outcome_cols: Optional[List[str]] = None,
    group_col: Optional[str] = None,
    covariate_cols: Optional[List[str]] = None,
    save_dir: Optional[str] = None,
    show_plots: bool = True
) -> dict:
    """
    Run complete exploratory data analysis on a wide dataset.

    Parameters
    ----------
    df : pd.DataFrame
        Wide dataset (one row per subject)
    id_col : str
        Subject ID column name
    outcome_cols : List[str], optional
        Outcome columns
    group_col : str, optional
        Group column
    covariate_cols : List[str], optional
        Covariate columns
    save_dir : str, optional
        Directory to save figures
    show_plots : bool
        Whether to display plots

    Returns
    -------
    dict
        Dictionary containing all figures and summary tables
    """
    import os

    outcome_cols = outcome_cols or []
    results = {}

    print("=" * 60)
    print("EXPLORATORY DATA ANALYSIS")
    print("=" * 60)

    summary = data_summary(df, id_col, outcome_cols, group_col, covariate_cols)
    print("\nDATA SUMMARY:")
    print("-" * 40)
    for _, row in summary.iterrows():
        if row['Metric']:
            print(f"{row['Metric']}: {row['Value']}")
    results['summary'] = summary

    print("\n" + "-" * 40)
    print("Tabulating missing-data patterns...")
    results['missing_pattern'] = missing_pattern(df)

    print("Generating missingness plot...")
    save_path = os.path.join(save_dir, 'eda_missingness.png') if save_dir else None
    results['fig_missing'] = plot_missingness(df, save_path=save_path)

    for col in outcome_cols:
        print(f"Generating distribution plot for {col}...")
        save_path = os.path.join(save_dir, f'eda_{col}_distribution.png') if save_dir else None
        results[f'fig_{col}'] = plot_outcome_distribution(
            df, outcome_col=col, group_col=group_col,
            title=f'Distribution of {col}', save_path=save_path
        )

    print("\n" + "=" * 60)
    print("Exploratory analysis complete!")
    if save_dir:
        print(f"Figures saved to: {save_dir}")
    print("=" * 60)

    if show_plots:
        plt.show()

    return results
