"""
Visualization functions for mixed-model, moderation and DID results.
"""

import pandas as pd
import numpy as np
from typing import List, Optional, Tuple
import matplotlib.pyplot as plt

from .contrasts import EMMResult, emmeans, moderator_levels
from .imputation import ImputedDatasets


def _significance(p: float) -> str:
    return "***" if p < 0.001 else "**" if p < 0.01 else "*" if p < 0.05 else ""


def plot_interaction(
    emm: EMMResult,
    x: str,
    trace: Optional[str] = None,
    title: str = "Estimated Marginal Means",
    xlabel: Optional[str] = None,
    ylabel: str = "Estimated marginal mean",
    show_ci: bool = True,
    dodge: float = 0.05,
    figsize: Tuple[int, int] = (8, 6),
    colors: Optional[List[str]] = None,
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Interaction plot of estimated marginal means.

    Parameters
    ----------
    emm : EMMResult
        Estimated marginal means over at least `x` (and `trace`)
    x : str
        Variable on the x-axis
    trace : str, optional
        Variable drawn as separate lines
    title : str
        Plot title
    xlabel : str, optional
        X-axis label (default: `x`)
    ylabel : str
        Y-axis label
    show_ci : bool
        Whether to draw confidence-interval error bars
    dodge : float
        Horizontal offset between traces, as a fraction of the x spacing
    figsize : Tuple[int, int]
        Figure size
    colors : List[str], optional
        Line colors, one per trace level
    save_path : str, optional
        Path to save figure

    Returns
    -------
    plt.Figure
        Matplotlib figure object
    """
    table = emm.table
    for v in [x] + ([trace] if trace else []):
        if v not in emm.specs:
            raise ValueError(f"'{v}' is not in the EMM specs {emm.specs}")

    est = emm.estimate_name
    x_levels = list(dict.fromkeys(table[x].tolist()))
    numeric_x = all(isinstance(v, (int, float, np.number)) for v in x_levels)
    x_pos = {lv: (float(lv) if numeric_x else i) for i, lv in enumerate(x_levels)}
    spacing = (np.ptp(list(x_pos.values())) / max(len(x_levels) - 1, 1)) if numeric_x else 1.0

    traces = list(dict.fromkeys(table[trace].tolist())) if trace else [None]
    if colors is None:
        colors = [plt.cm.tab10(i % 10) for i in range(len(traces))]

    fig, ax = plt.subplots(figsize=figsize)

    for k, (level, color) in enumerate(zip(traces, colors)):
        sub = table if level is None else table[table[trace] == level]
        # average over any remaining spec variables for display
        sub = sub.groupby(x, sort=False, observed=True)[[est, "ci_lower", "ci_upper"]].mean().reset_index()
        offset = (k - (len(traces) - 1) / 2) * dodge * spacing
        xs = np.array([x_pos[v] for v in sub[x]]) + offset

        ax.plot(xs, sub[est], marker="o", color=color, linewidth=2,
                label=str(level) if level is not None else None)
        if show_ci:
            ax.errorbar(
                xs, sub[est],
                yerr=[sub[est] - sub["ci_lower"], sub["ci_upper"] - sub[est]],
                fmt="none", ecolor=color, capsize=4, alpha=0.8
            )

    if not numeric_x:
        ax.set_xticks(list(x_pos.values()))
        ax.set_xticklabels([str(v) for v in x_levels])

    ax.set_xlabel(xlabel or x)
    ax.set_ylabel(ylabel)
    ax.set_title(title, fontsize=14, fontweight="bold")
    if trace:
        ax.legend(title=trace)
    ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=300, bbox_inches="tight")

    return fig


def plot_coefficients(
    table: pd.DataFrame,
    terms: Optional[List[str]] = None,
    exclude_intercept: bool = True,
    title: str = "Fixed Effects",
    xlabel: str = "Estimate",
    figsize: Tuple[int, int] = (10, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Forest plot of coefficient estimates with confidence intervals.

    Parameters
    ----------
    table : pd.DataFrame
        Tidy table with term, estimate, ci_lower, ci_upper, p_value columns
        (from tidy_fixed_effects() or a pooled table)
    terms : List[str], optional
        Subset of terms to plot
    exclude_intercept : bool
        Drop the intercept row (default True)
    title : str
        Plot title
    xlabel : str
        X-axis label
    figsize : Tuple[int, int]
        Figure size
    save_path : str, optional
        Path to save figure

    Returns
    -------
    plt.Figure
        Matplotlib figure object
    """
    data = table.copy()
    if terms is not None:
        data = data[data["term"].isin(terms)]
    if exclude_intercept:
        data = data[data["term"] != "Intercept"]

    fig, ax = plt.subplots(figsize=figsize)

    if data.empty:
        ax.text(0.5, 0.5, "No coefficients to display",
                ha="center", va="center", transform=ax.transAxes)
        return fig

    coefs = data["estimate"].to_numpy()
    ci_lower = data["ci_lower"].to_numpy()
    ci_upper = data["ci_upper"].to_numpy()
    p_values = data["p_value"].to_numpy()
    y_pos = np.arange(len(data))

    ax.errorbar(
        coefs, y_pos,
        xerr=[coefs - ci_lower, ci_upper - coefs],
        fmt="o",
        capsize=5,
        capthick=2,
        color="steelblue",
        ecolor="steelblue",
        markersize=8
    )

    for i, (coef, p) in enumerate(zip(coefs, p_values)):
        ax.annotate(_significance(p), (coef, i), xytext=(5, 0), textcoords="offset points",
                    fontsize=12, fontweight="bold", color="red")

    ax.axvline(x=0, color="gray", linestyle="--", alpha=0.5)
    ax.set_yticks(y_pos)
    ax.set_yticklabels(data["term"])
    ax.invert_yaxis()
    ax.set_xlabel(xlabel)
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.grid(True, alpha=0.3, axis="x")

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=300, bbox_inches="tight")

    return fig


def plot_simple_slopes(
    fit,
    focal: str,
    moderator: str,
    moderator_values: Optional[List] = None,
    n_points: int = 25,
    title: str = "Simple Slopes",
    ylabel: str = "Predicted outcome",
    show_ci: bool = True,
    ci_alpha: float = 0.2,
    figsize: Tuple[int, int] = (8, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Predicted outcome across a numeric focal predictor at moderator values.

    Parameters
    ----------
    fit : MixedModelResult or PooledResult
        Fitted model containing the focal-by-moderator interaction
    focal : str
        Numeric predictor on the x-axis
    moderator : str
        Moderator; factor levels or mean +/- 1 SD by default
    moderator_values : List, optional
        Moderator values to draw
    n_points : int
        Number of points along the focal range
    title : str
        Plot title
    ylabel : str
        Y-axis label
    show_ci : bool
        Whether to shade confidence bands
    ci_alpha : float
        Transparency of confidence bands
    figsize : Tuple[int, int]
        Figure size
    save_path : str, optional
        Path to save figure

    Returns
    -------
    plt.Figure
        Matplotlib figure object
    """
    data = fit.data
    xs = np.linspace(data[focal].min(), data[focal].max(), n_points)
    if moderator_values is None:
        moderator_values = moderator_levels(data, moderator)

    emm = emmeans(fit, [focal, moderator], at={focal: xs, moderator: moderator_values})
    table = emm.table

    fig, ax = plt.subplots(figsize=figsize)
    colors = plt.cm.viridis(np.linspace(0, 0.85, len(moderator_values)))

    for value, color in zip(moderator_values, colors):
        sub = table[table[moderator] == value]
        label = f"{moderator} = {value:.2f}" if isinstance(value, (float, np.floating)) else f"{moderator} = {value}"
        ax.plot(sub[focal], sub["emmean"], color=color, linewidth=2, label=label)
        if show_ci:
            ax.fill_between(sub[focal], sub["ci_lower"], sub["ci_upper"], color=color, alpha=ci_alpha)

    ax.set_xlabel(focal)
    ax.set_ylabel(ylabel)
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=300, bbox_inches="tight")

    return fig


def plot_did(
    emm: EMMResult,
    group_col: str = "group",
    time_col: str = "time",
    treated_level: Optional[str] = None,
    did_estimate: Optional[float] = None,
    did_p_value: Optional[float] = None,
    title: str = "Difference-in-Differences",
    ylabel: str = "Estimated marginal mean",
    figsize: Tuple[int, int] = (8, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Group means over time with the treated group's counterfactual path.

    The counterfactual starts at the treated group's first-period mean and
    follows the control group's change over time.

    Parameters
    ----------
    emm : EMMResult
        Estimated marginal means over group and time
    group_col : str
        Group variable
    time_col : str
        Time variable
    treated_level : str, optional
        Treated group level (default: last group level)
    did_estimate : float, optional
        DID estimate to annotate
    did_p_value : float, optional
        P-value of the DID estimate
    title : str
        Plot title
    ylabel : str
        Y-axis label
    figsize : Tuple[int, int]
        Figure size
    save_path : str, optional
        Path to save figure

    Returns
    -------
    plt.Figure
        Matplotlib figure object
    """
    table = emm.table
    groups = list(dict.fromkeys(table[group_col].tolist()))
    times = list(dict.fromkeys(table[time_col].tolist()))
    if len(groups) != 2:
        raise ValueError(f"DID plot needs exactly 2 groups, found {groups}")
    treated = treated_level if treated_level is not None else groups[-1]
    control = [g for g in groups if g != treated][0]

    fig = plot_interaction(emm, x=time_col, trace=group_col, title=title, ylabel=ylabel,
                           dodge=0.0, figsize=figsize, colors=["#27AE60", "#E74C3C"])
    ax = fig.axes[0]

    def means(level):
        sub = table[table[group_col] == level]
        return sub.groupby(time_col, sort=False, observed=True)["emmean"].mean().reindex(times).to_numpy()

    treated_means = means(treated)
    control_means = means(control)
    counterfactual = treated_means[0] + (control_means - control_means[0])
    ax.plot(np.arange(len(times)), counterfactual, color="#E74C3C", linestyle="--",
            alpha=0.6, label=f"{treated} (counterfactual)")
    ax.legend(title=group_col)

    if did_estimate is not None:
        text = f"DID estimate: {did_estimate:.3f}"
        if did_p_value is not None:
            text += f" (p={did_p_value:.2e}) {_significance(did_p_value)}"
        ax.text(
            0.02, 0.98, text,
            transform=ax.transAxes,
            fontsize=11,
            verticalalignment="top",
            bbox=dict(boxstyle="round,pad=0.5", facecolor="white", edgecolor="gray", alpha=0.9)
        )

    if save_path:
        plt.savefig(save_path, dpi=300, bbox_inches="tight")

    return fig


def plot_imputation_chains(
    imputed: ImputedDatasets,
    variables: Optional[List[str]] = None,
    title: str = "Imputation Chains",
    figsize: Optional[Tuple[int, int]] = None,
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Mean and SD of imputed values per iteration, one line per chain.

    Chains that mix and show no trend indicate convergence.

    Parameters
    ----------
    imputed : ImputedDatasets
        Output of impute()
    variables : List[str], optional
        Imputed variables to show (default: all)
    title : str
        Plot title
    figsize : Tuple[int, int], optional
        Figure size
    save_path : str, optional
        Path to save figure

    Returns
    -------
    plt.Figure
        Matplotlib figure object
    """
    stats_df = imputed.chain_stats
    if variables is None:
        variables = list(dict.fromkeys(stats_df["variable"].tolist()))
    if not variables:
        fig, ax = plt.subplots(figsize=figsize or (8, 4))
        ax.text(0.5, 0.5, "No imputed variables to display",
                ha="center", va="center", transform=ax.transAxes)
        return fig

    fig, axes = plt.subplots(len(variables), 2, figsize=figsize or (12, 3.5 * len(variables)),
                             squeeze=False)

    for row, var in enumerate(variables):
        sub = stats_df[stats_df["variable"] == var]
        for col, stat in enumerate(("mean", "sd")):
            ax = axes[row, col]
            for imp_id, chain in sub.groupby("imputation"):
                ax.plot(chain["iteration"], chain[stat], linewidth=1.5, label=f"chain {imp_id}")
            ax.set_title(f"{stat} {var}")
            ax.set_xlabel("Iteration")
            ax.grid(True, alpha=0.3)

    fig.suptitle(title, fontsize=14, fontweight="bold")
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches="tight")

    return fig
