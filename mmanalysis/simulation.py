"""
Simulated datasets for the mixed-model, moderation and DID workflows.
"""

import pandas as pd
import numpy as np
from typing import Optional


def simulate_repeated_measures(
    n_subjects: int = 18,
    n_times: int = 10,
    intercept: float = 250.0,
    slope: float = 10.0,
    sd_intercept: float = 25.0,
    sd_slope: float = 6.0,
    corr_re: float = 0.1,
    sd_residual: float = 25.0,
    seed: Optional[int] = None
) -> pd.DataFrame:
    """
    Simulate a repeated-measures panel with random intercepts and slopes.

    The layout follows the classic sleep-deprivation study: one reaction
    time per subject per day, with subject-specific baselines and
    subject-specific daily increases.

    Parameters
    ----------
    n_subjects : int
        Number of subjects
    n_times : int
        Number of measurement occasions per subject (days 0..n_times-1)
    intercept, slope : float
        Fixed intercept and slope
    sd_intercept, sd_slope : float
        Standard deviations of the random intercept and slope
    corr_re : float
        Correlation between random intercept and slope
    sd_residual : float
        Residual standard deviation
    seed : int, optional
        Random seed

    Returns
    -------
    pd.DataFrame
        Columns: subject, days, reaction
    """
    rng = np.random.default_rng(seed)

    cov = np.array([
        [sd_intercept ** 2, corr_re * sd_intercept * sd_slope],
        [corr_re * sd_intercept * sd_slope, sd_slope ** 2]
    ])
    re = rng.multivariate_normal([0.0, 0.0], cov, size=n_subjects)

    subjects = np.repeat(np.arange(1, n_subjects + 1), n_times)
    days = np.tile(np.arange(n_times), n_subjects)
    b0 = re[subjects - 1, 0]
    b1 = re[subjects - 1, 1]

    reaction = (
        intercept + b0 + (slope + b1) * days
        + rng.normal(0.0, sd_residual, size=len(days))
    )

    return pd.DataFrame({
        "subject": [f"S{s:02d}" for s in subjects],
        "days": days,
        "reaction": reaction
    })


def simulate_moderation_data(
    n_subjects: int = 80,
    n_trials: int = 4,
    condition_effect: float = 1.0,
    group_effect: float = 0.5,
    age_effect: float = 0.05,
    two_way_effect: float = 1.5,
    three_way_effect: float = 0.08,
    sd_subject: float = 1.0,
    sd_residual: float = 1.0,
    seed: Optional[int] = None
) -> pd.DataFrame:
    """
    Simulate a mixed design for moderation analysis.

    Each subject belongs to one group (control/treatment, between-subject)
    and is measured `n_trials` times under each condition (A/B,
    within-subject). Age is a continuous subject-level moderator.

    The outcome is generated as::

        score = 10 + condition_effect * B + group_effect * T + age_effect * age_c
                + two_way_effect * B * T + three_way_effect * B * T * age_c
                + u_subject + e

    where B and T are 0/1 indicators and age_c is centred age.

    Returns
    -------
    pd.DataFrame
        Columns: subject, group, condition, age, trial, score
    """
    rng = np.random.default_rng(seed)

    group = np.where(np.arange(n_subjects) % 2 == 0, "control", "treatment")
    age = rng.uniform(20, 60, size=n_subjects).round(1)
    u = rng.normal(0.0, sd_subject, size=n_subjects)

    rows = []
    for i in range(n_subjects):
        for condition in ("A", "B"):
            for trial in range(1, n_trials + 1):
                rows.append((f"P{i + 1:03d}", group[i], condition, age[i], trial, u[i]))

    df = pd.DataFrame(rows, columns=["subject", "group", "condition", "age", "trial", "_u"])

    b = (df["condition"] == "B").astype(float)
    t = (df["group"] == "treatment").astype(float)
    age_c = df["age"] - age.mean()

    df["score"] = (
        10.0
        + condition_effect * b
        + group_effect * t
        + age_effect * age_c
        + two_way_effect * b * t
        + three_way_effect * b * t * age_c
        + df["_u"]
        + rng.normal(0.0, sd_residual, size=len(df))
    )

    df["group"] = pd.Categorical(df["group"], categories=["control", "treatment"])
    df["condition"] = pd.Categorical(df["condition"], categories=["A", "B"])

    return df.drop(columns="_u")


def simulate_did_data(
    n_subjects: int = 200,
    effect: float = 2.0,
    time_effect: float = 1.0,
    group_effect: float = 0.5,
    sd_subject: float = 1.5,
    sd_residual: float = 1.0,
    missing_rate: float = 0.2,
    seed: Optional[int] = None
) -> pd.DataFrame:
    """
    Simulate a two-period treatment/control study in wide format.

    Baseline outcomes are always observed. Follow-up outcomes are missing
    at random with probability depending on age and group, averaging
    roughly `missing_rate`.

    Parameters
    ----------
    n_subjects : int
        Number of subjects (half treatment, half control)
    effect : float
        True difference-in-differences (treatment effect at follow-up)
    time_effect : float
        Change from pre to post in the control group
    group_effect : float
        Baseline difference between groups
    sd_subject : float
        Standard deviation of the subject random intercept
    sd_residual : float
        Residual standard deviation
    missing_rate : float
        Target proportion of missing follow-up outcomes
    seed : int, optional
        Random seed

    Returns
    -------
    pd.DataFrame
        Columns: id, group, sex, age, race, y_pre, y_post
    """
    if not 0 <= missing_rate < 1:
        raise ValueError("missing_rate must be in [0, 1)")

    rng = np.random.default_rng(seed)

    treated = rng.permutation(np.arange(n_subjects) < n_subjects // 2)
    sex = rng.choice(["F", "M"], size=n_subjects)
    age = rng.normal(45, 12, size=n_subjects).clip(18, 85).round()
    race = rng.choice(["White", "Black", "Other"], size=n_subjects, p=[0.6, 0.25, 0.15])

    race_shift = pd.Series(race).map({"White": 0.0, "Black": -0.4, "Other": 0.3}).to_numpy()
    u = rng.normal(0.0, sd_subject, size=n_subjects)

    baseline = 10.0 + 0.3 * (sex == "M") + 0.03 * (age - 45) + race_shift + u
    y_pre = baseline + group_effect * treated + rng.normal(0.0, sd_residual, n_subjects)
    y_post = (
        baseline + group_effect * treated + time_effect + effect * treated
        + rng.normal(0.0, sd_residual, n_subjects)
    )

    if missing_rate > 0:
        # logistic MAR mechanism: older and control subjects drop out more often
        lin = 0.04 * (age - 45) - 0.3 * treated
        logit0 = np.log(missing_rate / (1 - missing_rate))
        p_miss = 1 / (1 + np.exp(-(logit0 + lin)))
        y_post = np.where(rng.uniform(size=n_subjects) < p_miss, np.nan, y_post)

    return pd.DataFrame({
        "id": np.arange(1, n_subjects + 1),
        "group": pd.Categorical(np.where(treated, "treatment", "control"),
                                categories=["control", "treatment"]),
        "sex": sex,
        "age": age,
        "race": race,
        "y_pre": y_pre,
        "y_post": y_post
    })
