import warnings

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pytest

from mmanalysis import (
    simulate_repeated_measures,
    simulate_moderation_data,
    simulate_did_data,
    wide_to_long,
    make_imputation_spec,
    impute,
    fit_imputed,
    pool,
)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


@pytest.fixture(scope="session")
def repeated_data():
    return simulate_repeated_measures(seed=42)


@pytest.fixture(scope="session")
def moderation_data():
    return simulate_moderation_data(seed=42)


@pytest.fixture(scope="session")
def did_wide():
    return simulate_did_data(n_subjects=200, seed=42)


@pytest.fixture(scope="session")
def did_long(did_wide):
    return wide_to_long(did_wide, keep=["group", "sex", "age", "race"])


@pytest.fixture(scope="session")
def did_spec(did_long):
    return make_imputation_spec(
        did_long,
        exclude=["id"],
        predictors={"y": ["group", "time", "group:time", "sex", "age", "race"]},
        maxit=5
    )


@pytest.fixture(scope="session")
def did_imputed(did_long, did_spec):
    return impute(did_long, did_spec, m=5, seed=1)


@pytest.fixture(scope="session")
def did_pooled(did_imputed):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        fits = fit_imputed(did_imputed, "y ~ group * time + sex + age + race", "id")
    return pool(fits)
