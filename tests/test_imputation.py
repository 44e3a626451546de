import numpy as np
import pandas as pd
import pytest

from mmanalysis.imputation import (
    ImputationSpec,
    make_imputation_spec,
    quickpred,
    impute,
)


@pytest.fixture
def small_data():
    rng = np.random.default_rng(7)
    n = 200
    x = rng.normal(size=n)
    y = 2 * x + rng.normal(scale=0.5, size=n)
    z = rng.normal(size=n)
    y[rng.uniform(size=n) < 0.2] = np.nan
    return pd.DataFrame({
        "id": np.arange(n),
        "x": x,
        "z": z,
        "g": rng.choice(["a", "b"], size=n),
        "y": y,
    })


class TestImputationSpec:

    def test_defaults(self, did_long):
        spec = make_imputation_spec(did_long, exclude=["id"])
        assert spec.method["y"] == "pmm"
        assert spec.method["age"] == ""
        assert spec.targets == ["y"]
        assert "id" not in spec.method
        assert set(spec.predictors["y"]) == {"time", "group", "sex", "age", "race"}

    def test_predictor_overrides(self, did_spec):
        assert "group:time" in did_spec.predictors["y"]
        mat = did_spec.predictor_matrix()
        assert mat.loc["y", "group"] == 1
        assert mat.loc["y", "time"] == 1
        assert mat.loc["y", "y"] == 0
        assert mat.loc["age"].sum() == 0

    def test_unsupported_method(self, did_long):
        with pytest.raises(ValueError, match="Unsupported"):
            make_imputation_spec(did_long, exclude=["id"], method={"y": "norm"})

    def test_categorical_cannot_be_imputed(self, did_long):
        with pytest.raises(ValueError, match="categorical"):
            make_imputation_spec(did_long, exclude=["id"], method={"race": "pmm"})

    def test_missing_categorical_is_logged(self, small_data):
        df = small_data.copy()
        df.loc[:4, "g"] = None
        spec = make_imputation_spec(df, exclude=["id"])
        assert spec.method["g"] == ""
        assert any(e["dep"] == "g" for e in spec.logged_events)

    def test_set_method_and_predictors(self, small_data):
        spec = make_imputation_spec(small_data, exclude=["id"])
        spec.set_method("y", "pmm-boot")
        assert spec.method["y"] == "pmm-boot"
        spec.set_predictors("y", ["x"])
        assert spec.predictors["y"] == ["x"]

        with pytest.raises(ValueError, match="itself"):
            spec.set_predictors("y", ["y", "x"])
        with pytest.raises(ValueError, match="Unsupported"):
            spec.set_method("y", "cart")


class TestQuickpred:

    def test_selects_correlated_predictors(self, small_data):
        preds = quickpred(small_data, mincor=0.3, exclude=["id"])
        assert list(preds) == ["y"]
        assert "x" in preds["y"]
        assert "z" not in preds["y"]

    def test_include(self, small_data):
        preds = quickpred(small_data, mincor=0.3, exclude=["id"], include=["z"])
        assert "z" in preds["y"]


class TestImpute:

    def test_shapes(self, did_imputed, did_long):
        assert did_imputed.m == 5
        assert all(len(d) == len(did_long) for d in did_imputed.datasets)
        assert did_imputed.where["y"].sum() == did_long["y"].isna().sum()

    def test_targets_complete(self, did_imputed):
        for i in range(did_imputed.m):
            assert did_imputed.complete(i)["y"].notna().all()

    def test_observed_values_unchanged(self, did_imputed, did_long):
        observed = did_long["y"].notna()
        for d in did_imputed.datasets:
            np.testing.assert_array_equal(d.loc[observed, "y"], did_long.loc[observed, "y"])
            pd.testing.assert_series_equal(d["age"], did_long["age"])

    def test_pmm_draws_observed_values(self, did_imputed, did_long):
        donors = did_long["y"].dropna().to_numpy()
        values = did_imputed.imputed_values("y").to_numpy().ravel()
        assert np.isin(values, donors).all()

    def test_imputations_differ(self, did_imputed):
        values = did_imputed.imputed_values("y")
        assert values.shape[1] == 5
        assert not np.allclose(values[1], values[2])

    def test_chain_stats(self, did_imputed, did_spec):
        stats = did_imputed.chain_stats
        assert len(stats) == did_imputed.m * did_spec.maxit
        assert set(stats["variable"]) == {"y"}
        assert stats["mean"].notna().all()

    def test_complete_long(self, did_imputed, did_long):
        stacked = did_imputed.complete_long()
        assert len(stacked) == 5 * len(did_long)
        assert sorted(stacked[".imp"].unique()) == [1, 2, 3, 4, 5]

        with_original = did_imputed.complete_long(include_original=True)
        assert sorted(with_original[".imp"].unique()) == [0, 1, 2, 3, 4, 5]
        assert with_original.loc[with_original[".imp"] == 0, "y"].isna().any()

    def test_complete_index_checked(self, did_imputed):
        with pytest.raises(ValueError, match="Imputation index"):
            did_imputed.complete(5)

    def test_not_imputed_variable(self, did_imputed):
        with pytest.raises(ValueError, match="was not imputed"):
            did_imputed.imputed_values("age")

    def test_dropped_predictor_logged(self, small_data):
        df = small_data.copy()
        df.loc[:9, "z"] = np.nan
        spec = make_imputation_spec(df, exclude=["id"], method={"z": ""}, maxit=2)
        with pytest.warns(UserWarning, match="logged events"):
            imputed = impute(df, spec, m=2, seed=3)
        events = imputed.logged_events
        assert ((events["meth"] == "dropped") & (events["out"] == "z")).any()
        assert imputed.complete(0)["y"].notna().all()

    def test_collinear_predictor_logged(self, small_data):
        df = small_data.assign(x2=small_data["x"] * 2.0)
        spec = make_imputation_spec(df, exclude=["id"], maxit=2)
        with pytest.warns(UserWarning):
            imputed = impute(df, spec, m=2, seed=3)
        events = imputed.logged_events
        assert ((events["meth"] == "collinear") & (events["out"] == "x2")).any()

    def test_two_targets_pmm_boot(self, small_data):
        df = small_data.copy()
        rng = np.random.default_rng(11)
        x_missing = small_data["y"].notna().to_numpy() & (rng.uniform(size=len(df)) < 0.15)
        df.loc[x_missing, "x"] = np.nan
        spec = make_imputation_spec(df, exclude=["id"], default_method="pmm-boot", maxit=3)
        assert spec.targets == ["x", "y"]

        imputed = impute(df, spec, m=3, seed=4)

        for d in imputed.datasets:
            assert d["x"].notna().all()
            assert d["y"].notna().all()
            for col in ("x", "y"):
                observed = df[col].notna()
                np.testing.assert_array_equal(d.loc[observed, col], df.loc[observed, col])
        stats = imputed.chain_stats
        assert len(stats) == 3 * 3 * 2
        assert set(stats["variable"]) == {"x", "y"}
        assert (stats.groupby(["imputation", "iteration"]).size() == 2).all()

    def test_restores_global_random_state(self, small_data):
        spec = make_imputation_spec(small_data, exclude=["id"], maxit=2)
        np.random.seed(123)
        expected = np.random.rand(3)
        np.random.seed(123)
        impute(small_data, spec, m=2, seed=9)
        np.testing.assert_array_equal(np.random.rand(3), expected)

    def test_categorical_target_raises(self, small_data):
        spec = ImputationSpec(method={"g": "pmm", "x": ""}, predictors={"g": ["x"]})
        with pytest.raises(ValueError, match="Only numeric"):
            impute(small_data, spec, m=2)

    def test_unknown_predictor_raises(self, small_data):
        spec = make_imputation_spec(small_data, exclude=["id"], predictors={"y": ["id"]})
        with pytest.raises(ValueError, match="not an available column"):
            impute(small_data, spec, m=2)
