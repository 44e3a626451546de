import numpy as np
import pandas as pd
import pytest

from mmanalysis.models import fit_mixed_model, interaction_terms
from mmanalysis.contrasts import emmeans, interaction_contrasts
from mmanalysis.pooling import (
    ImputedFits,
    barnard_rubin_df,
    pool,
    pool_scalar,
    pooled_wald_test,
)


@pytest.fixture(scope="module")
def complete_fit(repeated_data):
    return fit_mixed_model(repeated_data, "reaction ~ days", "subject")


class TestBarnardRubin:

    def test_large_sample_formula(self):
        df = barnard_rubin_df(5, np.array([1.0]), np.array([2.0]), np.inf)
        lam = (1 + 1 / 5) * 1.0 / 2.0
        assert df[0] == pytest.approx(4 / lam ** 2)

    def test_small_sample_below_complete_df(self):
        df = barnard_rubin_df(5, np.array([0.5]), np.array([2.0]), 50.0)
        assert 0 < df[0] < 50

    def test_zero_between_variance(self):
        df = barnard_rubin_df(5, np.array([0.0]), np.array([1.0]), 100.0)
        expected = (100 + 1) / (100 + 3) * 100 * (1 - 1e-4)
        assert df[0] == pytest.approx(expected, rel=1e-3)


class TestPoolScalar:

    def test_known_values(self):
        result = pool_scalar([1.0, 2.0, 3.0], [1.0, 1.0, 1.0])
        assert result["qbar"] == pytest.approx(2.0)
        assert result["ubar"] == pytest.approx(1.0)
        assert result["b"] == pytest.approx(1.0)
        assert result["t"] == pytest.approx(1.0 + 4.0 / 3.0)
        assert result["riv"] == pytest.approx(4.0 / 3.0)
        assert result["lambda"] == pytest.approx(4.0 / 7.0)
        assert result["df"] == pytest.approx(2.0 / (4.0 / 7.0) ** 2)
        assert result["std_error"] == pytest.approx(np.sqrt(7.0 / 3.0))

    def test_validation(self):
        with pytest.raises(ValueError, match="at least 2"):
            pool_scalar([1.0], [1.0])
        with pytest.raises(ValueError, match="equal length"):
            pool_scalar([1.0, 2.0], [1.0])


class TestPool:

    def test_identical_fits(self, complete_fit):
        pooled = pool([complete_fit, complete_fit])
        table = pooled.table.set_index("term")
        single = complete_fit.fixed_effects().set_index("term")

        np.testing.assert_allclose(table["b"], 0.0, atol=1e-12)
        np.testing.assert_allclose(table["estimate"], single["estimate"])
        np.testing.assert_allclose(table["std_error"], single["std_error"])

        dfcom = complete_fit.n_obs - len(complete_fit.fe_names)
        dfobs = (dfcom + 1) / (dfcom + 3) * dfcom
        assert pooled.dfcom == dfcom
        for df in table["df"]:
            assert df == pytest.approx(dfobs, rel=1e-3)

    def test_table_columns(self, did_pooled):
        assert list(did_pooled.table.columns) == [
            "term", "m", "estimate", "ubar", "b", "t", "dfcom", "df", "riv",
            "lambda", "fmi", "std_error", "statistic", "p_value", "ci_lower", "ci_upper"
        ]
        assert did_pooled.m == 5

    def test_variance_decomposition(self, did_pooled):
        t = did_pooled.table
        np.testing.assert_allclose(t["t"], t["ubar"] + (1 + 1 / 5) * t["b"])
        assert (t["b"] > 0).all()
        assert ((t["fmi"] > 0) & (t["fmi"] < 1)).all()
        assert (t["df"] <= t["dfcom"]).all()

    def test_cov_params(self, did_pooled):
        cov = did_pooled.cov_params()
        assert list(cov.index) == did_pooled.fe_names
        np.testing.assert_allclose(np.sqrt(np.diag(cov)), did_pooled.table["std_error"])

    def test_recovers_did_effect(self, did_pooled):
        term = interaction_terms(did_pooled.fe_names, ["group", "time"])
        assert term == ["group[T.treatment]:time[T.post]"]
        est = did_pooled.table.set_index("term").loc[term[0], "estimate"]
        assert abs(est - 2.0) < 1.0

    def test_interaction_contrast_equals_coefficient(self, did_pooled):
        emm = emmeans(did_pooled, ["group", "time"])
        did = interaction_contrasts(emm)
        row = did_pooled.table.set_index("term").loc["group[T.treatment]:time[T.post]"]
        assert did["contrast"].iloc[0] == "treatment - control : post - pre"
        assert did["estimate"].iloc[0] == pytest.approx(row["estimate"], abs=1e-8)
        assert did["std_error"].iloc[0] == pytest.approx(row["std_error"], rel=1e-6)
        assert did["df"].iloc[0] == pytest.approx(row["df"], rel=1e-6)

    def test_random_effects_averaged(self, did_pooled):
        re_table = did_pooled.random_effects()
        assert re_table["group"].iloc[-1] == "Residual"
        assert (re_table["variance"] > 0).all()

    def test_single_fit_raises(self, complete_fit):
        with pytest.raises(ValueError, match="at least 2"):
            pool([complete_fit])

    def test_mismatched_fits_raise(self, repeated_data, complete_fit):
        other = fit_mixed_model(repeated_data, "reaction ~ 1", "subject")
        with pytest.raises(ValueError, match="same fixed effects"):
            pool(ImputedFits(fits=[complete_fit, other]))

    def test_summary(self, did_pooled):
        text = did_pooled.summary()
        assert "Rubin" in text
        assert "Imputations: 5" in text


class TestPooledWald:

    def test_single_term_matches_squared_t(self, did_pooled):
        term = "group[T.treatment]:time[T.post]"
        result = pooled_wald_test(did_pooled, [term])
        row = did_pooled.table.set_index("term").loc[term]
        assert result.df == 1
        assert np.isfinite(result.df_denom)
        # D1 with one term: q^2 / t, where t = ubar * (1 + r)
        assert result.statistic == pytest.approx(row["estimate"] ** 2 / row["t"], rel=1e-6)
        assert result.p_value < 0.001

    def test_joint_test(self, did_pooled):
        terms = [n for n in did_pooled.fe_names if n.startswith("race")]
        result = pooled_wald_test(did_pooled, terms)
        assert result.df == len(terms) == 2
        assert 0 <= result.p_value <= 1

    def test_unknown_term_raises(self, did_pooled):
        with pytest.raises(ValueError, match="Unknown"):
            pooled_wald_test(did_pooled, ["group[T.placebo]"])
