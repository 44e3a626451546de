import numpy as np
import pandas as pd
import pytest

from mmanalysis.models import fit_mixed_model
from mmanalysis.contrasts import (
    design_variables,
    reference_grid,
    emmeans,
    simple_slopes,
    pairwise_contrasts,
    interaction_contrasts,
    linear_contrast,
    moderator_levels,
)


@pytest.fixture(scope="module")
def centered(moderation_data):
    return moderation_data.assign(age_c=moderation_data["age"] - moderation_data["age"].mean())


@pytest.fixture(scope="module")
def condition_fit(moderation_data):
    return fit_mixed_model(moderation_data, "score ~ condition", "subject")


@pytest.fixture(scope="module")
def two_way_fit(moderation_data):
    return fit_mixed_model(moderation_data, "score ~ condition * group", "subject")


@pytest.fixture(scope="module")
def slope_fit(centered):
    return fit_mixed_model(centered, "score ~ age_c * group + condition", "subject")


class TestReferenceGrid:

    def test_design_variables(self, slope_fit):
        assert set(design_variables(slope_fit)) == {"age_c", "group", "condition"}

    def test_grid_crosses_factors_and_averages_numeric(self, slope_fit):
        grid = reference_grid(slope_fit, ["group"])
        assert len(grid) == 4
        assert list(grid.columns)[0] == "group"
        assert grid["age_c"].nunique() == 1
        assert grid["age_c"].iloc[0] == pytest.approx(slope_fit.data["age_c"].mean())

    def test_at_values(self, slope_fit):
        grid = reference_grid(slope_fit, ["group"], at={"age_c": [-10, 10]})
        assert len(grid) == 8
        assert sorted(grid["age_c"].unique()) == [-10.0, 10.0]

    def test_unknown_variable_raises(self, slope_fit):
        with pytest.raises(ValueError, match="Not predictors"):
            reference_grid(slope_fit, ["sex"])

    def test_unknown_level_raises(self, slope_fit):
        with pytest.raises(ValueError, match="not found"):
            reference_grid(slope_fit, ["group"], at={"group": ["placebo"]})


class TestEmmeans:

    def test_balanced_design_matches_cell_means(self, moderation_data, condition_fit):
        emm = emmeans(condition_fit, "condition")
        observed = moderation_data.groupby("condition", observed=True)["score"].mean()
        table = emm.table.set_index("condition")
        for level in ("A", "B"):
            assert table.loc[level, "emmean"] == pytest.approx(observed[level], rel=1e-6)

    def test_table_columns(self, two_way_fit):
        emm = emmeans(two_way_fit, ["condition", "group"])
        assert list(emm.table.columns) == [
            "condition", "group", "emmean", "std_error", "df", "ci_lower", "ci_upper"
        ]
        assert len(emm.table) == 4
        assert emm.L.shape == (4, len(two_way_fit.fe_names))
        assert (emm.table["ci_lower"] < emm.table["ci_upper"]).all()

    def test_marginal_over_other_factor(self, two_way_fit):
        cells = emmeans(two_way_fit, ["condition", "group"]).table
        marginal = emmeans(two_way_fit, "condition").table.set_index("condition")
        expected = cells.groupby("condition", observed=True)["emmean"].mean()
        for level in ("A", "B"):
            assert marginal.loc[level, "emmean"] == pytest.approx(expected[level])

    def test_empty_specs_raise(self, two_way_fit):
        with pytest.raises(ValueError, match="at least one"):
            emmeans(two_way_fit, [])


class TestPairwise:

    def test_difference_of_means(self, two_way_fit):
        emm = emmeans(two_way_fit, ["condition", "group"])
        result = pairwise_contrasts(emm, by="group")
        assert list(result.columns) == [
            "group", "contrast", "estimate", "std_error", "df", "statistic",
            "p_value", "p_adjusted", "ci_lower", "ci_upper"
        ]
        assert len(result) == 2
        assert set(result["contrast"]) == {"A - B"}

        t = emm.table
        ctrl = t[t["group"] == "control"].set_index("condition")["emmean"]
        row = result[result["group"] == "control"].iloc[0]
        assert row["estimate"] == pytest.approx(ctrl["A"] - ctrl["B"])

    def test_reverse_flips_sign(self, two_way_fit):
        emm = emmeans(two_way_fit, "condition")
        forward = pairwise_contrasts(emm)
        backward = pairwise_contrasts(emm, reverse=True)
        assert backward["contrast"].iloc[0] == "B - A"
        assert backward["estimate"].iloc[0] == pytest.approx(-forward["estimate"].iloc[0])
        assert backward["p_value"].iloc[0] == pytest.approx(forward["p_value"].iloc[0])

    def test_adjustment(self, two_way_fit):
        emm = emmeans(two_way_fit, ["condition", "group"])
        holm = pairwise_contrasts(emm, adjust="holm")
        none = pairwise_contrasts(emm, adjust="none")
        assert len(holm) == 6
        assert (holm["p_adjusted"] >= holm["p_value"] - 1e-12).all()
        np.testing.assert_allclose(none["p_adjusted"], none["p_value"])

    def test_bad_by_raises(self, two_way_fit):
        emm = emmeans(two_way_fit, "condition")
        with pytest.raises(ValueError, match="'by' variables"):
            pairwise_contrasts(emm, by="group")


class TestInteractionContrasts:

    def test_equals_interaction_coefficient(self, two_way_fit):
        emm = emmeans(two_way_fit, ["condition", "group"])
        result = interaction_contrasts(emm)
        assert len(result) == 1
        assert result["contrast"].iloc[0] == "B - A : treatment - control"

        coef = two_way_fit.fixed_effects().set_index("term")
        expected = coef.loc["condition[T.B]:group[T.treatment]"]
        assert result["estimate"].iloc[0] == pytest.approx(expected["estimate"])
        assert result["std_error"].iloc[0] == pytest.approx(expected["std_error"])

    def test_needs_two_variables(self, two_way_fit):
        emm = emmeans(two_way_fit, "condition")
        with pytest.raises(ValueError, match="at least two"):
            interaction_contrasts(emm)


class TestSimpleSlopes:

    def test_slopes_match_coefficients(self, slope_fit):
        slopes = simple_slopes(slope_fit, "age_c", specs="group")
        assert slopes.estimate_name == "age_c.trend"
        table = slopes.table.set_index("group")

        beta = dict(zip(slope_fit.fe_names, slope_fit.fe_params))
        assert table.loc["control", "age_c.trend"] == pytest.approx(beta["age_c"], rel=1e-4)
        assert table.loc["treatment", "age_c.trend"] == pytest.approx(
            beta["age_c"] + beta["age_c:group[T.treatment]"], rel=1e-4
        )

    def test_slope_differences(self, slope_fit):
        slopes = simple_slopes(slope_fit, "age_c", specs="group")
        diff = pairwise_contrasts(slopes, reverse=True)
        beta = dict(zip(slope_fit.fe_names, slope_fit.fe_params))
        assert diff["estimate"].iloc[0] == pytest.approx(beta["age_c:group[T.treatment]"], rel=1e-4)

    def test_categorical_variable_raises(self, slope_fit):
        with pytest.raises(ValueError, match="numeric"):
            simple_slopes(slope_fit, "group")


class TestOtherContrasts:

    def test_linear_contrast(self, two_way_fit):
        emm = emmeans(two_way_fit, "condition")
        result = linear_contrast(emm, [-1, 1], label="B vs A")
        expected = emm.table["emmean"].iloc[1] - emm.table["emmean"].iloc[0]
        assert result["contrast"].iloc[0] == "B vs A"
        assert result["estimate"].iloc[0] == pytest.approx(expected)

        with pytest.raises(ValueError, match="weights"):
            linear_contrast(emm, [1, 0, -1])

    def test_moderator_levels(self, centered):
        low, mid, high = moderator_levels(centered, "age", n_sd=1.0)
        assert mid == pytest.approx(centered["age"].mean())
        assert high - mid == pytest.approx(centered["age"].std())
        assert mid - low == pytest.approx(centered["age"].std())
        assert moderator_levels(centered, "group") == ["control", "treatment"]
