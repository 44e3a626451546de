import numpy as np
import pandas as pd
import pytest

from mmanalysis.processing import (
    check_columns,
    formula_variables,
    is_categorical,
    factor_levels,
    wide_to_long,
    long_to_wide,
    check_unique_observations,
    set_reference_levels,
    center_variables,
)


@pytest.fixture
def wide():
    return pd.DataFrame({
        "id": [1, 2, 3],
        "group": ["control", "treatment", "treatment"],
        "age": [30.0, 40.0, 50.0],
        "y_pre": [1.0, 2.0, 3.0],
        "y_post": [1.5, np.nan, 4.0],
    })


class TestWideToLong:

    def test_one_row_per_subject_and_time(self, wide):
        long_df = wide_to_long(wide)
        assert len(long_df) == 6
        assert not long_df.duplicated(subset=["id", "time"]).any()
        check_unique_observations(long_df)

    def test_time_is_ordered_categorical(self, wide):
        long_df = wide_to_long(wide)
        assert isinstance(long_df["time"].dtype, pd.CategoricalDtype)
        assert long_df["time"].cat.ordered
        assert list(long_df["time"].cat.categories) == ["pre", "post"]

    def test_values_follow_time_labels(self, wide):
        long_df = wide_to_long(wide)
        row = long_df[(long_df["id"] == 3) & (long_df["time"] == "post")]
        assert row["y"].iloc[0] == 4.0
        row = long_df[(long_df["id"] == 2) & (long_df["time"] == "post")]
        assert np.isnan(row["y"].iloc[0])

    def test_subject_columns_carried(self, wide):
        long_df = wide_to_long(wide)
        assert list(long_df.columns) == ["id", "time", "group", "age", "y"]

        long_df = wide_to_long(wide, keep=["group"])
        assert list(long_df.columns) == ["id", "time", "group", "y"]

    def test_custom_names(self, wide):
        long_df = wide_to_long(
            wide, outcome_cols={"baseline": "y_pre", "followup": "y_post"},
            time_col="visit", value_col="score"
        )
        assert list(long_df["visit"].cat.categories) == ["baseline", "followup"]
        assert "score" in long_df.columns

    def test_duplicate_ids_raise(self, wide):
        dup = pd.concat([wide, wide.iloc[[0]]], ignore_index=True)
        with pytest.raises(ValueError, match="one row per subject"):
            wide_to_long(dup)

    def test_missing_outcome_column_raises(self, wide):
        with pytest.raises(ValueError, match="not found"):
            wide_to_long(wide, outcome_cols={"pre": "y_pre", "post": "y_later"})


class TestLongToWide:

    def test_restores_wide_layout(self, wide):
        back = long_to_wide(wide_to_long(wide)).sort_values("id").reset_index(drop=True)
        np.testing.assert_allclose(back["y_pre"], wide["y_pre"])
        np.testing.assert_allclose(back["y_post"], wide["y_post"])
        assert list(back["group"]) == list(wide["group"])

    def test_duplicated_pairs_raise(self, wide):
        long_df = wide_to_long(wide)
        with pytest.raises(ValueError, match="duplicated"):
            long_to_wide(pd.concat([long_df, long_df.iloc[[0]]]))


class TestHelpers:

    def test_check_columns(self, wide):
        check_columns(wide, ["id", "age"])
        with pytest.raises(ValueError, match="weight"):
            check_columns(wide, ["id", "weight"])

    def test_formula_variables(self):
        columns = ["y", "group", "time", "age", "unused"]
        found = formula_variables("y ~ C(group) * time + np.log(age)", columns)
        assert found == ["y", "group", "time", "age"]

    def test_is_categorical(self, wide):
        assert is_categorical(wide["group"])
        assert not is_categorical(wide["age"])
        assert is_categorical(pd.Series(pd.Categorical(["a", "b"])))

    def test_factor_levels(self):
        assert factor_levels(pd.Series(["b", "a", "b"])) == ["a", "b"]
        s = pd.Series(pd.Categorical(["a", "b"], categories=["b", "a"]))
        assert factor_levels(s) == ["b", "a"]

    def test_set_reference_levels(self, wide):
        out = set_reference_levels(wide, {"group": ["treatment", "control"]})
        assert list(out["group"].cat.categories) == ["treatment", "control"]
        assert not isinstance(wide["group"].dtype, pd.CategoricalDtype)

        with pytest.raises(ValueError, match="not in levels"):
            set_reference_levels(wide, {"group": ["control"]})

    def test_center_variables(self, wide):
        out = center_variables(wide, ["age"])
        assert out["age_c"].mean() == pytest.approx(0.0)
        assert list(out["age_c"]) == [-10.0, 0.0, 10.0]

        scaled = center_variables(wide, ["age"], scale=True, suffix="_z")
        assert scaled["age_z"].std() == pytest.approx(1.0)

        with pytest.raises(ValueError, match="non-numeric"):
            center_variables(wide, ["group"])
