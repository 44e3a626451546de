import numpy as np
import pandas as pd
import pytest

from mmanalysis.simulation import (
    simulate_repeated_measures,
    simulate_moderation_data,
    simulate_did_data,
)


class TestRepeatedMeasures:

    def test_layout(self):
        df = simulate_repeated_measures(n_subjects=5, n_times=4, seed=0)
        assert list(df.columns) == ["subject", "days", "reaction"]
        assert len(df) == 20
        assert df["subject"].nunique() == 5
        assert sorted(df["days"].unique()) == [0, 1, 2, 3]

    def test_seed_reproducible(self):
        a = simulate_repeated_measures(seed=3)
        b = simulate_repeated_measures(seed=3)
        pd.testing.assert_frame_equal(a, b)


class TestModerationData:

    def test_layout(self):
        df = simulate_moderation_data(n_subjects=10, n_trials=3, seed=0)
        assert list(df.columns) == ["subject", "group", "condition", "age", "trial", "score"]
        assert len(df) == 10 * 2 * 3
        assert list(df["group"].cat.categories) == ["control", "treatment"]
        assert list(df["condition"].cat.categories) == ["A", "B"]

    def test_group_constant_within_subject(self):
        df = simulate_moderation_data(seed=0)
        assert (df.groupby("subject")["group"].nunique() == 1).all()
        assert (df.groupby("subject")["age"].nunique() == 1).all()


class TestDIDData:

    def test_layout(self):
        df = simulate_did_data(n_subjects=50, seed=0)
        assert list(df.columns) == ["id", "group", "sex", "age", "race", "y_pre", "y_post"]
        assert len(df) == 50
        assert df["id"].is_unique
        assert (df["group"] == "treatment").sum() == 25

    def test_missing_only_at_followup(self):
        df = simulate_did_data(n_subjects=500, missing_rate=0.3, seed=0)
        assert df["y_pre"].notna().all()
        share = df["y_post"].isna().mean()
        assert 0.15 < share < 0.45

    def test_no_missing(self):
        df = simulate_did_data(missing_rate=0.0, seed=0)
        assert df.notna().all().all()

    def test_invalid_missing_rate(self):
        with pytest.raises(ValueError, match="missing_rate"):
            simulate_did_data(missing_rate=1.0)
