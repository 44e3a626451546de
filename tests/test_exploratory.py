import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import pytest

from mmanalysis.exploratory import (
    missing_pattern,
    plot_missingness,
    plot_outcome_distribution,
    plot_trajectories,
    data_summary,
    run_exploratory_analysis,
)


@pytest.fixture
def patterned():
    return pd.DataFrame({
        "a": [1.0, np.nan, 3.0, 4.0],
        "b": [1.0, 2.0, np.nan, np.nan],
    })


class TestMissingPattern:

    def test_counts(self, patterned):
        table = missing_pattern(patterned)
        assert list(table.columns) == ["a", "b", "count", "n_missing"]
        assert list(table.index) == ["0", "1", "2", "total"]

        complete = table.loc["0"]
        assert (complete["a"], complete["b"], complete["count"], complete["n_missing"]) == (1, 1, 1, 0)
        assert table.loc["1", "count"] == 2
        assert table.drop(index="total")["count"].sum() == len(patterned)

    def test_totals(self, patterned):
        total = missing_pattern(patterned).loc["total"]
        assert total["a"] == 1
        assert total["b"] == 2
        assert total["count"] == 4
        assert total["n_missing"] == 3

    def test_columns_subset(self, did_wide):
        table = missing_pattern(did_wide, columns=["y_pre", "y_post"])
        assert table.loc["total", "y_pre"] == 0
        assert table.loc["total", "y_post"] == did_wide["y_post"].isna().sum()


class TestPlots:

    def test_missingness(self, did_wide, tmp_path):
        path = tmp_path / "missing.png"
        fig = plot_missingness(did_wide, save_path=str(path))
        assert isinstance(fig, plt.Figure)
        assert path.exists()

    def test_outcome_distribution(self, did_long):
        fig = plot_outcome_distribution(did_long, outcome_col="y", group_col="group")
        assert len(fig.axes) == 2

    def test_trajectories(self, did_long):
        fig = plot_trajectories(did_long, group_col="group", max_subjects=20, seed=0)
        labels = [t.get_text() for t in fig.axes[0].get_legend().get_texts()]
        assert labels == ["control mean", "treatment mean"] or labels == ["treatment mean", "control mean"]

    def test_missing_column_raises(self, did_long):
        with pytest.raises(ValueError, match="not found"):
            plot_outcome_distribution(did_long, outcome_col="score")


class TestSummary:

    def test_data_summary(self, did_wide):
        summary = data_summary(
            did_wide, outcome_cols=["y_pre", "y_post"], group_col="group",
            covariate_cols=["sex", "age"]
        )
        assert list(summary.columns) == ["Metric", "Value", "Note"]
        values = dict(zip(summary["Metric"], summary["Value"]))
        assert values["  Subjects"] == 200
        assert values["  control"] + values["  treatment"] == 200
        assert "  sex" in values

    def test_run_exploratory_analysis(self, did_wide, tmp_path):
        results = run_exploratory_analysis(
            did_wide, outcome_cols=["y_pre", "y_post"], group_col="group",
            save_dir=str(tmp_path), show_plots=False
        )
        assert {"summary", "missing_pattern", "fig_missing", "fig_y_pre", "fig_y_post"} <= set(results)
        assert (tmp_path / "eda_missingness.png").exists()
        assert (tmp_path / "eda_y_post_distribution.png").exists()
