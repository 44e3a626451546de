"""
Linear mixed model basics

Fits a random-intercept model to a simulated sleep-deprivation style panel,
adds a random slope for days, compares the two models and plots the fixed
effects.
"""

from mmanalysis import (
    MixedModelAnalysis,
    simulate_repeated_measures,
    plot_trajectories,
)


def main():
    df = simulate_repeated_measures(n_subjects=18, n_times=10, seed=2024)
    print(df.head())

    plot_trajectories(df, id_col="subject", time_col="days", outcome_col="reaction",
                      title="Reaction Time by Day", save_path="trajectories.png")

    mm = MixedModelAnalysis(df, "reaction ~ days", "subject", extended_re_formula="~days")
    results = mm.run()

    print(mm.summary())
    print(results.comparison.table())

    mm.plot(save_path="fixed_effects.png")


if __name__ == "__main__":
    main()
