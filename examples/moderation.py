"""
Two- and three-way moderation

Tests whether the condition effect depends on group (two-way) and on group
and age (three-way), then probes the interactions with estimated marginal
means, pairwise contrasts and simple slopes.
"""

from mmanalysis import ModerationAnalysis, simulate_moderation_data


def main():
    df = simulate_moderation_data(n_subjects=80, seed=7)

    # Two-way: condition x group
    two_way = ModerationAnalysis(df, "score", "condition", ["group"], "subject")
    two_way.run()
    print(two_way.summary())
    two_way.plot(save_path="two_way_emmeans.png")

    # Three-way: condition x group x age (age is centered and probed at mean +/- 1 SD)
    three_way = ModerationAnalysis(df, "score", "condition", ["group", "age"], "subject")
    three_way.run(adjust="holm")
    print(three_way.summary())

    # Numeric focal predictor: slope of age within each group
    slopes = ModerationAnalysis(df, "score", "age", ["group"], "subject")
    slopes.run()
    print(slopes.summary())
    slopes.plot(save_path="age_slopes.png")


if __name__ == "__main__":
    main()
