import numpy as np
import pandas as pd
import pytest

from movie_bias.data import (
    SECONDS_PER_WEEK,
    drop_unseen_entities,
    partition_ratings,
    prepare_ratings,
    summarize_ratings,
    validate_ratings,
    week_floor,
)
from movie_bias.errors import EmptyPartitionError, InvalidConfigurationError, MovieBiasError, SchemaError


def test_missing_column_raises_schema_error(synthetic_raw):
    with pytest.raises(SchemaError, match="genres"):
        validate_ratings(synthetic_raw.drop(columns=["genres"]))


def test_schema_error_is_a_value_error():
    assert issubclass(SchemaError, MovieBiasError)
    assert issubclass(SchemaError, ValueError)


@pytest.mark.parametrize(
    "column, values",
    [
        ("userId", ["u1", "u2"]),
        ("movieId", [1.5, 2.0]),
        ("timestamp", [None, 10]),
        ("rating", ["4", "3"]),
        ("rating", [5.5, 3.0]),
        ("rating", [3.3, 3.0]),
        ("rating", [0.0, 3.0]),
        ("genres", [1, 2]),
    ],
)
def test_wrong_semantic_type_raises_schema_error(column, values):
    df = pd.DataFrame(
        {
            "userId": [1, 2],
            "movieId": [10, 11],
            "rating": [4.0, 3.5],
            "timestamp": [100, 200],
            "genres": ["Drama", "Comedy"],
        }
    )
    df[column] = values
    with pytest.raises(SchemaError):
        validate_ratings(df)


def test_integer_valued_float_ids_are_accepted(synthetic_raw):
    df = synthetic_raw.copy()
    df["userId"] = df["userId"].astype(float)
    out = prepare_ratings(df)
    assert out["userId"].dtype == np.int64


def test_prepare_adds_week_floor(synthetic_ratings):
    ts = synthetic_ratings["timestamp"].to_numpy()
    week = synthetic_ratings["week"].to_numpy()
    assert np.all(week % SECONDS_PER_WEEK == 0)
    assert np.all(week <= ts)
    assert np.all(ts < week + SECONDS_PER_WEEK)


def test_week_floor_rounds_down():
    np.testing.assert_array_equal(
        week_floor([0, SECONDS_PER_WEEK - 1, SECONDS_PER_WEEK, 2 * SECONDS_PER_WEEK + 5]),
        [0, 0, SECONDS_PER_WEEK, 2 * SECONDS_PER_WEEK],
    )


def test_partition_is_deterministic_for_a_seed(synthetic_ratings):
    a_train, a_test = partition_ratings(synthetic_ratings, 0.1, seed=3)
    b_train, b_test = partition_ratings(synthetic_ratings, 0.1, seed=3)
    pd.testing.assert_frame_equal(a_train, b_train)
    pd.testing.assert_frame_equal(a_test, b_test)


def test_partition_is_disjoint_and_leakage_free(synthetic_ratings):
    train, test = partition_ratings(synthetic_ratings, 0.2, seed=11)
    assert set(train.index).isdisjoint(set(test.index))
    assert len(train) + len(test) <= len(synthetic_ratings)
    assert set(test["movieId"]).issubset(set(train["movieId"]))
    assert set(test["userId"]).issubset(set(train["userId"]))


def test_partition_keeps_every_rating_level_in_held_out_side(synthetic_ratings):
    train, test = partition_ratings(synthetic_ratings, 0.2, seed=11)
    levels = set(synthetic_ratings["rating"].unique())
    assert set(test["rating"].unique()) == levels
    share = test["rating"].value_counts(normalize=True)
    full = synthetic_ratings["rating"].value_counts(normalize=True)
    assert (share - full).abs().max() < 0.05


def test_leakage_filter_emptying_held_out_side_raises():
    # Every user rates once, so each held-out row references a user missing from training.
    df = prepare_ratings(
        pd.DataFrame(
            {
                "userId": list(range(1, 41)),
                "movieId": [1, 2] * 20,
                "rating": [4.0, 3.0] * 20,
                "timestamp": list(range(40)),
                "genres": ["Drama", "Comedy"] * 20,
            }
        )
    )
    with pytest.raises(EmptyPartitionError, match="Leakage"):
        partition_ratings(df, 0.2, seed=1)


def test_restore_dropped_keeps_all_rows(synthetic_ratings):
    rng = np.random.default_rng(0)
    extra = synthetic_ratings.sample(30, random_state=1).copy()
    extra["userId"] = 10_000 + np.arange(30)
    extra["rating"] = rng.choice([3.0, 4.0], size=30)
    df = pd.concat([synthetic_ratings, extra], ignore_index=True)

    train, test = partition_ratings(df, 0.2, seed=5, restore_dropped=True)
    assert len(train) + len(test) == len(df)
    assert set(test["userId"]).issubset(set(train["userId"]))
    plain_train, plain_test = partition_ratings(df, 0.2, seed=5)
    assert len(plain_train) < len(train)
    pd.testing.assert_frame_equal(plain_test, test)


@pytest.mark.parametrize("fraction", [0.0, 1.0, -0.1, 1.5, float("nan")])
def test_invalid_holdout_fraction(synthetic_ratings, fraction):
    with pytest.raises(InvalidConfigurationError):
        partition_ratings(synthetic_ratings, fraction, seed=1)


def test_too_small_strata_raise_empty_partition(toy_ratings):
    with pytest.raises(EmptyPartitionError):
        partition_ratings(toy_ratings, 0.1, seed=1)


def test_drop_unseen_entities_accepts_known_value_mapping(toy_ratings):
    kept, dropped = drop_unseen_entities(toy_ratings, {"movieId": [1], "userId": [1, 2, 3]})
    assert kept["movieId"].unique().tolist() == [1]
    assert len(dropped) == 3


def test_summarize_ratings(toy_ratings):
    s = summarize_ratings(toy_ratings)
    assert s["n_ratings"] == 6
    assert s["n_users"] == 3
    assert s["n_movies"] == 2
    assert s["n_genre_combinations"] == 2
    assert s["mean_rating"] == pytest.approx(21.5 / 6.0)
    assert s["rating_distribution"][4.0] == 2


def test_partition_rejects_table_without_rating_column(synthetic_ratings):
    with pytest.raises(SchemaError, match="rating"):
        partition_ratings(synthetic_ratings.drop(columns=["rating"]), 0.1, seed=1)


def test_rare_level_left_out_of_held_out_side_raises():
    # 10 held-out rows over counts [2, 99, 99] allocate none to the 0.5 level.
    df = prepare_ratings(
        pd.DataFrame(
            {
                "userId": list(range(1, 201)),
                "movieId": [i % 10 for i in range(200)],
                "rating": [0.5, 0.5] + [3.0, 4.0] * 99,
                "timestamp": list(range(200)),
                "genres": ["Drama"] * 200,
            }
        )
    )
    with pytest.raises(EmptyPartitionError, match="no rows for rating levels"):
        partition_ratings(df, 0.05, seed=1)
