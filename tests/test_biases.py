import numpy as np
import pandas as pd
import pytest

from movie_bias.biases import (
    fit_bias_model,
    fit_bias_table,
    load_model_state,
    save_model_state,
    stage_label,
    staged_rmse,
)
from movie_bias.errors import InvalidConfigurationError, SchemaError


def test_toy_movie_bias_without_shrinkage(toy_ratings):
    model = fit_bias_model(toy_ratings, ["movie"], shrinkage=0.0)
    assert model.global_mean == pytest.approx(21.5 / 6.0)
    movie = model.table("movie").biases
    assert movie.loc[1] == pytest.approx(1.25 / 3.0)
    assert movie.loc[2] == pytest.approx(-1.25 / 3.0)


def test_toy_movie_bias_is_shrunk_towards_zero(toy_ratings):
    model = fit_bias_model(toy_ratings, ["movie"], shrinkage=5.0)
    movie = model.table("movie").biases
    # (12 - 3 * 3.58333) / (3 + 5)
    assert movie.loc[1] == pytest.approx(0.15625)
    assert model.table("movie").counts.loc[1] == 3


def test_zero_shrinkage_equals_group_mean_of_residuals(synthetic_ratings):
    mu = float(synthetic_ratings["rating"].mean())
    table = fit_bias_table(synthetic_ratings, np.full(len(synthetic_ratings), mu), "movie", 0.0)
    expected = (synthetic_ratings["rating"] - mu).groupby(synthetic_ratings["movieId"]).mean()
    np.testing.assert_allclose(table.biases.loc[expected.index].to_numpy(), expected.to_numpy(), rtol=1e-12)


@pytest.mark.parametrize("shrinkage", [1e12, float("inf")])
def test_huge_shrinkage_collapses_to_global_mean(synthetic_ratings, shrinkage):
    model = fit_bias_model(synthetic_ratings, shrinkage=shrinkage)
    for table in model.tables:
        assert np.all(np.abs(table.biases.to_numpy()) < 1e-6)
    np.testing.assert_allclose(model.predict(synthetic_ratings), model.global_mean, atol=1e-6)


def test_unseen_keys_contribute_zero(toy_ratings):
    model = fit_bias_model(toy_ratings, ["movie", "user"], shrinkage=0.0)
    unseen = pd.DataFrame({"userId": [99], "movieId": [99], "timestamp": [0], "genres": ["Horror"]})
    assert model.predict(unseen)[0] == pytest.approx(model.global_mean)

    half_seen = pd.DataFrame({"userId": [99], "movieId": [1], "timestamp": [0], "genres": ["Horror"]})
    expected = model.global_mean + model.table("movie").biases.loc[1]
    assert model.predict(half_seen)[0] == pytest.approx(expected)


def test_prediction_is_sum_of_resolved_terms(synthetic_ratings):
    model = fit_bias_model(synthetic_ratings, shrinkage=2.0)
    frame = model.bias_frame(synthetic_ratings.head(50))
    assert list(frame.columns) == ["global_mean", "b_movie", "b_user", "b_week", "b_genres"]
    np.testing.assert_allclose(frame.sum(axis=1).to_numpy(), model.predict(synthetic_ratings.head(50)))


def test_training_rmse_never_increases_across_stages(synthetic_ratings):
    stages = staged_rmse(synthetic_ratings, synthetic_ratings, shrinkage=0.0)
    values = stages["rmse"].to_numpy()
    assert np.all(np.diff(values) <= 1e-12)


def test_unregularized_residuals_average_to_zero(synthetic_ratings):
    model = fit_bias_model(synthetic_ratings, shrinkage=0.0)
    resid = synthetic_ratings["rating"].to_numpy() - model.predict(synthetic_ratings)
    assert abs(resid.mean()) < 1e-9


def test_week_key_is_added_when_missing(toy_ratings):
    model = fit_bias_model(toy_ratings.drop(columns=["week"]), ["week"], shrinkage=0.0)
    # Timestamps 0..1_300_500 fall into weeks 0, 604800 and 1209600.
    assert model.table("week").biases.index.tolist() == [0, 604_800, 1_209_600]


@pytest.mark.parametrize("keys", [["movie", "movie"], ["movie", "tag"]])
def test_invalid_key_order(toy_ratings, keys):
    with pytest.raises(InvalidConfigurationError):
        fit_bias_model(toy_ratings, keys)


@pytest.mark.parametrize("shrinkage", [-0.5, float("nan")])
def test_invalid_shrinkage(toy_ratings, shrinkage):
    with pytest.raises(InvalidConfigurationError):
        fit_bias_model(toy_ratings, ["movie"], shrinkage=shrinkage)


def test_stage_labels():
    assert stage_label([]) == "Just the average"
    assert stage_label(["movie"]) == "Movie effect"
    assert stage_label(["movie", "user"]) == "Movie + user effects"
    assert stage_label(["movie", "user", "week", "genres"]) == "Movie + user + week + genre effects"
    assert stage_label(["movie", "user", "week", "genres"], regularized=True) == (
        "Regularized movie + user + week + genre effects"
    )


def test_staged_rmse_has_one_row_per_prefix(toy_ratings):
    stages = staged_rmse(toy_ratings, toy_ratings, ["movie", "user"])
    assert stages["method"].tolist() == ["Just the average", "Movie effect", "Movie + user effects"]
    assert stages["n_terms"].tolist() == [0, 1, 2]


def test_model_state_survives_save_and_load(tmp_path, synthetic_ratings):
    model = fit_bias_model(synthetic_ratings, shrinkage=3.5)
    path = save_model_state(model, tmp_path / "state" / "model_state.json")
    loaded = load_model_state(path)
    assert loaded.terms == model.terms
    assert loaded.shrinkage == 3.5
    assert loaded.global_mean == pytest.approx(model.global_mean)
    np.testing.assert_allclose(loaded.predict(synthetic_ratings), model.predict(synthetic_ratings))


def test_missing_key_column_raises_schema_error(toy_ratings):
    with pytest.raises(SchemaError, match="timestamp"):
        fit_bias_model(toy_ratings.drop(columns=["week", "timestamp"]), ["movie", "week"])
    model = fit_bias_model(toy_ratings, ["movie", "user"])
    with pytest.raises(SchemaError, match="userId"):
        model.predict(toy_ratings.drop(columns=["userId"]))
