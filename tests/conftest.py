from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from movie_bias.data import prepare_ratings


GENRE_POOL = [
    "Comedy",
    "Drama",
    "Comedy|Romance",
    "Action|Thriller",
    "Animation|Children|Comedy",
    "Documentary",
]


def make_synthetic_ratings(
    n_users: int = 60,
    n_movies: int = 40,
    density: float = 0.8,
    seed: int = 7,
) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    b_user = rng.normal(0.0, 0.5, size=n_users)
    b_movie = rng.normal(0.0, 0.5, size=n_movies)
    movie_genres = rng.choice(GENRE_POOL, size=n_movies)
    start = 1_104_537_600  # 2005-01-01
    rows = []
    for u in range(n_users):
        for m in range(n_movies):
            if rng.random() > density:
                continue
            raw = 3.5 + b_user[u] + b_movie[m] + rng.normal(0.0, 1.0)
            rating = float(np.clip(np.round(raw * 2.0) / 2.0, 0.5, 5.0))
            rows.append(
                {
                    "userId": u + 1,
                    "movieId": 100 + m,
                    "rating": rating,
                    "timestamp": int(start + rng.integers(0, 2 * 365 * 86400)),
                    "title": f"Movie {m}",
                    "genres": str(movie_genres[m]),
                }
            )
    return pd.DataFrame(rows)


@pytest.fixture
def toy_ratings() -> pd.DataFrame:
    raw = pd.DataFrame(
        {
            "userId": [1, 2, 3, 1, 2, 3],
            "movieId": [1, 1, 1, 2, 2, 2],
            "rating": [4.0, 3.0, 5.0, 2.0, 4.0, 3.5],
            "timestamp": [0, 100, 700_000, 800_000, 1_300_000, 1_300_500],
            "title": ["A", "A", "A", "B", "B", "B"],
            "genres": ["Drama", "Drama", "Drama", "Comedy|Drama", "Comedy|Drama", "Comedy|Drama"],
        }
    )
    return prepare_ratings(raw)


@pytest.fixture(scope="session")
def synthetic_raw() -> pd.DataFrame:
    return make_synthetic_ratings()


@pytest.fixture
def synthetic_ratings(synthetic_raw) -> pd.DataFrame:
    return prepare_ratings(synthetic_raw)
