from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split

from movie_bias.errors import EmptyPartitionError, InvalidConfigurationError, SchemaError
from movie_bias.metrics import RATING_MAX, RATING_MIN, RATING_STEP


REQUIRED_COLUMNS = ["userId", "movieId", "rating", "timestamp", "genres"]
ID_COLUMNS = ["userId", "movieId"]
SECONDS_PER_WEEK = 7 * 24 * 60 * 60
ENTITY_COLUMNS = ("movieId", "userId")


def _is_integer_valued(s: pd.Series) -> bool:
    if pd.api.types.is_bool_dtype(s):
        return False
    if pd.api.types.is_integer_dtype(s):
        return True
    if pd.api.types.is_float_dtype(s):
        vals = s.to_numpy(dtype=float)
        return bool(np.all(np.isfinite(vals)) and np.all(np.mod(vals, 1.0) == 0.0))
    return False


def validate_ratings(ratings: pd.DataFrame) -> pd.DataFrame:
    missing = [c for c in REQUIRED_COLUMNS if c not in ratings.columns]
    if missing:
        raise SchemaError(f"Rating table missing columns: {missing}")

    nulls = [c for c in REQUIRED_COLUMNS if ratings[c].isna().any()]
    if nulls:
        raise SchemaError(f"Rating table has missing values in columns: {nulls}")

    for col in ID_COLUMNS + ["timestamp"]:
        if not _is_integer_valued(ratings[col]):
            raise SchemaError(f"Column '{col}' must hold integer values (got dtype {ratings[col].dtype})")

    rating = ratings["rating"]
    if pd.api.types.is_bool_dtype(rating) or not pd.api.types.is_numeric_dtype(rating):
        raise SchemaError(f"Column 'rating' must be numeric (got dtype {rating.dtype})")
    r = rating.to_numpy(dtype=float)
    if np.any((r < RATING_MIN) | (r > RATING_MAX)):
        raise SchemaError(f"Ratings must lie in [{RATING_MIN}, {RATING_MAX}]")
    if np.any(np.mod(r, RATING_STEP) != 0.0):
        raise SchemaError(f"Ratings must be multiples of {RATING_STEP}")

    genres = ratings["genres"]
    if not (pd.api.types.is_string_dtype(genres) or pd.api.types.is_object_dtype(genres)):
        raise SchemaError(f"Column 'genres' must hold strings (got dtype {genres.dtype})")
    if not genres.map(lambda g: isinstance(g, str)).all():
        raise SchemaError("Column 'genres' must hold strings")
    return ratings


def prepare_ratings(ratings: pd.DataFrame) -> pd.DataFrame:
    """Validate a raw rating table and return a typed copy with the `week` key."""
    validate_ratings(ratings)
    df = ratings.copy()
    for col in ID_COLUMNS + ["timestamp"]:
        df[col] = df[col].astype(np.int64)
    df["rating"] = df["rating"].astype(float)
    df["genres"] = df["genres"].astype(str)
    return add_week_key(df)


def load_ratings(path: str | Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing rating table: {path}")
    raw = pd.read_csv(path)
    return prepare_ratings(raw)


def week_floor(timestamps) -> np.ndarray:
    ts = np.asarray(timestamps, dtype=np.int64)
    return ts - np.mod(ts, SECONDS_PER_WEEK)


def add_week_key(ratings: pd.DataFrame) -> pd.DataFrame:
    df = ratings.copy()
    df["week"] = week_floor(df["timestamp"].to_numpy())
    return df


def drop_unseen_entities(
    target: pd.DataFrame,
    reference: pd.DataFrame | Mapping[str, Iterable],
    columns: Sequence[str] = ENTITY_COLUMNS,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Split `target` into rows whose entities all appear in `reference` and the rest.

    `reference` is either a rating table or a mapping of column -> known values.
    """
    keep = np.ones(len(target), dtype=bool)
    for col in columns:
        known = pd.unique(np.asarray(reference[col]))
        keep &= target[col].isin(known).to_numpy()
    return target.loc[keep].copy(), target.loc[~keep].copy()


def partition_ratings(
    ratings: pd.DataFrame,
    holdout_fraction: float,
    seed: int,
    *,
    restore_dropped: bool = False,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Stratified (train, held_out) split with leakage filtering of the held-out side.

    Held-out rows referencing a movie or user absent from training are removed.
    With `restore_dropped=True` those rows are appended to training instead of
    being discarded.
    """
    p = float(holdout_fraction)
    if not np.isfinite(p) or p <= 0.0 or p >= 1.0:
        raise InvalidConfigurationError(f"Held-out fraction must be in (0, 1), got {holdout_fraction}")
    validate_ratings(ratings)
    if ratings.empty:
        raise EmptyPartitionError("Cannot partition an empty rating table")

    strata = ratings["rating"].to_numpy(dtype=float)
    try:
        train, held_out = train_test_split(
            ratings,
            test_size=p,
            random_state=int(seed),
            shuffle=True,
            stratify=strata,
        )
    except ValueError as exc:
        raise EmptyPartitionError(f"Cannot stratify by rating at fraction {p}: {exc}") from exc

    empty_levels = sorted(set(np.unique(strata)) - set(np.unique(held_out["rating"].to_numpy(dtype=float))))
    if empty_levels:
        raise EmptyPartitionError(f"Held-out fraction {p} leaves no rows for rating levels {empty_levels}")

    train = train.sort_index(kind="mergesort")
    held_out = held_out.sort_index(kind="mergesort")
    kept, dropped = drop_unseen_entities(held_out, train)
    if kept.empty:
        raise EmptyPartitionError("Leakage filtering removed every held-out row")
    if restore_dropped and not dropped.empty:
        train = pd.concat([train, dropped]).sort_index(kind="mergesort")
    return train, kept


def summarize_ratings(ratings: pd.DataFrame) -> Dict[str, object]:
    dist = ratings["rating"].value_counts().sort_index()
    ts = ratings["timestamp"]
    return {
        "n_ratings": int(len(ratings)),
        "n_users": int(ratings["userId"].nunique()),
        "n_movies": int(ratings["movieId"].nunique()),
        "n_genre_combinations": int(ratings["genres"].nunique()),
        "mean_rating": float(ratings["rating"].mean()) if len(ratings) else float("nan"),
        "rating_distribution": {float(k): int(v) for k, v in dist.items()},
        "first_rating": str(pd.to_datetime(ts.min(), unit="s")) if len(ratings) else "",
        "last_rating": str(pd.to_datetime(ts.max(), unit="s")) if len(ratings) else "",
    }
