from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from movie_bias.config import DEFAULT_KEY_ORDER
from movie_bias.data import add_week_key
from movie_bias.errors import InvalidConfigurationError, SchemaError
from movie_bias.metrics import rmse


KEY_COLUMNS: Dict[str, str] = {
    "movie": "movieId",
    "user": "userId",
    "week": "week",
    "genres": "genres",
}
TERM_LABELS: Dict[str, str] = {
    "movie": "movie",
    "user": "user",
    "week": "week",
    "genres": "genre",
}


@dataclass(frozen=True)
class BiasTable:
    term: str
    column: str
    shrinkage: float
    biases: pd.Series
    counts: pd.Series

    def resolve(self, rows: pd.DataFrame) -> np.ndarray:
        # Keys never seen in training contribute nothing.
        return rows[self.column].map(self.biases).fillna(0.0).to_numpy(dtype=float)

    def __len__(self) -> int:
        return int(len(self.biases))


@dataclass(frozen=True)
class ModelState:
    global_mean: float
    shrinkage: float
    tables: Tuple[BiasTable, ...]

    @property
    def terms(self) -> Tuple[str, ...]:
        return tuple(t.term for t in self.tables)

    def table(self, term: str) -> BiasTable:
        for t in self.tables:
            if t.term == term:
                return t
        raise KeyError(term)

    def bias_frame(self, rows: pd.DataFrame) -> pd.DataFrame:
        rows = with_key_columns(check_columns(rows, self.terms, with_rating=False), self.terms)
        out = pd.DataFrame({"global_mean": np.full(len(rows), float(self.global_mean))}, index=rows.index)
        for t in self.tables:
            out[f"b_{t.term}"] = t.resolve(rows)
        return out

    def predict(self, rows: pd.DataFrame) -> np.ndarray:
        rows = with_key_columns(check_columns(rows, self.terms, with_rating=False), self.terms)
        pred = np.full(len(rows), float(self.global_mean), dtype=float)
        for t in self.tables:
            pred += t.resolve(rows)
        return pred


def check_key_order(keys: Sequence[str]) -> Tuple[str, ...]:
    keys = tuple(str(k) for k in keys)
    unknown = [k for k in keys if k not in KEY_COLUMNS]
    if unknown:
        raise InvalidConfigurationError(f"Unknown grouping keys {unknown}; expected a subset of {list(KEY_COLUMNS)}")
    if len(set(keys)) != len(keys):
        raise InvalidConfigurationError(f"Grouping keys must not repeat: {list(keys)}")
    return keys


def check_shrinkage(shrinkage: float) -> float:
    lam = float(shrinkage)
    if math.isnan(lam) or lam < 0.0:
        raise InvalidConfigurationError(f"Shrinkage must be >= 0, got {shrinkage}")
    return lam


def check_columns(rows: pd.DataFrame, keys: Sequence[str], with_rating: bool = True) -> pd.DataFrame:
    needed = ["rating"] if with_rating else []
    for k in keys:
        col = KEY_COLUMNS[k]
        # A missing week key is derived from the timestamp.
        if col == "week" and col not in rows.columns:
            col = "timestamp"
        needed.append(col)
    missing = [c for c in needed if c not in rows.columns]
    if missing:
        raise SchemaError(f"Rating table missing columns: {missing}")
    return rows


def with_key_columns(rows: pd.DataFrame, keys: Sequence[str]) -> pd.DataFrame:
    if "week" in keys and "week" not in rows.columns:
        return add_week_key(rows)
    return rows


def fit_bias_table(
    train: pd.DataFrame,
    accumulated: np.ndarray,
    term: str,
    shrinkage: float,
) -> BiasTable:
    """Estimate one bias per key value against the current residual.

    bias(key) = sum(rating - accumulated) / (count(key) + shrinkage)
    """
    check_key_order([term])
    lam = check_shrinkage(shrinkage)
    column = KEY_COLUMNS[term]
    train = with_key_columns(train, [term])
    resid = train["rating"].to_numpy(dtype=float) - np.asarray(accumulated, dtype=float)
    grouped = pd.Series(resid, index=train.index).groupby(train[column].to_numpy(), sort=True)
    sums = grouped.sum()
    counts = grouped.size()

    denom = counts.to_numpy(dtype=float) + lam
    if np.any(denom <= 0.0):
        raise RuntimeError(f"Non-positive denominator while fitting '{term}' biases; counts must be >= 1")
    if math.isinf(lam):
        values = np.zeros(len(sums), dtype=float)
    else:
        values = sums.to_numpy(dtype=float) / denom
    biases = pd.Series(values, index=sums.index, name=f"b_{term}")
    return BiasTable(term=term, column=column, shrinkage=lam, biases=biases, counts=counts.rename("n"))


def fit_bias_model(
    train: pd.DataFrame,
    keys: Sequence[str] = DEFAULT_KEY_ORDER,
    shrinkage: float = 0.0,
    global_mean: Optional[float] = None,
) -> ModelState:
    keys = check_key_order(keys)
    lam = check_shrinkage(shrinkage)
    train = with_key_columns(check_columns(train, keys), keys)
    mu = float(train["rating"].mean()) if global_mean is None else float(global_mean)

    accumulated = np.full(len(train), mu, dtype=float)
    tables: List[BiasTable] = []
    for term in keys:
        table = fit_bias_table(train, accumulated, term, lam)
        accumulated = accumulated + table.resolve(train)
        tables.append(table)
    return ModelState(global_mean=mu, shrinkage=lam, tables=tuple(tables))


def stage_label(keys: Sequence[str], regularized: bool = False) -> str:
    names = [TERM_LABELS[k] for k in keys]
    if not names:
        return "Just the average"
    noun = "effect" if len(names) == 1 else "effects"
    label = f"{' + '.join(names).capitalize()} {noun}"
    return f"Regularized {label.lower()}" if regularized else label


def staged_rmse(
    train: pd.DataFrame,
    target: pd.DataFrame,
    keys: Sequence[str] = DEFAULT_KEY_ORDER,
    shrinkage: float = 0.0,
    global_mean: Optional[float] = None,
) -> pd.DataFrame:
    """RMSE on `target` for the mean-only model and every prefix of `keys`."""
    keys = check_key_order(keys)
    train = with_key_columns(train, keys)
    target = with_key_columns(target, keys)
    mu = float(train["rating"].mean()) if global_mean is None else float(global_mean)
    y = target["rating"].to_numpy(dtype=float)

    rows: List[dict] = [{"n_terms": 0, "method": stage_label([]), "rmse": rmse(y, np.full(len(y), mu))}]
    for n in range(1, len(keys) + 1):
        model = fit_bias_model(train, keys[:n], shrinkage=shrinkage, global_mean=mu)
        rows.append({"n_terms": n, "method": stage_label(keys[:n]), "rmse": rmse(y, model.predict(target))})
    return pd.DataFrame(rows)


def _key_dtype(index: pd.Index) -> str:
    return "int" if pd.api.types.is_integer_dtype(index) else "str"


def model_state_to_dict(model: ModelState) -> dict:
    terms = []
    for t in model.tables:
        dtype = _key_dtype(t.biases.index)
        terms.append(
            {
                "term": t.term,
                "column": t.column,
                "key_dtype": dtype,
                "keys": [int(k) if dtype == "int" else str(k) for k in t.biases.index],
                "biases": [float(v) for v in t.biases.to_numpy()],
                "counts": [int(v) for v in t.counts.to_numpy()],
            }
        )
    return {
        "global_mean": float(model.global_mean),
        "shrinkage": float(model.shrinkage),
        "terms": terms,
    }


def model_state_from_dict(payload: Mapping[str, object]) -> ModelState:
    lam = float(payload["shrinkage"])
    tables: List[BiasTable] = []
    for item in payload["terms"]:
        term = str(item["term"])
        check_key_order([term])
        dtype = np.int64 if item.get("key_dtype") == "int" else object
        index = pd.Index(item["keys"], dtype=dtype)
        tables.append(
            BiasTable(
                term=term,
                column=str(item.get("column", KEY_COLUMNS[term])),
                shrinkage=lam,
                biases=pd.Series(np.asarray(item["biases"], dtype=float), index=index, name=f"b_{term}"),
                counts=pd.Series(np.asarray(item["counts"], dtype=np.int64), index=index, name="n"),
            )
        )
    check_key_order([t.term for t in tables])
    return ModelState(global_mean=float(payload["global_mean"]), shrinkage=lam, tables=tuple(tables))


def save_model_state(model: ModelState, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(model_state_to_dict(model), f, indent=2, sort_keys=True)
    return path


def load_model_state(path: str | Path) -> ModelState:
    with Path(path).open("r", encoding="utf-8") as f:
        return model_state_from_dict(json.load(f))
