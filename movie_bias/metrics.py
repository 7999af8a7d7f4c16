from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Tuple

import numpy as np
import pandas as pd


RATING_MIN = 0.5
RATING_MAX = 5.0
RATING_STEP = 0.5
RATING_LEVELS = np.arange(RATING_MIN, RATING_MAX + RATING_STEP / 2.0, RATING_STEP)
# Lower edge of every level above the first: 0.75, 1.25, ..., 4.75.
_LEVEL_EDGES = RATING_LEVELS[1:] - RATING_STEP / 2.0


def _paired(y_true, y_pred) -> tuple[np.ndarray, np.ndarray]:
    y = np.asarray(y_true, dtype=float).ravel()
    p = np.asarray(y_pred, dtype=float).ravel()
    if p.size == 1 and y.size > 1:
        p = np.full(y.shape, float(p[0]))
    if y.shape != p.shape:
        raise ValueError(f"Length mismatch: {y.size} true values vs {p.size} predictions")
    if y.size == 0:
        raise ValueError("Cannot score an empty sequence")
    return y, p


def rmse(y_true, y_pred) -> float:
    y, p = _paired(y_true, y_pred)
    return float(np.sqrt(np.mean((y - p) ** 2)))


def regression_metrics(y_true, y_pred) -> Dict[str, float]:
    y, p = _paired(y_true, y_pred)
    err = p - y
    return {
        "rmse": float(np.sqrt(np.mean(err**2))),
        "mae": float(np.mean(np.abs(err))),
        "bias": float(np.mean(err)),
        "n": float(y.size),
    }


def clamp_predictions(y_pred) -> np.ndarray:
    return np.clip(np.asarray(y_pred, dtype=float), RATING_MIN, RATING_MAX)


def discretize_predictions(y_pred) -> np.ndarray:
    """Snap predictions onto the half-star rating alphabet.

    Predictions are clamped first, then each value goes to the level whose
    half-open bin contains it, e.g. [4.25, 4.75) -> 4.5 and [4.75, inf) -> 5.
    """
    p = clamp_predictions(y_pred)
    idx = np.searchsorted(_LEVEL_EDGES, p, side="right")
    return RATING_LEVELS[idx]


@dataclass
class RmseLog:
    """Ordered record of (method, rmse) results; entries are only ever appended."""

    _entries: List[Tuple[str, float]] = field(default_factory=list)

    def append(self, method: str, value: float) -> None:
        self._entries.append((str(method), float(value)))

    @property
    def entries(self) -> Tuple[Tuple[str, float], ...]:
        return tuple(self._entries)

    def get(self, method: str) -> float:
        for name, value in reversed(self._entries):
            if name == method:
                return value
        raise KeyError(method)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self._entries, columns=["method", "rmse"])

    def __iter__(self) -> Iterator[Tuple[str, float]]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
