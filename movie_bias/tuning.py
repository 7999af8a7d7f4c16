from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from movie_bias.biases import check_columns, check_key_order, check_shrinkage, fit_bias_model, with_key_columns
from movie_bias.config import DEFAULT_KEY_ORDER
from movie_bias.errors import InvalidConfigurationError
from movie_bias.metrics import rmse


@dataclass(frozen=True)
class TuningResult:
    curve: pd.DataFrame
    best_lambda: float
    best_rmse: float
    global_mean: float
    keys: tuple

    @property
    def lambdas(self) -> List[float]:
        return self.curve["lambda"].astype(float).tolist()


def make_lambda_grid(start: float, stop: float, step: float) -> List[float]:
    """Inclusive arithmetic grid start, start + step, ..., stop."""
    start, stop, step = float(start), float(stop), float(step)
    if not all(np.isfinite([start, stop, step])):
        raise InvalidConfigurationError("Lambda grid bounds must be finite")
    if start < 0.0:
        raise InvalidConfigurationError(f"Lambda grid must start at >= 0, got {start}")
    if stop < start:
        raise InvalidConfigurationError(f"Lambda grid stop ({stop}) is below start ({start})")
    if step <= 0.0:
        if stop == start:
            return [start]
        raise InvalidConfigurationError(f"Lambda grid step must be > 0, got {step}")
    n = int(math.floor((stop - start) / step + 1e-9)) + 1
    return [round(start + i * step, 10) for i in range(n)]


def evaluate_lambda(
    train: pd.DataFrame,
    target: pd.DataFrame,
    shrinkage: float,
    keys: Sequence[str],
    global_mean: float,
) -> float:
    model = fit_bias_model(train, keys, shrinkage=shrinkage, global_mean=global_mean)
    return rmse(target["rating"].to_numpy(dtype=float), model.predict(target))


def _check_grid(lambdas: Sequence[float]) -> List[float]:
    grid = [float(x) for x in lambdas]
    if not grid:
        raise InvalidConfigurationError("Lambda grid is empty")
    for lam in grid:
        check_shrinkage(lam)
    return grid


def tune_shrinkage(
    train: pd.DataFrame,
    target: pd.DataFrame,
    lambdas: Sequence[float],
    keys: Sequence[str] = DEFAULT_KEY_ORDER,
    *,
    global_mean: Optional[float] = None,
    n_jobs: int = 1,
    tag: str = "tune",
    progress_every: int = 0,
) -> TuningResult:
    """Grid-search the shared shrinkage value on one (train, target) pair.

    Every candidate rebuilds the whole bias chain from scratch; the lowest RMSE
    wins and ties go to the earliest candidate.
    """
    grid = _check_grid(lambdas)
    keys = check_key_order(keys)
    train = with_key_columns(check_columns(train, keys), keys)
    target = with_key_columns(check_columns(target, keys), keys)
    mu = float(train["rating"].mean()) if global_mean is None else float(global_mean)

    n_jobs = max(1, int(n_jobs))
    if n_jobs > 1 and len(grid) > 1:
        scores = Parallel(n_jobs=min(n_jobs, len(grid)), prefer="processes")(
            delayed(evaluate_lambda)(train, target, lam, keys, mu) for lam in grid
        )
        print(f"[{tag}] evaluated {len(grid)}/{len(grid)} lambda candidates (n_jobs={n_jobs})")
    else:
        scores = []
        for i, lam in enumerate(grid, start=1):
            scores.append(evaluate_lambda(train, target, lam, keys, mu))
            if progress_every and (i % int(progress_every) == 0 or i == len(grid)):
                print(f"[{tag}] evaluated {i}/{len(grid)} lambda candidates")

    curve = pd.DataFrame({"lambda": grid, "rmse": [float(s) for s in scores]})
    best_idx = int(np.argmin(curve["rmse"].to_numpy(dtype=float)))
    return TuningResult(
        curve=curve,
        best_lambda=float(curve.loc[best_idx, "lambda"]),
        best_rmse=float(curve.loc[best_idx, "rmse"]),
        global_mean=mu,
        keys=keys,
    )
