from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple

import numpy as np


ENV_PREFIX = "MOVIE_BIAS_"
DEFAULT_KEY_ORDER: Tuple[str, ...] = ("movie", "user", "week", "genres")


@dataclass(frozen=True)
class RuntimeConfig:
    seed: int = 1
    inner_holdout: float = 0.1
    outer_holdout: float = 0.1
    lambda_start: float = 0.0
    lambda_stop: float = 10.0
    lambda_step: float = 0.25
    n_jobs: int = 1
    divergence_tolerance: float = 0.05
    progress_every: int = 10
    key_order: Tuple[str, ...] = DEFAULT_KEY_ORDER


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(ENV_PREFIX + name, str(default))
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(ENV_PREFIX + name, str(default))
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_keys(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or str(raw).strip() == "":
        return tuple(default)
    return tuple(k.strip() for k in str(raw).split(",") if k.strip())


def load_runtime_config_from_env() -> RuntimeConfig:
    base = RuntimeConfig()
    cpu_count = os.cpu_count() or 1
    n_jobs = _env_int("N_JOBS", base.n_jobs)
    if _env_bool("PARALLEL", False):
        n_jobs = max(n_jobs, min(8, max(1, cpu_count - 1)))
    return RuntimeConfig(
        seed=_env_int("SEED", base.seed),
        inner_holdout=float(np.clip(_env_float("INNER_HOLDOUT", base.inner_holdout), 0.0, 1.0)),
        outer_holdout=float(np.clip(_env_float("OUTER_HOLDOUT", base.outer_holdout), 0.0, 1.0)),
        lambda_start=_env_float("LAMBDA_START", base.lambda_start),
        lambda_stop=_env_float("LAMBDA_STOP", base.lambda_stop),
        lambda_step=_env_float("LAMBDA_STEP", base.lambda_step),
        n_jobs=max(1, int(n_jobs)),
        divergence_tolerance=max(0.0, _env_float("DIVERGENCE_TOLERANCE", base.divergence_tolerance)),
        progress_every=max(1, _env_int("PROGRESS_EVERY", base.progress_every)),
        key_order=_env_keys("KEY_ORDER", base.key_order),
    )
