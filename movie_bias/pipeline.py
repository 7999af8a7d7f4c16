from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import pandas as pd

from movie_bias.biases import ModelState, check_key_order, fit_bias_model, stage_label, staged_rmse, with_key_columns
from movie_bias.config import RuntimeConfig
from movie_bias.data import drop_unseen_entities, partition_ratings, validate_ratings
from movie_bias.errors import EmptyPartitionError
from movie_bias.metrics import RmseLog, clamp_predictions, discretize_predictions, regression_metrics, rmse
from movie_bias.tuning import TuningResult, make_lambda_grid, tune_shrinkage


@dataclass
class InnerStageResult:
    inner_mean: float
    n_train: int
    n_test: int
    stage_rmse: pd.DataFrame
    tuning: TuningResult

    @property
    def provisional_lambda(self) -> float:
        return self.tuning.best_lambda


@dataclass
class OuterStageResult:
    outer_mean: float
    n_train: int
    n_validation: int
    n_dropped: int
    tuning: TuningResult
    model: ModelState
    predictions: pd.DataFrame
    raw_rmse: float
    final_rmse: float
    discretized_rmse: float
    metrics: Dict[str, float] = field(default_factory=dict)

    @property
    def final_lambda(self) -> float:
        return self.tuning.best_lambda


@dataclass
class TwoStageResult:
    config: RuntimeConfig
    lambdas: List[float]
    inner: InnerStageResult
    outer: OuterStageResult
    rmse_log: RmseLog
    consistency: Dict[str, object]
    elapsed_seconds: float = 0.0

    @property
    def provisional_lambda(self) -> float:
        return self.inner.provisional_lambda

    @property
    def final_lambda(self) -> float:
        return self.outer.final_lambda

    @property
    def final_rmse(self) -> float:
        return self.outer.final_rmse

    def summary(self) -> Dict[str, object]:
        return {
            "inner_mean": float(self.inner.inner_mean),
            "outer_mean": float(self.outer.outer_mean),
            "provisional_lambda": float(self.provisional_lambda),
            "final_lambda": float(self.final_lambda),
            "inner_rmse_at_provisional_lambda": float(self.inner.tuning.best_rmse),
            "final_rmse": float(self.final_rmse),
            "raw_rmse": float(self.outer.raw_rmse),
            "discretized_rmse": float(self.outer.discretized_rmse),
            "n_inner_train": int(self.inner.n_train),
            "n_inner_test": int(self.inner.n_test),
            "n_development": int(self.outer.n_train),
            "n_validation": int(self.outer.n_validation),
            "n_validation_dropped": int(self.outer.n_dropped),
            "key_order": list(self.config.key_order),
            "lambda_grid": [float(x) for x in self.lambdas],
            "consistency": dict(self.consistency),
            "rmse_log": [{"method": m, "rmse": float(v)} for m, v in self.rmse_log],
            "elapsed_seconds": float(self.elapsed_seconds),
        }


def lambda_grid_from_config(config: RuntimeConfig) -> List[float]:
    return make_lambda_grid(config.lambda_start, config.lambda_stop, config.lambda_step)


def run_inner_stage(
    development: pd.DataFrame,
    config: RuntimeConfig,
    lambdas: Sequence[float],
    rmse_log: RmseLog,
) -> InnerStageResult:
    keys = check_key_order(config.key_order)
    inner_train, inner_test = partition_ratings(development, config.inner_holdout, seed=config.seed)
    print(f"[partition] inner train={len(inner_train)} inner test={len(inner_test)}")
    inner_train = with_key_columns(inner_train, keys)
    inner_test = with_key_columns(inner_test, keys)

    inner_mean = float(inner_train["rating"].mean())
    stages = staged_rmse(inner_train, inner_test, keys, shrinkage=0.0, global_mean=inner_mean)
    for row in stages.itertuples(index=False):
        rmse_log.append(row.method, row.rmse)
        print(f"[inner] {row.method}: rmse={row.rmse:.5f}")

    tuning = tune_shrinkage(
        inner_train,
        inner_test,
        lambdas,
        keys,
        global_mean=inner_mean,
        n_jobs=config.n_jobs,
        tag="inner-tune",
        progress_every=config.progress_every,
    )
    rmse_log.append(stage_label(keys, regularized=True), tuning.best_rmse)
    print(f"[inner] provisional lambda={tuning.best_lambda:g} rmse={tuning.best_rmse:.5f}")
    return InnerStageResult(
        inner_mean=inner_mean,
        n_train=int(len(inner_train)),
        n_test=int(len(inner_test)),
        stage_rmse=stages,
        tuning=tuning,
    )


def run_outer_stage(
    development: pd.DataFrame,
    validation: pd.DataFrame,
    config: RuntimeConfig,
    lambdas: Sequence[float],
    rmse_log: RmseLog,
) -> OuterStageResult:
    keys = check_key_order(config.key_order)
    development = with_key_columns(development, keys)
    validation, dropped = drop_unseen_entities(with_key_columns(validation, keys), development)
    if validation.empty:
        raise EmptyPartitionError("No validation rows reference movies and users seen in the development set")
    if len(dropped):
        print(f"[outer] dropped {len(dropped)} validation rows with unseen movies or users")

    # Fresh mean over the full development set; never reuse the inner-stage mean.
    outer_mean = float(development["rating"].mean())
    tuning = tune_shrinkage(
        development,
        validation,
        lambdas,
        keys,
        global_mean=outer_mean,
        n_jobs=config.n_jobs,
        tag="outer-tune",
        progress_every=config.progress_every,
    )
    model = fit_bias_model(development, keys, shrinkage=tuning.best_lambda, global_mean=outer_mean)

    y = validation["rating"].to_numpy(dtype=float)
    p_raw = model.predict(validation)
    p_final = clamp_predictions(p_raw)
    p_disc = discretize_predictions(p_final)
    raw_rmse = rmse(y, p_raw)
    final_rmse = rmse(y, p_final)
    discretized_rmse = rmse(y, p_disc)

    label = stage_label(keys, regularized=True)
    rmse_log.append(f"{label} (validation, unclamped)", raw_rmse)
    rmse_log.append(f"{label} (validation)", final_rmse)
    rmse_log.append(f"{label} (validation, discretized)", discretized_rmse)
    print(f"[outer] final lambda={tuning.best_lambda:g} rmse={final_rmse:.5f} (unclamped={raw_rmse:.5f}, discretized={discretized_rmse:.5f})")

    predictions = validation[["userId", "movieId", "timestamp", "rating"]].copy()
    predictions["y_pred_raw"] = p_raw
    predictions["y_pred"] = p_final
    predictions["y_pred_discrete"] = p_disc
    return OuterStageResult(
        outer_mean=outer_mean,
        n_train=int(len(development)),
        n_validation=int(len(validation)),
        n_dropped=int(len(dropped)),
        tuning=tuning,
        model=model,
        predictions=predictions.reset_index(drop=True),
        raw_rmse=raw_rmse,
        final_rmse=final_rmse,
        discretized_rmse=discretized_rmse,
        metrics=regression_metrics(y, p_final),
    )


def check_consistency(inner_rmse: float, final_rmse: float, tolerance: float) -> Dict[str, object]:
    """Compare the inner RMSE at the provisional lambda with the final RMSE.

    A large gap hints that the inner split overfit; the flag is informational only.
    """
    divergence = float(final_rmse) - float(inner_rmse)
    rel = abs(divergence) / max(abs(float(inner_rmse)), 1e-12)
    return {
        "inner_rmse": float(inner_rmse),
        "final_rmse": float(final_rmse),
        "divergence": divergence,
        "relative_divergence": float(rel),
        "tolerance": float(tolerance),
        "overfit_suspected": bool(rel > float(tolerance)),
    }


def run_two_stage_validation(
    development: pd.DataFrame,
    validation: pd.DataFrame,
    config: Optional[RuntimeConfig] = None,
    lambdas: Optional[Sequence[float]] = None,
) -> TwoStageResult:
    config = config if config is not None else RuntimeConfig()
    validate_ratings(development)
    validate_ratings(validation)
    grid =list(lambdas) if lambdas is not None else lambda_grid_from_config(config)
    t0 = time.perf_counter()

    rmse_log = RmseLog()
    print(f"[start] inner stage on {len(development)} development rows ({len(grid)} lambda candidates)")
    inner = run_inner_stage(development, config, grid, rmse_log)

    print(f"[start] outer stage on {len(development)} development rows vs {len(validation)} validation rows")
    outer = run_outer_stage(development, validation, config, grid, rmse_log)

    consistency = check_consistency(inner.tuning.best_rmse, outer.final_rmse, config.divergence_tolerance)
    consistency["provisional_lambda"] = float(inner.provisional_lambda)
    consistency["final_lambda"] = float(outer.final_lambda)
    if consistency["overfit_suspected"]:
        print(
            f"[check] inner rmse {consistency['inner_rmse']:.5f} vs final rmse {consistency['final_rmse']:.5f} "
            f"diverge by {consistency['relative_divergence']:.1%} (tolerance {config.divergence_tolerance:.1%})"
        )
    else:
        print(f"[check] inner and final rmse agree within {config.divergence_tolerance:.1%}")

    return TwoStageResult(
        config=config,
        lambdas=grid,
        inner=inner,
        outer=outer,
        rmse_log=rmse_log,
        consistency=consistency,
        elapsed_seconds=float(time.perf_counter() - t0),
    )
