from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import asdict, replace
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

os.environ["OMP_NUM_THREADS"] = "1"
os.environ["MKL_NUM_THREADS"] = "1"
os.environ["OPENBLAS_NUM_THREADS"] = "1"
os.environ["NUMEXPR_NUM_THREADS"] = "1"

import pandas as pd

from movie_bias.biases import load_model_state, save_model_state
from movie_bias.config import RuntimeConfig, load_runtime_config_from_env
from movie_bias.data import drop_unseen_entities, load_ratings, partition_ratings, summarize_ratings
from movie_bias.errors import MovieBiasError
from movie_bias.metrics import clamp_predictions, discretize_predictions, regression_metrics, rmse
from movie_bias.pipeline import TwoStageResult, run_two_stage_validation


ROOT = Path(__file__).resolve().parent


def _resolve_input_path(candidates: Sequence[Path], label: str) -> Path:
    for p in candidates:
        if p.exists():
            return p
    joined = ", ".join(str(x) for x in candidates)
    raise FileNotFoundError(f"Missing {label}. Tried: {joined}")


def _json_dump(path: Path, obj: Mapping) -> None:
    path.write_text(json.dumps(obj, indent=2, sort_keys=True), encoding="utf-8")


def _config_from_args(args: argparse.Namespace) -> RuntimeConfig:
    cfg = load_runtime_config_from_env()
    overrides = {}
    for name in (
        "seed",
        "inner_holdout",
        "outer_holdout",
        "lambda_start",
        "lambda_stop",
        "lambda_step",
        "n_jobs",
        "divergence_tolerance",
    ):
        value = getattr(args, name, None)
        if value is not None:
            overrides[name] = value
    if getattr(args, "keys", None):
        overrides["key_order"] = tuple(k.strip() for k in str(args.keys).split(",") if k.strip())
    return replace(cfg, **overrides)


def _load_train_inputs(args: argparse.Namespace, cfg: RuntimeConfig) -> tuple[pd.DataFrame, pd.DataFrame]:
    if args.ratings:
        ratings = load_ratings(_resolve_input_path([Path(args.ratings)], "rating table"))
        # Validation rows with unseen movies/users go back into the development set.
        development, validation = partition_ratings(
            ratings,
            cfg.outer_holdout,
            seed=cfg.seed,
            restore_dropped=True,
        )
        print(f"[partition] development={len(development)} validation={len(validation)} (from {len(ratings)} ratings)")
        return development, validation
    if not args.development or not args.validation:
        raise MovieBiasError("train needs either --ratings or both --development and --validation")
    development = load_ratings(_resolve_input_path([Path(args.development)], "development set"))
    validation = load_ratings(_resolve_input_path([Path(args.validation)], "validation set"))
    return development, validation


def _write_train_outputs(result: TwoStageResult, development: pd.DataFrame, out_dir: Path, with_report: bool) -> List[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []

    log_path = out_dir / "rmse_log.csv"
    result.rmse_log.to_frame().to_csv(log_path, index=False)
    written.append(log_path)

    inner_curve = out_dir / "lambda_curve_inner.csv"
    result.inner.tuning.curve.to_csv(inner_curve, index=False)
    outer_curve = out_dir / "lambda_curve_outer.csv"
    result.outer.tuning.curve.to_csv(outer_curve, index=False)
    written.extend([inner_curve, outer_curve])

    written.append(save_model_state(result.outer.model, out_dir / "model_state.json"))

    summary = result.summary()
    summary["config"] = asdict(result.config)
    summary["development_summary"] = summarize_ratings(development)
    summary_path = out_dir / "run_summary.json"
    _json_dump(summary_path, summary)
    written.append(summary_path)

    if with_report:
        from report.build_pdf import build_pdf
        from report.generate_report import build_report_bundle

        bundle = build_report_bundle(result=result, data_summary=summary["development_summary"])
        written.append(build_pdf(bundle, out_dir / "final_report.pdf"))
        md_path = out_dir / "final_report.md"
        md_path.write_text(str(bundle["markdown_text"]), encoding="utf-8")
        written.append(md_path)
    return written


def cmd_train(args: argparse.Namespace) -> int:
    cfg = _config_from_args(args)
    development, validation = _load_train_inputs(args, cfg)
    result = run_two_stage_validation(development, validation, config=cfg)

    out_dir = Path(args.output_dir) if args.output_dir else ROOT / "outputs"
    written = _write_train_outputs(result, development, out_dir, with_report=bool(args.report))

    print("\n[rmse log]")
    print(result.rmse_log.to_frame().to_string(index=False))
    print(f"\n[done] provisional lambda={result.provisional_lambda:g} final lambda={result.final_lambda:g} final rmse={result.final_rmse:.5f}")
    for p in written:
        print(f"[done] wrote {p}")
    return 0


def cmd_evaluate(args: argparse.Namespace) -> int:
    model = load_model_state(_resolve_input_path([Path(args.model)], "model state"))
    ratings = load_ratings(_resolve_input_path([Path(args.ratings)], "rating table"))
    if args.drop_unseen:
        if "movie" not in model.terms or "user" not in model.terms:
            raise MovieBiasError("--drop-unseen needs a model with both movie and user terms")
        seen = {
            "movieId": model.table("movie").biases.index,
            "userId": model.table("user").biases.index,
        }
        ratings, dropped = drop_unseen_entities(ratings, seen)
        print(f"[evaluate] dropped {len(dropped)} rows with unseen movies or users")
        if ratings.empty:
            raise MovieBiasError("No rows left to evaluate after dropping unseen movies and users")

    y = ratings["rating"].to_numpy(dtype=float)
    p_raw = model.predict(ratings)
    p_final = clamp_predictions(p_raw)
    met = regression_metrics(y, p_final)
    print(f"[evaluate] rows={len(ratings)} lambda={model.shrinkage:g} terms={','.join(model.terms)}")
    print(f"[evaluate] rmse={met['rmse']:.5f} (unclamped={rmse(y, p_raw):.5f}, discretized={rmse(y, discretize_predictions(p_final)):.5f})")
    print(f"[evaluate] mae={met['mae']:.5f} bias={met['bias']:.5f}")

    if args.predictions:
        out = ratings[["userId", "movieId", "timestamp", "rating"]].copy()
        out["y_pred"] = p_final
        out.to_csv(args.predictions, index=False)
        print(f"[evaluate] wrote {args.predictions}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Regularized movie/user/week/genre bias model for rating prediction")
    sub = parser.add_subparsers(dest="command", required=True)

    train = sub.add_parser("train", help="Run inner and outer lambda tuning and fit the final model")
    train.add_argument("--ratings", type=str, default=None, help="Single rating table, split into development/validation")
    train.add_argument("--development", type=str, default=None, help="Development (training) rating table")
    train.add_argument("--validation", type=str, default=None, help="Held-out validation rating table")
    train.add_argument("--inner-holdout", dest="inner_holdout", type=float, default=None, help="Held-out fraction of the inner split")
    train.add_argument("--outer-holdout", dest="outer_holdout", type=float, default=None, help="Held-out fraction when --ratings is used")
    train.add_argument("--lambda-start", dest="lambda_start", type=float, default=None, help="First lambda candidate")
    train.add_argument("--lambda-stop", dest="lambda_stop", type=float, default=None, help="Last lambda candidate (inclusive)")
    train.add_argument("--lambda-step", dest="lambda_step", type=float, default=None, help="Lambda grid spacing")
    train.add_argument("--keys", type=str, default=None, help="Comma-separated bias terms in fit order (default: movie,user,week,genres)")
    train.add_argument("--seed", type=int, default=None, help="Random seed for partitioning")
    train.add_argument("--n-jobs", dest="n_jobs", type=int, default=None, help="Parallel workers for the lambda grid")
    train.add_argument("--divergence-tolerance", dest="divergence_tolerance", type=float, default=None, help="Relative inner/final RMSE gap that flags overfitting")
    train.add_argument("--output-dir", dest="output_dir", type=str, default=None, help="Directory for run artifacts (default: ./outputs)")
    train.add_argument("--no-report", dest="report", action="store_false", help="Skip final_report.pdf and final_report.md")
    train.set_defaults(func=cmd_train, report=True)

    evaluate = sub.add_parser("evaluate", help="Score a rating table with a saved model state")
    evaluate.add_argument("--model", type=str, required=True, help="Path to model_state.json")
    evaluate.add_argument("--ratings", type=str, required=True, help="Rating table to score")
    evaluate.add_argument("--drop-unseen", dest="drop_unseen", action="store_true", help="Skip rows whose movie or user the model never saw")
    evaluate.add_argument("--predictions", type=str, default=None, help="Optional CSV path for per-row predictions")
    evaluate.set_defaults(func=cmd_evaluate)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except MovieBiasError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
