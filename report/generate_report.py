from __future__ import annotations

from typing import Dict, List, Mapping

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import stats

from movie_bias.metrics import RATING_LEVELS
from movie_bias.pipeline import TwoStageResult


def _make_figure(figsize=(10, 6)):
    fig = plt.figure(figsize=figsize, dpi=120)
    return fig


def _df_preview(df: pd.DataFrame, n: int) -> pd.DataFrame:
    return df.head(n).copy()


def build_report_bundle(
    *,
    result: TwoStageResult,
    data_summary: Mapping[str, object],
) -> Dict[str, object]:
    inner_curve = result.inner.tuning.curve
    outer_curve = result.outer.tuning.curve
    preds = result.outer.predictions.copy()
    preds["residual"] = preds["rating"] - preds["y_pred"]
    rmse_table = result.rmse_log.to_frame()

    figures: List[dict] = []

    # 1) Lambda tuning curves, inner and outer
    fig = _make_figure((12, 5.8))
    for pos, (curve, best, title) in enumerate(
        [
            (inner_curve, result.provisional_lambda, "Inner Split"),
            (outer_curve, result.final_lambda, "Development vs Validation"),
        ],
        start=1,
    ):
        ax = fig.add_subplot(1, 2, pos)
        ax.plot(curve["lambda"], curve["rmse"], marker="o", ms=3, color="#4C78A8")
        ax.axvline(best, color="black", lw=1, linestyle="--")
        ax.set_title(f"Lambda Tuning: {title} (best={best:g})")
        ax.set_xlabel("Lambda")
        ax.set_ylabel("RMSE")
        ax.grid(alpha=0.25)
    fig.tight_layout()
    figures.append({"title": "Lambda Tuning", "figure": fig})

    # 2) RMSE by model stage
    fig = _make_figure((12, 6))
    ax = fig.add_subplot(1, 1, 1)
    y_pos = np.arange(len(rmse_table))
    ax.barh(y_pos, rmse_table["rmse"], color="#B279A2")
    ax.set_yticks(y_pos)
    ax.set_yticklabels(rmse_table["method"], fontsize=8)
    ax.invert_yaxis()
    lo = float(rmse_table["rmse"].min())
    ax.set_xlim(max(lo - 0.1, 0.0), float(rmse_table["rmse"].max()) + 0.02)
    ax.set_title("RMSE by Model Stage")
    ax.set_xlabel("RMSE")
    ax.grid(axis="x", alpha=0.2)
    fig.tight_layout()
    figures.append({"title": "RMSE by Stage", "figure": fig})

    # 3) Residual histogram + QQ-style plot
    fig = _make_figure((12, 5.8))
    ax1 = fig.add_subplot(1, 2, 1)
    ax1.hist(preds["residual"], bins=40, color="#4C78A8", alpha=0.85, edgecolor="white")
    ax1.axvline(0, color="black", lw=1)
    ax1.set_title("Validation Residuals")
    ax1.set_xlabel("Residual = Actual - Predicted")
    ax1.set_ylabel("Count")
    ax1.grid(alpha=0.2)
    ax2 = fig.add_subplot(1, 2, 2)
    resid = preds["residual"].to_numpy()
    if len(resid) > 5000:
        resid = np.random.default_rng(result.config.seed).choice(resid, size=5000, replace=False)
    (osm, osr), (slope, intercept, r) = stats.probplot(resid, dist="norm")
    ax2.scatter(osm, osr, s=8, alpha=0.6, color="#F58518")
    xline = np.array([np.min(osm), np.max(osm)])
    ax2.plot(xline, intercept + slope * xline, color="black", lw=1)
    ax2.set_title(f"QQ-Style Residual Plot (r={r:.3f})")
    ax2.set_xlabel("Theoretical Quantiles")
    ax2.set_ylabel("Ordered Residuals")
    ax2.grid(alpha=0.2)
    fig.tight_layout()
    figures.append({"title": "Residual Distribution", "figure": fig})

    # 4) Actual vs discretized rating distribution
    actual = preds["rating"].value_counts().reindex(RATING_LEVELS, fill_value=0)
    discrete = preds["y_pred_discrete"].value_counts().reindex(RATING_LEVELS, fill_value=0)
    fig = _make_figure((10, 6))
    ax = fig.add_subplot(1, 1, 1)
    width = 0.2
    ax.bar(RATING_LEVELS - width / 2, actual.to_numpy(), width=width, color="#54A24B", label="Actual")
    ax.bar(RATING_LEVELS + width / 2, discrete.to_numpy(), width=width, color="#E45756", label="Discretized prediction")
    ax.set_xticks(RATING_LEVELS)
    ax.set_title("Rating Distribution: Actual vs Discretized Predictions")
    ax.set_xlabel("Rating")
    ax.set_ylabel("Count")
    ax.legend(fontsize=8)
    ax.grid(axis="y", alpha=0.2)
    fig.tight_layout()
    figures.append({"title": "Discretized Ratings", "figure": fig})

    cons = result.consistency
    pred_preview = _df_preview(preds[["userId", "movieId", "rating", "y_pred_raw", "y_pred", "y_pred_discrete"]], 15)
    term_sizes = pd.DataFrame(
        [{"term": t.term, "column": t.column, "n_keys": len(t), "mean_bias": float(t.biases.mean())} for t in result.outer.model.tables]
    )

    section_texts = {
        "Executive Summary": "\n".join(
            [
                "Additive bias model: global mean plus shrunk movie, user, week and genre effects fitted in sequence on residuals.",
                f"Provisional lambda (inner split) = {result.provisional_lambda:g}; final lambda (development vs validation) = {result.final_lambda:g}.",
                f"Final validation RMSE (clamped to [0.5, 5]) = {result.final_rmse:.5f}; unclamped = {result.outer.raw_rmse:.5f}.",
                f"Discretized to half-star levels the RMSE becomes {result.outer.discretized_rmse:.5f}; rounding is reported, never used.",
            ]
        ),
        "Data": "\n".join(
            [
                f"Development ratings: {data_summary.get('n_ratings')} from {data_summary.get('n_users')} users on {data_summary.get('n_movies')} movies.",
                f"Genre combinations: {data_summary.get('n_genre_combinations')}; mean rating {float(data_summary.get('mean_rating', np.nan)):.4f}.",
                f"Ratings span {data_summary.get('first_rating')} to {data_summary.get('last_rating')}.",
                f"Validation rows scored: {result.outer.n_validation} (dropped {result.outer.n_dropped} with unseen movies or users).",
            ]
        ),
        "Validation Protocol": "\n".join(
            [
                f"Inner split: {result.inner.n_train} train / {result.inner.n_test} test rows, stratified by rating, inner mean {result.inner.inner_mean:.5f}.",
                f"Outer fit: full development set, outer mean {result.outer.outer_mean:.5f}, scored on the validation set.",
                f"Lambda grid: {len(result.lambdas)} candidates from {min(result.lambdas):g} to {max(result.lambdas):g}.",
                f"Inner RMSE at provisional lambda {cons['inner_rmse']:.5f} vs final {cons['final_rmse']:.5f} "
                f"(relative gap {cons['relative_divergence']:.2%}, overfit suspected: {cons['overfit_suspected']}).",
            ]
        ),
        "Reproducibility": "\n".join(
            [
                f"Random seed: {result.config.seed}",
                f"Key order: {', '.join(result.config.key_order)}",
                "Run command: python run_pipeline.py train --development <edx.csv> --validation <validation.csv>",
            ]
        ),
    }

    markdown = render_markdown_summary(section_texts=section_texts, rmse_table=rmse_table, pred_preview=pred_preview)

    return {
        "section_texts": section_texts,
        "tables": {
            "rmse_log": rmse_table,
            "inner_curve": inner_curve.copy(),
            "outer_curve": outer_curve.copy(),
            "term_sizes": term_sizes,
            "pred_preview": pred_preview,
        },
        "figures": figures,
        "markdown_text": markdown,
    }


def render_markdown_summary(
    *,
    section_texts: Mapping[str, str],
    rmse_table: pd.DataFrame,
    pred_preview: pd.DataFrame,
) -> str:
    out: List[str] = []
    for title, text in section_texts.items():
        out.append(f"# {title}")
        out.append("")
        out.append(text)
        out.append("")
    out.append("# RMSE by Stage")
    out.append("")
    out.append(rmse_table.to_string(index=False))
    out.append("")
    out.append("# Validation Predictions Preview")
    out.append("")
    out.append(pred_preview.to_string(index=False))
    out.append("")
    return "\n".join(out)
