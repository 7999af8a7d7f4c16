from __future__ import annotations

import textwrap
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Tuple

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.backends.backend_pdf import PdfPages
import numpy as np
import pandas as pd


PORTRAIT = (8.5, 11)
LANDSCAPE = (11, 8.5)
LINE_STEP = 0.026
ROWS_PER_TABLE_PAGE = 24

# Decimal places per column; unlisted columns print as-is.
COLUMN_DIGITS = {
    "rmse": 5,
    "rmse_inner": 5,
    "rmse_outer": 5,
    "lambda": 2,
    "mean_bias": 5,
    "rating": 1,
    "y_pred_raw": 4,
    "y_pred": 4,
    "y_pred_discrete": 1,
}


def lambda_curve_table(inner_curve: pd.DataFrame, outer_curve: pd.DataFrame) -> pd.DataFrame:
    """Inner and outer RMSE side by side for every lambda candidate."""
    return inner_curve.merge(outer_curve, on="lambda", how="outer", suffixes=("_inner", "_outer")).sort_values("lambda")


def _cell(value, digits: Optional[int]) -> str:
    if isinstance(value, str) or digits is None:
        return str(value)
    if value is None or np.isnan(float(value)):
        return "-"
    return f"{float(value):.{digits}f}"


def _section_lines(sections: Mapping[str, str], width: int = 95) -> List[Tuple[str, str]]:
    lines: List[Tuple[str, str]] = []
    for title, body in sections.items():
        lines.append(("heading", title))
        for para in str(body).splitlines():
            lines.extend(("body", line) for line in textwrap.wrap(para, width=width))
        lines.append(("gap", ""))
    return lines


def _write_sections(pdf: PdfPages, title: str, sections: Mapping[str, str]) -> None:
    lines = _section_lines(sections)
    per_page = int(0.86 / LINE_STEP)
    for start in range(0, len(lines), per_page):
        fig = plt.figure(figsize=PORTRAIT)
        fig.text(0.06, 0.95, title, fontsize=15, fontweight="bold", va="top")
        y = 0.91
        for kind, text in lines[start : start + per_page]:
            if kind == "heading":
                fig.text(0.06, y, text, fontsize=12, fontweight="bold", va="top")
            elif kind == "body":
                fig.text(0.08, y, text, fontsize=9.5, va="top")
            y -= LINE_STEP
        pdf.savefig(fig)
        plt.close(fig)


def _write_table(pdf: PdfPages, title: str, df: Optional[pd.DataFrame]) -> None:
    if df is None or len(df) == 0:
        return
    columns: Sequence[str] = [str(c) for c in df.columns]
    digits = [COLUMN_DIGITS.get(c) for c in columns]
    body = [[_cell(v, d) for v, d in zip(row, digits)] for row in df.itertuples(index=False)]
    pages = [body[i : i + ROWS_PER_TABLE_PAGE] for i in range(0, len(body), ROWS_PER_TABLE_PAGE)]
    for n, chunk in enumerate(pages, start=1):
        fig, ax = plt.subplots(figsize=LANDSCAPE)
        ax.axis("off")
        suffix = f" (page {n} of {len(pages)})" if len(pages) > 1 else ""
        ax.set_title(f"{title}{suffix}", loc="left", fontsize=13, fontweight="bold")
        table = ax.table(cellText=chunk, colLabels=list(columns), loc="upper center", cellLoc="right")
        table.auto_set_font_size(False)
        table.set_fontsize(8)
        table.auto_set_column_width(list(range(len(columns))))
        pdf.savefig(fig)
        plt.close(fig)


def build_pdf(report_bundle: Mapping[str, object], output_path: str | Path) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tables = report_bundle.get("tables", {})
    with PdfPages(output_path) as pdf:
        info = pdf.infodict()
        info["Title"] = "Movie Rating Bias Model Report"
        info["Subject"] = "Two-stage lambda validation"

        _write_sections(pdf, "Movie Rating Bias Model", report_bundle.get("section_texts", {}))
        _write_table(pdf, "RMSE Log", tables.get("rmse_log"))
        if "inner_curve" in tables and "outer_curve" in tables:
            _write_table(pdf, "Lambda Curves", lambda_curve_table(tables["inner_curve"], tables["outer_curve"]))
        _write_table(pdf, "Fitted Bias Terms", tables.get("term_sizes"))

        for item in report_bundle.get("figures", []):
            pdf.savefig(item["figure"])
            plt.close(item["figure"])

        _write_table(pdf, "Validation Predictions (first rows)", tables.get("pred_preview"))
    return output_path
